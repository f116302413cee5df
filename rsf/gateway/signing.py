"""Authorization header signing and verification.

Header layout:

    Signature keyId="{subscriber_id}|{unique_key_id}|ed25519",algorithm="ed25519",
    created="{unix}",expires="{unix}",headers="(created) (expires) digest",
    signature="{base64 ed25519 signature}"

The signed string is

    (created): {unix}
    (expires): {unix}
    digest: BLAKE-512={base64 blake2b-512 of the exact body bytes}
"""

import base64
import hashlib
import re
import time

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from rsf.errors import SigningError

_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


def body_digest(body: bytes) -> str:
    return base64.b64encode(hashlib.blake2b(body, digest_size=64).digest()).decode()


def signing_string(body: bytes, created: int, expires: int) -> str:
    return (
        f"(created): {created}\n"
        f"(expires): {expires}\n"
        f"digest: BLAKE-512={body_digest(body)}"
    )


def load_private_key(encoded: str) -> Ed25519PrivateKey:
    """Load a base64 key: a 32-byte seed or a 64-byte seed+public pair."""
    try:
        raw = base64.b64decode(encoded)
    except ValueError as e:
        raise SigningError(f"Private key is not valid base64: {e}") from e
    if len(raw) not in (32, 64):
        raise SigningError(f"Ed25519 private key must be 32 or 64 bytes, got {len(raw)}")
    return Ed25519PrivateKey.from_private_bytes(raw[:32])


def generate_keypair() -> tuple[str, str]:
    """Return (private_key, public_key), both base64."""
    key = Ed25519PrivateKey.generate()
    seed = key.private_bytes_raw()
    public = key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return (
        base64.b64encode(seed + public).decode(),
        base64.b64encode(public).decode(),
    )


def parse_header(header: str) -> dict[str, str]:
    """Split a Signature header into its quoted parameters."""
    header = header.strip()
    if header.lower().startswith("signature "):
        header = header[len("signature "):]
    return dict(_PARAM_RE.findall(header))


class Signer:
    def __init__(
        self,
        subscriber_id: str,
        unique_key_id: str,
        private_key: str,
        ttl_seconds: int = 300,
    ):
        if not subscriber_id or not unique_key_id or not private_key:
            raise SigningError("Signing identity is not configured")
        self.subscriber_id = subscriber_id
        self.unique_key_id = unique_key_id
        self._key = load_private_key(private_key)
        self.ttl_seconds = ttl_seconds

    def authorization_header(self, body: bytes, now: int | None = None) -> str:
        created = int(now if now is not None else time.time())
        expires = created + self.ttl_seconds
        signature = self._key.sign(signing_string(body, created, expires).encode())
        return (
            f'Signature keyId="{self.subscriber_id}|{self.unique_key_id}|ed25519",'
            f'algorithm="ed25519",created="{created}",expires="{expires}",'
            f'headers="(created) (expires) digest",'
            f'signature="{base64.b64encode(signature).decode()}"'
        )


def subscriber_of(header: str) -> str | None:
    """The subscriber id named in a header's keyId, if any."""
    key_id = parse_header(header).get("keyId")
    if not key_id:
        return None
    return key_id.split("|")[0]


def verify_header(
    header: str, body: bytes, public_key: str, now: int | None = None
) -> bool:
    """Check signature and validity window. Never raises."""
    params = parse_header(header)
    try:
        created = int(params["created"])
        expires = int(params["expires"])
        signature = base64.b64decode(params["signature"])
        key = Ed25519PublicKey.from_public_bytes(base64.b64decode(public_key))
    except (KeyError, ValueError):
        return False
    current = int(now if now is not None else time.time())
    if created > current or expires < current:
        return False
    try:
        key.verify(signature, signing_string(body, created, expires).encode())
    except InvalidSignature:
        return False
    return True
