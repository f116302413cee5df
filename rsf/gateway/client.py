"""httpx-backed protocol gateway: signs, posts and reports what came back."""

import json
import logging

import httpx

from rsf.errors import GatewayTransportError
from rsf.gateway.contract import SendResult
from rsf.gateway.signing import Signer, verify_header

logger = logging.getLogger(__name__)


def encode_body(payload: dict) -> bytes:
    """The exact bytes that are signed and sent."""
    return json.dumps(payload, separators=(",", ":")).encode()


class ProtocolGateway:
    """Outbound delivery for settle, recon and on_recon messages.

    No retries: a NACK or an HTTP error status is returned as a SendResult;
    only a missing response raises GatewayTransportError.
    """

    def __init__(self, signer: Signer, timeout: float = 30.0):
        self.signer = signer
        self.timeout = timeout

    def sign(self, body: bytes) -> dict[str, str]:
        return {
            "Authorization": self.signer.authorization_header(body),
            "Content-Type": "application/json",
        }

    def verify(self, headers: dict[str, str], body: bytes, public_key: str) -> bool:
        header = headers.get("Authorization") or headers.get("authorization")
        if not header:
            return False
        return verify_header(header, body, public_key)

    def send(self, url: str, body: bytes, headers: dict[str, str]) -> SendResult:
        try:
            resp = httpx.post(url, content=body, headers=headers, timeout=self.timeout)
        except httpx.RequestError as e:
            logger.error("Gateway request failed: POST %s -> %s", url, e)
            raise GatewayTransportError(f"Request failed: {e}", url) from e
        try:
            parsed = resp.json()
        except ValueError:
            parsed = None
        if resp.status_code >= 400:
            logger.error("Gateway %d: POST %s -> %s", resp.status_code, url, resp.text)
        return SendResult(
            status_code=resp.status_code,
            body=parsed if isinstance(parsed, dict) else None,
            url=url,
        )

    def dispatch(self, base_url: str, action: str, payload: dict) -> SendResult:
        """Sign the payload and post it to {base_url}/{action}."""
        body = encode_body(payload)
        url = f"{base_url.rstrip('/')}/{action}"
        return self.send(url, body, self.sign(body))
