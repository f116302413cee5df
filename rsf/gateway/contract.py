"""The gateway contract the lifecycle managers depend on."""

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class SendResult:
    """Whatever the counterparty answered. A NACK is still a result."""

    status_code: int
    body: dict | None
    url: str = ""


class Gateway(Protocol):
    def sign(self, body: bytes) -> dict[str, str]: ...

    def verify(self, headers: dict[str, str], body: bytes, public_key: str) -> bool: ...

    def send(self, url: str, body: bytes, headers: dict[str, str]) -> SendResult: ...

    def dispatch(self, base_url: str, action: str, payload: dict) -> SendResult: ...
