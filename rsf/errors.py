"""Error taxonomy.

Raised inside the core and converted to `Outcome` failures at the public
entry points, so the boundary layer maps them to ACK/NACK deterministically.
"""

from rsf.models.outcome import ErrorCode, ErrorKind, Failure


class RsfError(Exception):
    """Base class for every business failure the core knows about."""

    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(
        self,
        code: ErrorCode,
        detail: str,
        order_id: str | None = None,
    ):
        super().__init__(detail)
        self.code = code
        self.detail = detail
        self.order_id = order_id

    def to_failure(self) -> Failure:
        return Failure(
            kind=self.kind, code=self.code, detail=self.detail, order_id=self.order_id
        )


class ValidationError(RsfError):
    """Malformed or missing fields."""

    kind = ErrorKind.VALIDATION


class PreconditionError(RsfError):
    """Entity exists but is in the wrong state for the transition."""

    kind = ErrorKind.PRECONDITION


class ConsistencyError(RsfError):
    """Local and remote views of a batch disagree in count or membership."""

    kind = ErrorKind.CONSISTENCY


class ConflictError(RsfError):
    """Lost a race on a conditional update or unique key."""

    kind = ErrorKind.CONFLICT

    def __init__(self, detail: str, order_id: str | None = None):
        super().__init__(ErrorCode.CONFLICT, detail, order_id)


class TransportError(RsfError):
    """Signing, sending or verification failed."""

    kind = ErrorKind.TRANSPORT


class SigningError(TransportError):
    def __init__(self, detail: str):
        super().__init__(ErrorCode.SIGNING_FAILED, detail)


class GatewayTransportError(TransportError):
    """No response was received from the counterparty."""

    def __init__(self, detail: str, url: str | None = None):
        super().__init__(ErrorCode.TRANSPORT_FAILED, detail)
        self.url = url


def unexpected(detail: str, order_id: str | None = None) -> Failure:
    return Failure(
        kind=ErrorKind.UNEXPECTED,
        code=ErrorCode.UNEXPECTED,
        detail=detail,
        order_id=order_id,
    )


class Rejected(Exception):
    """Several failures collected before any write, reported together."""

    def __init__(self, failures: list[Failure]):
        super().__init__(f"{len(failures)} failures")
        self.failures = failures
