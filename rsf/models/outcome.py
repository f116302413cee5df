"""Structured results returned by every core entry point."""

from dataclasses import dataclass, field
from enum import StrEnum


class ErrorKind(StrEnum):
    VALIDATION = "VALIDATION"
    PRECONDITION = "PRECONDITION"
    CONSISTENCY = "CONSISTENCY"
    TRANSPORT = "TRANSPORT"
    CONFLICT = "CONFLICT"
    UNEXPECTED = "UNEXPECTED"


class ErrorCode(StrEnum):
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    EMPTY_BATCH = "EMPTY_BATCH"
    PARTICIPANT_NOT_FOUND = "PARTICIPANT_NOT_FOUND"
    PARTICIPANT_MISMATCH = "PARTICIPANT_MISMATCH"
    COUNTERPARTY_NOT_ALLOWED = "COUNTERPARTY_NOT_ALLOWED"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_NOT_COMPLETED = "ORDER_NOT_COMPLETED"
    SETTLEMENT_NOT_FOUND = "SETTLEMENT_NOT_FOUND"
    DUPLICATE_SETTLEMENT = "DUPLICATE_SETTLEMENT"
    MISMATCHED_COUNTERPARTY = "MISMATCHED_COUNTERPARTY"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    ILLEGAL_STATUS = "ILLEGAL_STATUS"
    ILLEGAL_RECON_STATE = "ILLEGAL_RECON_STATE"
    UNKNOWN_TRANSACTION = "UNKNOWN_TRANSACTION"
    BATCH_MISMATCH = "BATCH_MISMATCH"
    DUPLICATE_ORDER = "DUPLICATE_ORDER"
    PROVIDER_NOT_FOUND = "PROVIDER_NOT_FOUND"
    CONFLICT = "CONFLICT"
    SIGNING_FAILED = "SIGNING_FAILED"
    TRANSPORT_FAILED = "TRANSPORT_FAILED"
    COUNTERPARTY_NACK = "COUNTERPARTY_NACK"
    PARTIAL_COMMIT = "PARTIAL_COMMIT"
    UNEXPECTED = "UNEXPECTED"


@dataclass(frozen=True)
class Failure:
    kind: ErrorKind
    code: ErrorCode
    detail: str
    order_id: str | None = None


@dataclass(frozen=True)
class Outcome:
    ok: bool
    failures: list[Failure] = field(default_factory=list)
    order_ids: list[str] = field(default_factory=list)
    settlement_ids: list[str] = field(default_factory=list)
    transaction_id: str | None = None
    message_id: str | None = None
    response: dict | None = None

    @property
    def error_codes(self) -> list[ErrorCode]:
        return [f.code for f in self.failures]

    @property
    def first_failure(self) -> Failure | None:
        return self.failures[0] if self.failures else None

    @classmethod
    def success(cls, **kwargs) -> "Outcome":
        return cls(ok=True, **kwargs)

    @classmethod
    def failed(cls, failures: list[Failure], **kwargs) -> "Outcome":
        return cls(ok=False, failures=failures, **kwargs)
