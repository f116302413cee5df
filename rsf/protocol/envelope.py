"""ACK/NACK envelopes and the mapping from business outcomes to NACK codes."""

from enum import StrEnum

from rsf.models.outcome import ErrorCode, ErrorKind, Outcome


class NackCode(StrEnum):
    INVALID_SIGNATURE = "70000"
    MISSING_AUTHORIZATION = "70001"
    INVALID_PAYLOAD = "70002"
    LOOKUP_FAILURE = "70030"
    ILLEGAL_STATE = "70040"
    BATCH_MISMATCH = "70041"
    SERVICE_ERROR = "503"


NACK_DESCRIPTIONS: dict[NackCode, str] = {
    NackCode.INVALID_SIGNATURE: "Invalid signature",
    NackCode.MISSING_AUTHORIZATION: "Authorization header missing",
    NackCode.INVALID_PAYLOAD: "Invalid request payload",
    NackCode.LOOKUP_FAILURE: "Referenced participant, settlement or transaction not found",
    NackCode.ILLEGAL_STATE: "Referenced settlement is not in a state that allows this action",
    NackCode.BATCH_MISMATCH: "Orders in the batch do not match the expected set",
    NackCode.SERVICE_ERROR: "Service unavailable",
}

_LOOKUP_CODES = {
    ErrorCode.PARTICIPANT_NOT_FOUND,
    ErrorCode.ORDER_NOT_FOUND,
    ErrorCode.SETTLEMENT_NOT_FOUND,
    ErrorCode.UNKNOWN_TRANSACTION,
    ErrorCode.PROVIDER_NOT_FOUND,
}


def ack_response() -> dict:
    return {"message": {"ack": {"status": "ACK"}}}


def nack_response(code: NackCode, message: str | None = None) -> dict:
    return {
        "message": {"ack": {"status": "NACK"}},
        "error": {
            "code": code.value,
            "message": message or NACK_DESCRIPTIONS.get(code, "Unknown error"),
        },
    }


def is_clean_ack(body: object) -> bool:
    """True only for an ACK body without an error block."""
    if not isinstance(body, dict) or body.get("error"):
        return False
    ack = (body.get("message") or {}).get("ack") or {}
    return ack.get("status") == "ACK"


def nack_code_for(outcome: Outcome) -> NackCode | None:
    """Map a failed outcome to the NACK code the counterparty will see."""
    failure = outcome.first_failure
    if outcome.ok or failure is None:
        return None
    if failure.code in _LOOKUP_CODES:
        return NackCode.LOOKUP_FAILURE
    if failure.kind == ErrorKind.VALIDATION:
        return NackCode.INVALID_PAYLOAD
    if failure.kind in (ErrorKind.PRECONDITION, ErrorKind.CONFLICT):
        return NackCode.ILLEGAL_STATE
    if failure.kind == ErrorKind.CONSISTENCY:
        return NackCode.BATCH_MISMATCH
    return NackCode.SERVICE_ERROR


def response_for(outcome: Outcome) -> dict:
    code = nack_code_for(outcome)
    if code is None:
        return ack_response()
    return nack_response(code, outcome.failures[0].detail)
