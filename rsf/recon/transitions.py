"""Reconciliation state machine on the ReconciliationInfo value object.

Pure functions: each takes the current info and returns the next one, or
raises PreconditionError when the transition is not allowed.

    (none | SENT_REJECTED | RECEIVED_REJECTED | INACTIVE)
        --start_sent-->      SENT_PENDING     --resolve_sent-->     SENT_ACCEPTED | SENT_REJECTED
        --start_received-->  RECEIVED_PENDING --resolve_received--> RECEIVED_ACCEPTED | RECEIVED_REJECTED
    any --deactivate--> INACTIVE
"""

from dataclasses import replace

from rsf.errors import PreconditionError
from rsf.models.outcome import ErrorCode
from rsf.models.settlement import (
    ExchangeContext,
    ReconAmounts,
    ReconciliationInfo,
    ReconStatus,
)

# A new negotiation cannot start while one is open or already agreed.
BLOCKS_NEW_NEGOTIATION = frozenset({
    ReconStatus.SENT_PENDING,
    ReconStatus.SENT_ACCEPTED,
    ReconStatus.RECEIVED_PENDING,
    ReconStatus.RECEIVED_ACCEPTED,
})


def can_start(info: ReconciliationInfo) -> bool:
    return info.recon_status not in BLOCKS_NEW_NEGOTIATION


def _require_startable(info: ReconciliationInfo, order_id: str | None) -> None:
    if not can_start(info):
        raise PreconditionError(
            ErrorCode.ILLEGAL_RECON_STATE,
            f"Reconciliation already {info.recon_status}",
            order_id,
        )


def _require(info: ReconciliationInfo, status: ReconStatus, order_id: str | None) -> None:
    if info.recon_status != status:
        raise PreconditionError(
            ErrorCode.ILLEGAL_RECON_STATE,
            f"Reconciliation is {info.recon_status or 'not started'}, expected {status}",
            order_id,
        )


def start_sent(
    info: ReconciliationInfo,
    figures: ReconAmounts,
    context: ExchangeContext,
    settlement_ref: str,
    order_id: str | None = None,
) -> ReconciliationInfo:
    _require_startable(info, order_id)
    return ReconciliationInfo(
        recon_status=ReconStatus.SENT_PENDING,
        recon_data=figures,
        context=context,
        settlement_ref=settlement_ref,
    )


def start_received(
    info: ReconciliationInfo,
    figures: ReconAmounts,
    context: ExchangeContext,
    settlement_ref: str | None,
    order_id: str | None = None,
) -> ReconciliationInfo:
    _require_startable(info, order_id)
    return ReconciliationInfo(
        recon_status=ReconStatus.RECEIVED_PENDING,
        recon_data=figures,
        context=context,
        settlement_ref=settlement_ref,
    )


def resolve_sent(
    info: ReconciliationInfo,
    accord: bool,
    counter: ReconAmounts | None = None,
    due_date: str | None = None,
    order_id: str | None = None,
) -> ReconciliationInfo:
    """Apply the counterparty's answer to our recon."""
    _require(info, ReconStatus.SENT_PENDING, order_id)
    if accord:
        return replace(info, recon_status=ReconStatus.SENT_ACCEPTED, due_date=due_date)
    return replace(info, recon_status=ReconStatus.SENT_REJECTED, on_recon_data=counter)


def resolve_received(
    info: ReconciliationInfo,
    accord: bool,
    counter: ReconAmounts | None = None,
    due_date: str | None = None,
    order_id: str | None = None,
) -> ReconciliationInfo:
    """Record our own answer once the counterparty acknowledged it."""
    _require(info, ReconStatus.RECEIVED_PENDING, order_id)
    if accord:
        return replace(info, recon_status=ReconStatus.RECEIVED_ACCEPTED, due_date=due_date)
    return replace(info, recon_status=ReconStatus.RECEIVED_REJECTED, on_recon_data=counter)


def deactivate(info: ReconciliationInfo, error: dict | None) -> ReconciliationInfo:
    return replace(info, recon_status=ReconStatus.INACTIVE, error=error)
