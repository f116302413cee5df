"""Batch validation and commit for inbound reconciliation messages.

Validation never writes: it resolves the receiving participant, checks every
order of the batch and collects all failures. Only a batch with no failures
reaches the committer, which applies the planned changes either in one
BEGIN IMMEDIATE transaction or, when `storage.atomic_batches` is off, one
order at a time with each step journaled in batch_audit.
"""

import logging
import math
import sqlite3
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from rsf.errors import (
    ConflictError,
    ConsistencyError,
    PreconditionError,
    Rejected,
    ValidationError,
    unexpected,
)
from rsf.models.common import round_money
from rsf.models.outcome import ErrorCode, ErrorKind, Failure
from rsf.models.participant import ParticipantProfile
from rsf.models.protocol import Context, InboundOnRecon, InboundRecon
from rsf.models.settlement import (
    ReconAmounts,
    ReconciliationInfo,
    ReconStatus,
    Settlement,
)
from rsf.recon import transitions
from rsf.storage import audit_repo, participant_repo, settlement_repo
from rsf.storage.database import transaction

logger = logging.getLogger(__name__)

AMOUNT_FIELDS = ("amount", "commission", "withholding_amount", "tcs", "tds")


@dataclass(frozen=True)
class PlannedChange:
    participant_id: str
    order_id: str
    expected: ReconStatus | None
    info: ReconciliationInfo


@dataclass(frozen=True)
class CommitReport:
    committed: list[str]
    failure: Failure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def parse_amount(raw: str | float | None, name: str, order_id: str) -> float:
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        raise ValidationError(ErrorCode.MISSING_FIELD, f"{name} is required", order_id)
    try:
        value = Decimal(str(raw).strip())
    except InvalidOperation as e:
        raise ValidationError(
            ErrorCode.INVALID_AMOUNT, f"{name} is not a number: {raw!r}", order_id
        ) from e
    if not value.is_finite() or not math.isfinite(float(value)):
        raise ValidationError(ErrorCode.INVALID_AMOUNT, f"{name} is not finite", order_id)
    return round_money(value)


def parse_figures(source: object, order_id: str) -> ReconAmounts:
    """Read the five recon figures off any object exposing them as attributes."""
    return ReconAmounts(**{
        name: parse_amount(getattr(source, name), name, order_id) for name in AMOUNT_FIELDS
    })


def match_batch(expected: list[str], given: list[str]) -> list[Failure]:
    """Set equality between the orders of a stored batch and a message."""
    failures = []
    seen: set[str] = set()
    for order_id in given:
        if order_id in seen:
            failures.append(ConsistencyError(
                ErrorCode.DUPLICATE_ORDER, "Order appears twice in the batch", order_id
            ).to_failure())
        seen.add(order_id)
    for order_id in sorted(seen - set(expected)):
        failures.append(ConsistencyError(
            ErrorCode.BATCH_MISMATCH, "Order is not part of this reconciliation", order_id
        ).to_failure())
    for order_id in sorted(set(expected) - seen):
        failures.append(ConsistencyError(
            ErrorCode.BATCH_MISMATCH, "Order of this reconciliation is missing", order_id
        ).to_failure())
    return failures


class BatchValidator:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def resolve_participant(self, context: Context) -> ParticipantProfile:
        """The local participant a message is addressed to, found by its URI."""
        if not context.transaction_id or not context.message_id:
            raise ValidationError(
                ErrorCode.MISSING_FIELD, "transaction_id and message_id are required"
            )
        matches = participant_repo.find_by_subscriber_urls(
            self.conn, [context.bap_uri, context.bpp_uri]
        )
        if not matches:
            raise PreconditionError(
                ErrorCode.PARTICIPANT_NOT_FOUND,
                f"No participant serves {context.bap_uri} or {context.bpp_uri}",
            )
        if len(matches) > 1:
            raise ValidationError(
                ErrorCode.PARTICIPANT_MISMATCH,
                "Both ends of the exchange are local participants, cannot tell the recipient",
            )
        return matches[0]

    def check_identity(
        self, profile: ParticipantProfile, context: Context, settlement: Settlement
    ) -> Failure | None:
        pair = {settlement.collector_id, settlement.receiver_id}
        if pair != {context.bap_id, context.bpp_id}:
            return ValidationError(
                ErrorCode.PARTICIPANT_MISMATCH,
                "Context participants do not match the settlement counterparties",
                settlement.order_id,
            ).to_failure()
        counterparty = (
            settlement.receiver_id
            if settlement.collector_id == profile.subscriber_id
            else settlement.collector_id
        )
        if not profile.allows(counterparty):
            return PreconditionError(
                ErrorCode.COUNTERPARTY_NOT_ALLOWED,
                f"{counterparty} is not an allowed counterparty",
                settlement.order_id,
            ).to_failure()
        return None

    def validate_recon(
        self, inbound: InboundRecon
    ) -> tuple[ParticipantProfile, list[PlannedChange]]:
        """Plan RECEIVED_PENDING for every order of an inbound recon."""
        ctx = inbound.context
        profile = self.resolve_participant(ctx)
        if not inbound.orders:
            raise ValidationError(ErrorCode.EMPTY_BATCH, "recon carries no orders")

        failures = match_batch(
            list(dict.fromkeys(o.order_id for o in inbound.orders)),
            [o.order_id for o in inbound.orders],
        )
        changes = []
        for item in inbound.orders:
            s = settlement_repo.get_settlement(self.conn, profile.participant_id, item.order_id)
            if s is None:
                failures.append(PreconditionError(
                    ErrorCode.SETTLEMENT_NOT_FOUND, "No settlement for order", item.order_id
                ).to_failure())
                continue
            problem = self.check_identity(profile, ctx, s)
            if problem is not None:
                failures.append(problem)
                continue
            if not transitions.can_start(s.recon):
                failures.append(PreconditionError(
                    ErrorCode.ILLEGAL_RECON_STATE,
                    f"Reconciliation already {s.recon.recon_status}",
                    item.order_id,
                ).to_failure())
                continue
            try:
                figures = parse_figures(item, item.order_id)
            except ValidationError as e:
                failures.append(e.to_failure())
                continue
            changes.append(PlannedChange(
                participant_id=profile.participant_id,
                order_id=item.order_id,
                expected=s.recon.recon_status,
                info=transitions.start_received(
                    s.recon, figures, ctx.exchange(), item.settlement_id, item.order_id
                ),
            ))
        if failures:
            raise Rejected(failures)
        return profile, changes

    def validate_on_recon(
        self, inbound: InboundOnRecon
    ) -> tuple[ParticipantProfile, list[PlannedChange]]:
        """Plan SENT_ACCEPTED / SENT_REJECTED for the answer to one of our recons."""
        ctx = inbound.context
        profile = self.resolve_participant(ctx)
        batch = self.stored_batch(profile, ctx)

        failures = match_batch([s.order_id for s in batch], [o.order_id for o in inbound.orders])
        by_order = {s.order_id: s for s in batch}
        changes = []
        for item in inbound.orders:
            s = by_order.get(item.order_id)
            if s is None:
                continue
            problem = self.check_identity(profile, ctx, s)
            if problem is not None:
                failures.append(problem)
                continue
            if s.recon.recon_status != ReconStatus.SENT_PENDING:
                failures.append(PreconditionError(
                    ErrorCode.ILLEGAL_RECON_STATE,
                    f"Reconciliation is {s.recon.recon_status}, expected SENT_PENDING",
                    item.order_id,
                ).to_failure())
                continue
            counter = None
            if not item.accord:
                try:
                    counter = parse_figures(item, item.order_id)
                except ValidationError as e:
                    failures.append(e.to_failure())
                    continue
            changes.append(PlannedChange(
                participant_id=profile.participant_id,
                order_id=item.order_id,
                expected=ReconStatus.SENT_PENDING,
                info=transitions.resolve_sent(
                    s.recon, item.accord, counter, item.due_date, item.order_id
                ),
            ))
        if failures:
            raise Rejected(failures)
        return profile, changes

    def stored_batch(self, profile: ParticipantProfile, context: Context) -> list[Settlement]:
        batch = settlement_repo.list_by_recon_context(
            self.conn, context.transaction_id, context.message_id, profile.participant_id
        )
        if not batch:
            raise PreconditionError(
                ErrorCode.UNKNOWN_TRANSACTION,
                f"No reconciliation under transaction {context.transaction_id}",
            )
        return batch


class BatchCommitter:
    def __init__(self, conn: sqlite3.Connection, atomic: bool = True):
        self.conn = conn
        self.atomic = atomic

    def commit(self, batch_id: str, action: str, changes: list[PlannedChange]) -> CommitReport:
        if self.atomic:
            return self._commit_atomic(changes)
        return self._commit_sequential(batch_id, action, changes)

    def _commit_atomic(self, changes: list[PlannedChange]) -> CommitReport:
        try:
            with transaction(self.conn):
                for c in changes:
                    if not settlement_repo.update_recon(
                        self.conn, c.participant_id, c.order_id, c.expected, c.info, commit=False
                    ):
                        raise ConflictError("Reconciliation changed concurrently", c.order_id)
        except ConflictError as e:
            return CommitReport(committed=[], failure=e.to_failure())
        return CommitReport(committed=[c.order_id for c in changes])

    def _commit_sequential(
        self, batch_id: str, action: str, changes: list[PlannedChange]
    ) -> CommitReport:
        committed: list[str] = []
        for c in changes:
            from_status = c.expected.value if c.expected else None
            to_status = c.info.recon_status.value if c.info.recon_status else None
            error = None
            try:
                ok = settlement_repo.update_recon(
                    self.conn, c.participant_id, c.order_id, c.expected, c.info
                )
            except sqlite3.Error as e:
                logger.error("Batch %s could not update %s: %s", batch_id, c.order_id, e)
                ok, error = False, e
            result = "committed" if ok else ("error" if error else "conflict")
            audit_repo.record_step(
                self.conn, batch_id, c.participant_id, action, c.order_id,
                from_status, to_status, result, str(error or ""),
            )
            if ok:
                committed.append(c.order_id)
                continue
            if not committed:
                if error is not None:
                    return CommitReport(committed=[], failure=unexpected(str(error), c.order_id))
                return CommitReport(
                    committed=[],
                    failure=ConflictError(
                        "Reconciliation changed concurrently", c.order_id
                    ).to_failure(),
                )
            logger.error(
                "Batch %s partially committed (%d of %d orders), data-integrity risk",
                batch_id, len(committed), len(changes),
            )
            return CommitReport(
                committed=committed,
                failure=Failure(
                    kind=ErrorKind.UNEXPECTED,
                    code=ErrorCode.PARTIAL_COMMIT,
                    detail=f"Stopped at {c.order_id} after committing {len(committed)} orders",
                    order_id=c.order_id,
                ),
            )
        return CommitReport(committed=committed)
