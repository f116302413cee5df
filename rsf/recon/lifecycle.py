"""Reconciliation lifecycle: both directions of the recon / on_recon exchange.

Outbound messages claim their orders before sending, so two triggers on the
same order cannot both reach the counterparty. The claim is released when
the counterparty does not acknowledge cleanly. Inbound messages go through
the BatchValidator first, so a batch is either applied completely or not at
all.
"""

import logging
import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime

from rsf.config.schema import RsfConfig
from rsf.errors import (
    ConflictError,
    PreconditionError,
    Rejected,
    RsfError,
    TransportError,
    ValidationError,
    unexpected,
)
from rsf.gateway.contract import Gateway, SendResult
from rsf.models.common import utc_now, utc_now_iso
from rsf.models.outcome import ErrorCode, Outcome
from rsf.models.participant import ParticipantProfile
from rsf.models.protocol import (
    Action,
    Context,
    Direction,
    InboundOnRecon,
    InboundRecon,
    OnReconReply,
    ReconRequest,
)
from rsf.models.settlement import ReconAmounts, ReconStatus, Settlement
from rsf.protocol.envelope import is_clean_ack
from rsf.recon import transitions
from rsf.recon.batch import (
    BatchCommitter,
    BatchValidator,
    CommitReport,
    PlannedChange,
    match_batch,
    parse_amount,
    parse_figures,
)
from rsf.recon.payloads import OnReconLine, ReconLine, build_on_recon_payload, build_recon_payload
from rsf.storage import exchange_repo, order_repo, participant_repo, settlement_repo
from rsf.storage.database import transaction

logger = logging.getLogger(__name__)


class ReconLifecycle:
    def __init__(
        self,
        conn: sqlite3.Connection,
        config: RsfConfig,
        gateway: Gateway | None = None,
    ):
        self.conn = conn
        self.config = config
        self.gateway = gateway
        self.validator = BatchValidator(conn)
        self.committer = BatchCommitter(conn, atomic=config.storage.atomic_batches)

    # --- outbound recon ---

    def trigger_recon(self, participant_id: str, requests: list[ReconRequest]) -> Outcome:
        """Ask the counterparty to confirm our figures for a set of orders."""
        return self._run(
            f"recon trigger for {participant_id}",
            [r.order_id for r in requests],
            lambda: self._trigger_recon(participant_id, requests),
        )

    def _trigger_recon(self, participant_id: str, requests: list[ReconRequest]) -> Outcome:
        profile = self._profile(participant_id)
        if not requests:
            raise ValidationError(ErrorCode.EMPTY_BATCH, "No orders to reconcile")
        order_ids = [r.order_id for r in requests]
        failures = match_batch(list(dict.fromkeys(order_ids)), order_ids)

        rows: list[tuple[Settlement, ReconAmounts]] = []
        for req in requests:
            s = settlement_repo.get_settlement(self.conn, participant_id, req.order_id)
            if s is None:
                failures.append(PreconditionError(
                    ErrorCode.SETTLEMENT_NOT_FOUND, "No settlement for order", req.order_id
                ).to_failure())
                continue
            if not transitions.can_start(s.recon):
                failures.append(PreconditionError(
                    ErrorCode.ILLEGAL_RECON_STATE,
                    f"Reconciliation already {s.recon.recon_status}",
                    req.order_id,
                ).to_failure())
                continue
            try:
                rows.append((s, _asserted_figures(s, req)))
            except ValidationError as e:
                failures.append(e.to_failure())
        if failures:
            raise Rejected(failures)

        pairs = {s.counterparty_pair for s, _ in rows}
        if len(pairs) > 1:
            raise ValidationError(
                ErrorCode.MISMATCHED_COUNTERPARTY,
                f"Orders span {len(pairs)} counterparty pairs",
            )
        first = rows[0][0]
        order = order_repo.get_order(self.conn, participant_id, first.order_id)
        if order is None:
            raise PreconditionError(ErrorCode.ORDER_NOT_FOUND, "Unknown order", first.order_id)
        counterparty_id, counterparty_uri = _other_side(
            profile, order.bap_id, order.bap_uri, order.bpp_id, order.bpp_uri
        )
        if not profile.allows(counterparty_id):
            raise PreconditionError(
                ErrorCode.COUNTERPARTY_NOT_ALLOWED, f"{counterparty_id} is not an allowed counterparty"
            )

        context = self._context(
            Action.RECON, order.bap_id, order.bap_uri, order.bpp_id, order.bpp_uri,
            str(uuid.uuid4()), str(uuid.uuid4()),
        )
        lines = [
            ReconLine(order_id=s.order_id, settlement_ref=str(uuid.uuid4()), figures=figures)
            for s, figures in rows
        ]
        payload = build_recon_payload(context, lines, self.config.network.currency)
        changes = [
            PlannedChange(
                participant_id=participant_id,
                order_id=s.order_id,
                expected=s.recon.recon_status,
                info=transitions.start_sent(
                    s.recon, line.figures, context.exchange(), line.settlement_ref, s.order_id
                ),
            )
            for (s, _), line in zip(rows, lines)
        ]
        return self._claim_and_send(participant_id, context, counterparty_uri, payload, changes)

    # --- inbound recon ---

    def receive_recon(self, inbound: InboundRecon) -> Outcome:
        return self._run(
            f"recon {inbound.context.transaction_id}",
            [o.order_id for o in inbound.orders],
            lambda: self._receive_recon(inbound),
        )

    def _receive_recon(self, inbound: InboundRecon) -> Outcome:
        profile, changes = self.validator.validate_recon(inbound)
        ctx = inbound.context
        exchange_repo.record_exchange(
            self.conn, profile.participant_id, Action.RECON, Direction.INBOUND,
            ctx.transaction_id, ctx.message_id, inbound.raw,
        )
        return self._commit(ctx, Action.RECON, changes)

    # --- outbound on_recon ---

    def trigger_on_recon(self, participant_id: str, replies: list[OnReconReply]) -> Outcome:
        """Answer a received recon. The replies must cover the received batch exactly."""
        return self._run(
            f"on_recon trigger for {participant_id}",
            [r.order_id for r in replies],
            lambda: self._trigger_on_recon(participant_id, replies),
        )

    def _trigger_on_recon(self, participant_id: str, replies: list[OnReconReply]) -> Outcome:
        profile = self._profile(participant_id)
        if not replies:
            raise ValidationError(ErrorCode.EMPTY_BATCH, "No replies to send")
        first = settlement_repo.get_settlement(self.conn, participant_id, replies[0].order_id)
        if first is None:
            raise PreconditionError(
                ErrorCode.SETTLEMENT_NOT_FOUND, "No settlement for order", replies[0].order_id
            )
        received = first.recon.context
        if received is None:
            raise PreconditionError(
                ErrorCode.UNKNOWN_TRANSACTION, "Order has no received reconciliation", first.order_id
            )
        batch = settlement_repo.list_by_recon_context(
            self.conn, received.transaction_id, received.message_id, participant_id
        )
        failures = match_batch([s.order_id for s in batch], [r.order_id for r in replies])
        by_order = {s.order_id: s for s in batch}

        lines: list[OnReconLine] = []
        changes: list[PlannedChange] = []
        for reply in replies:
            s = by_order.get(reply.order_id)
            if s is None:
                continue
            if s.recon.recon_status != ReconStatus.RECEIVED_PENDING or s.recon.recon_data is None:
                failures.append(PreconditionError(
                    ErrorCode.ILLEGAL_RECON_STATE,
                    f"Reconciliation is {s.recon.recon_status}, expected RECEIVED_PENDING",
                    reply.order_id,
                ).to_failure())
                continue
            counter = None
            if not reply.accord:
                try:
                    counter = parse_figures(reply, reply.order_id)
                except ValidationError as e:
                    failures.append(e.to_failure())
                    continue
            lines.append(OnReconLine(
                order_id=s.order_id,
                settlement_ref=s.recon.settlement_ref or s.settlement_id,
                accord=reply.accord,
                asserted=s.recon.recon_data,
                counter=counter,
                due_date=reply.due_date,
            ))
            changes.append(PlannedChange(
                participant_id=participant_id,
                order_id=s.order_id,
                expected=ReconStatus.RECEIVED_PENDING,
                info=transitions.resolve_received(
                    s.recon, reply.accord, counter, reply.due_date, s.order_id
                ),
            ))
        if failures:
            raise Rejected(failures)

        context = self._context(
            Action.ON_RECON, received.bap_id, received.bap_uri, received.bpp_id,
            received.bpp_uri, received.transaction_id, received.message_id,
        )
        _, counterparty_uri = _other_side(
            profile, received.bap_id, received.bap_uri, received.bpp_id, received.bpp_uri
        )
        payload = build_on_recon_payload(context, lines, self.config.network.currency)
        return self._claim_and_send(participant_id, context, counterparty_uri, payload, changes)

    # --- inbound on_recon ---

    def receive_on_recon(self, inbound: InboundOnRecon) -> Outcome:
        return self._run(
            f"on_recon {inbound.context.transaction_id}",
            [o.order_id for o in inbound.orders],
            lambda: self._receive_on_recon(inbound),
        )

    def _receive_on_recon(self, inbound: InboundOnRecon) -> Outcome:
        ctx = inbound.context
        if inbound.error:
            profile = self.validator.resolve_participant(ctx)
            batch = self.validator.stored_batch(profile, ctx)
            changes = [
                PlannedChange(
                    participant_id=profile.participant_id,
                    order_id=s.order_id,
                    expected=ReconStatus.SENT_PENDING,
                    info=transitions.deactivate(s.recon, inbound.error),
                )
                for s in batch
                if s.recon.recon_status == ReconStatus.SENT_PENDING
            ]
            if not changes:
                raise PreconditionError(
                    ErrorCode.ILLEGAL_RECON_STATE,
                    f"No reconciliation of {ctx.transaction_id} is awaiting an answer",
                )
            logger.warning(
                "on_recon %s carries an error, deactivating %d orders: %s",
                ctx.transaction_id, len(changes), inbound.error,
            )
        else:
            profile, changes = self.validator.validate_on_recon(inbound)
        exchange_repo.record_exchange(
            self.conn, profile.participant_id, Action.ON_RECON, Direction.INBOUND,
            ctx.transaction_id, ctx.message_id, inbound.raw,
        )
        return self._commit(ctx, Action.ON_RECON, changes)

    # --- reporting ---

    def overdue(
        self, participant_id: str | None = None, now: datetime | None = None
    ) -> list[Settlement]:
        """Open negotiations whose settlement due date has already passed."""
        now_iso = (now or utc_now()).isoformat()
        return settlement_repo.get_overdue_recons(self.conn, now_iso, participant_id)

    def status_breakdown(self, participant_id: str) -> dict[str, int]:
        return settlement_repo.get_recon_status_breakdown(self.conn, participant_id)

    # --- helpers ---

    def _run(self, label: str, order_ids: list[str], fn: Callable[[], Outcome]) -> Outcome:
        try:
            return fn()
        except Rejected as r:
            logger.warning("%s rejected: %d failures", label, len(r.failures))
            return Outcome.failed(r.failures, order_ids=order_ids)
        except RsfError as e:
            logger.warning("%s rejected: %s", label, e.detail)
            return Outcome.failed([e.to_failure()], order_ids=order_ids)
        except Exception as e:
            logger.exception("%s failed", label)
            return Outcome.failed([unexpected(str(e))], order_ids=order_ids)

    def _profile(self, participant_id: str) -> ParticipantProfile:
        profile = participant_repo.get_participant(self.conn, participant_id)
        if profile is None:
            raise PreconditionError(
                ErrorCode.PARTICIPANT_NOT_FOUND, f"Unknown participant {participant_id}"
            )
        return profile

    def _context(
        self,
        action: Action,
        bap_id: str,
        bap_uri: str,
        bpp_id: str,
        bpp_uri: str,
        transaction_id: str,
        message_id: str,
    ) -> Context:
        net = self.config.network
        return Context(
            domain=net.domain,
            version=net.version,
            action=action,
            bap_id=bap_id,
            bap_uri=bap_uri,
            bpp_id=bpp_id,
            bpp_uri=bpp_uri,
            transaction_id=transaction_id,
            message_id=message_id,
            timestamp=utc_now_iso(),
            ttl=net.ttl,
            country=net.country,
            city=net.city,
        )

    def _send(self, participant_id: str, context: Context, base_url: str, payload: dict) -> SendResult:
        """Send and require a clean ACK. Raises TransportError otherwise."""
        if self.gateway is None:
            raise TransportError(ErrorCode.TRANSPORT_FAILED, "No gateway configured")
        exchange_repo.record_exchange(
            self.conn, participant_id, context.action, Direction.OUTBOUND,
            context.transaction_id, context.message_id, payload,
        )
        result = self.gateway.dispatch(base_url, context.action.value, payload)
        exchange_repo.record_response(
            self.conn, context.transaction_id, context.message_id, context.action,
            Direction.OUTBOUND, result.body, result.status_code,
        )
        if result.status_code >= 400 or not is_clean_ack(result.body):
            err = (result.body or {}).get("error") or {}
            raise TransportError(
                ErrorCode.COUNTERPARTY_NACK,
                f"{context.action} not acknowledged: HTTP {result.status_code} "
                f"{err.get('code', '')} {err.get('message', '')}".strip(),
            )
        return result

    def _claim_and_send(
        self,
        participant_id: str,
        context: Context,
        base_url: str,
        payload: dict,
        changes: list[PlannedChange],
    ) -> Outcome:
        """Write the post-ACK state of every order, send, and undo the write on failure."""
        if self.gateway is None:
            raise TransportError(ErrorCode.TRANSPORT_FAILED, "No gateway configured")
        previous = {}
        with transaction(self.conn):
            for c in changes:
                current = settlement_repo.get_settlement(self.conn, c.participant_id, c.order_id)
                if current is None:
                    raise ConflictError("Settlement removed concurrently", c.order_id)
                previous[c.order_id] = current.recon
                if not settlement_repo.update_recon(
                    self.conn, c.participant_id, c.order_id, c.expected, c.info, commit=False
                ):
                    raise ConflictError("Reconciliation changed concurrently", c.order_id)
        try:
            self._send(participant_id, context, base_url, payload)
        except Exception:
            with transaction(self.conn):
                for c in changes:
                    settlement_repo.update_recon(
                        self.conn, c.participant_id, c.order_id, c.info.recon_status,
                        previous[c.order_id], commit=False,
                    )
            logger.warning(
                "%s %s not delivered, released %d orders",
                context.action, context.transaction_id, len(changes),
            )
            raise
        logger.info(
            "%s %s sent for %d orders", context.action, context.transaction_id, len(changes)
        )
        return Outcome.success(
            order_ids=[c.order_id for c in changes],
            transaction_id=context.transaction_id,
            message_id=context.message_id,
        )

    def _commit(self, context: Context, action: Action, changes: list[PlannedChange]) -> Outcome:
        batch_id = f"{context.transaction_id}/{context.message_id}/{action}"
        report: CommitReport = self.committer.commit(batch_id, action.value, changes)
        if not report.ok:
            return Outcome.failed(
                [report.failure],
                order_ids=report.committed,
                transaction_id=context.transaction_id,
                message_id=context.message_id,
            )
        logger.info("%s %s applied to %d orders", action, context.transaction_id, len(changes))
        return Outcome.success(
            order_ids=report.committed,
            transaction_id=context.transaction_id,
            message_id=context.message_id,
        )


def _asserted_figures(s: Settlement, req: ReconRequest) -> ReconAmounts:
    """Our figures for a recon: explicit overrides, else the stored settlement."""

    def pick(override: float | None, stored: float, name: str) -> float:
        return parse_amount(stored if override is None else override, name, s.order_id)

    return ReconAmounts(
        amount=pick(req.amount, s.inter_np_settlement, "amount"),
        commission=pick(req.commission, s.commission, "commission"),
        withholding_amount=pick(req.withholding_amount, s.withholding_amount, "withholding_amount"),
        tcs=pick(req.tcs, s.tcs, "tcs"),
        tds=pick(req.tds, s.tds, "tds"),
    )


def _other_side(
    profile: ParticipantProfile, bap_id: str, bap_uri: str, bpp_id: str, bpp_uri: str
) -> tuple[str, str]:
    """(subscriber id, uri) of whichever end of the order is not this participant."""
    if profile.subscriber_url == bap_uri or profile.subscriber_id == bap_id:
        return bpp_id, bpp_uri
    return bap_id, bap_uri
