"""Settlement lifecycle: PREPARED -> PENDING -> SETTLED | NOT_SETTLED.

NIL and MISC filings carry no orders, so they leave no settlement rows; the
sent message in the exchange log is their only record.

Every public method returns an Outcome. Business failures are raised as
RsfError internally and converted into structured results here.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass

from rsf.calculator.tax import CalculatorInput, TaxRates, compute_breakdown
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
from rsf.models.common import utc_now_iso
from rsf.models.order import OrderState
from rsf.models.outcome import ErrorCode, Failure, Outcome
from rsf.models.participant import ParticipantProfile
from rsf.models.protocol import (
    Action,
    Context,
    Direction,
    InboundOnSettle,
    MiscFiling,
    OnSettleOrder,
)
from rsf.models.settlement import Settlement, SettlementStatus, SettleType, SideStatus
from rsf.protocol.envelope import is_clean_ack
from rsf.settle.payloads import (
    build_misc_payload,
    build_nil_payload,
    build_settle_payload,
    settle_context,
)
from rsf.storage import exchange_repo, order_repo, participant_repo, settlement_repo, state_repo
from rsf.storage.database import transaction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutboundBatch:
    """One settle message: every settlement shares a counterparty pair and context."""

    participant_id: str
    collector_id: str
    receiver_id: str
    settlement_ids: list[str]
    order_ids: list[str]
    context: Context
    payload: dict


class SettlementLifecycle:
    def __init__(
        self,
        conn: sqlite3.Connection,
        config: RsfConfig,
        gateway: Gateway | None = None,
    ):
        self.conn = conn
        self.config = config
        self.gateway = gateway

    # --- prepare ---

    def prepare(self, participant_id: str, order_ids: list[str]) -> Outcome:
        """Compute and persist PREPARED settlements for a set of completed orders."""
        try:
            settlements = self._prepare(participant_id, order_ids)
        except RsfError as e:
            logger.warning("Prepare for %s rejected: %s", participant_id, e.detail)
            return Outcome.failed([e.to_failure()], order_ids=list(order_ids))
        except Rejected as r:
            return Outcome.failed(r.failures, order_ids=list(order_ids))
        except Exception as e:
            logger.exception("Prepare for %s failed", participant_id)
            return Outcome.failed([unexpected(str(e))], order_ids=list(order_ids))
        return Outcome.success(
            order_ids=[s.order_id for s in settlements],
            settlement_ids=[s.settlement_id for s in settlements],
        )

    def _prepare(self, participant_id: str, order_ids: list[str]) -> list[Settlement]:
        profile = self._profile(participant_id)
        if not order_ids:
            raise ValidationError(ErrorCode.EMPTY_BATCH, "No orders to prepare")
        if len(set(order_ids)) != len(order_ids):
            raise ValidationError(ErrorCode.DUPLICATE_ORDER, "Order listed more than once")

        failures: list[Failure] = []
        orders = []
        for order_id in order_ids:
            order = order_repo.get_order(self.conn, participant_id, order_id)
            if order is None:
                failures.append(PreconditionError(
                    ErrorCode.ORDER_NOT_FOUND, "Unknown order", order_id).to_failure())
            elif order.state != OrderState.COMPLETED:
                failures.append(PreconditionError(
                    ErrorCode.ORDER_NOT_COMPLETED, f"Order is {order.state}", order_id).to_failure())
            elif order.settlement_initiated or settlement_repo.exists(
                self.conn, participant_id, order_id
            ):
                failures.append(PreconditionError(
                    ErrorCode.DUPLICATE_SETTLEMENT, "Settlement already exists", order_id).to_failure())
            else:
                orders.append(order)
        if failures:
            raise Rejected(failures)

        pairs = {(o.collector_id, o.receiver_id) for o in orders}
        if len(pairs) > 1:
            raise ValidationError(
                ErrorCode.MISMATCHED_COUNTERPARTY,
                f"Orders span {len(pairs)} counterparty pairs",
            )

        rates = TaxRates(np_tcs=profile.np_tcs, np_tds=profile.np_tds)
        settlements = []
        for order in orders:
            breakdown = compute_breakdown(
                CalculatorInput(
                    collected_by=order.collected_by,
                    domain=order.domain,
                    total_order_value=order.total_order_value,
                    msn=order.msn,
                    buyer_finder_fee_amount=order.buyer_finder_fee_amount,
                    item_tax=order.item_tax,
                ),
                rates,
                special_domain=self.config.network.special_domain,
            )
            settlements.append(Settlement(
                settlement_id=str(uuid.uuid4()),
                participant_id=participant_id,
                order_id=order.order_id,
                collector_id=order.collector_id,
                receiver_id=order.receiver_id,
                provider_id=order.provider_id,
                total_order_value=order.total_order_value,
                commission=order.buyer_finder_fee_amount,
                tcs=breakdown.tcs,
                tds=breakdown.tds,
                withholding_amount=order.withholding_amount,
                inter_np_settlement=breakdown.inter_np_settlement,
                collector_settlement=breakdown.collector_settlement,
                due_date=order.due_date,
            ))

        try:
            with transaction(self.conn):
                for s in settlements:
                    if not order_repo.set_settlement_initiated(
                        self.conn, participant_id, s.order_id, True, commit=False
                    ):
                        raise ConflictError("Order was claimed concurrently", s.order_id)
                    settlement_repo.insert_settlement(self.conn, s, commit=False)
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Settlement created concurrently: {e}") from e
        logger.info("Prepared %d settlements for %s", len(settlements), participant_id)
        return settlements

    # --- outbound settle ---

    def build_outbound_batch(
        self, participant_id: str, settlement_ids: list[str]
    ) -> list[OutboundBatch]:
        """Group PREPARED settlements by counterparty pair into settle messages.

        Raises RsfError when any settlement is unknown or no longer PREPARED.
        """
        profile = self._profile(participant_id)
        if not settlement_ids:
            raise ValidationError(ErrorCode.EMPTY_BATCH, "No settlements to send")
        groups: dict[tuple[str, str], list[Settlement]] = {}
        for settlement_id in settlement_ids:
            s = settlement_repo.get_settlement_by_id(self.conn, participant_id, settlement_id)
            if s is None:
                raise PreconditionError(
                    ErrorCode.SETTLEMENT_NOT_FOUND, f"Unknown settlement {settlement_id}"
                )
            if s.status == SettlementStatus.SETTLED:
                raise PreconditionError(ErrorCode.ALREADY_SETTLED, "Already settled", s.order_id)
            if s.status != SettlementStatus.PREPARED:
                raise PreconditionError(
                    ErrorCode.ILLEGAL_STATUS, f"Settlement is {s.status}", s.order_id
                )
            groups.setdefault(s.counterparty_pair, []).append(s)

        batches = []
        for (collector_id, receiver_id), members in groups.items():
            context = settle_context(
                self.config, profile, str(uuid.uuid4()), str(uuid.uuid4()), utc_now_iso()
            )
            payload = build_settle_payload(
                self.config, profile, members, context, str(uuid.uuid4())
            )
            batches.append(OutboundBatch(
                participant_id=participant_id,
                collector_id=collector_id,
                receiver_id=receiver_id,
                settlement_ids=[s.settlement_id for s in members],
                order_ids=[s.order_id for s in members],
                context=context,
                payload=payload,
            ))
        return batches

    def apply_outbound_result(self, batch: OutboundBatch, result: SendResult) -> Outcome:
        """Move the batch to PENDING on a clean ACK, otherwise keep it PREPARED with the error."""
        ctx = batch.context
        try:
            exchange_repo.record_response(
                self.conn, ctx.transaction_id, ctx.message_id, Action.SETTLE,
                Direction.OUTBOUND, result.body, result.status_code,
            )
            if result.status_code < 400 and is_clean_ack(result.body):
                with transaction(self.conn):
                    for order_id in batch.order_ids:
                        if not settlement_repo.mark_sent(
                            self.conn, batch.participant_id, order_id, ctx.exchange(), commit=False
                        ):
                            raise ConflictError("Settlement left PREPARED concurrently", order_id)
                logger.info(
                    "Settle %s acknowledged, %d settlements PENDING",
                    ctx.transaction_id, len(batch.order_ids),
                )
                return Outcome.success(
                    order_ids=batch.order_ids,
                    settlement_ids=batch.settlement_ids,
                    transaction_id=ctx.transaction_id,
                    message_id=ctx.message_id,
                    response=result.body,
                )

            error = _describe_rejection(result)
            with transaction(self.conn):
                for order_id in batch.order_ids:
                    settlement_repo.record_error(
                        self.conn, batch.participant_id, order_id, error, commit=False
                    )
            logger.warning("Settle %s not acknowledged: %s", ctx.transaction_id, error)
            raise TransportError(ErrorCode.COUNTERPARTY_NACK, error)
        except RsfError as e:
            return Outcome.failed(
                [e.to_failure()],
                order_ids=batch.order_ids,
                settlement_ids=batch.settlement_ids,
                transaction_id=ctx.transaction_id,
                message_id=ctx.message_id,
                response=result.body,
            )
        except Exception as e:
            logger.exception("Applying settle result %s failed", ctx.transaction_id)
            return Outcome.failed([unexpected(str(e))], order_ids=batch.order_ids)

    def trigger(self, participant_id: str, settlement_ids: list[str]) -> Outcome:
        """Build, sign, send and apply one settle message."""
        try:
            if self.gateway is None:
                raise TransportError(ErrorCode.TRANSPORT_FAILED, "No gateway configured")
            batches = self.build_outbound_batch(participant_id, settlement_ids)
            if len(batches) != 1:
                raise ValidationError(
                    ErrorCode.MISMATCHED_COUNTERPARTY,
                    f"Settlements span {len(batches)} counterparty pairs, send them separately",
                )
            batch = batches[0]
            exchange_repo.record_exchange(
                self.conn, participant_id, Action.SETTLE, Direction.OUTBOUND,
                batch.context.transaction_id, batch.context.message_id, batch.payload,
            )
            result = self.gateway.dispatch(
                self.config.agency.agency_url, Action.SETTLE.value, batch.payload
            )
        except RsfError as e:
            logger.warning("Settle trigger for %s failed: %s", participant_id, e.detail)
            return Outcome.failed([e.to_failure()], settlement_ids=list(settlement_ids))
        except Exception as e:
            logger.exception("Settle trigger for %s failed", participant_id)
            return Outcome.failed([unexpected(str(e))], settlement_ids=list(settlement_ids))
        return self.apply_outbound_result(batch, result)

    # --- order-less filings ---

    def trigger_nil(self, participant_id: str) -> Outcome:
        """File a NIL settlement: nothing to settle for the period."""
        return self._file(participant_id, SettleType.NIL, build_nil_payload)

    def trigger_misc(self, participant_id: str, filing: MiscFiling) -> Outcome:
        """File provider or self amounts that are not tied to any order."""
        return self._file(
            participant_id,
            SettleType.MISC,
            lambda profile, context, batch_id: build_misc_payload(
                self.config, profile, filing, context, batch_id
            ),
        )

    def _file(self, participant_id: str, settle_type: SettleType, build) -> Outcome:
        context = None
        result = None
        try:
            if self.gateway is None:
                raise TransportError(ErrorCode.TRANSPORT_FAILED, "No gateway configured")
            profile = self._profile(participant_id)
            context = settle_context(
                self.config, profile, str(uuid.uuid4()), str(uuid.uuid4()), utc_now_iso()
            )
            payload = build(profile, context, str(uuid.uuid4()))
            exchange_repo.record_exchange(
                self.conn, participant_id, Action.SETTLE, Direction.OUTBOUND,
                context.transaction_id, context.message_id, payload,
            )
            result = self.gateway.dispatch(
                self.config.agency.agency_url, Action.SETTLE.value, payload
            )
            exchange_repo.record_response(
                self.conn, context.transaction_id, context.message_id, Action.SETTLE,
                Direction.OUTBOUND, result.body, result.status_code,
            )
            if result.status_code >= 400 or not is_clean_ack(result.body):
                raise TransportError(ErrorCode.COUNTERPARTY_NACK, _describe_rejection(result))
        except RsfError as e:
            logger.warning("%s filing for %s failed: %s", settle_type, participant_id, e.detail)
            return Outcome.failed(
                [e.to_failure()],
                transaction_id=context.transaction_id if context else None,
                message_id=context.message_id if context else None,
                response=result.body if result else None,
            )
        except Exception as e:
            logger.exception("%s filing for %s failed", settle_type, participant_id)
            return Outcome.failed([unexpected(str(e))])
        logger.info("%s filing %s acknowledged", settle_type, context.transaction_id)
        return Outcome.success(
            transaction_id=context.transaction_id,
            message_id=context.message_id,
            response=result.body,
        )

    # --- inbound on_settle ---

    def apply_counterparty_confirmation(self, confirmation: InboundOnSettle) -> Outcome:
        ctx = confirmation.context
        order_ids = [o.order_id for o in confirmation.orders]
        try:
            applied = self._apply_confirmation(confirmation)
        except RsfError as e:
            logger.warning("on_settle %s rejected: %s", ctx.transaction_id, e.detail)
            return Outcome.failed(
                [e.to_failure()], order_ids=order_ids, transaction_id=ctx.transaction_id
            )
        except Exception as e:
            logger.exception("on_settle %s failed", ctx.transaction_id)
            return Outcome.failed([unexpected(str(e))], order_ids=order_ids)
        return Outcome.success(
            order_ids=order_ids,
            settlement_ids=[s.settlement_id for s in applied],
            transaction_id=ctx.transaction_id,
            message_id=ctx.message_id,
        )

    def _apply_confirmation(self, confirmation: InboundOnSettle) -> list[Settlement]:
        ctx = confirmation.context
        if not ctx.transaction_id or not ctx.message_id:
            raise ValidationError(ErrorCode.MISSING_FIELD, "transaction_id and message_id are required")
        filing = _filing_type(exchange_repo.get_exchange(
            self.conn, ctx.transaction_id, ctx.message_id, Action.SETTLE, Direction.OUTBOUND
        ))
        if filing is not None:
            exchange_repo.record_exchange(
                self.conn, filing[0], Action.ON_SETTLE, Direction.INBOUND,
                ctx.transaction_id, ctx.message_id, confirmation.raw,
            )
            logger.info("on_settle %s confirms %s filing", ctx.transaction_id, filing[1])
            return []
        if not confirmation.orders:
            raise ValidationError(ErrorCode.EMPTY_BATCH, "on_settle carries no orders")

        planned = []
        for report in confirmation.orders:
            s = settlement_repo.get_by_settle_context(
                self.conn, ctx.transaction_id, ctx.message_id, report.order_id
            )
            if s is None:
                raise PreconditionError(
                    ErrorCode.UNKNOWN_TRANSACTION,
                    f"No settlement sent under transaction {ctx.transaction_id}",
                    report.order_id,
                )
            if s.status.is_terminal:
                raise PreconditionError(
                    ErrorCode.ALREADY_SETTLED, f"Settlement is already {s.status}", s.order_id
                )
            planned.append((s, report, *_side_statuses(report)))

        exchange_repo.record_exchange(
            self.conn, planned[0][0].participant_id, Action.ON_SETTLE, Direction.INBOUND,
            ctx.transaction_id, ctx.message_id, confirmation.raw,
        )
        with transaction(self.conn):
            for s, report, inter, own, provider in planned:
                status = _overall_status(inter, own, provider)
                ok = settlement_repo.apply_settle_report(
                    self.conn,
                    s.participant_id,
                    s.order_id,
                    expected=s.status,
                    status=status,
                    self_status=own,
                    provider_status=provider,
                    settlement_reference=_reference(report.inter_participant),
                    self_settlement_reference=_reference(report.self_side),
                    provider_settlement_reference=_reference(report.provider),
                    commit=False,
                )
                if not ok:
                    raise ConflictError("Settlement changed concurrently", s.order_id)
                logger.info("Settlement %s/%s -> %s", s.participant_id, s.order_id, status)
        return [p[0] for p in planned]

    # --- administrative ---

    def void(self, participant_id: str, order_id: str) -> Outcome:
        """Delete a settlement that never settled and release its order."""
        try:
            s = settlement_repo.get_settlement(self.conn, participant_id, order_id)
            if s is None:
                raise PreconditionError(ErrorCode.SETTLEMENT_NOT_FOUND, "No settlement", order_id)
            if s.status == SettlementStatus.SETTLED:
                raise PreconditionError(ErrorCode.ALREADY_SETTLED, "Cannot void a settled order", order_id)
            with transaction(self.conn):
                if not settlement_repo.delete_settlement(
                    self.conn, participant_id, order_id, commit=False
                ):
                    raise ConflictError("Settlement changed concurrently", order_id)
                order_repo.set_settlement_initiated(
                    self.conn, participant_id, order_id, False, commit=False
                )
                state_repo.log_operator_command(
                    self.conn, "void", f"{participant_id} {order_id}",
                    f"deleted {s.settlement_id} ({s.status})", commit=False,
                )
        except RsfError as e:
            return Outcome.failed([e.to_failure()], order_ids=[order_id])
        except Exception as e:
            logger.exception("Void of %s/%s failed", participant_id, order_id)
            return Outcome.failed([unexpected(str(e), order_id)], order_ids=[order_id])
        logger.warning("Voided settlement %s for %s/%s", s.settlement_id, participant_id, order_id)
        return Outcome.success(order_ids=[order_id], settlement_ids=[s.settlement_id])

    def _profile(self, participant_id: str) -> ParticipantProfile:
        profile = participant_repo.get_participant(self.conn, participant_id)
        if profile is None:
            raise PreconditionError(
                ErrorCode.PARTICIPANT_NOT_FOUND, f"Unknown participant {participant_id}"
            )
        return profile


def _filing_type(exchange: dict | None) -> tuple[str, SettleType] | None:
    """(participant id, type) of a sent NIL or MISC filing, else None."""
    if exchange is None:
        return None
    settlement = exchange["payload"].get("message", {}).get("settlement", {})
    kind = settlement.get("type")
    if kind in (SettleType.NIL, SettleType.MISC):
        return exchange["participant_id"], SettleType(kind)
    return None


def _describe_rejection(result: SendResult) -> str:
    body = result.body or {}
    err = body.get("error") or {}
    if err:
        return f"NACK {err.get('code', '?')}: {err.get('message', '')}".strip()
    return f"HTTP {result.status_code} without a clean ACK"


def _side_statuses(
    report: OnSettleOrder,
) -> tuple[SideStatus | None, SideStatus | None, SideStatus | None]:
    try:
        return (
            SideStatus.parse(report.inter_participant.status if report.inter_participant else None),
            SideStatus.parse(report.self_side.status if report.self_side else None),
            SideStatus.parse(report.provider.status if report.provider else None),
        )
    except ValueError as e:
        raise ValidationError(ErrorCode.ILLEGAL_STATUS, str(e), report.order_id) from e


def _overall_status(
    inter: SideStatus | None, own: SideStatus | None, provider: SideStatus | None
) -> SettlementStatus:
    """Any failed side fails the settlement; it settles once every reported side has."""
    sides = [s for s in (inter, own, provider) if s is not None]
    if SideStatus.NOT_SETTLED in sides:
        return SettlementStatus.NOT_SETTLED
    if sides and all(s == SideStatus.SETTLED for s in sides):
        return SettlementStatus.SETTLED
    return SettlementStatus.PENDING


def _reference(side) -> str | None:
    return side.settlement_reference if side else None
