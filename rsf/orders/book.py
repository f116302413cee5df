"""Order book: keeps the order facts a settlement is computed from.

`on_confirm` creates an order; later status events replace the
mutable facts they carry and leave the rest as confirmed. The due date is
fixed the first time the order reaches Completed.
"""

import logging
import sqlite3
from dataclasses import replace

from rsf.calculator.due_date import compute_due_date
from rsf.calculator.tax import resolve_buyer_finder_fee
from rsf.errors import PreconditionError, RsfError, ValidationError, unexpected
from rsf.models.common import Role
from rsf.models.order import FeeType, Order, OrderEvent, OrderState, SettlementBasis
from rsf.models.outcome import ErrorCode, Outcome
from rsf.storage import order_repo, participant_repo

logger = logging.getLogger(__name__)

CREATE_ACTION = "on_confirm"
UPDATE_ACTIONS = frozenset({"on_status", "on_update", "on_cancel"})
DEFAULT_SETTLEMENT_WINDOW = "P1D"


class OrderBook:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def apply_event(self, participant_id: str, event: OrderEvent) -> Outcome:
        try:
            order = self._apply(participant_id, event)
        except RsfError as e:
            logger.warning(
                "Order event %s for %s rejected: %s", event.action, event.order_id, e.detail
            )
            return Outcome.failed([e.to_failure()], order_ids=[event.order_id])
        except Exception as e:
            logger.exception("Order event %s for %s failed", event.action, event.order_id)
            return Outcome.failed([unexpected(str(e), event.order_id)], order_ids=[event.order_id])
        return Outcome.success(order_ids=[order.order_id])

    def _apply(self, participant_id: str, event: OrderEvent) -> Order:
        profile = participant_repo.get_participant(self.conn, participant_id)
        if profile is None:
            raise PreconditionError(
                ErrorCode.PARTICIPANT_NOT_FOUND, f"Unknown participant {participant_id}"
            )
        if not event.order_id:
            raise ValidationError(ErrorCode.MISSING_FIELD, "order_id is required")

        existing = order_repo.get_order(self.conn, participant_id, event.order_id)
        if event.action == CREATE_ACTION:
            if existing is not None:
                raise PreconditionError(
                    ErrorCode.DUPLICATE_ORDER, "Order already confirmed", event.order_id
                )
            _require_identity(event)
            order = self._from_event(participant_id, event, profile.msn)
        elif event.action in UPDATE_ACTIONS:
            if existing is None:
                raise PreconditionError(
                    ErrorCode.ORDER_NOT_FOUND, "Order was never confirmed", event.order_id
                )
            order = self._merge(existing, event)
        else:
            raise ValidationError(
                ErrorCode.MISSING_FIELD, f"Unsupported order action {event.action!r}", event.order_id
            )

        if order.state == OrderState.COMPLETED and order.due_date is None:
            due = compute_due_date(
                order.settlement_basis,
                order.picked_up_at,
                order.delivered_at,
                order.settlement_window,
            )
            order = replace(order, due_date=due)
            if due is None:
                logger.warning("Order %s completed without a computable due date", order.order_id)

        order_repo.upsert_order(self.conn, order)
        logger.info("Order %s/%s is %s", participant_id, order.order_id, order.state)
        return order

    def _from_event(self, participant_id: str, event: OrderEvent, default_msn: bool) -> Order:
        order = Order(
            participant_id=participant_id,
            order_id=event.order_id,
            bap_id=event.bap_id,
            bap_uri=event.bap_uri,
            bpp_id=event.bpp_id,
            bpp_uri=event.bpp_uri,
            domain=event.domain,
            provider_id=event.provider_id,
            state=event.state,
            collected_by=_given(event.collected_by, Role.BAP),
            total_order_value=event.total_order_value,
            buyer_finder_fee_type=_given(event.buyer_finder_fee_type, FeeType.PERCENT),
            buyer_finder_fee_value=_given(event.buyer_finder_fee_value, 0.0),
            buyer_finder_fee_amount=0.0,
            settlement_basis=_given(event.settlement_basis, SettlementBasis.DELIVERY),
            settlement_window=event.settlement_window or DEFAULT_SETTLEMENT_WINDOW,
            withholding_amount=_given(event.withholding_amount, 0.0),
            msn=default_msn if event.msn is None else event.msn,
            breakup=list(event.breakup),
            picked_up_at=event.picked_up_at,
            delivered_at=event.delivered_at,
        )
        return _with_resolved_fee(order)

    def _merge(self, existing: Order, event: OrderEvent) -> Order:
        if existing.settlement_initiated:
            raise PreconditionError(
                ErrorCode.ILLEGAL_STATUS,
                "Settlement already initiated, order facts are frozen",
                existing.order_id,
            )
        if existing.state == OrderState.CANCELLED and event.state != OrderState.CANCELLED:
            raise PreconditionError(
                ErrorCode.ILLEGAL_STATUS, "Cancelled orders cannot change state", existing.order_id
            )
        order = replace(
            existing,
            state=event.state,
            bap_uri=event.bap_uri or existing.bap_uri,
            bpp_uri=event.bpp_uri or existing.bpp_uri,
            provider_id=event.provider_id or existing.provider_id,
            collected_by=_given(event.collected_by, existing.collected_by),
            total_order_value=event.total_order_value or existing.total_order_value,
            buyer_finder_fee_type=_given(event.buyer_finder_fee_type, existing.buyer_finder_fee_type),
            buyer_finder_fee_value=_given(
                event.buyer_finder_fee_value, existing.buyer_finder_fee_value
            ),
            settlement_basis=_given(event.settlement_basis, existing.settlement_basis),
            settlement_window=event.settlement_window or existing.settlement_window,
            withholding_amount=_given(event.withholding_amount, existing.withholding_amount),
            msn=existing.msn if event.msn is None else event.msn,
            breakup=list(event.breakup) if event.breakup else existing.breakup,
            picked_up_at=event.picked_up_at or existing.picked_up_at,
            delivered_at=event.delivered_at or existing.delivered_at,
        )
        return _with_resolved_fee(order)


def _given(value, fallback):
    return fallback if value is None else value


def _require_identity(event: OrderEvent) -> None:
    missing = [
        name
        for name in ("bap_id", "bap_uri", "bpp_id", "bpp_uri", "domain", "provider_id")
        if not getattr(event, name)
    ]
    if missing:
        raise ValidationError(
            ErrorCode.MISSING_FIELD, f"Missing {', '.join(missing)}", event.order_id
        )


def _with_resolved_fee(order: Order) -> Order:
    fee = resolve_buyer_finder_fee(
        order.buyer_finder_fee_type,
        order.buyer_finder_fee_value,
        order.total_order_value,
        order.item_tax,
    )
    return replace(order, buyer_finder_fee_amount=fee)
