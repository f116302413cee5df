"""Shape validation of inbound protocol payloads.

Counterparties may send fields we do not use, so these models allow extras.
A payload that does not fit raises ValidationError (NACK 70002).
"""

from typing import Any

import pydantic
from pydantic import BaseModel, Field

from rsf.errors import ValidationError
from rsf.models.outcome import ErrorCode
from rsf.models.protocol import (
    Action,
    Context,
    InboundOnRecon,
    InboundOnSettle,
    InboundRecon,
    OnReconOrder,
    OnSettleOrder,
    ReconOrder,
    SideReport,
)

_OPEN = {"extra": "allow"}


class MoneyModel(BaseModel):
    model_config = _OPEN

    currency: str = "INR"
    value: str | float | int | None = None


class ContextModel(BaseModel):
    model_config = _OPEN

    domain: str
    version: str = ""
    action: Action
    bap_id: str
    bap_uri: str
    bpp_id: str
    bpp_uri: str
    transaction_id: str = Field(min_length=1)
    message_id: str = Field(min_length=1)
    timestamp: str = ""
    ttl: str = "P1D"
    location: dict[str, Any] = {}

    def to_context(self) -> Context:
        country = (self.location.get("country") or {}).get("code", "IND")
        city = (self.location.get("city") or {}).get("code", "*")
        return Context(
            domain=self.domain,
            version=self.version,
            action=self.action,
            bap_id=self.bap_id,
            bap_uri=self.bap_uri,
            bpp_id=self.bpp_id,
            bpp_uri=self.bpp_uri,
            transaction_id=self.transaction_id,
            message_id=self.message_id,
            timestamp=self.timestamp,
            ttl=self.ttl,
            country=country,
            city=city,
        )


class ReconSettlementModel(BaseModel):
    model_config = _OPEN

    id: str | None = None
    amount: MoneyModel | None = None
    commission: MoneyModel | None = None
    withholding_amount: MoneyModel | None = None
    tcs: MoneyModel | None = None
    tds: MoneyModel | None = None
    due_date: str | None = None


class ReconOrderModel(BaseModel):
    model_config = _OPEN

    id: str = Field(min_length=1)
    recon_accord: bool | None = None
    due_date: str | None = None
    settlements: list[ReconSettlementModel] = []


class ReconMessageModel(BaseModel):
    model_config = _OPEN

    orders: list[ReconOrderModel] = []


class ReconPayload(BaseModel):
    model_config = _OPEN

    context: ContextModel
    message: ReconMessageModel | None = None
    error: dict[str, Any] | None = None


class SideModel(BaseModel):
    model_config = _OPEN

    status: str | None = None
    settlement_reference: str | None = None

    def to_report(self) -> SideReport:
        return SideReport(status=self.status, settlement_reference=self.settlement_reference)


class OnSettleOrderModel(BaseModel):
    model_config = {"extra": "allow", "populate_by_name": True}

    id: str = Field(min_length=1)
    inter_participant: SideModel | None = Field(
        default=None,
        validation_alias=pydantic.AliasChoices("inter_participant", "interparticipant"),
    )
    self_side: SideModel | None = Field(default=None, alias="self")
    provider: SideModel | None = None


class OnSettleSettlementModel(BaseModel):
    model_config = _OPEN

    orders: list[OnSettleOrderModel] = []


class OnSettleMessageModel(BaseModel):
    model_config = _OPEN

    settlement: OnSettleSettlementModel


class OnSettlePayload(BaseModel):
    model_config = _OPEN

    context: ContextModel
    message: OnSettleMessageModel


def _value(money: MoneyModel | None) -> str | None:
    if money is None or money.value is None:
        return None
    return str(money.value)


def _validate(model: type[BaseModel], payload: dict, action: Action) -> Any:
    try:
        parsed = model.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(
            ErrorCode.MISSING_FIELD, f"Invalid {action} payload: {e.error_count()} errors"
        ) from e
    if parsed.context.action != action:
        raise ValidationError(
            ErrorCode.MISSING_FIELD,
            f"Context action {parsed.context.action} does not match {action}",
        )
    return parsed


def parse_recon(payload: dict) -> InboundRecon:
    parsed: ReconPayload = _validate(ReconPayload, payload, Action.RECON)
    orders = []
    for o in parsed.message.orders if parsed.message else []:
        s = o.settlements[0] if o.settlements else ReconSettlementModel()
        orders.append(ReconOrder(
            order_id=o.id,
            settlement_id=s.id,
            amount=_value(s.amount),
            commission=_value(s.commission),
            withholding_amount=_value(s.withholding_amount),
            tcs=_value(s.tcs),
            tds=_value(s.tds),
        ))
    return InboundRecon(context=parsed.context.to_context(), orders=orders, raw=payload)


def parse_on_recon(payload: dict) -> InboundOnRecon:
    parsed: ReconPayload = _validate(ReconPayload, payload, Action.ON_RECON)
    orders = []
    for o in parsed.message.orders if parsed.message else []:
        if o.recon_accord is None:
            raise ValidationError(ErrorCode.MISSING_FIELD, "recon_accord is required", o.id)
        s = o.settlements[0] if o.settlements else ReconSettlementModel()
        orders.append(OnReconOrder(
            order_id=o.id,
            accord=o.recon_accord,
            amount=_value(s.amount),
            commission=_value(s.commission),
            withholding_amount=_value(s.withholding_amount),
            tcs=_value(s.tcs),
            tds=_value(s.tds),
            due_date=o.due_date or s.due_date,
        ))
    return InboundOnRecon(
        context=parsed.context.to_context(),
        orders=orders,
        error=parsed.error or None,
        raw=payload,
    )


def parse_on_settle(payload: dict) -> InboundOnSettle:
    parsed: OnSettlePayload = _validate(OnSettlePayload, payload, Action.ON_SETTLE)
    orders = [
        OnSettleOrder(
            order_id=o.id,
            inter_participant=o.inter_participant.to_report() if o.inter_participant else None,
            self_side=o.self_side.to_report() if o.self_side else None,
            provider=o.provider.to_report() if o.provider else None,
        )
        for o in parsed.message.settlement.orders
    ]
    return InboundOnSettle(context=parsed.context.to_context(), orders=orders, raw=payload)


PARSERS = {
    Action.RECON: parse_recon,
    Action.ON_RECON: parse_on_recon,
    Action.ON_SETTLE: parse_on_settle,
}
