"""Order models: the facts a settlement is computed from."""

from dataclasses import dataclass, field
from enum import StrEnum

from rsf.models.common import Role


class OrderState(StrEnum):
    CREATED = "Created"
    ACCEPTED = "Accepted"
    IN_PROGRESS = "In-progress"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class SettlementBasis(StrEnum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class FeeType(StrEnum):
    PERCENT = "percent"
    AMOUNT = "amount"


@dataclass(frozen=True)
class QuoteLine:
    id: str
    title: str
    price: float
    is_tax: bool = False


@dataclass(frozen=True)
class Order:
    participant_id: str
    order_id: str
    bap_id: str
    bap_uri: str
    bpp_id: str
    bpp_uri: str
    domain: str
    provider_id: str
    state: OrderState
    collected_by: Role
    total_order_value: float
    buyer_finder_fee_type: FeeType
    buyer_finder_fee_value: float
    buyer_finder_fee_amount: float
    settlement_basis: SettlementBasis
    settlement_window: str  # ISO-8601 duration, e.g. "P2D"
    withholding_amount: float = 0.0
    msn: bool = True
    breakup: list[QuoteLine] = field(default_factory=list)
    picked_up_at: str | None = None
    delivered_at: str | None = None
    due_date: str | None = None
    settlement_initiated: bool = False

    @property
    def item_tax(self) -> float:
        return sum(line.price for line in self.breakup if line.is_tax)

    @property
    def collector_id(self) -> str:
        return self.bap_id if self.collected_by == Role.BAP else self.bpp_id

    @property
    def receiver_id(self) -> str:
        return self.bpp_id if self.collected_by == Role.BAP else self.bap_id


@dataclass(frozen=True)
class OrderEvent:
    """A confirmation or status event carrying the current order facts.

    `on_confirm` creates the order; `on_status`, `on_update` and
    `on_cancel` mutate it.
    """

    action: str
    order_id: str
    state: OrderState
    bap_id: str = ""
    bap_uri: str = ""
    bpp_id: str = ""
    bpp_uri: str = ""
    domain: str = ""
    provider_id: str = ""
    collected_by: Role | None = None
    total_order_value: float = 0.0
    buyer_finder_fee_type: FeeType | None = None
    buyer_finder_fee_value: float | None = None
    settlement_basis: SettlementBasis | None = None
    settlement_window: str | None = None
    withholding_amount: float | None = None
    msn: bool | None = None
    breakup: list[QuoteLine] = field(default_factory=list)
    picked_up_at: str | None = None
    delivered_at: str | None = None
