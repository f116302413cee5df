"""Settlement calculator: the monetary breakdown for one order.

Both counterparties derive these figures independently, so everything here is
pure and deterministic. Arithmetic runs in Decimal and each output is rounded
half away from zero to 2 decimals.
"""

from dataclasses import dataclass
from decimal import Decimal

from rsf.models.common import Role, round_money, to_decimal

RETAIL_FOOD_DOMAIN = "ONDC:RET11"
FEE_TAX_UPLIFT = Decimal("1.18")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class CalculatorInput:
    collected_by: Role | str | None
    domain: str | None
    total_order_value: float | None
    msn: bool | None
    buyer_finder_fee_amount: float | None
    item_tax: float | None


@dataclass(frozen=True)
class TaxRates:
    np_tcs: float | None = 0.0  # percent
    np_tds: float | None = 0.0  # percent


@dataclass(frozen=True)
class SettlementBreakdown:
    tcs: float
    tds: float
    inter_np_settlement: float
    collector_settlement: float


def compute_breakdown(
    inputs: CalculatorInput,
    rates: TaxRates,
    special_domain: str = RETAIL_FOOD_DOMAIN,
) -> SettlementBreakdown:
    """Compute tcs, tds, inter-NP and collector settlement for one order.

    Never raises: undefined numerics count as 0 and an undefined msn flag
    counts as True.
    """
    buyer_collects = inputs.collected_by == Role.BAP
    msn = True if inputs.msn is None else bool(inputs.msn)
    special = (inputs.domain or "") == special_domain

    total = to_decimal(inputs.total_order_value)
    bff = to_decimal(inputs.buyer_finder_fee_amount)
    item_tax = to_decimal(inputs.item_tax)
    taxable = total - item_tax

    tcs = Decimal("0")
    if buyer_collects and not msn and not special:
        tcs = taxable * to_decimal(rates.np_tcs) / HUNDRED
    tds = Decimal("0")
    if buyer_collects and not msn:
        tds = taxable * to_decimal(rates.np_tds) / HUNDRED

    # Round the tax lines first so the derived amounts add up exactly.
    tcs = to_decimal(round_money(tcs))
    tds = to_decimal(round_money(tds))
    item_tax_adjustment = item_tax if (special and not msn) else Decimal("0")

    if buyer_collects:
        inter_np = total - bff - tcs - tds - item_tax_adjustment
        collector = bff + tcs + tds
    else:
        inter_np = bff + tcs + tds + item_tax_adjustment
        collector = total - inter_np

    return SettlementBreakdown(
        tcs=round_money(tcs),
        tds=round_money(tds),
        inter_np_settlement=round_money(inter_np),
        collector_settlement=round_money(collector),
    )


def resolve_buyer_finder_fee(
    fee_type: str | None,
    value: float | None,
    total_order_value: float | None,
    item_tax: float | None,
) -> float:
    """Resolve the buyer finder fee amount, including the fixed 18% uplift.

    Percentage fees apply to the order value net of item tax.
    """
    fee_value = to_decimal(value)
    if (fee_type or "").lower() == "percent":
        base = to_decimal(total_order_value) - to_decimal(item_tax)
        fee = base * fee_value / HUNDRED
    else:
        fee = fee_value
    return round_money(fee * FEE_TAX_UPLIFT)
