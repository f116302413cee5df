"""`recon` and `on_recon` message builders."""

from dataclasses import dataclass

from rsf.models.common import money_str, round_money
from rsf.models.protocol import Context
from rsf.models.settlement import ReconAmounts

_FIGURES = ("amount", "commission", "withholding_amount", "tcs", "tds")


@dataclass(frozen=True)
class ReconLine:
    order_id: str
    settlement_ref: str
    figures: ReconAmounts


@dataclass(frozen=True)
class OnReconLine:
    order_id: str
    settlement_ref: str
    accord: bool
    asserted: ReconAmounts  # what the initiator sent us
    counter: ReconAmounts | None = None  # our figures when we reject
    due_date: str | None = None


def _money(currency: str, value: float) -> dict:
    return {"currency": currency, "value": money_str(value)}


def _settlement_block(
    settlement_ref: str,
    figures: ReconAmounts,
    currency: str,
    updated_at: str,
    against: ReconAmounts | None = None,
) -> dict:
    block: dict = {"id": settlement_ref, "status": "PENDING"}
    values = figures.to_dict()
    base = against.to_dict() if against else None
    for name in _FIGURES:
        entry = _money(currency, values[name])
        if base is not None:
            entry["diff_value"] = money_str(round_money(values[name] - base[name]))
        block[name] = entry
    block["updated_at"] = updated_at
    return block


def build_recon_payload(context: Context, lines: list[ReconLine], currency: str) -> dict:
    return {
        "context": context.to_dict(),
        "message": {
            "orders": [
                {
                    "id": line.order_id,
                    "amount": _money(currency, line.figures.amount),
                    "settlements": [
                        _settlement_block(
                            line.settlement_ref, line.figures, currency, context.timestamp
                        )
                    ],
                }
                for line in lines
            ]
        },
    }


def build_on_recon_payload(
    context: Context, lines: list[OnReconLine], currency: str
) -> dict:
    """Accepted orders echo the asserted figures; rejected ones carry ours plus the difference."""
    orders = []
    for line in lines:
        if line.accord:
            block = _settlement_block(
                line.settlement_ref, line.asserted, currency, context.timestamp
            )
            amount = line.asserted.amount
        else:
            counter = line.counter or line.asserted
            block = _settlement_block(
                line.settlement_ref, counter, currency, context.timestamp, against=line.asserted
            )
            amount = counter.amount
        if line.due_date:
            block["due_date"] = line.due_date
        orders.append({
            "id": line.order_id,
            "amount": _money(currency, amount),
            "recon_accord": line.accord,
            "settlements": [block],
        })
    return {"context": context.to_dict(), "message": {"orders": orders}}
