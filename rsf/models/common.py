"""Common types and helpers shared across models."""

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import StrEnum
from typing import TypeAlias

ParticipantId: TypeAlias = str
OrderId: TypeAlias = str

CENT = Decimal("0.01")


class Role(StrEnum):
    BAP = "BAP"  # buying side
    BPP = "BPP"  # selling side


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def to_decimal(value: float | int | str | Decimal | None) -> Decimal:
    """Coerce a loosely-typed numeric to Decimal. None and blanks become 0."""
    if value is None or value == "":
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value: float | int | str | Decimal | None) -> float:
    """Round half away from zero to 2 decimals."""
    return float(to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def money_str(value: float | int | Decimal | None) -> str:
    """Format an amount the way protocol payloads carry it ("123.40")."""
    return f"{to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)}"
