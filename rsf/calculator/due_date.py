"""Settlement due date: basis timestamp plus the settlement window."""

import re
from datetime import UTC, datetime, timedelta

from rsf.models.order import SettlementBasis

_DURATION_RE = re.compile(
    r"^P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


def parse_window(window: str | None) -> timedelta | None:
    """Parse an ISO-8601 duration like "P2D" or "PT36H".

    Year and month designators are not accepted; they have no fixed length.
    """
    if not window:
        return None
    match = _DURATION_RE.match(window.strip().upper())
    if match is None or window.strip().upper() in ("P", "PT"):
        return None
    parts = {k: float(v) for k, v in match.groupdict().items() if v is not None}
    if not parts:
        return None
    return timedelta(**parts)


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts


def compute_due_date(
    basis: SettlementBasis | str,
    picked_up_at: str | None,
    delivered_at: str | None,
    window: str | None,
) -> str | None:
    """Return the due date as a UTC ISO timestamp, or None when the inputs are incomplete."""
    anchor = picked_up_at if basis == SettlementBasis.PICKUP else delivered_at
    ts = _parse_ts(anchor)
    delta = parse_window(window)
    if ts is None or delta is None:
        return None
    return (ts + delta).astimezone(UTC).isoformat()
