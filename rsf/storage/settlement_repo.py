"""Repository for settlements and their embedded reconciliation info.

Every state change is a conditional update: it only applies when the row is
still in the expected pre-transition state, and reports whether it did.
"""

import json
import sqlite3
from datetime import UTC, datetime

from rsf.models.settlement import (
    ExchangeContext,
    ReconAmounts,
    ReconciliationInfo,
    ReconStatus,
    Settlement,
    SettlementStatus,
    SideStatus,
)


def insert_settlement(
    conn: sqlite3.Connection, s: Settlement, commit: bool = True
) -> None:
    """Insert a new settlement. Raises sqlite3.IntegrityError on a duplicate key."""
    conn.execute(
        "INSERT INTO settlements "
        "(settlement_id, participant_id, order_id, collector_id, receiver_id, provider_id, "
        "total_order_value, commission, tcs, tds, withholding_amount, "
        "inter_np_settlement, collector_settlement, status, due_date) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
        (
            s.settlement_id,
            s.participant_id,
            s.order_id,
            s.collector_id,
            s.receiver_id,
            s.provider_id,
            s.total_order_value,
            s.commission,
            s.tcs,
            s.tds,
            s.withholding_amount,
            s.inter_np_settlement,
            s.collector_settlement,
            s.status.value,
            s.due_date,
        ),
    )
    if commit:
        conn.commit()


def get_settlement(
    conn: sqlite3.Connection, participant_id: str, order_id: str
) -> Settlement | None:
    row = conn.execute(
        "SELECT * FROM settlements WHERE participant_id = ? AND order_id = ?",
        (participant_id, order_id),
    ).fetchone()
    if row is None:
        return None
    return _from_row(row)


def get_settlement_by_id(
    conn: sqlite3.Connection, participant_id: str, settlement_id: str
) -> Settlement | None:
    row = conn.execute(
        "SELECT * FROM settlements WHERE participant_id = ? AND settlement_id = ?",
        (participant_id, settlement_id),
    ).fetchone()
    if row is None:
        return None
    return _from_row(row)


def exists(conn: sqlite3.Connection, participant_id: str, order_id: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM settlements WHERE participant_id = ? AND order_id = ?",
        (participant_id, order_id),
    ).fetchone()
    return row is not None


def list_settlements(
    conn: sqlite3.Connection,
    participant_id: str,
    status: SettlementStatus | None = None,
    recon_status: ReconStatus | None = None,
    counterparty_id: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Settlement]:
    sql = "SELECT * FROM settlements WHERE participant_id = ?"
    params: list = [participant_id]
    if status is not None:
        sql += " AND status = ?"
        params.append(status.value)
    if recon_status is not None:
        sql += " AND recon_status = ?"
        params.append(recon_status.value)
    if counterparty_id is not None:
        sql += " AND (collector_id = ? OR receiver_id = ?)"
        params.extend([counterparty_id, counterparty_id])
    sql += " ORDER BY created_at, order_id LIMIT ? OFFSET ?"
    params.extend([limit, offset])
    return [_from_row(r) for r in conn.execute(sql, params).fetchall()]


def get_by_settle_context(
    conn: sqlite3.Connection, transaction_id: str, message_id: str, order_id: str
) -> Settlement | None:
    row = conn.execute(
        "SELECT * FROM settlements "
        "WHERE transaction_id = ? AND message_id = ? AND order_id = ?",
        (transaction_id, message_id, order_id),
    ).fetchone()
    if row is None:
        return None
    return _from_row(row)


def list_by_recon_context(
    conn: sqlite3.Connection,
    transaction_id: str,
    message_id: str,
    participant_id: str | None = None,
) -> list[Settlement]:
    """All settlements that took part in one recon exchange."""
    sql = (
        "SELECT * FROM settlements "
        "WHERE recon_transaction_id = ? AND recon_message_id = ?"
    )
    params: list = [transaction_id, message_id]
    if participant_id is not None:
        sql += " AND participant_id = ?"
        params.append(participant_id)
    sql += " ORDER BY order_id"
    return [_from_row(r) for r in conn.execute(sql, params).fetchall()]


# --- Settlement status transitions ---


def mark_sent(
    conn: sqlite3.Connection,
    participant_id: str,
    order_id: str,
    context: ExchangeContext,
    commit: bool = True,
) -> bool:
    """PREPARED -> PENDING after the agency acknowledged the settle message."""
    cursor = conn.execute(
        "UPDATE settlements SET status = ?, error = NULL, transaction_id = ?, "
        "message_id = ?, updated_at = CURRENT_TIMESTAMP "
        "WHERE participant_id = ? AND order_id = ? AND status = ?",
        (
            SettlementStatus.PENDING.value,
            context.transaction_id,
            context.message_id,
            participant_id,
            order_id,
            SettlementStatus.PREPARED.value,
        ),
    )
    if commit:
        conn.commit()
    return cursor.rowcount == 1


def record_error(
    conn: sqlite3.Connection,
    participant_id: str,
    order_id: str,
    error: str,
    commit: bool = True,
) -> bool:
    """Annotate a PREPARED settlement with the last delivery error."""
    cursor = conn.execute(
        "UPDATE settlements SET error = ?, updated_at = CURRENT_TIMESTAMP "
        "WHERE participant_id = ? AND order_id = ? AND status = ?",
        (error, participant_id, order_id, SettlementStatus.PREPARED.value),
    )
    if commit:
        conn.commit()
    return cursor.rowcount == 1


def apply_settle_report(
    conn: sqlite3.Connection,
    participant_id: str,
    order_id: str,
    expected: SettlementStatus,
    status: SettlementStatus,
    self_status: SideStatus | None,
    provider_status: SideStatus | None,
    settlement_reference: str | None,
    self_settlement_reference: str | None,
    provider_settlement_reference: str | None,
    commit: bool = True,
) -> bool:
    """Store an on_settle report. References only overwrite when present."""
    cursor = conn.execute(
        "UPDATE settlements SET status = ?, "
        "self_status = COALESCE(?, self_status), "
        "provider_status = COALESCE(?, provider_status), "
        "settlement_reference = COALESCE(?, settlement_reference), "
        "self_settlement_reference = COALESCE(?, self_settlement_reference), "
        "provider_settlement_reference = COALESCE(?, provider_settlement_reference), "
        "updated_at = CURRENT_TIMESTAMP "
        "WHERE participant_id = ? AND order_id = ? AND status = ?",
        (
            status.value,
            self_status.value if self_status else None,
            provider_status.value if provider_status else None,
            settlement_reference,
            self_settlement_reference,
            provider_settlement_reference,
            participant_id,
            order_id,
            expected.value,
        ),
    )
    if commit:
        conn.commit()
    return cursor.rowcount == 1


def delete_settlement(
    conn: sqlite3.Connection, participant_id: str, order_id: str, commit: bool = True
) -> bool:
    cursor = conn.execute(
        "DELETE FROM settlements WHERE participant_id = ? AND order_id = ? AND status != ?",
        (participant_id, order_id, SettlementStatus.SETTLED.value),
    )
    if commit:
        conn.commit()
    return cursor.rowcount == 1


# --- Reconciliation ---


def update_recon(
    conn: sqlite3.Connection,
    participant_id: str,
    order_id: str,
    expected: ReconStatus | None,
    info: ReconciliationInfo,
    commit: bool = True,
) -> bool:
    """Replace the embedded recon info if the current recon status is `expected`."""
    ctx = info.context
    cursor = conn.execute(
        "UPDATE settlements SET recon_status = ?, recon_data_json = ?, "
        "on_recon_data_json = ?, recon_context_json = ?, recon_transaction_id = ?, "
        "recon_message_id = ?, recon_settlement_ref = ?, recon_error_json = ?, "
        "recon_due_date = ?, updated_at = CURRENT_TIMESTAMP "
        "WHERE participant_id = ? AND order_id = ? AND recon_status IS ?",
        (
            info.recon_status.value if info.recon_status else None,
            _dump(info.recon_data.to_dict() if info.recon_data else None),
            _dump(info.on_recon_data.to_dict() if info.on_recon_data else None),
            _dump(ctx.to_dict() if ctx else None),
            ctx.transaction_id if ctx else None,
            ctx.message_id if ctx else None,
            info.settlement_ref,
            _dump(info.error),
            info.due_date,
            participant_id,
            order_id,
            expected.value if expected else None,
        ),
    )
    if commit:
        conn.commit()
    return cursor.rowcount == 1


def get_overdue_recons(
    conn: sqlite3.Connection, now_iso: str, participant_id: str | None = None
) -> list[Settlement]:
    """Pending negotiations whose settlement due date has passed.

    Due dates are compared as instants, so rows stored with any UTC offset
    order correctly against `now_iso`.
    """
    sql = "SELECT * FROM settlements WHERE due_date IS NOT NULL AND recon_status IN (?, ?)"
    params: list = [
        ReconStatus.SENT_PENDING.value,
        ReconStatus.RECEIVED_PENDING.value,
    ]
    if participant_id is not None:
        sql += " AND participant_id = ?"
        params.append(participant_id)
    now = _instant(now_iso)
    if now is None:
        raise ValueError(f"Not an ISO timestamp: {now_iso!r}")
    late = []
    for row in conn.execute(sql, params).fetchall():
        due = _instant(row["due_date"])
        if due is not None and due < now:
            late.append((due, _from_row(row)))
    late.sort(key=lambda pair: pair[0])
    return [s for _, s in late]


def _instant(value: str) -> datetime | None:
    try:
        ts = datetime.fromisoformat(value)
    except ValueError:
        return None
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=UTC)


def get_recon_status_breakdown(
    conn: sqlite3.Connection, participant_id: str
) -> dict[str, int]:
    """Count settlements per recon status. Settlements never reconciled count as 'NONE'."""
    rows = conn.execute(
        "SELECT COALESCE(recon_status, 'NONE') AS s, COUNT(*) AS n FROM settlements "
        "WHERE participant_id = ? GROUP BY s",
        (participant_id,),
    ).fetchall()
    return {row["s"]: row["n"] for row in rows}


def _dump(value: dict | None) -> str | None:
    return json.dumps(value, sort_keys=True) if value is not None else None


def _load(value: str | None) -> dict | None:
    return json.loads(value) if value else None


def _from_row(row: sqlite3.Row) -> Settlement:
    settle_ctx = None
    if row["transaction_id"]:
        settle_ctx = ExchangeContext(
            transaction_id=row["transaction_id"], message_id=row["message_id"] or ""
        )
    recon = ReconciliationInfo(
        recon_status=ReconStatus(row["recon_status"]) if row["recon_status"] else None,
        recon_data=ReconAmounts.from_dict(_load(row["recon_data_json"])),
        on_recon_data=ReconAmounts.from_dict(_load(row["on_recon_data_json"])),
        context=ExchangeContext.from_dict(_load(row["recon_context_json"])),
        settlement_ref=row["recon_settlement_ref"],
        error=_load(row["recon_error_json"]),
        due_date=row["recon_due_date"],
    )
    return Settlement(
        settlement_id=row["settlement_id"],
        participant_id=row["participant_id"],
        order_id=row["order_id"],
        collector_id=row["collector_id"],
        receiver_id=row["receiver_id"],
        provider_id=row["provider_id"],
        total_order_value=row["total_order_value"],
        commission=row["commission"],
        tcs=row["tcs"],
        tds=row["tds"],
        withholding_amount=row["withholding_amount"],
        inter_np_settlement=row["inter_np_settlement"],
        collector_settlement=row["collector_settlement"],
        status=SettlementStatus(row["status"]),
        self_status=SideStatus(row["self_status"]) if row["self_status"] else None,
        provider_status=(
            SideStatus(row["provider_status"]) if row["provider_status"] else None
        ),
        settlement_reference=row["settlement_reference"],
        self_settlement_reference=row["self_settlement_reference"],
        provider_settlement_reference=row["provider_settlement_reference"],
        error=row["error"],
        due_date=row["due_date"],
        context=settle_ctx,
        recon=recon,
    )
