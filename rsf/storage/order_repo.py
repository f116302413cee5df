"""Repository for orders."""

import json
import sqlite3
from dataclasses import asdict

from rsf.models.common import Role
from rsf.models.order import FeeType, Order, OrderState, QuoteLine, SettlementBasis


def upsert_order(conn: sqlite3.Connection, order: Order, commit: bool = True) -> None:
    """Insert an order or overwrite its mutable facts."""
    conn.execute(
        "INSERT INTO orders "
        "(participant_id, order_id, bap_id, bap_uri, bpp_id, bpp_uri, domain, provider_id, "
        "state, collected_by, total_order_value, buyer_finder_fee_type, "
        "buyer_finder_fee_value, buyer_finder_fee_amount, settlement_basis, "
        "settlement_window, withholding_amount, msn, breakup_json, picked_up_at, "
        "delivered_at, due_date, settlement_initiated) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT(participant_id, order_id) DO UPDATE SET "
        "bap_id = excluded.bap_id, bap_uri = excluded.bap_uri, "
        "bpp_id = excluded.bpp_id, bpp_uri = excluded.bpp_uri, "
        "domain = excluded.domain, provider_id = excluded.provider_id, "
        "state = excluded.state, collected_by = excluded.collected_by, "
        "total_order_value = excluded.total_order_value, "
        "buyer_finder_fee_type = excluded.buyer_finder_fee_type, "
        "buyer_finder_fee_value = excluded.buyer_finder_fee_value, "
        "buyer_finder_fee_amount = excluded.buyer_finder_fee_amount, "
        "settlement_basis = excluded.settlement_basis, "
        "settlement_window = excluded.settlement_window, "
        "withholding_amount = excluded.withholding_amount, msn = excluded.msn, "
        "breakup_json = excluded.breakup_json, picked_up_at = excluded.picked_up_at, "
        "delivered_at = excluded.delivered_at, due_date = excluded.due_date, "
        "updated_at = CURRENT_TIMESTAMP",
        (
            order.participant_id,
            order.order_id,
            order.bap_id,
            order.bap_uri,
            order.bpp_id,
            order.bpp_uri,
            order.domain,
            order.provider_id,
            order.state.value,
            order.collected_by.value,
            order.total_order_value,
            order.buyer_finder_fee_type.value,
            order.buyer_finder_fee_value,
            order.buyer_finder_fee_amount,
            order.settlement_basis.value,
            order.settlement_window,
            order.withholding_amount,
            int(order.msn),
            json.dumps([asdict(line) for line in order.breakup]),
            order.picked_up_at,
            order.delivered_at,
            order.due_date,
            int(order.settlement_initiated),
        ),
    )
    if commit:
        conn.commit()


def get_order(
    conn: sqlite3.Connection, participant_id: str, order_id: str
) -> Order | None:
    row = conn.execute(
        "SELECT * FROM orders WHERE participant_id = ? AND order_id = ?",
        (participant_id, order_id),
    ).fetchone()
    if row is None:
        return None
    return _from_row(row)


def set_settlement_initiated(
    conn: sqlite3.Connection,
    participant_id: str,
    order_id: str,
    initiated: bool,
    commit: bool = True,
) -> bool:
    """Flip the settlement-initiated flag. Returns False if the flag already had that value."""
    cursor = conn.execute(
        "UPDATE orders SET settlement_initiated = ?, updated_at = CURRENT_TIMESTAMP "
        "WHERE participant_id = ? AND order_id = ? AND settlement_initiated = ?",
        (int(initiated), participant_id, order_id, int(not initiated)),
    )
    if commit:
        conn.commit()
    return cursor.rowcount == 1


def list_orders(
    conn: sqlite3.Connection,
    participant_id: str,
    state: OrderState | None = None,
    limit: int = 100,
) -> list[Order]:
    sql = "SELECT * FROM orders WHERE participant_id = ?"
    params: list = [participant_id]
    if state is not None:
        sql += " AND state = ?"
        params.append(state.value)
    sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
    params.append(limit)
    return [_from_row(r) for r in conn.execute(sql, params).fetchall()]


def _from_row(row: sqlite3.Row) -> Order:
    return Order(
        participant_id=row["participant_id"],
        order_id=row["order_id"],
        bap_id=row["bap_id"],
        bap_uri=row["bap_uri"],
        bpp_id=row["bpp_id"],
        bpp_uri=row["bpp_uri"],
        domain=row["domain"],
        provider_id=row["provider_id"],
        state=OrderState(row["state"]),
        collected_by=Role(row["collected_by"]),
        total_order_value=row["total_order_value"],
        buyer_finder_fee_type=FeeType(row["buyer_finder_fee_type"]),
        buyer_finder_fee_value=row["buyer_finder_fee_value"],
        buyer_finder_fee_amount=row["buyer_finder_fee_amount"],
        settlement_basis=SettlementBasis(row["settlement_basis"]),
        settlement_window=row["settlement_window"],
        withholding_amount=row["withholding_amount"],
        msn=bool(row["msn"]),
        breakup=[QuoteLine(**line) for line in json.loads(row["breakup_json"])],
        picked_up_at=row["picked_up_at"],
        delivered_at=row["delivered_at"],
        due_date=row["due_date"],
        settlement_initiated=bool(row["settlement_initiated"]),
    )
