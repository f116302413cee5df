"""Repository for the sequential batch-commit journal."""

import sqlite3


def record_step(
    conn: sqlite3.Connection,
    batch_id: str,
    participant_id: str,
    action: str,
    order_id: str,
    from_status: str | None,
    to_status: str | None,
    result: str,
    detail: str = "",
) -> None:
    """Journal one per-order commit of a non-atomic batch. Always commits."""
    conn.execute(
        "INSERT INTO batch_audit "
        "(batch_id, participant_id, action, order_id, from_status, to_status, result, detail) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
        (batch_id, participant_id, action, order_id, from_status, to_status, result, detail),
    )
    conn.commit()


def get_batch_steps(conn: sqlite3.Connection, batch_id: str) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM batch_audit WHERE batch_id = ? ORDER BY id", (batch_id,)
    ).fetchall()
    return [dict(r) for r in rows]


def get_incomplete_batches(conn: sqlite3.Connection) -> list[str]:
    """Batch ids with at least one failed step."""
    rows = conn.execute(
        "SELECT DISTINCT batch_id FROM batch_audit WHERE result != 'committed' "
        "ORDER BY batch_id"
    ).fetchall()
    return [r[0] for r in rows]
