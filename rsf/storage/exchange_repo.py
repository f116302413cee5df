"""Repository for the protocol message log (every settle/recon message in or out)."""

import json
import sqlite3

from rsf.models.protocol import Action, Direction


def record_exchange(
    conn: sqlite3.Connection,
    participant_id: str,
    action: Action,
    direction: Direction,
    transaction_id: str,
    message_id: str,
    payload: dict,
    commit: bool = True,
) -> int:
    """Log a protocol message. Replaying the same message replaces the payload."""
    cursor = conn.execute(
        "INSERT INTO exchanges "
        "(participant_id, action, direction, transaction_id, message_id, payload_json) "
        "VALUES (?, ?, ?, ?, ?, ?) "
        "ON CONFLICT(transaction_id, message_id, action, direction) DO UPDATE SET "
        "payload_json = excluded.payload_json",
        (
            participant_id,
            action.value,
            direction.value,
            transaction_id,
            message_id,
            json.dumps(payload, sort_keys=True),
        ),
    )
    if commit:
        conn.commit()
    return cursor.lastrowid or 0


def record_response(
    conn: sqlite3.Connection,
    transaction_id: str,
    message_id: str,
    action: Action,
    direction: Direction,
    response: dict | None,
    status_code: int | None,
    commit: bool = True,
) -> None:
    conn.execute(
        "UPDATE exchanges SET response_json = ?, status_code = ? "
        "WHERE transaction_id = ? AND message_id = ? AND action = ? AND direction = ?",
        (
            json.dumps(response, sort_keys=True) if response is not None else None,
            status_code,
            transaction_id,
            message_id,
            action.value,
            direction.value,
        ),
    )
    if commit:
        conn.commit()


def get_exchange(
    conn: sqlite3.Connection,
    transaction_id: str,
    message_id: str,
    action: Action,
    direction: Direction,
) -> dict | None:
    row = conn.execute(
        "SELECT * FROM exchanges "
        "WHERE transaction_id = ? AND message_id = ? AND action = ? AND direction = ?",
        (transaction_id, message_id, action.value, direction.value),
    ).fetchone()
    if row is None:
        return None
    return _from_row(row)


def list_exchanges(
    conn: sqlite3.Connection, participant_id: str, limit: int = 50
) -> list[dict]:
    rows = conn.execute(
        "SELECT * FROM exchanges WHERE participant_id = ? "
        "ORDER BY created_at DESC, id DESC LIMIT ?",
        (participant_id, limit),
    ).fetchall()
    return [_from_row(r) for r in rows]


def _from_row(row: sqlite3.Row) -> dict:
    d = dict(row)
    d["payload"] = json.loads(d.pop("payload_json"))
    raw = d.pop("response_json")
    d["response"] = json.loads(raw) if raw else None
    return d
