"""Repository for operator commands."""

import sqlite3


# --- Operator commands ---

def log_operator_command(
    conn: sqlite3.Connection,
    command: str,
    args: str = "",
    result: str = "",
    commit: bool = True,
) -> int:
    """Log an operator command for audit."""
    cursor = conn.execute(
        "INSERT INTO operator_commands (command, args, result) VALUES (?, ?, ?)",
        (command, args, result),
    )
    if commit:
        conn.commit()
    assert cursor.lastrowid is not None
    return cursor.lastrowid


def get_recent_operator_commands(
    conn: sqlite3.Connection, limit: int = 20
) -> list[dict]:
    """Get recent operator commands."""
    rows = conn.execute(
        "SELECT * FROM operator_commands ORDER BY executed_at DESC, id DESC LIMIT ?",
        (limit,),
    ).fetchall()
    return [dict(r) for r in rows]


