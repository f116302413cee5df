"""Initial schema: participants, orders, settlements and the protocol log."""

import sqlite3

DDL = [
    # Participant profiles (read-only input to the calculator)
    """
    CREATE TABLE IF NOT EXISTS participants (
        participant_id TEXT PRIMARY KEY,
        role TEXT NOT NULL,
        subscriber_id TEXT NOT NULL,
        subscriber_url TEXT NOT NULL,
        domain TEXT NOT NULL DEFAULT '',
        np_tcs REAL NOT NULL DEFAULT 0,
        np_tds REAL NOT NULL DEFAULT 0,
        msn INTEGER NOT NULL DEFAULT 0,
        provider_details_json TEXT NOT NULL DEFAULT '[]',
        counterparties_json TEXT NOT NULL DEFAULT '[]',
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    (
        "CREATE INDEX IF NOT EXISTS idx_participants_url "
        "ON participants(subscriber_url)"
    ),

    # Orders, one per (participant, order)
    """
    CREATE TABLE IF NOT EXISTS orders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        participant_id TEXT NOT NULL REFERENCES participants(participant_id),
        order_id TEXT NOT NULL,
        bap_id TEXT NOT NULL,
        bap_uri TEXT NOT NULL,
        bpp_id TEXT NOT NULL,
        bpp_uri TEXT NOT NULL,
        domain TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        state TEXT NOT NULL,
        collected_by TEXT NOT NULL,
        total_order_value REAL NOT NULL,
        buyer_finder_fee_type TEXT NOT NULL,
        buyer_finder_fee_value REAL NOT NULL,
        buyer_finder_fee_amount REAL NOT NULL,
        settlement_basis TEXT NOT NULL,
        settlement_window TEXT NOT NULL,
        withholding_amount REAL NOT NULL DEFAULT 0,
        msn INTEGER NOT NULL DEFAULT 1,
        breakup_json TEXT NOT NULL DEFAULT '[]',
        picked_up_at TEXT,
        delivered_at TEXT,
        due_date TEXT,
        settlement_initiated INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(participant_id, order_id)
    )
    """,

    # Settlements with the reconciliation value object embedded
    """
    CREATE TABLE IF NOT EXISTS settlements (
        settlement_id TEXT PRIMARY KEY,
        participant_id TEXT NOT NULL REFERENCES participants(participant_id),
        order_id TEXT NOT NULL,
        collector_id TEXT NOT NULL,
        receiver_id TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        total_order_value REAL NOT NULL,
        commission REAL NOT NULL,
        tcs REAL NOT NULL,
        tds REAL NOT NULL,
        withholding_amount REAL NOT NULL,
        inter_np_settlement REAL NOT NULL,
        collector_settlement REAL NOT NULL,
        status TEXT NOT NULL DEFAULT 'PREPARED',
        self_status TEXT,
        provider_status TEXT,
        settlement_reference TEXT,
        self_settlement_reference TEXT,
        provider_settlement_reference TEXT,
        error TEXT,
        due_date TEXT,
        transaction_id TEXT,
        message_id TEXT,
        recon_status TEXT,
        recon_data_json TEXT,
        on_recon_data_json TEXT,
        recon_context_json TEXT,
        recon_transaction_id TEXT,
        recon_message_id TEXT,
        recon_settlement_ref TEXT,
        recon_error_json TEXT,
        recon_due_date TEXT,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(participant_id, order_id)
    )
    """,
    (
        "CREATE INDEX IF NOT EXISTS idx_settlements_settle_ctx "
        "ON settlements(transaction_id, message_id)"
    ),
    (
        "CREATE INDEX IF NOT EXISTS idx_settlements_recon_ctx "
        "ON settlements(recon_transaction_id, recon_message_id)"
    ),
    "CREATE INDEX IF NOT EXISTS idx_settlements_recon_status ON settlements(recon_status)",

    # Every protocol message sent or received, keyed by exchange
    """
    CREATE TABLE IF NOT EXISTS exchanges (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        participant_id TEXT NOT NULL,
        action TEXT NOT NULL,
        direction TEXT NOT NULL,
        transaction_id TEXT NOT NULL,
        message_id TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        response_json TEXT,
        status_code INTEGER,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(transaction_id, message_id, action, direction)
    )
    """,

    # Journal for sequential (non-atomic) batch commits
    """
    CREATE TABLE IF NOT EXISTS batch_audit (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        batch_id TEXT NOT NULL,
        participant_id TEXT NOT NULL,
        action TEXT NOT NULL,
        order_id TEXT NOT NULL,
        from_status TEXT,
        to_status TEXT,
        result TEXT NOT NULL,
        detail TEXT NOT NULL DEFAULT '',
        recorded_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_batch_audit_batch ON batch_audit(batch_id)",

    # Operator audit log
    """
    CREATE TABLE IF NOT EXISTS operator_commands (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        command TEXT NOT NULL,
        args TEXT NOT NULL DEFAULT '',
        result TEXT NOT NULL DEFAULT '',
        executed_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,

    # Config snapshots
    """
    CREATE TABLE IF NOT EXISTS config_snapshots (
        config_hash TEXT PRIMARY KEY,
        config_json TEXT NOT NULL,
        created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """,
]


def up(conn: sqlite3.Connection) -> None:
    for stmt in DDL:
        conn.execute(stmt)
    conn.commit()
