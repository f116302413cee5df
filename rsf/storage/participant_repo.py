"""Repository for participant profiles."""

import json
import sqlite3
from dataclasses import asdict

from rsf.models.common import Role
from rsf.models.participant import ParticipantProfile, ProviderDetails


def save_participant(conn: sqlite3.Connection, profile: ParticipantProfile) -> None:
    """Insert or replace a participant profile."""
    conn.execute(
        "INSERT INTO participants "
        "(participant_id, role, subscriber_id, subscriber_url, domain, np_tcs, np_tds, "
        "msn, provider_details_json, counterparties_json) "
        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
        "ON CONFLICT(participant_id) DO UPDATE SET "
        "role = excluded.role, subscriber_id = excluded.subscriber_id, "
        "subscriber_url = excluded.subscriber_url, domain = excluded.domain, "
        "np_tcs = excluded.np_tcs, np_tds = excluded.np_tds, msn = excluded.msn, "
        "provider_details_json = excluded.provider_details_json, "
        "counterparties_json = excluded.counterparties_json, "
        "updated_at = CURRENT_TIMESTAMP",
        (
            profile.participant_id,
            profile.role.value,
            profile.subscriber_id,
            profile.subscriber_url,
            profile.domain,
            profile.np_tcs,
            profile.np_tds,
            int(profile.msn),
            json.dumps([asdict(p) for p in profile.provider_details]),
            json.dumps(profile.counterparties),
        ),
    )
    conn.commit()


def get_participant(
    conn: sqlite3.Connection, participant_id: str
) -> ParticipantProfile | None:
    row = conn.execute(
        "SELECT * FROM participants WHERE participant_id = ?", (participant_id,)
    ).fetchone()
    if row is None:
        return None
    return _from_row(row)


def find_by_subscriber_urls(
    conn: sqlite3.Connection, urls: list[str]
) -> list[ParticipantProfile]:
    """Participants whose subscriber URL is any of the given URIs."""
    urls = [u for u in urls if u]
    if not urls:
        return []
    placeholders = ", ".join("?" for _ in urls)
    rows = conn.execute(
        f"SELECT * FROM participants WHERE subscriber_url IN ({placeholders}) "
        "ORDER BY participant_id",
        urls,
    ).fetchall()
    return [_from_row(r) for r in rows]


def list_participants(conn: sqlite3.Connection) -> list[ParticipantProfile]:
    rows = conn.execute("SELECT * FROM participants ORDER BY participant_id").fetchall()
    return [_from_row(r) for r in rows]


def _from_row(row: sqlite3.Row) -> ParticipantProfile:
    return ParticipantProfile(
        participant_id=row["participant_id"],
        role=Role(row["role"]),
        subscriber_id=row["subscriber_id"],
        subscriber_url=row["subscriber_url"],
        domain=row["domain"],
        np_tcs=row["np_tcs"],
        np_tds=row["np_tds"],
        msn=bool(row["msn"]),
        provider_details=[
            ProviderDetails(**p) for p in json.loads(row["provider_details_json"])
        ],
        counterparties=json.loads(row["counterparties_json"]),
    )
