"""YAML config loader with snapshot persistence and runtime get/set."""

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from rsf.config.schema import RsfConfig
from rsf.models.common import Role
from rsf.models.participant import ParticipantProfile, ProviderDetails


def load_config(path: str | Path) -> RsfConfig:
    """Load and validate config from a YAML file. An empty file yields defaults."""
    path = Path(path)
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    return RsfConfig(**raw)


def config_hash(config: RsfConfig) -> str:
    """Compute a deterministic SHA256 hash of the config."""
    data = config.model_dump_json(indent=None)
    return hashlib.sha256(data.encode()).hexdigest()[:16]


def snapshot_config(config: RsfConfig, db: Any) -> str:
    """Persist a config snapshot to the database if it changed. Returns the hash.

    The signing key is redacted before the snapshot is written.
    """
    h = config_hash(config)
    cursor = db.execute(
        "SELECT 1 FROM config_snapshots WHERE config_hash = ?", (h,)
    )
    if cursor.fetchone() is None:
        redacted = config.model_copy(
            update={
                "signing": config.signing.model_copy(update={"private_key": "***"})
            }
        )
        db.execute(
            "INSERT INTO config_snapshots (config_hash, config_json, created_at) "
            "VALUES (?, ?, CURRENT_TIMESTAMP)",
            (h, redacted.model_dump_json()),
        )
        db.commit()
    return h


def get_config_value(config: RsfConfig, dotted_key: str) -> Any:
    """Get a config value by dotted key path. E.g. 'storage.atomic_batches'."""
    parts = dotted_key.split(".")
    obj: Any = config
    for part in parts:
        if isinstance(obj, list):
            obj = obj[int(part)]
        elif hasattr(obj, part):
            obj = getattr(obj, part)
        elif isinstance(obj, dict):
            obj = obj[part]
        else:
            raise KeyError(f"Config key not found: {dotted_key}")
    return obj


def set_config_value(config: RsfConfig, dotted_key: str, value: Any) -> RsfConfig:
    """Set a config value by dotted key path and re-validate.

    Returns a new RsfConfig instance.
    """
    data = json.loads(config.model_dump_json())
    parts = dotted_key.split(".")
    target = data
    for part in parts[:-1]:
        target = target[part]
    old_value = target.get(parts[-1])
    if isinstance(old_value, bool) and isinstance(value, str):
        value = value.strip().lower() in ("1", "true", "yes", "on")
    elif isinstance(old_value, int) and isinstance(value, str):
        value = int(value)
    elif isinstance(old_value, float) and isinstance(value, str):
        value = float(value)
    target[parts[-1]] = value
    return RsfConfig(**data)


def load_participants(path: str | Path) -> list[ParticipantProfile]:
    """Load participant profiles from a YAML list."""
    with open(Path(path)) as f:
        raw = yaml.safe_load(f) or []
    if isinstance(raw, dict):
        raw = raw.get("participants", [])
    return [participant_from_dict(item) for item in raw]


def participant_from_dict(item: dict) -> ParticipantProfile:
    return ParticipantProfile(
        participant_id=str(item["participant_id"]),
        role=Role(item["role"]),
        subscriber_id=item["subscriber_id"],
        subscriber_url=item["subscriber_url"],
        domain=item.get("domain", ""),
        np_tcs=float(item.get("np_tcs", 0.0)),
        np_tds=float(item.get("np_tds", 0.0)),
        msn=bool(item.get("msn", False)),
        provider_details=[
            ProviderDetails(**p) for p in item.get("provider_details", [])
        ],
        counterparties=list(item.get("counterparties", [])),
    )
