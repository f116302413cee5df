"""Shared test fixtures."""

import sqlite3
from pathlib import Path

import pytest
import yaml

from rsf.config.schema import AgencyConfig, RsfConfig
from rsf.models.participant import ParticipantProfile
from rsf.storage import order_repo, participant_repo
from rsf.storage.database import connect, run_migrations
from rsf.tests.factories import FakeGateway, make_order, make_profile


@pytest.fixture
def db(tmp_path: Path) -> sqlite3.Connection:
    conn = connect(tmp_path / "test.db")
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def config() -> RsfConfig:
    return RsfConfig(
        agency=AgencyConfig(
            agency_id="agency.example.com",
            agency_url="https://agency.example.com/rsf",
        )
    )


@pytest.fixture
def seller(db: sqlite3.Connection) -> ParticipantProfile:
    profile = make_profile()
    participant_repo.save_participant(db, profile)
    return profile


@pytest.fixture
def completed_orders(db: sqlite3.Connection, seller: ParticipantProfile):
    """Factory: persist completed orders for the seller and return their ids."""

    def _create(*order_ids: str, **overrides) -> list[str]:
        for order_id in order_ids:
            order_repo.upsert_order(db, make_order(order_id, seller.participant_id, **overrides))
        return list(order_ids)

    return _create


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def config_yaml_path(tmp_path: Path) -> Path:
    """Write a minimal valid config YAML and return its path."""
    data = {
        "agency": {"agency_id": "agency.example.com", "agency_url": "https://agency.example.com"},
        "storage": {"db_path": str(tmp_path / "cli.db"), "atomic_batches": True},
    }
    path = tmp_path / "test_config.yaml"
    with open(path, "w") as f:
        yaml.dump(data, f)
    return path
