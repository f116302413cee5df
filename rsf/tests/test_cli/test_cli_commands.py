"""Tests for CLI commands."""

import json
from pathlib import Path

import pytest
import yaml

from rsf.cli import main
from rsf.models.protocol import Action, Direction
from rsf.storage import audit_repo, exchange_repo, order_repo, state_repo
from rsf.storage.database import connect
from rsf.tests.factories import make_order

PARTICIPANTS = {
    "participants": [{
        "participant_id": "seller-1",
        "role": "BPP",
        "subscriber_id": "seller.example.com",
        "subscriber_url": "https://seller.example.com/ondc",
        "domain": "ONDC:RET10",
        "np_tcs": 5.0,
        "np_tds": 6.0,
        "provider_details": [{
            "provider_id": "P1",
            "account_number": "000111222333",
            "ifsc_code": "EXMP0000001",
            "bank_name": "Example Bank",
        }],
    }]
}


@pytest.fixture
def cli_args(tmp_path: Path, config_yaml_path: Path) -> list[str]:
    return ["--config", str(config_yaml_path), "--db", str(tmp_path / "cli.db")]


@pytest.fixture
def loaded(tmp_path: Path, cli_args) -> list[str]:
    path = tmp_path / "participants.yaml"
    path.write_text(yaml.dump(PARTICIPANTS))
    assert main(cli_args + ["participants", "load", str(path)]) == 0
    return cli_args


class TestCLI:
    def test_no_command_returns_1(self):
        assert main([]) == 1

    def test_participants_load_and_list(self, tmp_path: Path, capsys, loaded):
        assert "Loaded 1 participants" in capsys.readouterr().out
        assert main(loaded + ["participants", "list"]) == 0
        assert "seller-1: BPP seller.example.com" in capsys.readouterr().out

        conn = connect(tmp_path / "cli.db")
        try:
            assert state_repo.get_recent_operator_commands(conn)[0]["command"] == "participants-load"
        finally:
            conn.close()

    def test_prepare_list_and_void(self, tmp_path: Path, loaded, capsys):
        conn = connect(tmp_path / "cli.db")
        try:
            order_repo.upsert_order(conn, make_order("O1"))
        finally:
            conn.close()
        capsys.readouterr()

        assert main(loaded + ["prepare", "seller-1", "O1"]) == 0
        assert "OK: 1 orders" in capsys.readouterr().out

        assert main(loaded + ["settlements", "seller-1", "--status", "prepared"]) == 0
        out = capsys.readouterr().out
        assert "Settlements: 1" in out
        assert "inter_np=840.00" in out

        assert main(loaded + ["prepare", "seller-1", "O1"]) == 1
        assert "FAILED DUPLICATE_SETTLEMENT [O1]" in capsys.readouterr().out

        assert main(loaded + ["void", "seller-1", "O1"]) == 0
        assert main(loaded + ["settlements", "seller-1"]) == 0
        assert "Settlements: 0" in capsys.readouterr().out

    def test_settle_without_signing_key(self, loaded, capsys):
        assert main(loaded + ["settle", "seller-1", "some-id"]) == 1
        assert "TRANSPORT_FAILED" in capsys.readouterr().out

    def test_filings_without_signing_key(self, loaded, capsys):
        capsys.readouterr()
        assert main(loaded + ["settle-nil", "seller-1"]) == 1
        assert "TRANSPORT_FAILED" in capsys.readouterr().out
        assert main(loaded + ["settle-misc", "seller-1", "--self-amount", "10"]) == 1
        assert "TRANSPORT_FAILED" in capsys.readouterr().out

    def test_breakdown_and_overdue(self, loaded, capsys):
        capsys.readouterr()
        assert main(loaded + ["breakdown", "seller-1"]) == 0
        assert main(loaded + ["overdue"]) == 0
        assert "Overdue reconciliations: 0" in capsys.readouterr().out

    def test_keygen(self, capsys):
        assert main(["keygen"]) == 0
        keys = json.loads(capsys.readouterr().out)
        assert set(keys) == {"private_key", "public_key"}

    def test_config_show_redacts_key(self, tmp_path: Path, cli_args, capsys):
        path = tmp_path / "signed.yaml"
        path.write_text(yaml.dump({"signing": {"private_key": "c2VjcmV0"}}))
        assert main(["--config", str(path), "--db", str(tmp_path / "cli.db"), "config", "show"]) == 0
        out = capsys.readouterr().out
        assert "c2VjcmV0" not in out
        assert "Snapshot:" in out

    def test_config_set(self, cli_args, capsys):
        assert main(cli_args + ["config", "set", "storage.atomic_batches=false"]) == 0
        assert "False" in capsys.readouterr().out
        assert main(cli_args + ["config", "set", "nokey"]) == 1
        assert main(cli_args + ["config", "set", "gateway.timeout_seconds=-1"]) == 1

    def test_batches_lists_incomplete_journal(self, tmp_path: Path, loaded, capsys):
        conn = connect(tmp_path / "cli.db")
        try:
            audit_repo.record_step(conn, "b-ok", "seller-1", "recon", "O1", None, "RECEIVED_PENDING", "committed")
            audit_repo.record_step(conn, "b-bad", "seller-1", "recon", "O1", None, "RECEIVED_PENDING", "committed")
            audit_repo.record_step(
                conn, "b-bad", "seller-1", "recon", "O2", None, "RECEIVED_PENDING",
                "error", "database is locked",
            )
        finally:
            conn.close()
        capsys.readouterr()

        assert main(loaded + ["batches"]) == 0
        out = capsys.readouterr().out
        assert "Incomplete batches: 1" in out
        assert "b-bad (recon, seller-1)" in out
        assert "O2 - -> RECEIVED_PENDING error database is locked" in out
        assert "b-ok" not in out

        assert main(loaded + ["batches", "--batch", "b-ok"]) == 0
        assert "O1 - -> RECEIVED_PENDING committed" in capsys.readouterr().out
        assert main(loaded + ["batches", "--batch", "nope"]) == 1

    def test_exchanges_and_single_exchange(self, tmp_path: Path, loaded, capsys):
        conn = connect(tmp_path / "cli.db")
        try:
            exchange_repo.record_exchange(
                conn, "seller-1", Action.RECON, Direction.OUTBOUND, "t1", "m1", {"hello": "world"}
            )
            exchange_repo.record_response(
                conn, "t1", "m1", Action.RECON, Direction.OUTBOUND,
                {"message": {"ack": {"status": "ACK"}}}, 200,
            )
        finally:
            conn.close()
        capsys.readouterr()

        assert main(loaded + ["exchanges", "seller-1"]) == 0
        out = capsys.readouterr().out
        assert "Exchanges: 1" in out
        assert "outbound recon t1/m1 status=200" in out

        assert main(loaded + ["exchange", "t1", "m1", "recon"]) == 0
        shown = json.loads(capsys.readouterr().out)
        assert shown["payload"] == {"hello": "world"}
        assert shown["status_code"] == 200
        assert main(loaded + ["exchange", "t1", "m1", "recon", "--direction", "inbound"]) == 1

    def test_history(self, loaded, capsys):
        capsys.readouterr()
        assert main(loaded + ["history"]) == 0
        assert "participants-load" in capsys.readouterr().out
