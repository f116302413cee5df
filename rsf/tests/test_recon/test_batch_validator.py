"""Tests for batch matching, amount parsing and the two commit modes."""

import sqlite3

import pytest

from rsf.errors import ValidationError
from rsf.models.outcome import ErrorCode, ErrorKind
from rsf.models.settlement import (
    ExchangeContext,
    ReconAmounts,
    ReconciliationInfo,
    ReconStatus,
)
from rsf.recon.batch import (
    BatchCommitter,
    PlannedChange,
    match_batch,
    parse_amount,
)
from rsf.settle.lifecycle import SettlementLifecycle
from rsf.storage import audit_repo, settlement_repo

FIGURES = ReconAmounts(amount=840.0, commission=50.0, withholding_amount=0.0, tcs=50.0, tds=60.0)
PENDING = ReconciliationInfo(
    recon_status=ReconStatus.SENT_PENDING,
    recon_data=FIGURES,
    context=ExchangeContext(transaction_id="txn-1", message_id="msg-1"),
)


class TestMatchBatch:
    def test_equal_sets(self):
        assert match_batch(["O1", "O2"], ["O2", "O1"]) == []

    def test_missing_and_extra(self):
        failures = match_batch(["O1", "O2"], ["O1", "O3"])
        assert [(f.code, f.order_id) for f in failures] == [
            (ErrorCode.BATCH_MISMATCH, "O3"),
            (ErrorCode.BATCH_MISMATCH, "O2"),
        ]
        assert all(f.kind == ErrorKind.CONSISTENCY for f in failures)

    def test_duplicates(self):
        failures = match_batch(["O1"], ["O1", "O1"])
        assert [f.code for f in failures] == [ErrorCode.DUPLICATE_ORDER]


class TestParseAmount:
    @pytest.mark.parametrize("raw,expected", [
        ("840", 840.0), ("840.005", 840.01), (" 12.5 ", 12.5), (3, 3.0), ("-1.25", -1.25),
    ])
    def test_valid(self, raw, expected):
        assert parse_amount(raw, "amount", "O1") == expected

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_missing(self, raw):
        with pytest.raises(ValidationError) as exc:
            parse_amount(raw, "amount", "O1")
        assert exc.value.code == ErrorCode.MISSING_FIELD

    @pytest.mark.parametrize("raw", ["abc", "NaN", "Infinity", "1e999999"])
    def test_invalid(self, raw):
        with pytest.raises(ValidationError) as exc:
            parse_amount(raw, "tcs", "O1")
        assert exc.value.code == ErrorCode.INVALID_AMOUNT


@pytest.fixture
def three_settlements(db, config, completed_orders):
    completed_orders("O1", "O2", "O3")
    SettlementLifecycle(db, config).prepare("seller-1", ["O1", "O2", "O3"])
    return ["O1", "O2", "O3"]


def _change(order_id: str, expected: ReconStatus | None = None) -> PlannedChange:
    return PlannedChange("seller-1", order_id, expected, PENDING)


def _status(db, order_id):
    return settlement_repo.get_settlement(db, "seller-1", order_id).recon.recon_status


class TestAtomicCommit:
    def test_all_or_nothing(self, db, three_settlements):
        changes = [_change("O1"), _change("O2", ReconStatus.RECEIVED_PENDING), _change("O3")]
        report = BatchCommitter(db, atomic=True).commit("b1", "recon", changes)
        assert not report.ok
        assert report.committed == []
        assert report.failure.code == ErrorCode.CONFLICT
        assert [_status(db, o) for o in three_settlements] == [None, None, None]

    def test_commits_everything(self, db, three_settlements):
        report = BatchCommitter(db).commit("b1", "recon", [_change(o) for o in three_settlements])
        assert report.ok
        assert report.committed == three_settlements
        assert audit_repo.get_batch_steps(db, "b1") == []


class TestSequentialCommit:
    def test_journals_each_step(self, db, three_settlements):
        report = BatchCommitter(db, atomic=False).commit(
            "b1", "recon", [_change(o) for o in three_settlements]
        )
        assert report.ok
        steps = audit_repo.get_batch_steps(db, "b1")
        assert [s["order_id"] for s in steps] == three_settlements
        assert {s["to_status"] for s in steps} == {"SENT_PENDING"}
        assert audit_repo.get_incomplete_batches(db) == []

    def test_first_failure_is_a_plain_conflict(self, db, three_settlements):
        changes = [_change("O1", ReconStatus.SENT_PENDING), _change("O2")]
        report = BatchCommitter(db, atomic=False).commit("b1", "recon", changes)
        assert report.failure.code == ErrorCode.CONFLICT
        assert report.committed == []
        assert _status(db, "O2") is None

    def test_partial_commit_is_reported(self, db, three_settlements):
        changes = [_change("O1"), _change("O2", ReconStatus.SENT_PENDING), _change("O3")]
        report = BatchCommitter(db, atomic=False).commit("b1", "recon", changes)
        assert report.committed == ["O1"]
        assert report.failure.code == ErrorCode.PARTIAL_COMMIT
        assert report.failure.order_id == "O2"
        assert [_status(db, o) for o in three_settlements] == [ReconStatus.SENT_PENDING, None, None]
        assert [s["result"] for s in audit_repo.get_batch_steps(db, "b1")] == ["committed", "conflict"]
        assert audit_repo.get_incomplete_batches(db) == ["b1"]

    def test_storage_error_is_journaled_as_partial_commit(self, db, three_settlements, monkeypatch):
        real_update = settlement_repo.update_recon

        def locked_on_o2(conn, participant_id, order_id, *args, **kwargs):
            if order_id == "O2":
                raise sqlite3.OperationalError("database is locked")
            return real_update(conn, participant_id, order_id, *args, **kwargs)

        monkeypatch.setattr(settlement_repo, "update_recon", locked_on_o2)
        report = BatchCommitter(db, atomic=False).commit(
            "b1", "recon", [_change(o) for o in three_settlements]
        )
        assert report.committed == ["O1"]
        assert report.failure.code == ErrorCode.PARTIAL_COMMIT
        assert report.failure.order_id == "O2"
        steps = audit_repo.get_batch_steps(db, "b1")
        assert [s["result"] for s in steps] == ["committed", "error"]
        assert steps[1]["detail"] == "database is locked"
        assert audit_repo.get_incomplete_batches(db) == ["b1"]

    def test_storage_error_on_first_order_commits_nothing(self, db, three_settlements, monkeypatch):
        def locked(*args, **kwargs):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(settlement_repo, "update_recon", locked)
        report = BatchCommitter(db, atomic=False).commit(
            "b1", "recon", [_change(o) for o in three_settlements]
        )
        assert report.committed == []
        assert report.failure.kind == ErrorKind.UNEXPECTED
        assert [s["result"] for s in audit_repo.get_batch_steps(db, "b1")] == ["error"]
