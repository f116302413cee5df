"""Tests for repository CRUD and conditional updates."""

import sqlite3
from dataclasses import replace

import pytest

from rsf.models.order import OrderState
from rsf.models.protocol import Action, Direction
from rsf.models.settlement import (
    ExchangeContext,
    ReconAmounts,
    ReconciliationInfo,
    ReconStatus,
    Settlement,
    SettlementStatus,
    SideStatus,
)
from rsf.storage import (
    audit_repo,
    exchange_repo,
    order_repo,
    participant_repo,
    settlement_repo,
    state_repo,
)
from rsf.tests.factories import SELLER_URI, make_order, make_profile


def _make_settlement(order_id: str = "O1", **overrides) -> Settlement:
    data = {
        "settlement_id": f"s-{order_id}",
        "participant_id": "seller-1",
        "order_id": order_id,
        "collector_id": "buyer.example.com",
        "receiver_id": "seller.example.com",
        "provider_id": "P1",
        "total_order_value": 1000.0,
        "commission": 50.0,
        "tcs": 50.0,
        "tds": 60.0,
        "withholding_amount": 0.0,
        "inter_np_settlement": 840.0,
        "collector_settlement": 160.0,
        "due_date": "2026-01-12T10:00:00+00:00",
    }
    data.update(overrides)
    return Settlement(**data)


FIGURES = ReconAmounts(amount=840.0, commission=50.0, withholding_amount=0.0, tcs=50.0, tds=60.0)
CTX = ExchangeContext(transaction_id="t1", message_id="m1", bap_id="b", bpp_id="s")


class TestParticipantRepo:
    def test_save_and_get(self, db: sqlite3.Connection):
        profile = make_profile(counterparties=["buyer.example.com"])
        participant_repo.save_participant(db, profile)
        assert participant_repo.get_participant(db, "seller-1") == profile

    def test_save_replaces(self, db: sqlite3.Connection):
        participant_repo.save_participant(db, make_profile())
        participant_repo.save_participant(db, make_profile(np_tcs=1.0))
        assert participant_repo.get_participant(db, "seller-1").np_tcs == 1.0
        assert len(participant_repo.list_participants(db)) == 1

    def test_find_by_subscriber_urls(self, db: sqlite3.Connection):
        participant_repo.save_participant(db, make_profile())
        found = participant_repo.find_by_subscriber_urls(db, ["https://nobody", SELLER_URI])
        assert [p.participant_id for p in found] == ["seller-1"]
        assert participant_repo.find_by_subscriber_urls(db, ["", ""]) == []

    def test_missing(self, db: sqlite3.Connection):
        assert participant_repo.get_participant(db, "nope") is None


class TestOrderRepo:
    def test_upsert_and_get(self, db: sqlite3.Connection, seller):
        order = make_order()
        order_repo.upsert_order(db, order)
        assert order_repo.get_order(db, "seller-1", "O1") == order

    def test_upsert_keeps_settlement_flag(self, db: sqlite3.Connection, seller):
        order_repo.upsert_order(db, make_order())
        assert order_repo.set_settlement_initiated(db, "seller-1", "O1", True)
        order_repo.upsert_order(db, make_order(total_order_value=999.0))
        stored = order_repo.get_order(db, "seller-1", "O1")
        assert stored.settlement_initiated is True
        assert stored.total_order_value == 999.0

    def test_settlement_flag_is_conditional(self, db: sqlite3.Connection, seller):
        order_repo.upsert_order(db, make_order())
        assert order_repo.set_settlement_initiated(db, "seller-1", "O1", True)
        assert not order_repo.set_settlement_initiated(db, "seller-1", "O1", True)
        assert order_repo.set_settlement_initiated(db, "seller-1", "O1", False)

    def test_list_by_state(self, db: sqlite3.Connection, seller):
        order_repo.upsert_order(db, make_order("O1"))
        order_repo.upsert_order(db, make_order("O2", state=OrderState.ACCEPTED))
        completed = order_repo.list_orders(db, "seller-1", state=OrderState.COMPLETED)
        assert [o.order_id for o in completed] == ["O1"]

    def test_requires_known_participant(self, db: sqlite3.Connection):
        with pytest.raises(sqlite3.IntegrityError):
            order_repo.upsert_order(db, make_order(participant_id="ghost"))


class TestSettlementRepo:
    def test_insert_and_get(self, db: sqlite3.Connection, seller):
        settlement_repo.insert_settlement(db, _make_settlement())
        s = settlement_repo.get_settlement(db, "seller-1", "O1")
        assert s == _make_settlement()
        assert settlement_repo.get_settlement_by_id(db, "seller-1", "s-O1") == s
        assert s.recon == ReconciliationInfo()

    def test_duplicate_key_rejected(self, db: sqlite3.Connection, seller):
        settlement_repo.insert_settlement(db, _make_settlement())
        with pytest.raises(sqlite3.IntegrityError):
            settlement_repo.insert_settlement(db, _make_settlement(settlement_id="other"))

    def test_mark_sent_only_from_prepared(self, db: sqlite3.Connection, seller):
        settlement_repo.insert_settlement(db, _make_settlement())
        assert settlement_repo.mark_sent(db, "seller-1", "O1", CTX)
        assert not settlement_repo.mark_sent(db, "seller-1", "O1", CTX)
        s = settlement_repo.get_by_settle_context(db, "t1", "m1", "O1")
        assert s.status == SettlementStatus.PENDING
        assert s.context.transaction_id == "t1"

    def test_record_error_keeps_prepared(self, db: sqlite3.Connection, seller):
        settlement_repo.insert_settlement(db, _make_settlement())
        assert settlement_repo.record_error(db, "seller-1", "O1", "NACK 70000")
        s = settlement_repo.get_settlement(db, "seller-1", "O1")
        assert s.status == SettlementStatus.PREPARED
        assert s.error == "NACK 70000"

    def test_apply_settle_report(self, db: sqlite3.Connection, seller):
        settlement_repo.insert_settlement(db, _make_settlement())
        settlement_repo.mark_sent(db, "seller-1", "O1", CTX)
        ok = settlement_repo.apply_settle_report(
            db, "seller-1", "O1",
            expected=SettlementStatus.PENDING,
            status=SettlementStatus.SETTLED,
            self_status=SideStatus.SETTLED,
            provider_status=None,
            settlement_reference="ref-1",
            self_settlement_reference=None,
            provider_settlement_reference=None,
        )
        assert ok
        s = settlement_repo.get_settlement(db, "seller-1", "O1")
        assert s.status == SettlementStatus.SETTLED
        assert s.self_status == SideStatus.SETTLED
        assert s.provider_status is None
        assert s.settlement_reference == "ref-1"

    def test_update_recon_is_conditional(self, db: sqlite3.Connection, seller):
        settlement_repo.insert_settlement(db, _make_settlement())
        info = ReconciliationInfo(
            recon_status=ReconStatus.SENT_PENDING,
            recon_data=FIGURES,
            context=CTX,
            settlement_ref="r1",
        )
        assert settlement_repo.update_recon(db, "seller-1", "O1", None, info)
        assert not settlement_repo.update_recon(db, "seller-1", "O1", None, info)
        s = settlement_repo.get_settlement(db, "seller-1", "O1")
        assert s.recon == info
        assert settlement_repo.list_by_recon_context(db, "t1", "m1") == [s]

    def test_overdue_and_breakdown(self, db: sqlite3.Connection, seller):
        pending = ReconciliationInfo(
            recon_status=ReconStatus.SENT_PENDING, recon_data=FIGURES, context=CTX
        )
        settlement_repo.insert_settlement(db, _make_settlement("O1", due_date="2026-01-01T00:00:00+00:00"))
        settlement_repo.insert_settlement(db, _make_settlement("O2", due_date="2026-03-01T00:00:00+00:00"))
        settlement_repo.insert_settlement(db, _make_settlement("O3", due_date="2026-01-01T00:00:00+00:00"))
        settlement_repo.update_recon(db, "seller-1", "O1", None, pending)
        settlement_repo.update_recon(db, "seller-1", "O2", None, pending)

        overdue = settlement_repo.get_overdue_recons(db, "2026-02-01T00:00:00+00:00")
        assert [s.order_id for s in overdue] == ["O1"]
        assert settlement_repo.get_recon_status_breakdown(db, "seller-1") == {
            "SENT_PENDING": 2,
            "NONE": 1,
        }

    def test_overdue_compares_instants_across_offsets(self, db: sqlite3.Connection, seller):
        pending = ReconciliationInfo(
            recon_status=ReconStatus.SENT_PENDING, recon_data=FIGURES, context=CTX
        )
        # 04:30Z and 07:00Z; text order disagrees with instant order
        settlement_repo.insert_settlement(db, _make_settlement("O1", due_date="2026-01-12T10:00:00+05:30"))
        settlement_repo.insert_settlement(db, _make_settlement("O2", due_date="2026-01-12T07:00:00+00:00"))
        settlement_repo.insert_settlement(db, _make_settlement("O3", due_date="2026-01-12T09:00:00+00:00"))
        for order_id in ("O1", "O2", "O3"):
            settlement_repo.update_recon(db, "seller-1", order_id, None, pending)

        overdue = settlement_repo.get_overdue_recons(db, "2026-01-12T08:00:00+00:00")
        assert [s.order_id for s in overdue] == ["O1", "O2"]

    def test_delete_refuses_settled(self, db: sqlite3.Connection, seller):
        settlement_repo.insert_settlement(db, _make_settlement(status=SettlementStatus.SETTLED))
        assert not settlement_repo.delete_settlement(db, "seller-1", "O1")
        settlement_repo.insert_settlement(db, _make_settlement("O2"))
        assert settlement_repo.delete_settlement(db, "seller-1", "O2")
        assert settlement_repo.get_settlement(db, "seller-1", "O2") is None

    def test_list_filters(self, db: sqlite3.Connection, seller):
        settlement_repo.insert_settlement(db, _make_settlement("O1"))
        settlement_repo.insert_settlement(
            db, replace(_make_settlement("O2"), collector_id="someone-else")
        )
        rows = settlement_repo.list_settlements(db, "seller-1", counterparty_id="someone-else")
        assert [s.order_id for s in rows] == ["O2"]
        rows = settlement_repo.list_settlements(db, "seller-1", status=SettlementStatus.PREPARED)
        assert len(rows) == 2


class TestExchangeRepo:
    def test_record_and_respond(self, db: sqlite3.Connection):
        exchange_repo.record_exchange(
            db, "seller-1", Action.RECON, Direction.OUTBOUND, "t1", "m1", {"a": 1}
        )
        exchange_repo.record_response(
            db, "t1", "m1", Action.RECON, Direction.OUTBOUND, {"message": {}}, 200
        )
        row = exchange_repo.get_exchange(db, "t1", "m1", Action.RECON, Direction.OUTBOUND)
        assert row["payload"] == {"a": 1}
        assert row["response"] == {"message": {}}
        assert row["status_code"] == 200

    def test_replay_replaces_payload(self, db: sqlite3.Connection):
        for payload in ({"a": 1}, {"a": 2}):
            exchange_repo.record_exchange(
                db, "seller-1", Action.RECON, Direction.INBOUND, "t1", "m1", payload
            )
        rows = exchange_repo.list_exchanges(db, "seller-1")
        assert len(rows) == 1
        assert rows[0]["payload"] == {"a": 2}


class TestAuditAndStateRepo:
    def test_batch_steps(self, db: sqlite3.Connection):
        audit_repo.record_step(db, "b1", "seller-1", "recon", "O1", None, "RECEIVED_PENDING", "committed")
        audit_repo.record_step(db, "b1", "seller-1", "recon", "O2", None, "RECEIVED_PENDING", "conflict")
        steps = audit_repo.get_batch_steps(db, "b1")
        assert [s["order_id"] for s in steps] == ["O1", "O2"]
        assert audit_repo.get_incomplete_batches(db) == ["b1"]

    def test_operator_commands(self, db: sqlite3.Connection):
        state_repo.log_operator_command(db, "void", "seller-1 O1", "deleted")
        cmds = state_repo.get_recent_operator_commands(db)
        assert cmds[0]["command"] == "void"
        assert cmds[0]["result"] == "deleted"
