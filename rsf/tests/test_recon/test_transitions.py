"""Tests for the pure reconciliation transitions."""

import pytest

from rsf.errors import PreconditionError
from rsf.models.outcome import ErrorCode
from rsf.models.settlement import (
    ExchangeContext,
    ReconAmounts,
    ReconciliationInfo,
    ReconStatus,
)
from rsf.recon import transitions

FIGURES = ReconAmounts(amount=840.0, commission=50.0, withholding_amount=0.0, tcs=50.0, tds=60.0)
COUNTER = ReconAmounts(amount=830.0, commission=60.0, withholding_amount=0.0, tcs=50.0, tds=60.0)
CTX = ExchangeContext(transaction_id="txn-1", message_id="msg-1")


def _at(status: ReconStatus | None) -> ReconciliationInfo:
    return ReconciliationInfo(recon_status=status, recon_data=FIGURES, context=CTX)


class TestStart:
    @pytest.mark.parametrize("status", [
        None, ReconStatus.SENT_REJECTED, ReconStatus.RECEIVED_REJECTED, ReconStatus.INACTIVE,
    ])
    def test_can_start_from_closed_states(self, status):
        info = transitions.start_sent(_at(status), FIGURES, CTX, "ref-1")
        assert info.recon_status == ReconStatus.SENT_PENDING
        assert info.settlement_ref == "ref-1"
        assert info.on_recon_data is None

    @pytest.mark.parametrize("status", sorted(transitions.BLOCKS_NEW_NEGOTIATION))
    def test_open_or_agreed_blocks_new_negotiation(self, status):
        with pytest.raises(PreconditionError) as exc:
            transitions.start_received(_at(status), FIGURES, CTX, "ref-1", "O1")
        assert exc.value.code == ErrorCode.ILLEGAL_RECON_STATE
        assert exc.value.order_id == "O1"

    def test_restart_clears_previous_answer(self):
        rejected = ReconciliationInfo(
            recon_status=ReconStatus.SENT_REJECTED, on_recon_data=COUNTER, due_date="2026-02-01"
        )
        info = transitions.start_received(rejected, FIGURES, CTX, None)
        assert info.recon_status == ReconStatus.RECEIVED_PENDING
        assert info.on_recon_data is None
        assert info.due_date is None


class TestResolve:
    def test_accept_sets_due_date(self):
        info = transitions.resolve_sent(_at(ReconStatus.SENT_PENDING), True, due_date="2026-02-01")
        assert info.recon_status == ReconStatus.SENT_ACCEPTED
        assert info.due_date == "2026-02-01"
        assert info.recon_data == FIGURES

    def test_reject_keeps_counter_figures(self):
        info = transitions.resolve_received(_at(ReconStatus.RECEIVED_PENDING), False, COUNTER)
        assert info.recon_status == ReconStatus.RECEIVED_REJECTED
        assert info.on_recon_data == COUNTER
        assert info.context == CTX

    def test_wrong_direction_is_illegal(self):
        with pytest.raises(PreconditionError):
            transitions.resolve_sent(_at(ReconStatus.RECEIVED_PENDING), True)
        with pytest.raises(PreconditionError):
            transitions.resolve_received(_at(ReconStatus.SENT_PENDING), True)

    def test_cannot_resolve_twice(self):
        accepted = transitions.resolve_sent(_at(ReconStatus.SENT_PENDING), True)
        with pytest.raises(PreconditionError):
            transitions.resolve_sent(accepted, False, COUNTER)


def test_deactivate_records_error():
    info = transitions.deactivate(_at(ReconStatus.SENT_PENDING), {"code": "70030"})
    assert info.recon_status == ReconStatus.INACTIVE
    assert info.error == {"code": "70030"}
    assert transitions.can_start(info)
