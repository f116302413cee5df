"""Tests for the settlement calculator and buyer finder fee resolution."""

import pytest

from rsf.calculator.tax import (
    RETAIL_FOOD_DOMAIN,
    CalculatorInput,
    SettlementBreakdown,
    TaxRates,
    compute_breakdown,
    resolve_buyer_finder_fee,
)
from rsf.models.common import Role


def _inputs(**overrides) -> CalculatorInput:
    data = {
        "collected_by": Role.BAP,
        "domain": "ONDC:RET10",
        "total_order_value": 1000.0,
        "msn": False,
        "buyer_finder_fee_amount": 50.0,
        "item_tax": 0.0,
    }
    data.update(overrides)
    return CalculatorInput(**data)


RATES = TaxRates(np_tcs=5.0, np_tds=6.0)


class TestBuyerCollects:
    def test_ordinary_order(self):
        result = compute_breakdown(_inputs(), RATES)
        assert result == SettlementBreakdown(
            tcs=50.0, tds=60.0, inter_np_settlement=840.0, collector_settlement=160.0
        )

    def test_msn_order_has_no_tax(self):
        result = compute_breakdown(_inputs(msn=True), RATES)
        assert result.tcs == 0.0
        assert result.tds == 0.0
        assert result.inter_np_settlement == 950.0
        assert result.collector_settlement == 50.0

    def test_undefined_msn_counts_as_msn(self):
        assert compute_breakdown(_inputs(msn=None), RATES) == compute_breakdown(
            _inputs(msn=True), RATES
        )

    def test_item_tax_excluded_from_tax_base(self):
        result = compute_breakdown(_inputs(item_tax=100.0), RATES)
        assert result.tcs == 45.0
        assert result.tds == 54.0
        assert result.inter_np_settlement == 851.0
        assert result.collector_settlement == 149.0

    def test_retail_food_has_no_tcs_and_deducts_item_tax(self):
        result = compute_breakdown(
            _inputs(domain=RETAIL_FOOD_DOMAIN, item_tax=100.0), RATES
        )
        assert result.tcs == 0.0
        assert result.tds == 54.0
        assert result.inter_np_settlement == 796.0
        assert result.collector_settlement == 104.0


class TestSellerCollects:
    def test_ordinary_order(self):
        result = compute_breakdown(_inputs(collected_by=Role.BPP), RATES)
        assert result.tcs == 0.0
        assert result.tds == 0.0
        assert result.inter_np_settlement == 50.0
        assert result.collector_settlement == 950.0

    def test_retail_food_adds_item_tax_to_inter_np(self):
        result = compute_breakdown(
            _inputs(collected_by=Role.BPP, domain=RETAIL_FOOD_DOMAIN, item_tax=100.0), RATES
        )
        assert result.inter_np_settlement == 150.0
        assert result.collector_settlement == 850.0

    def test_special_domain_is_configurable(self):
        result = compute_breakdown(
            _inputs(collected_by=Role.BPP, domain="ONDC:RET12", item_tax=100.0),
            RATES,
            special_domain="ONDC:RET12",
        )
        assert result.inter_np_settlement == 150.0


class TestRounding:
    def test_half_rounds_away_from_zero(self):
        result = compute_breakdown(_inputs(total_order_value=2.5, buyer_finder_fee_amount=0), RATES)
        assert result.tcs == 0.13
        assert result.tds == 0.15

    def test_rounded_parts_still_add_up(self):
        result = compute_breakdown(_inputs(total_order_value=333.33), RATES)
        assert result.tcs == 16.67
        assert result.tds == 20.0
        assert result.inter_np_settlement == 246.66
        assert round(result.inter_np_settlement + result.collector_settlement, 2) == 333.33


class TestUndefinedInputs:
    def test_all_missing_never_raises(self):
        result = compute_breakdown(
            CalculatorInput(
                collected_by=None,
                domain=None,
                total_order_value=None,
                msn=None,
                buyer_finder_fee_amount=None,
                item_tax=None,
            ),
            TaxRates(np_tcs=None, np_tds=None),
        )
        assert result == SettlementBreakdown(0.0, 0.0, 0.0, 0.0)

    def test_missing_rates_mean_zero_tax(self):
        result = compute_breakdown(_inputs(), TaxRates())
        assert result.tcs == 0.0
        assert result.inter_np_settlement == 950.0


class TestProperties:
    def test_deterministic(self):
        inputs = _inputs(total_order_value=1234.56, item_tax=12.34)
        assert compute_breakdown(inputs, RATES) == compute_breakdown(inputs, RATES)

    @pytest.mark.parametrize("collected_by", [Role.BAP, Role.BPP])
    @pytest.mark.parametrize("msn", [True, False])
    @pytest.mark.parametrize("domain", ["ONDC:RET10", RETAIL_FOOD_DOMAIN])
    @pytest.mark.parametrize("item_tax", [0.0, 87.5])
    def test_conservation(self, collected_by, msn, domain, item_tax):
        if collected_by == Role.BAP and domain == RETAIL_FOOD_DOMAIN and not msn and item_tax:
            pytest.skip("item tax leaves the split when the buyer collects retail food")
        result = compute_breakdown(
            _inputs(
                collected_by=collected_by,
                msn=msn,
                domain=domain,
                item_tax=item_tax,
                total_order_value=1999.99,
                buyer_finder_fee_amount=61.37,
            ),
            RATES,
        )
        assert round(result.inter_np_settlement + result.collector_settlement, 2) == 1999.99


class TestBuyerFinderFee:
    def test_percent_fee_on_value_net_of_item_tax(self):
        assert resolve_buyer_finder_fee("percent", 3.0, 1000.0, 100.0) == 31.86

    def test_amount_fee_gets_uplift(self):
        assert resolve_buyer_finder_fee("amount", 50.0, 1000.0, 0.0) == 59.0

    def test_missing_values_resolve_to_zero(self):
        assert resolve_buyer_finder_fee(None, None, None, None) == 0.0
