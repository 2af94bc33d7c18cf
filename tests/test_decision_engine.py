"""
Tests for the rebalance decision engine.

Tests cover:
- Risk-adjusted ranking and tie-breaking
- Deposit decisions for idle balances
- Rebalance threshold (strictly greater than)
- Already-optimal short-circuit
- Cost models
"""

import pytest

from autoyield.models.opportunity import Protocol
from autoyield.services.decision_engine import (
    GasInclusiveCostModel,
    SponsoredCostModel,
    evaluate_rebalance,
    get_cost_model,
    risk_adjusted_apy,
    select_best_opportunity,
)
from autoyield.core.config import Settings

from conftest import VAULT_A, VAULT_B, VAULT_C


# Zero gas, 0.1% slippage each way, no execution buffer
FLAT_COSTS = SponsoredCostModel(slippage=0.001, exit_slippage=0.001, execution_buffer=0.0)


class TestRanking:
    """Tests for opportunity ranking."""

    def test_risk_adjusted_apy(self, make_opportunity):
        opp = make_opportunity(apy=0.10, risk_score=0.15)
        assert risk_adjusted_apy(opp) == pytest.approx(0.085)

    def test_zero_risk_keeps_full_apy(self, make_opportunity):
        assert risk_adjusted_apy(make_opportunity(apy=0.07, risk_score=0.0)) == pytest.approx(0.07)

    def test_full_risk_yields_zero(self, make_opportunity):
        assert risk_adjusted_apy(make_opportunity(apy=0.5, risk_score=1.0)) == 0.0

    def test_higher_raw_apy_can_lose_on_risk(self, make_opportunity):
        risky = make_opportunity(address=VAULT_A, apy=0.12, risk_score=0.6)
        safe = make_opportunity(address=VAULT_B, apy=0.06, risk_score=0.1)
        assert select_best_opportunity([risky, safe]) is safe

    def test_first_seen_wins_ties(self, make_opportunity):
        first = make_opportunity(address=VAULT_A, apy=0.05, risk_score=0.1)
        second = make_opportunity(address=VAULT_B, apy=0.05, risk_score=0.1)
        assert select_best_opportunity([first, second]) is first

    def test_empty_list(self):
        assert select_best_opportunity([]) is None


class TestNoOpportunities:

    def test_no_opportunities_never_rebalances(self, make_position):
        decision = evaluate_rebalance(make_position(), [], 10**9, cost_model=FLAT_COSTS)
        assert decision.should_rebalance is False
        assert decision.reason == "No opportunities available"

    def test_no_opportunities_no_position(self):
        decision = evaluate_rebalance(None, [], 0, cost_model=FLAT_COSTS)
        assert decision.should_rebalance is False
        assert decision.reason


class TestDeposit:
    """Decisions for idle balance without a current position."""

    def test_zero_balance_never_deposits(self, make_opportunity):
        decision = evaluate_rebalance(None, [make_opportunity(apy=0.2)], 0, cost_model=FLAT_COSTS)
        assert decision.should_rebalance is False
        assert decision.reason == "No balance to deposit"
        assert decision.to_opportunity is not None

    def test_deposit_above_threshold(self, make_opportunity):
        opp = make_opportunity(apy=0.05, risk_score=0.0)
        decision = evaluate_rebalance(None, [opp], 1_000 * 10**6, cost_model=FLAT_COSTS)

        assert decision.should_rebalance is True
        assert decision.to_opportunity == opp
        assert decision.from_position is None
        assert decision.net_gain == pytest.approx(0.049)
        assert decision.estimated_cost == 0

    def test_deposit_below_threshold(self, make_opportunity):
        opp = make_opportunity(apy=0.005, risk_score=0.0)
        decision = evaluate_rebalance(None, [opp], 1_000 * 10**6, cost_model=FLAT_COSTS)

        assert decision.should_rebalance is False
        assert "threshold" in decision.reason

    def test_empty_position_list_treated_as_none(self, make_opportunity):
        opp = make_opportunity(apy=0.05, risk_score=0.0)
        decision = evaluate_rebalance([], [opp], 1_000 * 10**6, cost_model=FLAT_COSTS)
        assert decision.should_rebalance is True


class TestRebalance:
    """Decisions for an existing position."""

    def test_clear_gain_rebalances(self, make_opportunity, make_position):
        current = make_position(vault_address=VAULT_A, apy=0.08, protocol=Protocol.AAVE)
        best = make_opportunity(address=VAULT_B, apy=0.10, risk_score=0.0)

        decision = evaluate_rebalance(
            current, [best], 0, cost_model=FLAT_COSTS, current_risk_discount=1.0
        )

        assert decision.should_rebalance is True
        assert decision.net_gain == pytest.approx(0.018)
        assert decision.from_position == current
        assert decision.to_opportunity == best

    def test_marginal_gain_does_not_rebalance(self, make_opportunity, make_position):
        current = make_position(vault_address=VAULT_A, apy=0.096, protocol=Protocol.AAVE)
        best = make_opportunity(address=VAULT_B, apy=0.10, risk_score=0.0)

        decision = evaluate_rebalance(
            current, [best], 0, cost_model=FLAT_COSTS, current_risk_discount=1.0
        )

        assert decision.should_rebalance is False
        assert decision.net_gain == pytest.approx(0.002)
        assert "below" in decision.reason

    def test_net_gain_exactly_at_threshold_does_not_rebalance(self, make_opportunity, make_position):
        current = make_position(vault_address=VAULT_A, apy=0.05, protocol=Protocol.AAVE)
        best = make_opportunity(address=VAULT_B, apy=0.10, risk_score=0.0)
        no_costs = SponsoredCostModel(slippage=0.0, exit_slippage=0.0, execution_buffer=0.0)

        decision = evaluate_rebalance(
            current, [best], 0, cost_model=no_costs, threshold=0.05, current_risk_discount=1.0
        )

        assert decision.net_gain == pytest.approx(0.05)
        assert decision.should_rebalance is False

    def test_default_discount_applied_to_current(self, make_opportunity, make_position):
        current = make_position(vault_address=VAULT_A, apy=0.10, protocol=Protocol.AAVE)
        best = make_opportunity(address=VAULT_B, apy=0.10, risk_score=0.0)

        decision = evaluate_rebalance(current, [best], 0, cost_model=FLAT_COSTS)

        # 0.10 - 0.10 * 0.85 - 0.002
        assert decision.net_gain == pytest.approx(0.013)
        assert decision.should_rebalance is True

    def test_same_protocol_is_already_optimal(self, make_opportunity, make_position):
        current = make_position(vault_address=VAULT_A, apy=0.01, protocol=Protocol.MORPHO)
        best = make_opportunity(address=VAULT_B, apy=0.20, risk_score=0.0, protocol=Protocol.MORPHO)

        decision = evaluate_rebalance(current, [best], 0, cost_model=FLAT_COSTS)

        assert decision.should_rebalance is False
        assert decision.reason.startswith("Already optimal")

    def test_same_vault_is_already_optimal(self, make_opportunity, make_position):
        current = make_position(vault_address=VAULT_C, protocol=Protocol.AAVE)
        best = make_opportunity(address=VAULT_C, apy=0.20, risk_score=0.0, protocol=Protocol.MORPHO)

        decision = evaluate_rebalance(current, [best], 0, cost_model=FLAT_COSTS)

        assert decision.should_rebalance is False

    def test_only_first_position_is_considered(self, make_opportunity, make_position):
        first = make_position(vault_address=VAULT_A, apy=0.08, protocol=Protocol.AAVE)
        second = make_position(vault_address=VAULT_C, apy=0.0, protocol=Protocol.MOONWELL)
        best = make_opportunity(address=VAULT_B, apy=0.10, risk_score=0.0)

        decision = evaluate_rebalance(
            [first, second], [best], 0, cost_model=FLAT_COSTS, current_risk_discount=1.0
        )

        assert decision.from_position == first

    def test_negative_threshold_still_requires_positive_gain(self, make_opportunity, make_position):
        current = make_position(vault_address=VAULT_A, apy=0.10, protocol=Protocol.AAVE)
        best = make_opportunity(address=VAULT_B, apy=0.10, risk_score=0.0)

        decision = evaluate_rebalance(
            current, [best], 0, cost_model=FLAT_COSTS, threshold=-1.0, current_risk_discount=1.0
        )

        assert decision.net_gain < 0
        assert decision.should_rebalance is False

    @pytest.mark.parametrize("discount", [1.0, 0.85])
    def test_higher_candidate_apy_never_flips_to_hold(self, make_opportunity, make_position, discount):
        current = make_position(vault_address=VAULT_A, apy=0.06, protocol=Protocol.AAVE)
        previous = False
        for step in range(0, 201):
            best = make_opportunity(address=VAULT_B, apy=step / 1000, risk_score=0.05)
            decision = evaluate_rebalance(
                current, [best], 0, cost_model=FLAT_COSTS, current_risk_discount=discount
            )
            assert not (previous and not decision.should_rebalance), f"flipped at apy={step / 1000}"
            previous = decision.should_rebalance

        assert previous is True

    def test_lower_current_apy_never_flips_to_hold(self, make_opportunity, make_position):
        best = make_opportunity(address=VAULT_B, apy=0.09, risk_score=0.0)
        previous = False
        for step in range(200, -1, -1):
            current = make_position(vault_address=VAULT_A, apy=step / 1000, protocol=Protocol.AAVE)
            decision = evaluate_rebalance(
                current, [best], 0, cost_model=FLAT_COSTS, current_risk_discount=1.0
            )
            assert not (previous and not decision.should_rebalance), f"flipped at current apy={step / 1000}"
            previous = decision.should_rebalance

        assert previous is True


class TestCostModels:

    def test_sponsored_has_no_gas(self):
        costs = SponsoredCostModel().estimate(1_000 * 10**6, exiting=True)
        assert costs.gas_cost_usd == 0.0
        assert costs.total_cost_fraction == pytest.approx(0.0025)

    def test_sponsored_deposit_pays_one_leg(self):
        costs = SponsoredCostModel().estimate(1_000 * 10**6, exiting=False)
        assert costs.total_cost_fraction == pytest.approx(0.001)

    def test_gas_inclusive_scales_with_amount(self):
        model = GasInclusiveCostModel(gas_cost_usd=1.0, slippage=0.0, exit_slippage=0.0)
        small = model.estimate(100 * 10**6, exiting=False)
        large = model.estimate(10_000 * 10**6, exiting=False)

        assert small.total_cost_fraction == pytest.approx(0.01)
        assert large.total_cost_fraction == pytest.approx(0.0001)

    def test_gas_inclusive_rebalance_pays_gas_twice(self):
        costs = GasInclusiveCostModel(gas_cost_usd=0.5).estimate(1_000 * 10**6, exiting=True)
        assert costs.gas_cost_usd == pytest.approx(1.0)

    def test_gas_inclusive_zero_amount(self):
        costs = GasInclusiveCostModel().estimate(0, exiting=False)
        assert costs.total_cost_fraction == pytest.approx(0.001)

    def test_gas_cost_reported_in_units(self, make_opportunity):
        model = GasInclusiveCostModel(gas_cost_usd=0.5, slippage=0.0)
        opp = make_opportunity(apy=0.10, risk_score=0.0)

        decision = evaluate_rebalance(None, [opp], 1_000 * 10**6, cost_model=model)

        assert decision.estimated_cost == 500_000

    def test_gas_cost_flips_small_deposit(self, make_opportunity):
        model = GasInclusiveCostModel(gas_cost_usd=0.5, slippage=0.001)
        opp = make_opportunity(apy=0.05, risk_score=0.0)

        # $10 deposit: gas alone is 5% of the amount
        decision = evaluate_rebalance(None, [opp], 10 * 10**6, cost_model=model)

        assert decision.should_rebalance is False

    def test_get_cost_model_from_settings(self):
        assert isinstance(get_cost_model(Settings(cost_model="sponsored")), SponsoredCostModel)
        model = get_cost_model(Settings(cost_model="gas_inclusive", estimated_gas_cost_usd=2.0))
        assert isinstance(model, GasInclusiveCostModel)
        assert model.gas_cost_usd == 2.0
