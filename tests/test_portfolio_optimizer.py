from __future__ import annotations

import math

import numpy as np
import pytest

from quantsim.config import OptimizationObjective
from quantsim.market_data import MarketSnapshot, PortfolioPosition
from quantsim.portfolio_optimizer import (
    BlackLittermanView, CovarianceCache, MomentumEstimator, PortfolioConstraints,
    PortfolioDiagnostics, PortfolioOptimizer, RebalancePriority, StaticEstimator,
    format_optimization_report, generate_rebalance_actions, invert_matrix,
    optimize_portfolio, risk_contributions,
)


def snapshots(*symbols, timestamp=1_000.0):
    return [MarketSnapshot(symbol=s, price=100.0, timestamp=timestamp) for s in symbols]


@pytest.fixture
def momentum_universe():
    return [
        MarketSnapshot("BTC", 60_000.0, 5.0, timestamp=1_000.0, history=(100, 103, 101, 106, 108)),
        MarketSnapshot("ETH", 3_000.0, -3.0, timestamp=1_000.0, history=(50, 52, 51, 50, 53)),
        MarketSnapshot("SOL", 150.0, 2.0, timestamp=1_000.0, history=(20, 19, 21, 22, 21)),
        MarketSnapshot("ADA", 0.5, 8.0, timestamp=1_000.0),
    ]


@pytest.mark.parametrize("objective", list(OptimizationObjective))
def test_weights_sum_to_one_within_bounds(objective, momentum_universe):
    constraints = PortfolioConstraints(min_position_weight=0.0, max_position_weight=1.0)
    result = optimize_portfolio([], momentum_universe, 100_000, constraints, objective)

    weights = list(result.weights.values())
    assert sum(weights) == pytest.approx(1.0)
    assert all(-1e-9 <= w <= 1.0 + 1e-9 for w in weights)
    assert result.objective is objective


def test_min_variance_prefers_low_volatility():
    estimator = StaticEstimator({"A": 0.1, "B": 0.1, "C": 0.1}, {"A": 0.1, "B": 0.2, "C": 0.4})
    result = optimize_portfolio([], snapshots("A", "B", "C"), 10_000,
                                objective="minVariance", estimator=estimator)
    w = result.weights
    assert w["A"] > w["B"] > w["C"]
    assert [w["A"], w["B"], w["C"]] == pytest.approx([16 / 21, 4 / 21, 1 / 21])


def test_singular_covariance_degrades_to_equal_weights():
    estimator = StaticEstimator({"A": 0.1, "B": 0.1}, {"A": 0.2, "B": 0.2}, {("A", "B"): 1.0})
    result = optimize_portfolio([], snapshots("A", "B"), 10_000,
                                objective=OptimizationObjective.MIN_VARIANCE, estimator=estimator)
    assert result.weights == pytest.approx({"A": 0.5, "B": 0.5})


def test_invert_matrix():
    assert np.allclose(invert_matrix([[4.0, 7.0], [2.0, 6.0]]), np.linalg.inv([[4.0, 7.0], [2.0, 6.0]]))
    assert np.array_equal(invert_matrix([[1.0, 1.0], [1.0, 1.0]]), np.eye(2))
    assert invert_matrix([]).shape == (0, 0)
    with pytest.raises(ValueError):
        invert_matrix([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])


def test_mean_variance_is_inverse_volatility():
    estimator = StaticEstimator({"A": 0.0, "B": 0.0}, {"A": 0.1, "B": 0.2})
    result = optimize_portfolio([], snapshots("A", "B"), 10_000, estimator=estimator)
    assert result.weights == pytest.approx({"A": 2 / 3, "B": 1 / 3})

    flat = StaticEstimator({"A": 0.0, "B": 0.0}, {"A": 0.0, "B": 0.1})
    result = optimize_portfolio([], snapshots("A", "B"), 10_000, estimator=flat)
    assert result.weights == pytest.approx({"A": 0.5, "B": 0.5})


def test_max_sharpe_direction():
    estimator = StaticEstimator({"A": 0.12, "B": 0.07}, {"A": 0.2, "B": 0.2})
    result = optimize_portfolio([], snapshots("A", "B"), 10_000, objective="maxSharpe", estimator=estimator)
    assert result.weights == pytest.approx({"A": 2 / 3, "B": 1 / 3})


def test_risk_parity_equalizes_contributions():
    estimator = StaticEstimator({"A": 0.0, "B": 0.0}, {"A": 0.1, "B": 0.2})
    result = optimize_portfolio([], snapshots("A", "B"), 10_000, objective="riskParity", estimator=estimator)
    assert result.weights["A"] == pytest.approx(2 / 3, rel=1e-6)
    assert result.risk_contributions["A"] == pytest.approx(result.risk_contributions["B"], rel=1e-6)


def test_risk_contributions_with_zero_variance():
    assert np.array_equal(risk_contributions(np.array([0.5, 0.5]), np.zeros((2, 2))), np.zeros(2))


def test_black_litterman_views_tilt_allocation():
    estimator = StaticEstimator({"A": 0.05, "B": 0.05}, {"A": 0.2, "B": 0.2})
    neutral = optimize_portfolio([], snapshots("A", "B"), 10_000,
                                 objective="blackLitterman", estimator=estimator)
    assert neutral.weights == pytest.approx({"A": 0.5, "B": 0.5})

    bullish = optimize_portfolio([], snapshots("A", "B"), 10_000, objective="blackLitterman",
                                 estimator=estimator,
                                 views=[BlackLittermanView({"A": 1.0}, 0.2, confidence=0.9)])
    assert bullish.weights["A"] > bullish.weights["B"]
    assert sum(bullish.weights.values()) == pytest.approx(1.0)


def test_view_confidence_validated():
    with pytest.raises(ValueError):
        BlackLittermanView({"A": 1.0}, 0.1, confidence=0.0)


def test_rebalance_threshold_and_priority():
    assert generate_rebalance_actions({"A": 0.5}, {"A": 0.53}, 10_000) == []

    (sell,) = generate_rebalance_actions({"A": 0.5}, {"A": 0.4}, 10_000)
    assert sell.action == "SELL"
    assert sell.priority is RebalancePriority.HIGH
    assert sell.amount_to_trade == pytest.approx(1_000.0)
    assert sell.estimated_cost == pytest.approx(1.0)

    (buy,) = generate_rebalance_actions({"A": 0.5}, {"A": 0.57}, 10_000)
    assert buy.action == "BUY"
    assert buy.priority is RebalancePriority.MEDIUM


def test_rebalance_actions_sorted_by_notional():
    actions = generate_rebalance_actions({"A": 0.5, "B": 0.1}, {"A": 0.2, "B": 0.3}, 10_000)
    assert [a.symbol for a in actions] == ["A", "B"]
    assert actions[0].amount_to_trade >= actions[1].amount_to_trade


def test_holdings_outside_universe_are_sold():
    positions = [PortfolioPosition("Z", 20.0, 100.0)]
    estimator = StaticEstimator({"A": 0.1}, {"A": 0.2})
    result = optimize_portfolio(positions, snapshots("A"), 10_000, estimator=estimator)
    z_action = next(a for a in result.rebalance_actions if a.symbol == "Z")
    assert z_action.action == "SELL"
    assert z_action.target_weight == 0.0
    assert z_action.current_weight == pytest.approx(0.2)


def test_current_weights_use_snapshot_price():
    positions = [PortfolioPosition("A", 10.0, 100.0)]
    universe = [MarketSnapshot("A", 120.0, 1.0), MarketSnapshot("B", 50.0, 2.0)]
    result = optimize_portfolio(positions, universe, 10_000)
    assert result.current_weights["A"] == pytest.approx(0.12)


def test_empty_universe_liquidates():
    positions = [PortfolioPosition("A", 10.0, 100.0)]
    result = optimize_portfolio(positions, [], 10_000)
    assert result.weights == {}
    assert [a.action for a in result.rebalance_actions] == ["SELL"]


def test_invalid_snapshots_are_dropped():
    universe = [MarketSnapshot("A", 100.0, 1.0), MarketSnapshot("BAD", float("nan"), 1.0)]
    result = optimize_portfolio([], universe, 10_000)
    assert set(result.weights) == {"A"}


def test_invalid_requests_raise():
    with pytest.raises(ValueError):
        optimize_portfolio([], snapshots("A"), 10_000, objective="kelly")
    with pytest.raises(ValueError):
        optimize_portfolio([], snapshots("A"), 0)
    with pytest.raises(ValueError):
        PortfolioConstraints(min_position_weight=0.6, max_position_weight=0.5)


def test_objective_aliases():
    for alias in ("minVariance", "MIN_VARIANCE", "min_variance"):
        result = optimize_portfolio([], snapshots("A", "B"), 10_000, objective=alias)
        assert result.objective is OptimizationObjective.MIN_VARIANCE


def test_momentum_estimator():
    estimator = MomentumEstimator()
    universe = [
        MarketSnapshot("A", 1.0, 5.0, history=(100, 110, 99, 120)),
        MarketSnapshot("B", 1.0, -5.0, history=(200, 220, 198, 240)),
        MarketSnapshot("C", 1.0, 0.0),
    ]
    assert estimator.expected_returns(universe) == pytest.approx([0.055, -0.045, 0.0])
    assert estimator.volatilities(universe)[0] == pytest.approx(0.05 * np.sqrt(365))
    corr = estimator.correlation_matrix(universe)
    assert corr[0, 1] == pytest.approx(1.0)
    assert corr[0, 2] == 0.0


def test_covariance_cache_reuses_estimates(momentum_universe):
    cache = CovarianceCache()
    optimizer = PortfolioOptimizer()

    first = optimizer.optimize([], momentum_universe, 100_000, objective="minVariance", cache=cache)
    second = optimizer.optimize([], list(reversed(momentum_universe)), 100_000,
                                objective="minVariance", cache=cache)
    assert not first.cache_hit
    assert second.cache_hit
    assert (cache.hits, cache.misses) == (1, 1)
    for symbol, weight in first.weights.items():
        assert second.weights[symbol] == pytest.approx(weight)

    later = optimizer.optimize([], momentum_universe, 100_000, cache=cache, as_of=1_000.0 + 300)
    assert not later.cache_hit
    assert len(cache) == 2


def test_diagnostics():
    weights = np.full(4, 0.25)
    assert PortfolioDiagnostics.diversification_score(weights, np.eye(4)) == pytest.approx(1.0)
    assert PortfolioDiagnostics.diversification_score(np.array([1.0]), np.eye(1)) == 0.0
    assert PortfolioDiagnostics.parametric_var(0.05, 0.2, 0.95) == pytest.approx(1.645 * 0.2 - 0.05)


def test_result_diagnostics(momentum_universe):
    result = optimize_portfolio([], momentum_universe, 100_000)
    assert result.expected_shortfall == pytest.approx(result.value_at_risk_95 * 1.2)
    assert result.concentration_risk == pytest.approx(sum(w ** 2 for w in result.weights.values()))
    attribution = result.performance_attribution
    assert (attribution.asset_allocation + attribution.security_selection + attribution.interaction
            == pytest.approx(attribution.total_return))
    assert result.turnover == pytest.approx(0.5)


def test_constraint_warnings():
    estimator = StaticEstimator({"A": 0.0, "B": 0.0, "C": 0.0}, {"A": 0.01, "B": 1.0, "C": 1.0})
    constraints = PortfolioConstraints(max_position_weight=0.5, max_risk=0.001, max_concentration=0.2)
    result = optimize_portfolio([], snapshots("A", "B", "C"), 10_000, constraints, estimator=estimator)
    assert result.weights["A"] > 0.5
    assert any("above max_position_weight" in w for w in result.constraint_warnings)
    assert any("max_risk" in w for w in result.constraint_warnings)
    assert any("max_concentration" in w for w in result.constraint_warnings)


def test_format_optimization_report(momentum_universe):
    text = format_optimization_report(optimize_portfolio([], momentum_universe, 100_000))
    assert "PORTFOLIO OPTIMIZATION REPORT" in text
    assert "BTC" in text


def test_unusable_history_prices_are_dropped():
    universe = [
        MarketSnapshot("A", 100.0, 2.0, timestamp=1_000.0,
                       history=(100, float("nan"), 101, 102, 104, 103)),
        MarketSnapshot("B", 50.0, -1.0, timestamp=1_000.0, history=(50, 51, 50, 52, 53)),
    ]
    result = optimize_portfolio([], universe, 10_000, objective="minVariance")
    for value in (result.expected_risk, result.sharpe_ratio, result.value_at_risk_95,
                  result.expected_shortfall, result.diversification_score):
        assert math.isfinite(value)
    assert sum(result.weights.values()) == pytest.approx(1.0)


def test_non_finite_positions_are_ignored():
    positions = [PortfolioPosition("A", float("nan"), 100.0), PortfolioPosition("B", 10.0, 100.0)]
    estimator = StaticEstimator({"A": 0.1, "B": 0.1}, {"A": 0.2, "B": 0.2})
    result = optimize_portfolio(positions, snapshots("A", "B"), 10_000, estimator=estimator)

    assert "A" not in result.current_weights
    assert math.isfinite(result.turnover)
    for action in result.rebalance_actions:
        assert math.isfinite(action.amount_to_trade)
        assert math.isfinite(action.weight_delta)


def test_rebalance_skips_non_finite_weights():
    actions = generate_rebalance_actions({"A": float("nan")}, {"A": 0.5, "B": 0.5}, 10_000)
    assert [a.symbol for a in actions] == ["B"]


def test_short_holding_is_bought_back():
    positions = [PortfolioPosition("A", -20.0, 100.0)]
    estimator = StaticEstimator({"A": 0.1, "B": 0.1}, {"A": 0.2, "B": 0.2})
    result = optimize_portfolio(positions, snapshots("A", "B"), 10_000, estimator=estimator)

    assert result.current_weights["A"] == pytest.approx(-0.2)
    action = next(a for a in result.rebalance_actions if a.symbol == "A")
    assert action.action == "BUY"
    assert action.weight_delta == pytest.approx(0.7)
    assert action.amount_to_trade == pytest.approx(7_000.0)


def test_cache_separates_estimators():
    cache = CovarianceCache()
    universe = snapshots("A", "B")
    correlated = StaticEstimator({"A": 0.1, "B": 0.1}, {"A": 0.2, "B": 0.2},
                                 correlations={("A", "B"): 0.9})

    optimize_portfolio([], universe, 10_000, estimator=correlated, cache=cache)
    momentum = optimize_portfolio([], universe, 10_000, cache=cache)
    assert not momentum.cache_hit
    assert len(cache) == 2


def test_optimize_portfolio_forwards_as_of(momentum_universe):
    cache = CovarianceCache(bucket_seconds=300)
    optimize_portfolio([], momentum_universe, 100_000, cache=cache)
    same_bucket = optimize_portfolio([], momentum_universe, 100_000, cache=cache, as_of=1_100.0)
    next_bucket = optimize_portfolio([], momentum_universe, 100_000, cache=cache, as_of=1_200.0)
    assert same_bucket.cache_hit
    assert not next_bucket.cache_hit
