from __future__ import annotations

import math

import pytest

from quantsim.quant_statistics import (
    autocorrelation, calmar_ratio, correlation, covariance, drawdown_series,
    expected_shortfall, kurtosis, max_drawdown, max_drawdown_duration, mean,
    ols_regression, percent_changes, sharpe_ratio, single_factor_model,
    skewness, sortino_ratio, stddev, t_test, value_at_risk, variance,
)


def test_descriptive_fallbacks_on_degenerate_input():
    assert mean([]) == 0.0
    assert variance([5.0]) == 0.0
    assert stddev([]) == 0.0
    assert covariance([1.0], [2.0]) == 0.0
    assert skewness([1.0, 1.0, 1.0]) == 0.0
    assert kurtosis([2.0, 2.0, 2.0, 2.0]) == 0.0


def test_population_stddev():
    assert stddev([1, 2, 3, 4]) == pytest.approx(math.sqrt(1.25))


def test_correlation():
    assert correlation([1, 2, 3], [2, 4, 6]) == pytest.approx(1.0)
    assert correlation([1, 2, 3], [3, 2, 1]) == pytest.approx(-1.0)
    assert correlation([1, 1, 1], [1, 2, 3]) == 0.0


def test_mismatched_lengths_raise():
    with pytest.raises(ValueError):
        correlation([1, 2, 3], [1, 2])
    with pytest.raises(ValueError):
        ols_regression([1, 2], [1, 2, 3])


def test_sharpe_ratio():
    assert sharpe_ratio([0.01, 0.03]) == pytest.approx(2.0)
    assert sharpe_ratio([0.01] * 5) == 0.0
    assert sharpe_ratio([]) == 0.0


def test_sortino_ratio_rules():
    assert sortino_ratio([0.01, 0.02]) == float("inf")
    assert sortino_ratio([0.0, 0.0]) == 0.0
    assert sortino_ratio([]) == 0.0
    expected = -0.015 / math.sqrt((0.01 ** 2 + 0.02 ** 2) / 2)
    assert sortino_ratio([-0.01, -0.02]) == pytest.approx(expected)


def test_calmar_ratio_rules():
    assert calmar_ratio([0.001] * 10, 0.1) == pytest.approx(2.52)
    assert calmar_ratio([0.001] * 10, 0.0) == float("inf")
    assert calmar_ratio([-0.001] * 10, 0.0) == 0.0


def test_max_drawdown():
    assert max_drawdown([100, 120, 90, 130]) == pytest.approx(0.25)
    assert max_drawdown([100, 101, 101, 150]) == 0.0
    assert max_drawdown([]) == 0.0


def test_drawdown_series_and_duration():
    prices = [100, 90, 95, 100, 80]
    assert drawdown_series(prices) == pytest.approx([0.0, 0.1, 0.05, 0.0, 0.2])
    assert max_drawdown_duration(prices) == 2


def test_value_at_risk_and_expected_shortfall():
    returns = [i / 100 for i in range(-10, 10)]
    assert value_at_risk(returns, 0.95) == pytest.approx(0.09)
    assert expected_shortfall(returns, 0.95) == pytest.approx(0.095)
    assert value_at_risk([], 0.95) == 0.0


def test_ols_regression():
    fit = ols_regression([1, 2, 3, 4], [3, 5, 7, 9])
    assert fit.beta == pytest.approx(2.0)
    assert fit.alpha == pytest.approx(1.0)
    assert fit.r_squared == pytest.approx(1.0)


def test_ols_constant_regressor():
    fit = ols_regression([2, 2, 2], [1, 2, 6])
    assert fit.beta == 0.0
    assert fit.alpha == pytest.approx(3.0)


def test_single_factor_model_orders_arguments():
    fit = single_factor_model([3, 5, 7, 9], [1, 2, 3, 4])
    assert fit.beta == pytest.approx(2.0)


def test_autocorrelation():
    assert autocorrelation([1, 2, 3, 4, 5], 1) == pytest.approx(1.0)
    assert autocorrelation([1, 2], 5) == 0.0


def test_t_test():
    result = t_test([1, 2, 3, 4, 5], [6, 7, 8, 9, 10])
    assert result.t_stat == pytest.approx(-5.0)
    assert result.p_value < 0.01

    flat = t_test([1, 1, 1], [1, 1, 1])
    assert flat.t_stat == 0.0
    assert flat.p_value == 1.0


def test_percent_changes():
    assert percent_changes([100, 110, 99]) == pytest.approx([0.1, -0.1])
    assert percent_changes([5]) == []


def test_correlation_with_nan_falls_back_to_zero():
    assert correlation([1.0, float("nan"), 3.0], [1.0, 2.0, 3.0]) == 0.0
