"""
================================================================================
QUANT STATISTICS LIBRARY
================================================================================

Stateless numeric functions shared by the backtest simulator and the
portfolio optimizer, so that both components report identical risk
semantics.

Components:
-----------
1. DESCRIPTIVE STATISTICS
   - mean, variance, stddev (population), covariance, Pearson correlation
   - skewness / kurtosis, autocorrelation, Welch t-test

2. RISK-ADJUSTED RATIOS
   - Sharpe:  mean(excess) / stddev(excess)
   - Sortino: mean(excess) / downside deviation
   - Calmar:  (mean * 252) / max drawdown

3. TAIL RISK
   - Maximum drawdown (forward peak-to-trough scan)
   - Historical Value-at-Risk and Expected Shortfall

4. REGRESSION
   - Closed-form single-factor OLS (alpha / beta attribution)

Degenerate inputs (empty, single element, zero variance) never raise; each
function documents its fallback. Mismatched series lengths in two-series
functions are caller errors and raise ValueError.

Academic References:
-------------------
- Sharpe (1994): "The Sharpe Ratio"
- Sortino & van der Meer (1991): "Downside Risk"
- Young (1991): "Calmar Ratio: A Smoother Tool"
- Jensen (1968): "The Performance of Mutual Funds"
================================================================================
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
from scipy import stats

from .config import Config


# =============================================================================
# HELPERS
# =============================================================================

def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray(list(values), dtype=float)


def _paired(x: Sequence[float], y: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
    a, b = _as_array(x), _as_array(y)
    if len(a) != len(b):
        raise ValueError(f"Series lengths differ: {len(a)} != {len(b)}")
    return a, b


# =============================================================================
# DESCRIPTIVE STATISTICS
# =============================================================================

def mean(values: Sequence[float]) -> float:
    """Arithmetic mean; 0.0 for an empty sequence."""
    arr = _as_array(values)
    if len(arr) == 0:
        return 0.0
    return float(arr.mean())


def variance(values: Sequence[float]) -> float:
    """Population variance; 0.0 for fewer than two values."""
    arr = _as_array(values)
    if len(arr) < 2:
        return 0.0
    return float(arr.var())


def stddev(values: Sequence[float]) -> float:
    """Population standard deviation."""
    return math.sqrt(variance(values))


def covariance(x: Sequence[float], y: Sequence[float]) -> float:
    """Population covariance; 0.0 for fewer than two pairs."""
    a, b = _paired(x, y)
    if len(a) < 2:
        return 0.0
    return float(np.mean((a - a.mean()) * (b - b.mean())))


def correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """
    Pearson correlation.

    Returns 0.0 when either series has zero variance, since no linear
    relationship can be measured, and when non-finite values make the
    estimate undefined.
    """
    a, b = _paired(x, y)
    sx, sy = stddev(a), stddev(b)
    if sx == 0 or sy == 0:
        return 0.0
    rho = covariance(a, b) / (sx * sy)
    if not math.isfinite(rho):
        return 0.0
    return float(np.clip(rho, -1.0, 1.0))


def skewness(values: Sequence[float]) -> float:
    """Sample skewness; 0.0 when undefined."""
    arr = _as_array(values)
    if len(arr) < 3 or stddev(arr) == 0:
        return 0.0
    return float(stats.skew(arr))


def kurtosis(values: Sequence[float]) -> float:
    """Excess kurtosis (Fisher); 0.0 when undefined."""
    arr = _as_array(values)
    if len(arr) < 4 or stddev(arr) == 0:
        return 0.0
    return float(stats.kurtosis(arr))


def autocorrelation(values: Sequence[float], lag: int = 1) -> float:
    """Pearson correlation of a series with itself shifted by ``lag``."""
    arr = _as_array(values)
    if lag <= 0 or lag >= len(arr):
        return 0.0
    return correlation(arr[lag:], arr[:-lag])


@dataclass(frozen=True)
class TTestResult:
    """Welch two-sample t-test outcome."""
    t_stat: float
    p_value: float


def t_test(a: Sequence[float], b: Sequence[float]) -> TTestResult:
    """
    Welch's t-test for a difference in means.

    Returns t=0, p=1 when either sample is too small or both are constant.
    """
    x, y = _as_array(a), _as_array(b)
    if len(x) < 2 or len(y) < 2:
        return TTestResult(t_stat=0.0, p_value=1.0)

    se = math.sqrt(x.var(ddof=1) / len(x) + y.var(ddof=1) / len(y))
    if se == 0:
        return TTestResult(t_stat=0.0, p_value=1.0)

    result = stats.ttest_ind(x, y, equal_var=False)
    return TTestResult(t_stat=float(result.statistic), p_value=float(result.pvalue))


def percent_changes(prices: Sequence[float]) -> List[float]:
    """Simple period returns; non-positive prior values yield 0."""
    arr = _as_array(prices)
    returns = []
    for prev, cur in zip(arr[:-1], arr[1:]):
        returns.append(float((cur - prev) / prev) if prev > 0 else 0.0)
    return returns


def annualize_volatility(
    values: Sequence[float],
    periods_per_year: int = Config.TRADING_DAYS_YEAR
) -> float:
    """Population stddev of period returns scaled by sqrt(periods_per_year)."""
    return stddev(values) * math.sqrt(periods_per_year)


# =============================================================================
# RISK-ADJUSTED RATIOS
# =============================================================================

def sharpe_ratio(returns: Sequence[float], risk_free_rate: float = 0.0) -> float:
    """
    Per-period Sharpe ratio: mean(excess) / stddev(excess).

    Returns 0.0 for a zero-variance or empty series.
    """
    excess = _as_array(returns) - risk_free_rate
    sigma = stddev(excess)
    if sigma == 0:
        return 0.0
    return mean(excess) / sigma


def downside_deviation(returns: Sequence[float], target: float = 0.0) -> float:
    """Root mean square shortfall of the returns strictly below ``target``."""
    arr = _as_array(returns)
    shortfall = arr[arr < target] - target
    if len(shortfall) == 0:
        return 0.0
    return float(np.sqrt(np.mean(shortfall ** 2)))


def sortino_ratio(returns: Sequence[float], target: float = 0.0) -> float:
    """
    Sortino ratio: mean(excess) / downside deviation.

    With no returns below target the ratio is +inf when the mean excess is
    positive and 0.0 otherwise.
    """
    arr = _as_array(returns)
    if len(arr) == 0:
        return 0.0

    mean_excess = mean(arr - target)
    dd = downside_deviation(arr, target)
    if dd == 0:
        return float("inf") if mean_excess > 0 else 0.0
    return mean_excess / dd


def calmar_ratio(
    returns: Sequence[float],
    max_dd: float,
    periods_per_year: int = Config.TRADING_DAYS_YEAR
) -> float:
    """
    Calmar ratio: annualized mean return / maximum drawdown.

    A zero drawdown gives +inf for a positive annualized return, else 0.0.
    """
    annual_return = mean(returns) * periods_per_year
    if max_dd <= 0:
        return float("inf") if annual_return > 0 else 0.0
    return annual_return / max_dd


# =============================================================================
# DRAWDOWN
# =============================================================================

def drawdown_series(prices: Sequence[float]) -> List[float]:
    """Relative decline from the running peak at each point, in [0, 1]."""
    arr = _as_array(prices)
    series = []
    peak = -math.inf
    for p in arr:
        peak = max(peak, p)
        series.append(float((peak - p) / peak) if peak > 0 else 0.0)
    return series


def max_drawdown(prices: Sequence[float]) -> float:
    """
    Largest peak-to-trough relative decline via a forward scan.

    Always in [0, 1]; 0.0 for an empty or non-decreasing series.
    """
    dd = drawdown_series(prices)
    if not dd:
        return 0.0
    return float(min(1.0, max(0.0, max(dd))))


def max_drawdown_duration(prices: Sequence[float]) -> int:
    """Longest run of consecutive points spent below a prior peak."""
    longest = current = 0
    for dd in drawdown_series(prices):
        if dd > 0:
            current += 1
            longest = max(longest, current)
        else:
            current = 0
    return longest


# =============================================================================
# TAIL RISK
# =============================================================================

def value_at_risk(returns: Sequence[float], confidence: float = Config.VAR_CONFIDENCE) -> float:
    """
    Historical VaR: magnitude of the empirical (1 - confidence) quantile.

    Uses the sorted return at index floor((1 - confidence) * n).
    Returns 0.0 for an empty series.
    """
    arr = np.sort(_as_array(returns))
    n = len(arr)
    if n == 0:
        return 0.0
    idx = min(n - 1, max(0, int(math.floor((1 - confidence) * n))))
    return abs(float(arr[idx]))


def expected_shortfall(returns: Sequence[float], confidence: float = Config.VAR_CONFIDENCE) -> float:
    """Mean loss magnitude of the returns at or below the VaR quantile."""
    arr = np.sort(_as_array(returns))
    n = len(arr)
    if n == 0:
        return 0.0
    idx = min(n - 1, max(0, int(math.floor((1 - confidence) * n))))
    tail = arr[: idx + 1]
    return abs(float(tail.mean()))


# =============================================================================
# REGRESSION
# =============================================================================

@dataclass(frozen=True)
class RegressionResult:
    """Closed-form OLS fit of y = alpha + beta * x."""
    alpha: float
    beta: float
    r_squared: float


def ols_regression(x: Sequence[float], y: Sequence[float]) -> RegressionResult:
    """
    Single-factor OLS.

    beta = cov(x, y) / var(x); alpha = mean(y) - beta * mean(x).
    A constant regressor yields beta = 0 and alpha = mean(y).
    """
    a, b = _paired(x, y)
    var_x = variance(a)
    if var_x == 0:
        return RegressionResult(alpha=mean(b), beta=0.0, r_squared=0.0)

    beta = covariance(a, b) / var_x
    alpha = mean(b) - beta * mean(a)

    residuals = b - (alpha + beta * a)
    ss_res = float(np.sum(residuals ** 2))
    ss_tot = float(np.sum((b - b.mean()) ** 2))
    r_squared = 1 - ss_res / ss_tot if ss_tot > 0 else 0.0

    return RegressionResult(alpha=alpha, beta=beta, r_squared=r_squared)


def single_factor_model(
    asset_returns: Sequence[float],
    factor_returns: Sequence[float]
) -> RegressionResult:
    """Alpha/beta of an asset against a single factor (e.g. the market)."""
    return ols_regression(factor_returns, asset_returns)


__all__ = [
    'mean', 'variance', 'stddev', 'covariance', 'correlation',
    'skewness', 'kurtosis', 'autocorrelation', 't_test', 'TTestResult',
    'percent_changes', 'annualize_volatility',
    'sharpe_ratio', 'downside_deviation', 'sortino_ratio', 'calmar_ratio',
    'drawdown_series', 'max_drawdown', 'max_drawdown_duration',
    'value_at_risk', 'expected_shortfall',
    'RegressionResult', 'ols_regression', 'single_factor_model',
]
