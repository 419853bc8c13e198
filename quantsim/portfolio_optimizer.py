"""
================================================================================
PORTFOLIO OPTIMIZER
================================================================================

Turns current holdings, per-symbol market snapshots and allocation
constraints into a risk-adjusted target allocation and a rebalance plan.

Components:
-----------
1. ESTIMATION (pluggable)
   - MomentumEstimator: mu = m + 0.1|m| with m the 24h change, sigma = |m| x sqrt(365),
     correlation from price history when available
   - StaticEstimator:   caller-supplied returns / volatilities / correlations
   - Cov[i][j] = corr[i][j] x sigma_i x sigma_j, optionally memoized in an
     explicit CovarianceCache keyed by (symbol set, time bucket)

2. SOLVERS
   - meanVariance  : w ~ 1 / sigma
   - minVariance   : w = inv(S) 1 / (1' inv(S) 1)
   - maxSharpe     : w ~ inv(S) (mu - rf)
   - riskParity    : damped fixed point towards equal risk contribution
   - blackLitterman: equilibrium prior, posterior with explicit views

3. DIAGNOSTICS
   - Expected return / risk, Sharpe / Sortino / Calmar analogues
   - Diversification (1 - weighted pairwise correlation), Herfindahl concentration
   - Parametric VaR (z = 1.645 / 2.326), ES ~ 1.2 x VaR
   - Risk contributions, 60/30/10 performance attribution

4. REBALANCING
   - |target - current| > 5% emits BUY / SELL, prioritized and sorted by notional

Numeric degeneracy never raises: a singular covariance matrix is replaced
by the identity, which degrades min-variance and max-Sharpe towards equal
weighting. Weights are clamped to [min, max] and renormalized once; with
many weights clamped at once this can push a weight back above the max.

Academic References:
-------------------
- Markowitz (1952): "Portfolio Selection"
- Maillard, Roncalli & Teiletche (2010): "Equally-Weighted Risk Contribution Portfolios"
- Black & Litterman (1992): "Global Portfolio Optimization"
- He & Litterman (1999): "The Intuition Behind Black-Litterman Model Portfolios"
================================================================================
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from .config import OPTIMIZER, Config, OptimizationObjective, OptimizerSettings
from .market_data import MarketSnapshot, PortfolioPosition, coerce_float
from .quant_statistics import correlation, percent_changes

logger = logging.getLogger(__name__)


# =============================================================================
# DATA STRUCTURES
# =============================================================================

class RebalancePriority(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class PortfolioConstraints:
    """
    Allocation limits.

    ``max_position_weight`` / ``min_position_weight`` are enforced by
    clamp-and-renormalize; the remaining fields only produce diagnostic
    warnings in the result.
    """
    max_position_weight: float = 1.0
    min_position_weight: float = 0.0
    max_risk: float = 1.0
    target_return: Optional[float] = None
    max_turnover: Optional[float] = None
    min_diversification: Optional[float] = None
    max_concentration: Optional[float] = None

    def __post_init__(self):
        if self.min_position_weight < 0:
            raise ValueError("min_position_weight must be non-negative")
        if self.max_position_weight <= 0:
            raise ValueError("max_position_weight must be positive")
        if self.min_position_weight > self.max_position_weight:
            raise ValueError("min_position_weight exceeds max_position_weight")


@dataclass(frozen=True)
class ExpectedImpact:
    """Estimated effect of one rebalance action."""
    return_contribution: float
    risk_contribution: float
    diversification_impact: float


@dataclass(frozen=True)
class RebalanceAction:
    """Trade required to move one symbol from its current to its target weight."""
    symbol: str
    action: str                   # BUY / SELL / HOLD
    current_weight: float
    target_weight: float
    weight_delta: float
    amount_to_trade: float
    estimated_cost: float
    priority: RebalancePriority
    rationale: str
    expected_impact: ExpectedImpact

    def to_dict(self) -> Dict[str, Any]:
        return {
            'symbol': self.symbol,
            'action': self.action,
            'current_weight': self.current_weight,
            'target_weight': self.target_weight,
            'weight_delta': self.weight_delta,
            'amount_to_trade': self.amount_to_trade,
            'estimated_cost': self.estimated_cost,
            'priority': self.priority.value,
            'rationale': self.rationale,
            'expected_impact': vars(self.expected_impact).copy(),
        }


@dataclass(frozen=True)
class PerformanceAttribution:
    """
    Simplified split of the return improvement over the current weights.

    60% allocation / 30% selection / 10% interaction. This is a fixed
    apportionment, not a Brinson decomposition.
    """
    total_return: float
    asset_allocation: float
    security_selection: float
    interaction: float


@dataclass
class OptimizationResult:
    """Target allocation with its diagnostics and rebalance plan."""
    objective: OptimizationObjective
    weights: Dict[str, float]
    expected_return: float
    expected_risk: float
    sharpe_ratio: float
    sortino_ratio: float
    calmar_ratio: float
    diversification_score: float
    concentration_risk: float
    value_at_risk_95: float
    value_at_risk_99: float
    expected_shortfall: float
    risk_contributions: Dict[str, float]
    performance_attribution: PerformanceAttribution
    rebalance_actions: List[RebalanceAction] = field(default_factory=list)
    current_weights: Dict[str, float] = field(default_factory=dict)
    expected_returns: Dict[str, float] = field(default_factory=dict)
    volatilities: Dict[str, float] = field(default_factory=dict)
    turnover: float = 0.0
    constraint_warnings: List[str] = field(default_factory=list)
    cache_hit: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'objective': self.objective.value,
            'weights': dict(self.weights),
            'expected_return': self.expected_return,
            'expected_risk': self.expected_risk,
            'sharpe_ratio': self.sharpe_ratio,
            'sortino_ratio': self.sortino_ratio,
            'calmar_ratio': self.calmar_ratio,
            'diversification_score': self.diversification_score,
            'concentration_risk': self.concentration_risk,
            'value_at_risk_95': self.value_at_risk_95,
            'value_at_risk_99': self.value_at_risk_99,
            'expected_shortfall': self.expected_shortfall,
            'risk_contributions': dict(self.risk_contributions),
            'performance_attribution': vars(self.performance_attribution).copy(),
            'rebalance_actions': [a.to_dict() for a in self.rebalance_actions],
            'current_weights': dict(self.current_weights),
            'expected_returns': dict(self.expected_returns),
            'volatilities': dict(self.volatilities),
            'turnover': self.turnover,
            'constraint_warnings': list(self.constraint_warnings),
        }


@dataclass(frozen=True)
class BlackLittermanView:
    """
    One investor view: a portfolio of ``assets`` (symbol -> pick weight)
    expected to return ``expected_return``.

    ``confidence`` in (0, 1] scales the view uncertainty; 0.5 uses the
    He-Litterman default omega = tau x p' S p.
    """
    assets: Dict[str, float]
    expected_return: float
    confidence: float = 0.5

    def __post_init__(self):
        if not 0 < self.confidence <= 1:
            raise ValueError(f"View confidence must be in (0, 1], got {self.confidence}")


# =============================================================================
# ESTIMATION
# =============================================================================

class ReturnEstimator(ABC):
    """Source of expected returns, volatilities and correlations."""

    @abstractmethod
    def expected_returns(self, snapshots: Sequence[MarketSnapshot]) -> np.ndarray:
        """Per-symbol expected return, aligned with ``snapshots``."""

    @abstractmethod
    def volatilities(self, snapshots: Sequence[MarketSnapshot]) -> np.ndarray:
        """Per-symbol annualized volatility, aligned with ``snapshots``."""

    @abstractmethod
    def correlation_matrix(self, snapshots: Sequence[MarketSnapshot]) -> np.ndarray:
        """Symmetric correlation matrix with a unit diagonal."""

    @property
    def cache_tag(self) -> str:
        """Distinguishes this estimator's matrices inside a shared CovarianceCache."""
        return type(self).__name__


class MomentumEstimator(ReturnEstimator):
    """
    Momentum estimates from the 24h change.

        m     = change_percent_24h / 100
        mu    = m + premium x |m|
        sigma = |m| x sqrt(365)

    Pairwise correlation is the Pearson correlation of recent price
    returns when both symbols carry enough history, else the default.
    """

    def __init__(self, settings: OptimizerSettings = OPTIMIZER):
        self.settings = settings

    def expected_returns(self, snapshots: Sequence[MarketSnapshot]) -> np.ndarray:
        m = np.array([s.change_percent_24h / 100 for s in snapshots], dtype=float)
        return m + np.abs(m) * self.settings.volatility_premium

    def volatilities(self, snapshots: Sequence[MarketSnapshot]) -> np.ndarray:
        m = np.array([s.change_percent_24h / 100 for s in snapshots], dtype=float)
        return np.abs(m) * math.sqrt(Config.CALENDAR_DAYS_YEAR)

    def correlation_matrix(self, snapshots: Sequence[MarketSnapshot]) -> np.ndarray:
        n = len(snapshots)
        corr = np.eye(n)
        min_history = self.settings.min_history_for_correlation

        for i in range(n):
            for j in range(i + 1, n):
                hi, hj = snapshots[i].history, snapshots[j].history
                rho = self.settings.default_correlation
                if len(hi) >= min_history and len(hj) >= min_history:
                    k = min(len(hi), len(hj))
                    rho = correlation(percent_changes(hi[-k:]), percent_changes(hj[-k:]))
                corr[i, j] = corr[j, i] = rho
        return corr


class StaticEstimator(ReturnEstimator):
    """
    Caller-supplied estimates.

    ``correlations`` maps symbol pairs (either order) to a correlation;
    missing pairs use ``default_correlation``.
    """

    def __init__(
        self,
        expected_returns: Dict[str, float],
        volatilities: Dict[str, float],
        correlations: Optional[Dict[Tuple[str, str], float]] = None,
        default_correlation: float = 0.0
    ):
        self._returns = dict(expected_returns)
        self._vols = dict(volatilities)
        self._corr = dict(correlations or {})
        self.default_correlation = default_correlation

    def _lookup(self, table: Dict[str, float], symbol: str, kind: str) -> float:
        if symbol not in table:
            raise ValueError(f"No {kind} estimate for {symbol}")
        return float(table[symbol])

    def expected_returns(self, snapshots: Sequence[MarketSnapshot]) -> np.ndarray:
        return np.array([self._lookup(self._returns, s.symbol, "return") for s in snapshots])

    def volatilities(self, snapshots: Sequence[MarketSnapshot]) -> np.ndarray:
        return np.array([self._lookup(self._vols, s.symbol, "volatility") for s in snapshots])

    def correlation_matrix(self, snapshots: Sequence[MarketSnapshot]) -> np.ndarray:
        n = len(snapshots)
        corr = np.eye(n)
        for i in range(n):
            for j in range(i + 1, n):
                a, b = snapshots[i].symbol, snapshots[j].symbol
                rho = self._corr.get((a, b), self._corr.get((b, a), self.default_correlation))
                corr[i, j] = corr[j, i] = rho
        return corr


def build_covariance(corr: np.ndarray, vols: np.ndarray) -> np.ndarray:
    """Cov[i][j] = corr[i][j] x vol[i] x vol[j]."""
    return corr * np.outer(vols, vols)


class CovarianceCache:
    """
    Explicit, caller-owned memo of correlation matrices.

    Entries are keyed by (estimator tag, sorted symbol tuple, time bucket)
    so that repeated optimizations of the same universe within one bucket
    reuse the estimate. Nothing is shared unless the caller passes the same
    instance. The tag defaults to the estimator class name, so two
    StaticEstimators fed different tables need separate caches.
    """

    def __init__(
        self,
        bucket_seconds: int = OPTIMIZER.cache_bucket_seconds,
        max_entries: int = 128
    ):
        if bucket_seconds <= 0:
            raise ValueError("bucket_seconds must be positive")
        self.bucket_seconds = bucket_seconds
        self.max_entries = max_entries
        self._entries: 'OrderedDict[Tuple[str, Tuple[str, ...], int], np.ndarray]' = OrderedDict()
        self.hits = 0
        self.misses = 0

    def key(
        self,
        symbols: Sequence[str],
        timestamp: float,
        tag: str = ""
    ) -> Tuple[str, Tuple[str, ...], int]:
        return tag, tuple(sorted(symbols)), int(timestamp // self.bucket_seconds)

    def get_correlation(
        self,
        symbols: Sequence[str],
        timestamp: float,
        compute,
        tag: str = ""
    ) -> Tuple[np.ndarray, bool]:
        """
        Correlation matrix in ``symbols`` order, computing it on a miss.

        Returns:
            (matrix, whether it came from the cache)
        """
        key = self.key(symbols, timestamp, tag)
        ordered = key[1]
        position = {s: i for i, s in enumerate(ordered)}
        idx = [position[s] for s in symbols]

        if key in self._entries:
            self.hits += 1
            self._entries.move_to_end(key)
            stored = self._entries[key]
            return stored[np.ix_(idx, idx)].copy(), True

        self.misses += 1
        matrix = np.asarray(compute(), dtype=float)
        inverse = np.argsort(idx)
        self._entries[key] = matrix[np.ix_(inverse, inverse)].copy()
        if len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return matrix, False

    def clear(self) -> None:
        self._entries.clear()
        self.hits = self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)


# =============================================================================
# LINEAR ALGEBRA
# =============================================================================

def invert_matrix(
    matrix: Union[np.ndarray, Sequence[Sequence[float]]],
    tolerance: float = OPTIMIZER.singular_pivot_tolerance
) -> np.ndarray:
    """
    Gauss-Jordan inversion with partial pivoting.

    A pivot smaller than ``tolerance`` in magnitude marks the matrix as
    singular and the identity is returned instead. Never raises for a
    square input.
    """
    a = np.array(matrix, dtype=float)
    n = a.shape[0]
    if n == 0:
        return np.zeros((0, 0))
    if a.shape != (n, n):
        raise ValueError(f"Matrix must be square, got shape {a.shape}")

    augmented = np.hstack([a, np.eye(n)])
    for i in range(n):
        max_row = i + int(np.argmax(np.abs(augmented[i:, i])))
        if max_row != i:
            augmented[[i, max_row]] = augmented[[max_row, i]]

        pivot = augmented[i, i]
        if abs(pivot) < tolerance or not math.isfinite(pivot):
            logger.warning("Singular covariance matrix, substituting identity")
            return np.eye(n)

        augmented[i] /= pivot
        for k in range(n):
            if k != i:
                augmented[k] -= augmented[k, i] * augmented[i]

    return augmented[:, n:]


# =============================================================================
# SOLVERS
# =============================================================================

def equal_weights(n: int) -> np.ndarray:
    return np.full(n, 1.0 / n) if n > 0 else np.zeros(0)


def apply_constraints(weights: np.ndarray, constraints: PortfolioConstraints) -> np.ndarray:
    """
    Clamp each weight to [min, max], then renormalize to sum to 1.

    A non-positive or non-finite sum falls back to equal weights.
    """
    w = np.asarray(weights, dtype=float)
    if len(w) == 0:
        return w
    w = np.where(np.isfinite(w), w, 0.0)
    w = np.clip(w, constraints.min_position_weight, constraints.max_position_weight)
    total = w.sum()
    if total <= 0 or not math.isfinite(total):
        return equal_weights(len(w))
    return w / total


def _normalize_or_equal(raw: np.ndarray) -> np.ndarray:
    total = raw.sum()
    if not np.all(np.isfinite(raw)) or abs(total) < 1e-12:
        return equal_weights(len(raw))
    return raw / total


def mean_variance_weights(
    vols: np.ndarray,
    constraints: PortfolioConstraints,
    settings: OptimizerSettings = OPTIMIZER
) -> np.ndarray:
    """Inverse-volatility weighting; zero volatility uses the fallback sigma."""
    sigma = np.where(vols > 0, vols, settings.fallback_volatility)
    return apply_constraints(_normalize_or_equal(1.0 / sigma), constraints)


def min_variance_weights(
    cov: np.ndarray,
    constraints: PortfolioConstraints,
    settings: OptimizerSettings = OPTIMIZER
) -> np.ndarray:
    """Analytical minimum-variance portfolio w = inv(S) 1 / (1' inv(S) 1)."""
    inv_cov = invert_matrix(cov, settings.singular_pivot_tolerance)
    raw = inv_cov @ np.ones(len(cov))
    return apply_constraints(_normalize_or_equal(raw), constraints)


def max_sharpe_weights(
    mu: np.ndarray,
    cov: np.ndarray,
    constraints: PortfolioConstraints,
    settings: OptimizerSettings = OPTIMIZER
) -> np.ndarray:
    """Tangency direction w ~ inv(S) (mu - rf), normalized to sum to 1."""
    inv_cov = invert_matrix(cov, settings.singular_pivot_tolerance)
    raw = inv_cov @ (mu - settings.risk_free_rate)
    return apply_constraints(_normalize_or_equal(raw), constraints)


def risk_contributions(weights: np.ndarray, cov: np.ndarray) -> np.ndarray:
    """
    Fractional risk contribution RC_i = w_i (S w)_i / (w' S w).

    Zero portfolio variance yields all-zero contributions.
    """
    variance = float(weights @ cov @ weights)
    if variance <= 0:
        return np.zeros(len(weights))
    return weights * (cov @ weights) / variance


def risk_parity_weights(
    cov: np.ndarray,
    constraints: PortfolioConstraints,
    settings: OptimizerSettings = OPTIMIZER
) -> np.ndarray:
    """
    Damped fixed-point iteration towards equal risk contribution.

    Each pass: w_i <- w_i x (target / RC_i) ^ damping, then clamp and
    renormalize. Assets with no measurable contribution keep their weight.
    """
    n = len(cov)
    weights = equal_weights(n)
    target = 1.0 / n if n else 0.0

    for _ in range(settings.risk_parity_iterations):
        rc = risk_contributions(weights, cov)
        if not np.any(rc > 0):
            break
        adjustment = np.ones(n)
        positive = rc > 0
        adjustment[positive] = (target / rc[positive]) ** settings.risk_parity_damping
        weights = apply_constraints(_normalize_or_equal(weights * adjustment), constraints)

    return weights


def black_litterman_weights(
    symbols: Sequence[str],
    cov: np.ndarray,
    constraints: PortfolioConstraints,
    views: Optional[Sequence[BlackLittermanView]] = None,
    settings: OptimizerSettings = OPTIMIZER
) -> np.ndarray:
    """
    Black-Litterman allocation with an equal-weight market prior.

    Without usable views the result collapses to the (constrained) prior.
    With views the posterior mean is

        mu_BL = [inv(tS) + P' inv(O) P]^-1 [inv(tS) pi + P' inv(O) Q]

    where pi = delta S w_mkt, and weights follow w ~ inv(delta S) mu_BL.
    """
    n = len(symbols)
    market = equal_weights(n)
    index = {s: i for i, s in enumerate(symbols)}

    picks, targets, omegas = [], [], []
    for view in views or []:
        p = np.zeros(n)
        for symbol, pick in view.assets.items():
            if symbol in index:
                p[index[symbol]] = pick
            else:
                logger.warning(f"Ignoring view on unknown symbol {symbol}")
        if not np.any(p):
            continue
        scale = (1 - view.confidence) / view.confidence
        omega = settings.bl_tau * float(p @ cov @ p) * scale
        picks.append(p)
        targets.append(view.expected_return)
        omegas.append(max(omega, 1e-12))

    if not picks:
        return apply_constraints(market, constraints)

    tol = settings.singular_pivot_tolerance
    delta = settings.bl_risk_aversion
    implied = delta * cov @ market
    P = np.vstack(picks)
    Q = np.asarray(targets)
    omega_inv = np.diag(1.0 / np.asarray(omegas))

    tau_cov_inv = invert_matrix(settings.bl_tau * cov, tol)
    precision = tau_cov_inv + P.T @ omega_inv @ P
    posterior = invert_matrix(precision, tol) @ (tau_cov_inv @ implied + P.T @ omega_inv @ Q)

    raw = invert_matrix(delta * cov, tol) @ posterior
    return apply_constraints(_normalize_or_equal(raw), constraints)


# =============================================================================
# DIAGNOSTICS
# =============================================================================

class PortfolioDiagnostics:
    """Risk and performance analogues for a weight vector."""

    @staticmethod
    def diversification_score(weights: np.ndarray, corr: np.ndarray) -> float:
        """
        1 - weighted average pairwise correlation (pairs weighted by w_i w_j).

        Fewer than two assets, or no weight on any pair, gives 0.
        """
        n = len(weights)
        if n < 2:
            return 0.0
        pair_weights = np.outer(weights, weights)
        np.fill_diagonal(pair_weights, 0.0)
        total = pair_weights.sum()
        if total <= 0:
            return 0.0
        avg_corr = float((pair_weights * corr).sum() / total)
        return max(0.0, 1.0 - avg_corr)

    @staticmethod
    def sortino_analogue(weights: np.ndarray, mu: np.ndarray, risk_free_rate: float) -> float:
        """(E[R] - rf) over the RMS of negative per-asset return contributions."""
        contributions = weights * mu
        expected = float(contributions.sum())
        downside = contributions[contributions < 0]
        if len(downside) == 0:
            return float('inf') if expected > 0 else 0.0
        dd = math.sqrt(float(np.mean(downside ** 2)))
        return (expected - risk_free_rate) / dd if dd > 0 else 0.0

    @staticmethod
    def calmar_analogue(weights: np.ndarray, mu: np.ndarray) -> float:
        """E[R] over an estimated drawdown of half the worst expected return."""
        if len(mu) == 0:
            return 0.0
        estimated_dd = abs(float(mu.min())) * 0.5
        return float(weights @ mu) / estimated_dd if estimated_dd > 0 else 0.0

    @staticmethod
    def parametric_var(expected_return: float, risk: float, confidence: float) -> float:
        """Normal VaR: z x sigma - E[R]."""
        z = Config.Z_SCORES.get(confidence, Config.Z_SCORES[0.99])
        return z * risk - expected_return


# =============================================================================
# REBALANCING
# =============================================================================

def current_weights_from_positions(
    positions: Iterable[PortfolioPosition],
    prices: Dict[str, float],
    total_capital: float
) -> Dict[str, float]:
    """
    Current weight of each holding: quantity x price / capital.

    Weights are signed, so a short enters the rebalance plan as a negative
    weight to be bought back. The snapshot price is used when available,
    else the entry price. Positions with a non-finite quantity or price
    are skipped; several positions in one symbol are aggregated.
    """
    weights: Dict[str, float] = {}
    for pos in positions:
        quantity = coerce_float(pos.quantity)
        price = coerce_float(prices.get(pos.symbol), coerce_float(pos.entry_price))
        if quantity is None or price is None:
            logger.warning(f"Skipping position in {pos.symbol}: unusable quantity or price")
            continue
        value = replace(pos, quantity=quantity).exposure(price)
        weights[pos.symbol] = weights.get(pos.symbol, 0.0) + value / total_capital
    return weights


def generate_rebalance_actions(
    current_weights: Dict[str, float],
    target_weights: Dict[str, float],
    total_capital: float,
    expected_returns: Optional[Dict[str, float]] = None,
    volatilities: Optional[Dict[str, float]] = None,
    settings: OptimizerSettings = OPTIMIZER
) -> List[RebalanceAction]:
    """
    Rebalance plan from current to target weights.

    Symbols held but absent from the target universe are targeted at 0.
    An action is emitted only when |delta| exceeds the rebalance threshold;
    priority is high from 10%, medium above 5%, low otherwise. Actions are
    sorted by notional, largest first.
    """
    expected_returns = expected_returns or {}
    volatilities = volatilities or {}

    symbols = list(target_weights)
    symbols += [s for s in current_weights if s not in target_weights]

    actions = []
    for symbol in symbols:
        current = current_weights.get(symbol, 0.0)
        target = target_weights.get(symbol, 0.0)
        delta = target - current
        if not math.isfinite(delta):
            logger.warning(f"Skipping rebalance of {symbol}: non-finite weight")
            continue
        magnitude = round(abs(delta), 10)
        if magnitude <= settings.rebalance_threshold:
            continue

        if magnitude >= settings.high_priority_threshold:
            priority = RebalancePriority.HIGH
        elif magnitude > settings.medium_priority_threshold:
            priority = RebalancePriority.MEDIUM
        else:
            priority = RebalancePriority.LOW

        amount = abs(delta) * total_capital
        actions.append(RebalanceAction(
            symbol=symbol,
            action="BUY" if delta > 0 else "SELL",
            current_weight=current,
            target_weight=target,
            weight_delta=delta,
            amount_to_trade=amount,
            estimated_cost=amount * settings.transaction_cost,
            priority=priority,
            rationale=f"Rebalance from {current * 100:.1f}% to {target * 100:.1f}%",
            expected_impact=ExpectedImpact(
                return_contribution=delta * expected_returns.get(symbol, 0.0),
                risk_contribution=abs(delta) * volatilities.get(symbol, 0.0),
                diversification_impact=current ** 2 - target ** 2,
            ),
        ))

    actions.sort(key=lambda a: a.amount_to_trade, reverse=True)
    return actions


# =============================================================================
# OPTIMIZER
# =============================================================================

def _resolve_objective(objective: Union[str, OptimizationObjective]) -> OptimizationObjective:
    if isinstance(objective, OptimizationObjective):
        return objective
    for candidate in OptimizationObjective:
        if objective in (candidate.value, candidate.name, candidate.name.lower()):
            return candidate
    raise ValueError(f"Unknown optimization objective: {objective!r}")


def _prepare_universe(snapshots: Iterable[MarketSnapshot]) -> List[MarketSnapshot]:
    """
    Drop snapshots without a usable price; the last snapshot per symbol wins.

    Unparseable 24h changes become 0 and unusable history prices are dropped.
    """
    universe: Dict[str, MarketSnapshot] = {}
    for snap in snapshots or []:
        price = coerce_float(snap.price)
        if price is None or price <= 0:
            logger.warning(f"Skipping snapshot for {snap.symbol}: invalid price {snap.price!r}")
            continue
        change = coerce_float(snap.change_percent_24h, 0.0)
        history = tuple(p for p in (coerce_float(h) for h in snap.history or ())
                        if p is not None and p > 0)
        if len(history) != len(snap.history or ()):
            logger.warning(f"Dropped {len(snap.history) - len(history)} unusable "
                           f"history price(s) for {snap.symbol}")
        timestamp = coerce_float(snap.timestamp, 0.0)
        if (change != snap.change_percent_24h or price != snap.price
                or timestamp != snap.timestamp or history != snap.history):
            snap = MarketSnapshot(snap.symbol, price, change, snap.volume_24h,
                                  timestamp, history)
        universe[snap.symbol] = snap
    return list(universe.values())


class PortfolioOptimizer:
    """
    Allocation engine.

    Example:
        >>> optimizer = PortfolioOptimizer()
        >>> result = optimizer.optimize(positions, snapshots, 100_000,
        ...                             PortfolioConstraints(max_position_weight=0.5),
        ...                             objective="minVariance")
        >>> result.weights
    """

    def __init__(self, settings: OptimizerSettings = OPTIMIZER):
        self.settings = settings

    def optimize(
        self,
        positions: Iterable[PortfolioPosition],
        snapshots: Iterable[MarketSnapshot],
        total_capital: float,
        constraints: Optional[PortfolioConstraints] = None,
        objective: Union[str, OptimizationObjective] = OptimizationObjective.MEAN_VARIANCE,
        estimator: Optional[ReturnEstimator] = None,
        cache: Optional[CovarianceCache] = None,
        views: Optional[Sequence[BlackLittermanView]] = None,
        as_of: Optional[float] = None
    ) -> OptimizationResult:
        """
        Compute a target allocation and the rebalance plan to reach it.

        Args:
            positions: Current holdings
            snapshots: Current market state, one per symbol in the universe
            total_capital: Portfolio value used for weights and trade notionals
            constraints: Allocation limits (defaults to long-only, unbounded)
            objective: One of meanVariance / riskParity / blackLitterman /
                minVariance / maxSharpe
            estimator: Return/risk estimator (defaults to MomentumEstimator)
            cache: Optional caller-owned CovarianceCache
            views: Black-Litterman views, ignored by other objectives
            as_of: Timestamp for the cache bucket (defaults to latest snapshot)

        Returns:
            OptimizationResult
        """
        if total_capital is None or not total_capital > 0:
            raise ValueError(f"total_capital must be positive, got {total_capital}")
        objective = _resolve_objective(objective)
        constraints = constraints or PortfolioConstraints()
        estimator = estimator or MomentumEstimator(self.settings)
        positions = list(positions or [])

        universe = _prepare_universe(snapshots)
        symbols = [s.symbol for s in universe]
        prices = {s.symbol: s.price for s in universe}
        current = current_weights_from_positions(positions, prices, total_capital)

        if not universe:
            logger.warning("Empty symbol universe, only liquidation actions produced")
            return self._empty_result(objective, current, total_capital)

        mu = np.asarray(estimator.expected_returns(universe), dtype=float)
        vols = np.asarray(estimator.volatilities(universe), dtype=float)

        cache_hit = False
        if cache is not None:
            stamp = as_of if as_of is not None else max(s.timestamp for s in universe)
            corr, cache_hit = cache.get_correlation(
                symbols, stamp, lambda: estimator.correlation_matrix(universe),
                tag=estimator.cache_tag,
            )
        else:
            corr = np.asarray(estimator.correlation_matrix(universe), dtype=float)
        cov = build_covariance(corr, vols)

        weights = self._solve(objective, symbols, mu, vols, cov, constraints, views)
        return self._assemble(objective, symbols, weights, mu, vols, corr, cov,
                              current, total_capital, constraints, cache_hit)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------
    def _solve(
        self,
        objective: OptimizationObjective,
        symbols: List[str],
        mu: np.ndarray,
        vols: np.ndarray,
        cov: np.ndarray,
        constraints: PortfolioConstraints,
        views: Optional[Sequence[BlackLittermanView]]
    ) -> np.ndarray:
        s = self.settings
        if objective is OptimizationObjective.RISK_PARITY:
            return risk_parity_weights(cov, constraints, s)
        if objective is OptimizationObjective.BLACK_LITTERMAN:
            return black_litterman_weights(symbols, cov, constraints, views, s)
        if objective is OptimizationObjective.MIN_VARIANCE:
            return min_variance_weights(cov, constraints, s)
        if objective is OptimizationObjective.MAX_SHARPE:
            return max_sharpe_weights(mu, cov, constraints, s)
        return mean_variance_weights(vols, constraints, s)

    def _assemble(
        self,
        objective: OptimizationObjective,
        symbols: List[str],
        weights: np.ndarray,
        mu: np.ndarray,
        vols: np.ndarray,
        corr: np.ndarray,
        cov: np.ndarray,
        current: Dict[str, float],
        total_capital: float,
        constraints: PortfolioConstraints,
        cache_hit: bool
    ) -> OptimizationResult:
        s = self.settings
        expected_return = float(weights @ mu)
        expected_risk = math.sqrt(max(float(weights @ cov @ weights), 0.0))
        sharpe = (expected_return - s.risk_free_rate) / expected_risk if expected_risk > 0 else 0.0

        var_95 = PortfolioDiagnostics.parametric_var(expected_return, expected_risk, 0.95)
        var_99 = PortfolioDiagnostics.parametric_var(expected_return, expected_risk, 0.99)

        current_return = sum(current.get(sym, 0.0) * mu[i] for i, sym in enumerate(symbols))
        delta_return = expected_return - current_return
        attribution = PerformanceAttribution(
            total_return=delta_return,
            asset_allocation=delta_return * s.attribution_allocation,
            security_selection=delta_return * s.attribution_selection,
            interaction=delta_return * s.attribution_interaction,
        )

        target = {sym: float(w) for sym, w in zip(symbols, weights)}
        mu_map = {sym: float(m) for sym, m in zip(symbols, mu)}
        vol_map = {sym: float(v) for sym, v in zip(symbols, vols)}
        actions = generate_rebalance_actions(current, target, total_capital, mu_map, vol_map, s)

        all_symbols = set(target) | set(current)
        turnover = 0.5 * sum(abs(target.get(x, 0.0) - current.get(x, 0.0)) for x in all_symbols)

        result = OptimizationResult(
            objective=objective,
            weights=target,
            expected_return=expected_return,
            expected_risk=expected_risk,
            sharpe_ratio=sharpe,
            sortino_ratio=PortfolioDiagnostics.sortino_analogue(weights, mu, s.risk_free_rate),
            calmar_ratio=PortfolioDiagnostics.calmar_analogue(weights, mu),
            diversification_score=PortfolioDiagnostics.diversification_score(weights, corr),
            concentration_risk=float(np.sum(weights ** 2)),
            value_at_risk_95=var_95,
            value_at_risk_99=var_99,
            expected_shortfall=var_95 * Config.ES_MULTIPLIER,
            risk_contributions={sym: float(rc) for sym, rc in
                                zip(symbols, risk_contributions(weights, cov))},
            performance_attribution=attribution,
            rebalance_actions=actions,
            current_weights=dict(current),
            expected_returns=mu_map,
            volatilities=vol_map,
            turnover=turnover,
            cache_hit=cache_hit,
        )
        result.constraint_warnings = check_constraints(result, constraints)
        for warning in result.constraint_warnings:
            logger.warning(warning)

        logger.info(
            f"Optimized {len(symbols)} symbols ({objective.value}): "
            f"E[R]={expected_return:.4f}, risk={expected_risk:.4f}, "
            f"{len(actions)} rebalance action(s)"
        )
        return result

    def _empty_result(
        self,
        objective: OptimizationObjective,
        current: Dict[str, float],
        total_capital: float
    ) -> OptimizationResult:
        actions = generate_rebalance_actions(current, {}, total_capital, settings=self.settings)
        return OptimizationResult(
            objective=objective,
            weights={},
            expected_return=0.0,
            expected_risk=0.0,
            sharpe_ratio=0.0,
            sortino_ratio=0.0,
            calmar_ratio=0.0,
            diversification_score=0.0,
            concentration_risk=0.0,
            value_at_risk_95=0.0,
            value_at_risk_99=0.0,
            expected_shortfall=0.0,
            risk_contributions={},
            performance_attribution=PerformanceAttribution(0.0, 0.0, 0.0, 0.0),
            rebalance_actions=actions,
            current_weights=dict(current),
            turnover=0.5 * sum(abs(w) for w in current.values()),
            constraint_warnings=["Empty symbol universe"],
        )


def check_constraints(result: OptimizationResult, constraints: PortfolioConstraints) -> List[str]:
    """Diagnostic messages for soft constraints the allocation does not meet."""
    warnings = []
    if result.expected_risk > constraints.max_risk:
        warnings.append(
            f"Expected risk {result.expected_risk:.4f} exceeds max_risk {constraints.max_risk:.4f}"
        )
    if constraints.target_return is not None and result.expected_return < constraints.target_return:
        warnings.append(
            f"Expected return {result.expected_return:.4f} below target {constraints.target_return:.4f}"
        )
    if constraints.max_turnover is not None and result.turnover > constraints.max_turnover:
        warnings.append(
            f"Turnover {result.turnover:.4f} exceeds max_turnover {constraints.max_turnover:.4f}"
        )
    if (constraints.min_diversification is not None
            and result.diversification_score < constraints.min_diversification):
        warnings.append(
            f"Diversification {result.diversification_score:.4f} below "
            f"min_diversification {constraints.min_diversification:.4f}"
        )
    if (constraints.max_concentration is not None
            and result.concentration_risk > constraints.max_concentration):
        warnings.append(
            f"Concentration {result.concentration_risk:.4f} exceeds "
            f"max_concentration {constraints.max_concentration:.4f}"
        )
    over = [s for s, w in result.weights.items() if w > constraints.max_position_weight + 1e-9]
    if over:
        warnings.append(f"Renormalization pushed {', '.join(over)} above max_position_weight")
    return warnings


def optimize_portfolio(
    positions: Iterable[PortfolioPosition],
    snapshots: Iterable[MarketSnapshot],
    total_capital: float,
    constraints: Optional[PortfolioConstraints] = None,
    objective: Union[str, OptimizationObjective] = OptimizationObjective.MEAN_VARIANCE,
    estimator: Optional[ReturnEstimator] = None,
    cache: Optional[CovarianceCache] = None,
    views: Optional[Sequence[BlackLittermanView]] = None,
    settings: OptimizerSettings = OPTIMIZER,
    as_of: Optional[float] = None
) -> OptimizationResult:
    """Convenience wrapper around PortfolioOptimizer.optimize."""
    return PortfolioOptimizer(settings).optimize(
        positions, snapshots, total_capital, constraints, objective,
        estimator=estimator, cache=cache, views=views, as_of=as_of,
    )


# =============================================================================
# REPORT FORMATTING
# =============================================================================

def format_optimization_report(result: OptimizationResult) -> str:
    """Format an optimization result as human-readable text."""

    def ratio(value: float) -> str:
        return "inf" if math.isinf(value) else f"{value:.3f}"

    lines = [
        "=" * 70,
        "PORTFOLIO OPTIMIZATION REPORT",
        "=" * 70,
        f"Objective: {result.objective.value}",
        "",
        "-" * 70,
        "TARGET ALLOCATION",
        "-" * 70,
    ]
    for symbol, weight in sorted(result.weights.items(), key=lambda kv: -kv[1]):
        current = result.current_weights.get(symbol, 0.0)
        lines.append(f"  {symbol:<12} {weight:>8.2%}   (current {current:.2%})")

    lines.extend([
        "",
        "-" * 70,
        "RISK / RETURN",
        "-" * 70,
        f"Expected Return:     {result.expected_return:+.2%}",
        f"Expected Risk:       {result.expected_risk:.2%}",
        f"Sharpe Ratio:        {ratio(result.sharpe_ratio)}",
        f"Sortino Ratio:       {ratio(result.sortino_ratio)}",
        f"Calmar Ratio:        {ratio(result.calmar_ratio)}",
        f"Diversification:     {result.diversification_score:.3f}",
        f"Concentration (HHI): {result.concentration_risk:.3f}",
        f"VaR (95%):           {result.value_at_risk_95:.2%}",
        f"VaR (99%):           {result.value_at_risk_99:.2%}",
        f"Expected Shortfall:  {result.expected_shortfall:.2%}",
        f"Turnover:            {result.turnover:.2%}",
        "",
        "-" * 70,
        "REBALANCE ACTIONS",
        "-" * 70,
    ])
    if not result.rebalance_actions:
        lines.append("  None (all deltas within threshold)")
    for action in result.rebalance_actions:
        lines.append(
            f"  {action.action:<4} {action.symbol:<12} ${action.amount_to_trade:>12,.2f} "
            f"[{action.priority.value}] {action.rationale}"
        )

    if result.constraint_warnings:
        lines.extend(["", "-" * 70, "WARNINGS", "-" * 70])
        lines.extend(f"  {w}" for w in result.constraint_warnings)

    lines.append("=" * 70)
    return "\n".join(lines)


__all__ = [
    'RebalancePriority', 'PortfolioConstraints', 'ExpectedImpact', 'RebalanceAction',
    'PerformanceAttribution', 'OptimizationResult', 'BlackLittermanView',
    'ReturnEstimator', 'MomentumEstimator', 'StaticEstimator', 'CovarianceCache',
    'build_covariance', 'invert_matrix', 'equal_weights', 'apply_constraints',
    'mean_variance_weights', 'min_variance_weights', 'max_sharpe_weights',
    'risk_parity_weights', 'black_litterman_weights', 'risk_contributions',
    'PortfolioDiagnostics', 'current_weights_from_positions',
    'generate_rebalance_actions', 'check_constraints',
    'PortfolioOptimizer', 'optimize_portfolio', 'format_optimization_report',
]
