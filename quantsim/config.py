"""
Configuration Module for the Quantitative Simulation & Allocation Engine

This module centralizes the constants and tunable settings shared by the
statistics library, the backtest simulator and the portfolio optimizer.

All "magic numbers" are defined here to ensure:
1. Single source of truth for thresholds that govern trade frequency
2. Easy modification without touching simulation code
3. Transparency in modelling assumptions (cost rates, z-scores, damping)
4. Identical risk semantics across the backtester and the optimizer
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict


# =============================================================================
# ENUMERATIONS
# =============================================================================

class OptimizationObjective(Enum):
    """Allocation objective selectable by the caller."""
    MEAN_VARIANCE = "meanVariance"
    RISK_PARITY = "riskParity"
    BLACK_LITTERMAN = "blackLitterman"
    MIN_VARIANCE = "minVariance"
    MAX_SHARPE = "maxSharpe"


# =============================================================================
# GLOBAL CONSTANTS
# =============================================================================

class Config:
    """
    Named constants used throughout the engine.

    Changing these values alters trade frequency and rebalance plans for
    every consumer of the engine.
    """

    # -------------------------------------------------------------------------
    # Calendar
    # -------------------------------------------------------------------------
    TRADING_DAYS_YEAR: int = 252      # Annualization for Calmar / volatility
    CALENDAR_DAYS_YEAR: int = 365     # Crypto trades every day (24h proxy vol)

    # -------------------------------------------------------------------------
    # Backtest execution
    # -------------------------------------------------------------------------
    COST_RATE: float = 0.001          # 10 bps per transition
    SLIPPAGE_RATE: float = 0.0005     # 5 bps per transition
    INITIAL_CAPITAL: float = 10_000.0
    POSITION_FRACTION: float = 0.10   # Max 10% of cash per entry

    # -------------------------------------------------------------------------
    # Strategy ensemble
    # -------------------------------------------------------------------------
    ENSEMBLE_THRESHOLD: float = 0.3   # Winning score must exceed this
    MAX_SIGNAL_CONFIDENCE: float = 0.9

    # -------------------------------------------------------------------------
    # Risk statistics
    # -------------------------------------------------------------------------
    VAR_CONFIDENCE: float = 0.95
    Z_SCORES: Dict[float, float] = {0.95: 1.645, 0.99: 2.326}
    ES_MULTIPLIER: float = 1.2        # Parametric ES approximation

    # -------------------------------------------------------------------------
    # Monte Carlo
    # -------------------------------------------------------------------------
    MC_ITERATIONS: int = 100
    MC_PERCENTILES = (0.05, 0.25, 0.50, 0.75, 0.95)


# =============================================================================
# BACKTEST SETTINGS
# =============================================================================

@dataclass(frozen=True)
class BacktestSettings:
    """Default cost and sizing parameters for a simulation run."""

    cost_rate: float = Config.COST_RATE
    slippage_rate: float = Config.SLIPPAGE_RATE
    initial_capital: float = Config.INITIAL_CAPITAL

    # Entry notional = min(position_fraction * cash, affordable) * confidence
    position_fraction: float = Config.POSITION_FRACTION


# =============================================================================
# OPTIMIZER SETTINGS
# =============================================================================

@dataclass(frozen=True)
class OptimizerSettings:
    """Parameters for the allocation solvers and the rebalance planner."""

    risk_free_rate: float = 0.02           # 2% annual
    transaction_cost: float = 0.001        # Applied to rebalance notionals

    # Rebalance planning
    rebalance_threshold: float = 0.05      # |delta| must exceed 5%
    high_priority_threshold: float = 0.10  # |delta| of 10% or more is urgent
    medium_priority_threshold: float = 0.05

    # Estimation
    volatility_premium: float = 0.1        # mu = m + 0.1 * |m|
    fallback_volatility: float = 0.1       # Used when sigma is zero
    default_correlation: float = 0.0
    min_history_for_correlation: int = 3

    # Solvers
    singular_pivot_tolerance: float = 1e-10
    risk_parity_iterations: int = 100
    risk_parity_damping: float = 0.1

    # Black-Litterman
    bl_tau: float = 0.025
    bl_risk_aversion: float = 3.0

    # Attribution split (allocation / selection / interaction)
    attribution_allocation: float = 0.6
    attribution_selection: float = 0.3
    attribution_interaction: float = 0.1

    # Covariance cache bucket width in seconds
    cache_bucket_seconds: int = 300


# =============================================================================
# GLOBAL CONFIGURATION INSTANCES
# =============================================================================

BACKTEST = BacktestSettings()
OPTIMIZER = OptimizerSettings()
