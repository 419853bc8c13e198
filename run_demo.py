#!/usr/bin/env python3
"""
Quantitative Simulation & Allocation Engine - Demo Runner

This script exercises the complete engine on one price path:
    Phase 1: Strategy backtest with costs, slippage and position sizing
    Phase 2: Monte Carlo robustness over shuffled price paths
    Phase 3: Portfolio optimization and rebalance planning

EXECUTION
    python run_demo.py
    python run_demo.py --strategy ensemble --iterations 200
    python run_demo.py --csv prices.csv --symbol BTC

When no CSV is given a seeded synthetic path is generated, so repeated
runs print identical reports.

OUTPUT ARTIFACTS
    outputs/
        {symbol}_backtest.json      Full backtest report
        {symbol}_allocation.json    Optimization result and rebalance plan
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List

import numpy as np
import pandas as pd

from quantsim.backtest_engine import (
    BacktestReport, format_backtest_report, run_backtest, run_monte_carlo_simulation,
)
from quantsim.config import OptimizationObjective
from quantsim.market_data import (
    MarketObservation, MarketSnapshot, PortfolioPosition, observations_from_frame,
)
from quantsim.portfolio_optimizer import (
    PortfolioConstraints, format_optimization_report, optimize_portfolio,
)
from quantsim.strategy_engine import (
    BreakoutStrategy, MeanReversionStrategy, MovingAverageCrossoverStrategy,
    RSIMomentumStrategy, Strategy, StrategyEnsemble,
)


# =============================================================================
# CONSTANTS
# =============================================================================

VERSION: str = "1.0.0"
DEFAULT_SYMBOL: str = "DEMO"
DEFAULT_BARS: int = 500
OUTPUT_DIR = Path("outputs")

STRATEGIES = {
    "crossover": MovingAverageCrossoverStrategy,
    "reversion": MeanReversionStrategy,
    "rsi": RSIMomentumStrategy,
    "breakout": BreakoutStrategy,
    "ensemble": StrategyEnsemble.default,
}


def print_section_header(title: str, char: str = "═") -> None:
    """Print a formatted section header."""
    width = 79
    print()
    print(char * width)
    print(f"  {title}")
    print(char * width)
    print()


# =============================================================================
# DATA
# =============================================================================

def synthetic_observations(symbol: str, bars: int, seed: int) -> List[MarketObservation]:
    """Geometric random walk with regime-dependent drift and lognormal volume."""
    rng = np.random.default_rng(seed)
    drift = np.where(np.arange(bars) < bars // 2, 0.0008, -0.0004)
    log_returns = rng.normal(drift, 0.02)
    prices = 100.0 * np.exp(np.cumsum(log_returns))
    volumes = rng.lognormal(mean=10.0, sigma=0.4, size=bars)

    index = pd.date_range("2023-01-01", periods=bars, freq="D")
    frame = pd.DataFrame({"close": prices, "volume": volumes}, index=index)
    return observations_from_frame(frame, symbol=symbol)


def load_observations(path: Path, symbol: str) -> List[MarketObservation]:
    """Read a CSV with a date column (or index) and close/volume columns."""
    frame = pd.read_csv(path)
    date_col = next((c for c in frame.columns if c.lower() in ("date", "timestamp", "time")), None)
    if date_col is not None:
        frame = frame.set_index(pd.to_datetime(frame[date_col])).drop(columns=[date_col])
    return observations_from_frame(frame, symbol=symbol)


def save_json(payload: Dict[str, Any], path: Path, logger: logging.Logger) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as fh:
        json.dump(payload, fh, indent=2, default=str)
    logger.info(f"Saved: {path}")


# =============================================================================
# PHASE 1: BACKTEST
# =============================================================================

def run_phase1(
    observations: List[MarketObservation],
    strategy: Strategy,
    symbol: str,
    logger: logging.Logger
) -> BacktestReport:
    """Replay the path through the strategy and print the report."""
    print_section_header("PHASE 1: STRATEGY BACKTEST")
    logger.info(f"Backtesting {strategy.name} over {len(observations):,} observations")

    report = run_backtest(observations, strategy, symbol=symbol)
    print(format_backtest_report(report))
    save_json(report.to_dict(), OUTPUT_DIR / f"{symbol.lower()}_backtest.json", logger)
    return report


# =============================================================================
# PHASE 2: MONTE CARLO
# =============================================================================

def run_phase2(
    observations: List[MarketObservation],
    strategy: Strategy,
    report: BacktestReport,
    iterations: int,
    seed: int,
    logger: logging.Logger
) -> None:
    """Rerun the backtest on shuffled paths and append the distribution."""
    print_section_header("PHASE 2: MONTE CARLO ROBUSTNESS")
    logger.info(f"Running {iterations} shuffled iterations (seed={seed})")

    analysis = run_monte_carlo_simulation(observations, strategy, iterations=iterations, seed=seed)
    print(format_backtest_report(report, analysis))

    percentile = float(np.mean(np.asarray(analysis.returns) <= report.total_return))
    logger.info(f"Actual return sits at the {percentile:.0%} percentile of shuffled paths")


# =============================================================================
# PHASE 3: PORTFOLIO OPTIMIZATION
# =============================================================================

def run_phase3(
    observations: List[MarketObservation],
    objective: OptimizationObjective,
    capital: float,
    seed: int,
    logger: logging.Logger
) -> None:
    """Allocate across the demo symbol and three synthetic peers."""
    print_section_header("PHASE 3: PORTFOLIO OPTIMIZATION")

    rng = np.random.default_rng(seed + 1)
    base = np.array([o.price for o in observations[-30:]])
    if len(base) < 2:
        logger.warning("Need at least two observations to estimate momentum, skipping")
        return
    as_of = observations[-1].timestamp

    snapshots = [MarketSnapshot(
        symbol=observations[-1].symbol,
        price=float(base[-1]),
        change_percent_24h=float((base[-1] / base[-2] - 1) * 100),
        timestamp=as_of,
        history=tuple(base),
    )]
    for name in ("PEER1", "PEER2", "PEER3"):
        path = base * np.exp(np.cumsum(rng.normal(0, 0.015, len(base))))
        snapshots.append(MarketSnapshot(
            symbol=name,
            price=float(path[-1]),
            change_percent_24h=float(rng.normal(0.5, 3.0)),
            timestamp=as_of,
            history=tuple(path),
        ))

    positions = [PortfolioPosition(snapshots[0].symbol, capital * 0.6 / snapshots[0].price,
                                   snapshots[0].price)]
    constraints = PortfolioConstraints(max_position_weight=0.6, max_turnover=0.5)

    logger.info(f"Optimizing {len(snapshots)} symbols with objective {objective.value}")
    result = optimize_portfolio(positions, snapshots, capital, constraints, objective)
    print(format_optimization_report(result))
    save_json(result.to_dict(), OUTPUT_DIR / f"{snapshots[0].symbol.lower()}_allocation.json", logger)


# =============================================================================
# MAIN
# =============================================================================

def main() -> int:
    """
    Main entry point for the demo runner.

    Returns
    -------
    int
        Exit code (0 for success, 1 for failure)
    """
    start_time = time.time()

    parser = argparse.ArgumentParser(
        description="Quantitative Simulation & Allocation Engine - Demo Runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--symbol", "-s", type=str, default=DEFAULT_SYMBOL,
                        help=f"Symbol label (default: {DEFAULT_SYMBOL})")
    parser.add_argument("--csv", type=Path, default=None,
                        help="CSV with date, close and volume columns")
    parser.add_argument("--bars", type=int, default=DEFAULT_BARS,
                        help=f"Synthetic path length (default: {DEFAULT_BARS})")
    parser.add_argument("--strategy", choices=sorted(STRATEGIES), default="crossover",
                        help="Signal source to backtest")
    parser.add_argument("--iterations", "-n", type=int, default=100,
                        help="Monte Carlo iterations")
    parser.add_argument("--objective", choices=[o.value for o in OptimizationObjective],
                        default=OptimizationObjective.MEAN_VARIANCE.value)
    parser.add_argument("--capital", type=float, default=100_000.0)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="  %(asctime)s │ %(levelname)s │ %(message)s",
        datefmt="%H:%M:%S"
    )
    logger = logging.getLogger(__name__)

    if args.csv is not None:
        observations = load_observations(args.csv, args.symbol)
    else:
        observations = synthetic_observations(args.symbol, args.bars, args.seed)
    if not observations:
        logger.error("No usable observations")
        return 1

    strategy = STRATEGIES[args.strategy]()
    report = run_phase1(observations, strategy, args.symbol, logger)
    run_phase2(observations, strategy, report, args.iterations, args.seed, logger)
    run_phase3(observations, OptimizationObjective(args.objective), args.capital, args.seed, logger)

    logger.info(f"Completed in {time.time() - start_time:.1f}s")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
