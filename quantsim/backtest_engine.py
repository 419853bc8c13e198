#!/usr/bin/env python3
"""
Backtest Simulator
==================

Replays an ordered sequence of market observations through a Strategy,
simulating position transitions with cost and slippage accounting, and
reports performance and risk analytics. A Monte Carlo variant reshuffles
the price path and reruns the full backtest to stress-test sensitivity to
sequencing.

EXECUTION MODEL
---------------
At every step i (from the strategy's minimum lookback to the last bar):

    window  = observations[i - lookback : i]     (strictly before bar i)
    signal  = strategy.evaluate(window)
    execute at price[i]

    buy  while not long  -> close short (if any), open long
    sell while not short -> close long (if any), open short
    hold                 -> nothing

    Entry notional = min(10% of cash, affordable) x confidence
    Trade cost     = notional x cost_rate
    Trade slippage = notional x slippage_rate
    Entry price    = price +/- slippage / quantity

    Mark-to-market:
        long:  cash + q x price
        short: cash + q x (2 x entry - price)

At the end of the data any open position is force-closed at the last
observed price and the final equity point reflects that close.

ACADEMIC FOUNDATIONS
--------------------
Transaction Costs:
    Kissell, R. (2013). "The Science of Algorithmic Trading and Portfolio Management."

Risk Metrics:
    Sharpe, W.F. (1994). "The Sharpe Ratio." Journal of Portfolio Management.
    Sortino, F.A. & van der Meer, R. (1991). "Downside Risk."
    Young, T.W. (1991). "Calmar Ratio: A Smoother Tool."

ARCHITECTURE
------------
    Layer 1: Core Components
        - TransactionCosts: proportional cost and slippage model
        - Position / Trade: open position state and append-only ledger

    Layer 2: Metrics Calculators
        - ReturnCalculator: total, annualized, buy-and-hold
        - RiskCalculator: volatility, VaR, CVaR, drawdown
        - RiskAdjustedCalculator: Sharpe, Sortino, Calmar, alpha/beta
        - TradeAnalyzer: win rate, profit factor, expectancy

    Layer 3: Validation
        - MonteCarloSimulator: shuffled-path robustness

    Layer 4: Output
        - BacktestReport: complete, serializable results container
        - format_backtest_report: text rendering
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import BACKTEST, Config
from .market_data import MarketObservation, clean_observations
from .quant_statistics import (
    annualize_volatility, calmar_ratio, expected_shortfall, kurtosis,
    max_drawdown, max_drawdown_duration, mean, single_factor_model,
    skewness, sortino_ratio, sharpe_ratio, stddev, value_at_risk,
)
from .strategy_engine import PriceWindow, Signal, SignalAction, Strategy

logger = logging.getLogger(__name__)


# =============================================================================
# SECTION 1: ENUMERATIONS
# =============================================================================

class BacktestStatus(Enum):
    """Backtest execution status."""
    SUCCESS = "SUCCESS"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    NO_TRADES = "NO_TRADES"


class PositionSide(Enum):
    """Exactly one side is held at any simulated instant."""
    NONE = "none"
    LONG = "long"
    SHORT = "short"


class TradeAction(Enum):
    """Position transition recorded in the ledger."""
    OPEN_LONG = "open_long"
    OPEN_SHORT = "open_short"
    CLOSE_LONG = "close_long"
    CLOSE_SHORT = "close_short"

    @property
    def is_close(self) -> bool:
        return self in (TradeAction.CLOSE_LONG, TradeAction.CLOSE_SHORT)


# =============================================================================
# SECTION 2: DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class TransactionCosts:
    """
    Proportional transaction cost model.

    Both components are charged on the notional of every transition.
    """
    cost_rate: float = BACKTEST.cost_rate
    slippage_rate: float = BACKTEST.slippage_rate

    def __post_init__(self):
        if self.cost_rate < 0 or self.slippage_rate < 0:
            raise ValueError("Cost and slippage rates must be non-negative")

    @property
    def total_rate(self) -> float:
        """Total cost as a fraction of notional per transition."""
        return self.cost_rate + self.slippage_rate

    def calculate(self, notional: float) -> Tuple[float, float]:
        """
        Args:
            notional: Absolute value traded

        Returns:
            (cost, slippage) in currency units
        """
        notional = abs(notional)
        return notional * self.cost_rate, notional * self.slippage_rate


@dataclass
class Position:
    """Open position state; mutated only by the simulator's execution step."""
    side: PositionSide = PositionSide.NONE
    entry_price: float = 0.0
    quantity: float = 0.0
    entry_time: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.side is not PositionSide.NONE

    def liquidation_value(self, price: float) -> float:
        """Cash that closing at ``price`` would return, before costs."""
        if self.side is PositionSide.LONG:
            return self.quantity * price
        if self.side is PositionSide.SHORT:
            return self.quantity * (2 * self.entry_price - price)
        return 0.0

    def gross_pnl(self, price: float) -> float:
        if self.side is PositionSide.LONG:
            return self.quantity * (price - self.entry_price)
        if self.side is PositionSide.SHORT:
            return self.quantity * (self.entry_price - price)
        return 0.0


@dataclass(frozen=True)
class Trade:
    """
    Append-only ledger entry for one position transition.

    Closing trades carry ``realized_pnl`` (net of this trade's cost and
    slippage) and the ``entry_price`` of the position they close, so that
    realized_pnl + cost + slippage == quantity x price delta.
    """
    trade_id: int
    action: TradeAction
    price: float
    quantity: float
    timestamp: float
    cost: float
    slippage: float
    entry_price: float
    reason: str = "signal"
    realized_pnl: Optional[float] = None
    holding_period: Optional[float] = None

    @property
    def notional(self) -> float:
        return self.quantity * self.price

    @property
    def is_close(self) -> bool:
        return self.action.is_close

    def to_dict(self) -> Dict[str, Any]:
        return {
            'trade_id': self.trade_id,
            'action': self.action.value,
            'price': self.price,
            'quantity': self.quantity,
            'timestamp': self.timestamp,
            'cost': self.cost,
            'slippage': self.slippage,
            'entry_price': self.entry_price,
            'reason': self.reason,
            'realized_pnl': self.realized_pnl,
            'holding_period': self.holding_period,
        }


@dataclass
class ReturnMetrics:
    """Return performance metrics."""
    total_return: float           # (final - initial) / initial
    annualized_return: float      # mean step return x 252
    buy_and_hold_return: float    # Asset return over the traded window
    excess_return: float          # total_return - buy_and_hold_return
    best_step: float
    worst_step: float


@dataclass
class RiskMetrics:
    """Risk metrics including drawdown analysis."""
    volatility: float             # Per-step population stddev
    annual_volatility: float
    max_drawdown: float           # Peak-to-trough decline of the equity curve
    max_drawdown_duration: int    # Steps spent below the running peak
    var_95: float                 # 95% historical Value at Risk
    cvar_95: float                # 95% Expected Shortfall
    skewness: float
    kurtosis: float


@dataclass
class RiskAdjustedMetrics:
    """Risk-adjusted performance metrics."""
    sharpe_ratio: float
    sortino_ratio: float
    calmar_ratio: float

    # Single-factor attribution against the traded asset
    alpha: float
    beta: float


@dataclass
class TradeStatistics:
    """
    Trade analysis statistics.

    ``total_trades`` counts every ledger entry; the win/loss figures are
    computed over closing trades only.
    """
    total_trades: int
    completed_trades: int
    winning_trades: int
    losing_trades: int

    win_rate: float

    avg_win: float
    avg_loss: float
    largest_win: float
    largest_loss: float

    profit_factor: float          # Gross wins / |gross losses|
    payoff_ratio: float           # Avg win / avg loss
    expectancy: float             # Expected value per completed trade

    avg_holding_period: float

    total_costs: float
    total_slippage: float


@dataclass
class BacktestReport:
    """
    Complete backtest result container.

    Fully recomputed on every run and free of wall-clock fields, so that
    identical inputs produce identical reports.
    """
    status: BacktestStatus
    symbol: str
    strategy_name: str

    # Period
    start_time: float
    end_time: float
    observations: int
    skipped_observations: int

    # Capital
    initial_capital: float
    final_capital: float

    returns: ReturnMetrics
    risk: RiskMetrics
    risk_adjusted: RiskAdjustedMetrics
    trades: TradeStatistics

    trade_log: List[Trade] = field(default_factory=list)
    equity_curve: List[float] = field(default_factory=list)
    equity_timestamps: List[float] = field(default_factory=list)
    step_returns: List[float] = field(default_factory=list)
    signals: List[Signal] = field(default_factory=list)

    transaction_costs: TransactionCosts = field(default_factory=TransactionCosts)
    message: str = ""

    # -------------------------------------------------------------------------
    # Headline accessors
    # -------------------------------------------------------------------------
    @property
    def total_return(self) -> float:
        return self.returns.total_return

    @property
    def total_trades(self) -> int:
        return self.trades.total_trades

    @property
    def max_drawdown(self) -> float:
        return self.risk.max_drawdown

    @property
    def sharpe_ratio(self) -> float:
        return self.risk_adjusted.sharpe_ratio

    @property
    def total_cost(self) -> float:
        return self.trades.total_costs

    @property
    def total_slippage(self) -> float:
        return self.trades.total_slippage

    def equity_series(self) -> pd.Series:
        """Equity curve as a Series indexed by timestamp."""
        return pd.Series(self.equity_curve, index=self.equity_timestamps, name="equity")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'symbol': self.symbol,
            'strategy_name': self.strategy_name,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'observations': self.observations,
            'skipped_observations': self.skipped_observations,
            'initial_capital': self.initial_capital,
            'final_capital': self.final_capital,
            'returns': vars(self.returns).copy(),
            'risk': vars(self.risk).copy(),
            'risk_adjusted': vars(self.risk_adjusted).copy(),
            'trades': vars(self.trades).copy(),
            'trade_log': [t.to_dict() for t in self.trade_log],
            'equity_curve': list(self.equity_curve),
            'equity_timestamps': list(self.equity_timestamps),
            'step_returns': list(self.step_returns),
            'signals': [s.to_dict() for s in self.signals],
            'cost_rate': self.transaction_costs.cost_rate,
            'slippage_rate': self.transaction_costs.slippage_rate,
            'message': self.message,
        }


@dataclass
class MonteCarloAnalysis:
    """Monte Carlo simulation results over shuffled price paths."""
    iterations: int

    # Return distribution
    return_mean: float
    return_std: float
    return_percentiles: Dict[float, float]
    return_95_ci: Tuple[float, float]

    # Probability analysis
    prob_positive_return: float
    best_case: float
    worst_case: float

    # Drawdown distribution
    drawdown_mean: float

    returns: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'iterations': self.iterations,
            'return_mean': self.return_mean,
            'return_std': self.return_std,
            'return_percentiles': dict(self.return_percentiles),
            'return_95_ci': list(self.return_95_ci),
            'prob_positive_return': self.prob_positive_return,
            'best_case': self.best_case,
            'worst_case': self.worst_case,
            'drawdown_mean': self.drawdown_mean,
            'returns': list(self.returns),
        }


# =============================================================================
# SECTION 3: METRIC CALCULATORS
# =============================================================================

class ReturnCalculator:
    """Return metrics from the equity curve and the traded price path."""

    @staticmethod
    def calculate(
        equity_curve: Sequence[float],
        step_returns: Sequence[float],
        initial_capital: float,
        first_price: float,
        last_price: float
    ) -> ReturnMetrics:
        final = equity_curve[-1] if len(equity_curve) else initial_capital
        total_return = (final - initial_capital) / initial_capital if initial_capital > 0 else 0.0
        buy_and_hold = (last_price - first_price) / first_price if first_price > 0 else 0.0

        return ReturnMetrics(
            total_return=total_return,
            annualized_return=mean(step_returns) * Config.TRADING_DAYS_YEAR,
            buy_and_hold_return=buy_and_hold,
            excess_return=total_return - buy_and_hold,
            best_step=max(step_returns) if len(step_returns) else 0.0,
            worst_step=min(step_returns) if len(step_returns) else 0.0,
        )


class RiskCalculator:
    """
    Risk metrics over the equity curve and per-step returns.

    Drawdown:
        DD_t = (Peak_t - Equity_t) / Peak_t
        where Peak_t = max(Equity_0, ..., Equity_t)
    """

    @staticmethod
    def calculate(step_returns: Sequence[float], equity_curve: Sequence[float]) -> RiskMetrics:
        return RiskMetrics(
            volatility=stddev(step_returns),
            annual_volatility=annualize_volatility(step_returns),
            max_drawdown=max_drawdown(equity_curve),
            max_drawdown_duration=max_drawdown_duration(equity_curve),
            var_95=value_at_risk(step_returns, Config.VAR_CONFIDENCE),
            cvar_95=expected_shortfall(step_returns, Config.VAR_CONFIDENCE),
            skewness=skewness(step_returns),
            kurtosis=kurtosis(step_returns),
        )


class RiskAdjustedCalculator:
    """Sharpe, Sortino and Calmar plus alpha/beta against the traded asset."""

    @staticmethod
    def calculate(
        step_returns: Sequence[float],
        asset_returns: Sequence[float],
        max_dd: float
    ) -> RiskAdjustedMetrics:
        fit = single_factor_model(step_returns, asset_returns)
        return RiskAdjustedMetrics(
            sharpe_ratio=sharpe_ratio(step_returns),
            sortino_ratio=sortino_ratio(step_returns),
            calmar_ratio=calmar_ratio(step_returns, max_dd),
            alpha=fit.alpha,
            beta=fit.beta,
        )


class TradeAnalyzer:
    """
    Trade statistics over the ledger.

    Win Rate = Winning closes / Completed (closing) trades
    Profit Factor = Gross wins / |Gross losses|
        +inf when there are wins and no losses, 0 when there are neither
    """

    @staticmethod
    def analyze(trades: Sequence[Trade]) -> TradeStatistics:
        closes = [t for t in trades if t.is_close and t.realized_pnl is not None]
        winning_pnls = [t.realized_pnl for t in closes if t.realized_pnl > 0]
        losing_pnls = [t.realized_pnl for t in closes if t.realized_pnl < 0]

        completed = len(closes)
        win_rate = len(winning_pnls) / completed if completed > 0 else 0.0

        avg_win = float(np.mean(winning_pnls)) if winning_pnls else 0.0
        avg_loss = abs(float(np.mean(losing_pnls))) if losing_pnls else 0.0
        largest_win = max(winning_pnls) if winning_pnls else 0.0
        largest_loss = abs(min(losing_pnls)) if losing_pnls else 0.0

        gross_profit = sum(winning_pnls)
        gross_loss = abs(sum(losing_pnls))
        profit_factor = gross_profit / gross_loss if gross_loss > 0 else float('inf') if gross_profit > 0 else 0.0
        payoff_ratio = avg_win / avg_loss if avg_loss > 0 else float('inf') if avg_win > 0 else 0.0

        # E = (Win Rate x Avg Win) - (Loss Rate x Avg Loss)
        loss_rate = len(losing_pnls) / completed if completed > 0 else 0.0
        expectancy = (win_rate * avg_win) - (loss_rate * avg_loss)

        holding = [t.holding_period for t in closes if t.holding_period is not None]

        return TradeStatistics(
            total_trades=len(trades),
            completed_trades=completed,
            winning_trades=len(winning_pnls),
            losing_trades=len(losing_pnls),
            win_rate=win_rate,
            avg_win=avg_win,
            avg_loss=avg_loss,
            largest_win=largest_win,
            largest_loss=largest_loss,
            profit_factor=profit_factor,
            payoff_ratio=payoff_ratio,
            expectancy=expectancy,
            avg_holding_period=float(np.mean(holding)) if holding else 0.0,
            total_costs=sum(t.cost for t in trades),
            total_slippage=sum(t.slippage for t in trades),
        )


# =============================================================================
# SECTION 4: BACKTEST ENGINE
# =============================================================================

class BacktestEngine:
    """
    Event-driven backtesting engine with proportional costs and sizing.

    The engine holds configuration only; every run starts from fresh state.

    Example:
        >>> engine = BacktestEngine(initial_capital=10_000)
        >>> report = engine.run(observations, MovingAverageCrossoverStrategy())
        >>> print(f"Return: {report.total_return:+.2%}")
    """

    def __init__(
        self,
        costs: Optional[TransactionCosts] = None,
        initial_capital: float = BACKTEST.initial_capital,
        position_fraction: float = BACKTEST.position_fraction
    ):
        """
        Initialize backtest engine.

        Args:
            costs: Transaction cost model (defaults to 10 bps + 5 bps)
            initial_capital: Starting cash, must be positive
            position_fraction: Max share of cash committed per entry
        """
        if initial_capital <= 0:
            raise ValueError(f"initial_capital must be positive, got {initial_capital}")
        if not 0 < position_fraction <= 1:
            raise ValueError(f"position_fraction must be in (0, 1], got {position_fraction}")

        self.costs = costs or TransactionCosts()
        self.initial_capital = float(initial_capital)
        self.position_fraction = position_fraction

    def run(
        self,
        observations: Optional[Iterable[Any]],
        strategy: Strategy,
        symbol: Optional[str] = None
    ) -> BacktestReport:
        """
        Run a backtest of ``strategy`` over ``observations``.

        Args:
            observations: Time-ordered MarketObservation records or dicts;
                malformed entries are skipped
            strategy: Signal source satisfying the Strategy contract
            symbol: Label for the report (defaults to the observations' symbol)

        Returns:
            BacktestReport, always structurally complete
        """
        data, skipped = clean_observations(observations)
        if symbol is None:
            symbol = data[0].symbol if data else "UNKNOWN"

        lookback = max(1, int(strategy.min_lookback))
        if len(data) <= lookback:
            logger.warning(
                f"Insufficient data for {strategy.name}: {len(data)} observations, "
                f"need more than {lookback}"
            )
            return self._empty_report(data, skipped, symbol, strategy.name,
                                      f"Insufficient data (need more than {lookback} observations)")

        run = _SimulationRun(self, data)
        for i in range(lookback, len(data)):
            window = PriceWindow.from_observations(data[i - lookback:i])
            signal = strategy.evaluate(window)
            run.step(i, signal)
        run.finish()

        return self._build_report(run, data, skipped, symbol, strategy.name, lookback)

    # -------------------------------------------------------------------------
    # Report assembly
    # -------------------------------------------------------------------------
    def _build_report(
        self,
        run: '_SimulationRun',
        data: List[MarketObservation],
        skipped: int,
        symbol: str,
        strategy_name: str,
        lookback: int
    ) -> BacktestReport:
        prices = [o.price for o in data]
        asset_returns = [
            (prices[i] - prices[i - 1]) / prices[i - 1] for i in range(lookback, len(prices))
        ]

        returns = ReturnCalculator.calculate(
            run.equity_curve, run.step_returns, self.initial_capital,
            prices[lookback], prices[-1]
        )
        risk = RiskCalculator.calculate(run.step_returns, run.equity_curve)
        risk_adjusted = RiskAdjustedCalculator.calculate(
            run.step_returns, asset_returns, risk.max_drawdown
        )
        trade_stats = TradeAnalyzer.analyze(run.trades)

        status = BacktestStatus.SUCCESS if run.trades else BacktestStatus.NO_TRADES
        logger.info(
            f"Backtest {strategy_name} on {symbol}: {trade_stats.total_trades} trades, "
            f"return {returns.total_return:+.2%}, max DD {risk.max_drawdown:.2%}"
        )

        return BacktestReport(
            status=status,
            symbol=symbol,
            strategy_name=strategy_name,
            start_time=data[lookback - 1].timestamp,
            end_time=data[-1].timestamp,
            observations=len(data),
            skipped_observations=skipped,
            initial_capital=self.initial_capital,
            final_capital=run.equity_curve[-1],
            returns=returns,
            risk=risk,
            risk_adjusted=risk_adjusted,
            trades=trade_stats,
            trade_log=list(run.trades),
            equity_curve=list(run.equity_curve),
            equity_timestamps=list(run.equity_timestamps),
            step_returns=list(run.step_returns),
            signals=list(run.signals),
            transaction_costs=self.costs,
        )

    def _empty_report(
        self,
        data: List[MarketObservation],
        skipped: int,
        symbol: str,
        strategy_name: str,
        message: str
    ) -> BacktestReport:
        """Well-formed zero report with finite fallback ratios."""
        start = data[0].timestamp if data else 0.0
        end = data[-1].timestamp if data else 0.0

        return BacktestReport(
            status=BacktestStatus.INSUFFICIENT_DATA,
            symbol=symbol,
            strategy_name=strategy_name,
            start_time=start,
            end_time=end,
            observations=len(data),
            skipped_observations=skipped,
            initial_capital=self.initial_capital,
            final_capital=self.initial_capital,
            returns=ReturnCalculator.calculate([self.initial_capital], [], self.initial_capital, 0.0, 0.0),
            risk=RiskCalculator.calculate([], [self.initial_capital]),
            risk_adjusted=RiskAdjustedCalculator.calculate([], [], 0.0),
            trades=TradeAnalyzer.analyze([]),
            equity_curve=[self.initial_capital],
            equity_timestamps=[start],
            transaction_costs=self.costs,
            message=message,
        )


class _SimulationRun:
    """Mutable state of a single backtest run."""

    def __init__(self, engine: BacktestEngine, data: List[MarketObservation]):
        self.engine = engine
        self.data = data
        self.cash = engine.initial_capital
        self.position = Position()
        self.trades: List[Trade] = []
        self.signals: List[Signal] = []
        self.equity_curve: List[float] = [engine.initial_capital]
        self.equity_timestamps: List[float] = []
        self.step_returns: List[float] = []
        self._started = False

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------
    def step(self, i: int, signal: Signal) -> None:
        bar = self.data[i]
        if not self._started:
            self.equity_timestamps.append(self.data[i - 1].timestamp)
            self._started = True

        self.signals.append(signal)
        side = self.position.side

        if signal.action is SignalAction.BUY and side is not PositionSide.LONG:
            if side is PositionSide.SHORT:
                self._close(bar, "reversal")
            self._open(PositionSide.LONG, bar, signal.confidence)
        elif signal.action is SignalAction.SELL and side is not PositionSide.SHORT:
            if side is PositionSide.LONG:
                self._close(bar, "reversal")
            self._open(PositionSide.SHORT, bar, signal.confidence)

        self._mark(bar)

    def finish(self) -> None:
        """Force-close at the last observed price; last equity point reflects it."""
        if not self.position.is_open:
            return
        bar = self.data[-1]
        self._close(bar, "end_of_data")
        self.equity_curve[-1] = self.cash
        prior = self.equity_curve[-2]
        self.step_returns[-1] = (self.cash - prior) / prior if prior != 0 else 0.0

    def _open(self, side: PositionSide, bar: MarketObservation, confidence: float) -> None:
        costs = self.engine.costs
        if self.cash <= 0 or confidence <= 0:
            return

        affordable = self.cash / (1 + costs.total_rate)
        notional = min(self.engine.position_fraction * self.cash, affordable) * confidence
        if notional <= 0:
            return

        quantity = notional / bar.price
        cost, slippage = costs.calculate(notional)
        if side is PositionSide.LONG:
            entry_price = bar.price + slippage / quantity
            action = TradeAction.OPEN_LONG
        else:
            entry_price = bar.price - slippage / quantity
            action = TradeAction.OPEN_SHORT

        self.cash -= quantity * entry_price + cost
        self.position = Position(side, entry_price, quantity, bar.timestamp)
        self._record(action, bar, quantity, cost, slippage, entry_price, "signal")

    def _close(self, bar: MarketObservation, reason: str) -> None:
        pos = self.position
        cost, slippage = self.engine.costs.calculate(pos.quantity * bar.price)
        realized = pos.gross_pnl(bar.price) - cost - slippage

        self.cash += pos.liquidation_value(bar.price) - cost - slippage
        action = TradeAction.CLOSE_LONG if pos.side is PositionSide.LONG else TradeAction.CLOSE_SHORT
        self._record(action, bar, pos.quantity, cost, slippage, pos.entry_price, reason,
                     realized_pnl=realized, holding_period=bar.timestamp - pos.entry_time)
        self.position = Position()

    def _record(
        self,
        action: TradeAction,
        bar: MarketObservation,
        quantity: float,
        cost: float,
        slippage: float,
        entry_price: float,
        reason: str,
        realized_pnl: Optional[float] = None,
        holding_period: Optional[float] = None
    ) -> None:
        self.trades.append(Trade(
            trade_id=len(self.trades) + 1,
            action=action,
            price=bar.price,
            quantity=quantity,
            timestamp=bar.timestamp,
            cost=cost,
            slippage=slippage,
            entry_price=entry_price,
            reason=reason,
            realized_pnl=realized_pnl,
            holding_period=holding_period,
        ))

    def _mark(self, bar: MarketObservation) -> None:
        equity = self.cash + self.position.liquidation_value(bar.price)
        prior = self.equity_curve[-1]
        self.step_returns.append((equity - prior) / prior if prior != 0 else 0.0)
        self.equity_curve.append(equity)
        self.equity_timestamps.append(bar.timestamp)


# =============================================================================
# SECTION 5: MONTE CARLO SIMULATION
# =============================================================================

def shuffle_observations(
    observations: Sequence[MarketObservation],
    rng: np.random.Generator
) -> List[MarketObservation]:
    """
    Permute the price path while keeping the original clock.

    Prices, volumes and bar ranges move together; timestamps stay in their
    original order so each replay's ledger remains monotonic.
    """
    order = rng.permutation(len(observations))
    shuffled = []
    for slot, src in zip(observations, order):
        moved = observations[int(src)]
        shuffled.append(replace(moved, timestamp=slot.timestamp, symbol=slot.symbol))
    return shuffled


class MonteCarloSimulator:
    """
    Monte Carlo robustness test over shuffled observation sequences.

    Chronological order of prices is not preserved: each iteration
    measures sensitivity to sequencing, not a realistic alternative
    timeline. Each iteration is self-contained, so a caller may stop
    consuming ``iter_reports`` at any point.
    """

    def __init__(
        self,
        engine: Optional[BacktestEngine] = None,
        iterations: int = Config.MC_ITERATIONS,
        seed: Optional[int] = None
    ):
        if iterations < 1:
            raise ValueError(f"iterations must be at least 1, got {iterations}")
        self.engine = engine or BacktestEngine()
        self.iterations = iterations
        self.seed = seed

    def iter_reports(
        self,
        observations: Optional[Iterable[Any]],
        strategy: Strategy
    ) -> Iterator[BacktestReport]:
        """Yield one full backtest report per shuffled iteration."""
        data, _ = clean_observations(observations)
        rng = np.random.default_rng(self.seed)

        for _ in range(self.iterations):
            yield self.engine.run(shuffle_observations(data, rng), strategy)

    def simulate(
        self,
        observations: Optional[Iterable[Any]],
        strategy: Strategy
    ) -> MonteCarloAnalysis:
        """
        Run every iteration and summarize the total-return distribution.

        Returns:
            MonteCarloAnalysis with distribution statistics
        """
        sim_returns = []
        sim_drawdowns = []
        for report in self.iter_reports(observations, strategy):
            sim_returns.append(report.total_return)
            sim_drawdowns.append(report.max_drawdown)

        logger.info(
            f"Monte Carlo {strategy.name}: {len(sim_returns)} iterations, "
            f"mean return {np.mean(sim_returns):+.2%}"
        )
        return summarize_returns(sim_returns, sim_drawdowns)


def summarize_returns(
    sim_returns: Sequence[float],
    sim_drawdowns: Optional[Sequence[float]] = None
) -> MonteCarloAnalysis:
    """Distribution statistics of Monte Carlo total returns."""
    if len(sim_returns) == 0:
        return MonteCarloAnalysis(
            iterations=0, return_mean=0.0, return_std=0.0, return_percentiles={},
            return_95_ci=(0.0, 0.0), prob_positive_return=0.0,
            best_case=0.0, worst_case=0.0, drawdown_mean=0.0,
        )

    arr = np.asarray(sim_returns, dtype=float)
    return MonteCarloAnalysis(
        iterations=len(arr),
        return_mean=float(np.mean(arr)),
        return_std=float(np.std(arr)),
        return_percentiles={p: float(np.percentile(arr, p * 100)) for p in Config.MC_PERCENTILES},
        return_95_ci=(float(np.percentile(arr, 2.5)), float(np.percentile(arr, 97.5))),
        prob_positive_return=float(np.mean(arr > 0)),
        best_case=float(arr.max()),
        worst_case=float(arr.min()),
        drawdown_mean=float(np.mean(sim_drawdowns)) if sim_drawdowns else 0.0,
        returns=[float(r) for r in arr],
    )


# =============================================================================
# SECTION 6: REPORT FORMATTING
# =============================================================================

def _fmt_ratio(value: float) -> str:
    return "inf" if math.isinf(value) else f"{value:.3f}"


def format_backtest_report(report: BacktestReport, monte_carlo: Optional[MonteCarloAnalysis] = None) -> str:
    """
    Format a backtest report as human-readable text.

    Args:
        report: BacktestReport from run_backtest
        monte_carlo: Optional Monte Carlo analysis to append

    Returns:
        Formatted string report
    """
    lines = [
        "=" * 70,
        "BACKTEST PERFORMANCE REPORT",
        "=" * 70,
        f"Symbol: {report.symbol}",
        f"Strategy: {report.strategy_name}",
        f"Period: {report.start_time:.0f} to {report.end_time:.0f}",
        f"Observations: {report.observations:,} ({report.skipped_observations} skipped)",
        f"Status: {report.status.value}",
        "",
        "-" * 70,
        "CAPITAL",
        "-" * 70,
        f"Initial Capital: ${report.initial_capital:,.2f}",
        f"Final Capital:   ${report.final_capital:,.2f}",
        f"Total Return:    {report.returns.total_return:+.2%}",
        f"Buy & Hold:      {report.returns.buy_and_hold_return:+.2%}",
        "",
        "-" * 70,
        "RISK ANALYSIS",
        "-" * 70,
        f"Annual Volatility:   {report.risk.annual_volatility:.2%}",
        f"Maximum Drawdown:    {report.risk.max_drawdown:.2%}",
        f"Max DD Duration:     {report.risk.max_drawdown_duration} steps",
        f"VaR (95%):           {report.risk.var_95:.2%}",
        f"CVaR (95%):          {report.risk.cvar_95:.2%}",
        "",
        "-" * 70,
        "RISK-ADJUSTED METRICS",
        "-" * 70,
        f"Sharpe Ratio:        {_fmt_ratio(report.risk_adjusted.sharpe_ratio)}",
        f"Sortino Ratio:       {_fmt_ratio(report.risk_adjusted.sortino_ratio)}",
        f"Calmar Ratio:        {_fmt_ratio(report.risk_adjusted.calmar_ratio)}",
        f"Alpha:               {report.risk_adjusted.alpha:+.4%}",
        f"Beta:                {report.risk_adjusted.beta:.3f}",
        "",
        "-" * 70,
        "TRADE STATISTICS",
        "-" * 70,
        f"Total Trades:        {report.trades.total_trades}",
        f"Completed Trades:    {report.trades.completed_trades}",
        f"Win Rate:            {report.trades.win_rate:.1%}",
        f"Profit Factor:       {_fmt_ratio(report.trades.profit_factor)}",
        f"Expectancy:          ${report.trades.expectancy:,.2f}",
        f"Largest Win:         ${report.trades.largest_win:,.2f}",
        f"Largest Loss:        ${report.trades.largest_loss:,.2f}",
        "",
        "-" * 70,
        "TRANSACTION COSTS",
        "-" * 70,
        f"Total Costs:         ${report.trades.total_costs:,.2f}",
        f"Total Slippage:      ${report.trades.total_slippage:,.2f}",
        f"Cost Rate:           {report.transaction_costs.total_rate:.2%}",
    ]

    if monte_carlo is not None and monte_carlo.iterations > 0:
        mc = monte_carlo
        lines.extend([
            "",
            "-" * 70,
            "MONTE CARLO ANALYSIS",
            "-" * 70,
            f"Iterations:          {mc.iterations:,}",
            f"Return (mean):       {mc.return_mean:+.2%}",
            f"Return (std):        {mc.return_std:.2%}",
            f"Return 95% CI:       [{mc.return_95_ci[0]:+.2%}, {mc.return_95_ci[1]:+.2%}]",
            f"Best / Worst:        {mc.best_case:+.2%} / {mc.worst_case:+.2%}",
            f"P(Return > 0):       {mc.prob_positive_return:.1%}",
        ])

    if report.message:
        lines.extend(["", f"Note: {report.message}"])

    lines.append("=" * 70)
    return "\n".join(lines)


# =============================================================================
# SECTION 7: CONVENIENCE FUNCTIONS
# =============================================================================

def run_backtest(
    observations: Optional[Iterable[Any]],
    strategy: Strategy,
    cost_rate: float = BACKTEST.cost_rate,
    slippage_rate: float = BACKTEST.slippage_rate,
    initial_capital: float = BACKTEST.initial_capital,
    symbol: Optional[str] = None
) -> BacktestReport:
    """
    Convenience function for running a single backtest.

    Example:
        >>> report = run_backtest(observations, MovingAverageCrossoverStrategy())
        >>> print(f"Sharpe: {report.sharpe_ratio:.3f}")
    """
    engine = BacktestEngine(
        costs=TransactionCosts(cost_rate=cost_rate, slippage_rate=slippage_rate),
        initial_capital=initial_capital,
    )
    return engine.run(observations, strategy, symbol=symbol)


def iter_monte_carlo(
    observations: Optional[Iterable[Any]],
    strategy: Strategy,
    iterations: int = Config.MC_ITERATIONS,
    seed: Optional[int] = None,
    cost_rate: float = BACKTEST.cost_rate,
    slippage_rate: float = BACKTEST.slippage_rate,
    initial_capital: float = BACKTEST.initial_capital
) -> Iterator[BacktestReport]:
    """Lazily yield per-iteration reports; stop iterating to abandon the run."""
    engine = BacktestEngine(
        costs=TransactionCosts(cost_rate=cost_rate, slippage_rate=slippage_rate),
        initial_capital=initial_capital,
    )
    simulator = MonteCarloSimulator(engine, iterations=iterations, seed=seed)
    return simulator.iter_reports(observations, strategy)


def run_monte_carlo_simulation(
    observations: Optional[Iterable[Any]],
    strategy: Strategy,
    iterations: int = Config.MC_ITERATIONS,
    seed: Optional[int] = None,
    cost_rate: float = BACKTEST.cost_rate,
    slippage_rate: float = BACKTEST.slippage_rate,
    initial_capital: float = BACKTEST.initial_capital
) -> MonteCarloAnalysis:
    """
    Rerun the full backtest on ``iterations`` shuffled copies of the data.

    A given ``seed`` makes the whole distribution reproducible.
    """
    engine = BacktestEngine(
        costs=TransactionCosts(cost_rate=cost_rate, slippage_rate=slippage_rate),
        initial_capital=initial_capital,
    )
    simulator = MonteCarloSimulator(engine, iterations=iterations, seed=seed)
    return simulator.simulate(observations, strategy)


__all__ = [
    # Enumerations
    'BacktestStatus',
    'PositionSide',
    'TradeAction',

    # Data structures
    'TransactionCosts',
    'Position',
    'Trade',
    'ReturnMetrics',
    'RiskMetrics',
    'RiskAdjustedMetrics',
    'TradeStatistics',
    'BacktestReport',
    'MonteCarloAnalysis',

    # Calculators
    'ReturnCalculator',
    'RiskCalculator',
    'RiskAdjustedCalculator',
    'TradeAnalyzer',

    # Engine
    'BacktestEngine',
    'MonteCarloSimulator',
    'shuffle_observations',
    'summarize_returns',

    # Convenience
    'run_backtest',
    'iter_monte_carlo',
    'run_monte_carlo_simulation',
    'format_backtest_report',
]
