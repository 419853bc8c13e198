"""
================================================================================
STRATEGY SIGNAL SOURCE
================================================================================

A strategy is a named, stateless mapping from a bounded trailing window of
prices and volumes to a {buy | sell | hold, confidence} signal.

Components:
-----------
1. CONTRACT
   - Strategy: closed capability {name, min_lookback, evaluate(window)}
   - evaluate() degrades to hold / 0 when the window is too short and
     clamps confidence to [0, 1]

2. REFERENCE STRATEGIES
   - MovingAverageCrossoverStrategy: SMA(10) / SMA(30) cross, volume confirmed
   - MeanReversionStrategy:          Bollinger(20, 2) band position
   - RSIMomentumStrategy:            RSI(14) overbought / oversold
   - BreakoutStrategy:               20-bar range breakout on a volume spike
   - FunctionStrategy:               adapter for a plain callable

3. COMPOSITION
   - StrategyEnsemble: weighted voting. Each member adds confidence x weight
     to a buy or sell score; scores are normalized by the total weight and a
     side wins only if its score exceeds 0.3 AND strictly beats the other.
   - StrategyEngine: registry that evaluates every strategy on one window

The 0.3 threshold with strict dominance governs downstream trade frequency
and must not be relaxed.
================================================================================
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .config import Config
from .market_data import MarketObservation
from .quant_statistics import mean, percent_changes, stddev
from .technical_indicators import (
    BB_PERIOD, BB_STD_DEV, DONCHIAN_PERIOD, RSI_OVERBOUGHT, RSI_OVERSOLD,
    RSI_PERIOD, MomentumIndicators, TrendIndicators, VolatilityIndicators,
)

logger = logging.getLogger(__name__)


# =============================================================================
# SIGNAL TYPES
# =============================================================================

class SignalAction(Enum):
    """Direction emitted by a strategy."""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


@dataclass(frozen=True)
class Signal:
    """A strategy decision for one window."""
    action: SignalAction
    confidence: float
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def hold(cls, **details: Any) -> 'Signal':
        return cls(SignalAction.HOLD, 0.0, dict(details))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'action': self.action.value,
            'confidence': self.confidence,
            'details': dict(self.details),
        }


@dataclass(frozen=True)
class PriceWindow:
    """
    Immutable trailing window of prices and volumes, oldest first.

    The last element is the most recent bar the strategy may look at.
    """
    prices: Tuple[float, ...]
    volumes: Tuple[float, ...] = ()

    def __post_init__(self):
        if self.volumes and len(self.volumes) != len(self.prices):
            raise ValueError(
                f"Window volumes ({len(self.volumes)}) do not match prices ({len(self.prices)})"
            )

    def __len__(self) -> int:
        return len(self.prices)

    @classmethod
    def from_sequences(
        cls,
        prices: Sequence[float],
        volumes: Optional[Sequence[float]] = None
    ) -> 'PriceWindow':
        return cls(
            prices=tuple(float(p) for p in prices),
            volumes=tuple(float(v) for v in volumes) if volumes else (),
        )

    @classmethod
    def from_observations(cls, observations: Sequence[MarketObservation]) -> 'PriceWindow':
        return cls(
            prices=tuple(o.price for o in observations),
            volumes=tuple(o.volume for o in observations),
        )

    def tail(self, n: int) -> 'PriceWindow':
        """The most recent ``n`` bars."""
        if n >= len(self.prices):
            return self
        return PriceWindow(
            prices=self.prices[-n:],
            volumes=self.volumes[-n:] if self.volumes else (),
        )


# =============================================================================
# STRATEGY CONTRACT
# =============================================================================

class Strategy(ABC):
    """
    Base class for every signal source.

    Subclasses set ``name`` and ``min_lookback`` and implement
    ``_generate``. Callers always go through ``evaluate``.
    """

    name: str = "Strategy"
    min_lookback: int = 1

    def evaluate(self, window: PriceWindow) -> Signal:
        """
        Evaluate the strategy on a trailing window.

        Args:
            window: bars strictly before the decision point, oldest first

        Returns:
            Signal with confidence clamped to [0, 1]; hold/0 when the window
            is shorter than ``min_lookback``
        """
        if len(window) < self.min_lookback:
            return Signal.hold(reason="insufficient_window")

        signal = self._generate(window)
        confidence = signal.confidence
        if not math.isfinite(confidence):
            confidence = 0.0
        confidence = min(1.0, max(0.0, confidence))

        if signal.action is SignalAction.HOLD:
            confidence = 0.0
        if confidence == signal.confidence:
            return signal
        return Signal(signal.action, confidence, signal.details)

    @abstractmethod
    def _generate(self, window: PriceWindow) -> Signal:
        """Produce a signal from a window of at least ``min_lookback`` bars."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, min_lookback={self.min_lookback})"


# =============================================================================
# REFERENCE STRATEGIES
# =============================================================================

class MovingAverageCrossoverStrategy(Strategy):
    """
    Short/long SMA crossover between the previous and the current bar.

    Confidence = min(|relative MA gap| x (1.5 if volume confirmed), 0.9).
    Volume is confirmed when the latest volume exceeds 1.2x the 20-bar mean.
    """

    VOLUME_PERIOD = 20
    VOLUME_MULTIPLIER = 1.2
    CONFIRMATION_BOOST = 1.5

    def __init__(self, short_period: int = 10, long_period: int = 30):
        if short_period <= 0 or long_period <= short_period:
            raise ValueError("Require 0 < short_period < long_period")
        self.short_period = short_period
        self.long_period = long_period
        self.name = "Moving Average Crossover"
        self.min_lookback = long_period + 1

    def _volume_confirmed(self, window: PriceWindow) -> bool:
        if len(window.volumes) < self.VOLUME_PERIOD:
            return False
        avg_volume = mean(window.volumes[-self.VOLUME_PERIOD:])
        return avg_volume > 0 and window.volumes[-1] > avg_volume * self.VOLUME_MULTIPLIER

    def _generate(self, window: PriceWindow) -> Signal:
        recent = window.tail(self.long_period + 1).prices
        short_ma = TrendIndicators.calculate_sma(recent, self.short_period)
        long_ma = TrendIndicators.calculate_sma(recent, self.long_period)

        prev_short, cur_short = float(short_ma.iloc[-2]), float(short_ma.iloc[-1])
        prev_long, cur_long = float(long_ma.iloc[-2]), float(long_ma.iloc[-1])
        confirmed = self._volume_confirmed(window)
        boost = self.CONFIRMATION_BOOST if confirmed else 1.0

        if prev_short <= prev_long and cur_short > cur_long:
            strength = (cur_short - cur_long) / cur_long
            confidence = min(abs(strength) * boost, Config.MAX_SIGNAL_CONFIDENCE)
            return Signal(SignalAction.BUY, confidence,
                          {'strength': strength, 'volume_confirmation': confirmed})

        if prev_short >= prev_long and cur_short < cur_long:
            strength = (cur_long - cur_short) / cur_short
            confidence = min(abs(strength) * boost, Config.MAX_SIGNAL_CONFIDENCE)
            return Signal(SignalAction.SELL, confidence,
                          {'strength': strength, 'volume_confirmation': confirmed})

        return Signal.hold()


class MeanReversionStrategy(Strategy):
    """
    Fade moves to the edge of the Bollinger Bands.

    Band position above 0.8 sells and below 0.2 buys, with confidence
    min(distance past the trigger x 5, 0.9). Collapsed bands hold.
    """

    UPPER_TRIGGER = 0.8
    LOWER_TRIGGER = 0.2
    CONFIDENCE_SCALE = 5.0

    def __init__(self, period: int = BB_PERIOD, num_std: float = BB_STD_DEV):
        self.period = period
        self.num_std = num_std
        self.name = "Mean Reversion"
        self.min_lookback = period

    def _generate(self, window: PriceWindow) -> Signal:
        recent = window.tail(self.period).prices
        upper, middle, lower, percent_b = VolatilityIndicators.calculate_bollinger_bands(
            recent, self.period, self.num_std
        )
        band_width = float(upper.iloc[-1] - lower.iloc[-1])
        position = percent_b.iloc[-1]
        if band_width <= 0 or np.isnan(position):
            return Signal.hold(band_width=0.0)

        position = float(position)
        details = {'price_position': position, 'band_width': band_width}

        if position > self.UPPER_TRIGGER:
            confidence = min((position - self.UPPER_TRIGGER) * self.CONFIDENCE_SCALE,
                             Config.MAX_SIGNAL_CONFIDENCE)
            return Signal(SignalAction.SELL, confidence, details)
        if position < self.LOWER_TRIGGER:
            confidence = min((self.LOWER_TRIGGER - position) * self.CONFIDENCE_SCALE,
                             Config.MAX_SIGNAL_CONFIDENCE)
            return Signal(SignalAction.BUY, confidence, details)

        return Signal.hold(**details)


class RSIMomentumStrategy(Strategy):
    """RSI overbought sells, oversold buys; confidence = distance / 30, max 0.9."""

    def __init__(
        self,
        period: int = RSI_PERIOD,
        overbought: float = RSI_OVERBOUGHT,
        oversold: float = RSI_OVERSOLD
    ):
        self.period = period
        self.overbought = overbought
        self.oversold = oversold
        self.name = "RSI Momentum"
        self.min_lookback = period + 1

    def _generate(self, window: PriceWindow) -> Signal:
        rsi = MomentumIndicators.latest_rsi(window.prices, self.period)

        if rsi > self.overbought:
            confidence = min((rsi - self.overbought) / 30.0, Config.MAX_SIGNAL_CONFIDENCE)
            return Signal(SignalAction.SELL, confidence, {'rsi': rsi})
        if rsi < self.oversold:
            confidence = min((self.oversold - rsi) / 30.0, Config.MAX_SIGNAL_CONFIDENCE)
            return Signal(SignalAction.BUY, confidence, {'rsi': rsi})

        return Signal.hold(rsi=rsi)


class BreakoutStrategy(Strategy):
    """
    Range breakout with volume confirmation.

    The range is the high/low of the ``lookback`` bars before the current
    bar. A close beyond the range by more than 2% of its width, on volume
    above 1.5x the range average, triggers a signal with confidence
    min(strength x 10 x (1 + volatility), 0.9).
    """

    RANGE_BUFFER = 0.02
    VOLUME_MULTIPLIER = 1.5

    def __init__(self, lookback: int = DONCHIAN_PERIOD):
        self.lookback = lookback
        self.name = "Breakout Trading"
        self.min_lookback = lookback + 1

    def _generate(self, window: PriceWindow) -> Signal:
        recent = window.tail(self.lookback + 1)
        prior = recent.prices[:-1]
        current_price = recent.prices[-1]

        upper, _, lower = VolatilityIndicators.calculate_donchian_channels(
            prior, prior, self.lookback
        )
        recent_high, recent_low = float(upper.iloc[-1]), float(lower.iloc[-1])
        volatility = stddev(percent_changes(recent.prices[-self.lookback:]))

        volume_spike = False
        if recent.volumes:
            avg_volume = mean(recent.volumes[:-1])
            volume_spike = avg_volume > 0 and recent.volumes[-1] > avg_volume * self.VOLUME_MULTIPLIER

        buffer = (recent_high - recent_low) * self.RANGE_BUFFER
        details = {'volatility': volatility, 'volume_spike': volume_spike}

        if volume_spike and current_price > recent_high + buffer:
            strength = (current_price - recent_high) / recent_high
            confidence = min(strength * 10 * (1 + volatility), Config.MAX_SIGNAL_CONFIDENCE)
            return Signal(SignalAction.BUY, confidence,
                          {**details, 'breakout_type': 'upward', 'strength': strength})
        if volume_spike and current_price < recent_low - buffer:
            strength = (recent_low - current_price) / current_price
            confidence = min(strength * 10 * (1 + volatility), Config.MAX_SIGNAL_CONFIDENCE)
            return Signal(SignalAction.SELL, confidence,
                          {**details, 'breakout_type': 'downward', 'strength': strength})

        return Signal.hold(**details)


class FunctionStrategy(Strategy):
    """
    Adapt a plain callable into a Strategy.

    The callable receives the PriceWindow and returns a Signal.
    """

    def __init__(self, name: str, func: Callable[[PriceWindow], Signal], min_lookback: int = 1):
        if min_lookback < 1:
            raise ValueError("min_lookback must be at least 1")
        self.name = name
        self.min_lookback = min_lookback
        self._func = func

    def _generate(self, window: PriceWindow) -> Signal:
        return self._func(window)


# =============================================================================
# COMPOSITION
# =============================================================================

class StrategyEnsemble(Strategy):
    """
    Weighted-vote composition of several strategies.

    Example:
        >>> ensemble = StrategyEnsemble.default()
        >>> signal = ensemble.evaluate(window)
    """

    def __init__(
        self,
        members: Optional[Sequence[Tuple[Strategy, float]]] = None,
        threshold: float = Config.ENSEMBLE_THRESHOLD,
        name: str = "Strategy Ensemble"
    ):
        self.name = name
        self.threshold = threshold
        self._members: List[Tuple[Strategy, float]] = []
        for strategy, weight in members or []:
            self.add_strategy(strategy, weight)

    @classmethod
    def default(cls) -> 'StrategyEnsemble':
        """The four reference strategies weighted 0.3 / 0.25 / 0.25 / 0.2."""
        return cls([
            (MovingAverageCrossoverStrategy(), 0.3),
            (MeanReversionStrategy(), 0.25),
            (RSIMomentumStrategy(), 0.25),
            (BreakoutStrategy(), 0.2),
        ])

    def add_strategy(self, strategy: Strategy, weight: float = 1.0) -> None:
        if weight <= 0:
            raise ValueError(f"Ensemble weight must be positive, got {weight}")
        self._members.append((strategy, float(weight)))

    @property
    def members(self) -> List[Tuple[Strategy, float]]:
        return list(self._members)

    @property
    def min_lookback(self) -> int:
        if not self._members:
            return 1
        return max(s.min_lookback for s, _ in self._members)

    def evaluate(self, window: PriceWindow) -> Signal:
        if not self._members:
            raise ValueError("StrategyEnsemble has no member strategies")
        return super().evaluate(window)

    def _generate(self, window: PriceWindow) -> Signal:
        buy_score = sell_score = total_weight = 0.0
        votes = []

        for strategy, weight in self._members:
            signal = strategy.evaluate(window)
            total_weight += weight
            if signal.action is SignalAction.BUY:
                buy_score += signal.confidence * weight
            elif signal.action is SignalAction.SELL:
                sell_score += signal.confidence * weight
            votes.append((strategy.name, signal.action.value, signal.confidence))

        buy_score /= total_weight
        sell_score /= total_weight
        details = {'buy_score': buy_score, 'sell_score': sell_score, 'votes': votes}

        if buy_score > sell_score and buy_score > self.threshold:
            return Signal(SignalAction.BUY, buy_score, details)
        if sell_score > buy_score and sell_score > self.threshold:
            return Signal(SignalAction.SELL, sell_score, details)
        return Signal(SignalAction.HOLD, 0.0, details)


class StrategyEngine:
    """Registry that evaluates every registered strategy on the same window."""

    def __init__(self, strategies: Optional[Sequence[Strategy]] = None):
        self._strategies: List[Strategy] = list(strategies or [])

    def add_strategy(self, strategy: Strategy) -> None:
        self._strategies.append(strategy)
        logger.info(f"Registered strategy: {strategy.name}")

    @property
    def strategies(self) -> List[Strategy]:
        return list(self._strategies)

    def run_all(self, window: PriceWindow) -> Dict[str, Signal]:
        """Evaluate each strategy; keys are strategy names."""
        return {s.name: s.evaluate(window) for s in self._strategies}


__all__ = [
    'SignalAction', 'Signal', 'PriceWindow', 'Strategy',
    'MovingAverageCrossoverStrategy', 'MeanReversionStrategy',
    'RSIMomentumStrategy', 'BreakoutStrategy', 'FunctionStrategy',
    'StrategyEnsemble', 'StrategyEngine',
]
