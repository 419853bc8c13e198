"""
Technical Indicator Computation for the Reference Strategies

INDICATOR ARCHITECTURE
    The reference strategies read a handful of classic indicators from the
    trailing price/volume window they are given. Each indicator family is a
    class of static methods operating on pandas Series so that the same
    computation can be applied to a strategy window or to a full history:

    Family 1 - TREND
        - SMA: simple moving average
        - EMA: exponential moving average (span convention)

    Family 2 - MOMENTUM
        - RSI (Relative Strength Index): Wilder's momentum oscillator [0-100]

    Family 3 - VOLATILITY
        - Bollinger Bands: mean reversion with N standard deviation bands
        - Donchian Channels: breakout system with N-period highs/lows

All functions are pure: no state is retained between calls and the input
Series is never modified.
"""

from __future__ import annotations

import logging
from typing import Sequence, Tuple, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# RSI parameters
RSI_PERIOD: int = 14
RSI_OVERBOUGHT: float = 70.0
RSI_OVERSOLD: float = 30.0

# Bollinger Bands parameters
BB_PERIOD: int = 20
BB_STD_DEV: float = 2.0

# Donchian / breakout parameters
DONCHIAN_PERIOD: int = 20

SeriesLike = Union[pd.Series, Sequence[float], np.ndarray]


def to_series(values: SeriesLike) -> pd.Series:
    """Wrap a sequence as a float Series (a Series is returned as float copy)."""
    if isinstance(values, pd.Series):
        return values.astype(float)
    return pd.Series(np.asarray(values, dtype=float))


# =============================================================================
# TREND
# =============================================================================

class TrendIndicators:
    """Moving-average calculations."""

    @staticmethod
    def calculate_sma(close: SeriesLike, period: int) -> pd.Series:
        """
        Simple moving average; NaN until ``period`` values are available.

        Parameters
        ----------
        close : pd.Series
            Closing prices
        period : int
            Averaging window
        """
        return to_series(close).rolling(window=period, min_periods=period).mean()

    @staticmethod
    def calculate_ema(close: SeriesLike, period: int) -> pd.Series:
        """Exponential moving average with alpha = 2 / (period + 1)."""
        return to_series(close).ewm(span=period, adjust=False, min_periods=period).mean()


# =============================================================================
# MOMENTUM
# =============================================================================

class MomentumIndicators:
    """
    Momentum oscillator calculations.

    Indicators implemented:
    - RSI (Relative Strength Index): Wilder, 1978
    """

    @staticmethod
    def calculate_rsi(close: SeriesLike, period: int = RSI_PERIOD) -> pd.Series:
        """
        Calculate Relative Strength Index using Wilder's smoothing.

        RSI = 100 - (100 / (1 + RS))
        where RS = Average Gain / Average Loss

        A window with gains and no losses reads 100; a flat window reads 50.

        Parameters
        ----------
        close : pd.Series
            Closing prices
        period : int
            Lookback period (default: 14)

        Returns
        -------
        pd.Series
            RSI values [0, 100], NaN until period + 1 prices are available
        """
        delta = to_series(close).diff()

        gains = delta.where(delta > 0, 0.0)
        losses = (-delta).where(delta < 0, 0.0)
        gains.iloc[:1] = np.nan
        losses.iloc[:1] = np.nan

        # Wilder's smoothing (exponential with alpha = 1/period)
        alpha = 1.0 / period
        avg_gain = gains.ewm(alpha=alpha, adjust=False, min_periods=period).mean()
        avg_loss = losses.ewm(alpha=alpha, adjust=False, min_periods=period).mean()

        rs = avg_gain / avg_loss.replace(0, np.nan)
        rsi = 100.0 - (100.0 / (1.0 + rs))

        no_losses = (avg_loss == 0) & avg_gain.notna()
        rsi = rsi.mask(no_losses & (avg_gain > 0), 100.0)
        rsi = rsi.mask(no_losses & (avg_gain == 0), 50.0)
        return rsi

    @staticmethod
    def latest_rsi(close: SeriesLike, period: int = RSI_PERIOD) -> float:
        """Most recent RSI value, or 50 (neutral) when it is not yet defined."""
        rsi = MomentumIndicators.calculate_rsi(close, period)
        if len(rsi) == 0 or pd.isna(rsi.iloc[-1]):
            return 50.0
        return float(rsi.iloc[-1])


# =============================================================================
# VOLATILITY
# =============================================================================

class VolatilityIndicators:
    """
    Volatility band calculations.

    Indicators implemented:
    - Bollinger Bands: Bollinger, 1983
    - Donchian Channels: Donchian, 1960s
    """

    @staticmethod
    def calculate_bollinger_bands(
        close: SeriesLike,
        period: int = BB_PERIOD,
        std_dev: float = BB_STD_DEV
    ) -> Tuple[pd.Series, pd.Series, pd.Series, pd.Series]:
        """
        Calculate Bollinger Bands.

        Middle = SMA(close, period)
        Upper = Middle + std_dev * StdDev(close, period)
        Lower = Middle - std_dev * StdDev(close, period)

        The standard deviation is the population one (ddof=0).

        Parameters
        ----------
        close : pd.Series
            Closing prices
        period : int
            Moving average period
        std_dev : float
            Standard deviation multiplier

        Returns
        -------
        Tuple[pd.Series, pd.Series, pd.Series, pd.Series]
            (Upper, Middle, Lower, %B). %B is NaN where the bands collapse.
        """
        series = to_series(close)
        middle = series.rolling(window=period, min_periods=period).mean()
        std = series.rolling(window=period, min_periods=period).std(ddof=0)

        upper = middle + std_dev * std
        lower = middle - std_dev * std

        # %B: (Price - Lower) / (Upper - Lower)
        width = (upper - lower).replace(0, np.nan)
        percent_b = (series - lower) / width

        return upper, middle, lower, percent_b

    @staticmethod
    def calculate_donchian_channels(
        high: SeriesLike,
        low: SeriesLike,
        period: int = DONCHIAN_PERIOD
    ) -> Tuple[pd.Series, pd.Series, pd.Series]:
        """
        Calculate Donchian Channels.

        Upper = Highest High over period
        Lower = Lowest Low over period
        Middle = (Upper + Lower) / 2

        Returns
        -------
        Tuple[pd.Series, pd.Series, pd.Series]
            (Upper, Middle, Lower)
        """
        upper = to_series(high).rolling(window=period, min_periods=1).max()
        lower = to_series(low).rolling(window=period, min_periods=1).min()
        middle = (upper + lower) / 2

        return upper, middle, lower


__all__ = [
    'TrendIndicators', 'MomentumIndicators', 'VolatilityIndicators',
    'to_series', 'RSI_PERIOD', 'RSI_OVERBOUGHT', 'RSI_OVERSOLD',
    'BB_PERIOD', 'BB_STD_DEV', 'DONCHIAN_PERIOD',
]
