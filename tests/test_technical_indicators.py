from __future__ import annotations

import math

import numpy as np
import pytest

from quantsim.technical_indicators import MomentumIndicators, TrendIndicators, VolatilityIndicators


def test_sma_waits_for_full_window():
    sma = TrendIndicators.calculate_sma([1, 2, 3, 4, 5], 3)
    assert np.isnan(sma.iloc[1])
    assert sma.iloc[-1] == pytest.approx(4.0)


def test_rsi_extremes():
    rising = list(range(100, 120))
    falling = list(range(120, 100, -1))
    assert MomentumIndicators.latest_rsi(rising) == pytest.approx(100.0)
    assert MomentumIndicators.latest_rsi(falling) == pytest.approx(0.0)
    assert MomentumIndicators.latest_rsi([100.0] * 20) == pytest.approx(50.0)


def test_rsi_undefined_for_short_series():
    assert MomentumIndicators.latest_rsi([100, 101, 102]) == 50.0


def test_bollinger_uses_population_std():
    upper, middle, lower, _ = VolatilityIndicators.calculate_bollinger_bands([1, 2, 3, 4, 5], 5, 2.0)
    assert middle.iloc[-1] == pytest.approx(3.0)
    assert upper.iloc[-1] == pytest.approx(3.0 + 2 * math.sqrt(2))
    assert lower.iloc[-1] == pytest.approx(3.0 - 2 * math.sqrt(2))


def test_bollinger_collapsed_bands():
    upper, _, lower, percent_b = VolatilityIndicators.calculate_bollinger_bands([100.0] * 20)
    assert upper.iloc[-1] == lower.iloc[-1]
    assert np.isnan(percent_b.iloc[-1])


def test_donchian_channels():
    upper, middle, lower = VolatilityIndicators.calculate_donchian_channels([1, 3, 2], [0, 1, -1], 2)
    assert upper.iloc[-1] == 3
    assert lower.iloc[-1] == -1
    assert middle.iloc[-1] == pytest.approx(1.0)
