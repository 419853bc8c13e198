from __future__ import annotations

from typing import List, Optional, Sequence

import numpy as np
import pytest

from quantsim.market_data import MarketObservation

START_TS = 1_700_000_000.0
DAY = 86_400.0


def build_observations(
    prices: Sequence[float],
    volumes: Optional[Sequence[float]] = None,
    symbol: str = "TEST",
) -> List[MarketObservation]:
    volumes = volumes if volumes is not None else [1000.0] * len(prices)
    return [
        MarketObservation(symbol=symbol, price=float(p), volume=float(v), timestamp=START_TS + i * DAY)
        for i, (p, v) in enumerate(zip(prices, volumes))
    ]


@pytest.fixture
def make_observations():
    return build_observations


@pytest.fixture
def trend_turn_observations():
    # 40 bars rising 100 -> 160, then 20 bars falling to 130
    up = np.linspace(100.0, 160.0, 40)
    down = np.linspace(160.0, 130.0, 21)[1:]
    return build_observations(np.concatenate([up, down]))


@pytest.fixture
def random_walk_observations():
    rng = np.random.default_rng(7)
    steps = rng.normal(0.0005, 0.02, 200)
    prices = 100.0 * np.exp(np.cumsum(steps))
    volumes = rng.uniform(500, 1500, 200)
    return build_observations(prices, volumes)
