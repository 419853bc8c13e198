from __future__ import annotations

import pandas as pd
import pytest

from quantsim.market_data import (
    MarketObservation, PortfolioPosition, clean_observation, clean_observations,
    coerce_float, observations_from_frame, observations_to_frame,
)


def test_coerce_float():
    assert coerce_float("101.5") == 101.5
    assert coerce_float(None) is None
    assert coerce_float("abc", 0.0) == 0.0
    assert coerce_float(float("nan")) is None
    assert coerce_float(float("inf")) is None
    assert coerce_float(True) is None


def test_clean_observation_parses_string_fields():
    obs = clean_observation({"symbol": "BTC", "price": "101.5", "volume": "x", "timestamp": 3})
    assert obs == MarketObservation(symbol="BTC", price=101.5, volume=0.0, timestamp=3.0)


def test_clean_observation_rejects_unusable_prices():
    assert clean_observation({"price": -1.0}) is None
    assert clean_observation({"price": 0}) is None
    assert clean_observation({"price": None}) is None
    assert clean_observation("not a record") is None


def test_clean_observations_counts_skipped():
    raw = [
        {"symbol": "A", "price": 10, "volume": 1, "timestamp": 0},
        {"symbol": "A", "price": "nan", "volume": 1, "timestamp": 1},
        MarketObservation("A", 11.0, 1.0, 2.0),
        None,
    ]
    cleaned, skipped = clean_observations(raw)
    assert skipped == 2
    assert [o.price for o in cleaned] == [10.0, 11.0]
    assert clean_observations(None) == ([], 0)


def test_observations_from_frame_with_datetime_index():
    df = pd.DataFrame(
        {"Close": [100.0, None, 102.0], "Volume": [10, 20, 30]},
        index=pd.date_range("2024-01-01", periods=3, freq="D"),
    )
    obs = observations_from_frame(df, symbol="ETH")
    assert [o.price for o in obs] == [100.0, 102.0]
    assert obs[0].timestamp == 1704067200.0
    assert obs[0].symbol == "ETH"


def test_observations_from_frame_requires_price_column():
    with pytest.raises(ValueError):
        observations_from_frame(pd.DataFrame({"open": [1.0]}))


def test_observations_to_frame():
    df = observations_to_frame([MarketObservation("A", 10.0, 5.0, 1.0)])
    assert df.loc[1.0, "price"] == 10.0
    assert observations_to_frame([]).empty




def test_clean_observation_rejects_unusable_timestamps():
    assert clean_observation({"price": 100.0}) is None
    assert clean_observation({"price": 100.0, "timestamp": None}) is None
    assert clean_observation({"price": 100.0, "timestamp": "later"}) is None
    assert clean_observation({"price": 100.0, "timestamp": float("nan")}) is None


def test_clean_observations_keeps_time_order():
    raw = [
        MarketObservation("A", 10.0, 1.0, 1.0),
        MarketObservation("A", 11.0, 1.0, 3.0),
        MarketObservation("A", 12.0, 1.0, 2.0),
        MarketObservation("A", 13.0, 1.0, 3.0),
        MarketObservation("A", 14.0, 1.0, 4.0),
    ]
    cleaned, skipped = clean_observations(raw)
    assert skipped == 1
    assert [o.timestamp for o in cleaned] == [1.0, 3.0, 3.0, 4.0]


def test_position_exposure_is_signed():
    assert PortfolioPosition("A", -2.0, 50.0).exposure() == -100.0
    assert PortfolioPosition("A", 2.0, 50.0).exposure(60.0) == 120.0
