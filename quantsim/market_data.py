"""
Market data value types and input hygiene.

The engine never fetches or caches data. Observations, snapshots and
holdings arrive from an external market-data collaborator, frequently as
loosely typed records (strings, None, NaN). This module turns them into
immutable, well-formed value objects:

    - MarketObservation: one time-ordered bar replayed by the backtester
    - MarketSnapshot:    current per-symbol state consumed by the optimizer
    - PortfolioPosition: a current holding consumed by the optimizer

Malformed prices and timestamps are skipped rather than raised, so that a structurally
valid report can always be produced downstream.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


# =============================================================================
# COERCION
# =============================================================================

def coerce_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    """
    Convert an arbitrary field value to a finite float.

    Strings such as "101.5" are parsed; None, NaN, infinities and values
    that cannot be parsed return ``default``.
    """
    if value is None or isinstance(value, bool):
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(result):
        return default
    return result


# =============================================================================
# VALUE TYPES
# =============================================================================

@dataclass(frozen=True)
class MarketObservation:
    """Single market observation (bar or tick) for one symbol."""
    symbol: str
    price: float
    volume: float
    timestamp: float
    high: Optional[float] = None
    low: Optional[float] = None
    bid: Optional[float] = None
    ask: Optional[float] = None


@dataclass(frozen=True)
class MarketSnapshot:
    """
    Current market state for one symbol.

    ``change_percent_24h`` is expressed in percent (5.0 means +5%).
    ``history`` optionally carries recent prices, oldest first, for
    correlation estimation.
    """
    symbol: str
    price: float
    change_percent_24h: float = 0.0
    volume_24h: float = 0.0
    timestamp: float = 0.0
    history: Tuple[float, ...] = ()


@dataclass(frozen=True)
class PortfolioPosition:
    """A current holding. ``quantity`` is signed (negative for shorts)."""
    symbol: str
    quantity: float
    entry_price: float

    def exposure(self, price: Optional[float] = None) -> float:
        """Signed notional at ``price`` (entry price when not given)."""
        mark = self.entry_price if price is None else price
        return self.quantity * mark


# =============================================================================
# CLEANING
# =============================================================================

def clean_observation(raw: Any) -> Optional[MarketObservation]:
    """
    Return a well-formed observation or None if the price or timestamp is
    unusable.

    Accepts MarketObservation instances or mappings with the same keys.
    Volume that cannot be parsed is coerced to 0.
    """
    if isinstance(raw, MarketObservation):
        fields = {
            "symbol": raw.symbol, "price": raw.price, "volume": raw.volume,
            "timestamp": raw.timestamp, "high": raw.high, "low": raw.low,
            "bid": raw.bid, "ask": raw.ask,
        }
    elif isinstance(raw, dict):
        fields = raw
    else:
        return None

    price = coerce_float(fields.get("price"))
    if price is None or price <= 0:
        return None

    timestamp = coerce_float(fields.get("timestamp"))
    if timestamp is None:
        return None
    volume = coerce_float(fields.get("volume"), 0.0)

    return MarketObservation(
        symbol=str(fields.get("symbol") or "UNKNOWN"),
        price=price,
        volume=max(0.0, volume),
        timestamp=timestamp,
        high=coerce_float(fields.get("high")),
        low=coerce_float(fields.get("low")),
        bid=coerce_float(fields.get("bid")),
        ask=coerce_float(fields.get("ask")),
    )


def clean_observations(
    observations: Optional[Iterable[Any]]
) -> Tuple[List[MarketObservation], int]:
    """
    Drop malformed observations, preserving the order of the rest.

    An observation stamped earlier than the last one kept is also dropped,
    so the result is non-decreasing in timestamp.

    Returns:
        (clean observations, number skipped)
    """
    if observations is None:
        return [], 0

    cleaned: List[MarketObservation] = []
    skipped = 0
    for raw in observations:
        obs = clean_observation(raw)
        if obs is None or (cleaned and obs.timestamp < cleaned[-1].timestamp):
            skipped += 1
            continue
        cleaned.append(obs)

    if skipped:
        logger.warning(f"Skipped {skipped} malformed observation(s)")
    return cleaned, skipped


# =============================================================================
# PANDAS ADAPTERS
# =============================================================================

def observations_from_frame(
    df: pd.DataFrame,
    symbol: str = "UNKNOWN",
    price_column: str = "close",
    volume_column: str = "volume"
) -> List[MarketObservation]:
    """
    Build observations from an OHLCV DataFrame.

    A DatetimeIndex is converted to epoch seconds; any other index is used
    as-is when numeric, otherwise the row position becomes the timestamp.
    Malformed rows are skipped.
    """
    if df is None or len(df) == 0:
        return []

    columns = {c.lower(): c for c in df.columns}
    price_col = columns.get(price_column.lower())
    if price_col is None:
        raise ValueError(f"Missing price column '{price_column}'")
    volume_col = columns.get(volume_column.lower())
    high_col = columns.get("high")
    low_col = columns.get("low")

    if isinstance(df.index, pd.DatetimeIndex):
        timestamps = np.array([ts.timestamp() for ts in df.index], dtype=float)
    elif pd.api.types.is_numeric_dtype(df.index):
        timestamps = np.asarray(df.index, dtype=float)
    else:
        timestamps = np.arange(len(df), dtype=float)

    records = []
    for ts, (_, row) in zip(timestamps, df.iterrows()):
        records.append({
            "symbol": symbol,
            "price": row[price_col],
            "volume": row[volume_col] if volume_col is not None else 0.0,
            "timestamp": float(ts),
            "high": row[high_col] if high_col is not None else None,
            "low": row[low_col] if low_col is not None else None,
        })

    cleaned, _ = clean_observations(records)
    return cleaned


def observations_to_frame(observations: Sequence[MarketObservation]) -> pd.DataFrame:
    """Inverse of observations_from_frame, indexed by timestamp."""
    if not observations:
        return pd.DataFrame(columns=["symbol", "price", "volume"])
    df = pd.DataFrame([
        {"timestamp": o.timestamp, "symbol": o.symbol, "price": o.price, "volume": o.volume}
        for o in observations
    ])
    return df.set_index("timestamp")
