from __future__ import annotations

import pytest

from quantsim.strategy_engine import (
    BreakoutStrategy, FunctionStrategy, MeanReversionStrategy,
    MovingAverageCrossoverStrategy, PriceWindow, RSIMomentumStrategy, Signal,
    SignalAction, StrategyEngine, StrategyEnsemble,
)


def constant(action, confidence, name="const"):
    return FunctionStrategy(name, lambda window: Signal(action, confidence))


def test_short_window_holds():
    strategy = MovingAverageCrossoverStrategy()
    signal = strategy.evaluate(PriceWindow.from_sequences([100.0] * 10))
    assert signal.action is SignalAction.HOLD
    assert signal.confidence == 0.0
    assert signal.details["reason"] == "insufficient_window"


def test_price_window_rejects_mismatched_volumes():
    with pytest.raises(ValueError):
        PriceWindow.from_sequences([1.0, 2.0], [1.0])


def test_ma_crossover_bullish():
    window = PriceWindow.from_sequences([100.0] * 30 + [120.0])
    signal = MovingAverageCrossoverStrategy().evaluate(window)
    assert signal.action is SignalAction.BUY
    short_ma, long_ma = 102.0, (29 * 100.0 + 120.0) / 30
    assert signal.confidence == pytest.approx((short_ma - long_ma) / long_ma)
    assert signal.details["volume_confirmation"] is False


def test_ma_crossover_volume_confirmation_boosts_confidence():
    prices = [100.0] * 30 + [120.0]
    plain = MovingAverageCrossoverStrategy().evaluate(PriceWindow.from_sequences(prices))
    confirmed = MovingAverageCrossoverStrategy().evaluate(
        PriceWindow.from_sequences(prices, [100.0] * 30 + [300.0])
    )
    assert confirmed.details["volume_confirmation"] is True
    assert confirmed.confidence == pytest.approx(plain.confidence * 1.5)


def test_ma_crossover_bearish():
    window = PriceWindow.from_sequences([100.0] * 30 + [80.0])
    assert MovingAverageCrossoverStrategy().evaluate(window).action is SignalAction.SELL


def test_mean_reversion():
    strategy = MeanReversionStrategy()
    stretched = strategy.evaluate(PriceWindow.from_sequences([100.0] * 19 + [110.0]))
    assert stretched.action is SignalAction.SELL
    assert stretched.confidence == pytest.approx(0.9)

    flat = strategy.evaluate(PriceWindow.from_sequences([100.0] * 20))
    assert flat.action is SignalAction.HOLD


def test_rsi_momentum():
    strategy = RSIMomentumStrategy()
    overbought = strategy.evaluate(PriceWindow.from_sequences(range(100, 120)))
    oversold = strategy.evaluate(PriceWindow.from_sequences(range(120, 100, -1)))
    assert overbought.action is SignalAction.SELL
    assert oversold.action is SignalAction.BUY
    assert oversold.confidence == pytest.approx(0.9)


def test_breakout_requires_volume_spike():
    prices = [100.0, 101.0] * 10 + [110.0]
    spike = BreakoutStrategy().evaluate(PriceWindow.from_sequences(prices, [100.0] * 20 + [500.0]))
    assert spike.action is SignalAction.BUY
    assert 0.0 < spike.confidence <= 0.9

    quiet = BreakoutStrategy().evaluate(PriceWindow.from_sequences(prices, [100.0] * 21))
    assert quiet.action is SignalAction.HOLD


def test_confidence_is_clamped():
    window = PriceWindow.from_sequences([1.0])
    assert constant(SignalAction.BUY, 1.7).evaluate(window).confidence == 1.0
    assert constant(SignalAction.SELL, -0.5).evaluate(window).confidence == 0.0
    assert constant(SignalAction.BUY, float("nan")).evaluate(window).confidence == 0.0
    assert constant(SignalAction.HOLD, 0.8).evaluate(window).confidence == 0.0


def test_ensemble_winner_must_dominate_and_exceed_threshold():
    window = PriceWindow.from_sequences([1.0])

    winner = StrategyEnsemble([(constant(SignalAction.BUY, 0.9), 1.0),
                               (constant(SignalAction.SELL, 0.2), 1.0)]).evaluate(window)
    assert winner.action is SignalAction.BUY
    assert winner.confidence == pytest.approx(0.45)

    tied = StrategyEnsemble([(constant(SignalAction.BUY, 0.8), 1.0),
                             (constant(SignalAction.SELL, 0.8), 1.0)]).evaluate(window)
    assert tied.action is SignalAction.HOLD

    at_threshold = StrategyEnsemble([(constant(SignalAction.BUY, 0.6), 1.0),
                                     (constant(SignalAction.HOLD, 0.0), 1.0)]).evaluate(window)
    assert at_threshold.action is SignalAction.HOLD
    assert at_threshold.details["buy_score"] == pytest.approx(0.3)


def test_empty_ensemble_raises():
    with pytest.raises(ValueError):
        StrategyEnsemble().evaluate(PriceWindow.from_sequences([1.0]))
    with pytest.raises(ValueError):
        StrategyEnsemble().add_strategy(constant(SignalAction.BUY, 1.0), 0.0)


def test_default_ensemble_lookback():
    ensemble = StrategyEnsemble.default()
    assert len(ensemble.members) == 4
    assert ensemble.min_lookback == 31


def test_strategy_engine_runs_every_strategy():
    engine = StrategyEngine([RSIMomentumStrategy()])
    engine.add_strategy(MeanReversionStrategy())
    signals = engine.run_all(PriceWindow.from_sequences([100.0] * 40))
    assert set(signals) == {"RSI Momentum", "Mean Reversion"}
    assert all(s.action is SignalAction.HOLD for s in signals.values())
