"""Property-based tests for market regime classification"""
import pandas as pd
import pytest
from hypothesis import given, strategies as st

from opportunity_engine.core.confluence.regime import (
    MarketRegime,
    classify_market_regime,
    get_regime_adjustment,
)


def _candles(closes):
    return pd.DataFrame({"close": closes})


def test_short_history_is_neutral():
    assert classify_market_regime(_candles([100.0] * 29)).regime == MarketRegime.NEUTRAL
    assert classify_market_regime(None).regime == MarketRegime.NEUTRAL


def test_steady_rise_is_trending():
    analysis = classify_market_regime(_candles([100 * 1.01 ** i for i in range(60)]))
    assert analysis.regime == MarketRegime.TRENDING
    assert analysis.ema21_slope > 0.1
    assert analysis.cross_count == 0


def test_steady_decline_is_risk_off():
    analysis = classify_market_regime(_candles([100 * 0.99 ** i for i in range(60)]))
    assert analysis.regime == MarketRegime.RISK_OFF
    assert analysis.price_vs_ema21 < -0.5


def test_zigzag_is_choppy():
    analysis = classify_market_regime(_candles([100 + (5 if i % 2 else -5) for i in range(60)]))
    assert analysis.regime == MarketRegime.CHOPPY
    assert analysis.cross_count > 3


@pytest.mark.parametrize("regime, strategy, expected", [
    (MarketRegime.TRENDING, "VCP", 10.0),
    (MarketRegime.TRENDING, "ORB5", 0.0),
    (MarketRegime.CHOPPY, "orb5", -15.0),
    (MarketRegime.CHOPPY, "CLASSIC_PULLBACK", -5.0),
    (MarketRegime.RISK_OFF, "GAP_AND_GO", -20.0),
    (MarketRegime.NEUTRAL, "VCP", 0.0),
])
def test_regime_adjustments(regime, strategy, expected):
    assert get_regime_adjustment(regime, strategy) == expected


@given(closes=st.lists(st.floats(min_value=1, max_value=1000, allow_nan=False), min_size=30, max_size=80))
def test_long_history_is_never_neutral(closes):
    assert classify_market_regime(_candles(closes)).regime != MarketRegime.NEUTRAL
