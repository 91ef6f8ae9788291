"""Market regime classification and per-strategy score adjustment"""
import logging
from dataclasses import dataclass
from enum import Enum

import pandas as pd

from opportunity_engine.core.indicators import calculate_ema, count_ema_crosses, ema_slope_percent

logger = logging.getLogger(__name__)

MIN_REGIME_CANDLES = 30

TREND_STRATEGIES = {"VCP", "VCP_MULTIDAY", "TREND_CONTINUATION", "GAP_AND_GO"}
CHOP_SENSITIVE_STRATEGIES = {"VCP", "VCP_MULTIDAY", "ORB5", "ORB15", "HIGH_RVOL"}


class MarketRegime(str, Enum):
    """Broad market state derived from a benchmark symbol"""
    TRENDING = "TRENDING"
    CHOPPY = "CHOPPY"
    RISK_OFF = "RISK_OFF"
    NEUTRAL = "NEUTRAL"


@dataclass(frozen=True)
class RegimeAnalysis:
    """Regime classification with the measurements behind it"""
    regime: MarketRegime
    ema21_slope: float = 0.0
    price_vs_ema21: float = 0.0
    cross_count: int = 0

    @property
    def description(self) -> str:
        if self.regime == MarketRegime.TRENDING:
            return "Bullish trend: price above EMA21 with upward slope"
        if self.regime == MarketRegime.RISK_OFF:
            return "Risk-off: price below EMA21 with downward slope"
        if self.regime == MarketRegime.CHOPPY:
            return "Choppy: frequent crosses around EMA21"
        return "Insufficient data for regime classification"


NEUTRAL_REGIME = RegimeAnalysis(MarketRegime.NEUTRAL)


def classify_market_regime(candles: pd.DataFrame) -> RegimeAnalysis:
    """
    Classify the market from benchmark candles.

    TRENDING: close more than 0.5% above EMA21, EMA21 rising more than 0.1%
    over 5 bars and at most 3 crosses in the last 20 bars. RISK_OFF is the
    mirror image. Anything else is CHOPPY; fewer than 30 candles is NEUTRAL.
    """
    if candles is None or len(candles) < MIN_REGIME_CANDLES:
        return NEUTRAL_REGIME

    close = candles["close"].astype(float)
    ema21 = calculate_ema(close, 21)
    slope = ema_slope_percent(ema21, 5)
    current_ema = float(ema21.iloc[-1])
    price_vs_ema = (float(close.iloc[-1]) - current_ema) / current_ema * 100 if current_ema else 0.0
    crosses = count_ema_crosses(close, ema21, 20)

    if price_vs_ema > 0.5 and slope > 0.1 and crosses <= 3:
        regime = MarketRegime.TRENDING
    elif price_vs_ema < -0.5 and slope < -0.1 and crosses <= 3:
        regime = MarketRegime.RISK_OFF
    else:
        regime = MarketRegime.CHOPPY

    return RegimeAnalysis(
        regime=regime,
        ema21_slope=round(slope, 2),
        price_vs_ema21=round(price_vs_ema, 2),
        cross_count=crosses,
    )


def get_regime_adjustment(regime: MarketRegime, strategy_id: str) -> float:
    """Additive score adjustment for a strategy under a regime"""
    strategy_id = strategy_id.upper()
    if regime == MarketRegime.TRENDING:
        return 10.0 if strategy_id in TREND_STRATEGIES else 0.0
    if regime == MarketRegime.CHOPPY:
        return -15.0 if strategy_id in CHOP_SENSITIVE_STRATEGIES else -5.0
    if regime == MarketRegime.RISK_OFF:
        return -20.0
    return 0.0
