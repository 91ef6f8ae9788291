"""Per-symbol, per-cycle context dataclasses"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
import pandas as pd

from opportunity_engine.core.confluence.regime import NEUTRAL_REGIME, RegimeAnalysis
from opportunity_engine.core.domain.signal import Stage, StrategySignal


@dataclass
class ConfluenceResult:
    """
    Aggregated view of all signals for one symbol/timeframe in a cycle.

    Attributes:
        symbol: Ticker symbol
        timeframe: Timeframe
        signals: One signal per agreeing strategy (highest stage per strategy)
        stage: Highest-priority stage among the signals
        primary: Signal chosen as the opportunity's primary detector
        base_score: Mean of strategy scores
        confluence_bonus: (N - 1) * bonus per strategy
        regime_adjustment: Additive regime adjustment
        score: Final score clamped to [0, 100]
        resistance_price: Primary's resistance, else the next best-ranked signal's
        stop_reference_price: Primary's stop, else the next best-ranked signal's
    """
    symbol: str
    timeframe: str
    signals: List[StrategySignal]
    stage: Stage
    primary: StrategySignal
    base_score: float
    confluence_bonus: float
    regime_adjustment: float
    score: float
    resistance_price: Optional[float] = None
    stop_reference_price: Optional[float] = None

    @property
    def strategy_ids(self) -> List[str]:
        return [s.strategy_id for s in self.signals]

    @property
    def confluence_count(self) -> int:
        return len(self.signals)


@dataclass
class ReferenceLevels:
    """Resistance/stop levels tracked for a symbol/timeframe"""
    resistance_price: Optional[float] = None
    stop_reference_price: Optional[float] = None


@dataclass
class SymbolContext:
    """
    Everything the rule evaluator needs to know about a symbol this cycle.

    Attributes:
        symbol: Ticker symbol
        now_utc: Cycle timestamp in UTC
        price: Latest price (None when market data was unavailable)
        signals: Raw signals keyed by timeframe, passed through unmodified
        confluence: Aggregated results keyed by timeframe
        levels: Reference levels keyed by timeframe (from open opportunities
            or, failing that, from the aggregated signals)
        candles: Candles keyed by timeframe, used for EMA-based conditions
        regime: Market regime of the cycle
    """
    symbol: str
    now_utc: datetime
    price: Optional[float] = None
    signals: Dict[str, List[StrategySignal]] = field(default_factory=dict)
    confluence: Dict[str, ConfluenceResult] = field(default_factory=dict)
    levels: Dict[str, ReferenceLevels] = field(default_factory=dict)
    candles: Dict[str, pd.DataFrame] = field(default_factory=dict)
    regime: RegimeAnalysis = NEUTRAL_REGIME

    def signals_for(self, timeframe: str, strategies: Optional[List[str]] = None) -> List[StrategySignal]:
        """Signals on a timeframe, optionally restricted to strategy ids"""
        signals = self.signals.get(timeframe, [])
        if strategies:
            wanted = {s.upper() for s in strategies}
            signals = [s for s in signals if s.strategy_id.upper() in wanted]
        return signals
