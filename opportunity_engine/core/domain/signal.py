"""Strategy signal dataclass and stage ordering"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional


class Stage(str, Enum):
    """Pattern maturity classification"""
    FORMING = "FORMING"
    APPROACHING = "APPROACHING"
    READY = "READY"
    TRIGGERED = "TRIGGERED"
    BREAKOUT = "BREAKOUT"

    @property
    def priority(self) -> int:
        return STAGE_PRIORITY[self]


# READY and TRIGGERED share a rank
STAGE_PRIORITY = {
    Stage.FORMING: 1,
    Stage.APPROACHING: 2,
    Stage.READY: 3,
    Stage.TRIGGERED: 3,
    Stage.BREAKOUT: 4,
}


def stage_priority(stage: Optional[str]) -> int:
    """Priority of a stage value, 0 for None or unknown stages"""
    if stage is None:
        return 0
    try:
        return Stage(stage).priority
    except ValueError:
        return 0


def highest_stage(stages: Iterable[Stage]) -> Optional[Stage]:
    """Return the highest-priority stage, or None for an empty input"""
    best: Optional[Stage] = None
    for stage in stages:
        if best is None or stage.priority > best.priority:
            best = stage
    return best


@dataclass(frozen=True)
class StrategySignal:
    """
    Canonical detector output for one strategy on one symbol/timeframe.

    Attributes:
        symbol: Ticker symbol (upper case)
        strategy_id: Detector identifier (e.g., "VCP")
        timeframe: Timeframe the detector ran on (e.g., "5m", "1d")
        stage: Stage classification
        detected_price: Price at detection
        score: Pattern score, 0-100
        resistance_price: Optional breakout reference level
        stop_reference_price: Optional invalidation level
        strategy_name: Display name, falls back to strategy_id
        emitted_at: When the detector produced the signal, if it reported one
    """
    symbol: str
    strategy_id: str
    timeframe: str
    stage: Stage
    detected_price: float
    score: float
    resistance_price: Optional[float] = None
    stop_reference_price: Optional[float] = None
    strategy_name: Optional[str] = None
    emitted_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.strategy_name or self.strategy_id
