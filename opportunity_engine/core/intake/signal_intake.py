"""
Signal intake: normalizes detector output into StrategySignal.

Detectors are black boxes. Intake checks field presence and type only,
never pattern correctness.
"""
import asyncio
import logging
import math
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

import pandas as pd

from opportunity_engine.core.domain.signal import Stage, StrategySignal
from opportunity_engine.core.errors import SignalValidationError

logger = logging.getLogger(__name__)

RawSignal = Union[StrategySignal, Mapping[str, Any]]

# camelCase keys accepted from external detectors
_FIELD_ALIASES = {
    "strategyId": "strategy_id",
    "strategyName": "strategy_name",
    "detectedPrice": "detected_price",
    "resistancePrice": "resistance_price",
    "stopReferencePrice": "stop_reference_price",
    "emittedAt": "emitted_at",
}


class SignalSource(Protocol):
    """A pluggable detector producing raw signals for a symbol/timeframe"""

    strategy_id: str
    timeframes: Sequence[str]

    async def detect(
        self,
        symbol: str,
        timeframe: str,
        candles: pd.DataFrame
    ) -> Optional[RawSignal]:
        """
        Classify the pattern on the latest candles.

        Returns:
            Raw signal (StrategySignal or mapping), or None when nothing is forming
        """
        ...


def _require_text(data: Mapping[str, Any], name: str) -> str:
    value = data.get(name)
    if not isinstance(value, str) or not value.strip():
        raise SignalValidationError(f"{name} must be a non-empty string", field=name)
    return value.strip()


def _number(data: Mapping[str, Any], name: str, required: bool) -> Optional[float]:
    value = data.get(name)
    if value is None:
        if required:
            raise SignalValidationError(f"{name} is required", field=name)
        return None
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SignalValidationError(f"{name} must be a number, got {type(value).__name__}", field=name)
    value = float(value)
    if not math.isfinite(value):
        raise SignalValidationError(f"{name} must be finite", field=name)
    return value


def _to_naive_utc(value: Any):
    ts = pd.Timestamp(value)
    if ts is pd.NaT:
        raise ValueError("missing timestamp")
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts.to_pydatetime()


def normalize_signal(raw: RawSignal) -> StrategySignal:
    """
    Convert detector output into a canonical StrategySignal.

    Accepts a StrategySignal or a mapping with snake_case or camelCase keys.

    Raises:
        SignalValidationError: missing field or wrong type
    """
    if isinstance(raw, StrategySignal):
        data: Dict[str, Any] = {
            "symbol": raw.symbol,
            "strategy_id": raw.strategy_id,
            "timeframe": raw.timeframe,
            "stage": raw.stage.value if isinstance(raw.stage, Stage) else raw.stage,
            "detected_price": raw.detected_price,
            "score": raw.score,
            "resistance_price": raw.resistance_price,
            "stop_reference_price": raw.stop_reference_price,
            "strategy_name": raw.strategy_name,
            "emitted_at": raw.emitted_at,
        }
    elif isinstance(raw, Mapping):
        data = {_FIELD_ALIASES.get(key, key): value for key, value in raw.items()}
    else:
        raise SignalValidationError(f"Unsupported signal payload type {type(raw).__name__}")

    symbol = _require_text(data, "symbol").upper()
    strategy_id = _require_text(data, "strategy_id")
    timeframe = _require_text(data, "timeframe")

    stage_value = data.get("stage")
    if isinstance(stage_value, Stage):
        stage = stage_value
    else:
        try:
            stage = Stage(str(stage_value).upper())
        except ValueError as e:
            raise SignalValidationError(f"Unknown stage {stage_value!r}", field="stage") from e

    detected_price = _number(data, "detected_price", required=True)
    if detected_price <= 0:
        raise SignalValidationError("detected_price must be positive", field="detected_price")

    score = _number(data, "score", required=True)
    if not 0 <= score <= 100:
        raise SignalValidationError("score must be within [0, 100]", field="score")

    resistance = _number(data, "resistance_price", required=False)
    stop = _number(data, "stop_reference_price", required=False)
    for name, level in (("resistance_price", resistance), ("stop_reference_price", stop)):
        if level is not None and level <= 0:
            raise SignalValidationError(f"{name} must be positive", field=name)

    strategy_name = data.get("strategy_name")
    if strategy_name is not None and not isinstance(strategy_name, str):
        raise SignalValidationError("strategy_name must be a string", field="strategy_name")

    kwargs: Dict[str, Any] = {}
    emitted_at = data.get("emitted_at")
    if emitted_at is not None:
        try:
            kwargs["emitted_at"] = _to_naive_utc(emitted_at)
        except (TypeError, ValueError) as e:
            raise SignalValidationError(f"Invalid emitted_at {emitted_at!r}", field="emitted_at") from e

    return StrategySignal(
        symbol=symbol,
        strategy_id=strategy_id,
        timeframe=timeframe,
        stage=stage,
        detected_price=detected_price,
        score=score,
        resistance_price=resistance,
        stop_reference_price=stop,
        strategy_name=strategy_name or None,
        **kwargs,
    )


def normalize_batch(raws: Iterable[RawSignal]) -> List[StrategySignal]:
    """
    Normalize a batch, skipping malformed entries.

    A malformed entry is logged and dropped; the rest of the batch continues.
    """
    signals: List[StrategySignal] = []
    for index, raw in enumerate(raws):
        try:
            signals.append(normalize_signal(raw))
        except SignalValidationError as e:
            logger.warning(
                f"Skipping malformed signal #{index}: {e}",
                extra={'component': 'SignalIntake', 'symbol': _peek_symbol(raw)}
            )
    return signals


def _peek_symbol(raw: Any) -> Optional[str]:
    if isinstance(raw, StrategySignal):
        return raw.symbol
    if isinstance(raw, Mapping):
        value = raw.get("symbol")
        return value if isinstance(value, str) else None
    return None


class SignalInbox:
    """
    Buffer of pushed signals waiting for the next cycle of their timeframe.

    Signals are keyed by (symbol, timeframe); a newer push from the same
    strategy replaces the older one. When the inbox is built with the
    timeframes the pipeline runs, signals for any other timeframe are
    refused, since no cycle would ever drain them.
    """

    def __init__(self, timeframes: Optional[Iterable[str]] = None):
        self.timeframes = set(timeframes) if timeframes is not None else None
        self._pending: Dict[Tuple[str, str], Dict[str, StrategySignal]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    async def push(self, signals: Iterable[StrategySignal]) -> int:
        """Buffer signals; returns how many were accepted"""
        count = 0
        async with self._lock:
            for signal in signals:
                if self.timeframes is not None and signal.timeframe not in self.timeframes:
                    logger.warning(
                        f"Refusing {signal.strategy_id} signal for {signal.symbol}: "
                        f"timeframe {signal.timeframe} is not processed",
                        extra={'component': 'SignalIntake', 'symbol': signal.symbol}
                    )
                    continue
                self._pending[(signal.symbol, signal.timeframe)][signal.strategy_id] = signal
                count += 1
        return count

    async def drain(self, symbol: str, timeframes: Iterable[str]) -> Dict[str, List[StrategySignal]]:
        """Remove and return the buffered signals of a symbol, keyed by timeframe"""
        drained: Dict[str, List[StrategySignal]] = {}
        async with self._lock:
            for timeframe in timeframes:
                pending = self._pending.pop((symbol, timeframe), None)
                if pending:
                    drained[timeframe] = list(pending.values())
        return drained

    def symbols(self) -> List[str]:
        """Symbols with buffered signals"""
        return sorted({symbol for symbol, _ in self._pending})

    def __len__(self) -> int:
        return sum(len(v) for v in self._pending.values())
