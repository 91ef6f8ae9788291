"""
Alert rule conditions.

observe() turns a symbol's cycle context into the snapshot a rule compares
against; detect_transition() decides whether the move from the stored
snapshot to the new one is a qualifying transition.
"""
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from opportunity_engine.config.settings import AlertConfig
from opportunity_engine.core.confluence.aggregator import ConfluenceAggregator, select_primary
from opportunity_engine.core.domain.rule_state import RuleStateSnapshot
from opportunity_engine.core.domain.signal import Stage, StrategySignal
from opportunity_engine.core.domain.symbol_context import SymbolContext
from opportunity_engine.core.errors import RuleEvaluationError
from opportunity_engine.core.indicators import calculate_ema, crossed_above, crossed_below
from opportunity_engine.db.models.alert_rule import AlertRule, RuleConditionType
from opportunity_engine.db.models.opportunity import Direction

EDGE_CONDITIONS = {
    RuleConditionType.APPROACHING,
    RuleConditionType.STOP_HIT,
    RuleConditionType.EMA_EXIT,
}
EXIT_CONDITIONS = {RuleConditionType.STOP_HIT, RuleConditionType.EMA_EXIT}


@dataclass
class Observation:
    """Current condition state of a rule for one symbol"""
    snapshot: RuleStateSnapshot
    strategy_id: Optional[str]
    resistance_price: Optional[float]
    stop_reference_price: Optional[float]
    crossed_on_last_bar: bool = False


@dataclass
class Transition:
    """A qualifying transition, ready to become an alert event"""
    from_state: Optional[str]
    to_state: str
    description: str


def _payload(rule: AlertRule) -> Dict[str, Any]:
    return rule.condition_payload or {}


def observe(
    rule: AlertRule,
    ctx: SymbolContext,
    config: AlertConfig,
    aggregator: ConfluenceAggregator,
) -> Optional[Observation]:
    """
    Build the current snapshot of a rule for a symbol.

    Returns None when the condition cannot be evaluated this cycle (no price
    for a price-based condition); the stored snapshot is then left untouched.
    Price conditions follow the direction of the observed strategy: a SHORT
    approaches its target from above and is stopped out above its stop.
    """
    timeframe = rule.timeframe
    strategies = rule.strategy_filter
    signals = ctx.signals_for(timeframe, strategies)

    stage: Optional[str] = None
    score: Optional[float] = None
    primary: Optional[StrategySignal] = None

    if len(strategies) == 1:
        # Per-strategy view
        if signals:
            primary = select_primary(signals)
            stage, score = primary.stage.value, primary.score
    elif not strategies and timeframe in ctx.confluence:
        group = ctx.confluence[timeframe]
        primary = group.primary
        stage, score = group.stage.value, group.score
    elif signals:
        # Aggregated view restricted to the rule's strategies
        group = aggregator.aggregate(signals, ctx.regime)[0]
        primary = group.primary
        stage, score = group.stage.value, group.score

    confluence_count = len({s.strategy_id for s in signals})

    levels = ctx.levels.get(timeframe)
    resistance = levels.resistance_price if levels else None
    stop = levels.stop_reference_price if levels else None
    if primary is not None:
        resistance = primary.resistance_price if primary.resistance_price is not None else resistance
        stop = primary.stop_reference_price if primary.stop_reference_price is not None else stop

    price = ctx.price
    if price is None and primary is not None:
        price = primary.detected_price
    strategy_id = primary.strategy_id if primary else (strategies[0] if strategies else None)
    is_short = strategy_id is not None and aggregator.direction_for(strategy_id) == Direction.SHORT
    condition_active = False
    crossed = False
    condition = rule.condition_type

    if condition in EDGE_CONDITIONS:
        if ctx.price is None:
            return None
        if condition == RuleConditionType.APPROACHING:
            proximity = float(_payload(rule).get("proximity_pct", config.approaching_proximity_pct))
            if resistance is None:
                condition_active = False
            elif is_short:
                condition_active = price > resistance and (price - resistance) / resistance * 100 <= proximity
            else:
                condition_active = price < resistance and (resistance - price) / resistance * 100 <= proximity
        elif condition == RuleConditionType.STOP_HIT:
            condition_active = stop is not None and (price >= stop if is_short else price <= stop)
        else:
            candles = ctx.candles.get(timeframe)
            if candles is None or candles.empty:
                return None
            period = int(_payload(rule).get("ema_period", config.ema_period))
            close = candles["close"].astype(float)
            ema = calculate_ema(close, period)
            if is_short:
                condition_active = bool(close.iloc[-1] > ema.iloc[-1])
                crossed = crossed_above(close, ema)
            else:
                condition_active = bool(close.iloc[-1] < ema.iloc[-1])
                crossed = crossed_below(close, ema)

    snapshot = RuleStateSnapshot(
        stage=stage,
        score=score,
        confluence_count=confluence_count,
        condition_active=condition_active,
        price=price,
        evaluated_at=ctx.now_utc,
    )
    return Observation(
        snapshot=snapshot,
        strategy_id=strategy_id,
        resistance_price=resistance,
        stop_reference_price=stop,
        crossed_on_last_bar=crossed,
    )


def _threshold(rule: AlertRule) -> float:
    value = rule.score_threshold
    if value is None:
        value = _payload(rule).get("threshold")
    if value is None:
        raise RuleEvaluationError(rule.id, "SCORE_THRESHOLD rule has no threshold")
    return float(value)


def _min_strategies(rule: AlertRule) -> int:
    value = rule.min_strategies
    if value is None:
        value = _payload(rule).get("min_strategies")
    if value is None:
        raise RuleEvaluationError(rule.id, "CONFLUENCE_THRESHOLD rule has no min_strategies")
    return int(value)


def _target_stage(rule: AlertRule) -> str:
    value = _payload(rule).get("target_stage", Stage.BREAKOUT.value)
    try:
        return Stage(str(value).upper()).value
    except ValueError as e:
        raise RuleEvaluationError(rule.id, f"unknown target_stage {value!r}") from e


def detect_transition(
    rule: AlertRule,
    previous: Optional[RuleStateSnapshot],
    observation: Observation,
) -> Optional[Transition]:
    """
    Edge-triggered comparison of the stored and current snapshots.

    Returns:
        Transition when the rule moved into its condition, None otherwise

    Raises:
        RuleEvaluationError: the rule is missing a required parameter
    """
    current = observation.snapshot
    condition = rule.condition_type

    if condition == RuleConditionType.STAGE_ENTERED:
        target = _target_stage(rule)
        prev_stage = previous.stage if previous else None
        if prev_stage != target and current.stage == target:
            return Transition(prev_stage, target, f"entered {target} stage")
        return None

    if condition == RuleConditionType.SCORE_THRESHOLD:
        threshold = _threshold(rule)
        # Missing previous score counts as below the threshold
        prev_score = previous.score if previous and previous.score is not None else -math.inf
        if current.score is not None and prev_score < threshold <= current.score:
            return Transition(
                None if math.isinf(prev_score) else f"{prev_score:g}",
                f"{current.score:g}",
                f"score rose to {current.score:g} (threshold {threshold:g})",
            )
        return None

    if condition == RuleConditionType.CONFLUENCE_THRESHOLD:
        minimum = _min_strategies(rule)
        prev_count = previous.confluence_count if previous else 0
        if prev_count < minimum <= current.confluence_count:
            return Transition(
                str(prev_count),
                str(current.confluence_count),
                f"has {current.confluence_count} agreeing strategies",
            )
        return None

    # Boolean edge conditions
    was_active = previous.condition_active if previous else False
    if previous is None and condition == RuleConditionType.EMA_EXIT:
        # No history: only a cross on the latest bar counts
        fired = observation.crossed_on_last_bar
    else:
        fired = current.condition_active and not was_active
    if not fired:
        return None

    descriptions = {
        RuleConditionType.APPROACHING: "is approaching resistance",
        RuleConditionType.STOP_HIT: "hit its stop reference",
        RuleConditionType.EMA_EXIT: "closed below its EMA",
    }
    return Transition(current.stage, condition.value, descriptions[condition])


def alert_message(symbol: str, transition: Transition, price: float, condition: RuleConditionType) -> str:
    """Human readable alert text stored on the event"""
    if condition == RuleConditionType.STAGE_ENTERED and transition.from_state:
        return f"{symbol} transitioned from {transition.from_state} to {transition.to_state} at ${price:.2f}"
    return f"{symbol} {transition.description} at ${price:.2f}"


def price_levels(
    price: float,
    resistance: Optional[float],
    stop: Optional[float],
    is_short: bool = False,
) -> Tuple[float, float]:
    """
    Target and stop for an alert.

    Stop defaults to 7% against the position; target is the resistance
    when known, otherwise 2R from the stop.
    """
    if stop is None:
        stop = price * 1.07 if is_short else price * 0.93
    if resistance is not None:
        target = resistance
    else:
        risk = abs(price - stop)
        target = price - 2 * risk if is_short else price + 2 * risk
    return round(target, 2), round(stop, 2)
