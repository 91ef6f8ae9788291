"""Property-based tests for alert rule evaluation"""
from datetime import timedelta

import pandas as pd
import pytest

from opportunity_engine.config.settings import AggregatorConfig
from opportunity_engine.config.timezone import MarketClock
from opportunity_engine.core.alerts.conditions import price_levels
from opportunity_engine.core.alerts.rule_evaluator import RuleEvaluator, rule_applies_to
from opportunity_engine.core.confluence.aggregator import ConfluenceAggregator
from opportunity_engine.core.domain.signal import Stage
from opportunity_engine.core.domain.symbol_context import SymbolContext
from opportunity_engine.db.models.alert_event import AlertEvent
from opportunity_engine.db.models.alert_rule import AlertRuleState, OwnerScope, RuleConditionType
from opportunity_engine.db.models.error_log import ErrorLog
from opportunity_engine.utils.error_handler import ErrorHandler

from tests.property.factories import CYCLE_TIME, make_rule, make_signal


def _ctx(aggregator, signals, now, price=None, candles=None):
    results = aggregator.aggregate(signals)
    by_timeframe = {}
    for signal in signals:
        by_timeframe.setdefault(signal.timeframe, []).append(signal)
    return SymbolContext(
        symbol="AAPL",
        now_utc=now,
        price=price,
        signals=by_timeframe,
        confluence={r.timeframe: r for r in results},
        candles=candles or {},
    )


def _events(db):
    return db.query(AlertEvent).order_by(AlertEvent.id).all()


@pytest.mark.asyncio
async def test_stage_entered_fires_once_per_transition(db, alert_config, aggregator):
    rule = make_rule(db, RuleConditionType.STAGE_ENTERED, condition_payload={"target_stage": "BREAKOUT"},
                     cooldown_minutes=0)
    evaluator = RuleEvaluator(db, alert_config, aggregator)

    ready = [make_signal("VCP", Stage.READY, 80.0)]
    breakout = [make_signal("VCP", Stage.BREAKOUT, 90.0)]

    assert await evaluator.evaluate_symbol(_ctx(aggregator, ready, CYCLE_TIME, 105.0), [rule], {}, ["AAPL"]) == []
    fired = await evaluator.evaluate_symbol(
        _ctx(aggregator, breakout, CYCLE_TIME + timedelta(hours=1), 112.0), [rule], {}, ["AAPL"]
    )
    assert await evaluator.evaluate_symbol(
        _ctx(aggregator, breakout, CYCLE_TIME + timedelta(hours=2), 113.0), [rule], {}, ["AAPL"]
    ) == []

    assert len(fired) == 1
    event = fired[0].event
    assert event.from_state == "READY"
    assert event.to_state == "BREAKOUT"
    assert event.price == 112.0
    assert event.message == "AAPL transitioned from READY to BREAKOUT at $112.00"
    assert event.user_id == "user-1"
    assert event.is_read is False
    assert fired[0].is_exit is False
    assert len(_events(db)) == 1


@pytest.mark.asyncio
async def test_score_threshold_treats_missing_previous_as_below(db, alert_config, aggregator):
    rule = make_rule(db, RuleConditionType.SCORE_THRESHOLD, score_threshold=80.0, cooldown_minutes=0)
    evaluator = RuleEvaluator(db, alert_config, aggregator)

    def run(score, minutes):
        signals = [make_signal("VCP", Stage.READY, score)]
        return evaluator.evaluate_symbol(
            _ctx(aggregator, signals, CYCLE_TIME + timedelta(minutes=minutes), 100.0), [rule], {}, ["AAPL"]
        )

    assert len(await run(85.0, 0)) == 1
    assert await run(90.0, 10) == []
    assert await run(70.0, 20) == []
    assert len(await run(85.0, 30)) == 1


@pytest.mark.asyncio
async def test_cooldown_suppresses_but_still_advances_snapshot(db, alert_config, aggregator):
    rule = make_rule(db, RuleConditionType.CONFLUENCE_THRESHOLD, min_strategies=2, cooldown_minutes=60)
    evaluator = RuleEvaluator(db, alert_config, aggregator)
    two = [make_signal("VCP"), make_signal("ORB5")]
    one = [make_signal("VCP")]

    assert len(await evaluator.evaluate_symbol(_ctx(aggregator, two, CYCLE_TIME, 100.0), [rule], {}, [])) == 1
    await evaluator.evaluate_symbol(_ctx(aggregator, one, CYCLE_TIME + timedelta(minutes=10), 100.0), [rule], {}, [])
    suppressed = await evaluator.evaluate_symbol(
        _ctx(aggregator, two, CYCLE_TIME + timedelta(minutes=20), 100.0), [rule], {}, []
    )

    assert suppressed == []
    state = db.query(AlertRuleState).filter_by(rule_id=rule.id, symbol="AAPL").one()
    assert state.snapshot["confluence_count"] == 2
    assert state.last_triggered_at == CYCLE_TIME
    assert rule.triggered_symbols(CYCLE_TIME + timedelta(minutes=20), 60) == ["AAPL"]
    assert len(_events(db)) == 1


@pytest.mark.asyncio
async def test_existing_event_key_is_not_fired_again(db, alert_config, aggregator):
    rule = make_rule(db, RuleConditionType.STAGE_ENTERED, condition_payload={"target_stage": "READY"})
    evaluator = RuleEvaluator(db, alert_config, aggregator)
    db.add(AlertEvent(
        rule_id=rule.id, user_id="user-1", symbol="AAPL", type="STAGE_ENTERED",
        event_key=evaluator.event_key(rule.id, "AAPL", CYCLE_TIME),
        to_state="READY", price=100.0, created_at=CYCLE_TIME,
    ))
    db.commit()

    fired = await evaluator.evaluate_symbol(
        _ctx(aggregator, [make_signal("VCP", Stage.READY)], CYCLE_TIME, 100.0), [rule], {}, []
    )
    assert fired == []
    assert len(_events(db)) == 1


@pytest.mark.asyncio
async def test_stop_hit_is_an_exit_alert(db, alert_config, aggregator):
    rule = make_rule(db, RuleConditionType.STOP_HIT)
    evaluator = RuleEvaluator(db, alert_config, aggregator)
    signals = [make_signal("VCP", Stage.READY, stop_reference_price=95.0, resistance_price=110.0)]

    assert await evaluator.evaluate_symbol(_ctx(aggregator, signals, CYCLE_TIME, 96.0), [rule], {}, []) == []
    fired = await evaluator.evaluate_symbol(
        _ctx(aggregator, signals, CYCLE_TIME + timedelta(minutes=5), 94.0), [rule], {}, []
    )

    assert len(fired) == 1
    assert fired[0].is_exit is True
    assert fired[0].event.stop_price == 95.0
    assert fired[0].event.target_price == 110.0


@pytest.mark.asyncio
async def test_approaching_uses_payload_proximity(db, alert_config, aggregator):
    rule = make_rule(db, RuleConditionType.APPROACHING, condition_payload={"proximity_pct": 2.0})
    evaluator = RuleEvaluator(db, alert_config, aggregator)
    signals = [make_signal("VCP", Stage.FORMING, resistance_price=110.0)]

    assert await evaluator.evaluate_symbol(_ctx(aggregator, signals, CYCLE_TIME, 100.0), [rule], {}, []) == []
    fired = await evaluator.evaluate_symbol(
        _ctx(aggregator, signals, CYCLE_TIME + timedelta(minutes=5), 108.5), [rule], {}, []
    )
    assert len(fired) == 1
    assert fired[0].event.type == "APPROACHING"


@pytest.mark.asyncio
async def test_price_conditions_wait_for_a_price(db, alert_config, aggregator):
    rule = make_rule(db, RuleConditionType.STOP_HIT)
    evaluator = RuleEvaluator(db, alert_config, aggregator)
    signals = [make_signal("VCP", Stage.READY, stop_reference_price=95.0)]

    assert await evaluator.evaluate_symbol(_ctx(aggregator, signals, CYCLE_TIME, None), [rule], {}, []) == []
    assert db.query(AlertRuleState).count() == 0


def _candles(closes):
    index = pd.date_range("2024-01-01", periods=len(closes), freq="D")
    return pd.DataFrame({"open": closes, "high": closes, "low": closes, "close": closes}, index=index)


@pytest.mark.asyncio
async def test_ema_exit_fires_on_cross_below(db, alert_config, aggregator):
    rule = make_rule(db, RuleConditionType.EMA_EXIT)
    evaluator = RuleEvaluator(db, alert_config, aggregator)
    closes = [100.0 + i for i in range(30)] + [100.0]
    candles = {"1d": _candles(closes)}

    fired = await evaluator.evaluate_symbol(
        _ctx(aggregator, [], CYCLE_TIME, 100.0, candles), [rule], {}, []
    )
    assert len(fired) == 1
    assert fired[0].is_exit is True

    again = await evaluator.evaluate_symbol(
        _ctx(aggregator, [], CYCLE_TIME + timedelta(hours=2), 100.0, candles), [rule], {}, []
    )
    assert again == []


@pytest.mark.asyncio
async def test_ema_exit_without_history_needs_a_fresh_cross(db, alert_config, aggregator):
    rule = make_rule(db, RuleConditionType.EMA_EXIT)
    evaluator = RuleEvaluator(db, alert_config, aggregator)
    closes = [100.0 + i for i in range(30)] + [100.0, 99.0]

    fired = await evaluator.evaluate_symbol(
        _ctx(aggregator, [], CYCLE_TIME, 99.0, {"1d": _candles(closes)}), [rule], {}, []
    )
    assert fired == []


@pytest.mark.asyncio
async def test_failing_rule_is_isolated_and_logged(db, alert_config, aggregator):
    broken = make_rule(db, RuleConditionType.SCORE_THRESHOLD)
    healthy = make_rule(db, RuleConditionType.STAGE_ENTERED, condition_payload={"target_stage": "FORMING"})
    evaluator = RuleEvaluator(db, alert_config, aggregator, ErrorHandler(db))

    fired = await evaluator.evaluate_symbol(
        _ctx(aggregator, [make_signal("VCP", Stage.FORMING)], CYCLE_TIME, 100.0), [broken, healthy], {}, []
    )

    assert [f.rule.id for f in fired] == [healthy.id]
    error = db.query(ErrorLog).one()
    assert error.rule_id == broken.id
    assert error.component == "RuleEvaluator"
    assert error.exception_type == "RuleEvaluationError"


@pytest.mark.asyncio
async def test_global_rule_without_owner_uses_system_user(db, alert_config, aggregator):
    rule = make_rule(
        db, RuleConditionType.STAGE_ENTERED,
        owner_scope=OwnerScope.GLOBAL, user_id=None, symbol=None,
        condition_payload={"target_stage": "FORMING"},
    )
    evaluator = RuleEvaluator(db, alert_config, aggregator)

    fired = await evaluator.evaluate_symbol(
        _ctx(aggregator, [make_signal("VCP")], CYCLE_TIME, 100.0), [rule], {}, ["AAPL", "MSFT"]
    )
    assert fired[0].event.user_id == "system"


@pytest.mark.asyncio
async def test_strategy_filtered_rule_sees_only_its_strategy(db, alert_config, aggregator):
    rule = make_rule(db, RuleConditionType.STAGE_ENTERED, strategy="orb5",
                     condition_payload={"target_stage": "BREAKOUT"})
    evaluator = RuleEvaluator(db, alert_config, aggregator)
    signals = [make_signal("VCP", Stage.BREAKOUT), make_signal("ORB5", Stage.READY)]

    assert await evaluator.evaluate_symbol(_ctx(aggregator, signals, CYCLE_TIME, 100.0), [rule], {}, []) == []
    state = db.query(AlertRuleState).one()
    assert state.snapshot["stage"] == "READY"


def test_rule_universe_resolution(db):
    explicit = make_rule(db, RuleConditionType.STOP_HIT, symbol="aapl")
    watched = make_rule(db, RuleConditionType.STOP_HIT, symbol=None, watchlist_id=7)
    global_rule = make_rule(db, RuleConditionType.STOP_HIT, symbol=None, owner_scope=OwnerScope.GLOBAL)
    orphan = make_rule(db, RuleConditionType.STOP_HIT, symbol=None)
    watchlists = {7: ["MSFT"]}

    assert rule_applies_to(explicit, "AAPL", watchlists, [])
    assert not rule_applies_to(explicit, "MSFT", watchlists, [])
    assert rule_applies_to(watched, "MSFT", watchlists, [])
    assert not rule_applies_to(watched, "AAPL", watchlists, ["AAPL"])
    assert rule_applies_to(global_rule, "TSLA", watchlists, ["TSLA"])
    assert not rule_applies_to(orphan, "AAPL", watchlists, ["AAPL"])


def test_price_levels_defaults():
    assert price_levels(100.0, 110.0, 95.0) == (110.0, 95.0)
    # No levels: stop 7% below, target 2R above
    assert price_levels(100.0, None, None) == (114.0, 93.0)
    assert price_levels(100.0, None, None, is_short=True) == (86.0, 107.0)


def _short_aggregator():
    config = AggregatorConfig(
        confluence_bonus_per_strategy=10.0,
        opening_min_score=50.0,
        opening_min_stage="FORMING",
        short_strategies_csv="gap_fade",
    )
    return ConfluenceAggregator(config, MarketClock(), ["5m", "15m"])


@pytest.mark.asyncio
async def test_short_stop_hit_fires_above_the_stop(db, alert_config):
    aggregator = _short_aggregator()
    rule = make_rule(db, RuleConditionType.STOP_HIT, cooldown_minutes=0)
    evaluator = RuleEvaluator(db, alert_config, aggregator)
    signals = [make_signal("GAP_FADE", Stage.READY, resistance_price=90.0, stop_reference_price=105.0)]

    assert await evaluator.evaluate_symbol(_ctx(aggregator, signals, CYCLE_TIME, 100.0), [rule], {}, []) == []
    # Falling price is in the short's favour
    assert await evaluator.evaluate_symbol(
        _ctx(aggregator, signals, CYCLE_TIME + timedelta(minutes=5), 94.0), [rule], {}, []
    ) == []
    fired = await evaluator.evaluate_symbol(
        _ctx(aggregator, signals, CYCLE_TIME + timedelta(minutes=10), 106.0), [rule], {}, []
    )

    assert len(fired) == 1
    assert fired[0].is_exit is True
    assert fired[0].event.stop_price == 105.0
    assert fired[0].event.target_price == 90.0


@pytest.mark.asyncio
async def test_short_approaching_target_from_above(db, alert_config):
    aggregator = _short_aggregator()
    rule = make_rule(db, RuleConditionType.APPROACHING, condition_payload={"proximity_pct": 2.0})
    evaluator = RuleEvaluator(db, alert_config, aggregator)
    signals = [make_signal("GAP_FADE", Stage.FORMING, resistance_price=90.0, stop_reference_price=105.0)]

    assert await evaluator.evaluate_symbol(_ctx(aggregator, signals, CYCLE_TIME, 100.0), [rule], {}, []) == []
    fired = await evaluator.evaluate_symbol(
        _ctx(aggregator, signals, CYCLE_TIME + timedelta(minutes=5), 91.5), [rule], {}, []
    )
    assert len(fired) == 1
    assert fired[0].event.type == "APPROACHING"


@pytest.mark.asyncio
async def test_last_state_exposes_typed_snapshots_per_symbol(db, alert_config, aggregator):
    rule = make_rule(db, RuleConditionType.SCORE_THRESHOLD, score_threshold=90.0)
    evaluator = RuleEvaluator(db, alert_config, aggregator)

    await evaluator.evaluate_symbol(
        _ctx(aggregator, [make_signal("VCP", Stage.READY, 75.0)], CYCLE_TIME, 101.0), [rule], {}, []
    )

    snapshot = rule.last_state["AAPL"]
    assert snapshot.stage == "READY"
    assert snapshot.score == 75.0
    assert snapshot.price == 101.0
    assert snapshot.evaluated_at == CYCLE_TIME
