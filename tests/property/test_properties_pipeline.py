"""End-to-end tests for the periodic pipeline with fake market data"""
import asyncio
from contextlib import contextmanager
from datetime import timedelta

import pandas as pd
import pytest

from opportunity_engine.config.settings import AppConfig, PipelineConfig
from opportunity_engine.config.timezone import MarketClock
from opportunity_engine.core.confluence.regime import MarketRegime
from opportunity_engine.core.dispatch.coordinator import DispatchCoordinator
from opportunity_engine.core.domain.signal import Stage
from opportunity_engine.core.errors import MarketDataUnavailable
from opportunity_engine.core.intake.signal_intake import SignalInbox
from opportunity_engine.db.models.alert_event import AlertEvent
from opportunity_engine.db.models.error_log import ErrorLog
from opportunity_engine.db.models.opportunity import Opportunity, OpportunityStatus, ResolutionOutcome
from opportunity_engine.services.pipeline_service import PipelineService

from tests.property.factories import CYCLE_TIME, RuleConditionType, make_opportunity, make_rule, make_signal


class FixedClock(MarketClock):
    def __init__(self, now):
        super().__init__("America/New_York", "16:00")
        self.now = now

    def now_utc(self):
        return self.now


class FakeProvider:
    """AAPL and MSFT trade normally, BAD breaks, SLOW hangs, GONE has no data"""

    def __init__(self):
        self.prices = {"AAPL": 105.0, "MSFT": 100.0}

    async def get_latest_price(self, symbol):
        if symbol == "BAD":
            raise RuntimeError("provider returned garbage")
        if symbol not in self.prices:
            raise MarketDataUnavailable(symbol, "delisted")
        return self.prices[symbol], CYCLE_TIME

    async def get_candles(self, symbol, timeframe, lookback):
        if symbol == "SLOW":
            await asyncio.sleep(5)
        if symbol == "GONE":
            raise MarketDataUnavailable(symbol, "delisted")
        closes = [100.0 + i * 0.1 for i in range(40)]
        return pd.DataFrame({"open": closes, "high": closes, "low": closes, "close": closes, "volume": 1000})


class BreakoutSource:
    strategy_id = "VCP"
    timeframes = ["1d"]

    def __init__(self):
        self.active = True

    async def detect(self, symbol, timeframe, candles):
        if symbol != "AAPL" or not self.active:
            return None
        return {
            "symbol": symbol, "strategyId": "VCP", "timeframe": timeframe, "stage": "BREAKOUT",
            "detectedPrice": 100.0, "score": 80, "resistancePrice": 110.0, "stopReferencePrice": 95.0,
        }


class RecordingSink:
    name = "recording"

    def __init__(self):
        self.events = []

    async def notify(self, user_id, event):
        self.events.append((user_id, event.symbol, event.type))


@pytest.fixture
def engine_config(aggregator_config, lifecycle_config, alert_config, dispatch_config):
    return AppConfig(
        pipeline=PipelineConfig(
            symbols_csv="AAPL,BAD,SLOW,GONE",
            max_concurrency=1,
            symbol_timeout_seconds=0.2,
            regime_benchmark="",
        ),
        aggregator=aggregator_config,
        lifecycle=lifecycle_config,
        alerts=alert_config,
        dispatch=dispatch_config,
    )


def _pipeline(db, engine_config, aggregator, sink, source, clock, inbox=None):
    @contextmanager
    def shared_session():
        yield db

    return PipelineService(
        engine_config,
        FakeProvider(),
        aggregator,
        DispatchCoordinator(engine_config.dispatch, sinks=[sink]),
        clock,
        inbox=inbox,
        sources=[source],
        session_factory=shared_session,
    )


@pytest.mark.asyncio
async def test_cycle_opens_alerts_and_contains_failures(db, engine_config, aggregator):
    make_rule(db, RuleConditionType.STAGE_ENTERED, condition_payload={"target_stage": "BREAKOUT"})
    sink, source = RecordingSink(), BreakoutSource()
    inbox = SignalInbox()
    await inbox.push([make_signal("CLASSIC_PULLBACK", Stage.READY, 70.0, symbol="MSFT")])
    pipeline = _pipeline(db, engine_config, aggregator, sink, source, FixedClock(CYCLE_TIME), inbox)

    report = await pipeline.run_cycle(["1d"])

    assert report.regime.regime == MarketRegime.NEUTRAL
    assert report.symbols == ["AAPL", "BAD", "SLOW", "GONE", "MSFT"]
    assert report.failed == ["BAD"]
    assert report.timed_out == ["SLOW"]
    assert report.alerts == 1

    opened = {o.symbol: o for o in db.query(Opportunity).all()}
    assert set(opened) == {"AAPL", "MSFT"}
    assert opened["AAPL"].current_stage == "BREAKOUT"
    assert opened["MSFT"].strategy_id == "CLASSIC_PULLBACK"

    assert sink.events == [("user-1", "AAPL", "STAGE_ENTERED")]
    assert db.query(AlertEvent).count() == 1

    errors = {(e.symbol, e.component) for e in db.query(ErrorLog).all()}
    assert ("BAD", "PipelineService") in errors
    assert ("SLOW", "PipelineService") in errors
    assert ("GONE", "MarketData") in errors
    assert len(inbox) == 0


@pytest.mark.asyncio
async def test_next_cycle_resolves_and_does_not_refire(db, engine_config, aggregator):
    make_rule(db, RuleConditionType.STAGE_ENTERED, condition_payload={"target_stage": "BREAKOUT"})
    sink, source = RecordingSink(), BreakoutSource()
    clock = FixedClock(CYCLE_TIME)
    pipeline = _pipeline(db, engine_config, aggregator, sink, source, clock)
    await pipeline.run_cycle(["1d"])

    # The detector keeps reporting the same breakout all day
    pipeline.data_provider.prices["AAPL"] = 111.0
    clock.now = CYCLE_TIME + timedelta(hours=1)
    report = await pipeline.run_cycle(["1d"])

    assert report.resolved == 1
    assert report.alerts == 0

    clock.now = CYCLE_TIME + timedelta(hours=2)
    later = await pipeline.run_cycle(["1d"])

    assert later.resolved == 0
    assert later.alerts == 0
    opportunity = db.query(Opportunity).filter_by(symbol="AAPL").one()
    assert opportunity.status == OpportunityStatus.RESOLVED
    assert opportunity.resolution_outcome == ResolutionOutcome.BROKE_RESISTANCE
    assert opportunity.pnl_percent == 11.0
    assert len(sink.events) == 1


@pytest.mark.asyncio
async def test_overlapping_loops_track_only_their_own_timeframes(db, engine_config, aggregator):
    intraday = make_opportunity(db, symbol="AAPL", timeframe="5m", strategy_id="ORB5")
    daily = make_opportunity(db, symbol="AAPL", timeframe="1d")
    source = BreakoutSource()
    source.active = False
    pipeline = _pipeline(db, engine_config, aggregator, RecordingSink(), source, FixedClock(CYCLE_TIME))
    pipeline.data_provider.prices["AAPL"] = 111.0

    intraday_report, daily_report = await asyncio.gather(
        pipeline.run_cycle(["5m"]),
        pipeline.run_cycle(["1d"]),
    )

    assert intraday_report.resolved == 1
    assert daily_report.resolved == 1
    assert intraday.status == OpportunityStatus.RESOLVED
    assert daily.status == OpportunityStatus.RESOLVED
