"""Shared fixtures: in-memory database, market clock, engine configuration"""
import pytest

from opportunity_engine.config.settings import AggregatorConfig, AlertConfig, DispatchConfig, LifecycleConfig
from opportunity_engine.config.timezone import MarketClock
from opportunity_engine.core.confluence.aggregator import ConfluenceAggregator
from opportunity_engine.db.database import create_all_tables, drop_all_tables, get_session, init_database


@pytest.fixture
def db():
    init_database("sqlite:///:memory:")
    create_all_tables()
    session_gen = get_session()
    session = next(session_gen)
    try:
        yield session
    finally:
        session_gen.close()
        drop_all_tables()


@pytest.fixture
def clock():
    return MarketClock("America/New_York", "16:00")


@pytest.fixture
def aggregator_config():
    return AggregatorConfig(
        confluence_bonus_per_strategy=10.0,
        opening_min_score=50.0,
        opening_min_stage="FORMING",
        short_strategies_csv="",
    )


@pytest.fixture
def lifecycle_config():
    return LifecycleConfig(
        market_timezone="America/New_York",
        session_close="16:00",
        intraday_timeframes_csv="1m,5m,15m,30m",
        validity_days={"1h": 3, "1d": 10, "daily": 10, "1w": 30},
        default_validity_days=10,
        breakout_buffer_pct=0.0,
    )


@pytest.fixture
def alert_config():
    return AlertConfig(
        default_cooldown_minutes=60,
        approaching_proximity_pct=2.0,
        ema_period=21,
        system_user_id="system",
    )


@pytest.fixture
def dispatch_config():
    return DispatchConfig(
        webhook_timeout_seconds=5.0,
        max_attempts=3,
        backoff_multiplier=0.0,
        backoff_min_seconds=0.0,
        backoff_max_seconds=0.0,
        secret_key=None,
    )


@pytest.fixture
def aggregator(aggregator_config, clock, lifecycle_config):
    return ConfluenceAggregator(aggregator_config, clock, lifecycle_config.intraday_timeframes)
