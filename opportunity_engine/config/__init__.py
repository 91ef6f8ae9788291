"""Configuration module"""
from opportunity_engine.config.settings import (
    AppConfig,
    TelegramConfig,
    SmtpConfig,
    PipelineConfig,
    AggregatorConfig,
    LifecycleConfig,
    AlertConfig,
    DispatchConfig,
    DatabaseConfig,
    get_config,
)
from opportunity_engine.config.timezone import MarketClock, get_market_clock

__all__ = [
    "AppConfig",
    "TelegramConfig",
    "SmtpConfig",
    "PipelineConfig",
    "AggregatorConfig",
    "LifecycleConfig",
    "AlertConfig",
    "DispatchConfig",
    "DatabaseConfig",
    "get_config",
    "MarketClock",
    "get_market_clock",
]
