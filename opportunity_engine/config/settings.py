"""
Configuration management using Pydantic settings.
Loads configuration from environment variables.
"""
import base64
import binascii
from typing import Dict, List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TelegramConfig(BaseSettings):
    """Telegram bot configuration (push channel, optional)"""
    bot_token: str = Field("", alias="TELEGRAM__BOT_TOKEN")
    chat_id: str = Field("", alias="TELEGRAM__CHAT_ID")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)


class SmtpConfig(BaseSettings):
    """SMTP email configuration (email channel, optional)"""
    server: str = Field("", alias="SMTP__SERVER")
    port: int = Field(465, alias="SMTP__PORT")
    user: str = Field("", alias="SMTP__USER")
    password: str = Field("", alias="SMTP__PASSWORD")
    from_email: str = Field("", alias="SMTP__FROM_EMAIL")
    to_email: str = Field("", alias="SMTP__TO_EMAIL")
    use_ssl: bool = Field(True, alias="SMTP__USE_SSL")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    @property
    def enabled(self) -> bool:
        return bool(self.server and self.user and self.password and self.to_email)


class PipelineConfig(BaseSettings):
    """Periodic driver configuration"""
    symbols_csv: str = Field("", alias="PIPELINE__SYMBOLS")
    intraday_timeframes_csv: str = Field("5m,15m", alias="PIPELINE__INTRADAY_TIMEFRAMES")
    daily_timeframes_csv: str = Field("1d", alias="PIPELINE__DAILY_TIMEFRAMES")
    intraday_interval_seconds: int = Field(120, alias="PIPELINE__INTRADAY_INTERVAL_SECONDS")
    daily_interval_seconds: int = Field(3600, alias="PIPELINE__DAILY_INTERVAL_SECONDS")
    max_concurrency: int = Field(8, alias="PIPELINE__MAX_CONCURRENCY")
    symbol_timeout_seconds: float = Field(45.0, alias="PIPELINE__SYMBOL_TIMEOUT_SECONDS")
    regime_benchmark: str = Field("SPY", alias="PIPELINE__REGIME_BENCHMARK")
    candle_lookback_days: int = Field(60, alias="PIPELINE__CANDLE_LOOKBACK_DAYS")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    @staticmethod
    def _split(value: str) -> List[str]:
        return [item.strip() for item in value.split(",") if item.strip()]

    @property
    def symbols(self) -> List[str]:
        """Symbol universe, upper-cased and de-duplicated in order"""
        seen: Dict[str, None] = {}
        for symbol in self._split(self.symbols_csv):
            seen.setdefault(symbol.upper(), None)
        return list(seen)

    @property
    def intraday_timeframes(self) -> List[str]:
        return self._split(self.intraday_timeframes_csv)

    @property
    def daily_timeframes(self) -> List[str]:
        return self._split(self.daily_timeframes_csv)


class AggregatorConfig(BaseSettings):
    """Confluence aggregation configuration"""
    confluence_bonus_per_strategy: float = Field(10.0, alias="AGGREGATOR__CONFLUENCE_BONUS")
    opening_min_score: float = Field(50.0, alias="AGGREGATOR__OPENING_MIN_SCORE")
    opening_min_stage: str = Field("FORMING", alias="AGGREGATOR__OPENING_MIN_STAGE")
    short_strategies_csv: str = Field("", alias="AGGREGATOR__SHORT_STRATEGIES")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    @property
    def short_strategies(self) -> List[str]:
        return [s.strip().upper() for s in self.short_strategies_csv.split(",") if s.strip()]


class LifecycleConfig(BaseSettings):
    """Opportunity lifecycle configuration"""
    market_timezone: str = Field("America/New_York", alias="LIFECYCLE__MARKET_TIMEZONE")
    session_close: str = Field("16:00", alias="LIFECYCLE__SESSION_CLOSE")
    intraday_timeframes_csv: str = Field("1m,2m,5m,15m,30m", alias="LIFECYCLE__INTRADAY_TIMEFRAMES")
    validity_days: Dict[str, int] = Field(
        default_factory=lambda: {"1h": 3, "60m": 3, "1d": 10, "daily": 10, "1w": 30},
        alias="LIFECYCLE__VALIDITY_DAYS",
    )
    default_validity_days: int = Field(10, alias="LIFECYCLE__DEFAULT_VALIDITY_DAYS")
    breakout_buffer_pct: float = Field(0.0, alias="LIFECYCLE__BREAKOUT_BUFFER_PCT")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    @property
    def intraday_timeframes(self) -> List[str]:
        return [t.strip() for t in self.intraday_timeframes_csv.split(",") if t.strip()]


class AlertConfig(BaseSettings):
    """Alert rule evaluation configuration"""
    default_cooldown_minutes: int = Field(60, alias="ALERTS__DEFAULT_COOLDOWN_MINUTES")
    approaching_proximity_pct: float = Field(2.0, alias="ALERTS__APPROACHING_PROXIMITY_PCT")
    ema_period: int = Field(21, alias="ALERTS__EMA_PERIOD")
    system_user_id: str = Field("system", alias="ALERTS__SYSTEM_USER_ID")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


class DispatchConfig(BaseSettings):
    """Webhook dispatch configuration"""
    webhook_timeout_seconds: float = Field(10.0, alias="DISPATCH__WEBHOOK_TIMEOUT_SECONDS")
    max_attempts: int = Field(3, alias="DISPATCH__MAX_ATTEMPTS")
    backoff_multiplier: float = Field(1.0, alias="DISPATCH__BACKOFF_MULTIPLIER")
    backoff_min_seconds: float = Field(1.0, alias="DISPATCH__BACKOFF_MIN_SECONDS")
    backoff_max_seconds: float = Field(30.0, alias="DISPATCH__BACKOFF_MAX_SECONDS")
    secret_key: Optional[str] = Field(None, alias="DISPATCH__SECRET_KEY")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)


class DatabaseConfig(BaseSettings):
    """Database configuration"""
    user: str = Field("", alias="POSTGRES_USER")
    password: str = Field("", alias="POSTGRES_PASSWORD")
    db: str = Field("", alias="POSTGRES_DB")
    host: str = Field("localhost", alias="POSTGRES_HOST")
    port: int = Field(5432, alias="POSTGRES_PORT")

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    @property
    def url(self) -> str:
        """Get database connection URL"""
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.db}"


class AppConfig(BaseSettings):
    """Main application configuration"""
    log_level: str = Field("INFO", alias="APP_LOG_LEVEL")
    structured_logging: bool = Field(True, alias="APP_STRUCTURED_LOGGING")
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    def validate_all(self) -> None:
        """Validate all configuration sections"""
        errors = []

        # Validate Database config
        if not self.database.user:
            errors.append("POSTGRES_USER is required")
        if not self.database.password:
            errors.append("POSTGRES_PASSWORD is required")
        if not self.database.db:
            errors.append("POSTGRES_DB is required")

        # Validate Pipeline config
        if not self.pipeline.symbols:
            errors.append("No symbols configured. Set PIPELINE__SYMBOLS to a comma-separated list")
        if self.pipeline.max_concurrency < 1:
            errors.append("PIPELINE__MAX_CONCURRENCY must be at least 1")

        # Validate Dispatch config
        if self.dispatch.max_attempts < 1:
            errors.append("DISPATCH__MAX_ATTEMPTS must be at least 1")
        if self.dispatch.secret_key:
            try:
                key = base64.b64decode(self.dispatch.secret_key, validate=True)
            except (binascii.Error, ValueError):
                key = b""
            if len(key) != 32:
                errors.append("DISPATCH__SECRET_KEY must be a 32-byte key encoded in base64")

        if errors:
            raise ValueError(f"Configuration validation failed:\n" + "\n".join(f"  - {e}" for e in errors))


# Global config instance
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create global configuration instance"""
    global _config
    if _config is None:
        _config = AppConfig()
        _config.validate_all()
    return _config
