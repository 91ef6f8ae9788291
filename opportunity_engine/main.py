"""
Main application entry point.

This module wires the engine components and runs the periodic pipeline
alongside the HTTP surface.
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from opportunity_engine.routers import alerts, endpoints, executions, opportunities, signals

logger = logging.getLogger(__name__)


def build_sinks(config, clock):
    """Notification channels with credentials configured"""
    sinks = []
    if config.telegram.enabled:
        from opportunity_engine.notifications.telegram_service import TelegramNotificationService
        sinks.append(TelegramNotificationService(config.telegram.bot_token, config.telegram.chat_id, clock))
    if config.smtp.enabled:
        from opportunity_engine.notifications.email_service import EmailNotificationService
        sinks.append(EmailNotificationService(
            server=config.smtp.server,
            port=config.smtp.port,
            user=config.smtp.user,
            password=config.smtp.password,
            from_email=config.smtp.from_email,
            to_email=config.smtp.to_email,
            use_ssl=config.smtp.use_ssl,
            clock=clock,
        ))
    return sinks


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup: configuration, database and migrations, engine components and
    one pipeline task per timeframe class. Shutdown: cancel and await the tasks.
    """
    from opportunity_engine.config import get_config, get_market_clock
    from opportunity_engine.utils.logging_config import setup_logging

    config = get_config()
    setup_logging(config.log_level, config.structured_logging)

    logger.info("=" * 60)
    logger.info("Opportunity Engine Starting...")
    logger.info("=" * 60)

    from opportunity_engine.db.database import init_database
    from opportunity_engine.db.migration_runner import run_migrations

    init_database(config.database.url)
    logger.info("✓ Database initialized")
    run_migrations(config.database.url)
    logger.info("✓ Database migrations completed")

    from opportunity_engine.core.confluence.aggregator import ConfluenceAggregator
    from opportunity_engine.core.dispatch.coordinator import DispatchCoordinator
    from opportunity_engine.core.intake.signal_intake import SignalInbox
    from opportunity_engine.data.yfinance_provider import YFinanceMarketDataProvider
    from opportunity_engine.services.pipeline_service import PipelineService
    from opportunity_engine.utils.secrets import SecretCipher
    from opportunity_engine.utils.ttl_cache import TTLCache

    try:
        clock = get_market_clock(config.lifecycle.market_timezone, config.lifecycle.session_close)
        data_provider = YFinanceMarketDataProvider(cache=TTLCache(ttl_seconds=60))
        aggregator = ConfluenceAggregator(config.aggregator, clock, config.lifecycle.intraday_timeframes)
        sinks = build_sinks(config, clock)
        cipher = SecretCipher(config.dispatch.secret_key) if config.dispatch.secret_key else None
        coordinator = DispatchCoordinator(config.dispatch, sinks=sinks, cipher=cipher, clock=clock)
        inbox = SignalInbox(config.pipeline.intraday_timeframes + config.pipeline.daily_timeframes)
        error_notifier = next((s for s in sinks if hasattr(s, "send_error_alert")), None)

        pipeline = PipelineService(
            config,
            data_provider,
            aggregator,
            coordinator,
            clock,
            inbox=inbox,
            notification_service=error_notifier,
        )
    except Exception as e:
        from opportunity_engine.db.session import get_db_session
        from opportunity_engine.utils.error_handler import ErrorHandler

        with get_db_session() as db:
            await ErrorHandler(db).handle_startup_error("Startup", e)

    app.state.config = config
    app.state.inbox = inbox
    app.state.coordinator = coordinator
    app.state.pipeline = pipeline

    tasks = []
    if config.pipeline.intraday_timeframes:
        tasks.append(asyncio.create_task(pipeline.run(
            config.pipeline.intraday_timeframes, config.pipeline.intraday_interval_seconds, "Intraday"
        )))
    if config.pipeline.daily_timeframes:
        tasks.append(asyncio.create_task(pipeline.run(
            config.pipeline.daily_timeframes, config.pipeline.daily_interval_seconds, "Daily"
        )))

    logger.info(f"✓ Pipelines started for {len(config.pipeline.symbols)} symbols, "
                f"{len(sinks)} notification sink(s)")

    yield

    logger.info("Stopping pipelines...")
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    logger.info("Opportunity Engine Shut Down")


app = FastAPI(
    title="Opportunity Engine",
    description="Signal confluence, opportunity lifecycle tracking and alert dispatch",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(signals.router)
app.include_router(executions.router)
app.include_router(opportunities.router)
app.include_router(alerts.router)
app.include_router(endpoints.router)


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": "Opportunity Engine",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns:
        JSON with health status, 503 when the database is unreachable
    """
    try:
        from opportunity_engine.db.database import get_engine
        from sqlalchemy import text

        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        db_status = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        db_status = "unhealthy"

    is_healthy = db_status == "healthy"

    response = {
        "status": "healthy" if is_healthy else "unhealthy",
        "database": db_status,
        "service": "running"
    }

    status_code = 200 if is_healthy else 503
    return JSONResponse(content=response, status_code=status_code)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "opportunity_engine.main:app",
        host="0.0.0.0",
        port=8000,
        log_level="info",
        access_log=True
    )
