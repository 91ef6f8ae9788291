"""Periodic per-symbol pipeline driver"""
import asyncio
import logging
from collections import defaultdict
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence

import pandas as pd
from sqlalchemy.orm import Session

from opportunity_engine.config.settings import AppConfig
from opportunity_engine.config.timezone import MarketClock
from opportunity_engine.core.alerts.rule_evaluator import RuleEvaluator
from opportunity_engine.core.confluence.aggregator import ConfluenceAggregator
from opportunity_engine.core.confluence.regime import NEUTRAL_REGIME, RegimeAnalysis, classify_market_regime
from opportunity_engine.core.dispatch.coordinator import DispatchCoordinator
from opportunity_engine.core.domain.signal import StrategySignal
from opportunity_engine.core.domain.symbol_context import ReferenceLevels, SymbolContext
from opportunity_engine.core.errors import MarketDataUnavailable
from opportunity_engine.core.intake.signal_intake import SignalInbox, SignalSource, normalize_batch
from opportunity_engine.core.state_machine.opportunity_state_machine import OpportunityStateMachine
from opportunity_engine.data.market_data_provider import MarketDataProvider
from opportunity_engine.db.queries import get_active_opportunities, get_enabled_rules, get_watchlist_symbols
from opportunity_engine.db.session import get_db_session
from opportunity_engine.utils.error_handler import ErrorHandler

logger = logging.getLogger(__name__)

REGIME_TIMEFRAME = "1d"
REGIME_LOOKBACK = timedelta(days=120)


@dataclass
class SymbolOutcome:
    """What happened to one symbol in a cycle"""
    symbol: str
    signals: int = 0
    opportunities: int = 0
    resolved: int = 0
    alerts: int = 0
    executions: int = 0
    failed: bool = False
    timed_out: bool = False


@dataclass
class CycleReport:
    """Summary of one pipeline cycle"""
    started_at: datetime
    timeframes: List[str]
    regime: RegimeAnalysis
    outcomes: List[SymbolOutcome] = field(default_factory=list)

    @property
    def symbols(self) -> List[str]:
        return [o.symbol for o in self.outcomes]

    @property
    def failed(self) -> List[str]:
        return [o.symbol for o in self.outcomes if o.failed]

    @property
    def timed_out(self) -> List[str]:
        return [o.symbol for o in self.outcomes if o.timed_out]

    @property
    def alerts(self) -> int:
        return sum(o.alerts for o in self.outcomes)

    @property
    def resolved(self) -> int:
        return sum(o.resolved for o in self.outcomes)


class PipelineService:
    """
    Drives the engine on a schedule, one loop per timeframe class.

    Each cycle:
    1. Classify the market regime once from the benchmark symbol
    2. Snapshot watchlists and the symbol universe
    3. Process every symbol concurrently (bounded by max_concurrency), each
       under its own timeout and its own database session:
       detect/drain signals -> aggregate -> track -> evaluate rules -> dispatch

    A failing or timed out symbol is recorded and retried next cycle; the
    cycle always completes for the rest of the universe.
    """

    def __init__(
        self,
        config: AppConfig,
        data_provider: MarketDataProvider,
        aggregator: ConfluenceAggregator,
        coordinator: DispatchCoordinator,
        clock: MarketClock,
        inbox: Optional[SignalInbox] = None,
        sources: Sequence[SignalSource] = (),
        notification_service=None,
        session_factory: Callable[[], AbstractContextManager] = get_db_session,
    ):
        """
        Initialize pipeline.

        Args:
            config: Application configuration
            data_provider: Market data provider (prices and candles)
            aggregator: Confluence aggregator
            coordinator: Dispatch coordinator
            clock: Market clock
            inbox: Buffer of signals pushed through the API
            sources: In-process signal sources run on each symbol's candles
            notification_service: Error alert channel passed to ErrorHandler
            session_factory: Context manager yielding a unit-of-work session
        """
        self.config = config
        self.data_provider = data_provider
        self.aggregator = aggregator
        self.coordinator = coordinator
        self.clock = clock
        self.inbox = inbox or SignalInbox()
        self.sources = list(sources)
        self.notification_service = notification_service
        self.session_factory = session_factory
        self._semaphore = asyncio.Semaphore(max(1, config.pipeline.max_concurrency))

    async def run(self, timeframes: List[str], interval_seconds: float, label: str) -> None:
        """Run cycles forever; cancellation stops the loop"""
        logger.info(f"{label} pipeline started: {timeframes} every {interval_seconds}s")
        while True:
            try:
                await self.run_cycle(timeframes)
            except Exception as e:
                logger.error(f"{label} pipeline cycle failed: {e}", exc_info=True,
                             extra={'component': 'PipelineService'})
            await asyncio.sleep(interval_seconds)

    async def refresh_regime(self) -> RegimeAnalysis:
        """Regime of the benchmark; NEUTRAL when its candles are unavailable"""
        benchmark = self.config.pipeline.regime_benchmark
        if not benchmark:
            return NEUTRAL_REGIME
        try:
            candles = await self.data_provider.get_candles(benchmark, REGIME_TIMEFRAME, REGIME_LOOKBACK)
        except MarketDataUnavailable as e:
            logger.warning(f"Regime benchmark unavailable, using NEUTRAL: {e}",
                           extra={'component': 'PipelineService', 'symbol': benchmark})
            return NEUTRAL_REGIME
        regime = classify_market_regime(candles)
        logger.info(f"Market regime: {regime.regime.value} ({regime.description})",
                    extra={'component': 'PipelineService', 'symbol': benchmark})
        return regime

    def _universe(self, db: Session, timeframes: List[str], watchlists: Dict[int, List[str]]) -> List[str]:
        """Configured symbols, then pushed, watchlist and rule symbols, de-duplicated in order"""
        universe: Dict[str, None] = dict.fromkeys(self.config.pipeline.symbols)
        universe.update(dict.fromkeys(self.inbox.symbols()))
        for symbols in watchlists.values():
            universe.update(dict.fromkeys(s.upper() for s in symbols))
        for rule in get_enabled_rules(db, timeframes):
            if rule.symbol:
                universe.setdefault(rule.symbol.upper(), None)
        return list(universe)

    async def run_cycle(self, timeframes: List[str]) -> CycleReport:
        now_utc = self.clock.now_utc()
        regime = await self.refresh_regime()

        with self.session_factory() as db:
            watchlists = get_watchlist_symbols(db)
            universe = self._universe(db, timeframes, watchlists)

        logger.info(f"Cycle {timeframes}: {len(universe)} symbols",
                    extra={'component': 'PipelineService'})

        outcomes = await asyncio.gather(*(
            self._guarded(symbol, timeframes, now_utc, regime, watchlists, universe)
            for symbol in universe
        ))
        report = CycleReport(started_at=now_utc, timeframes=list(timeframes), regime=regime, outcomes=list(outcomes))

        logger.info(
            f"Cycle {timeframes} complete: {len(report.symbols)} symbols, {report.resolved} resolved, "
            f"{report.alerts} alerts, {len(report.failed)} failed, {len(report.timed_out)} timed out",
            extra={'component': 'PipelineService'}
        )
        return report

    async def _guarded(
        self,
        symbol: str,
        timeframes: List[str],
        now_utc: datetime,
        regime: RegimeAnalysis,
        watchlists: Dict[int, List[str]],
        universe: List[str],
    ) -> SymbolOutcome:
        async with self._semaphore:
            try:
                return await asyncio.wait_for(
                    self.process_symbol(symbol, timeframes, now_utc, regime, watchlists, universe),
                    timeout=self.config.pipeline.symbol_timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                logger.warning(f"Symbol {symbol} timed out; retrying next cycle",
                               extra={'component': 'PipelineService', 'symbol': symbol})
                await self._record_failure(symbol, e)
                return SymbolOutcome(symbol=symbol, timed_out=True)
            except Exception as e:
                await self._record_failure(symbol, e)
                return SymbolOutcome(symbol=symbol, failed=True)

    async def _record_failure(self, symbol: str, error: Exception) -> None:
        try:
            with self.session_factory() as db:
                await ErrorHandler(db, self.notification_service).handle_runtime_error(
                    "PipelineService", error, symbol=symbol
                )
        except Exception as e:
            logger.error(f"Failed to record error for {symbol}: {e}",
                         extra={'component': 'PipelineService', 'symbol': symbol})

    async def _load_candles(
        self,
        symbol: str,
        timeframes: List[str],
        error_handler: ErrorHandler,
    ) -> Dict[str, pd.DataFrame]:
        lookback = timedelta(days=self.config.pipeline.candle_lookback_days)
        candles: Dict[str, pd.DataFrame] = {}
        for timeframe in timeframes:
            try:
                candles[timeframe] = await self.data_provider.get_candles(symbol, timeframe, lookback)
            except MarketDataUnavailable as e:
                await error_handler.handle_data_error(symbol, e)
        return candles

    async def _collect_signals(
        self,
        symbol: str,
        timeframes: List[str],
        candles: Dict[str, pd.DataFrame],
        error_handler: ErrorHandler,
    ) -> List[StrategySignal]:
        """Signals from in-process sources plus pushed signals waiting in the inbox"""
        raw = []
        for source in self.sources:
            for timeframe in source.timeframes:
                if timeframe not in timeframes or timeframe not in candles:
                    continue
                try:
                    detected = await source.detect(symbol, timeframe, candles[timeframe])
                except Exception as e:
                    await error_handler.handle_runtime_error(f"SignalSource:{source.strategy_id}", e, symbol=symbol)
                    continue
                if detected is not None:
                    raw.append(detected)

        signals = normalize_batch(raw)
        pushed = await self.inbox.drain(symbol, timeframes)
        for timeframe_signals in pushed.values():
            signals.extend(timeframe_signals)

        return [s for s in signals if s.symbol == symbol and s.timeframe in timeframes]

    async def process_symbol(
        self,
        symbol: str,
        timeframes: List[str],
        now_utc: datetime,
        regime: RegimeAnalysis,
        watchlists: Dict[int, List[str]],
        universe: List[str],
    ) -> SymbolOutcome:
        """
        Run aggregate -> track -> evaluate -> dispatch for one symbol.

        Steps run strictly in sequence on the symbol's own session.
        """
        outcome = SymbolOutcome(symbol=symbol)

        with self.session_factory() as db:
            error_handler = ErrorHandler(db, self.notification_service)

            candles = await self._load_candles(symbol, timeframes, error_handler)
            signals = await self._collect_signals(symbol, timeframes, candles, error_handler)
            outcome.signals = len(signals)

            # Aggregate
            results = self.aggregator.aggregate(signals, regime)
            for result in results:
                if self.aggregator.apply(db, result, now_utc) is not None:
                    outcome.opportunities += 1

            # Track
            price: Optional[float] = None
            try:
                price, _ = await self.data_provider.get_latest_price(symbol)
            except MarketDataUnavailable as e:
                await error_handler.handle_data_error(symbol, e)

            if price is not None:
                state_machine = OpportunityStateMachine(db, self.config.lifecycle, self.clock)
                _, resolved = state_machine.refresh_symbol(symbol, price, now_utc, timeframes=timeframes)
                outcome.resolved = len(resolved)

            # Evaluate
            by_timeframe: Dict[str, List[StrategySignal]] = defaultdict(list)
            for signal in signals:
                by_timeframe[signal.timeframe].append(signal)

            levels: Dict[str, ReferenceLevels] = {}
            for result in results:
                levels[result.timeframe] = ReferenceLevels(result.resistance_price, result.stop_reference_price)
            # Tracked opportunities take precedence over this cycle's signals
            for opportunity in get_active_opportunities(db, symbol, timeframes):
                levels[opportunity.timeframe] = ReferenceLevels(
                    opportunity.resistance_price, opportunity.stop_reference_price
                )

            ctx = SymbolContext(
                symbol=symbol,
                now_utc=now_utc,
                price=price,
                signals=dict(by_timeframe),
                confluence={r.timeframe: r for r in results},
                levels=levels,
                candles=candles,
                regime=regime,
            )
            evaluator = RuleEvaluator(db, self.config.alerts, self.aggregator, error_handler)
            fired = await evaluator.evaluate_symbol(ctx, get_enabled_rules(db, timeframes), watchlists, universe)
            outcome.alerts = len(fired)

            # Dispatch
            executions = await self.coordinator.dispatch_all(db, fired, error_handler)
            outcome.executions = len(executions)

        return outcome
