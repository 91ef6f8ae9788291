"""
Confluence aggregator.

Groups a cycle's signals by symbol/timeframe, scores the agreement between
strategies and opens or progresses the matching ACTIVE opportunity.
"""
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from opportunity_engine.config.settings import AggregatorConfig
from opportunity_engine.config.timezone import MarketClock
from opportunity_engine.core.confluence.regime import NEUTRAL_REGIME, RegimeAnalysis, get_regime_adjustment
from opportunity_engine.core.domain.signal import StrategySignal, stage_priority
from opportunity_engine.core.domain.symbol_context import ConfluenceResult
from opportunity_engine.core.errors import DuplicateOpportunityError
from opportunity_engine.db.models.opportunity import Direction, Opportunity, OpportunityStatus
from opportunity_engine.db.queries import (
    find_active_opportunity,
    find_opportunity_by_dedupe_key,
    get_active_by_dedupe_key,
    insert_opportunity,
)

logger = logging.getLogger(__name__)

STRATEGY_DISPLAY_NAMES = {
    "VCP": "Momentum Breakout",
    "VCP_MULTIDAY": "Power Breakout",
    "CLASSIC_PULLBACK": "Classic Pullback",
    "VWAP_RECLAIM": "VWAP Reclaim",
    "ORB5": "Open Drive 5m",
    "ORB15": "Open Drive 15m",
    "HIGH_RVOL": "High RVOL",
    "GAP_AND_GO": "Gap & Go",
    "TREND_CONTINUATION": "Trend Continuation",
    "VOLATILITY_SQUEEZE": "Volatility Squeeze",
}


def _signal_rank(signal: StrategySignal) -> Tuple[int, float]:
    return stage_priority(signal.stage), signal.score


def select_primary(signals: Sequence[StrategySignal]) -> StrategySignal:
    """Highest stage, then highest score, then lowest strategy id"""
    return sorted(signals, key=lambda s: (-stage_priority(s.stage), -s.score, s.strategy_id))[0]


class ConfluenceAggregator:
    """
    Merges per-strategy signals into confluence results and opportunities.

    Scoring (bonus applied before the regime adjustment):
        base   = mean of the strategies' scores
        bonus  = (N - 1) * confluence_bonus_per_strategy
        regime = mean of the per-strategy regime adjustments
        score  = clamp(base + bonus + regime, 0, 100)
    """

    def __init__(
        self,
        config: AggregatorConfig,
        clock: MarketClock,
        intraday_timeframes: Iterable[str],
    ):
        self.config = config
        self.clock = clock
        self.intraday_timeframes = set(intraday_timeframes)

    def aggregate(
        self,
        signals: Iterable[StrategySignal],
        regime: RegimeAnalysis = NEUTRAL_REGIME,
    ) -> List[ConfluenceResult]:
        """Group signals by (symbol, timeframe) and score each group"""
        groups: Dict[Tuple[str, str], Dict[str, StrategySignal]] = defaultdict(dict)
        for signal in signals:
            per_strategy = groups[(signal.symbol, signal.timeframe)]
            current = per_strategy.get(signal.strategy_id)
            # One signal per strategy: the highest-priority one wins
            if current is None or _signal_rank(signal) > _signal_rank(current):
                per_strategy[signal.strategy_id] = signal

        results = []
        for (symbol, timeframe), per_strategy in groups.items():
            results.append(self._score_group(symbol, timeframe, list(per_strategy.values()), regime))
        return results

    def _score_group(
        self,
        symbol: str,
        timeframe: str,
        signals: List[StrategySignal],
        regime: RegimeAnalysis,
    ) -> ConfluenceResult:
        signals = sorted(signals, key=lambda s: s.strategy_id)
        count = len(signals)
        base = sum(s.score for s in signals) / count
        bonus = (count - 1) * self.config.confluence_bonus_per_strategy
        adjustment = sum(get_regime_adjustment(regime.regime, s.strategy_id) for s in signals) / count
        score = max(0.0, min(100.0, base + bonus + adjustment))

        primary = select_primary(signals)
        resistance, stop = self._levels(primary, signals)

        return ConfluenceResult(
            symbol=symbol,
            timeframe=timeframe,
            signals=signals,
            stage=primary.stage,
            primary=primary,
            base_score=base,
            confluence_bonus=bonus,
            regime_adjustment=adjustment,
            score=score,
            resistance_price=resistance,
            stop_reference_price=stop,
        )

    @staticmethod
    def _levels(
        primary: StrategySignal,
        signals: Sequence[StrategySignal],
    ) -> Tuple[Optional[float], Optional[float]]:
        """Primary's levels, falling back to the next best-ranked signal that has one"""
        ranked = [primary] + [s for s in sorted(signals, key=_signal_rank, reverse=True) if s is not primary]
        resistance = next((s.resistance_price for s in ranked if s.resistance_price is not None), None)
        stop = next((s.stop_reference_price for s in ranked if s.stop_reference_price is not None), None)
        return resistance, stop

    def should_open(self, result: ConfluenceResult) -> bool:
        """Opening threshold on score and aggregated stage"""
        return (
            result.score >= self.config.opening_min_score
            and stage_priority(result.stage) >= stage_priority(self.config.opening_min_stage)
        )

    def direction_for(self, strategy_id: str) -> Direction:
        return Direction.SHORT if strategy_id.upper() in self.config.short_strategies else Direction.LONG

    def detection_window(self, timeframe: str, detected_at: datetime) -> str:
        """Trading date for daily+ timeframes, date plus hour bucket for intraday"""
        trading_date = self.clock.trading_date(detected_at)
        if timeframe in self.intraday_timeframes:
            return f"{trading_date}T{self.clock.utc_to_local(detected_at).hour:02d}"
        return trading_date

    def build_dedupe_key(self, symbol: str, strategy_id: str, timeframe: str, detected_at: datetime) -> str:
        return f"{symbol}:{strategy_id}:{timeframe}:{self.detection_window(timeframe, detected_at)}"

    def apply(self, db: Session, result: ConfluenceResult, now_utc: datetime) -> Optional[Opportunity]:
        """
        Open a new opportunity or progress the existing ACTIVE one.

        Returns:
            The opened or updated opportunity, or None when the group does
            not qualify and nothing is active for it, or when the current
            detection window's opportunity already resolved or expired
        """
        existing = find_active_opportunity(db, result.symbol, result.timeframe, result.strategy_ids)
        if existing is not None:
            return self._progress(db, existing, result)

        if not self.should_open(result):
            return None

        opportunity = self._build(result, now_utc)
        held = find_opportunity_by_dedupe_key(db, opportunity.dedupe_key)
        if held is not None and held.status != OpportunityStatus.ACTIVE:
            # Resolved or expired inside its own detection window: not re-opened
            logger.debug(
                f"Opportunity {opportunity.dedupe_key} already {held.status.value}, not re-opening",
                extra={'component': 'ConfluenceAggregator', 'symbol': result.symbol}
            )
            return None

        try:
            opportunity = insert_opportunity(db, opportunity)
        except DuplicateOpportunityError as e:
            existing = get_active_by_dedupe_key(db, e.dedupe_key)
            if existing is None:
                raise
            logger.info(
                f"Opportunity {e.dedupe_key} opened concurrently, updating instead",
                extra={'component': 'ConfluenceAggregator', 'symbol': result.symbol}
            )
            return self._progress(db, existing, result)

        logger.info(
            f"Opened opportunity {opportunity.dedupe_key} at stage {opportunity.stage_at_detection} "
            f"(score {result.score:.1f}, {result.confluence_count} strategies)",
            extra={'component': 'ConfluenceAggregator', 'symbol': result.symbol}
        )
        return opportunity

    def _build(self, result: ConfluenceResult, now_utc: datetime) -> Opportunity:
        primary = result.primary
        return Opportunity(
            symbol=result.symbol,
            strategy_id=primary.strategy_id,
            strategy_name=primary.strategy_name or STRATEGY_DISPLAY_NAMES.get(primary.strategy_id, primary.strategy_id),
            timeframe=result.timeframe,
            direction=self.direction_for(primary.strategy_id),
            stage_at_detection=result.stage.value,
            current_stage=result.stage.value,
            detected_at=now_utc,
            detected_price=primary.detected_price,
            resistance_price=result.resistance_price,
            stop_reference_price=result.stop_reference_price,
            entry_trigger_price=None,
            score=result.score,
            confluence_count=result.confluence_count,
            status=OpportunityStatus.ACTIVE,
            dedupe_key=self.build_dedupe_key(result.symbol, primary.strategy_id, result.timeframe, now_utc),
            updated_at=now_utc,
        )

    def _progress(self, db: Session, opportunity: Opportunity, result: ConfluenceResult) -> Opportunity:
        """Forward-only stage update; score and confluence count always refresh"""
        changed = False

        if stage_priority(result.stage) > stage_priority(opportunity.current_stage):
            logger.info(
                f"Opportunity {opportunity.id} progressed {opportunity.current_stage} -> {result.stage.value}",
                extra={'component': 'ConfluenceAggregator', 'symbol': opportunity.symbol}
            )
            opportunity.current_stage = result.stage.value
            opportunity.entry_trigger_price = result.primary.detected_price
            if result.resistance_price is not None:
                opportunity.resistance_price = result.resistance_price
            if result.stop_reference_price is not None:
                opportunity.stop_reference_price = result.stop_reference_price
            changed = True

        if opportunity.score != result.score:
            opportunity.score = result.score
            changed = True
        if opportunity.confluence_count != result.confluence_count:
            opportunity.confluence_count = result.confluence_count
            changed = True

        if changed:
            db.commit()
        return opportunity


def rank_by_confluence(results: Iterable[ConfluenceResult]) -> List[ConfluenceResult]:
    """Most agreeing strategies first, then highest score"""
    return sorted(results, key=lambda r: (r.confluence_count, r.score), reverse=True)


def filter_by_min_matches(results: Iterable[ConfluenceResult], min_matches: int) -> List[ConfluenceResult]:
    """Keep results where at least min_matches strategies agree"""
    return [r for r in results if r.confluence_count >= min_matches]
