"""Alert rule evaluator"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from opportunity_engine.config.settings import AlertConfig
from opportunity_engine.core.alerts.conditions import (
    EXIT_CONDITIONS,
    Observation,
    Transition,
    alert_message,
    detect_transition,
    observe,
    price_levels,
)
from opportunity_engine.core.confluence.aggregator import ConfluenceAggregator
from opportunity_engine.core.domain.rule_state import RuleStateSnapshot
from opportunity_engine.core.domain.symbol_context import SymbolContext
from opportunity_engine.core.errors import RuleEvaluationError
from opportunity_engine.db.models.alert_event import AlertEvent
from opportunity_engine.db.models.alert_rule import AlertRule, OwnerScope
from opportunity_engine.db.models.opportunity import Direction
from opportunity_engine.db.queries import alert_event_exists, get_or_create_rule_state
from opportunity_engine.db.session import commit_or_rollback

logger = logging.getLogger(__name__)


@dataclass
class FiredAlert:
    """An alert event created this cycle, with what dispatch needs to deliver it"""
    rule: AlertRule
    event: AlertEvent
    is_exit: bool
    score: Optional[float] = None


def rule_applies_to(
    rule: AlertRule,
    symbol: str,
    watchlists: Dict[int, List[str]],
    universe: Iterable[str],
) -> bool:
    """
    Whether a symbol is in the rule's universe.

    Explicit symbol first, then watchlist expansion, then every cycle
    symbol for global rules.
    """
    if rule.symbol:
        return rule.symbol.upper() == symbol
    if rule.watchlist_id is not None:
        return symbol in watchlists.get(rule.watchlist_id, [])
    if rule.owner_scope == OwnerScope.GLOBAL:
        return symbol in set(universe)
    return False


class RuleEvaluator:
    """
    Evaluates enabled alert rules for one symbol per call.

    State for each (rule, symbol) pair lives in its own AlertRuleState row,
    and the state write and the event write are committed together.
    """

    def __init__(
        self,
        db: Session,
        config: AlertConfig,
        aggregator: ConfluenceAggregator,
        error_handler=None,
    ):
        """
        Initialize evaluator.

        Args:
            db: Database session of the symbol being processed
            config: Alert configuration (cooldown, proximity, EMA period)
            aggregator: Used to re-score signal groups restricted to a rule's strategies
            error_handler: Records rule failures (ErrorHandler)
        """
        self.db = db
        self.config = config
        self.aggregator = aggregator
        self.error_handler = error_handler

    def cooldown_for(self, rule: AlertRule) -> timedelta:
        minutes = rule.cooldown_minutes if rule.cooldown_minutes is not None else self.config.default_cooldown_minutes
        return timedelta(minutes=minutes)

    @staticmethod
    def event_key(rule_id: int, symbol: str, transition_at: datetime) -> str:
        return f"{rule_id}:{symbol}:{transition_at.strftime('%Y-%m-%dT%H:%M:%S')}"

    async def evaluate_symbol(
        self,
        ctx: SymbolContext,
        rules: Iterable[AlertRule],
        watchlists: Dict[int, List[str]],
        universe: Iterable[str],
    ) -> List[FiredAlert]:
        """
        Evaluate every applicable rule for the symbol.

        A failing rule is recorded and skipped; the remaining rules still run.
        """
        universe = list(universe)
        fired: List[FiredAlert] = []

        for rule in rules:
            if not rule.is_enabled or not rule_applies_to(rule, ctx.symbol, watchlists, universe):
                continue
            try:
                result = self.evaluate_rule(rule, ctx)
            except Exception as e:
                self.db.rollback()
                error = e if isinstance(e, RuleEvaluationError) else RuleEvaluationError(rule.id, str(e))
                if self.error_handler:
                    await self.error_handler.handle_rule_error(rule.id, error, symbol=ctx.symbol)
                else:
                    logger.error(
                        f"Rule evaluation failed: {error}",
                        extra={'component': 'RuleEvaluator', 'symbol': ctx.symbol, 'rule_id': rule.id}
                    )
                continue
            if result is not None:
                fired.append(result)

        return fired

    def evaluate_rule(self, rule: AlertRule, ctx: SymbolContext) -> Optional[FiredAlert]:
        """
        Evaluate one rule for one symbol as a single unit of work.

        Returns:
            FiredAlert when an event was created, None otherwise
        """
        now = ctx.now_utc
        observation = observe(rule, ctx, self.config, self.aggregator)
        if observation is None:
            logger.debug(
                f"Rule {rule.id} not evaluable for {ctx.symbol} this cycle",
                extra={'component': 'RuleEvaluator', 'symbol': ctx.symbol, 'rule_id': rule.id}
            )
            return None

        state = get_or_create_rule_state(self.db, rule.id, ctx.symbol)
        previous = RuleStateSnapshot.from_dict(state.snapshot)
        transition = detect_transition(rule, previous, observation)

        # The snapshot always advances, suppressed or not
        state.snapshot = observation.snapshot.to_dict()
        state.last_evaluated_at = now
        rule.last_evaluated_at = now

        event = None
        if transition is not None:
            if state.last_triggered_at is not None and now - state.last_triggered_at < self.cooldown_for(rule):
                logger.info(
                    f"Rule {rule.id} suppressed for {ctx.symbol}: within cooldown",
                    extra={'component': 'RuleEvaluator', 'symbol': ctx.symbol, 'rule_id': rule.id}
                )
            else:
                key = self.event_key(rule.id, ctx.symbol, now)
                if alert_event_exists(self.db, key):
                    logger.info(
                        f"Transition {key} already fired",
                        extra={'component': 'RuleEvaluator', 'symbol': ctx.symbol, 'rule_id': rule.id}
                    )
                else:
                    event = self._build_event(rule, ctx, observation, transition, key)
                    self.db.add(event)
                    state.last_triggered_at = now

        if not commit_or_rollback(self.db):
            # Another writer already committed this transition
            logger.warning(
                f"Rule {rule.id} state for {ctx.symbol} was written concurrently; skipped",
                extra={'component': 'RuleEvaluator', 'symbol': ctx.symbol, 'rule_id': rule.id}
            )
            return None

        if event is None:
            return None

        logger.info(
            f"Alert fired: {event.message}",
            extra={'component': 'RuleEvaluator', 'symbol': ctx.symbol, 'rule_id': rule.id}
        )
        return FiredAlert(
            rule=rule,
            event=event,
            is_exit=rule.condition_type in EXIT_CONDITIONS,
            score=observation.snapshot.score,
        )

    def _build_event(
        self,
        rule: AlertRule,
        ctx: SymbolContext,
        observation: Observation,
        transition: Transition,
        event_key: str,
    ) -> AlertEvent:
        price = observation.snapshot.price or 0.0
        is_short = (
            observation.strategy_id is not None
            and self.aggregator.direction_for(observation.strategy_id) == Direction.SHORT
        )
        target, stop = price_levels(price, observation.resistance_price, observation.stop_reference_price, is_short)

        return AlertEvent(
            rule_id=rule.id,
            user_id=rule.user_id or self.config.system_user_id,
            symbol=ctx.symbol,
            type=rule.condition_type.value,
            event_key=event_key,
            from_state=transition.from_state,
            to_state=transition.to_state,
            timeframe=rule.timeframe,
            strategy_id=observation.strategy_id,
            price=price,
            target_price=target,
            stop_price=stop,
            message=alert_message(ctx.symbol, transition, price, rule.condition_type),
            is_read=False,
            created_at=ctx.now_utc,
        )
