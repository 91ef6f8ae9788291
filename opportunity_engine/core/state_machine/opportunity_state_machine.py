"""Opportunity lifecycle state machine"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy.orm import Session

from opportunity_engine.config.settings import LifecycleConfig
from opportunity_engine.config.timezone import MarketClock
from opportunity_engine.db.models.opportunity import (
    Direction,
    Opportunity,
    OpportunityExcursion,
    OpportunityStatus,
    ResolutionOutcome,
)
from opportunity_engine.db.queries import get_active_opportunities, get_or_create_excursion

logger = logging.getLogger(__name__)


@dataclass
class ResolutionAction:
    """Resolution to apply to an ACTIVE opportunity"""
    outcome: ResolutionOutcome
    resolution_price: float
    reason: str


def signed_move_percent(direction: Direction, reference: float, price: float) -> float:
    """Move from reference to price in percent, positive when favorable to direction"""
    move = (price - reference) / reference * 100
    return -move if direction == Direction.SHORT else move


class OpportunityStateMachine:
    """
    Drives opportunities from ACTIVE to RESOLVED.

    State transition rules (checked in this order on every refresh):
    - ACTIVE -> RESOLVED/INVALIDATED: price reaches the stop reference
    - ACTIVE -> RESOLVED/BROKE_RESISTANCE: price reaches resistance
    - ACTIVE -> RESOLVED/EXPIRED: validity window elapsed

    The stop is checked first so a refresh straddling both levels resolves
    to INVALIDATED. RESOLVED is terminal.
    """

    def __init__(self, db: Session, config: LifecycleConfig, clock: MarketClock):
        """
        Initialize state machine.

        Args:
            db: Database session
            config: Lifecycle configuration (validity windows, buffer)
            clock: Market clock for session and trading-day arithmetic
        """
        self.db = db
        self.config = config
        self.clock = clock

    def expires_at(self, opportunity: Opportunity) -> datetime:
        """
        End of the opportunity's validity window (naive UTC).

        Intraday timeframes expire at the close of the detection session;
        other timeframes after a number of trading days.
        """
        if opportunity.timeframe in self.config.intraday_timeframes:
            return self.clock.session_close_utc(opportunity.detected_at)
        days = self.config.validity_days.get(opportunity.timeframe, self.config.default_validity_days)
        return self.clock.add_trading_days(opportunity.detected_at, days)

    def _breakout_level(self, opportunity: Opportunity) -> float:
        buffer = self.config.breakout_buffer_pct / 100
        if opportunity.direction == Direction.SHORT:
            return opportunity.resistance_price * (1 - buffer)
        return opportunity.resistance_price * (1 + buffer)

    def check(
        self,
        opportunity: Opportunity,
        current_price: float,
        now_utc: datetime
    ) -> Optional[ResolutionAction]:
        """
        Decide whether an opportunity resolves at the current price.

        Returns:
            ResolutionAction if the opportunity resolves, None otherwise
        """
        if opportunity.status != OpportunityStatus.ACTIVE:
            return None

        is_short = opportunity.direction == Direction.SHORT
        stop = opportunity.stop_reference_price
        resistance = opportunity.resistance_price

        # Stop first: INVALIDATED wins a tie
        if stop is not None:
            stop_hit = current_price >= stop if is_short else current_price <= stop
            if stop_hit:
                return ResolutionAction(
                    outcome=ResolutionOutcome.INVALIDATED,
                    resolution_price=current_price,
                    reason=f"Price {current_price:.2f} breached stop reference {stop:.2f}",
                )

        if resistance is not None:
            level = self._breakout_level(opportunity)
            broke = current_price <= level if is_short else current_price >= level
            if broke:
                return ResolutionAction(
                    outcome=ResolutionOutcome.BROKE_RESISTANCE,
                    resolution_price=current_price,
                    reason=f"Price {current_price:.2f} broke through {resistance:.2f}",
                )

        if now_utc >= self.expires_at(opportunity):
            return ResolutionAction(
                outcome=ResolutionOutcome.EXPIRED,
                resolution_price=current_price,
                reason=f"Validity window for {opportunity.timeframe} elapsed without resolution",
            )

        return None

    def apply_action(
        self,
        opportunity: Opportunity,
        action: ResolutionAction,
        now_utc: datetime
    ) -> Opportunity:
        """
        Resolve the opportunity in the database.

        Applying an action to an already resolved opportunity is a no-op.
        """
        if opportunity.status == OpportunityStatus.RESOLVED:
            return opportunity

        resolved_at = max(now_utc, opportunity.detected_at)
        pnl = signed_move_percent(opportunity.direction, opportunity.detected_price, action.resolution_price)

        opportunity.status = OpportunityStatus.RESOLVED
        opportunity.resolution_outcome = action.outcome
        opportunity.resolution_reason = action.reason
        opportunity.resolved_at = resolved_at
        opportunity.resolution_price = action.resolution_price
        opportunity.pnl_percent = round(pnl, 4)
        opportunity.days_to_resolution = (resolved_at.date() - opportunity.detected_at.date()).days
        opportunity.active_duration_minutes = int((resolved_at - opportunity.detected_at).total_seconds() // 60)
        self.db.commit()

        logger.info(
            f"Opportunity {opportunity.id} resolved: {action.outcome.value}, "
            f"price={action.resolution_price}, pnl={opportunity.pnl_percent}%",
            extra={'component': 'OpportunityStateMachine', 'symbol': opportunity.symbol}
        )
        return opportunity

    def track_excursion(
        self,
        opportunity: Opportunity,
        high: float,
        low: float,
        now_utc: datetime
    ) -> OpportunityExcursion:
        """Fold a refresh's high/low into the running favorable/adverse excursion"""
        excursion = get_or_create_excursion(self.db, opportunity)
        detected = opportunity.detected_price

        if excursion.max_price_after is None or high > excursion.max_price_after:
            excursion.max_price_after = high
        if excursion.min_price_after is None or low < excursion.min_price_after:
            excursion.min_price_after = low

        if opportunity.direction == Direction.SHORT:
            favorable = (detected - excursion.min_price_after) / detected * 100
            adverse = (excursion.max_price_after - detected) / detected * 100
        else:
            favorable = (excursion.max_price_after - detected) / detected * 100
            adverse = (detected - excursion.min_price_after) / detected * 100

        excursion.max_favorable_move_percent = round(favorable, 4)
        excursion.max_adverse_move_percent = round(adverse, 4)
        excursion.bars_tracked = (excursion.bars_tracked or 0) + 1
        excursion.updated_at = now_utc
        return excursion

    def refresh_symbol(
        self,
        symbol: str,
        current_price: float,
        now_utc: datetime,
        high: Optional[float] = None,
        low: Optional[float] = None,
        timeframes: Optional[Iterable[str]] = None,
    ) -> Tuple[List[Opportunity], List[Opportunity]]:
        """
        Run one market-data refresh over a symbol's ACTIVE opportunities.

        With timeframes, only opportunities on those timeframes are touched;
        each pipeline loop tracks its own timeframes.

        Returns:
            (still active, resolved this refresh)
        """
        still_active: List[Opportunity] = []
        resolved: List[Opportunity] = []

        for opportunity in get_active_opportunities(self.db, symbol, timeframes):
            self.track_excursion(
                opportunity,
                high if high is not None else current_price,
                low if low is not None else current_price,
                now_utc,
            )
            action = self.check(opportunity, current_price, now_utc)
            if action is None:
                still_active.append(opportunity)
                continue
            resolved.append(self.apply_action(opportunity, action, now_utc))

        self.db.commit()
        return still_active, resolved
