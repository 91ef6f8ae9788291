"""Database query utilities"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from opportunity_engine.core.errors import DuplicateOpportunityError
from opportunity_engine.db.models.opportunity import (
    Opportunity,
    OpportunityExcursion,
    OpportunityStatus,
)
from opportunity_engine.db.models.alert_rule import AlertRule, AlertRuleState, Watchlist
from opportunity_engine.db.models.alert_event import AlertEvent
from opportunity_engine.db.models.automation import (
    AutomationAction,
    AutomationDecision,
    AutomationEndpoint,
    AutomationProfile,
    ExecutionRequest,
)
from opportunity_engine.db.models.error_log import ErrorLog


def find_active_opportunity(
    db: Session,
    symbol: str,
    timeframe: str,
    strategy_ids: Iterable[str],
) -> Optional[Opportunity]:
    """Find the ACTIVE opportunity for a symbol/timeframe opened by any of the given strategies"""
    strategy_ids = list(strategy_ids)
    if not strategy_ids:
        return None
    return (
        db.query(Opportunity)
        .filter(
            Opportunity.symbol == symbol,
            Opportunity.timeframe == timeframe,
            Opportunity.strategy_id.in_(strategy_ids),
            Opportunity.status == OpportunityStatus.ACTIVE,
        )
        .order_by(Opportunity.detected_at.desc())
        .first()
    )


def get_active_by_dedupe_key(db: Session, dedupe_key: str) -> Optional[Opportunity]:
    """Get the ACTIVE opportunity holding a dedupe key"""
    return (
        db.query(Opportunity)
        .filter(
            Opportunity.dedupe_key == dedupe_key,
            Opportunity.status == OpportunityStatus.ACTIVE,
        )
        .first()
    )


def find_opportunity_by_dedupe_key(db: Session, dedupe_key: str) -> Optional[Opportunity]:
    """Get the most recent opportunity holding a dedupe key, whatever its status"""
    return (
        db.query(Opportunity)
        .filter(Opportunity.dedupe_key == dedupe_key)
        .order_by(Opportunity.detected_at.desc(), Opportunity.id.desc())
        .first()
    )


def insert_opportunity(db: Session, opportunity: Opportunity) -> Opportunity:
    """
    Insert a new ACTIVE opportunity.

    Raises:
        DuplicateOpportunityError: another ACTIVE row already holds the dedupe key.
            The session is rolled back before raising.
    """
    db.add(opportunity)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DuplicateOpportunityError(opportunity.dedupe_key) from e
    db.refresh(opportunity)
    return opportunity


def get_active_opportunities(
    db: Session,
    symbol: Optional[str] = None,
    timeframes: Optional[Iterable[str]] = None,
) -> List[Opportunity]:
    """Get all ACTIVE opportunities, optionally filtered by symbol and timeframes"""
    query = db.query(Opportunity).filter(Opportunity.status == OpportunityStatus.ACTIVE)
    if symbol:
        query = query.filter(Opportunity.symbol == symbol)
    if timeframes is not None:
        query = query.filter(Opportunity.timeframe.in_(list(timeframes)))
    return query.order_by(Opportunity.detected_at).all()


def get_or_create_excursion(db: Session, opportunity: Opportunity) -> OpportunityExcursion:
    """Get the excursion tracker of an opportunity, creating it on first use"""
    excursion = opportunity.excursion
    if excursion is None:
        excursion = OpportunityExcursion(opportunity_id=opportunity.id, bars_tracked=0)
        opportunity.excursion = excursion
        db.add(excursion)
    return excursion


def get_enabled_rules(db: Session, timeframes: Optional[Iterable[str]] = None) -> List[AlertRule]:
    """Get enabled alert rules, optionally restricted to timeframes"""
    query = db.query(AlertRule).filter(AlertRule.is_enabled.is_(True))
    if timeframes is not None:
        query = query.filter(AlertRule.timeframe.in_(list(timeframes)))
    return query.order_by(AlertRule.id).all()


def get_rule_state(db: Session, rule_id: int, symbol: str) -> Optional[AlertRuleState]:
    """Get the stored state of a rule for one symbol"""
    return (
        db.query(AlertRuleState)
        .filter(AlertRuleState.rule_id == rule_id, AlertRuleState.symbol == symbol)
        .first()
    )


def get_or_create_rule_state(db: Session, rule_id: int, symbol: str) -> AlertRuleState:
    """Get the stored state of a rule for one symbol, creating an empty one if missing"""
    state = get_rule_state(db, rule_id, symbol)
    if state is None:
        state = AlertRuleState(rule_id=rule_id, symbol=symbol)
        db.add(state)
    return state


def get_watchlist_symbols(db: Session) -> Dict[int, List[str]]:
    """Snapshot every watchlist as id -> upper-cased symbols"""
    return {
        watchlist.id: [s.upper() for s in (watchlist.symbols or [])]
        for watchlist in db.query(Watchlist).all()
    }


def alert_event_exists(db: Session, event_key: str) -> bool:
    """Whether an alert event with the idempotency key was already created"""
    return db.query(AlertEvent.id).filter(AlertEvent.event_key == event_key).first() is not None


def get_alert_events(
    db: Session,
    user_id: str,
    unread_only: bool = False,
    limit: int = 50,
) -> List[AlertEvent]:
    """In-app alert feed for a user, newest first"""
    query = db.query(AlertEvent).filter(AlertEvent.user_id == user_id)
    if unread_only:
        query = query.filter(AlertEvent.is_read.is_(False))
    return query.order_by(AlertEvent.created_at.desc(), AlertEvent.id.desc()).limit(limit).all()


def mark_alert_event_read(db: Session, event_id: int) -> AlertEvent:
    """Mark an alert event as read (the only mutable field)"""
    event = db.query(AlertEvent).filter(AlertEvent.id == event_id).first()
    if not event:
        raise ValueError(f"AlertEvent {event_id} not found")

    event.is_read = True
    db.commit()
    db.refresh(event)
    return event


def get_automation_endpoint(db: Session, endpoint_id: int) -> Optional[AutomationEndpoint]:
    """Get an automation endpoint by id"""
    return db.query(AutomationEndpoint).filter(AutomationEndpoint.id == endpoint_id).first()


def get_execution_request(db: Session, request_id: int) -> Optional[ExecutionRequest]:
    """Get an execution request by id"""
    return db.query(ExecutionRequest).filter(ExecutionRequest.id == request_id).first()


def get_automation_profile(db: Session, profile_id: int) -> Optional[AutomationProfile]:
    """Get an automation profile by id"""
    return db.query(AutomationProfile).filter(AutomationProfile.id == profile_id).first()


def get_enabled_profiles(db: Session, user_id: str) -> List[AutomationProfile]:
    """Enabled automation profiles of a user, oldest first"""
    return (
        db.query(AutomationProfile)
        .filter(AutomationProfile.user_id == user_id, AutomationProfile.is_enabled.is_(True))
        .order_by(AutomationProfile.id)
        .all()
    )


def count_sent_decisions(db: Session, profile_id: int, since: datetime) -> int:
    """Alerts a profile forwarded since a UTC timestamp"""
    return (
        db.query(AutomationDecision)
        .filter(
            AutomationDecision.profile_id == profile_id,
            AutomationDecision.action == AutomationAction.SEND,
            AutomationDecision.created_at >= since,
        )
        .count()
    )


def get_last_sent_decision(db: Session, profile_id: int, symbol: str) -> Optional[AutomationDecision]:
    """Most recent forward of a symbol through a profile"""
    return (
        db.query(AutomationDecision)
        .filter(
            AutomationDecision.profile_id == profile_id,
            AutomationDecision.symbol == symbol,
            AutomationDecision.action == AutomationAction.SEND,
        )
        .order_by(AutomationDecision.created_at.desc(), AutomationDecision.id.desc())
        .first()
    )


def create_error_log(
    db: Session,
    timestamp_utc: datetime,
    component: str,
    severity: str,
    message: str,
    exception_type: Optional[str] = None,
    symbol: Optional[str] = None,
    rule_id: Optional[int] = None,
    execution_request_id: Optional[int] = None,
    stack_trace: Optional[str] = None,
) -> ErrorLog:
    """Create an error log record"""
    error_log = ErrorLog(
        timestamp_utc=timestamp_utc,
        component=component,
        severity=severity,
        message=message,
        exception_type=exception_type,
        symbol=symbol,
        rule_id=rule_id,
        execution_request_id=execution_request_id,
        stack_trace=stack_trace,
    )
    db.add(error_log)
    db.commit()
    db.refresh(error_log)
    return error_log
