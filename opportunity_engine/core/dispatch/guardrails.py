"""
Automation profile resolution and guardrails.

Before a fired alert is forwarded, the rule's automation profile (or the
user's first enabled profile) decides whether it is sent, skipped or
blocked. Every decision is recorded as an AutomationDecision.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from opportunity_engine.config.timezone import MarketClock
from opportunity_engine.db.models.alert_rule import AlertRule
from opportunity_engine.db.models.automation import AutomationAction, AutomationMode, AutomationProfile
from opportunity_engine.db.queries import (
    count_sent_decisions,
    get_automation_profile,
    get_enabled_profiles,
    get_last_sent_decision,
)

logger = logging.getLogger(__name__)


def _parse_hhmm(value: str) -> time:
    hour, _, minute = str(value).partition(":")
    return time(int(hour or 0), int(minute or 0))


@dataclass
class Guardrails:
    """Limits a profile applies before forwarding"""
    min_score: Optional[float] = None
    allowed_strategies: List[str] = field(default_factory=list)
    allowed_symbols: List[str] = field(default_factory=list)
    allowed_watchlists: List[int] = field(default_factory=list)
    time_window: Optional[Tuple[time, time]] = None
    max_per_day: Optional[int] = None
    cooldown_minutes: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Guardrails":
        data = data or {}
        window = data.get("allowed_time_window") or {}
        time_window = None
        if window.get("start") and window.get("end"):
            time_window = (_parse_hhmm(window["start"]), _parse_hhmm(window["end"]))
        return cls(
            min_score=data.get("min_score"),
            allowed_strategies=[s.upper() for s in data.get("allowed_strategies") or []],
            allowed_symbols=[s.upper() for s in data.get("allowed_symbols") or []],
            allowed_watchlists=[int(w) for w in data.get("allowed_watchlists") or []],
            time_window=time_window,
            max_per_day=data.get("max_per_day"),
            cooldown_minutes=data.get("cooldown_minutes"),
        )


def within_time_window(window: Optional[Tuple[time, time]], local_time: time) -> bool:
    """Inclusive window check; a start after the end wraps past midnight"""
    if window is None:
        return True
    start, end = window
    if start <= end:
        return start <= local_time <= end
    return local_time >= start or local_time <= end


@dataclass
class AlertContext:
    """What a profile needs to know about a fired alert"""
    user_id: str
    symbol: str
    strategy_id: Optional[str]
    watchlist_id: Optional[int] = None
    score: Optional[float] = None


@dataclass
class ProfileDecision:
    action: AutomationAction
    reason: str
    profile: Optional[AutomationProfile] = None


def resolve_profile(db: Session, rule: AlertRule, user_id: str) -> Optional[AutomationProfile]:
    """
    Profile that governs a rule's alerts.

    The rule's own profile wins when it belongs to the alert's user and is
    enabled; otherwise the user's oldest enabled profile applies.
    """
    if rule.automation_profile_id is not None:
        profile = get_automation_profile(db, rule.automation_profile_id)
        if profile is not None and profile.user_id == user_id and profile.is_enabled:
            return profile
    profiles = get_enabled_profiles(db, user_id)
    return profiles[0] if profiles else None


def check_guardrails(
    db: Session,
    profile: AutomationProfile,
    context: AlertContext,
    now_utc: datetime,
    clock: MarketClock,
) -> Optional[str]:
    """
    Returns:
        Why the alert is blocked, or None when every guardrail passes
    """
    guardrails = Guardrails.from_dict(profile.guardrails)

    if guardrails.min_score is not None and context.score is not None:
        if context.score < guardrails.min_score:
            return f"Score {context.score:g} below minimum {guardrails.min_score:g}"

    if guardrails.allowed_strategies:
        if (context.strategy_id or "").upper() not in guardrails.allowed_strategies:
            return f"Strategy {context.strategy_id} not in allowed list"

    if guardrails.allowed_symbols and context.symbol.upper() not in guardrails.allowed_symbols:
        return f"Symbol {context.symbol} not in allowed list"

    if guardrails.allowed_watchlists and context.watchlist_id is not None:
        if context.watchlist_id not in guardrails.allowed_watchlists:
            return "Watchlist not in allowed list"

    local_now = clock.utc_to_local(now_utc)
    if not within_time_window(guardrails.time_window, local_now.time().replace(second=0, microsecond=0)):
        start, end = guardrails.time_window
        return f"Outside allowed time window ({start:%H:%M}-{end:%H:%M})"

    if guardrails.max_per_day is not None:
        local_midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        sent_today = count_sent_decisions(db, profile.id, clock.local_to_naive_utc(local_midnight))
        if sent_today >= guardrails.max_per_day:
            return f"Daily limit reached ({sent_today}/{guardrails.max_per_day})"

    if guardrails.cooldown_minutes is not None:
        last = get_last_sent_decision(db, profile.id, context.symbol)
        cooldown = timedelta(minutes=guardrails.cooldown_minutes)
        if last is not None and now_utc - last.created_at < cooldown:
            remaining = cooldown - (now_utc - last.created_at)
            minutes = -(-int(remaining.total_seconds()) // 60)
            return f"Symbol {context.symbol} in cooldown ({minutes}min remaining)"

    return None


def decide(
    db: Session,
    profile: Optional[AutomationProfile],
    context: AlertContext,
    now_utc: datetime,
    clock: MarketClock,
) -> ProfileDecision:
    """Whether a fired alert governed by a profile is sent, skipped or blocked"""
    if profile is None:
        return ProfileDecision(AutomationAction.SKIP, "No automation profile configured or enabled")
    if profile.mode == AutomationMode.OFF:
        return ProfileDecision(AutomationAction.SKIP, "Profile is disabled (mode: OFF)", profile)

    blocked = check_guardrails(db, profile, context, now_utc, clock)
    if blocked is not None:
        logger.info(
            f"Profile {profile.id} blocked {context.symbol}: {blocked}",
            extra={'component': 'Guardrails', 'symbol': context.symbol}
        )
        return ProfileDecision(AutomationAction.BLOCKED, blocked, profile)

    if profile.mode == AutomationMode.NOTIFY_ONLY:
        return ProfileDecision(AutomationAction.SKIP, "Profile is in notify-only mode", profile)
    return ProfileDecision(AutomationAction.SEND, "Auto-send enabled", profile)
