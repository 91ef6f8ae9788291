"""Alert rule database models"""
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional
from sqlalchemy import (
    Boolean, Column, Integer, String, Float, DateTime, ForeignKey, JSON,
    UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from opportunity_engine.db.database import Base
from opportunity_engine.core.domain.rule_state import RuleStateSnapshot


class OwnerScope(str, Enum):
    """Who a rule belongs to"""
    USER = "user"
    GLOBAL = "global"


class RuleConditionType(str, Enum):
    """Condition an alert rule watches for"""
    STAGE_ENTERED = "STAGE_ENTERED"
    SCORE_THRESHOLD = "SCORE_THRESHOLD"
    CONFLUENCE_THRESHOLD = "CONFLUENCE_THRESHOLD"
    APPROACHING = "APPROACHING"
    STOP_HIT = "STOP_HIT"
    EMA_EXIT = "EMA_EXIT"


class AlertRule(Base):
    """
    User- or system-owned alert rule.

    Edge-trigger state is partitioned per symbol in AlertRuleState rows;
    last_state and triggered_symbols assemble it for the whole rule.
    """
    __tablename__ = "alert_rules"

    id = Column(Integer, primary_key=True, index=True)
    owner_scope = Column(SQLEnum(OwnerScope), nullable=False, default=OwnerScope.USER)
    user_id = Column(String, nullable=True, index=True)
    symbol = Column(String, nullable=True, index=True)
    watchlist_id = Column(Integer, ForeignKey("watchlists.id"), nullable=True)
    strategy = Column(String, nullable=True)
    strategies = Column(JSON, nullable=True)
    timeframe = Column(String, nullable=False, default="1d")
    condition_type = Column(SQLEnum(RuleConditionType), nullable=False)
    condition_payload = Column(JSON, nullable=True)
    min_strategies = Column(Integer, nullable=True)
    score_threshold = Column(Float, nullable=True)
    cooldown_minutes = Column(Integer, nullable=True)
    is_enabled = Column(Boolean, nullable=False, default=True, index=True)
    send_push_notification = Column(Boolean, nullable=False, default=True)
    send_webhook = Column(Boolean, nullable=False, default=False)
    automation_endpoint_id = Column(Integer, ForeignKey("automation_endpoints.id"), nullable=True)
    automation_profile_id = Column(Integer, ForeignKey("automation_profiles.id"), nullable=True)
    last_evaluated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationships
    states = relationship("AlertRuleState", back_populates="rule", cascade="all, delete-orphan")
    watchlist = relationship("Watchlist")
    automation_endpoint = relationship("AutomationEndpoint")
    automation_profile = relationship("AutomationProfile")

    @property
    def strategy_filter(self) -> List[str]:
        """Strategy ids the rule is restricted to (empty means any)"""
        if self.strategies:
            return [s.upper() for s in self.strategies]
        if self.strategy:
            return [self.strategy.upper()]
        return []

    @property
    def last_state(self) -> Dict[str, Optional[RuleStateSnapshot]]:
        """Typed snapshot per symbol"""
        return {s.symbol: RuleStateSnapshot.from_dict(s.snapshot) for s in self.states}

    def triggered_symbols(self, now: datetime, cooldown_minutes: int) -> List[str]:
        """Symbols that fired within the cooldown window ending at now"""
        window = timedelta(minutes=self.cooldown_minutes if self.cooldown_minutes is not None else cooldown_minutes)
        return [
            s.symbol for s in self.states
            if s.last_triggered_at is not None and now - s.last_triggered_at < window
        ]

    def __repr__(self):
        return f"<AlertRule(id={self.id}, condition={self.condition_type}, symbol={self.symbol})>"


class AlertRuleState(Base):
    """Edge-trigger state of one rule for one symbol"""
    __tablename__ = "alert_rule_states"

    id = Column(Integer, primary_key=True, index=True)
    rule_id = Column(Integer, ForeignKey("alert_rules.id"), nullable=False, index=True)
    symbol = Column(String, nullable=False)
    snapshot = Column(JSON, nullable=True)
    last_triggered_at = Column(DateTime, nullable=True)
    last_evaluated_at = Column(DateTime, nullable=True)

    # Relationship
    rule = relationship("AlertRule", back_populates="states")

    __table_args__ = (
        UniqueConstraint("rule_id", "symbol", name="uq_alert_rule_states_rule_symbol"),
    )

    def __repr__(self):
        return f"<AlertRuleState(rule_id={self.rule_id}, symbol={self.symbol})>"


class Watchlist(Base):
    """Named list of symbols owned by a user"""
    __tablename__ = "watchlists"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    symbols = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<Watchlist(id={self.id}, name={self.name})>"
