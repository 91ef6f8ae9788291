"""Automation endpoint and execution request database models"""
from datetime import datetime
from enum import Enum
from sqlalchemy import Boolean, Column, Integer, String, DateTime, ForeignKey, JSON, Text, Enum as SQLEnum
from sqlalchemy.orm import relationship
from opportunity_engine.db.database import Base


class ExecutionStatus(str, Enum):
    """Execution request status enumeration"""
    CREATED = "CREATED"
    SENT = "SENT"
    ACKED = "ACKED"
    EXECUTED = "EXECUTED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class AutomationMode(str, Enum):
    """What a profile does with alerts that pass its guardrails"""
    OFF = "OFF"
    NOTIFY_ONLY = "NOTIFY_ONLY"
    AUTO = "AUTO"


class AutomationAction(str, Enum):
    """Outcome of resolving a fired alert against an automation profile"""
    SEND = "SEND"
    SKIP = "SKIP"
    BLOCKED = "BLOCKED"


class AutomationEndpoint(Base):
    """
    User-configured webhook receiving signed automation commands.
    The signing secret is stored AES-GCM encrypted.
    """
    __tablename__ = "automation_endpoints"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    webhook_url = Column(String, nullable=False)
    webhook_secret_encrypted = Column(Text, nullable=True)
    webhook_secret_iv = Column(String, nullable=True)
    webhook_secret_auth_tag = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    last_tested_at = Column(DateTime, nullable=True)
    last_test_success = Column(Boolean, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    @property
    def has_secret(self) -> bool:
        return bool(self.webhook_secret_encrypted)

    def __repr__(self):
        return f"<AutomationEndpoint(id={self.id}, name={self.name}, active={self.is_active})>"


class ExecutionRequest(Base):
    """
    A signal forwarded to an automation endpoint. Status only moves forward.
    """
    __tablename__ = "execution_requests"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False, index=True)
    strategy_id = Column(String, nullable=False)
    timeframe = Column(String, nullable=True)
    setup_payload = Column(JSON, nullable=True)
    automation_endpoint_id = Column(Integer, ForeignKey("automation_endpoints.id"), nullable=True, index=True)
    alert_event_id = Column(Integer, ForeignKey("alert_events.id"), nullable=True)
    status = Column(SQLEnum(ExecutionStatus), nullable=False, default=ExecutionStatus.CREATED, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    external_reference = Column(String, nullable=True)
    redirect_url = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<ExecutionRequest(id={self.id}, symbol={self.symbol}, status={self.status})>"


class AutomationProfile(Base):
    """
    Routing and guardrails for automated forwarding.

    guardrails is a JSON object; every key is optional:
        min_score, allowed_strategies, allowed_symbols, allowed_watchlists,
        allowed_time_window {"start": "HH:MM", "end": "HH:MM"} in market time,
        max_per_day, cooldown_minutes
    """
    __tablename__ = "automation_profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    automation_endpoint_id = Column(Integer, ForeignKey("automation_endpoints.id"), nullable=False)
    mode = Column(SQLEnum(AutomationMode), nullable=False, default=AutomationMode.NOTIFY_ONLY)
    is_enabled = Column(Boolean, nullable=False, default=True)
    guardrails = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # Relationship
    automation_endpoint = relationship("AutomationEndpoint")

    def __repr__(self):
        return f"<AutomationProfile(id={self.id}, name={self.name}, mode={self.mode})>"


class AutomationDecision(Base):
    """Audit record of a profile's decision for one fired alert"""
    __tablename__ = "automation_decisions"

    id = Column(Integer, primary_key=True, index=True)
    profile_id = Column(Integer, ForeignKey("automation_profiles.id"), nullable=True, index=True)
    user_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False, index=True)
    strategy_id = Column(String, nullable=True)
    alert_event_id = Column(Integer, ForeignKey("alert_events.id"), nullable=True)
    execution_request_id = Column(Integer, ForeignKey("execution_requests.id"), nullable=True)
    action = Column(SQLEnum(AutomationAction), nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<AutomationDecision(profile_id={self.profile_id}, symbol={self.symbol}, action={self.action})>"
