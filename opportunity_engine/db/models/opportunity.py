"""Opportunity database models"""
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, Integer, String, Float, DateTime, ForeignKey, Index, text, Enum as SQLEnum
from sqlalchemy.orm import relationship
from opportunity_engine.db.database import Base


class OpportunityStatus(str, Enum):
    """Opportunity status enumeration"""
    ACTIVE = "ACTIVE"
    RESOLVED = "RESOLVED"


class ResolutionOutcome(str, Enum):
    """How an opportunity was resolved"""
    BROKE_RESISTANCE = "BROKE_RESISTANCE"
    INVALIDATED = "INVALIDATED"
    EXPIRED = "EXPIRED"


class Direction(str, Enum):
    """Implied trade direction of the detecting strategy"""
    LONG = "LONG"
    SHORT = "SHORT"


class Opportunity(Base):
    """
    A tracked pattern detection on a symbol/timeframe, from detection to
    resolution. Rows are never deleted.
    """
    __tablename__ = "opportunities"

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String, nullable=False, index=True)
    strategy_id = Column(String, nullable=False, index=True)
    strategy_name = Column(String, nullable=False)
    timeframe = Column(String, nullable=False)
    direction = Column(SQLEnum(Direction), nullable=False, default=Direction.LONG)
    stage_at_detection = Column(String, nullable=False)
    current_stage = Column(String, nullable=False)
    detected_at = Column(DateTime, nullable=False, index=True)
    detected_price = Column(Float, nullable=False)
    resistance_price = Column(Float, nullable=True)
    stop_reference_price = Column(Float, nullable=True)
    entry_trigger_price = Column(Float, nullable=True)
    score = Column(Float, nullable=True)
    confluence_count = Column(Integer, nullable=False, default=1)
    status = Column(SQLEnum(OpportunityStatus), nullable=False, default=OpportunityStatus.ACTIVE, index=True)
    resolution_outcome = Column(SQLEnum(ResolutionOutcome), nullable=True)
    resolution_reason = Column(String, nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution_price = Column(Float, nullable=True)
    pnl_percent = Column(Float, nullable=True)
    days_to_resolution = Column(Integer, nullable=True)
    active_duration_minutes = Column(Integer, nullable=True)
    dedupe_key = Column(String, nullable=False, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationship
    excursion = relationship(
        "OpportunityExcursion",
        back_populates="opportunity",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        # At most one ACTIVE row per dedupe key
        Index(
            "uq_opportunities_active_dedupe_key",
            "dedupe_key",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status == OpportunityStatus.ACTIVE

    def __repr__(self):
        return f"<Opportunity(id={self.id}, symbol={self.symbol}, strategy={self.strategy_id}, status={self.status})>"


class OpportunityExcursion(Base):
    """
    Running price excursion of an opportunity since detection, kept apart
    from the opportunity row and surfaced through outcome reporting.
    """
    __tablename__ = "opportunity_excursions"

    opportunity_id = Column(Integer, ForeignKey("opportunities.id"), primary_key=True)
    max_price_after = Column(Float, nullable=True)
    min_price_after = Column(Float, nullable=True)
    max_favorable_move_percent = Column(Float, nullable=True)
    max_adverse_move_percent = Column(Float, nullable=True)
    bars_tracked = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=True)

    # Relationship
    opportunity = relationship("Opportunity", back_populates="excursion")

    def __repr__(self):
        return (
            f"<OpportunityExcursion(opportunity_id={self.opportunity_id}, "
            f"mfe={self.max_favorable_move_percent}, mae={self.max_adverse_move_percent})>"
        )
