"""Alert event database model"""
from datetime import datetime
from sqlalchemy import Boolean, Column, Integer, String, Float, DateTime, ForeignKey
from opportunity_engine.db.database import Base


class AlertEvent(Base):
    """
    A fired alert. Immutable once created except for is_read.
    """
    __tablename__ = "alert_events"

    id = Column(Integer, primary_key=True, index=True)
    rule_id = Column(Integer, ForeignKey("alert_rules.id"), nullable=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    symbol = Column(String, nullable=False, index=True)
    type = Column(String, nullable=False)
    event_key = Column(String, nullable=False, unique=True)
    from_state = Column(String, nullable=True)
    to_state = Column(String, nullable=False)
    timeframe = Column(String, nullable=True)
    strategy_id = Column(String, nullable=True)
    price = Column(Float, nullable=False)
    target_price = Column(Float, nullable=True)
    stop_price = Column(Float, nullable=True)
    message = Column(String, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<AlertEvent(id={self.id}, symbol={self.symbol}, type={self.type})>"
