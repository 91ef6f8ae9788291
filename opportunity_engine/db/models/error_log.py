"""Error log database model"""
from sqlalchemy import Column, Integer, String, DateTime, Text
from opportunity_engine.db.database import Base


class ErrorLog(Base):
    """
    Contained failures (per symbol, rule or dispatch) reported by the engine.
    """
    __tablename__ = "error_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp_utc = Column(DateTime, nullable=False, index=True)
    component = Column(String, nullable=False)
    severity = Column(String, nullable=False)
    message = Column(String, nullable=False)
    exception_type = Column(String, nullable=True)
    symbol = Column(String, nullable=True, index=True)
    rule_id = Column(Integer, nullable=True, index=True)
    execution_request_id = Column(Integer, nullable=True)
    stack_trace = Column(Text, nullable=True)

    def __repr__(self):
        return f"<ErrorLog(id={self.id}, component={self.component}, severity={self.severity})>"
