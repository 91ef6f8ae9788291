"""Engine exception taxonomy"""
from typing import Optional


class EngineError(Exception):
    """Base class for all engine errors"""


class SignalValidationError(EngineError):
    """Detector output is missing a field or carries a field of the wrong type"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class MarketDataUnavailable(EngineError):
    """No usable price or candle data for a symbol this cycle"""

    def __init__(self, symbol: str, reason: str = "no data"):
        super().__init__(f"Market data unavailable for {symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason


class RuleEvaluationError(EngineError):
    """Failure while evaluating a single alert rule"""

    def __init__(self, rule_id: int, message: str):
        super().__init__(f"Rule {rule_id}: {message}")
        self.rule_id = rule_id


class DispatchError(EngineError):
    """Webhook delivery failed (network error or non-2xx response)"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DuplicateOpportunityError(EngineError):
    """An ACTIVE opportunity already exists for the dedupe key"""

    def __init__(self, dedupe_key: str):
        super().__init__(f"Active opportunity already exists for {dedupe_key}")
        self.dedupe_key = dedupe_key


class InvalidStatusTransition(EngineError):
    """An execution request status change would move backwards"""

    def __init__(self, current: str, requested: str):
        super().__init__(f"Cannot move execution request from {current} to {requested}")
        self.current = current
        self.requested = requested


class SecretDecryptionError(EngineError):
    """An endpoint secret could not be decrypted with the configured key"""
