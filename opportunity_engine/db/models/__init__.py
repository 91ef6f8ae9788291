"""Database models"""
from opportunity_engine.db.models.opportunity import (
    Opportunity,
    OpportunityExcursion,
    OpportunityStatus,
    ResolutionOutcome,
    Direction,
)
from opportunity_engine.db.models.alert_rule import (
    AlertRule,
    AlertRuleState,
    OwnerScope,
    RuleConditionType,
    Watchlist,
)
from opportunity_engine.db.models.alert_event import AlertEvent
from opportunity_engine.db.models.automation import (
    AutomationAction,
    AutomationDecision,
    AutomationEndpoint,
    AutomationMode,
    AutomationProfile,
    ExecutionRequest,
    ExecutionStatus,
)
from opportunity_engine.db.models.error_log import ErrorLog

__all__ = [
    "Opportunity",
    "OpportunityExcursion",
    "OpportunityStatus",
    "ResolutionOutcome",
    "Direction",
    "AlertRule",
    "AlertRuleState",
    "OwnerScope",
    "RuleConditionType",
    "Watchlist",
    "AlertEvent",
    "AutomationAction",
    "AutomationDecision",
    "AutomationEndpoint",
    "AutomationMode",
    "AutomationProfile",
    "ExecutionRequest",
    "ExecutionStatus",
    "ErrorLog",
]
