"""Typed snapshot stored per (rule, symbol) for edge-triggered evaluation"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass
class RuleStateSnapshot:
    """
    Condition state observed the last time a rule was evaluated for a symbol.

    Attributes:
        stage: Stage observed (aggregated or per-strategy)
        score: Score observed
        confluence_count: Number of agreeing strategies observed
        condition_active: Whether the rule's boolean condition held
        price: Price observed
        evaluated_at: Evaluation timestamp (UTC)
    """
    stage: Optional[str] = None
    score: Optional[float] = None
    confluence_count: int = 0
    condition_active: bool = False
    price: Optional[float] = None
    evaluated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "score": self.score,
            "confluence_count": self.confluence_count,
            "condition_active": self.condition_active,
            "price": self.price,
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["RuleStateSnapshot"]:
        if not data:
            return None
        evaluated_at = data.get("evaluated_at")
        return cls(
            stage=data.get("stage"),
            score=data.get("score"),
            confluence_count=int(data.get("confluence_count") or 0),
            condition_active=bool(data.get("condition_active", False)),
            price=data.get("price"),
            evaluated_at=datetime.fromisoformat(evaluated_at) if evaluated_at else None,
        )
