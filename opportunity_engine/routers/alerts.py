"""In-app alert feed"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from opportunity_engine.db.database import get_session
from opportunity_engine.db.models.alert_event import AlertEvent
from opportunity_engine.db.queries import get_alert_events, mark_alert_event_read

router = APIRouter(prefix="/alerts")


def _event_json(event: AlertEvent) -> dict:
    return {
        "id": event.id,
        "rule_id": event.rule_id,
        "symbol": event.symbol,
        "type": event.type,
        "from_state": event.from_state,
        "to_state": event.to_state,
        "timeframe": event.timeframe,
        "strategy_id": event.strategy_id,
        "price": event.price,
        "target_price": event.target_price,
        "stop_price": event.stop_price,
        "message": event.message,
        "is_read": event.is_read,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


@router.get("/{user_id}")
async def list_alerts(
    user_id: str,
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_session)
):
    """Most recent alert events of a user"""
    events = get_alert_events(db, user_id, unread_only=unread_only, limit=limit)
    return [_event_json(e) for e in events]


@router.post("/events/{event_id}/read")
async def mark_read(event_id: int, db: Session = Depends(get_session)):
    try:
        event = mark_alert_event_read(db, event_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _event_json(event)
