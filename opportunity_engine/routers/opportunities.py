"""Outcome report endpoints"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from sqlalchemy.orm import Session

from opportunity_engine.db.database import get_session
from opportunity_engine.services.outcome_report_service import export_outcomes_csv, summarize_outcomes

router = APIRouter(prefix="/opportunities")


@router.get("/summary")
async def outcome_summary(
    symbol: Optional[str] = None,
    strategy_id: Optional[str] = None,
    since: Optional[datetime] = None,
    db: Session = Depends(get_session)
):
    return summarize_outcomes(db, symbol=symbol, strategy_id=strategy_id, since=since)


@router.get("/export.csv")
async def outcome_export(
    symbol: Optional[str] = None,
    strategy_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = Query(10000, ge=1, le=100000),
    db: Session = Depends(get_session)
):
    """Download opportunities with their outcomes and excursions as CSV"""
    csv_text = export_outcomes_csv(db, symbol=symbol, strategy_id=strategy_id, since=since, limit=limit)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="opportunity_outcomes.csv"'},
    )
