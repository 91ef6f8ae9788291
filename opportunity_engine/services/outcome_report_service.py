"""Outcome report analytics over resolved opportunities"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd
from sqlalchemy.orm import Session, selectinload

from opportunity_engine.db.models.opportunity import Opportunity, OpportunityStatus, ResolutionOutcome

logger = logging.getLogger(__name__)

CSV_COLUMNS = [
    ("Symbol", "symbol"),
    ("Strategy", "strategy_name"),
    ("Timeframe", "timeframe"),
    ("Direction", "direction"),
    ("Stage at Detection", "stage_at_detection"),
    ("Current Stage", "current_stage"),
    ("Detected At", "detected_at"),
    ("Detected Price", "detected_price"),
    ("Resistance", "resistance_price"),
    ("Stop Reference", "stop_reference_price"),
    ("Max Price After", "max_price_after"),
    ("Min Price After", "min_price_after"),
    ("Max Favorable Move %", "max_favorable_move_percent"),
    ("Max Adverse Move %", "max_adverse_move_percent"),
    ("Status", "status"),
    ("Outcome", "resolution_outcome"),
    ("Resolution Reason", "resolution_reason"),
    ("Resolution Price", "resolution_price"),
    ("PnL %", "pnl_percent"),
    ("Days to Resolution", "days_to_resolution"),
    ("Active Duration (min)", "active_duration_minutes"),
    ("Bars Tracked", "bars_tracked"),
    ("Score", "score"),
    ("Confluence", "confluence_count"),
]


def _query(
    db: Session,
    symbol: Optional[str] = None,
    strategy_id: Optional[str] = None,
    since: Optional[datetime] = None,
):
    query = db.query(Opportunity).options(selectinload(Opportunity.excursion))
    if symbol:
        query = query.filter(Opportunity.symbol == symbol.upper())
    if strategy_id:
        query = query.filter(Opportunity.strategy_id == strategy_id)
    if since:
        query = query.filter(Opportunity.detected_at >= since)
    return query.order_by(Opportunity.detected_at.desc())


def _row(opportunity: Opportunity) -> Dict[str, Any]:
    excursion = opportunity.excursion
    row = {
        "symbol": opportunity.symbol,
        "strategy_id": opportunity.strategy_id,
        "strategy_name": opportunity.strategy_name,
        "timeframe": opportunity.timeframe,
        "direction": opportunity.direction.value if opportunity.direction else None,
        "stage_at_detection": opportunity.stage_at_detection,
        "current_stage": opportunity.current_stage,
        "detected_at": opportunity.detected_at.isoformat() if opportunity.detected_at else None,
        "detected_price": opportunity.detected_price,
        "resistance_price": opportunity.resistance_price,
        "stop_reference_price": opportunity.stop_reference_price,
        "status": opportunity.status.value,
        "resolution_outcome": opportunity.resolution_outcome.value if opportunity.resolution_outcome else None,
        "resolution_reason": opportunity.resolution_reason,
        "resolution_price": opportunity.resolution_price,
        "pnl_percent": opportunity.pnl_percent,
        "days_to_resolution": opportunity.days_to_resolution,
        "active_duration_minutes": opportunity.active_duration_minutes,
        "score": opportunity.score,
        "confluence_count": opportunity.confluence_count,
        "max_price_after": excursion.max_price_after if excursion else None,
        "min_price_after": excursion.min_price_after if excursion else None,
        "max_favorable_move_percent": excursion.max_favorable_move_percent if excursion else None,
        "max_adverse_move_percent": excursion.max_adverse_move_percent if excursion else None,
        "bars_tracked": excursion.bars_tracked if excursion else 0,
    }
    return row


def _mean(series: pd.Series) -> Optional[float]:
    series = series.dropna()
    if series.empty:
        return None
    return round(float(series.mean()), 2)


def summarize_outcomes(
    db: Session,
    symbol: Optional[str] = None,
    strategy_id: Optional[str] = None,
    since: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Aggregate outcome statistics.

    Win rate is BROKE_RESISTANCE over all resolved opportunities.

    Returns:
        Dictionary with total, active, resolved, per-outcome counts, win_rate,
        avg_pnl_percent, avg_days_to_resolution, avg_mfe_percent, avg_mae_percent
    """
    rows = [_row(o) for o in _query(db, symbol, strategy_id, since).all()]
    frame = pd.DataFrame(rows, columns=[key for _, key in CSV_COLUMNS] + ["strategy_id"])

    resolved = frame[frame["status"] == OpportunityStatus.RESOLVED.value]
    outcomes = {
        outcome.value: int((resolved["resolution_outcome"] == outcome.value).sum())
        for outcome in ResolutionOutcome
    }
    wins = outcomes[ResolutionOutcome.BROKE_RESISTANCE.value]

    return {
        "total": int(len(frame)),
        "active": int((frame["status"] == OpportunityStatus.ACTIVE.value).sum()),
        "resolved": int(len(resolved)),
        "outcomes": outcomes,
        "win_rate": round(wins / len(resolved) * 100, 2) if len(resolved) else None,
        "avg_pnl_percent": _mean(resolved["pnl_percent"]),
        "avg_days_to_resolution": _mean(resolved["days_to_resolution"]),
        "avg_mfe_percent": _mean(frame["max_favorable_move_percent"]),
        "avg_mae_percent": _mean(frame["max_adverse_move_percent"]),
    }


def export_outcomes_csv(
    db: Session,
    symbol: Optional[str] = None,
    strategy_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 10000,
) -> str:
    """Export opportunities (active and resolved) as CSV text"""
    rows: List[Dict[str, Any]] = [_row(o) for o in _query(db, symbol, strategy_id, since).limit(limit).all()]
    frame = pd.DataFrame(rows, columns=[key for _, key in CSV_COLUMNS])
    frame = frame.rename(columns={key: header for header, key in CSV_COLUMNS})
    logger.info(f"Exporting {len(frame)} opportunities to CSV")
    return frame.to_csv(index=False, float_format="%.2f")
