"""Signal intake push endpoint"""
import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Request

from opportunity_engine.core.intake.signal_intake import SignalInbox, normalize_batch

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/signals", status_code=202)
async def push_signals(payload: List[Dict[str, Any]], request: Request):
    """
    Accept raw detector signals for the next cycle of their timeframe.

    Malformed entries are skipped; the response reports how many were kept.
    """
    inbox: SignalInbox = request.app.state.inbox
    signals = normalize_batch(payload)
    accepted = await inbox.push(signals)
    logger.info(f"Accepted {accepted}/{len(payload)} pushed signals", extra={'component': 'SignalIntake'})
    return {"received": len(payload), "accepted": accepted, "rejected": len(payload) - accepted}
