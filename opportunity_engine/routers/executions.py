"""Automation callback endpoint"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from opportunity_engine.core.dispatch.coordinator import DispatchCoordinator
from opportunity_engine.core.errors import InvalidStatusTransition
from opportunity_engine.db.database import get_session
from opportunity_engine.db.models.automation import ExecutionStatus

router = APIRouter()

CALLBACK_STATUSES = {ExecutionStatus.ACKED, ExecutionStatus.EXECUTED, ExecutionStatus.REJECTED}


class ExecutionStatusUpdate(BaseModel):
    status: ExecutionStatus
    external_reference: Optional[str] = None
    redirect_url: Optional[str] = None
    error_message: Optional[str] = None


@router.post("/executions/{request_id}/status")
async def update_execution_status(
    request_id: int,
    update: ExecutionStatusUpdate,
    db: Session = Depends(get_session)
):
    """Report ACKED, EXECUTED or REJECTED for a forwarded command"""
    if update.status not in CALLBACK_STATUSES:
        raise HTTPException(status_code=422, detail=f"Status {update.status.value} cannot be reported by callback")
    try:
        execution = DispatchCoordinator.apply_execution_update(
            db,
            request_id,
            update.status,
            external_reference=update.external_reference,
            redirect_url=update.redirect_url,
            error_message=update.error_message,
        )
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "id": execution.id,
        "status": execution.status.value,
        "external_reference": execution.external_reference,
        "redirect_url": execution.redirect_url,
    }
