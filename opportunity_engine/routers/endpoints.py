"""Automation endpoint connection test"""
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from opportunity_engine.core.dispatch.coordinator import DispatchCoordinator
from opportunity_engine.db.database import get_session

router = APIRouter(prefix="/endpoints")


@router.post("/{endpoint_id}/test")
async def test_endpoint(endpoint_id: int, request: Request, db: Session = Depends(get_session)):
    """Post a signed test command; no execution request is created"""
    coordinator: DispatchCoordinator = request.app.state.coordinator
    try:
        success = await coordinator.test_endpoint(db, endpoint_id)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"endpoint_id": endpoint_id, "success": success}
