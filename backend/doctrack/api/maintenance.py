"""Maintenance API routes for external schedulers"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from doctrack.core.security import require_maintenance_key
from doctrack.db.session import get_db
from doctrack.tasks.cleanup import run_cleanup_locked

cleanup_logger = logging.getLogger("cleanup")

router = APIRouter(prefix="/api/maintenance", tags=["maintenance"])


@router.post("/cleanup", dependencies=[Depends(require_maintenance_key)])
def trigger_cleanup(db: Session = Depends(get_db)):
    """Run one retention sweep now

    Returns 409 when a sweep is already running on another instance.
    """
    cleanup_logger.info("Retention sweep triggered via maintenance endpoint")
    result = run_cleanup_locked(db)
    if result is None:
        return JSONResponse(status_code=409, content={"error": "Cleanup already running"})
    return {"status": "partial" if result["failed_policies"] else "success", "results": result}
