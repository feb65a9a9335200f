"""Background retention sweep loop"""
import asyncio
import logging
from typing import Optional

from doctrack.core.config import settings
from doctrack.core.metrics import cleanup_runs_counter
from doctrack.db.redis import acquire_lock, release_lock
from doctrack.db.session import SessionLocal
from doctrack.services.retention_service import run_cleanup

cleanup_logger = logging.getLogger("cleanup")

CLEANUP_LOCK_KEY = "lock:retention_sweep"


def run_cleanup_locked(db=None) -> Optional[dict]:
    """Run one retention sweep unless another instance holds the lock
    
    Args:
        db: Database session (if None, creates its own)
        
    Returns:
        Per-policy counts, or None if the sweep was skipped
    """
    if not acquire_lock(CLEANUP_LOCK_KEY, timeout=settings.CLEANUP_LOCK_TIMEOUT):
        cleanup_logger.info("Retention sweep already running elsewhere, skipping")
        cleanup_runs_counter.labels(status="skipped").inc()
        return None
    
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True
    
    try:
        cleanup_logger.info("Starting retention sweep...")
        result = run_cleanup(db)
        status = "partial" if result["failed_policies"] else "success"
        cleanup_runs_counter.labels(status=status).inc()
        cleanup_logger.info(f"Retention sweep completed: {result}")
        return result
    finally:
        release_lock(CLEANUP_LOCK_KEY)
        if should_close:
            db.close()


async def cleanup_task():
    """Background task that runs the retention sweep every CLEANUP_INTERVAL_SECONDS"""
    while True:
        try:
            await asyncio.sleep(settings.CLEANUP_INTERVAL_SECONDS)
            await asyncio.to_thread(run_cleanup_locked)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            cleanup_logger.error(f"Error in cleanup task: {e}", exc_info=True)
            cleanup_runs_counter.labels(status="failure").inc()
