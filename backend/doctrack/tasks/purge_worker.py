"""Background worker that purges stored objects of deleted documents

Consumes "purge_document" tasks from the Redis queue. Failures are retried
with exponential backoff; once retries are exhausted the document row is
marked purge_status="failed" with the last error.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict

from doctrack.core.metrics import purge_jobs_counter
from doctrack.db.session import SessionLocal
from doctrack.db.task_queue import (
    cleanup_stale_tasks, dequeue_task, get_task_status,
    mark_task_completed, mark_task_failed, mark_task_processing
)
from doctrack.models.document import Document
from doctrack.services.document_service import PURGE_TASK_TYPE, enqueue_purge
from doctrack.services.storage.r2_service import get_r2_service

logger = logging.getLogger(__name__)
purge_logger = logging.getLogger("purge")

# Bounds concurrent purges
MAX_CONCURRENT_PURGES = 4


def _record_failure(db, document: Document, task_id: str, error: str, retry: bool = True) -> None:
    document.purge_attempts = (document.purge_attempts or 0) + 1
    document.purge_error = error
    retry_task_id = mark_task_failed(task_id, error, retry=retry)
    if retry_task_id is None:
        document.purge_status = "failed"
        purge_jobs_counter.labels(status="failed").inc()
        purge_logger.error(f"Purge of document {document.id} failed permanently: {error}")
    else:
        purge_jobs_counter.labels(status="retrying").inc()
    db.commit()


async def process_purge_task(task_data: Dict[str, Any], db=None, storage=None) -> None:
    """Delete one document's stored object and record the outcome on the document row"""
    task_id = task_data.get("task_id")
    document_id = task_data.get("payload", {}).get("document_id")
    
    if not document_id:
        logger.error(f"Task {task_id} missing document_id in payload")
        mark_task_failed(task_id, "Missing document_id in task payload", retry=False)
        return
    
    mark_task_processing(task_id)
    
    should_close = False
    if db is None:
        db = SessionLocal()
        should_close = True
    
    try:
        document = db.query(Document).filter(Document.id == document_id).first()
        if document is None or not document.is_deleted:
            mark_task_failed(task_id, "Document missing or not deleted", retry=False)
            return
        if document.purge_status == "purged":
            mark_task_completed(task_id, {"document_id": document_id, "skipped": True})
            return
        
        try:
            storage = storage or get_r2_service()
            deleted = await asyncio.to_thread(storage.delete_object, document.storage_path)
            error = None if deleted else f"Object store refused deletion of {document.storage_path}"
        except Exception as e:
            error = str(e)
        
        if error:
            _record_failure(db, document, task_id, error)
            return
        
        document.purge_attempts = (document.purge_attempts or 0) + 1
        document.purge_status = "purged"
        document.purge_error = None
        db.commit()
        mark_task_completed(task_id, {"document_id": document_id})
        purge_jobs_counter.labels(status="purged").inc()
        purge_logger.info(f"Purged stored object of document {document_id}")
    finally:
        if should_close:
            db.close()


def requeue_pending_purges() -> int:
    """Re-queue purges left pending (e.g. the enqueue failed or the worker died)"""
    db = SessionLocal()
    try:
        pending = db.query(Document.id).filter(
            Document.is_deleted.is_(True),
            Document.purge_status == "pending"
        ).all()
    finally:
        db.close()
    
    for (document_id,) in pending:
        enqueue_purge(document_id)
    return len(pending)


async def _wait_for_retry_window(task_data: Dict[str, Any]) -> None:
    meta = get_task_status(task_data.get("task_id")) or {}
    retry_after_str = meta.get("retry_after")
    if not retry_after_str:
        return
    delay = (datetime.fromisoformat(retry_after_str) - datetime.now(timezone.utc)).total_seconds()
    if delay > 0:
        purge_logger.info(f"Task {task_data.get('task_id')} is a retry, waiting {delay:.0f}s")
        await asyncio.sleep(delay)


async def purge_worker_task() -> None:
    """Main worker loop: poll the purge queue and process tasks with bounded concurrency"""
    logger.info("Starting purge worker task")
    try:
        requeued = await asyncio.to_thread(requeue_pending_purges)
        if requeued:
            purge_logger.info(f"Re-queued {requeued} pending purges")
    except Exception as e:
        logger.warning(f"Failed to requeue pending purges: {e}")
    
    semaphore = asyncio.Semaphore(MAX_CONCURRENT_PURGES)
    # Strong references so running purges are not garbage-collected
    running = set()
    
    async def run(task_data):
        # Retries wait outside the semaphore so they do not hold a slot
        await _wait_for_retry_window(task_data)
        async with semaphore:
            try:
                await process_purge_task(task_data)
            except Exception as e:
                logger.error(f"Purge task {task_data.get('task_id')} crashed: {e}", exc_info=True)
                mark_task_failed(task_data.get("task_id"), str(e), retry=True)
    
    while True:
        try:
            cleanup_stale_tasks(timeout_seconds=3600)
            task_data = await dequeue_task(PURGE_TASK_TYPE, timeout=5)
            if task_data is None:
                continue
            task = asyncio.create_task(run(task_data))
            running.add(task)
            task.add_done_callback(running.discard)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error in purge worker loop: {e}", exc_info=True)
            await asyncio.sleep(5)
