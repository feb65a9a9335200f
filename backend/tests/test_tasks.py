"""Background task tests (retention sweep runner, purge worker, task queue)"""
import asyncio
import json
import pytest
from datetime import timedelta
from unittest.mock import patch

from botocore.exceptions import ClientError

from doctrack.core.config import settings
from doctrack.core.errors import StorageError
from doctrack.db.task_queue import (
    QUEUE_KEY_PREFIX, enqueue_task, get_task_status, mark_task_failed
)
from doctrack.main import start_background_tasks, stop_background_tasks
from doctrack.services.document_service import PURGE_TASK_TYPE, delete_document
from doctrack.services.storage.r2_service import R2Service
from doctrack.tasks.cleanup import CLEANUP_LOCK_KEY, run_cleanup_locked
from doctrack.tasks.purge_worker import process_purge_task, purge_worker_task, requeue_pending_purges
from doctrack.utils.business_time import utcnow

from conftest import TENANT_ID, TestSessionLocal

PURGE_QUEUE = f"{QUEUE_KEY_PREFIX}{PURGE_TASK_TYPE}"


def pop_task(mock_redis):
    return json.loads(mock_redis.rpop(PURGE_QUEUE))


@pytest.mark.high
class TestCleanupRunner:
    """Test the locked retention sweep runner"""
    
    def test_runs_and_releases_lock(self, db_session, mock_redis, make_distribution):
        """Test a sweep runs, reports counts and frees the lock"""
        distribution = make_distribution(sent_at=utcnow() - timedelta(days=8))
        
        result = run_cleanup_locked(db_session)
        
        assert result["unopened_distributions_revoked"] == 1
        assert mock_redis.get(CLEANUP_LOCK_KEY) is None
        db_session.refresh(distribution)
        assert distribution.revoked_reason == "expired"
    
    def test_skips_when_locked(self, db_session, mock_redis):
        """Test a concurrent run is skipped and the other holder's lock is kept"""
        mock_redis.set(CLEANUP_LOCK_KEY, "1")
        
        assert run_cleanup_locked(db_session) is None
        assert mock_redis.get(CLEANUP_LOCK_KEY) == "1"


@pytest.mark.critical
class TestPurgeWorker:
    """Test deleted-document object purges"""
    
    def test_purge_success(self, db_session, mock_redis, mock_storage, test_document):
        """Test a purge deletes the object and marks the document purged"""
        delete_document(TENANT_ID, test_document.id, db_session)
        task = pop_task(mock_redis)
        
        asyncio.run(process_purge_task(task, db=db_session, storage=mock_storage))
        
        mock_storage.delete_object.assert_called_once_with("tenants/1/proposal.pdf")
        db_session.refresh(test_document)
        assert test_document.purge_status == "purged"
        assert test_document.purge_attempts == 1
        assert get_task_status(task["task_id"])["status"] == "completed"
    
    def test_purge_failure_is_retried(self, db_session, mock_redis, mock_storage, test_document):
        """Test a failed purge records the error and schedules a retry"""
        mock_storage.delete_object.side_effect = Exception("bucket unavailable")
        delete_document(TENANT_ID, test_document.id, db_session)
        task = pop_task(mock_redis)
        
        asyncio.run(process_purge_task(task, db=db_session, storage=mock_storage))
        
        db_session.refresh(test_document)
        assert test_document.purge_status == "pending"
        assert test_document.purge_attempts == 1
        assert test_document.purge_error == "bucket unavailable"
        retry = pop_task(mock_redis)
        assert retry["retry_count"] == 1
        assert retry["payload"] == {"document_id": test_document.id}
    
    def test_purge_failure_after_retries(self, db_session, mock_redis, mock_storage, test_document):
        """Test the document is marked failed once retries are exhausted"""
        mock_storage.delete_object.side_effect = Exception("bucket unavailable")
        with patch.object(settings, "PURGE_MAX_RETRIES", 0):
            delete_document(TENANT_ID, test_document.id, db_session)
        task = pop_task(mock_redis)
        
        asyncio.run(process_purge_task(task, db=db_session, storage=mock_storage))
        
        db_session.refresh(test_document)
        assert test_document.purge_status == "failed"
        assert mock_redis.llen(PURGE_QUEUE) == 0
    
    def test_live_document_is_not_purged(self, db_session, mock_redis, mock_storage, test_document):
        """Test a task for a document that is not deleted fails without touching storage"""
        task_id = enqueue_task(PURGE_TASK_TYPE, {"document_id": test_document.id})
        task = pop_task(mock_redis)
        
        asyncio.run(process_purge_task(task, db=db_session, storage=mock_storage))
        
        mock_storage.delete_object.assert_not_called()
        assert get_task_status(task_id)["status"] == "failed"
    
    def test_requeue_pending_purges(self, db_session, mock_redis, test_document):
        """Test pending purges are queued again at worker start"""
        test_document.is_deleted = True
        test_document.purge_status = "pending"
        db_session.commit()
        
        with patch("doctrack.tasks.purge_worker.SessionLocal", TestSessionLocal):
            assert requeue_pending_purges() == 1
        assert pop_task(mock_redis)["payload"] == {"document_id": test_document.id}
    
    def test_startup_queues_each_pending_purge_once(self, db_session, mock_redis, test_document):
        """Test starting the background tasks queues a pending purge exactly once"""
        test_document.is_deleted = True
        test_document.purge_status = "pending"
        db_session.commit()
        
        async def idle(*args, **kwargs):
            await asyncio.sleep(3600)
        
        async def run():
            start_background_tasks()
            for _ in range(200):
                if mock_redis.llen(PURGE_QUEUE):
                    break
                await asyncio.sleep(0.01)
            await asyncio.sleep(0.1)
            await stop_background_tasks()
        
        with patch("doctrack.tasks.purge_worker.SessionLocal", TestSessionLocal), \
                patch("doctrack.tasks.purge_worker.dequeue_task", idle), \
                patch("doctrack.tasks.cleanup.cleanup_task", idle):
            asyncio.run(run())
        
        assert mock_redis.llen(PURGE_QUEUE) == 1
        assert pop_task(mock_redis)["payload"] == {"document_id": test_document.id}
    
    def test_retry_backoff_does_not_hold_a_slot(self):
        """Test a retry waiting out its backoff leaves the single slot to a fresh purge"""
        queue = [{"task_id": "retry", "payload": {"document_id": 1}}, {"task_id": "fresh", "payload": {"document_id": 2}}]
        processed = []
        
        async def dequeue(task_type, timeout=5):
            if queue:
                return queue.pop(0)
            await asyncio.sleep(3600)
        
        async def wait_for_retry_window(task_data):
            if task_data["task_id"] == "retry":
                await asyncio.sleep(3600)
        
        async def run():
            done = asyncio.Event()
            
            async def process(task_data):
                processed.append(task_data["task_id"])
                done.set()
            
            with patch("doctrack.tasks.purge_worker.process_purge_task", process):
                worker = asyncio.create_task(purge_worker_task())
                try:
                    await asyncio.wait_for(done.wait(), timeout=2)
                finally:
                    worker.cancel()
                    await asyncio.gather(worker, return_exceptions=True)
        
        with patch("doctrack.tasks.purge_worker.MAX_CONCURRENT_PURGES", 1), \
                patch("doctrack.tasks.purge_worker.requeue_pending_purges", return_value=0), \
                patch("doctrack.tasks.purge_worker.cleanup_stale_tasks"), \
                patch("doctrack.tasks.purge_worker.dequeue_task", dequeue), \
                patch("doctrack.tasks.purge_worker._wait_for_retry_window", wait_for_retry_window):
            asyncio.run(run())
        
        assert processed == ["fresh"]


@pytest.mark.medium
class TestTaskQueue:
    """Test retry bookkeeping"""
    
    def test_retry_with_backoff(self, mock_redis):
        task_id = enqueue_task(PURGE_TASK_TYPE, {"document_id": 1}, max_retries=2)
        
        retry_id = mark_task_failed(task_id, "boom")
        
        assert retry_id is not None and retry_id != task_id
        assert get_task_status(task_id)["status"] == "retrying"
        meta = get_task_status(retry_id)
        assert meta["retry_count"] == 1
        assert "retry_after" in meta
    
    def test_terminal_failure(self, mock_redis):
        task_id = enqueue_task(PURGE_TASK_TYPE, {"document_id": 1}, max_retries=0)
        
        assert mark_task_failed(task_id, "boom") is None
        meta = get_task_status(task_id)
        assert meta["status"] == "failed"
        assert meta["error"] == "boom"


@pytest.mark.medium
class TestR2Service:
    """Test the object store wrapper against a mocked boto3 client"""
    
    @pytest.fixture
    def r2_settings(self):
        with patch.multiple(
            settings,
            R2_ACCESS_KEY_ID="key",
            R2_SECRET_ACCESS_KEY="secret",
            R2_BUCKET_NAME="documents",
            R2_ACCOUNT_ID="acct",
            R2_ENDPOINT_URL="",
        ):
            yield
    
    def test_missing_configuration(self):
        with patch.object(settings, "R2_ACCESS_KEY_ID", ""):
            with pytest.raises(StorageError):
                R2Service()
    
    def test_presigned_url(self, r2_settings):
        with patch("doctrack.services.storage.r2_service.boto3") as mock_boto3:
            s3 = mock_boto3.client.return_value
            s3.generate_presigned_url.return_value = "https://acct.r2.example/documents/k?sig"
            service = R2Service()
            
            assert service.generate_download_url("k", expires_in=60) == "https://acct.r2.example/documents/k?sig"
        
        assert mock_boto3.client.call_args.kwargs["endpoint_url"] == "https://acct.r2.cloudflarestorage.com"
        s3.generate_presigned_url.assert_called_once_with(
            "get_object", Params={"Bucket": "documents", "Key": "k"}, ExpiresIn=60
        )
    
    def test_delete_missing_object_counts_as_deleted(self, r2_settings):
        with patch("doctrack.services.storage.r2_service.boto3") as mock_boto3:
            s3 = mock_boto3.client.return_value
            s3.delete_object.side_effect = ClientError({"Error": {"Code": "NoSuchKey"}}, "DeleteObject")
            service = R2Service()
            
            assert service.delete_object("k") is True
            s3.delete_object.side_effect = ClientError({"Error": {"Code": "AccessDenied"}}, "DeleteObject")
            assert service.delete_object("k") is False
