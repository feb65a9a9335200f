"""Tenant document catalogue and deletion"""
import logging
from typing import List, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from doctrack.core.config import settings
from doctrack.core.errors import StorageError, ValidationError
from doctrack.db.task_queue import enqueue_task
from doctrack.models.document import Document
from doctrack.services.distribution_service import get_owned_document, revoke_document
from doctrack.utils.business_time import utcnow

logger = logging.getLogger(__name__)

PURGE_TASK_TYPE = "purge_document"


def create_document(
    tenant_id: int,
    title: str,
    original_filename: str,
    storage_path: str,
    size_bytes: Optional[int] = None,
    db: Session = None
) -> Document:
    """Register a document already uploaded to the object store"""
    title = (title or "").strip()
    storage_path = (storage_path or "").strip()
    original_filename = (original_filename or "").strip()
    if not title or not storage_path or not original_filename:
        raise ValidationError("title, original_filename and storage_path are required")
    if size_bytes is not None and size_bytes < 0:
        raise ValidationError("size_bytes must be non-negative")

    document = Document(
        tenant_id=tenant_id,
        title=title,
        original_filename=original_filename,
        storage_path=storage_path,
        size_bytes=size_bytes,
    )
    try:
        db.add(document)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError("Failed to create document") from e

    db.refresh(document)
    logger.info(f"Created document {document.id} for tenant {tenant_id}")
    return document


def list_documents(tenant_id: int, db: Session, include_deleted: bool = False) -> List[Document]:
    query = db.query(Document).filter(Document.tenant_id == tenant_id)
    if not include_deleted:
        query = query.filter(Document.is_deleted.is_(False))
    return query.order_by(Document.created_at.desc(), Document.id.desc()).all()


def delete_document(tenant_id: int, document_id: int, db: Session) -> int:
    """Soft-delete a document, revoke its distributions and queue the object purge

    The deletion flag and the revocations commit together; the purge runs on
    the purge worker and records its outcome on the document row.

    Returns:
        Number of distributions revoked
    """
    document = get_owned_document(tenant_id, document_id, db)
    if document.is_deleted:
        return 0

    try:
        document.is_deleted = True
        document.deleted_at = utcnow()
        document.purge_status = "pending"
        revoked = revoke_document(tenant_id, document_id, "deleted", db, commit=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError("Failed to delete document") from e

    enqueue_purge(document_id)
    logger.info(f"Deleted document {document_id} (tenant {tenant_id}), revoked {revoked} distributions")
    return revoked


def enqueue_purge(document_id: int) -> Optional[str]:
    """Hand the object purge to the purge worker

    A Redis outage leaves the document in "pending"; the worker re-queues
    pending purges when it starts.
    """
    try:
        return enqueue_task(
            PURGE_TASK_TYPE,
            {"document_id": document_id},
            max_retries=settings.PURGE_MAX_RETRIES
        )
    except RedisError as e:
        logger.error(f"Failed to enqueue purge for document {document_id}: {e}")
        return None
