"""Distribution registry: token issuance, resolution and revocation"""
import logging
import secrets
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from doctrack.core.config import settings
from doctrack.core.errors import Gone, NotFound, OwnershipError, StorageError, ValidationError
from doctrack.core.metrics import distributions_registered_counter
from doctrack.models.distribution import Distribution, REVOKE_REASONS
from doctrack.models.document import Document
from doctrack.services.rollup_service import increment_sent, increment_sent_grouped
from doctrack.utils.business_time import business_day, ensure_utc, utcnow

logger = logging.getLogger(__name__)

TOKEN_BYTES = 24
TOKEN_ATTEMPTS = 5
MAX_TOKEN_LENGTH = 64

# Check results for the viewing front end
VIEWABLE = "viewable"
GONE = "gone"
NOT_FOUND = "not_found"

_RECIPIENT_FIELDS = {
    "company_name": "recipient_company_name",
    "contact_name": "recipient_contact_name",
    "email": "recipient_email",
    "homepage_url": "recipient_homepage_url",
}


def _clean(value: Any, max_length: int) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValidationError(f"Recipient field exceeds {max_length} characters")
    return text


def _recipient_columns(recipient: Optional[Dict[str, Any]]) -> Dict[str, Optional[str]]:
    """Map a recipient dict (company_name, contact_name, email, homepage_url) to columns"""
    recipient = recipient or {}
    unknown = set(recipient) - set(_RECIPIENT_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown recipient fields: {', '.join(sorted(unknown))}")

    columns = {}
    for field, column in _RECIPIENT_FIELDS.items():
        max_length = 512 if field == "homepage_url" else 255
        columns[column] = _clean(recipient.get(field), max_length)
    return columns


def get_owned_document(tenant_id: int, document_id: int, db: Session) -> Document:
    """Load a document and verify it belongs to tenant_id

    Raises:
        NotFound: No such document
        OwnershipError: Document belongs to another tenant
    """
    document = db.query(Document).filter(Document.id == document_id).first()
    if document is None:
        raise NotFound(f"Document {document_id} not found")
    if document.tenant_id != tenant_id:
        logger.warning(f"Tenant {tenant_id} attempted to access document {document_id} of tenant {document.tenant_id}")
        raise OwnershipError("Document does not belong to this tenant")
    return document


def _new_token(db: Session) -> str:
    for _ in range(TOKEN_ATTEMPTS):
        token = secrets.token_urlsafe(TOKEN_BYTES)
        exists = db.query(Distribution.id).filter(Distribution.token == token).first()
        if exists is None:
            return token
    raise StorageError("Could not allocate a unique distribution token")


def _build_distribution(
    tenant_id: int,
    document: Document,
    recipient: Optional[Dict[str, Any]],
    sent_at: Optional[datetime],
    source: str,
    db: Session
) -> Distribution:
    return Distribution(
        token=_new_token(db),
        tenant_id=tenant_id,
        document_id=document.id,
        source=source,
        sent_at=ensure_utc(sent_at) if sent_at else utcnow(),
        **_recipient_columns(recipient)
    )


def _require_live_document(document: Document) -> None:
    if document.is_deleted:
        raise Gone("Document has been deleted", reason="deleted")


def register(
    tenant_id: int,
    document_id: int,
    recipient: Optional[Dict[str, Any]] = None,
    sent_at: Optional[datetime] = None,
    db: Session = None,
    source: str = "send",
    count_sent: bool = True
) -> Distribution:
    """Register a distribution of a document to one recipient

    The distribution row and the sent-count increment for its business day are
    committed together.

    Args:
        tenant_id: Owning tenant
        document_id: Document being sent (must belong to tenant_id)
        recipient: Optional company_name, contact_name, email, homepage_url
        sent_at: Send time (defaults to now)
        db: Database session
        source: "send" for recipient sends, "share" for share links
        count_sent: Whether to add the distribution to the sent rollup

    Returns:
        The new Distribution (its token builds the viewing link)
    """
    document = get_owned_document(tenant_id, document_id, db)
    _require_live_document(document)

    try:
        distribution = _build_distribution(tenant_id, document, recipient, sent_at, source, db)
        db.add(distribution)
        if count_sent:
            increment_sent(db, tenant_id, document.id, business_day(distribution.sent_at))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to register distribution for document {document_id}: {e}")
        raise StorageError("Failed to register distribution") from e
    except StorageError:
        db.rollback()
        raise

    db.refresh(distribution)
    distributions_registered_counter.labels(source=source).inc()
    logger.info(f"Registered {source} distribution {distribution.id} for document {document_id} (tenant {tenant_id})")
    return distribution


def register_batch(
    tenant_id: int,
    document_id: int,
    recipients: List[Dict[str, Any]],
    sent_at: Optional[datetime] = None,
    db: Session = None
) -> List[Distribution]:
    """Register one distribution per recipient in a single transaction

    Sent counts are incremented once per (document, day) group.
    """
    if not recipients:
        raise ValidationError("At least one recipient is required")
    if len(recipients) > settings.MAX_BATCH_RECIPIENTS:
        raise ValidationError(f"At most {settings.MAX_BATCH_RECIPIENTS} recipients per batch")

    document = get_owned_document(tenant_id, document_id, db)
    _require_live_document(document)

    distributions = []
    try:
        for recipient in recipients:
            distribution = _build_distribution(tenant_id, document, recipient, sent_at, "send", db)
            db.add(distribution)
            # Flush so the next token uniqueness check sees this one
            db.flush()
            distributions.append(distribution)
        increment_sent_grouped(db, tenant_id, [(d.document_id, d.sent_at) for d in distributions])
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Batch registration failed for document {document_id}: {e}")
        raise StorageError("Failed to register distributions") from e
    except StorageError:
        db.rollback()
        raise

    distributions_registered_counter.labels(source="send").inc(len(distributions))
    logger.info(f"Registered {len(distributions)} distributions for document {document_id} (tenant {tenant_id})")
    return distributions


def get_or_create_share_link(tenant_id: int, document_id: int, db: Session) -> Tuple[Distribution, bool]:
    """Reuse the newest live share link for a document, or issue one

    Share links carry no recipient and are not counted as sends.

    Returns:
        (distribution, created)
    """
    document = get_owned_document(tenant_id, document_id, db)
    _require_live_document(document)

    existing = db.query(Distribution).filter(
        Distribution.tenant_id == tenant_id,
        Distribution.document_id == document_id,
        Distribution.source == "share",
        Distribution.revoked.is_(False)
    ).order_by(Distribution.created_at.desc(), Distribution.id.desc()).first()
    if existing is not None:
        return existing, False

    distribution = register(tenant_id, document_id, None, db=db, source="share", count_sent=False)
    return distribution, True


def resolve(token: str, db: Session) -> Distribution:
    """Resolve a viewing token to its live distribution

    Raises:
        NotFound: Unknown token
        Gone: Distribution revoked or its document deleted
    """
    if not token or len(token) > MAX_TOKEN_LENGTH:
        raise NotFound("Unknown token")

    distribution = db.query(Distribution).filter(Distribution.token == token).first()
    if distribution is None:
        raise NotFound("Unknown token")

    if distribution.revoked:
        raise Gone("Distribution has been revoked", reason=distribution.revoked_reason)

    document = distribution.document
    if document is None:
        raise NotFound("Document not found")
    if document.is_deleted:
        raise Gone("Document has been deleted", reason="deleted")

    return distribution


def check(token: str, db: Session) -> str:
    """Side-effect free viewability check: viewable, gone or not_found"""
    try:
        resolve(token, db)
    except NotFound:
        return NOT_FOUND
    except Gone:
        return GONE
    return VIEWABLE


def _validate_reason(reason: str) -> None:
    if reason not in REVOKE_REASONS:
        raise ValidationError(f"Invalid revocation reason: {reason}")


def revoke_token(tenant_id: int, token: str, reason: str, db: Session) -> bool:
    """Revoke a single distribution owned by tenant_id

    Returns:
        True if this call revoked it, False if it was already revoked
    """
    _validate_reason(reason)
    distribution = db.query(Distribution).filter(Distribution.token == token).first()
    if distribution is None:
        raise NotFound("Unknown token")
    if distribution.tenant_id != tenant_id:
        logger.warning(f"Tenant {tenant_id} attempted to revoke distribution {distribution.id}")
        raise OwnershipError("Distribution does not belong to this tenant")

    try:
        updated = db.query(Distribution).filter(
            Distribution.id == distribution.id,
            Distribution.tenant_id == tenant_id,
            Distribution.revoked.is_(False)
        ).update({
            Distribution.revoked: True,
            Distribution.revoked_at: utcnow(),
            Distribution.revoked_reason: reason,
        }, synchronize_session=False)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError("Failed to revoke distribution") from e

    if updated:
        logger.info(f"Revoked distribution {distribution.id} (reason={reason}, tenant {tenant_id})")
    return bool(updated)


def revoke_document(tenant_id: int, document_id: int, reason: str, db: Session, commit: bool = True) -> int:
    """Revoke every live distribution of a document, scoped to tenant_id

    Returns:
        Number of distributions revoked by this call
    """
    _validate_reason(reason)
    get_owned_document(tenant_id, document_id, db)

    try:
        updated = db.query(Distribution).filter(
            Distribution.tenant_id == tenant_id,
            Distribution.document_id == document_id,
            Distribution.revoked.is_(False)
        ).update({
            Distribution.revoked: True,
            Distribution.revoked_at: utcnow(),
            Distribution.revoked_reason: reason,
        }, synchronize_session=False)
        if commit:
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError("Failed to revoke document distributions") from e

    logger.info(f"Revoked {updated} distributions of document {document_id} (reason={reason}, tenant {tenant_id})")
    return updated
