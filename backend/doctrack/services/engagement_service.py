"""Engagement recording for viewer open and progress pings"""
import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from doctrack.core.config import settings
from doctrack.core.errors import StorageError, ValidationError
from doctrack.core.metrics import new_sessions_counter, opens_counter, progress_pings_counter
from doctrack.core.otel import get_tracer
from doctrack.db.session import apply_statement_timeout, greatest, insert_for
from doctrack.models.distribution import Distribution
from doctrack.models.open_event import OpenEvent
from doctrack.services.distribution_service import resolve
from doctrack.services.rollup_service import increment_opened
from doctrack.services.session_resolver import resolve_session
from doctrack.services.storage.r2_service import get_r2_service
from doctrack.utils.business_time import business_day, ensure_utc, utcnow

logger = logging.getLogger(__name__)
tracking_logger = logging.getLogger("tracking")
tracer = get_tracer("doctrack.tracking")

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_EMAIL_LENGTH = 255
MAX_SESSION_ID_LENGTH = 128

# Progress clamps
MAX_READ_PERCENTAGE = 100
MAX_PAGE = 99999
MAX_ELAPSED_SECONDS = 365 * 24 * 60 * 60


def normalize_viewer_email(value: Any) -> str:
    """Trim and lowercase a self-reported viewer email

    Raises:
        ValidationError: Missing or malformed email
    """
    email = str(value or "").strip().lower()
    if not email:
        raise ValidationError("viewer_email is required")
    if len(email) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(email):
        raise ValidationError("viewer_email is not a valid email address")
    return email


def normalize_session_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    session_id = str(value).strip()
    if not session_id:
        return None
    if len(session_id) > MAX_SESSION_ID_LENGTH:
        raise ValidationError("session_id is too long")
    return session_id


def clamp_int(value: Any, minimum: int, maximum: int) -> int:
    """Coerce to an int within [minimum, maximum]; unparseable input maps to minimum"""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return minimum
    if not math.isfinite(number):
        return minimum
    return max(minimum, min(maximum, int(number)))


def _stamp_first_open(db: Session, distribution: Distribution, now: datetime) -> bool:
    """Set first_open_at only while it is still null"""
    updated = db.query(Distribution).filter(
        Distribution.id == distribution.id,
        Distribution.first_open_at.is_(None)
    ).update({Distribution.first_open_at: now}, synchronize_session=False)
    return bool(updated)


def record_open(
    token: str,
    viewer_email: Any,
    session_id: Any = None,
    db: Session = None,
    now: Optional[datetime] = None,
    storage=None
) -> Dict[str, Any]:
    """Record that a viewer opened a distribution and hand back a signed document URL

    Args:
        token: Distribution token from the viewing link
        viewer_email: Email the viewer entered before viewing
        session_id: Client session id (None for clients that cannot keep one)
        db: Database session
        now: Ping time (defaults to now)
        storage: Storage collaborator (defaults to R2)

    Returns:
        Viewer access dict with the signed URL and document metadata

    Raises:
        ValidationError: Malformed viewer email or session id
        NotFound / Gone: Token unknown, revoked or document deleted
        StorageError: Database or object store failure
    """
    email = normalize_viewer_email(viewer_email)
    sid = normalize_session_id(session_id)
    now = ensure_utc(now) if now else utcnow()

    with tracer.start_as_current_span("record_open"):
        distribution = resolve(token, db)
        document = distribution.document
        storage = storage or get_r2_service()
        signed_url = storage.generate_download_url(document.storage_path, expires_in=settings.SIGNED_URL_EXPIRY)

        try:
            apply_statement_timeout(db, settings.TRACKING_STATEMENT_TIMEOUT_MS)
            is_new_session, is_first_contact = resolve_session(db, distribution, email, sid, now)
            first_open = _stamp_first_open(db, distribution, now)
            if is_new_session:
                increment_opened(db, distribution.tenant_id, distribution.document_id, business_day(now))
                db.query(Distribution).filter(Distribution.id == distribution.id).update({
                    Distribution.total_open_count: Distribution.total_open_count + 1,
                    Distribution.last_opened_at: now,
                }, synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record open for distribution {distribution.id}: {e}")
            raise StorageError("Failed to record open") from e
        except StorageError:
            db.rollback()
            raise

    opens_counter.inc()
    if is_new_session:
        new_sessions_counter.inc()
    tracking_logger.info(
        f"Open recorded - distribution={distribution.id} viewer={email} "
        f"new_session={is_new_session} first_contact={is_first_contact} first_open={first_open}"
    )

    return {
        "viewable": True,
        "access_ref": signed_url,
        "is_new_session": is_new_session,
        "document": {
            "id": document.id,
            "filename": document.original_filename,
            "size": document.size_bytes or 0,
            "sent_at": distribution.sent_at,
            "token": distribution.token,
        },
    }


def record_progress(
    token: str,
    viewer_email: Any,
    read_percentage: Any = 0,
    page_reached: Any = 1,
    elapsed_seconds: Any = 0,
    db: Session = None,
    now: Optional[datetime] = None
) -> Dict[str, int]:
    """Merge a progress ping into the viewer's high-water marks

    Each maximum is combined with max(stored, incoming) inside a single upsert,
    so concurrent pings never lower a stored value. Opened counts are untouched.

    Returns:
        The stored maxima after the merge
    """
    email = normalize_viewer_email(viewer_email)
    now = ensure_utc(now) if now else utcnow()
    read_percentage = clamp_int(read_percentage, 0, MAX_READ_PERCENTAGE)
    page_reached = clamp_int(page_reached, 1, MAX_PAGE)
    elapsed_seconds = clamp_int(elapsed_seconds, 0, MAX_ELAPSED_SECONDS)

    with tracer.start_as_current_span("record_progress"):
        distribution = resolve(token, db)

        insert = insert_for(db)
        stmt = insert(OpenEvent).values(
            tenant_id=distribution.tenant_id,
            distribution_id=distribution.id,
            document_id=distribution.document_id,
            viewer_email=email,
            first_seen_at=now,
            last_seen_at=now,
            max_read_percentage=read_percentage,
            max_page_reached=page_reached,
            max_elapsed_seconds=elapsed_seconds,
            session_count=0,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["distribution_id", "viewer_email"],
            set_={
                "max_read_percentage": greatest(OpenEvent.max_read_percentage, stmt.excluded.max_read_percentage),
                "max_page_reached": greatest(OpenEvent.max_page_reached, stmt.excluded.max_page_reached),
                "max_elapsed_seconds": greatest(OpenEvent.max_elapsed_seconds, stmt.excluded.max_elapsed_seconds),
                "last_seen_at": greatest(OpenEvent.last_seen_at, stmt.excluded.last_seen_at),
            },
        )

        try:
            apply_statement_timeout(db, settings.TRACKING_STATEMENT_TIMEOUT_MS)
            db.execute(stmt)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to record progress for distribution {distribution.id}: {e}")
            raise StorageError("Failed to record progress") from e

        event = db.query(OpenEvent).filter(
            OpenEvent.distribution_id == distribution.id,
            OpenEvent.viewer_email == email
        ).first()

    progress_pings_counter.inc()
    return {
        "read_percentage": event.max_read_percentage,
        "page_reached": event.max_page_reached,
        "elapsed_seconds": event.max_elapsed_seconds,
    }
