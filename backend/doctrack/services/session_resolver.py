"""Session continuity for viewer activity pings

A ping opens a new viewing session when the (distribution, viewer) pair has
never been seen, when the client-supplied session id differs from the stored
one, or, for clients that cannot keep a session id, when the previous ping is
older than SESSION_GAP_MINUTES.

Every decision is taken by a single conditional statement whose row count is
the answer, so two racing pings for the same key cannot both win.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from sqlalchemy import or_
from sqlalchemy.orm import Session

from doctrack.core.config import settings
from doctrack.db.session import greatest, insert_for
from doctrack.models.distribution import Distribution
from doctrack.models.open_event import OpenEvent

logger = logging.getLogger(__name__)


def session_gap() -> timedelta:
    return timedelta(minutes=settings.SESSION_GAP_MINUTES)


def _claim_first_contact(db: Session, distribution: Distribution, viewer_email: str,
                         session_id: Optional[str], now: datetime) -> bool:
    """Create the OpenEvent row seeded at floor values; False if it already exists"""
    insert = insert_for(db)
    stmt = insert(OpenEvent).values(
        tenant_id=distribution.tenant_id,
        distribution_id=distribution.id,
        document_id=distribution.document_id,
        viewer_email=viewer_email,
        first_seen_at=now,
        last_seen_at=now,
        max_read_percentage=0,
        max_page_reached=1,
        max_elapsed_seconds=0,
        session_count=1,
        last_session_id=session_id,
    ).on_conflict_do_nothing(index_elements=["distribution_id", "viewer_email"])
    return db.execute(stmt).rowcount == 1


def resolve_session(db: Session, distribution: Distribution, viewer_email: str,
                    session_id: Optional[str], now: datetime) -> Tuple[bool, bool]:
    """Decide whether a ping starts a new session and refresh the session markers

    Always leaves last_seen_at and last_session_id refreshed. Does not commit.

    Args:
        db: Database session
        distribution: Resolved, viewable distribution
        viewer_email: Normalized viewer identity
        session_id: Client session id, or None for legacy clients
        now: Ping time (UTC)

    Returns:
        (is_new_session, is_first_contact)
    """
    if _claim_first_contact(db, distribution, viewer_email, session_id, now):
        return True, True

    key = db.query(OpenEvent).filter(
        OpenEvent.distribution_id == distribution.id,
        OpenEvent.viewer_email == viewer_email
    )

    if session_id:
        novelty = or_(
            OpenEvent.session_count == 0,
            OpenEvent.last_session_id.is_(None),
            OpenEvent.last_session_id != session_id
        )
    else:
        novelty = or_(
            OpenEvent.session_count == 0,
            OpenEvent.last_seen_at < now - session_gap()
        )

    started = key.filter(novelty).update({
        OpenEvent.last_seen_at: greatest(OpenEvent.last_seen_at, now),
        OpenEvent.last_session_id: session_id,
        OpenEvent.session_count: OpenEvent.session_count + 1,
    }, synchronize_session=False)
    if started:
        return True, False

    key.update({
        OpenEvent.last_seen_at: greatest(OpenEvent.last_seen_at, now),
        OpenEvent.last_session_id: session_id,
    }, synchronize_session=False)
    return False, False
