"""Daily rollup counters (per document, per business-timezone day)"""
import logging
from datetime import date, datetime
from typing import Dict, Iterable, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from doctrack.core.errors import StorageError, ValidationError
from doctrack.db.session import insert_for
from doctrack.models.daily_metric import DailyMetric
from doctrack.utils.business_time import business_day, utcnow

logger = logging.getLogger(__name__)

_COUNTERS = {
    "sent": DailyMetric.sent_count,
    "opened": DailyMetric.opened_count,
}


def _increment(db: Session, tenant_id: int, document_id: int, day: date, counter: str, delta: int) -> None:
    """Add delta to one counter with a single INSERT ... ON CONFLICT DO UPDATE
    
    Does not commit; the caller owns the transaction.
    """
    if delta < 0:
        raise ValidationError("Rollup counters only increase")
    if delta == 0:
        return
    
    column = _COUNTERS[counter]
    insert = insert_for(db)
    values = {
        "tenant_id": tenant_id,
        "document_id": document_id,
        "day": day,
        "sent_count": delta if counter == "sent" else 0,
        "opened_count": delta if counter == "opened" else 0,
        "updated_at": utcnow(),
    }
    stmt = insert(DailyMetric).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["document_id", "day"],
        set_={column.key: column + delta, "updated_at": stmt.excluded.updated_at},
    )
    try:
        db.execute(stmt)
    except SQLAlchemyError as e:
        logger.error(f"Rollup increment failed for document {document_id} on {day}: {e}")
        raise StorageError("Failed to update daily metrics") from e


def increment_sent(db: Session, tenant_id: int, document_id: int, day: date, delta: int = 1) -> None:
    _increment(db, tenant_id, document_id, day, "sent", delta)


def increment_opened(db: Session, tenant_id: int, document_id: int, day: date, delta: int = 1) -> None:
    _increment(db, tenant_id, document_id, day, "opened", delta)


def increment_sent_grouped(db: Session, tenant_id: int, items: Iterable[Tuple[int, datetime]]) -> Dict[Tuple[int, date], int]:
    """Increment sent counts for many (document_id, sent_at) pairs
    
    Pairs are grouped by (document, business day) first so a bulk send issues
    one atomic increment per group instead of one per recipient.
    
    Returns:
        The applied deltas keyed by (document_id, day)
    """
    grouped: Dict[Tuple[int, date], int] = {}
    for document_id, sent_at in items:
        key = (document_id, business_day(sent_at))
        grouped[key] = grouped.get(key, 0) + 1
    
    for (document_id, day), delta in grouped.items():
        increment_sent(db, tenant_id, document_id, day, delta)
    
    return grouped


def get_daily_metric(db: Session, document_id: int, day: date):
    return db.query(DailyMetric).filter(
        DailyMetric.document_id == document_id,
        DailyMetric.day == day
    ).first()
