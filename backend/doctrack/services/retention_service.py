"""Retention sweep: age-based deletion and revocation in bounded batches

Policies are independent and idempotent. Each batch selects the oldest
eligible ids, re-checks eligibility in the write itself and commits, so an
interrupted run only leaves eligible rows for the next run.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import and_, exists, func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from doctrack.core.config import settings
from doctrack.core.metrics import cleanup_rows_counter
from doctrack.db.session import apply_statement_timeout
from doctrack.models.daily_metric import DailyMetric
from doctrack.models.distribution import Distribution
from doctrack.models.open_event import OpenEvent
from doctrack.utils.business_time import business_day, ensure_utc, utcnow

cleanup_logger = logging.getLogger("cleanup")

PREVIEW = "preview_distributions_deleted"
UNOPENED = "unopened_distributions_revoked"
OPEN_EVENTS = "open_events_deleted"
DAILY_METRICS = "daily_metrics_deleted"


def _blank(column):
    return func.coalesce(func.trim(column), "") == ""


def _is_preview():
    return and_(_blank(Distribution.recipient_company_name), _blank(Distribution.recipient_homepage_url))


def _has_open_event():
    return exists().where(OpenEvent.distribution_id == Distribution.id)


def _run_batches(db: Session, select_ids: Callable[[int], List[int]], apply: Callable[[List[int]], int]) -> int:
    """Repeat select/apply/commit until nothing is eligible or the batch cap is hit"""
    total = 0
    for _ in range(settings.CLEANUP_MAX_BATCHES):
        apply_statement_timeout(db, settings.CLEANUP_STATEMENT_TIMEOUT_MS)
        ids = select_ids(settings.CLEANUP_BATCH_SIZE)
        if not ids:
            break
        affected = apply(ids)
        db.commit()
        total += affected
        if len(ids) < settings.CLEANUP_BATCH_SIZE:
            break
    return total


def sweep_preview_distributions(db: Session, now: datetime) -> int:
    """Hard-delete recipient-less distributions older than PREVIEW_RETENTION_DAYS"""
    cutoff = now - timedelta(days=settings.PREVIEW_RETENTION_DAYS)
    eligible = and_(Distribution.created_at < cutoff, _is_preview())

    def select_ids(limit):
        rows = db.query(Distribution.id).filter(eligible).order_by(
            Distribution.created_at.asc(), Distribution.id.asc()
        ).limit(limit).all()
        return [row.id for row in rows]

    def apply(ids):
        db.query(OpenEvent).filter(OpenEvent.distribution_id.in_(ids)).delete(synchronize_session=False)
        return db.query(Distribution).filter(Distribution.id.in_(ids), eligible).delete(synchronize_session=False)

    return _run_batches(db, select_ids, apply)


def sweep_unopened_distributions(db: Session, now: datetime) -> int:
    """Revoke (never delete) sent distributions nobody opened within UNOPENED_RETENTION_DAYS

    Any OpenEvent for the distribution exempts it, even if first_open_at has
    not been written yet.
    """
    cutoff = now - timedelta(days=settings.UNOPENED_RETENTION_DAYS)
    eligible = and_(
        Distribution.revoked.is_(False),
        Distribution.first_open_at.is_(None),
        Distribution.sent_at < cutoff,
        or_(~_blank(Distribution.recipient_company_name), ~_blank(Distribution.recipient_homepage_url)),
        ~_has_open_event()
    )

    def select_ids(limit):
        rows = db.query(Distribution.id).filter(eligible).order_by(
            Distribution.sent_at.asc(), Distribution.id.asc()
        ).limit(limit).all()
        return [row.id for row in rows]

    def apply(ids):
        return db.query(Distribution).filter(Distribution.id.in_(ids), eligible).update({
            Distribution.revoked: True,
            Distribution.revoked_at: now,
            Distribution.revoked_reason: "expired",
        }, synchronize_session=False)

    return _run_batches(db, select_ids, apply)


def sweep_open_events(db: Session, now: datetime) -> int:
    """Hard-delete open events first seen more than EVENT_RETENTION_DAYS ago"""
    cutoff = now - timedelta(days=settings.EVENT_RETENTION_DAYS)

    def select_ids(limit):
        rows = db.query(OpenEvent.id).filter(OpenEvent.first_seen_at < cutoff).order_by(
            OpenEvent.first_seen_at.asc(), OpenEvent.id.asc()
        ).limit(limit).all()
        return [row.id for row in rows]

    def apply(ids):
        return db.query(OpenEvent).filter(
            OpenEvent.id.in_(ids),
            OpenEvent.first_seen_at < cutoff
        ).delete(synchronize_session=False)

    return _run_batches(db, select_ids, apply)


def sweep_daily_metrics(db: Session, now: datetime) -> int:
    """Hard-delete rollup rows for business days older than EVENT_RETENTION_DAYS"""
    cutoff_day = business_day(now - timedelta(days=settings.EVENT_RETENTION_DAYS))

    def select_ids(limit):
        rows = db.query(DailyMetric.id).filter(DailyMetric.day < cutoff_day).order_by(
            DailyMetric.day.asc(), DailyMetric.id.asc()
        ).limit(limit).all()
        return [row.id for row in rows]

    def apply(ids):
        return db.query(DailyMetric).filter(
            DailyMetric.id.in_(ids),
            DailyMetric.day < cutoff_day
        ).delete(synchronize_session=False)

    return _run_batches(db, select_ids, apply)


POLICIES = (
    (PREVIEW, sweep_preview_distributions),
    (UNOPENED, sweep_unopened_distributions),
    (OPEN_EVENTS, sweep_open_events),
    (DAILY_METRICS, sweep_daily_metrics),
)


def run_cleanup(db: Session, now: Optional[datetime] = None) -> Dict[str, object]:
    """Apply every retention policy once

    A failing policy is rolled back and logged; the remaining policies still run
    and the failed one is retried on the next invocation.

    Returns:
        Rows affected per policy plus the names of policies that failed
    """
    now = ensure_utc(now) if now else utcnow()
    result: Dict[str, object] = {name: 0 for name, _ in POLICIES}
    failed = []

    for name, policy in POLICIES:
        try:
            affected = policy(db, now)
        except SQLAlchemyError as e:
            db.rollback()
            cleanup_logger.error(f"Retention policy {name} failed: {e}", exc_info=True)
            failed.append(name)
            continue
        result[name] = affected
        if affected:
            cleanup_rows_counter.labels(policy=name).inc(affected)
            cleanup_logger.info(f"Retention policy {name}: {affected} rows")

    result["failed_policies"] = failed
    return result
