"""Dashboard read models over distributions, open events and daily metrics

Every query is filtered by tenant_id in SQL. Hour, weekday and day bucketing
use the business timezone, the same one the daily rollup is keyed by.
"""
import csv
import io
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from doctrack.core.errors import ValidationError
from doctrack.models.daily_metric import DailyMetric
from doctrack.models.distribution import Distribution
from doctrack.models.document import Document
from doctrack.models.open_event import OpenEvent
from doctrack.services.intent_service import TIER_LABELS, TIER_SCORES, score_intent
from doctrack.utils.business_time import (
    business_day, business_day_start, day_range, ensure_utc, to_business, utcnow
)

logger = logging.getLogger(__name__)

RANGES = {"7d": 7, "30d": 30, "90d": 90}
DEFAULT_RANGE = "30d"

WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]
TIME_BUCKETS = ("morning", "afternoon", "evening")

LEADERBOARD_LIMIT = 8
COMPANY_LIMIT = 20
RECENT_LIMIT = 50
UNKNOWN_COMPANY = "(unknown)"


def resolve_range(range_key: Optional[str], now: Optional[datetime] = None) -> Tuple[Any, Any, datetime]:
    """Turn a range preset into (first_day, last_day, since_utc)

    The window covers whole business days ending today.
    """
    range_key = range_key or DEFAULT_RANGE
    if range_key not in RANGES:
        raise ValidationError(f"range must be one of {', '.join(RANGES)}")

    now = ensure_utc(now) if now else utcnow()
    last_day = business_day(now)
    first_day = last_day - timedelta(days=RANGES[range_key] - 1)
    return first_day, last_day, business_day_start(first_day)


def company_label(distribution: Distribution) -> str:
    """Company name, falling back to the homepage URL, then UNKNOWN_COMPANY"""
    name = (distribution.recipient_company_name or "").strip()
    if name:
        return name
    url = (distribution.recipient_homepage_url or "").strip()
    return url or UNKNOWN_COMPANY


def time_bucket(hour: int) -> str:
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    return "evening"


def slot_label(start_hour: int) -> str:
    return f"{start_hour:02d}-{start_hour + 2:02d}"


def _events(db: Session, tenant_id: int, since: datetime,
            document_id: Optional[int], company: Optional[str]) -> List[Tuple[OpenEvent, Distribution]]:
    query = db.query(OpenEvent, Distribution).join(
        Distribution, OpenEvent.distribution_id == Distribution.id
    ).filter(
        OpenEvent.tenant_id == tenant_id,
        Distribution.tenant_id == tenant_id,
        OpenEvent.first_seen_at >= since
    )
    if document_id is not None:
        query = query.filter(OpenEvent.document_id == document_id)
    if company:
        query = query.filter(Distribution.recipient_company_name == company)
    return query.all()


def _recipient_distributions(db: Session, tenant_id: int, since: datetime,
                             document_id: Optional[int], company: Optional[str]) -> List[Distribution]:
    """Distributions with recipient details sent within the window"""
    query = db.query(Distribution).filter(
        Distribution.tenant_id == tenant_id,
        Distribution.sent_at >= since,
        (func.coalesce(func.trim(Distribution.recipient_company_name), "") != "")
        | (func.coalesce(func.trim(Distribution.recipient_homepage_url), "") != "")
    )
    if document_id is not None:
        query = query.filter(Distribution.document_id == document_id)
    if company:
        query = query.filter(Distribution.recipient_company_name == company)
    return query.all()


def _rollup_totals(db: Session, tenant_id: int, first_day, last_day, document_id: Optional[int]) -> Tuple[int, int]:
    query = db.query(
        func.coalesce(func.sum(DailyMetric.sent_count), 0),
        func.coalesce(func.sum(DailyMetric.opened_count), 0)
    ).filter(
        DailyMetric.tenant_id == tenant_id,
        DailyMetric.day >= first_day,
        DailyMetric.day <= last_day
    )
    if document_id is not None:
        query = query.filter(DailyMetric.document_id == document_id)
    sent, opened = query.one()
    return int(sent), int(opened)


def open_rate(opened: int, sent: int) -> float:
    """opened/sent as a percentage clamped to [0, 100]"""
    if sent <= 0:
        return 0.0
    return round(max(0.0, min(100.0, opened * 100.0 / sent)), 1)


def _slot_counts(events: List[Tuple[OpenEvent, Distribution]]) -> List[int]:
    slots = [0] * 12
    for event, _ in events:
        slots[to_business(event.first_seen_at).hour // 2] += 1
    return slots


def _peak_slot(events: List[Tuple[OpenEvent, Distribution]]) -> str:
    slots = _slot_counts(events)
    if not any(slots):
        return "-"
    best = max(range(12), key=lambda i: (slots[i], -i))
    return slot_label(best * 2)


def get_summary(tenant_id: int, db: Session, range_key: str = DEFAULT_RANGE,
                document_id: Optional[int] = None, company: Optional[str] = None,
                now: Optional[datetime] = None) -> Dict[str, Any]:
    """Headline numbers: opens, unique viewers, open rate and peak two-hour slot

    With a company filter the rate is computed from distributions (the daily
    rollup has no company dimension), otherwise from the daily rollup.
    """
    first_day, last_day, since = resolve_range(range_key, now)
    events = _events(db, tenant_id, since, document_id, company)

    if company:
        distributions = _recipient_distributions(db, tenant_id, since, document_id, company)
        sent = len(distributions)
        opened = sum(1 for d in distributions if d.first_open_at is not None)
    else:
        sent, opened = _rollup_totals(db, tenant_id, first_day, last_day, document_id)

    return {
        "range": range_key,
        "total_opens": len(events),
        "unique_viewers": len({event.viewer_email for event, _ in events}),
        "sent": sent,
        "opened": opened,
        "open_rate_percent": open_rate(opened, sent),
        "peak_slot": _peak_slot(events),
    }


def get_leaderboard(tenant_id: int, db: Session, range_key: str = DEFAULT_RANGE,
                    document_id: Optional[int] = None, company: Optional[str] = None,
                    now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Documents ranked by views, with unique viewer counts"""
    _, _, since = resolve_range(range_key, now)
    events = _events(db, tenant_id, since, document_id, company)

    stats: Dict[int, Dict[str, Any]] = {}
    for event, _ in events:
        entry = stats.setdefault(event.document_id, {"views": 0, "viewers": set()})
        entry["views"] += 1
        entry["viewers"].add(event.viewer_email)

    titles = dict(db.query(Document.id, Document.title).filter(
        Document.tenant_id == tenant_id,
        Document.id.in_(list(stats) or [-1])
    ).all())

    rows = [
        {
            "document_id": doc_id,
            "title": titles.get(doc_id, ""),
            "views": entry["views"],
            "unique_viewers": len(entry["viewers"]),
        }
        for doc_id, entry in stats.items()
    ]
    rows.sort(key=lambda r: (-r["views"], -r["unique_viewers"], r["document_id"]))
    return rows[:LEADERBOARD_LIMIT]


def get_timeline(tenant_id: int, db: Session, range_key: str = DEFAULT_RANGE,
                 document_id: Optional[int] = None, company: Optional[str] = None,
                 now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Sent and opened counts for every business day in the window"""
    first_day, last_day, since = resolve_range(range_key, now)
    series = {day: {"sent": 0, "opened": 0} for day in day_range(first_day, last_day)}

    if company:
        for distribution in _recipient_distributions(db, tenant_id, since, document_id, company):
            day = business_day(distribution.sent_at)
            if day in series:
                series[day]["sent"] += 1
        for event, _ in _events(db, tenant_id, since, document_id, company):
            day = business_day(event.first_seen_at)
            if day in series:
                series[day]["opened"] += event.session_count or 1
    else:
        query = db.query(DailyMetric).filter(
            DailyMetric.tenant_id == tenant_id,
            DailyMetric.day >= first_day,
            DailyMetric.day <= last_day
        )
        if document_id is not None:
            query = query.filter(DailyMetric.document_id == document_id)
        for metric in query.all():
            series[metric.day]["sent"] += metric.sent_count
            series[metric.day]["opened"] += metric.opened_count

    return [
        {"date": day.isoformat(), "sent": counts["sent"], "opened": counts["opened"]}
        for day, counts in sorted(series.items())
    ]


def get_weekday_peaks(tenant_id: int, db: Session, range_key: str = DEFAULT_RANGE,
                      document_id: Optional[int] = None, company: Optional[str] = None,
                      now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Weekday x morning/afternoon/evening histogram of first opens, Monday first"""
    _, _, since = resolve_range(range_key, now)
    grid = [{bucket: 0 for bucket in TIME_BUCKETS} for _ in WEEKDAYS]

    for event, _ in _events(db, tenant_id, since, document_id, company):
        local = to_business(event.first_seen_at)
        grid[local.weekday()][time_bucket(local.hour)] += 1

    return [
        {"weekday": name, **buckets, "total": sum(buckets.values())}
        for name, buckets in zip(WEEKDAYS, grid)
    ]


def get_view_slots(tenant_id: int, db: Session, range_key: str = DEFAULT_RANGE,
                   document_id: Optional[int] = None, company: Optional[str] = None,
                   now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """First opens per two-hour slot of the business day, all twelve slots"""
    _, _, since = resolve_range(range_key, now)
    slots = _slot_counts(_events(db, tenant_id, since, document_id, company))
    return [{"slot": slot_label(i * 2), "views": views} for i, views in enumerate(slots)]


def _engagement_by_distribution(db: Session, tenant_id: int, distribution_ids: List[int]) -> Dict[int, Dict[str, int]]:
    if not distribution_ids:
        return {}
    rows = db.query(
        OpenEvent.distribution_id,
        func.max(OpenEvent.max_read_percentage),
        func.max(OpenEvent.max_elapsed_seconds),
        func.sum(OpenEvent.session_count),
    ).filter(
        OpenEvent.tenant_id == tenant_id,
        OpenEvent.distribution_id.in_(distribution_ids)
    ).group_by(OpenEvent.distribution_id).all()
    return {
        distribution_id: {
            "read_percentage": int(read or 0),
            "elapsed_seconds": int(elapsed or 0),
            "sessions": int(sessions or 0),
        }
        for distribution_id, read, elapsed, sessions in rows
    }


def hot_score(open_count: int, read_percentage: int, elapsed_seconds: int) -> float:
    return round(open_count * 20 + read_percentage + elapsed_seconds / 10, 1)


def get_intent_scores(tenant_id: int, db: Session, range_key: str = DEFAULT_RANGE,
                      document_id: Optional[int] = None, company: Optional[str] = None,
                      now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Per-recipient intent table, hottest leads first"""
    _, _, since = resolve_range(range_key, now)
    distributions = _recipient_distributions(db, tenant_id, since, document_id, company)
    engagement = _engagement_by_distribution(db, tenant_id, [d.id for d in distributions])

    rows = []
    for distribution in distributions:
        tier = score_intent(distribution.sent_at, distribution.first_open_at)
        stats = engagement.get(distribution.id, {"read_percentage": 0, "elapsed_seconds": 0, "sessions": 0})
        open_count = distribution.total_open_count or 0
        rows.append({
            "token": distribution.token,
            "document_id": distribution.document_id,
            "document_title": distribution.document.title if distribution.document else "",
            "company": company_label(distribution),
            "contact_name": distribution.recipient_contact_name,
            "email": distribution.recipient_email,
            "sent_at": ensure_utc(distribution.sent_at),
            "first_open_at": ensure_utc(distribution.first_open_at) if distribution.first_open_at else None,
            "tier": tier,
            "score": TIER_SCORES[tier],
            "open_count": open_count,
            "read_percentage": stats["read_percentage"],
            "elapsed_seconds": stats["elapsed_seconds"],
            "hot_score": hot_score(open_count, stats["read_percentage"], stats["elapsed_seconds"]),
        })

    rows.sort(key=lambda r: (-r["score"], -r["hot_score"], r["sent_at"]))
    return rows


def export_intent_csv(tenant_id: int, db: Session, range_key: str = DEFAULT_RANGE,
                      document_id: Optional[int] = None, company: Optional[str] = None,
                      now: Optional[datetime] = None) -> str:
    """Intent table as CSV (UTF-8 BOM so spreadsheet tools detect the encoding)"""
    rows = get_intent_scores(tenant_id, db, range_key, document_id, company, now)

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow([
        "company", "contact_name", "email", "document", "sent_at", "first_open_at",
        "intent", "intent_score", "open_count", "read_percentage", "elapsed_seconds"
    ])
    for row in rows:
        writer.writerow([
            row["company"],
            row["contact_name"] or "",
            row["email"] or "",
            row["document_title"],
            row["sent_at"].isoformat(),
            row["first_open_at"].isoformat() if row["first_open_at"] else "",
            TIER_LABELS[row["tier"]],
            row["score"],
            row["open_count"],
            row["read_percentage"],
            row["elapsed_seconds"],
        ])
    return "\ufeff" + buffer.getvalue()


def get_company_engagement(tenant_id: int, db: Session, range_key: str = DEFAULT_RANGE,
                           document_id: Optional[int] = None, company: Optional[str] = None,
                           now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Average read completion per recipient company"""
    _, _, since = resolve_range(range_key, now)

    stats: Dict[str, Dict[str, Any]] = {}
    for event, distribution in _events(db, tenant_id, since, document_id, company):
        entry = stats.setdefault(company_label(distribution), {"views": 0, "read_total": 0})
        entry["views"] += 1
        entry["read_total"] += event.max_read_percentage

    rows = [
        {
            "company": name,
            "views": entry["views"],
            "avg_read_percentage": round(entry["read_total"] / entry["views"], 1),
        }
        for name, entry in stats.items()
    ]
    rows.sort(key=lambda r: (-r["avg_read_percentage"], -r["views"], r["company"]))
    return rows[:COMPANY_LIMIT]


def get_recent_activity(tenant_id: int, db: Session, document_id: Optional[int] = None,
                        company: Optional[str] = None) -> List[Dict[str, Any]]:
    """Latest viewer activity, newest first"""
    query = db.query(OpenEvent, Distribution, Document.title).join(
        Distribution, OpenEvent.distribution_id == Distribution.id
    ).join(
        Document, Distribution.document_id == Document.id
    ).filter(
        OpenEvent.tenant_id == tenant_id,
        Distribution.tenant_id == tenant_id
    )
    if document_id is not None:
        query = query.filter(OpenEvent.document_id == document_id)
    if company:
        query = query.filter(Distribution.recipient_company_name == company)

    rows = query.order_by(OpenEvent.last_seen_at.desc(), OpenEvent.id.desc()).limit(RECENT_LIMIT).all()
    return [
        {
            "document_id": event.document_id,
            "document_title": title,
            "company": company_label(distribution),
            "viewer_email": event.viewer_email,
            "first_seen_at": ensure_utc(event.first_seen_at),
            "last_seen_at": ensure_utc(event.last_seen_at),
            "read_percentage": event.max_read_percentage,
            "page_reached": event.max_page_reached,
            "elapsed_seconds": event.max_elapsed_seconds,
        }
        for event, distribution, title in rows
    ]


def get_content_insights(tenant_id: int, db: Session, range_key: str = DEFAULT_RANGE,
                         now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Average time spent and read completion per document"""
    _, _, since = resolve_range(range_key, now)
    rows = db.query(
        Document.id,
        Document.title,
        func.count(OpenEvent.id),
        func.avg(OpenEvent.max_elapsed_seconds),
        func.avg(OpenEvent.max_read_percentage),
    ).join(
        OpenEvent, OpenEvent.document_id == Document.id
    ).filter(
        Document.tenant_id == tenant_id,
        OpenEvent.tenant_id == tenant_id,
        OpenEvent.first_seen_at >= since
    ).group_by(Document.id, Document.title).all()

    insights = [
        {
            "document_id": doc_id,
            "title": title,
            "viewers": int(viewers),
            "avg_elapsed_seconds": round(float(avg_elapsed or 0), 1),
            "avg_read_percentage": round(float(avg_read or 0), 1),
        }
        for doc_id, title, viewers, avg_elapsed, avg_read in rows
    ]
    insights.sort(key=lambda r: (-r["viewers"], r["document_id"]))
    return insights


def get_filter_options(tenant_id: int, db: Session) -> Dict[str, Any]:
    """Documents and recipient company names available as dashboard filters"""
    documents = db.query(Document.id, Document.title).filter(
        Document.tenant_id == tenant_id,
        Document.is_deleted.is_(False)
    ).order_by(Document.title).all()

    companies = db.query(Distribution.recipient_company_name).filter(
        Distribution.tenant_id == tenant_id,
        Distribution.recipient_company_name.isnot(None),
        Distribution.recipient_company_name != ""
    ).distinct().order_by(Distribution.recipient_company_name).all()

    return {
        "documents": [{"id": doc_id, "title": title} for doc_id, title in documents],
        "companies": [name for (name,) in companies],
    }
