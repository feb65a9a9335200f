"""Dashboard API routes (tenant-scoped read models)"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from doctrack.core.security import require_tenant
from doctrack.db.session import get_db
from doctrack.services import dashboard_service
from doctrack.services.dashboard_service import DEFAULT_RANGE

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


class DashboardFilters:
    """Query parameters shared by the range-based dashboard endpoints"""

    def __init__(
        self,
        range_key: str = Query(DEFAULT_RANGE, alias="range"),
        document_id: Optional[int] = Query(None),
        company: Optional[str] = Query(None, max_length=255),
    ):
        self.range_key = range_key
        self.document_id = document_id
        self.company = company.strip() if company and company.strip() else None

    def as_kwargs(self) -> dict:
        return {"range_key": self.range_key, "document_id": self.document_id, "company": self.company}


@router.get("/summary")
def summary(
    filters: DashboardFilters = Depends(),
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Headline numbers: opens, unique viewers, sent, opened, open rate, peak slot"""
    return dashboard_service.get_summary(tenant_id, db, **filters.as_kwargs())


@router.get("/leaderboard")
def leaderboard(
    filters: DashboardFilters = Depends(),
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    return dashboard_service.get_leaderboard(tenant_id, db, **filters.as_kwargs())


@router.get("/timeline")
def timeline(
    filters: DashboardFilters = Depends(),
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Sent and opened counts per business day"""
    return dashboard_service.get_timeline(tenant_id, db, **filters.as_kwargs())


@router.get("/weekday-peaks")
def weekday_peaks(
    filters: DashboardFilters = Depends(),
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    return dashboard_service.get_weekday_peaks(tenant_id, db, **filters.as_kwargs())


@router.get("/slots")
def view_slots(
    filters: DashboardFilters = Depends(),
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Views per two-hour slot in business time ("00-02" .. "22-24")"""
    return dashboard_service.get_view_slots(tenant_id, db, **filters.as_kwargs())


@router.get("/intent-scores")
def intent_scores(
    filters: DashboardFilters = Depends(),
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Recipients ranked by intent tier"""
    return dashboard_service.get_intent_scores(tenant_id, db, **filters.as_kwargs())


@router.get("/intent-scores/export")
def intent_scores_export(
    filters: DashboardFilters = Depends(),
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Intent scores as a spreadsheet-friendly CSV download"""
    content = dashboard_service.export_intent_csv(tenant_id, db, **filters.as_kwargs())
    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="intent-scores-{filters.range_key}.csv"'}
    )


@router.get("/recent")
def recent_activity(
    document_id: Optional[int] = Query(None),
    company: Optional[str] = Query(None, max_length=255),
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    return dashboard_service.get_recent_activity(tenant_id, db, document_id=document_id, company=company or None)


@router.get("/content-insights")
def content_insights(
    range_key: str = Query(DEFAULT_RANGE, alias="range"),
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Average time spent and read completion per document"""
    return dashboard_service.get_content_insights(tenant_id, db, range_key=range_key)


@router.get("/companies")
def companies(
    filters: DashboardFilters = Depends(),
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    return dashboard_service.get_company_engagement(tenant_id, db, **filters.as_kwargs())


@router.get("/filters")
def filter_options(tenant_id: int = Depends(require_tenant), db: Session = Depends(get_db)):
    """Documents and companies available as filters"""
    return dashboard_service.get_filter_options(tenant_id, db)
