"""Public viewer API routes (open/progress pings and link checks)"""
import logging

from fastapi import APIRouter, Depends, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from doctrack.core.errors import Gone, NotFound
from doctrack.core.metrics import rejected_pings_counter
from doctrack.db.session import get_db
from doctrack.schemas.tracking import OpenRequest, ProgressRequest
from doctrack.services.distribution_service import check, resolve
from doctrack.services.engagement_service import record_open, record_progress

tracking_logger = logging.getLogger("tracking")

router = APIRouter(prefix="/api/view", tags=["viewer"])

# Viewers get the same answer for unknown and revoked links
LINK_INVALID = "This link is no longer valid"


def _link_invalid(token: str, exc: Exception) -> JSONResponse:
    reason = "gone" if isinstance(exc, Gone) else "not_found"
    rejected_pings_counter.labels(reason=reason).inc()
    tracking_logger.info(f"Rejected viewer request for token {token[:8]}...: {reason} ({exc})")
    return JSONResponse(status_code=404, content={"error": LINK_INVALID})


@router.post("/{token}/open")
def open_document(token: str, body: OpenRequest, db: Session = Depends(get_db)):
    """Record an open and return a short-lived signed URL for the document"""
    try:
        access = record_open(token, body.viewer_email, body.session_id, db=db)
    except (NotFound, Gone) as e:
        return _link_invalid(token, e)
    
    return {
        "viewable": True,
        "access_ref": access["access_ref"],
        "document": access["document"],
    }


@router.post("/{token}/progress")
def report_progress(token: str, body: ProgressRequest, db: Session = Depends(get_db)):
    """Merge a progress ping into the viewer's high-water marks"""
    try:
        stored = record_progress(
            token,
            body.viewer_email,
            read_percentage=body.read_percentage,
            page_reached=body.max_page_reached,
            elapsed_seconds=body.elapsed_seconds,
            db=db
        )
    except (NotFound, Gone) as e:
        return _link_invalid(token, e)
    
    return {"ok": True, "stored": stored}


@router.get("/{token}/check")
def check_link(token: str, db: Session = Depends(get_db)):
    """Side-effect free check: viewable, gone or not_found"""
    return {"status": check(token, db)}


@router.head("/{token}")
def head_link(token: str, db: Session = Depends(get_db)):
    """Existence check for link previews"""
    try:
        resolve(token, db)
    except (NotFound, Gone):
        return Response(status_code=404)
    return Response(status_code=200)


@router.get("/{token}")
def get_link_metadata(token: str, db: Session = Depends(get_db)):
    """Document metadata for the viewing page, without recording anything"""
    try:
        distribution = resolve(token, db)
    except (NotFound, Gone) as e:
        return _link_invalid(token, e)
    
    document = distribution.document
    return {
        "document_id": document.id,
        "title": document.title,
        "filename": document.original_filename,
        "size": document.size_bytes or 0,
        "sent_at": distribution.sent_at,
    }
