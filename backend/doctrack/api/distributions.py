"""Distribution registry API routes"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from doctrack.core.config import settings
from doctrack.core.security import require_tenant
from doctrack.db.session import get_db
from doctrack.models.distribution import Distribution
from doctrack.schemas.distributions import (
    BatchRegisterRequest, RegisterDistributionRequest, ShareLinkRequest
)
from doctrack.services.distribution_service import (
    get_or_create_share_link, register, register_batch, revoke_token
)

router = APIRouter(prefix="/api/distributions", tags=["distributions"])


def build_distribution_response(distribution: Distribution) -> dict:
    return {
        "id": distribution.id,
        "token": distribution.token,
        "view_url": f"{settings.FRONTEND_URL.rstrip('/')}/view/{distribution.token}",
        "document_id": distribution.document_id,
        "source": distribution.source,
        "sent_at": distribution.sent_at,
    }


@router.post("")
def register_distribution(
    body: RegisterDistributionRequest,
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Register a distribution for one recipient and return its token"""
    distribution = register(
        tenant_id,
        body.document_id,
        body.recipient.model_dump(),
        sent_at=body.sent_at,
        db=db
    )
    return build_distribution_response(distribution)


@router.post("/batch")
def register_distribution_batch(
    body: BatchRegisterRequest,
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Register distributions for many recipients of one document"""
    distributions = register_batch(
        tenant_id,
        body.document_id,
        [recipient.model_dump() for recipient in body.recipients],
        sent_at=body.sent_at,
        db=db
    )
    return {
        "count": len(distributions),
        "distributions": [build_distribution_response(d) for d in distributions],
    }


@router.post("/share-link")
def create_share_link(
    body: ShareLinkRequest,
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Get the document's reusable share link, issuing one if needed"""
    distribution, created = get_or_create_share_link(tenant_id, body.document_id, db)
    return {**build_distribution_response(distribution), "created": created}


@router.post("/{token}/revoke")
def revoke_distribution(
    token: str,
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Revoke one distribution on the tenant's request (reason is always "manual")"""
    changed = revoke_token(tenant_id, token, "manual", db)
    return {"revoked": True, "changed": changed}
