"""Document catalogue API routes"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from doctrack.core.security import require_tenant
from doctrack.db.session import get_db
from doctrack.models.document import Document
from doctrack.schemas.distributions import CreateDocumentRequest
from doctrack.services.document_service import create_document, delete_document, list_documents

router = APIRouter(prefix="/api/documents", tags=["documents"])


def build_document_response(document: Document) -> dict:
    return {
        "id": document.id,
        "title": document.title,
        "filename": document.original_filename,
        "size": document.size_bytes or 0,
        "is_deleted": document.is_deleted,
        "purge_status": document.purge_status,
        "created_at": document.created_at,
    }


@router.post("")
def add_document(
    body: CreateDocumentRequest,
    tenant_id: int = Depends(require_tenant),
    db: Session = Depends(get_db)
):
    """Register an uploaded document"""
    document = create_document(
        tenant_id,
        body.title,
        body.original_filename,
        body.storage_path,
        body.size_bytes,
        db=db
    )
    return build_document_response(document)


@router.get("")
def get_documents(tenant_id: int = Depends(require_tenant), db: Session = Depends(get_db)):
    """List the tenant's live documents"""
    return [build_document_response(d) for d in list_documents(tenant_id, db)]


@router.delete("/{document_id}")
def remove_document(document_id: int, tenant_id: int = Depends(require_tenant), db: Session = Depends(get_db)):
    """Delete a document and revoke all of its distributions"""
    revoked = delete_document(tenant_id, document_id, db)
    return {"deleted": True, "revoked_distributions": revoked}
