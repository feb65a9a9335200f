"""Document model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, DateTime, BigInteger, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from doctrack.models.base import Base


class Document(Base):
    """A tenant-owned document stored in the object store"""
    __tablename__ = "documents"
    
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    title = Column(String(255), nullable=False)
    original_filename = Column(String(255), nullable=False)
    storage_path = Column(String(512), nullable=False)  # Object key in the bucket
    size_bytes = Column(BigInteger, nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    # Object-store purge after deletion: none, pending, purged, failed
    purge_status = Column(String(20), default="none", nullable=False)
    purge_attempts = Column(Integer, default=0, nullable=False)
    purge_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    
    distributions = relationship("Distribution", back_populates="document")
    
    __table_args__ = (
        Index('ix_documents_tenant_deleted', 'tenant_id', 'is_deleted'),
    )
