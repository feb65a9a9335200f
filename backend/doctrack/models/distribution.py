"""Distribution model"""
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from doctrack.models.base import Base

REVOKE_REASONS = ("deleted", "expired", "manual")


class Distribution(Base):
    """One document sent to one recipient, addressed by an opaque token"""
    __tablename__ = "distributions"
    
    id = Column(Integer, primary_key=True, index=True)
    token = Column(String(64), unique=True, nullable=False, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False, index=True)
    source = Column(String(20), default="send", nullable=False)  # send, share
    recipient_company_name = Column(String(255), nullable=True)
    recipient_contact_name = Column(String(255), nullable=True)
    recipient_email = Column(String(255), nullable=True)
    recipient_homepage_url = Column(String(512), nullable=True)
    sent_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    first_open_at = Column(DateTime(timezone=True), nullable=True)  # Write-once
    last_opened_at = Column(DateTime(timezone=True), nullable=True)
    total_open_count = Column(Integer, default=0, nullable=False)
    revoked = Column(Boolean, default=False, nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_reason = Column(String(20), nullable=True)  # deleted, expired, manual
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    
    document = relationship("Document", back_populates="distributions", lazy="joined")
    
    __table_args__ = (
        Index('ix_distributions_tenant_sent_at', 'tenant_id', 'sent_at'),
        Index('ix_distributions_document_revoked', 'document_id', 'revoked'),
        Index('ix_distributions_sweep', 'revoked', 'first_open_at', 'sent_at'),
    )
    
    @property
    def has_recipient(self) -> bool:
        """Preview/share distributions carry neither a company nor a homepage URL"""
        return bool((self.recipient_company_name or "").strip() or (self.recipient_homepage_url or "").strip())
