"""OpenEvent model"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Index, UniqueConstraint
from datetime import datetime, timezone
from doctrack.models.base import Base


class OpenEvent(Base):
    """Engagement high-water marks for one (distribution, viewer) pair"""
    __tablename__ = "open_events"
    
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    distribution_id = Column(Integer, ForeignKey("distributions.id", ondelete="CASCADE"), nullable=False, index=True)
    document_id = Column(Integer, nullable=False, index=True)
    viewer_email = Column(String(255), nullable=False)
    first_seen_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    # Monotonic maxima, never lowered
    max_read_percentage = Column(Integer, default=0, nullable=False)
    max_page_reached = Column(Integer, default=1, nullable=False)
    max_elapsed_seconds = Column(Integer, default=0, nullable=False)
    session_count = Column(Integer, default=0, nullable=False)
    last_session_id = Column(String(128), nullable=True)
    
    __table_args__ = (
        UniqueConstraint('distribution_id', 'viewer_email', name='uq_open_events_distribution_viewer'),
        Index('ix_open_events_tenant_first_seen', 'tenant_id', 'first_seen_at'),
        Index('ix_open_events_last_seen', 'last_seen_at'),
    )
