"""DailyMetric model"""
from sqlalchemy import Column, Integer, Date, DateTime, ForeignKey, Index, UniqueConstraint
from datetime import datetime, timezone
from doctrack.models.base import Base


class DailyMetric(Base):
    """Per-document sent/opened counters for one business-timezone day"""
    __tablename__ = "daily_metrics"
    
    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    document_id = Column(Integer, ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    day = Column(Date, nullable=False)
    sent_count = Column(Integer, default=0, nullable=False)
    opened_count = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    
    __table_args__ = (
        UniqueConstraint('document_id', 'day', name='uq_daily_metrics_document_day'),
        Index('ix_daily_metrics_tenant_day', 'tenant_id', 'day'),
    )
