"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from doctrack.models.base import Base
from doctrack.models.document import Document
from doctrack.models.distribution import Distribution
from doctrack.models.open_event import OpenEvent
from doctrack.models.daily_metric import DailyMetric

# Export all for convenience
__all__ = ["Base", "Document", "Distribution", "OpenEvent", "DailyMetric"]
