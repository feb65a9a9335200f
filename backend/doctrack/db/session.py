"""Database session management"""
from sqlalchemy import case, create_engine, text
from sqlalchemy.orm import Session, sessionmaker

from doctrack.core.config import settings
from doctrack.models.base import Base

# Create engine
engine = create_engine(
    settings.DATABASE_URL,
    pool_pre_ping=True,
    pool_recycle=3600
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database (create all tables)"""
    Base.metadata.create_all(bind=engine)


def dialect_name(db: Session) -> str:
    """Name of the SQL dialect behind a session ("postgresql", "sqlite", ...)"""
    return db.get_bind().dialect.name


def apply_statement_timeout(db: Session, timeout_ms: int) -> None:
    """Bound statement runtime for the current transaction (PostgreSQL only)"""
    if dialect_name(db) != "postgresql":
        return
    db.execute(text(f"SET LOCAL statement_timeout = {int(timeout_ms)}"))


def insert_for(db: Session):
    """Dialect-specific insert() that supports ON CONFLICT upserts"""
    if dialect_name(db) == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


def greatest(stored, incoming):
    """Portable GREATEST(stored, incoming) for monotonic columns"""
    return case((stored >= incoming, stored), else_=incoming)
