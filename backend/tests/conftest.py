"""Shared pytest fixtures for test suite"""
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Generator
from unittest.mock import Mock, patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("MAINTENANCE_API_KEY", "test-maintenance-key")
os.environ.setdefault("BUSINESS_TIMEZONE", "Asia/Tokyo")

from doctrack.main import app
from doctrack.db.session import get_db
from doctrack.db import redis as redis_module
from doctrack.models import Base
from doctrack.models.document import Document
from doctrack.services.document_service import create_document
from doctrack.services.distribution_service import register


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

TENANT_ID = 1
OTHER_TENANT_ID = 2

# Fixed reference instant used by time-sensitive tests (a Wednesday, 19:00 in Tokyo)
NOW = datetime(2025, 3, 12, 10, 0, tzinfo=timezone.utc)
SIGNED_URL = "https://storage.example.com/signed/report.pdf?sig=abc"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()
    
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def mock_storage():
    """Object store double returning a fixed signed URL"""
    storage = Mock()
    storage.generate_download_url = Mock(return_value=SIGNED_URL)
    storage.delete_object = Mock(return_value=True)
    return storage


@pytest.fixture(scope="function", autouse=True)
def auto_mock_storage(mock_storage):
    """Automatically replace R2 for all tests so no request leaves the process"""
    with patch("doctrack.services.engagement_service.get_r2_service", return_value=mock_storage):
        with patch("doctrack.tasks.purge_worker.get_r2_service", return_value=mock_storage):
            yield mock_storage


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""
    
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture
    
    app.dependency_overrides[get_db] = override_get_db
    
    try:
        # Disable OpenTelemetry, table creation and background loops in tests
        with patch("doctrack.main.initialize_otel", return_value=False):
            with patch("doctrack.main.setup_otel_logging", return_value=False):
                with patch("doctrack.main.instrument_sqlalchemy"):
                    with patch("doctrack.main.init_db"):
                        with patch("doctrack.main.start_background_tasks"):
                            with TestClient(app) as test_client:
                                yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def login_as(client: TestClient, mock_redis) -> Callable[[int], TestClient]:
    """Point the client's dashboard session at a tenant"""
    
    def _login(tenant_id: int) -> TestClient:
        session_id = f"test-session-{tenant_id}"
        mock_redis.setex(f"session:{session_id}", 3600, str(tenant_id))
        client.cookies.set("session_id", session_id)
        return client
    
    return _login


@pytest.fixture(scope="function")
def tenant_client(login_as) -> TestClient:
    """Client authenticated as TENANT_ID"""
    return login_as(TENANT_ID)


@pytest.fixture(scope="function")
def test_document(db_session: Session) -> Document:
    return create_document(
        TENANT_ID,
        "Q3 Proposal",
        "proposal.pdf",
        "tenants/1/proposal.pdf",
        2048,
        db=db_session
    )


@pytest.fixture(scope="function")
def other_tenant_document(db_session: Session) -> Document:
    return create_document(
        OTHER_TENANT_ID,
        "Competitor Deck",
        "deck.pdf",
        "tenants/2/deck.pdf",
        1024,
        db=db_session
    )


@pytest.fixture(scope="function")
def make_distribution(db_session: Session, test_document: Document):
    """Factory registering a recipient distribution of test_document"""
    
    def _make(company_name="Acme Corp", sent_at=None, **recipient):
        recipient = {"company_name": company_name, **recipient}
        return register(TENANT_ID, test_document.id, recipient, sent_at=sent_at, db=db_session)
    
    return _make
