"""HTTP API tests"""
import pytest
from unittest.mock import patch

from doctrack.core.config import settings
from doctrack.tasks.cleanup import CLEANUP_LOCK_KEY

from conftest import OTHER_TENANT_ID, SIGNED_URL, TENANT_ID

VIEWER = "viewer@example.com"
LINK_INVALID = {"error": "This link is no longer valid"}
MAINTENANCE_HEADERS = {"X-Maintenance-Key": "test-maintenance-key"}


@pytest.mark.critical
class TestViewerEndpoints:
    """Test the public viewer endpoints"""
    
    def test_open_returns_signed_url(self, client, make_distribution):
        """Test POST /open records the open and returns a signed URL"""
        distribution = make_distribution()
        response = client.post(
            f"/api/view/{distribution.token}/open",
            json={"viewerEmail": VIEWER, "sessionId": "sid-1"}
        )
        
        assert response.status_code == 200
        data = response.json()
        assert data["viewable"] is True
        assert data["access_ref"] == SIGNED_URL
        assert data["document"]["filename"] == "proposal.pdf"
    
    def test_open_rejects_bad_email(self, client, make_distribution):
        """Test malformed viewer emails are a 400"""
        distribution = make_distribution()
        response = client.post(f"/api/view/{distribution.token}/open", json={"viewer_email": "nope"})
        
        assert response.status_code == 400
        assert "error" in response.json()
    
    def test_unknown_and_revoked_links_look_the_same(self, client, tenant_client, make_distribution):
        """Test viewers cannot tell unknown tokens from revoked ones"""
        distribution = make_distribution()
        revoke = tenant_client.post(f"/api/distributions/{distribution.token}/revoke", json={"reason": "manual"})
        assert revoke.status_code == 200
        
        for token in ("no-such-token", distribution.token):
            response = client.post(f"/api/view/{token}/open", json={"viewer_email": VIEWER})
            assert response.status_code == 404
            assert response.json() == LINK_INVALID
    
    def test_progress(self, client, make_distribution):
        """Test POST /progress returns the stored maxima"""
        distribution = make_distribution()
        client.post(f"/api/view/{distribution.token}/progress", json={
            "viewer_email": VIEWER, "read_percentage": 70, "max_page_reached": 4, "elapsed_seconds": 90
        })
        response = client.post(f"/api/view/{distribution.token}/progress", json={
            "viewerEmail": VIEWER, "readPercentage": "20", "pageReached": 2, "elapsedSeconds": "junk"
        })
        
        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "stored": {"read_percentage": 70, "page_reached": 4, "elapsed_seconds": 90},
        }
    
    def test_check_and_head(self, client, tenant_client, make_distribution):
        """Test the side-effect free checks"""
        distribution = make_distribution()
        
        assert client.get(f"/api/view/{distribution.token}/check").json() == {"status": "viewable"}
        assert client.head(f"/api/view/{distribution.token}").status_code == 200
        assert client.get("/api/view/missing/check").json() == {"status": "not_found"}
        assert client.head("/api/view/missing").status_code == 404
        
        tenant_client.post(f"/api/distributions/{distribution.token}/revoke")
        assert client.get(f"/api/view/{distribution.token}/check").json() == {"status": "gone"}
        assert client.head(f"/api/view/{distribution.token}").status_code == 404
    
    def test_metadata(self, client, make_distribution):
        distribution = make_distribution()
        response = client.get(f"/api/view/{distribution.token}")
        
        assert response.status_code == 200
        assert response.json()["title"] == "Q3 Proposal"
        assert client.get("/api/view/missing").json() == LINK_INVALID
    
    def test_viewer_pings_are_rate_limited(self, client, make_distribution):
        """Test POSTs beyond the strict limit are rejected with 429"""
        distribution = make_distribution()
        with patch.object(settings, "RATE_LIMIT_STRICT_REQUESTS", 2):
            statuses = [
                client.post(f"/api/view/{distribution.token}/progress", json={"viewer_email": VIEWER}).status_code
                for _ in range(3)
            ]
        
        assert statuses == [200, 200, 429]


@pytest.mark.critical
class TestDistributionEndpoints:
    """Test tenant-scoped registry endpoints"""
    
    def test_requires_session(self, client, test_document):
        response = client.post("/api/distributions", json={"document_id": test_document.id})
        assert response.status_code == 401
    
    def test_register(self, tenant_client, test_document):
        """Test POST /api/distributions issues a viewing link"""
        response = tenant_client.post("/api/distributions", json={
            "document_id": test_document.id,
            "recipient": {"company_name": "Acme Corp", "email": "buyer@acme.example"}
        })
        
        assert response.status_code == 200
        data = response.json()
        assert data["token"]
        assert data["view_url"].endswith(f"/view/{data['token']}")
        assert data["source"] == "send"
    
    def test_register_other_tenants_document(self, login_as, other_tenant_document):
        """Test registering another tenant's document is a 403"""
        client = login_as(TENANT_ID)
        response = client.post("/api/distributions", json={"document_id": other_tenant_document.id})
        assert response.status_code == 403
    
    def test_batch(self, tenant_client, test_document):
        response = tenant_client.post("/api/distributions/batch", json={
            "document_id": test_document.id,
            "recipients": [{"company_name": "A"}, {"company_name": "B"}]
        })
        
        assert response.status_code == 200
        assert response.json()["count"] == 2
    
    def test_share_link_reused(self, tenant_client, test_document):
        first = tenant_client.post("/api/distributions/share-link", json={"document_id": test_document.id}).json()
        second = tenant_client.post("/api/distributions/share-link", json={"document_id": test_document.id}).json()
        
        assert first["created"] is True
        assert second["created"] is False
        assert first["token"] == second["token"]
    
    def test_revoke_other_tenant(self, login_as, make_distribution):
        """Test revoking another tenant's distribution is a 403"""
        distribution = make_distribution()
        client = login_as(OTHER_TENANT_ID)
        response = client.post(f"/api/distributions/{distribution.token}/revoke")
        
        assert response.status_code == 403
        assert client.get(f"/api/view/{distribution.token}/check").json() == {"status": "viewable"}
    
    def test_manual_revoke_ignores_client_reason(self, tenant_client, db_session, make_distribution):
        """Test the revoke endpoint always records "manual" whatever reason is posted"""
        distribution = make_distribution()
        response = tenant_client.post(f"/api/distributions/{distribution.token}/revoke", json={"reason": "deleted"})
        
        assert response.status_code == 200
        db_session.refresh(distribution)
        assert distribution.revoked is True
        assert distribution.revoked_reason == "manual"
        assert tenant_client.get(f"/api/view/{distribution.token}/check").json() == {"status": "gone"}


@pytest.mark.high
class TestDocumentEndpoints:
    """Test the document catalogue"""
    
    def test_create_list_delete(self, tenant_client, mock_redis):
        """Test a deleted document disappears and its links become gone"""
        created = tenant_client.post("/api/documents", json={
            "title": "Pricing", "original_filename": "pricing.pdf", "storage_path": "tenants/1/pricing.pdf", "size_bytes": 10
        })
        assert created.status_code == 200
        document_id = created.json()["id"]
        
        link = tenant_client.post("/api/distributions", json={
            "document_id": document_id, "recipient": {"company_name": "Acme"}
        }).json()
        assert [d["id"] for d in tenant_client.get("/api/documents").json()] == [document_id]
        
        deleted = tenant_client.delete(f"/api/documents/{document_id}")
        assert deleted.status_code == 200
        assert deleted.json() == {"deleted": True, "revoked_distributions": 1}
        assert tenant_client.get("/api/documents").json() == []
        assert tenant_client.get(f"/api/view/{link['token']}/check").json() == {"status": "gone"}
    
    def test_delete_unknown_document(self, tenant_client):
        assert tenant_client.delete("/api/documents/999").status_code == 404


@pytest.mark.high
class TestDashboardEndpoints:
    """Test dashboard endpoints"""
    
    def test_summary(self, tenant_client, make_distribution):
        distribution = make_distribution()
        tenant_client.post(f"/api/view/{distribution.token}/open", json={"viewer_email": VIEWER, "session_id": "s1"})
        
        response = tenant_client.get("/api/dashboard/summary", params={"range": "7d"})
        
        assert response.status_code == 200
        data = response.json()
        assert data["sent"] == 1
        assert data["opened"] == 1
        assert data["open_rate_percent"] == 100.0
    
    def test_invalid_range(self, tenant_client):
        response = tenant_client.get("/api/dashboard/summary", params={"range": "1y"})
        assert response.status_code == 400
    
    def test_requires_session(self, client):
        assert client.get("/api/dashboard/summary").status_code == 401
    
    def test_other_tenant_sees_nothing(self, login_as, make_distribution):
        make_distribution()
        client = login_as(OTHER_TENANT_ID)
        
        assert client.get("/api/dashboard/intent-scores").json() == []
        assert client.get("/api/dashboard/summary").json()["sent"] == 0
    
    def test_intent_export(self, tenant_client, make_distribution):
        """Test the CSV download"""
        make_distribution()
        response = tenant_client.get("/api/dashboard/intent-scores/export")
        
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment" in response.headers["content-disposition"]
        assert response.content.startswith(b"\xef\xbb\xbf")
        assert "Acme Corp" in response.text
    
    def test_view_slots(self, tenant_client, make_distribution):
        """Test the slot histogram always lists all twelve slots"""
        distribution = make_distribution()
        tenant_client.post(f"/api/view/{distribution.token}/open", json={"viewer_email": VIEWER, "session_id": "s1"})
        
        response = tenant_client.get("/api/dashboard/slots", params={"range": "7d"})
        
        assert response.status_code == 200
        slots = response.json()
        assert len(slots) == 12
        assert slots[0]["slot"] == "00-02"
        assert slots[-1]["slot"] == "22-24"
        assert sum(row["views"] for row in slots) == 1
    
    @pytest.mark.parametrize("path", [
        "/api/dashboard/leaderboard",
        "/api/dashboard/timeline",
        "/api/dashboard/weekday-peaks",
        "/api/dashboard/slots",
        "/api/dashboard/recent",
        "/api/dashboard/content-insights",
        "/api/dashboard/companies",
        "/api/dashboard/filters",
    ])
    def test_read_endpoints(self, tenant_client, make_distribution, path):
        make_distribution()
        assert tenant_client.get(path).status_code == 200


@pytest.mark.medium
class TestMaintenanceEndpoints:
    """Test the scheduler-triggered cleanup"""
    
    def test_requires_key(self, client):
        assert client.post("/api/maintenance/cleanup").status_code == 401
        assert client.post("/api/maintenance/cleanup", headers={"X-Maintenance-Key": "wrong"}).status_code == 401
    
    def test_runs_cleanup(self, client):
        response = client.post("/api/maintenance/cleanup", headers=MAINTENANCE_HEADERS)
        
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["results"]["failed_policies"] == []
    
    def test_skips_when_locked(self, client, mock_redis):
        mock_redis.set(CLEANUP_LOCK_KEY, "1")
        response = client.post("/api/maintenance/cleanup", headers=MAINTENANCE_HEADERS)
        assert response.status_code == 409


@pytest.mark.medium
class TestOperationalEndpoints:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "healthy"}
    
    def test_metrics(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "doctrack_opens_total" in response.text
