"""Security dependencies, rate limiting and API access logging"""
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

from fastapi import Header, HTTPException, Request

from doctrack.core.config import settings
from doctrack.db.redis import check_rate_limit as redis_check_rate_limit
from doctrack.db.redis import get_session_tenant

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")


def require_tenant(request: Request) -> int:
    """Dependency: require a dashboard session, return its tenant_id
    
    Sessions are issued by the external auth layer and stored in Redis.
    """
    session_id = request.cookies.get("session_id")
    
    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")
    
    tenant_id = get_session_tenant(session_id)
    if not tenant_id:
        raise HTTPException(401, "Session expired. Please log in again.")
    
    return tenant_id


def require_maintenance_key(x_maintenance_key: Optional[str] = Header(None, alias="X-Maintenance-Key")) -> None:
    """Dependency: guard scheduler-triggered maintenance endpoints"""
    if not settings.MAINTENANCE_API_KEY:
        raise HTTPException(503, "Maintenance endpoint is not configured")
    if not x_maintenance_key or not secrets.compare_digest(x_maintenance_key, settings.MAINTENANCE_API_KEY):
        security_logger.warning("Maintenance endpoint called with invalid key")
        raise HTTPException(401, "Invalid maintenance key")


def get_client_identifier(request: Request, session_id: Optional[str] = None) -> str:
    """Get a unique identifier for rate limiting"""
    if session_id:
        return f"session:{session_id}"
    
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """Check if request is within rate limit
    
    Args:
        identifier: Client identifier (session ID or IP)
        strict: Use the stricter limit (viewer pings that write)
        
    Returns:
        True if within limit, False if exceeded
    """
    return redis_check_rate_limit(identifier, strict=strict)


def log_api_access(
    request: Request,
    session_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log one API access line as JSON"""
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) if request.url.query else None,
        "session_id": session_id[:16] + "..." if session_id else None,
        "client_ip": client_ip,
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "status_code": status_code,
        "error": error
    }
    
    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
