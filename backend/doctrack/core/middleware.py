"""Middleware and exception handlers for the FastAPI application"""
import logging

from fastapi import Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from doctrack.core.config import settings
from doctrack.core.errors import DocTrackError
from doctrack.core.metrics import rate_limited_counter
from doctrack.core.security import check_rate_limit, get_client_identifier, log_api_access

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

VIEWER_PATH_PREFIX = "/api/view/"


def get_allowed_origins():
    """Get list of allowed CORS origins"""
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ])
    return allowed_origins


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


async def security_middleware(request: Request, call_next):
    """Rate limit public viewer endpoints and log every API access"""
    session_id = request.cookies.get("session_id")
    status_code = 500
    error = None
    
    try:
        path = request.url.path
        if path.startswith(VIEWER_PATH_PREFIX) and request.method != "OPTIONS":
            identifier = get_client_identifier(request)
            if not check_rate_limit(identifier, strict=request.method == "POST"):
                error = "Rate limit exceeded"
                status_code = 429
                rate_limited_counter.inc()
                security_logger.warning(f"Rate limit exceeded - Identifier: {identifier}, Path: {path}")
                return Response(
                    content='{"error": "Rate limit exceeded. Please try again later."}',
                    status_code=429,
                    media_type="application/json"
                )
        
        response = await call_next(request)
        status_code = response.status_code
        return response
        
    except Exception as e:
        error = str(e)
        security_logger.error(f"Security middleware error: {error}", exc_info=True)
        raise
    finally:
        log_api_access(request, session_id, status_code, error)


async def doctrack_error_handler(request: Request, exc: DocTrackError):
    """Translate domain errors into JSON responses"""
    if exc.status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
