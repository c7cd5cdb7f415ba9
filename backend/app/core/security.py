"""Security dependencies, operator credential and API access logging"""
import json
import logging
import secrets
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse
from fastapi import Depends, Header, HTTPException, Request
from app.db.redis import get_session, get_csrf_token, check_rate_limit as redis_check_rate_limit
from app.core.config import settings
from app.core.errors import ServerMisconfigured, Unauthorized
from app.services.event_log_service import ACTOR_OPS

security_logger = logging.getLogger("security")
api_access_logger = logging.getLogger("api_access")


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id"""
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = get_session(session_id)
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")

    return user_id


def require_csrf(
    request: Request,
    user_id: int = Depends(require_auth),
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token")
) -> int:
    """Dependency: Require auth + valid CSRF token, return user_id"""
    session_id = request.cookies.get("session_id")

    expected_csrf = get_csrf_token(session_id)
    if not expected_csrf or not x_csrf_token or not secrets.compare_digest(x_csrf_token, expected_csrf):
        security_logger.warning(
            f"CSRF validation failed - User: {user_id}, "
            f"IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(403, "Invalid or missing CSRF token")

    return user_id


# ============================================================================
# OPERATOR CREDENTIAL
# ============================================================================

def verify_ops_password(password: Optional[str]) -> None:
    """Check the shared ops secret

    Raises:
        ServerMisconfigured: If OPS_PWD is not configured
        Unauthorized: If the password is missing or does not match
    """
    expected = settings.OPS_PWD
    if not expected:
        security_logger.error("OPS_PWD environment variable is not set")
        raise ServerMisconfigured("Server configuration error: ops password not set")
    if not password or not secrets.compare_digest(password.encode(), expected.encode()):
        security_logger.warning("Ops password check failed")
        raise Unauthorized()


def is_ops_password_valid(password: Optional[str]) -> bool:
    """Like verify_ops_password but reports a mismatch as False

    ServerMisconfigured still propagates.
    """
    try:
        verify_ops_password(password)
    except Unauthorized:
        return False
    return True


def require_ops(
    x_ops_password: Optional[str] = Header(None, alias="X-Ops-Password"),
    x_ops_email: Optional[str] = Header(None, alias="X-Ops-Email")
) -> str:
    """Dependency: Require the ops password, return the acting operator"""
    verify_ops_password(x_ops_password)
    actor = (x_ops_email or "").strip().lower()
    return actor or ACTOR_OPS


# ============================================================================
# REQUEST HELPERS
# ============================================================================

def get_client_ip(request: Request) -> str:
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip


def get_client_identifier(request: Request, session_id: Optional[str] = None) -> str:
    """Get a unique identifier for rate limiting"""
    if session_id:
        return f"session:{session_id}"
    return f"ip:{get_client_ip(request)}"


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """Check if request is within rate limit

    Args:
        identifier: Client identifier (session ID or IP)
        strict: If True, use stricter rate limits for state-changing operations

    Returns:
        True if within limit, False if exceeded
    """
    return redis_check_rate_limit(identifier, strict=strict)


def get_allowed_origins():
    """Get list of allowed CORS origins"""
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend([
            "http://localhost:3000",
            "http://localhost:8000",
            "http://127.0.0.1:3000",
            "http://127.0.0.1:8000"
        ])
    return allowed_origins


def validate_origin_referer(request: Request) -> bool:
    """Validate Origin and Referer headers"""
    origin = request.headers.get("Origin")
    referer = request.headers.get("Referer")
    allowed_origins = [o.rstrip("/") for o in get_allowed_origins() if o]

    # Allow requests without Origin/Referer in development
    if settings.ENVIRONMENT == "development" and not origin and not referer:
        return True

    if origin:
        return origin.rstrip("/") in allowed_origins

    if referer:
        parsed = urlparse(referer)
        return f"{parsed.scheme}://{parsed.netloc}" in allowed_origins

    return False


def log_api_access(
    request: Request,
    session_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log detailed API access information"""
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) if request.url.query else None,
        "session_id": session_id[:16] + "..." if session_id else None,
        "client_ip": get_client_ip(request),
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "origin": request.headers.get("Origin", "none"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")
