"""Middleware configuration for FastAPI application"""
import logging
from fastapi import Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.errors import CampError
from app.core.security import (
    get_allowed_origins, get_client_identifier, check_rate_limit,
    validate_origin_referer, log_api_access
)
from app.db.redis import get_or_create_csrf_token

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")

PUBLIC_PATHS = frozenset({
    "/api/payments/webhook",
    "/api/config",
    "/api/payments/capacity",
    "/api/stripe/config",
    "/metrics",
    "/health",
})


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _json_error(status_code: int, message: str, request: Request) -> Response:
    response = JSONResponse(status_code=status_code, content={"detail": message})
    origin = request.headers.get("Origin")
    if origin and origin in get_allowed_origins():
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


async def security_middleware(request: Request, call_next):
    """Middleware for rate limiting, origin checks and API access logging"""
    session_id = request.cookies.get("session_id")
    status_code = 500
    error = None

    try:
        path = request.url.path
        is_public_endpoint = path in PUBLIC_PATHS
        is_state_changing = request.method in ["POST", "PATCH", "DELETE", "PUT"]

        # Rate limiting
        identifier = get_client_identifier(request, session_id)
        if not check_rate_limit(identifier, strict=is_state_changing):
            error = "Rate limit exceeded"
            status_code = 429
            security_logger.warning(f"Rate limit exceeded - Identifier: {identifier}, Path: {path}")
            return _json_error(429, "Rate limit exceeded. Please try again later.", request)

        # Origin/Referer validation
        if not is_public_endpoint and request.method != "OPTIONS" and (is_state_changing or settings.ENVIRONMENT == "production"):
            if not validate_origin_referer(request):
                error = "Invalid origin or referer"
                status_code = 403
                security_logger.warning(f"Origin/Referer validation failed - Path: {path}")
                return _json_error(403, "Invalid origin or referer", request)

        response = await call_next(request)
        status_code = response.status_code

        # Hand the session's CSRF token to the frontend on every successful response
        if session_id and status_code < 400:
            csrf_token = get_or_create_csrf_token(session_id)
            response.headers["X-CSRF-Token"] = csrf_token
            response.set_cookie(
                key="csrf_token_client",
                value=csrf_token,
                httponly=False,
                secure=settings.ENVIRONMENT == "production",
                samesite="lax",
                path="/"
            )

        return response

    except Exception as e:
        error = str(e)
        security_logger.error(f"Security middleware error: {error}", exc_info=True)
        raise
    finally:
        log_api_access(request, session_id, status_code, error)


async def camp_error_handler(request: Request, exc: CampError):
    """Render domain errors as {"detail", "code"}"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code}
    )


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )
