"""
MFA Gate REST API - Main Application.

FastAPI service for TOTP multi-factor authentication and first-login flows.

Usage:
    # Development
    uvicorn mfa_service.api.main:app --reload --port 8000

    # Production
    uvicorn mfa_service.api.main:app --host 0.0.0.0 --port 8000
"""
import os
import time
import uuid
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError

from .routes import mfa_router, first_login_router, health_router
from .deps import get_config
from ..errors import MFAError

# Configure logging with request context support
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"
)

# Custom filter to add request_id to all log records
class RequestIdFilter(logging.Filter):
    """Add request_id to log records."""
    def filter(self, record):
        if not hasattr(record, 'request_id'):
            record.request_id = '-'
        return True

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format=LOG_FORMAT,
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RequestIdFilter())
logger = logging.getLogger(__name__)

# API metadata
API_TITLE = "MFA Gate API"
API_DESCRIPTION = """
**Multi-factor authentication in front of an identity service**

- **TOTP enrollment** - QR code and provisioning URI for authenticator apps
- **Login verification** - 6-digit codes with a 5-attempt lockout
- **Backup codes** - single-use recovery codes
- **First login** - temporary password replacement, then MFA

## Authentication

Most endpoints require a session bearer token:
`Authorization: Bearer <token>`.

The second-factor endpoints (`POST /mfa/verify-login`,
`POST /mfa/backup-codes/consume`, `POST /mfa/first-login/complete`) take
the short-lived step-up token issued once the password was checked instead.
"""
API_VERSION = os.getenv("APP_VERSION", "0.1.0")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log effective settings on startup."""
    logger.info(f"Starting MFA Gate API v{API_VERSION}")
    config = get_config()
    logger.info(
        f"MFA config: issuer={config.issuer!r}, lockout_threshold={config.lockout_threshold}, "
        f"identity_api={config.identity_api_url}"
    )

    yield
    logger.info("Shutting down MFA Gate API")


def create_app() -> FastAPI:
    """Build the application: middleware, MFAError rendering and routers."""
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    )

    @app.middleware("http")
    async def track_request(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(f"[{request_id}] Request failed: {e}", exc_info=True)
            raise

        process_time = (time.time() - start_time) * 1000
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{process_time:.2f}"

        # Health checks are not logged
        if not request.url.path.startswith("/health"):
            logger.info(
                f"[{request_id}] {request.method} {request.url.path} "
                f"-> {response.status_code} ({process_time:.1f}ms)"
            )

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        return response

    @app.exception_handler(MFAError)
    async def mfa_error_handler(request: Request, exc: MFAError):
        request_id = getattr(request.state, 'request_id', 'unknown')
        if exc.status_code >= 500:
            logger.warning(f"[{request_id}] {type(exc).__name__}: {exc.message}")
        headers = {"Retry-After": "5"} if exc.retryable else None
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = " -> ".join(str(l) for l in error["loc"])
            errors.append(f"{loc}: {error['msg']}")

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": "Validation Error",
                "detail": "; ".join(errors),
                "code": "VALIDATION_ERROR",
            },
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        request_id = getattr(request.state, 'request_id', 'unknown')
        logger.error(f"[{request_id}] Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal Server Error",
                "request_id": request_id,
                "detail": str(exc) if os.getenv("APP_ENV") == "development" else None,
                "code": "INTERNAL_ERROR",
            },
        )

    app.include_router(health_router)
    app.include_router(mfa_router)
    app.include_router(first_login_router)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": API_TITLE,
            "version": API_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mfa_service.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info",
    )
