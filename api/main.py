"""
Certificate Manager API

Manages the lifecycle of X.509 certificates: creation (self-signed,
local-CA-signed or ACME), import, scheduled renewal, CA passphrase custody
and post-renewal deployment to files, containers, commands and webhooks.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime

import uvicorn
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from config import Settings, ensure_directories, load_settings
from core.errors import CertManagerError, ErrorKind
from core.rate_limiter import create_limiter, rate_limit_handler
from core.request_logger import RequestLoggerMiddleware
from core.services import Services, build_services
from endpoints import certificates, docker, events, filesystem, scheduler, settings as settings_endpoints

API_VERSION = "1.0.0"

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response


async def cert_manager_error_handler(request: Request, exc: CertManagerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.kind.value}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=getattr(exc, "headers", None),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "error": ErrorKind.INVALID_REQUEST.value,
            "message": "; ".join(f"{e['field']}: {e['message']}" if e["field"] else e["message"] for e in errors),
            "details": errors,
        },
    )


def _cors_origins(settings: Settings) -> list[str]:
    if settings.cors_allowed_origins:
        return [o.strip() for o in settings.cors_allowed_origins.split(",") if o.strip()]
    return ["*"] if settings.api_debug else []


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Startup settings (loaded from the environment when omitted)
        services: Prebuilt service container; built at startup when omitted

    Returns:
        The configured FastAPI application
    """
    settings = services.settings if services is not None else (settings or load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Certificate Manager API starting up...")
        if app.state.services is None:
            ensure_directories(settings)
            app.state.services = build_services(settings)
        await app.state.services.startup()
        yield
        await app.state.services.shutdown()
        logger.info("Certificate Manager API shutting down...")

    app = FastAPI(
        title="Certificate Manager API",
        description="""
        ## Purpose

        Lifecycle management for X.509 certificates on a single host.

        - Create self-signed, CA-signed or ACME-issued certificates, or import existing ones
        - Renew on a schedule or on demand, with automatic backups
        - Hold CA key passphrases in memory or encrypted at rest
        - Deploy renewed material by copying files, restarting containers,
          running commands or calling webhooks

        Every response carries `success`; errors add `error` (the error kind),
        `message` and often a `suggestion`. Renewal, passphrase and scheduler
        events are pushed over the `/ws` socket.
        """,
        version=API_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.services = services

    app.state.limiter = create_limiter(settings.rate_limit_default, enabled=settings.rate_limit_enabled)
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler)
    app.add_exception_handler(CertManagerError, cert_manager_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)

    app.include_router(certificates.router)
    app.include_router(settings_endpoints.router)
    app.include_router(scheduler.router)
    app.include_router(docker.router)
    app.include_router(filesystem.router)
    app.include_router(events.router)

    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestLoggerMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get(
        "/",
        summary="API Health Check",
        description="Basic health check endpoint to verify the API is running.",
        tags=["Health"],
    )
    async def root():
        return {
            "success": True,
            "message": "Certificate Manager API is running",
            "version": API_VERSION,
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "docs_url": "/docs",
        }

    @app.get(
        "/health",
        summary="Detailed Health Check",
        description="Store counts, scheduler state and Docker availability.",
        tags=["Health"],
    )
    async def health_check(request: Request):
        """
        Detailed health check for monitoring.

        Returns:
            dict: Overall status plus certificate, scheduler and Docker readouts
        """
        services: Services = request.app.state.services
        records = services.store.list_records()
        expired = [r for r in records if r.is_expired]
        due = [r for r in records if not r.is_expired and r.is_due()]
        certificates_status = {
            "total": len(records),
            "ca": len([r for r in records if r.is_ca]),
            "due_for_renewal": len(due),
            "expired": len(expired),
            "errors": len(services.store.list_errors()),
        }
        docker_status = await services.docker.get_status()

        suggestions = []
        if due:
            suggestions.append(
                {
                    "action": f"Renew {len(due)} certificate(s) inside their renewal window",
                    "endpoint": "POST /api/scheduler/check",
                    "priority": "high",
                }
            )
        if expired:
            suggestions.append(
                {
                    "action": f"Address {len(expired)} expired certificate(s)",
                    "endpoint": "GET /api/certificates",
                    "priority": "critical",
                }
            )

        return {
            "success": True,
            "status": "healthy" if not expired else "warning",
            "timestamp": datetime.now().isoformat(),
            "api": {"status": "running", "version": API_VERSION},
            "certificates": certificates_status,
            "scheduler": services.scheduler.status(),
            "renewal_engine": {"running": services.engine.is_running},
            "file_watch": {"running": services.watcher.is_running, "enabled": services.watcher.enabled},
            "docker": docker_status,
            "push_clients": services.bus.client_count,
            "suggestions": suggestions,
        }

    return app


app = create_app()


if __name__ == "__main__":
    _settings = load_settings()
    logging.getLogger().setLevel(_settings.log_level.upper())
    uvicorn.run("main:app", host=_settings.api_host, port=_settings.https_port, log_level=_settings.log_level.lower())
