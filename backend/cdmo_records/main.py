"""FastAPI application."""
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .audit import AuditSink, CeleryAuditSink, request_audit_record
from .config import DEV_JWT_SECRET, settings
from .database import Database
from .domain_errors import DomainError
from .logging_config import configure_logging
from .problem_details import (
    handle_domain_error,
    handle_http_exception,
    handle_integrity_error,
    handle_unexpected_error,
    handle_validation_error,
)
from .routers import admin, auth, batches, customers, dashboard, equipment, logs, quality

logger = logging.getLogger(__name__)
request_logger = logging.getLogger("cdmo_records.requests")

API_PREFIX = "/api/v1"
VERSION = "1.0.0"


def check_production_settings() -> None:
    """Fail closed on insecure production configuration."""
    if not settings.is_production:
        return
    if settings.JWT_SECRET_KEY == DEV_JWT_SECRET:
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if not settings.AUTH_COOKIE_SECURE:
        raise RuntimeError("AUTH_COOKIE_SECURE must be true in production (requires HTTPS).")
    if not settings.cors_origins:
        raise RuntimeError("ALLOWED_ORIGINS must be set in production (explicit frontend origin required).")
    if any(origin == "*" for origin in settings.cors_origins):
        raise RuntimeError("ALLOWED_ORIGINS must be explicit in production (no wildcard when using credentials).")
    if any(
        origin.startswith("http://localhost") or origin.startswith("http://127.0.0.1")
        for origin in settings.cors_origins
    ):
        raise RuntimeError("ALLOWED_ORIGINS contains localhost in production; set it to your real frontend origin.")


def _default_audit_sink() -> AuditSink:
    from .celery_app import record_audit_event

    return CeleryAuditSink(record_audit_event)


def create_app(*, database: Database | None = None, audit_sink: AuditSink | None = None) -> FastAPI:
    """Build the application. Injected database/audit sink are used as-is (tests)."""
    configure_logging()
    check_production_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_database = database is None
        app.state.database = database or Database.from_settings()
        app.state.audit_sink = audit_sink or _default_audit_sink()
        app.state.audit_sink.start()
        logger.info("%s started (env=%s)", settings.APP_NAME, settings.ENV)
        try:
            yield
        finally:
            app.state.audit_sink.close()
            if owns_database:
                app.state.database.dispose()
            logger.info("%s stopped", settings.APP_NAME)

    app = FastAPI(
        title="CDMO Batch Records",
        version=VERSION,
        description="Backend API for pharmaceutical contract-manufacturing batch records",
        lifespan=lifespan,
    )

    # CORS
    cors_headers = ["Authorization", "Content-Type"]
    if not settings.is_production:
        cors_headers = ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=cors_headers,
    )

    @app.middleware("http")
    async def audit_requests(request: Request, call_next):
        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            principal = getattr(request.state, "principal", None)
            request_logger.info(
                "%s %s %s",
                request.method,
                request.url.path,
                status_code,
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status_code,
                    "duration_ms": duration_ms,
                    "user_id": principal.get("id") if principal else None,
                },
            )
            sink = getattr(request.app.state, "audit_sink", None)
            if sink is not None:
                sink.emit(
                    request_audit_record(
                        method=request.method,
                        path=request.url.path,
                        status=status_code,
                        duration_ms=duration_ms,
                        principal=principal,
                    )
                )

    app.add_exception_handler(DomainError, handle_domain_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_exception)
    app.add_exception_handler(IntegrityError, handle_integrity_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    for module in (auth, admin, dashboard, customers, batches, quality, equipment, logs):
        app.include_router(module.router, prefix=API_PREFIX)

    @app.get(f"{API_PREFIX}/system/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "version": VERSION}

    @app.get("/")
    def root():
        """Root endpoint."""
        return {"message": "CDMO Batch Records API", "version": VERSION, "docs": "/docs"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("cdmo_records.main:app", host="0.0.0.0", port=settings.PORT, reload=settings.DEBUG)
