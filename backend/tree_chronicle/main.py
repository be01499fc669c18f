"""
Tree Chronicle Backend — FastAPI Application Factory
======================================================

What:  Creates and configures the FastAPI application instance.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   Called by uvicorn to start the server (uvicorn tree_chronicle.main:app).

Application Architecture:
    ┌───────────────────────────────────────────────────────────┐
    │                       FastAPI App                         │
    │                                                           │
    │  Middleware: RateLimit → RequestID → Logging → GZip → CORS│
    │                                                           │
    │  Routes:                                                  │
    │   /api/projects   /api/photos   /uploads/{filename}       │
    │   /api/backup/export   /api/backup/import   /health       │
    │                                                           │
    │  Store gate (per request, via get_db_session):            │
    │   open → serve   |   closed for import → 503 Retry-After  │
    └───────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Initialize logging
    2. Create data root, upload directory and backup scratch space
    3. Repair an import interrupted by a crash (before the store opens)
    4. Open the store (seeding a default project into a brand-new file)

    Shutdown:
    1. Drain in-flight requests and dispose the engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from tree_chronicle import __version__
from tree_chronicle.config import settings
from tree_chronicle.database import store
from tree_chronicle.exceptions import (
    ImportFailedError,
    NotFoundError,
    StoreUnavailableError,
    TreeChronicleError,
    ValidationError,
)
from tree_chronicle.middleware.logging import RequestLoggingMiddleware
from tree_chronicle.middleware.rate_limit import RateLimitMiddleware
from tree_chronicle.middleware.request_id import RequestIDMiddleware, request_id_var
from tree_chronicle.routes import backup, health, photos, projects
from tree_chronicle.services.backup_service import backup_service
from tree_chronicle.services.project_service import seed_default_project

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure logging for the entire application.

    Format: 2024-01-15T12:00:00 [LEVEL] module.name: message

    Import failures that leave the store and upload directory out of step are
    logged at CRITICAL; alert on that level.
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Third-party libraries are chatty at INFO
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("multipart").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("Tree Chronicle Backend %s starting up...", __version__)

    settings.prepare_storage()
    logger.info("Data root: %s", settings.database_path.parent)

    # Must run while the store is still closed: it may replace the file
    if backup_service.recover_interrupted_import():
        logger.warning("Previous data restored after an interrupted import")

    store.add_create_hook(seed_default_project)
    await store.open()

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("Tree Chronicle Backend shutting down...")
    try:
        await store.close(drain_timeout=settings.store_drain_timeout)
    except TimeoutError:
        logger.warning("Shutdown with requests still in flight")
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(
    status_code: int,
    exc: TreeChronicleError,
    details: dict = None,
    headers: dict = None,
) -> JSONResponse:
    content = {
        "error": exc.error_code,
        "message": exc.message,
        "request_id": request_id_var.get(""),
    }
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map exception types to HTTP status codes and the shared error body.

    Handler hierarchy:
        ValidationError (+ archive errors) → 400
        RequestValidationError             → 400 validation_error
        NotFoundError                      → 404
        StoreUnavailableError              → 503 + Retry-After
        ImportFailedError                  → 500 with stage / consistency flags
        TreeChronicleError (base)          → 500 generic message
        Exception (fallback)               → 500 internal_server_error

    Security: responses never carry file paths, SQL or OS error text. The
    context dict is logged server-side; only whitelisted keys are returned.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] %s: %s", request_id_var.get(""), exc.error_code, exc.message)
        details = {"field": exc.field} if exc.field else None
        return _error_response(400, exc, details=details)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        field = ".".join(str(p) for p in errors[0]["loc"][1:]) if errors else None
        message = errors[0]["msg"] if errors else "Invalid request"
        return _error_response(400, ValidationError(message=message, field=field),
                               details={"field": field} if field else None)

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error_response(404, exc)

    @app.exception_handler(StoreUnavailableError)
    async def handle_store_unavailable(request: Request, exc: StoreUnavailableError):
        return _error_response(
            503, exc,
            details={"retry_after": exc.retry_after},
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(ImportFailedError)
    async def handle_import_failed(request: Request, exc: ImportFailedError):
        rid = request_id_var.get("")
        log = logger.error if exc.state_consistent else logger.critical
        log("[%s] Import failed: %s | Context: %s", rid, exc.message, exc.context)
        return _error_response(500, exc, details={
            "stage": exc.stage,
            "state_consistent": exc.state_consistent,
            "rolled_back": exc.rolled_back,
        })

    @app.exception_handler(TreeChronicleError)
    async def handle_app_error(request: Request, exc: TreeChronicleError):
        """DatabaseError, FileStorageError, BackupExportError and friends."""
        logger.error("[%s] %s: %s | Context: %s",
                     request_id_var.get(""), type(exc).__name__, exc.message, exc.context)
        return _error_response(500, exc)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        rid = request_id_var.get("")
        logger.error("[%s] Unexpected error: %s", rid, str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred. Please try again.",
                "request_id": rid,
            },
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="Tree Chronicle API",
        description=(
            "Photo journal backend: projects, dated photos and full backup "
            "export/import of the store and its upload directory."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Register Middleware ───────────────────────────────────────────────
    # Executes in reverse order of addition: RateLimit runs first
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "Content-Disposition",
            "X-Backup-Files",
            "X-Backup-Missing-Files",
        ],
    )
    # Below 500 bytes the gzip overhead outweighs the savings
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    register_exception_handlers(app)

    app.include_router(projects.router)
    app.include_router(photos.router)
    app.include_router(backup.router)
    app.include_router(health.router)

    return app


app = create_app()
