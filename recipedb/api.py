"""
RecipeDB admin API.

FastAPI application exposing database information, the restricted query
endpoint, backup/restore, migrations, maintenance and the monitoring state.

Usage:
    recipedb serve --host 0.0.0.0 --port 3002

Middleware, outermost first: CORS, request logging, security headers and a
per-client sliding-window rate limit on ``/api`` routes.
"""

import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from . import __version__
from .admin import DatabaseAdmin
from .config import RecipeDBConfig
from .exceptions import (
    BackupError, InvalidBackupError, MigrationError, RecipeDBError, UnsafeQueryError
)
from .monitoring import MonitoringService

logger = logging.getLogger(__name__)

SERVICE_NAME = "recipedb-admin"


class QueryRequest(BaseModel):
    query: str
    params: Optional[Dict[str, Any]] = None


class BackupRequest(BaseModel):
    tables: List[str] = Field(default_factory=list)
    format: Optional[str] = Field(default=None, pattern="^(sql|csv)$")
    compress: Optional[bool] = None


class RestoreRequest(BaseModel):
    backup: str = Field(description="File name of a backup inside the backup directory")
    dry_run: bool = False


class MigrateRequest(BaseModel):
    direction: str = Field(default="up", pattern="^(up|down)$")
    steps: Optional[int] = Field(default=None, ge=1)


class SlidingWindowRateLimiter:
    """In-memory sliding window counter keyed by client identifier."""

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        # At most once per window, forget clients whose newest hit has expired
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        expired = [key for key, hits in self._hits.items() if now - hits[-1] >= self.window_seconds]
        for key in expired:
            del self._hits[key]

    def check(self, identifier: str) -> Optional[float]:
        """Record a hit; return None if allowed, otherwise seconds until retry."""
        now = self.clock()
        with self._lock:
            self._sweep(now)
            hits = self._hits.get(identifier)
            if hits is None:
                hits = self._hits[identifier] = deque()
            while hits and now - hits[0] >= self.window_seconds:
                hits.popleft()
            if len(hits) >= self.max_requests:
                return self.window_seconds - (now - hits[0])
            hits.append(now)
            return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging request information and timing."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            logger.exception(
                f"Request failed: {request.method} {request.url.path} "
                f"- Error: {e} - Time: {process_time:.3f}s"
            )
            raise
        process_time = time.time() - start_time
        logger.info(
            f"{request.method} {request.url.path} - Status: {response.status_code} "
            f"- Time: {process_time:.3f}s"
        )
        response.headers["X-Process-Time"] = f"{process_time:.4f}"
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds conservative browser security headers to every response."""

    def __init__(self, app, production: bool = False):
        super().__init__(app)
        self.production = production

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = "default-src 'self'"
        if self.production:
            response.headers["Strict-Transport-Security"] = "max-age=15552000; includeSubDomains"
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects clients that exceed the request budget on /api routes."""

    def __init__(self, app, limiter: SlidingWindowRateLimiter):
        super().__init__(app)
        self.limiter = limiter

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path.startswith("/api/"):
            client = request.client.host if request.client else "unknown"
            retry_after = self.limiter.check(client)
            if retry_after is not None:
                logger.warning(f"Rate limit exceeded for {client} on {request.url.path}")
                return JSONResponse(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    content={"error": "Too many requests from this IP, please try again later."},
                    headers={"Retry-After": str(int(retry_after) + 1)},
                )
        return await call_next(request)


router = APIRouter()


def _admin(request: Request) -> DatabaseAdmin:
    return request.app.state.admin


def _monitoring(request: Request) -> MonitoringService:
    service = request.app.state.monitoring
    if service is None:
        raise HTTPException(status_code=503, detail="Monitoring service is not configured")
    return service


@router.get("/health")
def health():
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/api/database/info")
def database_info(request: Request):
    return _admin(request).get_database_info()


@router.get("/api/database/tables")
def table_statistics(request: Request):
    return _admin(request).get_table_statistics()


@router.post("/api/database/query")
def execute_query(body: QueryRequest, request: Request):
    return _admin(request).execute_query(body.query, body.params)


@router.post("/api/database/backup")
def create_backup(body: BackupRequest, request: Request):
    info = _admin(request).backups.create_backup(
        tables=body.tables or None, fmt=body.format, compress=body.compress
    )
    return {"success": True, "backup": info.to_dict(), "message": "Backup created successfully"}


@router.get("/api/database/backups")
def list_backups(request: Request):
    return [b.to_dict() for b in _admin(request).backups.list_backups()]


@router.post("/api/database/restore")
def restore_backup(body: RestoreRequest, request: Request):
    backups = _admin(request).backups
    backup_dir = backups.backup_dir.resolve()
    path = (backup_dir / body.backup).resolve()
    if backup_dir not in path.parents:
        raise InvalidBackupError("Backup must be a file inside the backup directory")
    result = backups.restore_backup(path, dry_run=body.dry_run)
    message = "Backup validated" if body.dry_run else "Database restored successfully"
    return {"success": True, "message": message, **result}


@router.get("/api/database/migrations")
def migration_status(request: Request):
    return _admin(request).get_migration_status()


@router.post("/api/database/migrate")
def run_migrations(body: MigrateRequest, request: Request):
    return _admin(request).run_migrations(body.direction, body.steps)


@router.post("/api/database/optimize")
def optimize_database(request: Request):
    return _admin(request).optimize_database()


@router.get("/api/monitoring/metrics")
def monitoring_metrics(request: Request):
    return _monitoring(request).get_metrics()


@router.get("/api/monitoring/performance")
def monitoring_performance(request: Request):
    return _monitoring(request).get_performance_report()


@router.get("/api/monitoring/health")
def monitoring_health(request: Request):
    return _monitoring(request).get_health()


@router.get("/api/users/stats")
def user_statistics(request: Request):
    return _admin(request).get_user_statistics()


@router.get("/api/analytics/summary")
def analytics_summary(request: Request):
    return _admin(request).get_analytics_summary()


def _register_exception_handlers(app: FastAPI, production: bool) -> None:

    def _message(exc: Exception, fallback: str) -> str:
        return fallback if production else str(exc)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            return JSONResponse(status_code=404, content={"error": "Route not found"})
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request", "details": [e.get("msg") for e in exc.errors()]},
        )

    @app.exception_handler(UnsafeQueryError)
    async def unsafe_query_handler(request: Request, exc: UnsafeQueryError):
        logger.warning(f"Rejected query: {str(exc.query)[:100]}")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Unsafe query detected"})

    @app.exception_handler(InvalidBackupError)
    async def invalid_backup_handler(request: Request, exc: InvalidBackupError):
        logger.warning(f"Rejected restore: {exc}")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})

    @app.exception_handler(BackupError)
    async def backup_error_handler(request: Request, exc: BackupError):
        logger.error(f"Backup operation failed: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": _message(exc, "Backup operation failed"), "exit_code": exc.exit_code},
        )

    @app.exception_handler(MigrationError)
    async def migration_error_handler(request: Request, exc: MigrationError):
        logger.error(f"Migration failed: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": _message(exc, "Internal server error"), "version": exc.version},
        )

    @app.exception_handler(RecipeDBError)
    async def toolkit_error_handler(request: Request, exc: RecipeDBError):
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": _message(exc, "Internal server error")},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": _message(exc, "Internal server error")},
        )


def create_app(config: RecipeDBConfig, admin: DatabaseAdmin,
               monitoring: Optional[MonitoringService] = None) -> FastAPI:
    """Build the admin application around already constructed services."""
    production = config.is_production
    app = FastAPI(
        title="RecipeDB Admin API",
        description="Database administration, backup and monitoring for the recipe catalog",
        version=__version__,
        docs_url=None if production else "/api/docs",
        redoc_url=None,
        openapi_url=None if production else "/api/openapi.json",
    )
    app.state.config = config
    app.state.admin = admin
    app.state.monitoring = monitoring

    limiter = SlidingWindowRateLimiter(
        config.admin.rate_limit_requests, config.admin.rate_limit_window_seconds
    )
    app.add_middleware(RateLimitMiddleware, limiter=limiter)
    app.add_middleware(SecurityHeadersMiddleware, production=production)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.admin.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    _register_exception_handlers(app, production)
    app.include_router(router)
    logger.info(f"Admin API created (environment: {config.admin.environment})")
    return app
