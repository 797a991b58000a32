"""FastAPI application entry point."""

import asyncio
import json
import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.middleware.base import BaseHTTPMiddleware

from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from qms.api.routes import api_router
from qms.core.config import settings
from qms.core.errors import QueueError
from qms.core.metrics import MetricsMiddleware, metrics
from qms.core.rate_limit import limiter
from qms.core.rbac import RequireAdmin, UserRole
from qms.core.security import decode_access_token
from qms.db.base import Base
from qms.db.session import SessionLocal, engine
from qms.services.broadcaster import org_room, ws_broadcaster, ws_manager


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log shipping."""

    def format(self, record):
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "module": record.module,
            "line": record.lineno,
        }
        request_id = getattr(record, "request_id", None)
        if request_id:
            entry["request_id"] = request_id
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging():
    """JSON lines in production, human-readable output when debugging."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    if settings.debug:
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    else:
        handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)


configure_logging()
logger = logging.getLogger(__name__)
request_logger = logging.getLogger("requests")

# Kiosks and displays poll these constantly
QUIET_PATHS = {"/", "/health", "/health/ready", "/docs", "/openapi.json"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs each API call with a request id, echoed back in X-Request-ID."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in QUIET_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        client_ip = request.client.host if request.client else "unknown"
        extra = {"request_id": request_id}
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            request_logger.error(
                f"{request.method} {request.url.path} raised {type(e).__name__}: {e} "
                f"({time.perf_counter() - start:.3f}s, client={client_ip})",
                extra=extra,
            )
            raise

        request_logger.log(
            logging.WARNING if response.status_code >= 400 else logging.INFO,
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({time.perf_counter() - start:.3f}s, client={client_ip})",
            extra=extra,
        )
        response.headers["X-Request-ID"] = request_id
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Queue Management System")

    # Create tables if they don't exist (for SQLite dev)
    if settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created (SQLite mode)")

    # Sync handlers run in the threadpool; broadcasts are scheduled onto this loop
    ws_broadcaster.bind_loop(asyncio.get_running_loop())

    yield

    ws_broadcaster.bind_loop(None)
    logger.info("Shutting down Queue Management System")


app = FastAPI(
    title="Queue Management System",
    description="Multi-tenant customer queue and token lifecycle API",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError):
    """Map queue engine errors onto HTTP responses."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message} {exc.details}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.public_message, "error": exc.kind},
    )


# Metrics middleware (Prometheus-compatible)
app.add_middleware(MetricsMiddleware)

# Request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# CORS middleware - added last so it runs first (Starlette LIFO order)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Requested-With"],
    max_age=600,
)

# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": "1.0.0"}


@app.get("/health/ready")
def readiness_check():
    """Readiness check: database reachable, plus queue and WebSocket counters."""
    checks = {}
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = "unhealthy"

    checks["websocket_manager"] = f"healthy ({ws_manager.get_connection_count()} connections)"

    all_healthy = all(c.startswith("healthy") for c in checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "version": "1.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
        "queue": metrics.snapshot(),
    }


@app.get("/")
def root():
    """Root endpoint."""
    return {
        "message": "Queue Management System API",
        "docs": "/docs",
        "health": "/health",
    }


@app.get("/metrics")
@limiter.limit("30/minute")
def prometheus_metrics(request: Request, current_user: RequireAdmin):
    """Prometheus-compatible metrics endpoint."""
    return PlainTextResponse(metrics.get_prometheus_metrics(), media_type="text/plain")


# ===== WebSocket =====

async def _authenticate_websocket(
    websocket: WebSocket,
    token: Optional[str],
    organization_id: int,
) -> Optional[int]:
    """Authenticate a WebSocket connection for an organization room.

    Returns the user id, or None after closing the socket with 1008 Policy
    Violation. Tokens are taken from the query string, then the
    access_token cookie.
    """
    payload = None
    if token:
        payload = decode_access_token(token)
    if not payload:
        cookie_token = websocket.cookies.get("access_token")
        if cookie_token:
            payload = decode_access_token(cookie_token)

    if not payload:
        logger.warning(f"WebSocket rejected for org {organization_id}: no valid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None

    try:
        user_id = int(payload.get("sub", 0))
        token_org = int(payload.get("org", 0))
    except (TypeError, ValueError):
        user_id = token_org = 0
    if not user_id:
        logger.warning(f"WebSocket rejected for org {organization_id}: no user ID in token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None

    if token_org != organization_id and payload.get("role") != UserRole.SUPER_ADMIN.value:
        logger.warning(f"WebSocket rejected: user {user_id} does not belong to org {organization_id}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None

    return user_id


@app.websocket("/ws/org/{organization_id}")
async def websocket_organization(
    websocket: WebSocket,
    organization_id: int,
    token: Optional[str] = Query(None),
):
    """Real-time token and queue events of one organization. Requires JWT token."""
    user_id = await _authenticate_websocket(websocket, token, organization_id)
    if user_id is None:
        return

    channel = org_room(organization_id)
    if not await ws_manager.connect(websocket, channel, user_id=user_id):
        return

    try:
        await websocket.send_json({
            "event": "connected",
            "data": {"organization_id": organization_id, "user_id": user_id},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                ws_manager.update_ping(websocket)
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        ws_manager.disconnect(websocket, channel)
    except Exception as e:
        logger.error(f"WebSocket error in {channel}: {e}", exc_info=True)
        ws_manager.disconnect(websocket, channel)
