"""
main.py: AuditPortal FastAPI application

Wires together the authentication core at startup:
- Builds the credential/token/audit stores over one async session factory
- Constructs SessionManager, PermissionResolver and PolicyService once and
  stores them on app.state, where the route guards read them per request
- Starts the stale-session sweep and stops it on shutdown
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from auditportal.api.routes_auth import router as auth_router
from auditportal.api.routes_rbac import router as rbac_router
from auditportal.core.clock import Clock, utcnow
from auditportal.core.config import Settings, get_settings
from auditportal.core.errors import AuthError
from auditportal.db.database import AsyncSessionLocal, engine, init_db
from auditportal.db.repositories import SqlAuditSink, SqlTokenStore, SqlUserStore
from auditportal.middleware.logging import RequestLoggingMiddleware
from auditportal.services.heartbeat import HeartbeatRevoker
from auditportal.services.permissions import PermissionResolver, StorePermissionSource
from auditportal.services.policy_service import PolicyService
from auditportal.services.session_manager import SessionManager

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

settings = get_settings()


# ─── Service Wiring ───────────────────────────────────────────────────────────

def install_services(
    app: FastAPI,
    session_factory: async_sessionmaker,
    app_settings: Settings,
    clock: Clock = utcnow,
) -> HeartbeatRevoker:
    """
    Builds every service over `session_factory` and publishes it on app.state.
    Returns the (not yet started) stale-session revoker.
    """
    user_store = SqlUserStore(session_factory)
    token_store = SqlTokenStore(session_factory)
    audit_sink = SqlAuditSink(session_factory)

    app.state.user_store = user_store
    app.state.session_manager = SessionManager.from_settings(
        app_settings, user_store, token_store, audit=audit_sink, clock=clock,
    )
    app.state.permission_resolver = PermissionResolver(StorePermissionSource(user_store))
    app.state.policy_service = PolicyService(session_factory, audit=audit_sink)

    return HeartbeatRevoker.from_settings(app_settings, token_store, clock=clock)


# ─── Application Lifespan ─────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.app_name} backend...")

    try:
        await init_db(engine)
    except Exception as e:
        logger.error(f"Database initialization failed: {e}. Auth endpoints will be unavailable.")
        raise

    revoker = install_services(app, AsyncSessionLocal, settings)
    if settings.heartbeat_enabled:
        revoker.start()
    else:
        logger.warning("Stale session sweep disabled. Abandoned sessions will block re-login until logout.")

    logger.info(f"{settings.app_name} startup complete. ENV: {settings.app_env}")

    yield  # ── Application runs ──

    logger.info(f"Shutting down {settings.app_name}...")
    await revoker.stop()
    await engine.dispose()
    logger.info("All connections closed. Shutdown complete.")


# ─── FastAPI Application ───────────────────────────────────────────────────────

app = FastAPI(
    title="AuditPortal Authentication & Access Control",
    description=(
        "Multi-tenant audit-firm backend: tool-scoped sessions with lockout, "
        "role and custom permissions, and firm policy administration."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── CORS ──────────────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)

# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(auth_router)
app.include_router(rbac_router)


# ── Exception Handlers ────────────────────────────────────────────────────────

def _error_body(code: str, message: str) -> dict:
    return {"success": False, "error": {"code": code, "message": message}}


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.code, exc.message),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request.")
    if field:
        message = f"{field}: {message}"
    return JSONResponse(status_code=422, content=_error_body("VALIDATION_ERROR", message))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Catches unhandled exceptions and returns a consistent JSON error response.
    Prevents stack traces from leaking to the frontend in production.
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    message = str(exc) if settings.debug else "Contact your firm administrator."
    return JSONResponse(status_code=500, content=_error_body("INTERNAL_ERROR", message))


# ── Root / Health ─────────────────────────────────────────────────────────────
@app.get("/", tags=["Health"])
async def root():
    return {
        "service": settings.app_name,
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.app_env,
        "docs": "/docs",
    }


@app.get("/health", tags=["Health"])
async def health(request: Request):
    """Liveness probe. Reports whether the services were wired at startup."""
    return {
        "status": "healthy",
        "auth": "ready" if getattr(request.app.state, "session_manager", None) else "not initialized",
    }
