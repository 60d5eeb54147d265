from __future__ import annotations

import logging
import sys

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pythonjsonlogger import jsonlogger
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .config import settings
from .database import init_db
from .rate_limit import limiter
from .housekeeping import build_tasks, start_all, stop_all
from .api import routes_admin, routes_analytics, routes_forms, routes_internal, routes_pages
from .auth.routes_auth import router as auth_router
from .auth.seed import seed_admin
from .security.admission import AdmissionMiddleware

# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------

def _configure_logging() -> None:
    """JSON log lines when log_format=json (default), plain text otherwise."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "json":
        handler.setFormatter(jsonlogger.JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        ))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root.addHandler(handler)


_configure_logging()
logger = logging.getLogger("civicsite")

init_db()

# Seed default admin if no users exist
seed_admin()

app = FastAPI(
    title="civicsite",
    version="1.0.0",
    description=(
        "Backend for the organisation website: request admission (rate limits, "
        "threat gate, admin allow-list), public forms, two-factor admin login, "
        "audit trail and security alerting."
    ),
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None,
)

# Per-endpoint limits (CSP reports)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(AdmissionMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    content = {"error": "Invalid form data"}
    if not settings.is_production:
        content["details"] = [
            {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg", "")}
            for err in exc.errors()
        ]
    return JSONResponse(content, status_code=400)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "Internal server error"}, status_code=500)


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

app.include_router(auth_router)
app.include_router(routes_forms.router)
app.include_router(routes_analytics.router)
app.include_router(routes_internal.router)
app.include_router(routes_admin.router)
app.include_router(routes_pages.router)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@app.on_event("startup")
async def start_housekeeping() -> None:
    app.state.housekeeping = build_tasks()
    await start_all(app.state.housekeeping)


@app.on_event("shutdown")
async def stop_housekeeping() -> None:
    tasks = getattr(app.state, "housekeeping", None)
    if tasks:
        await stop_all(tasks)


@app.get("/health", tags=["meta"])
def health() -> dict:
    return {"status": "healthy"}


@app.get("/healthz", tags=["meta"])
def healthz() -> dict:
    """Lightweight probe for load balancers."""
    return {"status": "ok"}
