"""
sylvan.api.main — FastAPI application entry point
===================================================

Run with::

    uvicorn sylvan.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from sylvan import __version__  # noqa: E402
from sylvan.api.auth import router as auth_router  # noqa: E402
from sylvan.api.deps import get_engine  # noqa: E402
from sylvan.api.rate_limit import configure_rate_limiter  # noqa: E402
from sylvan.api.routes.admin import router as admin_router  # noqa: E402
from sylvan.api.routes.audit import router as audit_router  # noqa: E402
from sylvan.api.routes.cron import router as cron_router  # noqa: E402
from sylvan.api.routes.filter_presets import router as filter_presets_router  # noqa: E402
from sylvan.api.routes.tasks import router as tasks_router  # noqa: E402
from sylvan.api.routes.users import router as users_router  # noqa: E402
from sylvan.api.routes.workflows import router as workflows_router  # noqa: E402
from sylvan.errors import SylvanError  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine and the limiters."""
    engine = get_engine()
    configure_rate_limiter(engine=engine)
    logger.info("Sylvan API started — engine ready (%s)", engine.url.database)
    yield
    logger.info("Sylvan API shutting down")


app = FastAPI(
    title="Sylvan Token API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SylvanError)
async def sylvan_error_handler(request: Request, exc: SylvanError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=exc.headers)


# Mount routers
app.include_router(auth_router, prefix="/api")
app.include_router(tasks_router, prefix="/api")
app.include_router(users_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(audit_router, prefix="/api")
app.include_router(filter_presets_router, prefix="/api")
app.include_router(workflows_router, prefix="/api")
app.include_router(cron_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
