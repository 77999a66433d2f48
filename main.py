"""
Main FastAPI application (entrypoint).

Responsibilities:
- Wire API routers (user / admin / internal job triggers)
- Register centralized exception handlers ({ok, data, error} envelope)
- Request-id logging middleware
- Health / readiness endpoints
Notes:
- Schema is managed by Alembic; with DEBUG=true tables are also created on
  startup for local development.
- The daily batch runs in workers/daily_jobs_worker.py, not in this process.
"""
import logging

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from api import routes_admin, routes_internal, routes_user
from config.settings import settings
from core.db import Base, engine
from core.exception_handlers import register_exception_handlers
from core.logging import configure_logging, request_logging_middleware
from core.response import error, ok
from infra.rabbitmq_client import rabbitmq_client
from infra.redis_client import close_redis

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.API_TITLE, version=settings.API_VERSION)

# CORS - the admin dashboard is served from another origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(routes_user.router, prefix="", tags=["user"])
app.include_router(routes_admin.router, prefix="/admin", tags=["admin"])
app.include_router(routes_internal.router, prefix="/internal", tags=["internal"])

register_exception_handlers(app)

# Adds X-Request-ID header and logs every request
app.middleware("http")(request_logging_middleware)


@app.get("/health")
async def health():
    """Simple health endpoint used by load balancers and orchestrators."""
    return ok({"status": "ok"})


@app.get("/ready")
async def ready():
    """Readiness: the ledger is useless without its database."""
    if engine is None:
        return JSONResponse(status_code=503, content=error("db_disabled", "DATABASE_URL is disabled"))
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return ok({"ready": True})
    except Exception as e:
        logger.warning("Readiness check failed: %s", e)
        return JSONResponse(status_code=503, content=error("db_unreachable", "DB unavailable"))


@app.on_event("startup")
async def on_startup():
    if settings.DEBUG and engine is not None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("DEBUG: tables created from metadata")


@app.on_event("shutdown")
async def on_shutdown():
    await rabbitmq_client.disconnect()
    await close_redis()
    if engine is not None:
        await engine.dispose()


if __name__ == "__main__":
    # Local dev: python main.py. Production: uvicorn main:app --workers N
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
