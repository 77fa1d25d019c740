import asyncio
import logging
import re
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from crm_delivery.config import settings
from crm_delivery.routers import delivery, delivery_agencies
from crm_delivery.services.delivery import build_delivery_container
from crm_delivery.utils.logger import logger

app = FastAPI(title="CRM Delivery API", version="1.0.0")

app.state.delivery = build_delivery_container()

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
    max_age=3600,
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = uuid.uuid4().hex[:8]
    request.state.rid = rid
    logging.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
        logging.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        logging.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse(
            {"error": "internal_error", "rid": rid, "message": str(e), "type": type(e).__name__},
            status_code=500,
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


app.include_router(delivery.router)
app.include_router(delivery_agencies.router)


def _run_migrations(database_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config("alembic.ini")
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)
    command.upgrade(alembic_cfg, "head")


@app.on_event("startup")
async def startup_event():
    logger.info("CRM Delivery API starting up...")
    database_url = settings.DATABASE_URL

    if "postgresql" in database_url:
        masked_url = re.sub(r"://([^:]+):([^@]+)@", r"://\1:****@", database_url)
        logger.info(f"Database URL: {masked_url}")
        try:
            _run_migrations(database_url)
            logger.info("Database migrations completed successfully")
        except Exception as e:
            logger.error(f"Alembic migration failed: {e}")
    else:
        from crm_delivery.init_db import init_db

        logger.info("Using SQLite database; creating tables if missing")
        init_db()

    container = app.state.delivery
    await container.registry.ensure_initialized()

    if settings.DELIVERY_SYNC_WORKER_ENABLED:
        from crm_delivery.workers import run_delivery_sync_worker_loop

        asyncio.create_task(run_delivery_sync_worker_loop(container.sync_service))
        logger.info(
            "Delivery sync worker started (checks every %s seconds)",
            settings.DELIVERY_SYNC_TICK_SECONDS,
        )
    else:
        logger.info("Delivery sync worker disabled (DELIVERY_SYNC_WORKER_ENABLED=false)")


@app.get("/healthz")
async def healthz():
    registry = app.state.delivery.registry
    return {
        "status": "ok",
        "registryInitialized": registry.initialized,
        "registryLoadError": registry.load_error,
        "syncRunning": app.state.delivery.sync_service.is_running,
    }
