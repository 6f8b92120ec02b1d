import os
import uuid

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.config import settings
from app.routers import admin_integrations, admin_job_queue, shipstation_orders, shipstation_webhook
from app.utils.logger import logger

app = FastAPI(title="ShipStation Connector API", version="1.0.0")

origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


# Request logging middleware with request ID
@app.middleware("http")
async def request_logger(request: Request, call_next):
    rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:8]
    request.state.rid = rid
    logger.info("→ %s %s rid=%s", request.method, request.url.path, rid)
    try:
        resp = await call_next(request)
    except Exception as e:
        logger.exception("Unhandled error rid=%s: %s", rid, str(e))
        error_resp = JSONResponse({"success": False, "error": "internal_error", "rid": rid}, status_code=500)
        error_resp.headers["X-Request-ID"] = rid
        return error_resp
    logger.info("← %s status=%s rid=%s", request.url.path, resp.status_code, rid)
    resp.headers["X-Request-ID"] = rid
    return resp


app.include_router(shipstation_webhook.router)
app.include_router(shipstation_orders.router)
app.include_router(admin_job_queue.router)
app.include_router(admin_integrations.router)


def _prepare_database() -> None:
    from app.models_sqlalchemy import Base, engine
    from app.models_sqlalchemy import models  # noqa: F401  (registers tables)

    if settings.is_sqlite:
        logger.info("Using SQLite database; creating tables if missing")
        Base.metadata.create_all(bind=engine)
        return

    logger.info("Running database migrations...")
    try:
        from alembic import command
        from alembic.config import Config

        ini_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "alembic.ini")
        alembic_cfg = Config(ini_path)
        alembic_cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
        command.upgrade(alembic_cfg, "head")
        logger.info("Database migrations completed")
    except Exception as e:
        logger.warning("Alembic migration failed: %s", e)
        logger.warning("Continuing startup - tables may already exist or will be created manually")


@app.on_event("startup")
async def startup_event():
    logger.info("ShipStation Connector API starting up...")
    _prepare_database()

    if settings.JOB_QUEUE_ENABLED:
        from app.services.job_queue.service import job_queue_service

        job_queue_service.start_processing()
        logger.info("Job queue worker started (runs every %s seconds)", settings.JOB_QUEUE_INTERVAL_SECONDS)
    else:
        logger.info("Job queue disabled; run app.workers.job_queue_worker separately")


@app.on_event("shutdown")
async def shutdown_event():
    from app.services.job_queue.service import job_queue_service

    if job_queue_service.is_running:
        await job_queue_service.stop_processing()


@app.get("/healthz")
async def healthz():
    return {"status": "ok"}


@app.get("/healthz/db")
async def healthz_db():
    """Database health check endpoint"""
    try:
        from app.models_sqlalchemy import engine

        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        logger.exception("Database health check failed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database unavailable: {type(e).__name__}",
        )


@app.get("/")
async def root():
    return {"message": "ShipStation Connector API", "version": "1.0.0", "docs": "/docs"}
