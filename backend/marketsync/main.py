import asyncio
import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from marketsync.config import settings
from marketsync.errors import MarketsyncError, http_status_for
from marketsync.models_sqlalchemy import engine, init_db
from marketsync.routers import catalogs, channels, marketplace, orders, products, shop, webhooks
from marketsync.utils.logger import logger

app = FastAPI(title="Marketsync API", version="1.0.0")

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
            status_code=500
        )
        error_resp.headers["X-Request-ID"] = rid
        return error_resp


@app.exception_handler(MarketsyncError)
async def marketsync_error_handler(request: Request, exc: MarketsyncError):
    status_code = http_status_for(exc)
    if status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse({"error": exc.code, "message": exc.message}, status_code=status_code)


app.include_router(marketplace.router)
app.include_router(products.router)
app.include_router(orders.router)
app.include_router(catalogs.router)
app.include_router(channels.router)
app.include_router(shop.router)
app.include_router(webhooks.router)


@app.on_event("startup")
async def startup_event():
    logger.info("Marketsync API starting up...")
    init_db()

    if settings.RUN_SCHEDULER:
        from marketsync.workers import run_sync_scheduler_loop

        asyncio.create_task(run_sync_scheduler_loop())
        logger.info(f"✅ Sync scheduler started (runs every {settings.SCHEDULER_INTERVAL_SECONDS} seconds)")
    else:
        logger.info("⏭️  Sync scheduler disabled (RUN_SCHEDULER=false)")


@app.get("/health")
async def health():
    """Liveness plus a database round trip."""
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        database = "unavailable"
    return {"status": "ok" if database == "connected" else "degraded", "database": database}


@app.get("/")
async def root():
    return {
        "message": "Marketsync API",
        "version": "1.0.0",
        "docs": "/docs"
    }
