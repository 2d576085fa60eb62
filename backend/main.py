from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging

import uvicorn

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import get_db

# ENV
from config.env import (
    ENV,
    CORS_ALLOWED_ORIGINS,
    ENABLE_WORKERS,
    LOG_LEVEL,
    PORT,
    validate_production_env,
)

# ROUTES
from routes.mcp import router as mcp_router
from routes.acp import router as acp_router
from routes.fees import router as fees_router
from routes.reputation import router as reputation_router
from routes.api_keys import router as api_keys_router
from routes.orders import router as orders_router

# WORKERS
from utils.indexes import ensure_indexes
from workers.risk_tier_worker import risk_tier_worker
from workers.reputation_worker import reputation_worker
from workers.acp_session_expiry_worker import acp_session_expiry_worker
from workers.audit_cleanup_worker import audit_cleanup_worker

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

validate_production_env()
logger.info("ENV=%s", ENV)

app = FastAPI(
    title="Cardmarket Agent API",
    version="1.0.0",
    docs_url=None if ENV == "production" else "/docs",
    redoc_url=None if ENV == "production" else "/redoc",
    openapi_url=None if ENV == "production" else "/openapi.json",
)

# -----------------------------
# CORS
# -----------------------------

allowed_origins = [origin.strip() for origin in CORS_ALLOWED_ORIGINS if origin.strip()]
if not allowed_origins:
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# ERRORS
# -----------------------------

@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"error": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"error": "Invalid request data", "details": jsonable_encoder(exc.errors())},
        status_code=400,
    )


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("UNHANDLED_ERROR path=%s", request.url.path)
    return JSONResponse({"error": "Internal server error"}, status_code=500)

# -----------------------------
# ROUTES
# -----------------------------

app.include_router(mcp_router)
app.include_router(acp_router)
app.include_router(fees_router)
app.include_router(reputation_router)
app.include_router(api_keys_router)
app.include_router(orders_router)

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():

    return {"status": "ok"}

@app.get("/api/health/db")
async def health_db():
    db = get_db()
    await db.command("ping")
    return {"status": "mongodb connected"}

# -----------------------------
# STARTUP WORKERS (ONE PLACE ONLY)
# -----------------------------

@app.on_event("startup")
async def start_background_workers():
    if not ENABLE_WORKERS:
        logger.info("WORKERS_DISABLED")
        return

    await ensure_indexes(get_db())

    asyncio.create_task(risk_tier_worker())
    asyncio.create_task(reputation_worker())
    asyncio.create_task(acp_session_expiry_worker())
    asyncio.create_task(audit_cleanup_worker())

# -----------------------------
# ENTRYPOINT
# -----------------------------

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=PORT, reload=ENV != "production")
