# chat_relay/main.py
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__
from .api import admin, auth, chat
from .core.config import get_model_list, settings
from .core.database import check_db_health, dispose_engine, init_db
from .core.security import setup_cors
from .services.llm import get_provider
from .services.relay import drain_background_tasks

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise
    logger.info(f"LLM provider {settings.LLM_PROVIDER}, models: {', '.join(get_model_list())}")

    yield

    # let pending history writes finish before the engine goes away
    await drain_background_tasks(timeout=30)
    await dispose_engine()


# === Application ===
app = FastAPI(
    title="Chat Relay API",
    description="Authenticated chat relay to LLM providers with model fallback and history",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# === CORS (adds middleware) ===
setup_cors(app)

# === Routers under /api ===
app.include_router(chat.router, prefix="/api", tags=["chat"])
app.include_router(auth.router, prefix="/api", tags=["auth"])
app.include_router(admin.router, prefix="/api", tags=["admin"])


# === Health check ===
@app.get("/health")
async def health_check():
    """Checks the database and the LLM provider."""
    checks = {
        "database": await check_db_health(),
        "llm": False,
    }

    try:
        async with httpx.AsyncClient(timeout=5) as client:
            response = await client.get(get_provider().health_url)
            checks["llm"] = response.status_code < 500
    except Exception as e:
        logger.error(f"LLM health check failed: {e}")

    if all(checks.values()):
        status = "healthy"
    elif checks["database"]:
        status = "degraded"
    else:
        status = "unhealthy"

    return {"status": status, "services": checks}


# === API status ===
@app.get("/api/status")
async def status():
    return {
        "version": app.version,
        "provider": settings.LLM_PROVIDER,
        "models": get_model_list(),
    }


# === Global error handler ===
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Logs every unhandled exception"""
    logger.error(f"Unhandled exception in {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error. Please try again later."}
    )


# === Entry point ===
if __name__ == "__main__":
    logger.info(f"Starting server on {settings.HOST}:{settings.PORT}")
    import uvicorn
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        log_level="info",
        reload=False
    )
