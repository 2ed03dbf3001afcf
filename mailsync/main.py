from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from mailsync.api.middleware import LoggingMiddleware
from mailsync.api.routes import api_router
from mailsync.config import settings
from mailsync.db.database import check_database_health, sync_engine
from mailsync.utils.logging import setup_logging, get_logger

setup_logging()
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Refuse to start without a database; release pooled connections on shutdown."""
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    if not check_database_health():
        raise RuntimeError("Database connection failed")

    yield

    sync_engine.dispose()
    logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Multi-account Gmail and Outlook sync with push notifications",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan
)

app.add_middleware(LoggingMiddleware)
app.include_router(api_router)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=503,
        content={"success": False, "error": "Database unavailable", "authError": False},
    )


@app.get("/")
def root():
    return {
        "app_name": settings.app_name,
        "version": settings.app_version,
        "status": "running",
        "docs_url": "/docs" if settings.debug else None
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "mailsync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
