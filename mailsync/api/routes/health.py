from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest

from mailsync.config import settings
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.metrics import registry
from mailsync.api.dependencies import verify_api_key
from mailsync.db.database import check_database_health

router = APIRouter()


@router.get("/health", summary="Health Check")
def health_check():
    """Simple health check endpoint."""
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.app_version,
        "timestamp": utc_now().isoformat(),
    }


@router.get("/metrics", response_class=PlainTextResponse, dependencies=[Depends(verify_api_key)])
def metrics():
    """Prometheus metrics endpoint."""
    return generate_latest(registry)


@router.get("/ready", summary="Readiness Check")
def readiness_check():
    """Readiness check: the database must answer."""
    if not check_database_health():
        return JSONResponse(status_code=503, content={"status": "not ready", "database": "unreachable"})
    return {"status": "ready"}
