import time
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector

logger = get_logger("middleware")

# Probes and provider pushes arrive constantly; keep them out of INFO logs
QUIET_PREFIXES = ("/api/v1/health", "/api/v1/ready", "/api/v1/metrics", "/api/v1/webhooks/")


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request with its duration and counts it in ``api_requests_total``."""

    async def dispatch(self, request: Request, call_next):
        started = time.perf_counter()
        response: Response = await call_next(request)
        duration = time.perf_counter() - started

        path = request.url.path
        level = "DEBUG" if path.startswith(QUIET_PREFIXES) else "INFO"
        client_ip = request.client.host if request.client else None
        logger.log(level, f"{request.method} {path} -> {response.status_code} in {duration:.3f}s ({client_ip})")

        # Route template, not the raw path, so ids do not explode label cardinality
        route = request.scope.get("route")
        MetricsCollector.increment_api_requests(
            method=request.method,
            endpoint=getattr(route, "path", path),
            status_code=response.status_code,
        )
        return response
