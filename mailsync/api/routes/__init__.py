from fastapi import APIRouter
from .health import router as health_router
from .email_sync import router as email_sync_router
from .webhooks import router as webhooks_router
from .mail_actions import router as mail_actions_router

# Create main API router
api_router = APIRouter(prefix="/api/v1")

# Include sub-routers
api_router.include_router(health_router, tags=["health"])
api_router.include_router(email_sync_router, tags=["email-sync"])
api_router.include_router(webhooks_router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(mail_actions_router, tags=["mail-actions"])
