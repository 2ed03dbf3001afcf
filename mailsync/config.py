from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Optional


class Settings(BaseSettings):
    # Database
    database_url: str = Field(..., env="DATABASE_URL")

    # Redis / Celery
    redis_url: str = Field(default="redis://localhost:6379/0", env="REDIS_URL")
    celery_broker_url: str = Field(..., env="CELERY_BROKER_URL")
    celery_result_backend: str = Field(..., env="CELERY_RESULT_BACKEND")

    # Logging
    log_level: str = Field(default="INFO", env="LOG_LEVEL")
    log_file: Optional[str] = Field(default=None, env="LOG_FILE")

    # Security
    api_key: Optional[str] = Field(default=None, env="API_KEY")

    # Application
    app_name: str = Field(default="Mailsync Backend", env="APP_NAME")
    app_version: str = Field(default="0.1.0", env="APP_VERSION")
    debug: bool = Field(default=False, env="DEBUG")

    # Celery
    celery_worker_concurrency: int = Field(default=4, env="CELERY_WORKER_CONCURRENCY")
    celery_task_timeout: int = Field(default=360, env="CELERY_TASK_TIMEOUT")

    # Google OAuth / Gmail push
    google_client_id: Optional[str] = Field(default=None, env="GOOGLE_CLIENT_ID")
    google_client_secret: Optional[str] = Field(default=None, env="GOOGLE_CLIENT_SECRET")
    google_project_id: Optional[str] = Field(default=None, env="GOOGLE_PROJECT_ID")
    google_pubsub_topic: str = Field(default="gmail-notifications", env="GOOGLE_PUBSUB_TOPIC")
    google_token_url: str = Field(default="https://oauth2.googleapis.com/token", env="GOOGLE_TOKEN_URL")
    gmail_api_base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1", env="GMAIL_API_BASE_URL"
    )

    # Microsoft OAuth / Graph subscriptions
    microsoft_client_id: Optional[str] = Field(default=None, env="MICROSOFT_CLIENT_ID")
    microsoft_client_secret: Optional[str] = Field(default=None, env="MICROSOFT_CLIENT_SECRET")
    microsoft_token_url: str = Field(
        default="https://login.microsoftonline.com/common/oauth2/v2.0/token", env="MICROSOFT_TOKEN_URL"
    )
    microsoft_scopes: str = Field(
        default=(
            "https://graph.microsoft.com/Mail.Read https://graph.microsoft.com/Mail.Send "
            "https://graph.microsoft.com/Mail.ReadWrite https://graph.microsoft.com/User.Read offline_access"
        ),
        env="MICROSOFT_SCOPES",
    )
    graph_api_base_url: str = Field(default="https://graph.microsoft.com/v1.0", env="GRAPH_API_BASE_URL")
    outlook_notification_url: Optional[str] = Field(default=None, env="OUTLOOK_NOTIFICATION_URL")
    outlook_client_state: Optional[str] = Field(default=None, env="OUTLOOK_CLIENT_STATE")
    outlook_subscription_lifetime_hours: int = Field(default=72, env="OUTLOOK_SUBSCRIPTION_LIFETIME_HOURS")

    # Sync
    sync_timeout_seconds: int = Field(default=300, env="SYNC_TIMEOUT_SECONDS")
    sync_page_size: int = Field(default=100, env="SYNC_PAGE_SIZE")
    sync_default_max_messages: int = Field(default=1000, env="SYNC_DEFAULT_MAX_MESSAGES")
    sync_checkpoint_interval: int = Field(default=50, env="SYNC_CHECKPOINT_INTERVAL")
    sync_stuck_job_minutes: int = Field(default=10, env="SYNC_STUCK_JOB_MINUTES")

    # Background sync sweep
    background_sync_limit: int = Field(default=5, env="BACKGROUND_SYNC_LIMIT")
    background_sync_stale_minutes: int = Field(default=5, env="BACKGROUND_SYNC_STALE_MINUTES")
    background_sync_max_messages: int = Field(default=200, env="BACKGROUND_SYNC_MAX_MESSAGES")
    background_sync_account_gap_seconds: float = Field(default=2.0, env="BACKGROUND_SYNC_ACCOUNT_GAP_SECONDS")

    # Provider HTTP
    provider_max_attempts: int = Field(default=3, env="PROVIDER_MAX_ATTEMPTS")
    provider_backoff_base: float = Field(default=2.0, env="PROVIDER_BACKOFF_BASE")
    provider_request_timeout: float = Field(default=30.0, env="PROVIDER_REQUEST_TIMEOUT")
    provider_default_retry_after: float = Field(default=2.0, env="PROVIDER_DEFAULT_RETRY_AFTER")
    gmail_max_concurrent: int = Field(default=5, env="GMAIL_MAX_CONCURRENT")
    gmail_min_delay_ms: int = Field(default=200, env="GMAIL_MIN_DELAY_MS")
    outlook_max_concurrent: int = Field(default=3, env="OUTLOOK_MAX_CONCURRENT")
    outlook_min_delay_ms: int = Field(default=1000, env="OUTLOOK_MIN_DELAY_MS")

    # Webhook queue
    webhook_batch_size: int = Field(default=10, env="WEBHOOK_BATCH_SIZE")
    webhook_max_retries: int = Field(default=3, env="WEBHOOK_MAX_RETRIES")
    webhook_retry_base_seconds: int = Field(default=60, env="WEBHOOK_RETRY_BASE_SECONDS")
    webhook_item_delay_seconds: float = Field(default=0.5, env="WEBHOOK_ITEM_DELAY_SECONDS")
    webhook_stuck_minutes: int = Field(default=10, env="WEBHOOK_STUCK_MINUTES")

    # Watch renewal
    watch_renewal_lead_hours: int = Field(default=24, env="WATCH_RENEWAL_LEAD_HOURS")

    model_config = {
        "env_file": ".env",
        "case_sensitive": False,
        "extra": "ignore"  # Allow extra environment variables
    }


settings = Settings()
