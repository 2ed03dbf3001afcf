from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create a custom registry for better control
registry = CollectorRegistry()

api_requests = Counter(
    'api_requests_total',
    'Total API requests',
    ['method', 'endpoint', 'status_code'],
    registry=registry
)

sync_jobs = Counter(
    'mailsync_sync_jobs_total',
    'Sync jobs by provider and final status',
    ['provider', 'status'],
    registry=registry
)

sync_duration = Histogram(
    'mailsync_sync_duration_seconds',
    'Wall time of sync jobs',
    ['provider'],
    registry=registry
)

messages_synced = Counter(
    'mailsync_messages_synced_total',
    'Messages upserted into the cache',
    ['provider'],
    registry=registry
)

webhook_items = Counter(
    'mailsync_webhook_items_total',
    'Webhook queue item transitions',
    ['provider', 'status'],
    registry=registry
)

webhook_queue_pending = Gauge(
    'mailsync_webhook_queue_pending',
    'Pending webhook queue items seen by the last processor run',
    registry=registry
)

watch_renewals = Counter(
    'mailsync_watch_renewals_total',
    'Watch/subscription renewal outcomes',
    ['provider', 'outcome'],
    registry=registry
)

provider_retries = Counter(
    'mailsync_provider_retries_total',
    'Provider HTTP retries by reason',
    ['provider', 'reason'],
    registry=registry
)


class MetricsCollector:
    """Helper class for collecting application metrics."""

    @staticmethod
    def increment_api_requests(method: str, endpoint: str, status_code: int):
        api_requests.labels(method=method, endpoint=endpoint, status_code=str(status_code)).inc()

    @staticmethod
    def record_sync_job(provider: str, status: str, duration: float = None):
        sync_jobs.labels(provider=provider, status=status).inc()
        if duration is not None:
            sync_duration.labels(provider=provider).observe(duration)

    @staticmethod
    def increment_messages_synced(provider: str, count: int):
        if count:
            messages_synced.labels(provider=provider).inc(count)

    @staticmethod
    def record_webhook_item(provider: str, status: str):
        webhook_items.labels(provider=provider or "unknown", status=status).inc()

    @staticmethod
    def set_webhook_pending(count: int):
        webhook_queue_pending.set(count)

    @staticmethod
    def record_watch_renewal(provider: str, outcome: str):
        watch_renewals.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def increment_provider_retry(provider: str, reason: str):
        provider_retries.labels(provider=provider, reason=reason).inc()
