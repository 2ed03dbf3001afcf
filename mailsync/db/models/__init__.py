from .account import EmailAccount, OAuthToken
from .sync_job import SyncJob, SyncJobStatus
from .message import CachedMessage
from .watch import WatchRegistration
from .webhook_queue import WebhookQueueItem, WebhookStatus
