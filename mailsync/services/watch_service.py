"""
Watch Service

Creates and renews provider push registrations: Gmail ``users.watch`` and
Microsoft Graph subscriptions. Renewal runs on a schedule and picks up every
active registration that expires within the lead window, so a failed renewal
is simply retried on the next run.
"""

from datetime import timedelta
from typing import Dict, Any, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from mailsync.config import settings
from mailsync.db.models import EmailAccount, WatchRegistration
from mailsync.services.email_connectors import (
    AuthExpiredError,
    EmailConnectorError,
    ProviderError,
    connector_factory,
)
from mailsync.services.token_store import token_store
from mailsync.utils.datetime_utils import utc_now
from mailsync.utils.logging import get_logger
from mailsync.utils.metrics import MetricsCollector


class WatchService:

    def __init__(self, tokens=None, factory=None):
        self.tokens = tokens or token_store
        self.factory = factory or connector_factory
        self.logger = get_logger("watch_service")

    def setup_watch(self, db: Session, account: EmailAccount) -> Dict[str, Any]:
        """Create a push registration for the account and upsert its row."""
        result = {"accountId": str(account.id), "email": account.email, "success": False}
        try:
            connector = self.factory.for_account(account)
            access_token = self.tokens.get_valid_access_token(db, account)
            info = connector.create_watch(access_token, str(account.id))
        except AuthExpiredError as e:
            self.tokens.deactivate_account(db, account, str(e))
            result.update(error="Authorization expired or revoked", authError=True)
            return result
        except EmailConnectorError as e:
            self.logger.error(f"Failed to set up watch for {account.email}: {e}")
            result["error"] = str(e)
            return result

        watch = db.query(WatchRegistration).filter_by(account_id=account.id).first()
        if watch is None:
            watch = WatchRegistration(account_id=account.id, provider=account.provider)
            db.add(watch)
        watch.provider = account.provider
        watch.expiration = info.expiration
        watch.is_active = True
        if info.history_id:
            watch.history_id = info.history_id
        if info.subscription_id:
            watch.subscription_id = info.subscription_id
        watch.updated_at = utc_now()
        db.commit()

        MetricsCollector.record_watch_renewal(account.provider, "created")
        self.logger.info(f"Watch set up for {account.email}, expires {info.expiration}")
        result.update(success=True, expiration=info.expiration.isoformat() if info.expiration else None)
        return result

    def setup_all(self, db: Session, provider: Optional[str] = None) -> Dict[str, Any]:
        query = db.query(EmailAccount).filter(EmailAccount.is_active.is_(True))
        if provider:
            query = query.filter(EmailAccount.provider == provider)
        results = [self.setup_watch(db, account) for account in query.all()]
        return {
            "success": True,
            "total": len(results),
            "created": sum(1 for r in results if r["success"]),
            "results": results,
        }

    def renew_expiring(self, db: Session, lead: Optional[timedelta] = None) -> Dict[str, int]:
        """
        Renew active registrations expiring within the lead window.

        Returns:
            {"renewed", "failed", "total"}
        """
        lead = lead or timedelta(hours=settings.watch_renewal_lead_hours)
        cutoff = utc_now() + lead
        registrations = (
            db.query(WatchRegistration)
            .filter(
                WatchRegistration.is_active.is_(True),
                or_(WatchRegistration.expiration.is_(None), WatchRegistration.expiration < cutoff),
            )
            .all()
        )

        stats = {"renewed": 0, "failed": 0, "total": len(registrations)}
        self.logger.info(f"Found {len(registrations)} registrations to renew")

        for registration in registrations:
            if self.renew(db, registration):
                stats["renewed"] += 1
            else:
                stats["failed"] += 1

        self.logger.info(f"Renewal complete: {stats['renewed']} renewed, {stats['failed']} failed")
        return stats

    def renew(self, db: Session, registration: WatchRegistration) -> bool:
        account = db.get(EmailAccount, registration.account_id)
        if account is None or not account.is_active:
            registration.is_active = False
            db.commit()
            self.logger.info(f"Deactivated registration {registration.id}: account missing or inactive")
            return False

        try:
            connector = self.factory.get_connector(registration.provider)
            access_token = self.tokens.get_valid_access_token(db, account)
            try:
                info = connector.renew_watch(access_token, registration.subscription_id)
            except ProviderError as e:
                if e.status_code != 404 or registration.provider != "outlook":
                    raise
                # Graph already dropped the subscription; make a new one
                self.logger.warning(f"Subscription {registration.subscription_id} is gone, recreating")
                info = connector.create_watch(access_token, str(account.id))
        except AuthExpiredError as e:
            self.tokens.deactivate_account(db, account, str(e))
            MetricsCollector.record_watch_renewal(registration.provider, "deactivated")
            return False
        except EmailConnectorError as e:
            db.rollback()
            self.logger.error(f"Failed to renew {registration.provider} watch for {account.email}: {e}")
            MetricsCollector.record_watch_renewal(registration.provider, "failed")
            return False

        registration.expiration = info.expiration
        if info.subscription_id:
            registration.subscription_id = info.subscription_id
        # A stored cursor still marks unprocessed history; only seed it when empty
        if info.history_id and not registration.history_id:
            registration.history_id = info.history_id
        registration.updated_at = utc_now()
        db.commit()

        MetricsCollector.record_watch_renewal(registration.provider, "renewed")
        self.logger.info(f"Renewed {registration.provider} watch for {account.email} until {info.expiration}")
        return True


# Global instance
watch_service = WatchService()
