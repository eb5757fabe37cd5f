import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List

from cleanmatch.models import SweepResult
from cleanmatch.services.database import Database, database, to_iso
from cleanmatch.services.notification_store import NotificationStore, notification_store
from cleanmatch.services.provider_store import ProviderStore, provider_store
from cleanmatch.services.request_store import RequestStore, request_store
from cleanmatch.services.settings_store import SettingsStore, settings_store
from cleanmatch.services.subscription_store import SubscriptionStore, subscription_store

logger = logging.getLogger(__name__)


@dataclass
class LifecycleSweeper:
    """Time-driven transitions, run by an external scheduler.

    Every item is settled in its own transaction, so one failing row is
    logged and skipped without affecting the rest of the batch. All updates
    are guarded by the row's current status, so re-running a sweep settles
    nothing twice.
    """

    database: Database
    settings: SettingsStore
    requests: RequestStore
    subscriptions: SubscriptionStore
    providers: ProviderStore
    notifications: NotificationStore

    def _item_budget(self) -> float:
        return self.settings.get_float("sweep_item_budget_seconds")

    def expire_offers(self) -> SweepResult:
        result = SweepResult(name="expire_offers")
        cutoff_iso = to_iso(self.database.now() - timedelta(days=self.settings.get_int("offer_expiry_days")))
        budget = self._item_budget()
        for offer_id in self.requests.list_expirable_offer_ids(cutoff_iso):
            try:
                offer = self.requests.expire_offer(offer_id, cutoff_iso, timeout=budget)
            except Exception:
                logger.exception("Offer expiry failed: offer=%s", offer_id)
                result.failed += 1
                result.failed_ids.append(offer_id)
                continue
            if offer is None:
                continue
            result.processed += 1
            try:
                provider = self.providers.get(offer.provider_id)
            except Exception:
                logger.exception("Offer expiry notification skipped: offer=%s", offer_id)
                continue
            self.notifications.notify_one(
                provider.user_id,
                "offer_expired",
                "Offer expired",
                "Your offer expired without a response",
                {"offer_id": offer.id, "refunded_points": offer.points_used},
            )
        self._log(result)
        return result

    def expire_requests(self) -> SweepResult:
        result = SweepResult(name="expire_requests")
        cutoff_iso = to_iso(self.database.now() - timedelta(days=self.settings.get_int("request_expiry_days")))
        try:
            result.processed = self.requests.expire_requests(cutoff_iso, timeout=self._item_budget())
        except Exception:
            logger.exception("Request expiry failed")
            result.failed = 1
        self._log(result)
        return result

    def auto_complete_engagements(self) -> SweepResult:
        result = SweepResult(name="auto_complete_engagements")
        cutoff_iso = to_iso(self.database.now() - timedelta(hours=self.settings.get_int("auto_complete_hours")))
        budget = self._item_budget()
        for engagement_id in self.requests.list_auto_completable_ids(cutoff_iso):
            try:
                engagement = self.requests.auto_complete(engagement_id, cutoff_iso, timeout=budget)
            except Exception:
                logger.exception("Auto-completion failed: engagement=%s", engagement_id)
                result.failed += 1
                result.failed_ids.append(engagement_id)
                continue
            if engagement is None:
                continue
            result.processed += 1
            self.notifications.notify_many(
                [engagement.customer_id, engagement.provider_user_id],
                "engagement_completed",
                "Job completed",
                "The job was completed automatically after the confirmation window",
                {"engagement_id": engagement.id},
            )
        self._log(result)
        return result

    def sweep_subscriptions(self) -> SweepResult:
        result = SweepResult(name="sweep_subscriptions")
        budget = self._item_budget()
        for subscription_id, target in self.subscriptions.list_due_transitions():
            try:
                changed = self.subscriptions.apply_transition(subscription_id, target, timeout=budget)
            except Exception:
                logger.exception("Subscription transition failed: subscription=%s target=%s", subscription_id, target)
                result.failed += 1
                result.failed_ids.append(subscription_id)
                continue
            if changed:
                result.processed += 1
                if target == "EXPIRED":
                    self._notify_expired(subscription_id)
        self._log(result)
        return result

    def _notify_expired(self, subscription_id: str) -> None:
        try:
            subscription = self.subscriptions.get(subscription_id)
            provider = self.providers.get(subscription.provider_id)
        except Exception:
            logger.exception("Subscription expiry notification skipped: subscription=%s", subscription_id)
            return
        self.notifications.notify_one(
            provider.user_id,
            "subscription_expired",
            "Subscription expired",
            f"Your {subscription.plan_name} subscription has expired",
            {"subscription_id": subscription_id},
        )

    def run_hourly(self) -> List[SweepResult]:
        return [self.expire_offers(), self.expire_requests()]

    def run_daily(self) -> List[SweepResult]:
        return [self.auto_complete_engagements(), self.sweep_subscriptions()]

    def _log(self, result: SweepResult) -> None:
        if result.failed:
            logger.warning(
                "Sweep %s finished: processed=%s failed=%s ids=%s",
                result.name,
                result.processed,
                result.failed,
                result.failed_ids,
            )
        else:
            logger.info("Sweep %s finished: processed=%s", result.name, result.processed)


lifecycle_sweeper = LifecycleSweeper(
    database=database,
    settings=settings_store,
    requests=request_store,
    subscriptions=subscription_store,
    providers=provider_store,
    notifications=notification_store,
)
