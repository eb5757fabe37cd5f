import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Tuple
from zoneinfo import ZoneInfo

from cleanmatch.config import QUOTA_TIMEZONE
from cleanmatch.models import QuotaInfo
from cleanmatch.services.database import Database, database, to_iso
from cleanmatch.services.subscription_store import SubscriptionStore, subscription_store

logger = logging.getLogger(__name__)


@dataclass
class QuotaLedger:
    """Daily offer counters derived from offer rows.

    ``used`` is never stored: it is the number of offers the provider created
    since local midnight, so consumption is idempotent and the day rolls over
    without a reset job.
    """

    database: Database
    subscriptions: SubscriptionStore
    timezone_name: str = QUOTA_TIMEZONE

    def __post_init__(self) -> None:
        self._zone = ZoneInfo(self.timezone_name)

    def day_window(self, now: datetime) -> Tuple[datetime, datetime]:
        local_now = now.astimezone(self._zone)
        day_start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
        next_day = (day_start + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        return day_start, next_day

    def check(self, conn: sqlite3.Connection, provider_id: str) -> QuotaInfo:
        """Quota state inside the caller's transaction."""
        subscription = self.subscriptions.effective_tier_in(conn, provider_id)
        day_start, next_day = self.day_window(self.database.now())
        used = conn.execute(
            "SELECT COUNT(*) AS c FROM offers WHERE provider_id = ? AND created_at >= ?",
            (provider_id, to_iso(day_start)),
        ).fetchone()["c"]
        limit = subscription.daily_offer_limit if subscription else 0
        remaining = max(0, limit - int(used))
        return QuotaInfo(
            provider_id=provider_id,
            tier=subscription.tier if subscription else None,
            allowed=limit > 0 and remaining > 0,
            used=int(used),
            limit=limit,
            remaining=remaining,
            reset_at=to_iso(next_day),
        )

    def can_submit(self, provider_id: str) -> QuotaInfo:
        with self.database.transaction() as conn:
            return self.check(conn, provider_id)

    def consume(self, provider_id: str, offer_id: str) -> QuotaInfo:
        info = self.can_submit(provider_id)
        logger.info(
            "Quota consumed: provider=%s offer=%s used=%s limit=%s remaining=%s",
            provider_id,
            offer_id,
            info.used,
            info.limit,
            info.remaining,
        )
        return info


quota_ledger = QuotaLedger(database=database, subscriptions=subscription_store)
