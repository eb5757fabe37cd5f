import calendar
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple
from uuid import uuid4

from cleanmatch.models import Subscription, SubscriptionPlan
from cleanmatch.services.database import Database, database, parse_iso, to_iso
from cleanmatch.services.errors import (
    InvalidStateError,
    StoreConflictError,
    StoreNotFoundError,
    StoreValidationError,
)

logger = logging.getLogger(__name__)


SEED_PLANS = [
    ("plan_basic_1m", "Basic 1 month", "BASIC", 1, 20000, 3, 1.0, 1),
    ("plan_basic_3m", "Basic 3 months", "BASIC", 3, 60000, 3, 1.0, 2),
    ("plan_basic_6m", "Basic 6 months", "BASIC", 6, 120000, 3, 1.0, 3),
    ("plan_basic_12m", "Basic 12 months", "BASIC", 12, 200000, 3, 1.0, 4),
    ("plan_pro_1m", "Pro 1 month", "PRO", 1, 50000, 10, 2.0, 5),
    ("plan_premium_1m", "Premium 1 month", "PREMIUM", 1, 100000, 50, 3.0, 6),
]

TRIAL_PLAN_ID = "plan_basic_3m"

LIVE_STATUSES = ("ACTIVE", "PAUSED", "QUEUED")

SUBSCRIPTION_SELECT = """
    SELECT s.*, p.name AS plan_name, p.tier, p.daily_offer_limit, p.priority_weight
    FROM provider_subscriptions s
    JOIN subscription_plans p ON p.id = s.plan_id
"""


def add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


@dataclass
class SubscriptionStore:
    """Stacked, time-boxed tier grants per provider.

    A provider may hold several rows at once. The effective tier is the
    ACTIVE row with the highest priority weight whose period covers now.
    QUEUED rows are pre-purchased renewals that flip to ACTIVE once their
    start passes, either on read or in the daily sweep.
    """

    database: Database

    def __post_init__(self) -> None:
        self._init_db()
        self._seed_plans()

    def _init_db(self) -> None:
        with self.database.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscription_plans (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    tier TEXT NOT NULL,
                    duration_months INTEGER NOT NULL,
                    price INTEGER NOT NULL,
                    daily_offer_limit INTEGER NOT NULL,
                    priority_weight REAL NOT NULL,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS provider_subscriptions (
                    id TEXT PRIMARY KEY,
                    provider_id TEXT NOT NULL,
                    plan_id TEXT NOT NULL REFERENCES subscription_plans(id),
                    status TEXT NOT NULL,
                    current_period_start TEXT NOT NULL,
                    current_period_end TEXT NOT NULL,
                    is_trial INTEGER NOT NULL DEFAULT 0,
                    cancelled_at TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_provider_subscriptions_provider_status
                ON provider_subscriptions (provider_id, status)
                """
            )

    def _seed_plans(self) -> None:
        with self.database.transaction() as conn:
            conn.executemany(
                """
                INSERT OR IGNORE INTO subscription_plans (
                    id, name, tier, duration_months, price, daily_offer_limit, priority_weight, sort_order, is_active
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1)
                """,
                SEED_PLANS,
            )

    def _plan_from_row(self, row: sqlite3.Row) -> SubscriptionPlan:
        return SubscriptionPlan(
            id=row["id"],
            name=row["name"],
            tier=row["tier"],
            duration_months=int(row["duration_months"]),
            price=int(row["price"]),
            daily_offer_limit=int(row["daily_offer_limit"]),
            priority_weight=float(row["priority_weight"]),
            sort_order=int(row["sort_order"]),
        )

    def _subscription_from_row(self, row: sqlite3.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            provider_id=row["provider_id"],
            plan_id=row["plan_id"],
            plan_name=row["plan_name"],
            tier=row["tier"],
            daily_offer_limit=int(row["daily_offer_limit"]),
            priority_weight=float(row["priority_weight"]),
            status=row["status"],
            current_period_start=row["current_period_start"],
            current_period_end=row["current_period_end"],
            is_trial=bool(row["is_trial"]),
            cancelled_at=row["cancelled_at"],
            created_at=row["created_at"],
        )

    def _load(self, conn: sqlite3.Connection, subscription_id: str) -> Subscription:
        row = conn.execute(f"{SUBSCRIPTION_SELECT} WHERE s.id = ?", (subscription_id,)).fetchone()
        if not row:
            raise StoreNotFoundError("Subscription not found")
        return self._subscription_from_row(row)

    def _load_plan(self, conn: sqlite3.Connection, plan_id: str) -> SubscriptionPlan:
        row = conn.execute(
            "SELECT * FROM subscription_plans WHERE id = ? AND is_active = 1",
            (plan_id,),
        ).fetchone()
        if not row:
            raise StoreNotFoundError("Subscription plan not found")
        return self._plan_from_row(row)

    def _insert(
        self,
        conn: sqlite3.Connection,
        *,
        provider_id: str,
        plan: SubscriptionPlan,
        status: str,
        start: datetime,
        is_trial: bool = False,
    ) -> Subscription:
        subscription_id = f"sub_{uuid4().hex[:10]}"
        conn.execute(
            """
            INSERT INTO provider_subscriptions (
                id, provider_id, plan_id, status, current_period_start, current_period_end, is_trial, cancelled_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?)
            """,
            (
                subscription_id,
                provider_id,
                plan.id,
                status,
                to_iso(start),
                to_iso(add_months(start, plan.duration_months)),
                1 if is_trial else 0,
                self.database.now_iso(),
            ),
        )
        return self._load(conn, subscription_id)

    def list_plans(self) -> List[SubscriptionPlan]:
        with self.database.read() as conn:
            rows = conn.execute(
                "SELECT * FROM subscription_plans WHERE is_active = 1 ORDER BY sort_order ASC, price ASC"
            ).fetchall()
        return [self._plan_from_row(row) for row in rows]

    def get(self, subscription_id: str) -> Subscription:
        with self.database.read() as conn:
            return self._load(conn, subscription_id)

    def history(self, provider_id: str) -> List[Subscription]:
        with self.database.read() as conn:
            rows = conn.execute(
                f"{SUBSCRIPTION_SELECT} WHERE s.provider_id = ? ORDER BY s.created_at DESC",
                (provider_id,),
            ).fetchall()
        return [self._subscription_from_row(row) for row in rows]

    def apply_due_transitions(self, conn: sqlite3.Connection, provider_id: Optional[str] = None) -> Tuple[int, int]:
        """Expire lapsed rows and promote queued renewals that have started."""
        now_iso = self.database.now_iso()
        scope = ""
        params: Tuple = ()
        if provider_id is not None:
            scope = " AND provider_id = ?"
            params = (provider_id,)
        expired = conn.execute(
            f"""
            UPDATE provider_subscriptions
            SET status = 'EXPIRED'
            WHERE status IN ('ACTIVE', 'PAUSED', 'CANCELLED', 'QUEUED')
              AND current_period_end < ?{scope}
            """,
            (now_iso, *params),
        ).rowcount
        promoted = conn.execute(
            f"""
            UPDATE provider_subscriptions
            SET status = 'ACTIVE'
            WHERE status = 'QUEUED'
              AND current_period_start <= ?
              AND current_period_end >= ?{scope}
            """,
            (now_iso, now_iso, *params),
        ).rowcount
        return expired, promoted

    def promote_and_expire(self) -> Tuple[int, int]:
        with self.database.transaction() as conn:
            expired, promoted = self.apply_due_transitions(conn)
        if expired or promoted:
            logger.info("Subscription transitions applied: expired=%s promoted=%s", expired, promoted)
        return expired, promoted

    def effective_tier_in(self, conn: sqlite3.Connection, provider_id: str) -> Optional[Subscription]:
        self.apply_due_transitions(conn, provider_id=provider_id)
        now_iso = self.database.now_iso()
        row = conn.execute(
            f"""
            {SUBSCRIPTION_SELECT}
            WHERE s.provider_id = ?
              AND s.status = 'ACTIVE'
              AND s.current_period_start <= ?
              AND s.current_period_end >= ?
            ORDER BY p.priority_weight DESC, s.current_period_end DESC
            LIMIT 1
            """,
            (provider_id, now_iso, now_iso),
        ).fetchone()
        return self._subscription_from_row(row) if row else None

    def effective_tier(self, provider_id: str) -> Optional[Subscription]:
        with self.database.transaction() as conn:
            return self.effective_tier_in(conn, provider_id)

    def list_due_transitions(self) -> List[Tuple[str, str]]:
        now_iso = self.database.now_iso()
        with self.database.read() as conn:
            expiring = conn.execute(
                """
                SELECT id FROM provider_subscriptions
                WHERE status IN ('ACTIVE', 'PAUSED', 'CANCELLED', 'QUEUED')
                  AND current_period_end < ?
                ORDER BY current_period_end ASC
                """,
                (now_iso,),
            ).fetchall()
            promotable = conn.execute(
                """
                SELECT id FROM provider_subscriptions
                WHERE status = 'QUEUED'
                  AND current_period_start <= ?
                  AND current_period_end >= ?
                ORDER BY current_period_start ASC
                """,
                (now_iso, now_iso),
            ).fetchall()
        return [(row["id"], "EXPIRED") for row in expiring] + [(row["id"], "ACTIVE") for row in promotable]

    def apply_transition(self, subscription_id: str, target_status: str, timeout: Optional[float] = None) -> bool:
        now_iso = self.database.now_iso()
        with self.database.transaction(timeout=timeout) as conn:
            if target_status == "EXPIRED":
                changed = conn.execute(
                    """
                    UPDATE provider_subscriptions SET status = 'EXPIRED'
                    WHERE id = ? AND status IN ('ACTIVE', 'PAUSED', 'CANCELLED', 'QUEUED') AND current_period_end < ?
                    """,
                    (subscription_id, now_iso),
                ).rowcount
            elif target_status == "ACTIVE":
                changed = conn.execute(
                    """
                    UPDATE provider_subscriptions SET status = 'ACTIVE'
                    WHERE id = ? AND status = 'QUEUED' AND current_period_start <= ? AND current_period_end >= ?
                    """,
                    (subscription_id, now_iso, now_iso),
                ).rowcount
            else:
                raise StoreValidationError(f"Unsupported subscription transition: {target_status}")
        return changed == 1

    def create_free_trial(self, provider_id: str) -> Subscription:
        with self.database.transaction() as conn:
            existing = conn.execute(
                f"{SUBSCRIPTION_SELECT} WHERE s.provider_id = ? ORDER BY s.created_at ASC LIMIT 1",
                (provider_id,),
            ).fetchone()
            if existing:
                return self._subscription_from_row(existing)
            plan = self._load_plan(conn, TRIAL_PLAN_ID)
            subscription = self._insert(
                conn,
                provider_id=provider_id,
                plan=plan,
                status="ACTIVE",
                start=self.database.now(),
                is_trial=True,
            )
        logger.info("Free trial started: provider=%s subscription=%s", provider_id, subscription.id)
        return subscription

    def purchase(self, provider_id: str, plan_id: str) -> Subscription:
        with self.database.transaction() as conn:
            self.apply_due_transitions(conn, provider_id=provider_id)
            plan = self._load_plan(conn, plan_id)
            if plan.tier != "BASIC":
                basic = conn.execute(
                    f"""
                    {SUBSCRIPTION_SELECT}
                    WHERE s.provider_id = ? AND s.status = 'ACTIVE' AND p.tier = 'BASIC'
                    LIMIT 1
                    """,
                    (provider_id,),
                ).fetchone()
                if not basic:
                    raise StoreConflictError("Pro and Premium subscriptions require an active Basic subscription")

            latest_same_tier = conn.execute(
                f"""
                {SUBSCRIPTION_SELECT}
                WHERE s.provider_id = ? AND p.tier = ? AND s.status IN ('ACTIVE', 'QUEUED')
                ORDER BY s.current_period_end DESC
                LIMIT 1
                """,
                (provider_id, plan.tier),
            ).fetchone()
            if latest_same_tier:
                start = parse_iso(latest_same_tier["current_period_end"])
                status = "QUEUED"
            else:
                start = self.database.now()
                status = "ACTIVE"
            subscription = self._insert(conn, provider_id=provider_id, plan=plan, status=status, start=start)
        logger.info(
            "Subscription purchased: provider=%s plan=%s status=%s subscription=%s",
            provider_id,
            plan.id,
            subscription.status,
            subscription.id,
        )
        return subscription

    def _rechain_queued(self, conn: sqlite3.Connection, provider_id: str, tier: str) -> int:
        """Line up same-tier QUEUED renewals behind the live row they follow.

        Each renewal keeps its plan length plus any extension it received. With
        no live row left, the first one starts now.
        """
        now = self.database.now()
        anchor = conn.execute(
            """
            SELECT MAX(s.current_period_end) AS period_end
            FROM provider_subscriptions s
            JOIN subscription_plans p ON p.id = s.plan_id
            WHERE s.provider_id = ? AND p.tier = ? AND s.status IN ('ACTIVE', 'PAUSED')
              AND s.current_period_end >= ?
            """,
            (provider_id, tier, to_iso(now)),
        ).fetchone()["period_end"]
        start = parse_iso(anchor) if anchor else now
        queued = conn.execute(
            """
            SELECT s.id, s.current_period_start, s.current_period_end, p.duration_months
            FROM provider_subscriptions s
            JOIN subscription_plans p ON p.id = s.plan_id
            WHERE s.provider_id = ? AND p.tier = ? AND s.status = 'QUEUED'
            ORDER BY s.current_period_start ASC, s.created_at ASC
            """,
            (provider_id, tier),
        ).fetchall()
        moved = 0
        for row in queued:
            old_start = parse_iso(row["current_period_start"])
            months = int(row["duration_months"])
            extra = parse_iso(row["current_period_end"]) - add_months(old_start, months)
            end = add_months(start, months) + extra
            status = "ACTIVE" if start <= now else "QUEUED"
            if start != old_start or status != "QUEUED":
                conn.execute(
                    """
                    UPDATE provider_subscriptions
                    SET current_period_start = ?, current_period_end = ?, status = ?
                    WHERE id = ? AND status = 'QUEUED'
                    """,
                    (to_iso(start), to_iso(end), status, row["id"]),
                )
                moved += 1
            start = end
        if moved:
            logger.info("Re-chained queued renewals: provider=%s tier=%s moved=%s", provider_id, tier, moved)
        return moved

    def extend(self, subscription_id: str, months: int) -> Subscription:
        if months < 1:
            raise StoreValidationError("Extension must be at least one month")
        with self.database.transaction() as conn:
            current = self._load(conn, subscription_id)
            if current.status == "CANCELLED":
                raise InvalidStateError("Cancelled subscriptions cannot be extended")
            new_end = add_months(parse_iso(current.current_period_end), months)
            next_status = "ACTIVE" if current.status == "EXPIRED" else current.status
            if next_status == "ACTIVE" and parse_iso(current.current_period_end) < self.database.now():
                # An expired grant restarts its window from now.
                new_end = add_months(self.database.now(), months)
            conn.execute(
                "UPDATE provider_subscriptions SET current_period_end = ?, status = ? WHERE id = ?",
                (to_iso(new_end), next_status, subscription_id),
            )
            self._rechain_queued(conn, current.provider_id, current.tier)
            updated = self._load(conn, subscription_id)
        logger.info("Subscription extended: id=%s months=%s end=%s", subscription_id, months, updated.current_period_end)
        return updated

    def _transition(self, subscription_id: str, allowed_from: Tuple[str, ...], target: str) -> Subscription:
        with self.database.transaction() as conn:
            current = self._load(conn, subscription_id)
            if current.status not in allowed_from:
                raise InvalidStateError(f"Subscription is {current.status}; cannot move to {target}")
            if target == "CANCELLED":
                conn.execute(
                    "UPDATE provider_subscriptions SET status = 'CANCELLED', cancelled_at = ? WHERE id = ?",
                    (self.database.now_iso(), subscription_id),
                )
            else:
                conn.execute(
                    "UPDATE provider_subscriptions SET status = ? WHERE id = ?",
                    (target, subscription_id),
                )
            self._rechain_queued(conn, current.provider_id, current.tier)
            updated = self._load(conn, subscription_id)
        logger.info("Subscription %s: %s -> %s", subscription_id, current.status, target)
        return updated

    def pause(self, subscription_id: str) -> Subscription:
        return self._transition(subscription_id, ("ACTIVE",), "PAUSED")

    def resume(self, subscription_id: str) -> Subscription:
        return self._transition(subscription_id, ("PAUSED",), "ACTIVE")

    def cancel(self, subscription_id: str) -> Subscription:
        return self._transition(subscription_id, LIVE_STATUSES, "CANCELLED")

    def change_tier(self, provider_id: str, plan_id: str) -> Subscription:
        """Administrative replacement: retire every live row and start a fresh one."""
        with self.database.transaction() as conn:
            plan = self._load_plan(conn, plan_id)
            retired = conn.execute(
                """
                UPDATE provider_subscriptions
                SET status = 'CANCELLED', cancelled_at = ?
                WHERE provider_id = ? AND status IN ('ACTIVE', 'PAUSED', 'QUEUED')
                """,
                (self.database.now_iso(), provider_id),
            ).rowcount
            subscription = self._insert(
                conn,
                provider_id=provider_id,
                plan=plan,
                status="ACTIVE",
                start=self.database.now(),
            )
        logger.info(
            "Subscription tier changed: provider=%s plan=%s retired=%s subscription=%s",
            provider_id,
            plan.id,
            retired,
            subscription.id,
        )
        return subscription


subscription_store = SubscriptionStore(database=database)
