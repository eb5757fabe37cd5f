import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import uuid4

from cleanmatch.models import PointBalance
from cleanmatch.services.database import Database, database
from cleanmatch.services.errors import InsufficientPointsError, StoreValidationError

logger = logging.getLogger(__name__)


@dataclass
class PointLedger:
    """Provider point wallets with an append-only transaction log."""

    database: Database

    def __post_init__(self) -> None:
        self._init_db()

    def _init_db(self) -> None:
        with self.database.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS point_wallets (
                    provider_id TEXT PRIMARY KEY,
                    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS point_transactions (
                    id TEXT PRIMARY KEY,
                    provider_id TEXT NOT NULL,
                    kind TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    balance_after INTEGER NOT NULL,
                    reason TEXT NOT NULL,
                    related_id TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )

    def _balance(self, conn: sqlite3.Connection, provider_id: str) -> int:
        row = conn.execute("SELECT balance FROM point_wallets WHERE provider_id = ?", (provider_id,)).fetchone()
        return int(row["balance"]) if row else 0

    def _apply(
        self,
        conn: sqlite3.Connection,
        *,
        provider_id: str,
        kind: str,
        delta: int,
        reason: str,
        related_id: Optional[str],
    ) -> int:
        now_iso = self.database.now_iso()
        balance_after = self._balance(conn, provider_id) + delta
        conn.execute(
            """
            INSERT INTO point_wallets (provider_id, balance, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(provider_id) DO UPDATE SET balance = excluded.balance, updated_at = excluded.updated_at
            """,
            (provider_id, balance_after, now_iso),
        )
        conn.execute(
            """
            INSERT INTO point_transactions (id, provider_id, kind, amount, balance_after, reason, related_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (f"pt_{uuid4().hex[:10]}", provider_id, kind, delta, balance_after, reason, related_id, now_iso),
        )
        return balance_after

    def balance(self, provider_id: str) -> PointBalance:
        with self.database.read() as conn:
            return PointBalance(provider_id=provider_id, balance=self._balance(conn, provider_id))

    def charge(self, provider_id: str, amount: int, reason: str = "manual charge") -> PointBalance:
        if amount <= 0:
            raise StoreValidationError("Charge amount must be positive")
        with self.database.transaction() as conn:
            balance = self._apply(
                conn,
                provider_id=provider_id,
                kind="CHARGE",
                delta=amount,
                reason=reason,
                related_id=None,
            )
        logger.info("Points charged: provider=%s amount=%s balance=%s", provider_id, amount, balance)
        return PointBalance(provider_id=provider_id, balance=balance)

    def debit(self, conn: sqlite3.Connection, provider_id: str, amount: int, reason: str, related_id: str) -> int:
        """Debit inside the caller's transaction."""
        if amount <= 0:
            return self._balance(conn, provider_id)
        if self._balance(conn, provider_id) < amount:
            raise InsufficientPointsError(f"Insufficient points: {amount} required")
        return self._apply(
            conn,
            provider_id=provider_id,
            kind="USE",
            delta=-amount,
            reason=reason,
            related_id=related_id,
        )

    def refund_in(self, conn: sqlite3.Connection, provider_id: str, amount: int, reason: str, related_id: str) -> int:
        if amount <= 0:
            return self._balance(conn, provider_id)
        return self._apply(
            conn,
            provider_id=provider_id,
            kind="REFUND",
            delta=amount,
            reason=reason,
            related_id=related_id,
        )

    def refund(self, provider_id: str, amount: int, reason: str, related_id: str) -> Optional[int]:
        if amount <= 0:
            return None
        with self.database.transaction() as conn:
            balance = self.refund_in(conn, provider_id, amount, reason, related_id)
        logger.info(
            "Points refunded: provider=%s amount=%s related=%s balance=%s",
            provider_id,
            amount,
            related_id,
            balance,
        )
        return balance

    def history(self, provider_id: str) -> List[Dict[str, Any]]:
        with self.database.read() as conn:
            rows = conn.execute(
                "SELECT * FROM point_transactions WHERE provider_id = ? ORDER BY created_at DESC",
                (provider_id,),
            ).fetchall()
        return [dict(row) for row in rows]


point_ledger = PointLedger(database=database)
