import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Callable, Iterator, Optional

from cleanmatch.config import DB_PATH


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Database:
    """Shared SQLite handle for every store.

    Writes go through ``transaction()``, which opens ``BEGIN IMMEDIATE`` so a
    single writer holds the database for the whole unit of work. ``clock`` is
    the only source of "now" for the stores, which lets tests move time.
    """

    db_path: str
    clock: Callable[[], datetime] = utcnow
    busy_timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        self._lock = RLock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        with self._lock:
            conn = self.connect()
            try:
                conn.execute("PRAGMA journal_mode=WAL")
            finally:
                conn.close()

    def now(self) -> datetime:
        return self.clock()

    def now_iso(self) -> str:
        return to_iso(self.clock())

    def connect(self, timeout: Optional[float] = None) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=timeout if timeout is not None else self.busy_timeout_seconds,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self.connect()
            try:
                yield conn
            finally:
                conn.close()

    @contextmanager
    def transaction(self, timeout: Optional[float] = None) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction.

        ``timeout`` bounds both the wait for the in-process writer lock and the
        SQLite busy wait; running out raises ``sqlite3.OperationalError``.
        """
        if not self._lock.acquire(timeout=timeout if timeout is not None else -1):
            raise sqlite3.OperationalError("database is locked: writer lock wait timed out")
        try:
            conn = self.connect(timeout=timeout)
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()
        finally:
            self._lock.release()


database = Database(db_path=DB_PATH)
