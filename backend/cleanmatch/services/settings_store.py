import json
import logging
from dataclasses import dataclass
from threading import Lock
from typing import Any, Dict

from cleanmatch.services.database import Database, database
from cleanmatch.services.errors import StoreNotFoundError, StoreValidationError

logger = logging.getLogger(__name__)


DEFAULT_SETTINGS: Dict[str, Dict[str, Any]] = {
    "offer_point_cost": {"value": 0, "minimum": 0, "description": "Points debited per submitted offer (0 disables)"},
    "max_open_requests": {"value": 3, "minimum": 1, "description": "Open requests allowed per customer"},
    "duplicate_request_window_days": {
        "value": 7,
        "minimum": 0,
        "description": "Window for duplicate address/service requests (0 disables)",
    },
    "default_max_offers": {"value": 5, "minimum": 1, "description": "Offers accepted per request"},
    "offer_expiry_days": {"value": 3, "minimum": 1, "description": "Days before an unanswered offer expires"},
    "request_expiry_days": {"value": 7, "minimum": 1, "description": "Days before an open request expires"},
    "auto_complete_hours": {"value": 48, "minimum": 1, "description": "Hours before a completion report auto-confirms"},
    "auto_refund_rate": {
        "value": 50,
        "minimum": 0,
        "maximum": 100,
        "description": "Refund percentage for auto-rejected offers",
    },
    "max_service_radius_km": {"value": 50, "minimum": 1, "description": "Upper bound for candidate search radius"},
    "sweep_item_budget_seconds": {"value": 5, "minimum": 1, "description": "Per-item time budget for lifecycle sweeps"},
}


@dataclass
class SettingsStore:
    """Runtime business settings backed by the ``system_settings`` table.

    Reads come from an in-memory snapshot. ``set`` updates both the table and
    the snapshot; ``reload`` picks up changes written by other processes.
    """

    database: Database

    def __post_init__(self) -> None:
        self._lock = Lock()
        self._snapshot: Dict[str, Any] = {}
        self._init_db()
        self._seed_defaults()
        self.reload()

    def _init_db(self) -> None:
        with self.database.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS system_settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    updated_at TEXT NOT NULL
                )
                """
            )

    def _seed_defaults(self) -> None:
        now_iso = self.database.now_iso()
        with self.database.transaction() as conn:
            for key, entry in DEFAULT_SETTINGS.items():
                inserted = conn.execute(
                    """
                    INSERT OR IGNORE INTO system_settings (key, value, description, updated_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (key, json.dumps(entry["value"]), entry["description"], now_iso),
                ).rowcount
                if inserted:
                    logger.info("Seeded default setting %s=%s", key, entry["value"])

    def reload(self) -> Dict[str, Any]:
        with self.database.read() as conn:
            rows = conn.execute("SELECT key, value FROM system_settings").fetchall()
        snapshot: Dict[str, Any] = {}
        for row in rows:
            try:
                snapshot[row["key"]] = json.loads(row["value"])
            except ValueError:
                snapshot[row["key"]] = row["value"]
        with self._lock:
            self._snapshot = snapshot
        logger.info("Loaded %s system settings", len(snapshot))
        return dict(snapshot)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._snapshot)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key in self._snapshot:
                return self._snapshot[key]
        if key in DEFAULT_SETTINGS:
            return DEFAULT_SETTINGS[key]["value"]
        return default

    def get_int(self, key: str) -> int:
        value = self.get(key)
        fallback = int(DEFAULT_SETTINGS[key]["value"])
        try:
            number = int(value)
        except (TypeError, ValueError):
            logger.warning("Setting %s has non-numeric value %r; using %s", key, value, fallback)
            return fallback
        if number < DEFAULT_SETTINGS[key].get("minimum", 0):
            logger.warning("Setting %s value %s is below its minimum; using %s", key, number, fallback)
            return fallback
        return number

    def get_float(self, key: str) -> float:
        value = self.get(key)
        try:
            return float(value)
        except (TypeError, ValueError):
            fallback = float(DEFAULT_SETTINGS[key]["value"])
            logger.warning("Setting %s has non-numeric value %r; using %s", key, value, fallback)
            return fallback

    def set(self, key: str, value: Any) -> Any:
        if key not in DEFAULT_SETTINGS:
            raise StoreNotFoundError(f"Unknown setting: {key}")
        default = DEFAULT_SETTINGS[key]["value"]
        if isinstance(default, (int, float)) and not isinstance(default, bool):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise StoreValidationError(f"Setting {key} must be numeric")
            minimum = DEFAULT_SETTINGS[key].get("minimum", 0)
            maximum = DEFAULT_SETTINGS[key].get("maximum")
            if value < minimum:
                raise StoreValidationError(f"Setting {key} must be at least {minimum}")
            if maximum is not None and value > maximum:
                raise StoreValidationError(f"Setting {key} must be at most {maximum}")

        with self.database.transaction() as conn:
            conn.execute(
                """
                INSERT INTO system_settings (key, value, description, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, json.dumps(value), DEFAULT_SETTINGS[key]["description"], self.database.now_iso()),
            )
        with self._lock:
            self._snapshot[key] = value
        logger.info("Setting updated: %s=%s", key, value)
        return value

    def all(self) -> Dict[str, Dict[str, Any]]:
        with self.database.read() as conn:
            rows = conn.execute("SELECT * FROM system_settings ORDER BY key").fetchall()
        result: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            try:
                value = json.loads(row["value"])
            except ValueError:
                value = row["value"]
            result[row["key"]] = {
                "value": value,
                "description": row["description"],
                "updated_at": row["updated_at"],
            }
        return result


settings_store = SettingsStore(database=database)
