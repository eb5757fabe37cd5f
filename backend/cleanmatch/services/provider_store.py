import json
import logging
import sqlite3
from dataclasses import dataclass
from typing import List, Optional
from uuid import uuid4

from cleanmatch.models import ProviderProfile, ProviderProfileCreate
from cleanmatch.services.database import Database, database
from cleanmatch.services.errors import (
    InvalidStateError,
    StoreConflictError,
    StoreNotFoundError,
    StorePermissionError,
    StoreValidationError,
)
from cleanmatch.services.geocoder import CoordinateResolver, coordinate_resolver
from cleanmatch.services.subscription_store import SubscriptionStore, subscription_store

logger = logging.getLogger(__name__)


@dataclass
class ProviderStore:
    database: Database
    resolver: CoordinateResolver
    subscriptions: SubscriptionStore

    def __post_init__(self) -> None:
        self._init_db()

    def _init_db(self) -> None:
        with self.database.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS provider_profiles (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL UNIQUE,
                    business_name TEXT NOT NULL,
                    address TEXT NOT NULL,
                    latitude REAL,
                    longitude REAL,
                    service_range_km REAL,
                    specialties_json TEXT NOT NULL DEFAULT '[]',
                    service_areas_json TEXT NOT NULL DEFAULT '[]',
                    verification_status TEXT NOT NULL DEFAULT 'PENDING',
                    is_active INTEGER NOT NULL DEFAULT 1,
                    total_matches INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_provider_profiles_geo
                ON provider_profiles (verification_status, is_active, latitude, longitude)
                """
            )

    def row_to_profile(self, row: sqlite3.Row) -> ProviderProfile:
        return ProviderProfile(
            id=row["id"],
            user_id=row["user_id"],
            business_name=row["business_name"],
            address=row["address"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            service_range_km=row["service_range_km"],
            specialties=json.loads(row["specialties_json"] or "[]"),
            service_areas=json.loads(row["service_areas_json"] or "[]"),
            verification_status=row["verification_status"],
            is_active=bool(row["is_active"]),
            total_matches=int(row["total_matches"]),
            created_at=row["created_at"],
        )

    def load(self, conn: sqlite3.Connection, provider_id: str) -> ProviderProfile:
        row = conn.execute("SELECT * FROM provider_profiles WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise StoreNotFoundError("Provider not found")
        return self.row_to_profile(row)

    def load_by_user(self, conn: sqlite3.Connection, user_id: str) -> Optional[ProviderProfile]:
        row = conn.execute("SELECT * FROM provider_profiles WHERE user_id = ?", (user_id,)).fetchone()
        return self.row_to_profile(row) if row else None

    def register(self, payload: ProviderProfileCreate) -> ProviderProfile:
        if not payload.business_name.strip():
            raise StoreValidationError("Business name is required")
        if (payload.latitude is None) != (payload.longitude is None):
            raise StoreValidationError("Latitude and longitude must be provided together")

        latitude, longitude = payload.latitude, payload.longitude
        if latitude is None:
            coords = self.resolver.resolve(payload.address)
            if coords:
                latitude, longitude = coords

        provider_id = f"prv_{uuid4().hex[:10]}"
        areas = [area.strip() for area in payload.service_areas if area.strip()]
        with self.database.transaction() as conn:
            if self.load_by_user(conn, payload.user_id):
                raise StoreConflictError("Provider profile already exists for this user")
            conn.execute(
                """
                INSERT INTO provider_profiles (
                    id, user_id, business_name, address, latitude, longitude, service_range_km,
                    specialties_json, service_areas_json, verification_status, is_active, total_matches, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'PENDING', 1, 0, ?)
                """,
                (
                    provider_id,
                    payload.user_id,
                    payload.business_name.strip(),
                    payload.address.strip(),
                    latitude,
                    longitude,
                    payload.service_range_km,
                    json.dumps(sorted(set(payload.specialties))),
                    json.dumps(areas, ensure_ascii=False),
                    self.database.now_iso(),
                ),
            )
            profile = self.load(conn, provider_id)
        logger.info(
            "Provider registered: id=%s user=%s geocoded=%s",
            provider_id,
            payload.user_id,
            payload.latitude is None and latitude is not None,
        )
        return profile

    def review(self, provider_id: str, decision: str) -> ProviderProfile:
        """Approve or reject a pending provider. Approval grants the free trial."""
        target = {"approve": "APPROVED", "reject": "REJECTED"}.get(decision)
        if target is None:
            raise StoreValidationError("Decision must be approve or reject")
        with self.database.transaction() as conn:
            current = self.load(conn, provider_id)
            if current.verification_status == target:
                return current
            if current.verification_status == "APPROVED":
                raise InvalidStateError("Provider is already approved")
            conn.execute(
                "UPDATE provider_profiles SET verification_status = ? WHERE id = ?",
                (target, provider_id),
            )
            profile = self.load(conn, provider_id)
        logger.info("Provider %s reviewed: %s", provider_id, target)
        if target == "APPROVED":
            self.subscriptions.create_free_trial(provider_id)
        return profile

    def set_active(self, provider_id: str, is_active: bool) -> ProviderProfile:
        with self.database.transaction() as conn:
            self.load(conn, provider_id)
            conn.execute(
                "UPDATE provider_profiles SET is_active = ? WHERE id = ?",
                (1 if is_active else 0, provider_id),
            )
            return self.load(conn, provider_id)

    def get(self, provider_id: str) -> ProviderProfile:
        with self.database.read() as conn:
            return self.load(conn, provider_id)

    def get_owned(self, provider_id: str, actor_user_id: str) -> ProviderProfile:
        profile = self.get(provider_id)
        if profile.user_id != actor_user_id:
            raise StorePermissionError("Only the provider owner can manage this provider")
        return profile

    def get_by_user(self, user_id: str) -> ProviderProfile:
        with self.database.read() as conn:
            profile = self.load_by_user(conn, user_id)
        if not profile:
            raise StoreNotFoundError("Provider profile not found")
        return profile

    def list_providers(self, verification_status: Optional[str] = None) -> List[ProviderProfile]:
        with self.database.read() as conn:
            if verification_status:
                rows = conn.execute(
                    "SELECT * FROM provider_profiles WHERE verification_status = ? ORDER BY created_at ASC",
                    (verification_status,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM provider_profiles ORDER BY created_at ASC").fetchall()
        return [self.row_to_profile(row) for row in rows]

    def increment_total_matches(self, conn: sqlite3.Connection, provider_id: str) -> None:
        conn.execute(
            "UPDATE provider_profiles SET total_matches = total_matches + 1 WHERE id = ?",
            (provider_id,),
        )


provider_store = ProviderStore(
    database=database,
    resolver=coordinate_resolver,
    subscriptions=subscription_store,
)
