import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Tuple
from uuid import uuid4

from cleanmatch.models import (
    AcceptOfferResult,
    Engagement,
    Offer,
    OfferSubmit,
    ServiceRequest,
    ServiceRequestCreate,
    ServiceRequestCreated,
    ServiceRequestDetails,
)
from cleanmatch.services.candidate_matcher import CandidateMatcher, candidate_matcher
from cleanmatch.services.checklists import validate_checklist
from cleanmatch.services.database import Database, database, to_iso
from cleanmatch.services.errors import (
    DuplicateRequestError,
    InvalidStateError,
    NoSubscriptionError,
    OfferAlreadyProcessedError,
    OfferExistsError,
    OfferLimitReachedError,
    OpenRequestLimitError,
    QuotaExhaustedError,
    RequestNotOpenError,
    StoreConflictError,
    StoreNotFoundError,
    StorePermissionError,
    StoreValidationError,
)
from cleanmatch.services.geocoder import CoordinateResolver, coordinate_resolver
from cleanmatch.services.notification_store import NotificationStore, notification_store
from cleanmatch.services.point_ledger import PointLedger, point_ledger
from cleanmatch.services.provider_store import ProviderStore, provider_store
from cleanmatch.services.quota_ledger import QuotaLedger, quota_ledger
from cleanmatch.services.room_store import RoomStore, room_store
from cleanmatch.services.settings_store import SettingsStore, settings_store

logger = logging.getLogger(__name__)


ENGAGEMENT_TERMINAL_STATUSES = {"COMPLETED", "CANCELLED"}


def _translate_offer_integrity_error(exc: sqlite3.IntegrityError) -> StoreConflictError:
    message = str(exc)
    if "offer_limit_reached" in message:
        return OfferLimitReachedError("This request is no longer accepting offers")
    if "request_not_open" in message:
        return RequestNotOpenError("Request is not open")
    if "UNIQUE" in message and "offers" in message:
        return OfferExistsError("You have already submitted an offer for this request")
    return StoreConflictError("Offer could not be stored")


@dataclass
class RequestStore:
    """Requests, offers and engagements.

    Every write runs in one ``BEGIN IMMEDIATE`` transaction. Network work
    (geocoding, candidate fan-out, room provisioning, notifications, refunds)
    happens strictly before or after the transaction.
    """

    database: Database
    settings: SettingsStore
    providers: ProviderStore
    quota: QuotaLedger
    points: PointLedger
    matcher: CandidateMatcher
    resolver: CoordinateResolver
    rooms: RoomStore
    notifications: NotificationStore

    def __post_init__(self) -> None:
        self._init_db()

    def _init_db(self) -> None:
        with self.database.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS service_requests (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    service_type TEXT NOT NULL,
                    address TEXT NOT NULL,
                    detail_address TEXT,
                    latitude REAL,
                    longitude REAL,
                    area_size INTEGER,
                    desired_date TEXT,
                    desired_time TEXT,
                    description TEXT NOT NULL,
                    budget INTEGER,
                    checklist_json TEXT NOT NULL DEFAULT '{}',
                    images_json TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL DEFAULT 'OPEN',
                    max_offers INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_service_requests_customer_status
                ON service_requests (customer_id, status)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_service_requests_status_created
                ON service_requests (status, created_at)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS offers (
                    id TEXT PRIMARY KEY,
                    request_id TEXT NOT NULL REFERENCES service_requests(id),
                    provider_id TEXT NOT NULL,
                    price INTEGER NOT NULL CHECK (price >= 1),
                    message TEXT,
                    estimated_duration TEXT,
                    available_date TEXT,
                    images_json TEXT NOT NULL DEFAULT '[]',
                    points_used INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'SUBMITTED',
                    created_at TEXT NOT NULL,
                    responded_at TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS uq_offers_request_provider
                ON offers (request_id, provider_id)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_offers_provider_created
                ON offers (provider_id, created_at)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_offers_status_created
                ON offers (status, created_at)
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS trg_offers_request_open
                BEFORE INSERT ON offers
                WHEN (SELECT status FROM service_requests WHERE id = NEW.request_id) IS NOT 'OPEN'
                BEGIN
                    SELECT RAISE(ABORT, 'request_not_open');
                END
                """
            )
            conn.execute(
                """
                CREATE TRIGGER IF NOT EXISTS trg_offers_max_count
                BEFORE INSERT ON offers
                WHEN (
                    SELECT COUNT(*) FROM offers
                    WHERE request_id = NEW.request_id AND status != 'REJECTED'
                ) >= (SELECT max_offers FROM service_requests WHERE id = NEW.request_id)
                BEGIN
                    SELECT RAISE(ABORT, 'offer_limit_reached');
                END
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS engagements (
                    id TEXT PRIMARY KEY,
                    customer_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    provider_user_id TEXT NOT NULL,
                    offer_id TEXT NOT NULL UNIQUE REFERENCES offers(id),
                    request_id TEXT NOT NULL UNIQUE REFERENCES service_requests(id),
                    service_type TEXT NOT NULL,
                    address TEXT NOT NULL,
                    detail_address TEXT,
                    area_size INTEGER,
                    desired_date TEXT,
                    desired_time TEXT,
                    description TEXT NOT NULL DEFAULT '',
                    price INTEGER NOT NULL,
                    room_id TEXT,
                    status TEXT NOT NULL DEFAULT 'ACCEPTED',
                    completion_reported_at TEXT,
                    completion_images_json TEXT NOT NULL DEFAULT '[]',
                    completed_at TEXT,
                    completed_by TEXT,
                    cancelled_by TEXT,
                    cancellation_reason TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_engagements_status_reported
                ON engagements (status, completion_reported_at)
                """
            )

    # Row mapping

    def _request_from_row(self, row: sqlite3.Row) -> ServiceRequest:
        return ServiceRequest(
            id=row["id"],
            customer_id=row["customer_id"],
            service_type=row["service_type"],
            address=row["address"],
            detail_address=row["detail_address"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            area_size=row["area_size"],
            desired_date=row["desired_date"],
            desired_time=row["desired_time"],
            description=row["description"],
            budget=row["budget"],
            checklist=json.loads(row["checklist_json"] or "{}"),
            images=json.loads(row["images_json"] or "[]"),
            status=row["status"],
            max_offers=int(row["max_offers"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _offer_from_row(self, row: sqlite3.Row) -> Offer:
        return Offer(
            id=row["id"],
            request_id=row["request_id"],
            provider_id=row["provider_id"],
            price=int(row["price"]),
            message=row["message"],
            estimated_duration=row["estimated_duration"],
            available_date=row["available_date"],
            images=json.loads(row["images_json"] or "[]"),
            points_used=int(row["points_used"]),
            status=row["status"],
            created_at=row["created_at"],
            responded_at=row["responded_at"],
        )

    def _engagement_from_row(self, row: sqlite3.Row) -> Engagement:
        return Engagement(
            id=row["id"],
            customer_id=row["customer_id"],
            provider_id=row["provider_id"],
            provider_user_id=row["provider_user_id"],
            offer_id=row["offer_id"],
            request_id=row["request_id"],
            service_type=row["service_type"],
            address=row["address"],
            detail_address=row["detail_address"],
            area_size=row["area_size"],
            desired_date=row["desired_date"],
            desired_time=row["desired_time"],
            description=row["description"],
            price=int(row["price"]),
            room_id=row["room_id"],
            status=row["status"],
            completion_reported_at=row["completion_reported_at"],
            completion_images=json.loads(row["completion_images_json"] or "[]"),
            completed_at=row["completed_at"],
            completed_by=row["completed_by"],
            cancelled_by=row["cancelled_by"],
            cancellation_reason=row["cancellation_reason"],
            created_at=row["created_at"],
        )

    def _load_request(self, conn: sqlite3.Connection, request_id: str) -> ServiceRequest:
        row = conn.execute("SELECT * FROM service_requests WHERE id = ?", (request_id,)).fetchone()
        if not row:
            raise StoreNotFoundError("Request not found")
        return self._request_from_row(row)

    def _load_offer(self, conn: sqlite3.Connection, offer_id: str) -> Offer:
        row = conn.execute("SELECT * FROM offers WHERE id = ?", (offer_id,)).fetchone()
        if not row:
            raise StoreNotFoundError("Offer not found")
        return self._offer_from_row(row)

    def _load_engagement(self, conn: sqlite3.Connection, engagement_id: str) -> Engagement:
        row = conn.execute("SELECT * FROM engagements WHERE id = ?", (engagement_id,)).fetchone()
        if not row:
            raise StoreNotFoundError("Engagement not found")
        return self._engagement_from_row(row)

    def _open_request_count(self, conn: sqlite3.Connection, customer_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS c FROM service_requests WHERE customer_id = ? AND status = 'OPEN'",
            (customer_id,),
        ).fetchone()
        return int(row["c"])

    def _has_recent_duplicate(
        self,
        conn: sqlite3.Connection,
        customer_id: str,
        service_type: str,
        address: str,
        since_iso: str,
    ) -> bool:
        row = conn.execute(
            """
            SELECT 1 FROM service_requests
            WHERE customer_id = ? AND service_type = ? AND address = ? AND created_at >= ?
            LIMIT 1
            """,
            (customer_id, service_type, address, since_iso),
        ).fetchone()
        return row is not None

    def _existing_offer(self, conn: sqlite3.Connection, request_id: str, provider_id: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM offers WHERE request_id = ? AND provider_id = ? LIMIT 1",
            (request_id, provider_id),
        ).fetchone()
        return row is not None

    def _active_offer_count(self, conn: sqlite3.Connection, request_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS c FROM offers WHERE request_id = ? AND status != 'REJECTED'",
            (request_id,),
        ).fetchone()
        return int(row["c"])

    # Requests

    def create_request(self, payload: ServiceRequestCreate) -> ServiceRequestCreated:
        address = payload.address.strip()
        description = payload.description.strip()
        if not address:
            raise StoreValidationError("Address is required")
        if not description:
            raise StoreValidationError("Description is required")
        if (payload.latitude is None) != (payload.longitude is None):
            raise StoreValidationError("Latitude and longitude must be provided together")
        checklist = validate_checklist(payload.service_type, payload.checklist)

        latitude, longitude = payload.latitude, payload.longitude
        if latitude is None:
            coords = self.resolver.resolve(address)
            if coords:
                latitude, longitude = coords

        max_open = self.settings.get_int("max_open_requests")
        window_days = self.settings.get_int("duplicate_request_window_days")
        max_offers = payload.max_offers or self.settings.get_int("default_max_offers")
        request_id = f"req_{uuid4().hex[:10]}"

        with self.database.transaction() as conn:
            now = self.database.now()
            if self._open_request_count(conn, payload.customer_id) >= max_open:
                raise OpenRequestLimitError(f"You can have at most {max_open} open requests")
            since_iso = to_iso(now - timedelta(days=window_days))
            if self._has_recent_duplicate(conn, payload.customer_id, payload.service_type, address, since_iso):
                raise DuplicateRequestError(
                    f"A {payload.service_type} request for this address was already made in the last {window_days} days"
                )
            now_iso = to_iso(now)
            conn.execute(
                """
                INSERT INTO service_requests (
                    id, customer_id, service_type, address, detail_address, latitude, longitude, area_size,
                    desired_date, desired_time, description, budget, checklist_json, images_json, status,
                    max_offers, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'OPEN', ?, ?, ?)
                """,
                (
                    request_id,
                    payload.customer_id,
                    payload.service_type,
                    address,
                    payload.detail_address,
                    latitude,
                    longitude,
                    payload.area_size,
                    payload.desired_date,
                    payload.desired_time,
                    description,
                    payload.budget,
                    json.dumps(checklist),
                    json.dumps(payload.images),
                    max_offers,
                    now_iso,
                    now_iso,
                ),
            )
            request = self._load_request(conn, request_id)

        logger.info(
            "Request created: id=%s customer=%s type=%s geocoded=%s",
            request.id,
            request.customer_id,
            request.service_type,
            request.latitude is not None,
        )

        candidate_ids: List[str] = []
        try:
            candidates = self.matcher.match(request)
        except Exception:
            logger.exception("Candidate matching failed for request=%s", request.id)
            candidates = []
        if candidates:
            candidate_ids = [provider.id for provider in candidates]
            self.notifications.notify_many(
                [provider.user_id for provider in candidates],
                "request_created",
                "New cleaning request nearby",
                f"A new {request.service_type} request is open at {request.address}",
                {"request_id": request.id},
            )
        return ServiceRequestCreated(request=request, candidate_provider_ids=candidate_ids)

    def get_request(self, request_id: str) -> ServiceRequestDetails:
        with self.database.read() as conn:
            request = self._load_request(conn, request_id)
            rows = conn.execute(
                "SELECT * FROM offers WHERE request_id = ? ORDER BY created_at ASC",
                (request_id,),
            ).fetchall()
        return ServiceRequestDetails(request=request, offers=[self._offer_from_row(row) for row in rows])

    def list_requests(
        self,
        customer_id: Optional[str] = None,
        status: Optional[str] = None,
        service_type: Optional[str] = None,
    ) -> List[ServiceRequest]:
        """Customers see their own requests; without a customer only OPEN requests are listed."""
        clauses: List[str] = []
        params: List[str] = []
        if customer_id:
            clauses.append("customer_id = ?")
            params.append(customer_id)
            if status:
                clauses.append("status = ?")
                params.append(status)
        else:
            clauses.append("status = 'OPEN'")
        if service_type:
            clauses.append("service_type = ?")
            params.append(service_type)
        where = " AND ".join(clauses)
        with self.database.read() as conn:
            rows = conn.execute(
                f"SELECT * FROM service_requests WHERE {where} ORDER BY created_at DESC LIMIT 200",
                params,
            ).fetchall()
        return [self._request_from_row(row) for row in rows]

    # Offers

    def submit_offer(self, request_id: str, payload: OfferSubmit) -> Offer:
        offer_id = f"ofr_{uuid4().hex[:10]}"
        point_cost = self.settings.get_int("offer_point_cost")

        with self.database.transaction() as conn:
            provider = self.providers.load_by_user(conn, payload.provider_user_id)
            if not provider:
                raise StoreNotFoundError("Provider profile not found")
            if provider.verification_status != "APPROVED" or not provider.is_active:
                raise StorePermissionError("Only approved providers can submit offers")

            request = self._load_request(conn, request_id)
            if request.status != "OPEN":
                raise RequestNotOpenError("Request is not open")
            if request.customer_id == payload.provider_user_id:
                raise StorePermissionError("You cannot submit an offer on your own request")
            if self._existing_offer(conn, request_id, provider.id):
                raise OfferExistsError("You have already submitted an offer for this request")
            if self._active_offer_count(conn, request_id) >= request.max_offers:
                raise OfferLimitReachedError("This request is no longer accepting offers")

            quota = self.quota.check(conn, provider.id)
            if quota.limit == 0:
                raise NoSubscriptionError("An active subscription is required to submit offers")
            if quota.remaining <= 0:
                raise QuotaExhaustedError(
                    f"Daily offer limit reached ({quota.used}/{quota.limit}); resets at {quota.reset_at}"
                )

            if point_cost > 0:
                self.points.debit(conn, provider.id, point_cost, "offer submission", offer_id)

            try:
                conn.execute(
                    """
                    INSERT INTO offers (
                        id, request_id, provider_id, price, message, estimated_duration, available_date,
                        images_json, points_used, status, created_at, responded_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'SUBMITTED', ?, NULL)
                    """,
                    (
                        offer_id,
                        request_id,
                        provider.id,
                        payload.price,
                        payload.message,
                        payload.estimated_duration,
                        payload.available_date,
                        json.dumps(payload.images),
                        max(point_cost, 0),
                        self.database.now_iso(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise _translate_offer_integrity_error(exc) from exc
            offer = self._load_offer(conn, offer_id)

        logger.info(
            "Offer submitted: id=%s request=%s provider=%s price=%s",
            offer.id,
            request_id,
            provider.id,
            offer.price,
        )
        self.quota.consume(provider.id, offer.id)
        self.notifications.notify_one(
            request.customer_id,
            "offer_received",
            "New offer received",
            f"{provider.business_name} offered {offer.price} for your request",
            {"request_id": request_id, "offer_id": offer.id},
        )
        return offer

    def list_provider_offers(self, provider_user_id: str, status: Optional[str] = None) -> List[Offer]:
        with self.database.read() as conn:
            provider = self.providers.load_by_user(conn, provider_user_id)
            if not provider:
                raise StoreNotFoundError("Provider profile not found")
            if status:
                rows = conn.execute(
                    "SELECT * FROM offers WHERE provider_id = ? AND status = ? ORDER BY created_at DESC",
                    (provider.id, status),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM offers WHERE provider_id = ? ORDER BY created_at DESC",
                    (provider.id,),
                ).fetchall()
        return [self._offer_from_row(row) for row in rows]

    def _check_decision(
        self,
        conn: sqlite3.Connection,
        offer_id: str,
        customer_id: str,
    ) -> Tuple[Offer, ServiceRequest]:
        offer = self._load_offer(conn, offer_id)
        request = self._load_request(conn, offer.request_id)
        if request.customer_id != customer_id:
            raise StorePermissionError("Only the request owner can decide on offers")
        if offer.status != "SUBMITTED":
            raise OfferAlreadyProcessedError("Offer has already been processed")
        if request.status != "OPEN":
            raise RequestNotOpenError("Request is not open")
        return offer, request

    def accept_offer(self, offer_id: str, customer_id: str) -> AcceptOfferResult:
        """Accept one offer and retire its siblings in a single transaction."""
        engagement_id = f"eng_{uuid4().hex[:10]}"
        with self.database.transaction() as conn:
            offer, request = self._check_decision(conn, offer_id, customer_id)
            now_iso = self.database.now_iso()

            accepted = conn.execute(
                "UPDATE offers SET status = 'ACCEPTED', responded_at = ? WHERE id = ? AND status = 'SUBMITTED'",
                (now_iso, offer_id),
            ).rowcount
            if accepted != 1:
                raise OfferAlreadyProcessedError("Offer has already been processed")

            losers = conn.execute(
                """
                SELECT * FROM offers
                WHERE request_id = ? AND id != ? AND status = 'SUBMITTED'
                """,
                (request.id, offer_id),
            ).fetchall()
            conn.execute(
                """
                UPDATE offers SET status = 'REJECTED', responded_at = ?
                WHERE request_id = ? AND id != ? AND status = 'SUBMITTED'
                """,
                (now_iso, request.id, offer_id),
            )

            provider = self.providers.load(conn, offer.provider_id)
            conn.execute(
                """
                INSERT INTO engagements (
                    id, customer_id, provider_id, provider_user_id, offer_id, request_id, service_type, address,
                    detail_address, area_size, desired_date, desired_time, description, price, room_id, status,
                    completion_reported_at, completion_images_json, completed_at, completed_by, cancelled_by,
                    cancellation_reason, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, 'ACCEPTED', NULL, '[]', NULL, NULL, NULL, NULL, ?, ?)
                """,
                (
                    engagement_id,
                    request.customer_id,
                    provider.id,
                    provider.user_id,
                    offer.id,
                    request.id,
                    request.service_type,
                    request.address,
                    request.detail_address,
                    request.area_size,
                    request.desired_date,
                    request.desired_time,
                    request.description,
                    offer.price,
                    now_iso,
                    now_iso,
                ),
            )

            closed = conn.execute(
                "UPDATE service_requests SET status = 'CLOSED', updated_at = ? WHERE id = ? AND status = 'OPEN'",
                (now_iso, request.id),
            ).rowcount
            if closed != 1:
                raise RequestNotOpenError("Request is not open")

            self.providers.increment_total_matches(conn, provider.id)
            accepted_offer = self._load_offer(conn, offer_id)
            engagement = self._load_engagement(conn, engagement_id)

        rejected = [self._offer_from_row(row) for row in losers]
        logger.info(
            "Offer accepted: offer=%s request=%s engagement=%s rejected=%s",
            offer_id,
            request.id,
            engagement_id,
            len(rejected),
        )

        room_id: Optional[str] = None
        try:
            engagement = self.ensure_room(engagement_id)
            room_id = engagement.room_id
        except Exception:
            logger.exception("Room provisioning failed for engagement=%s", engagement_id)
        if room_id:
            try:
                self.rooms.post_system_message(
                    room_id,
                    f"Offer accepted. Agreed price: {accepted_offer.price}",
                )
            except Exception:
                logger.exception("System message failed for room=%s", room_id)

        self.notifications.notify_one(
            provider.user_id,
            "offer_accepted",
            "Your offer was accepted",
            f"Your offer of {accepted_offer.price} was accepted",
            {"offer_id": offer_id, "engagement_id": engagement_id},
        )
        self.notifications.notify_one(
            request.customer_id,
            "engagement_created",
            "Booking confirmed",
            f"{provider.business_name} will handle your {request.service_type} request",
            {"engagement_id": engagement_id},
        )
        self._settle_auto_rejected(rejected)

        return AcceptOfferResult(
            offer=accepted_offer,
            engagement=engagement,
            rejected_offer_ids=[item.id for item in rejected],
            room_id=room_id,
        )

    def _settle_auto_rejected(self, rejected: List[Offer]) -> None:
        if not rejected:
            return
        refund_rate = self.settings.get_int("auto_refund_rate")
        with self.database.read() as conn:
            user_ids = {
                row["id"]: row["user_id"]
                for row in conn.execute(
                    f"SELECT id, user_id FROM provider_profiles WHERE id IN ({','.join('?' for _ in rejected)})",
                    [item.provider_id for item in rejected],
                ).fetchall()
            }
        for item in rejected:
            refund = item.points_used * refund_rate // 100
            if refund > 0:
                try:
                    self.points.refund(item.provider_id, refund, "offer auto-rejected", item.id)
                except Exception:
                    logger.exception("Refund failed for offer=%s", item.id)
            user_id = user_ids.get(item.provider_id)
            if user_id:
                self.notifications.notify_one(
                    user_id,
                    "offer_rejected",
                    "Offer not selected",
                    "The customer selected another offer",
                    {"offer_id": item.id, "refunded_points": refund},
                )

    def reject_offer(self, offer_id: str, customer_id: str) -> Offer:
        with self.database.transaction() as conn:
            offer, _ = self._check_decision(conn, offer_id, customer_id)
            updated = conn.execute(
                "UPDATE offers SET status = 'REJECTED', responded_at = ? WHERE id = ? AND status = 'SUBMITTED'",
                (self.database.now_iso(), offer_id),
            ).rowcount
            if updated != 1:
                raise OfferAlreadyProcessedError("Offer has already been processed")
            rejected = self._load_offer(conn, offer_id)
            provider = self.providers.load(conn, offer.provider_id)
        logger.info("Offer rejected: offer=%s request=%s", offer_id, offer.request_id)
        self.notifications.notify_one(
            provider.user_id,
            "offer_rejected",
            "Offer declined",
            "The customer declined your offer",
            {"offer_id": offer_id},
        )
        return rejected

    # Engagements

    def ensure_room(self, engagement_id: str) -> Engagement:
        with self.database.read() as conn:
            engagement = self._load_engagement(conn, engagement_id)
        if engagement.room_id:
            return engagement
        room_id = self.rooms.open_room(engagement.id, engagement.customer_id, engagement.provider_user_id)
        with self.database.transaction() as conn:
            conn.execute(
                "UPDATE engagements SET room_id = ?, updated_at = ? WHERE id = ? AND room_id IS NULL",
                (room_id, self.database.now_iso(), engagement_id),
            )
            return self._load_engagement(conn, engagement_id)

    def get_engagement(self, engagement_id: str) -> Engagement:
        with self.database.read() as conn:
            return self._load_engagement(conn, engagement_id)

    def list_engagements(self, user_id: str, status: Optional[str] = None) -> List[Engagement]:
        params: List[str] = [user_id, user_id]
        status_clause = ""
        if status:
            status_clause = " AND status = ?"
            params.append(status)
        with self.database.read() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM engagements
                WHERE (customer_id = ? OR provider_user_id = ?){status_clause}
                ORDER BY created_at DESC
                """,
                params,
            ).fetchall()
        return [self._engagement_from_row(row) for row in rows]

    def report_completion(self, engagement_id: str, provider_user_id: str, images: List[str]) -> Engagement:
        with self.database.transaction() as conn:
            engagement = self._load_engagement(conn, engagement_id)
            if engagement.provider_user_id != provider_user_id:
                raise StorePermissionError("Only the engaged provider can report completion")
            if engagement.status != "ACCEPTED":
                raise InvalidStateError("Only accepted engagements can be reported complete")
            if not images:
                raise StoreValidationError("At least one completion image is required")
            now_iso = self.database.now_iso()
            conn.execute(
                """
                UPDATE engagements
                SET completion_images_json = ?, completion_reported_at = ?, updated_at = ?
                WHERE id = ? AND status = 'ACCEPTED'
                """,
                (json.dumps(images), now_iso, now_iso, engagement_id),
            )
            updated = self._load_engagement(conn, engagement_id)
        logger.info("Completion reported: engagement=%s images=%s", engagement_id, len(images))
        self.notifications.notify_one(
            engagement.customer_id,
            "completion_reported",
            "Service completed",
            "The provider reported the job as done. Please confirm completion.",
            {"engagement_id": engagement_id},
        )
        return updated

    def confirm_completion(self, engagement_id: str, customer_id: str) -> Engagement:
        with self.database.transaction() as conn:
            engagement = self._load_engagement(conn, engagement_id)
            if engagement.customer_id != customer_id:
                raise StorePermissionError("Only the customer can confirm completion")
            if engagement.status != "ACCEPTED":
                raise InvalidStateError("Only accepted engagements can be confirmed")
            now_iso = self.database.now_iso()
            conn.execute(
                """
                UPDATE engagements
                SET status = 'COMPLETED', completed_at = ?, completed_by = 'CUSTOMER', updated_at = ?
                WHERE id = ? AND status = 'ACCEPTED'
                """,
                (now_iso, now_iso, engagement_id),
            )
            updated = self._load_engagement(conn, engagement_id)
        logger.info("Completion confirmed: engagement=%s", engagement_id)
        self.notifications.notify_one(
            engagement.provider_user_id,
            "engagement_completed",
            "Job completed",
            "The customer confirmed the job is complete",
            {"engagement_id": engagement_id},
        )
        return updated

    def cancel_engagement(self, engagement_id: str, actor_user_id: str, reason: str) -> Engagement:
        if not reason or not reason.strip():
            raise StoreValidationError("Cancellation reason is required")
        with self.database.transaction() as conn:
            engagement = self._load_engagement(conn, engagement_id)
            if actor_user_id == engagement.customer_id:
                cancelled_by, counterpart = "CUSTOMER", engagement.provider_user_id
            elif actor_user_id == engagement.provider_user_id:
                cancelled_by, counterpart = "PROVIDER", engagement.customer_id
            else:
                raise StorePermissionError("Only engagement participants can cancel")
            if engagement.status in ENGAGEMENT_TERMINAL_STATUSES:
                raise InvalidStateError("Engagement is already completed or cancelled")
            conn.execute(
                """
                UPDATE engagements
                SET status = 'CANCELLED', cancelled_by = ?, cancellation_reason = ?, updated_at = ?
                WHERE id = ? AND status NOT IN ('COMPLETED', 'CANCELLED')
                """,
                (cancelled_by, reason.strip(), self.database.now_iso(), engagement_id),
            )
            updated = self._load_engagement(conn, engagement_id)
        logger.info("Engagement cancelled: engagement=%s by=%s", engagement_id, cancelled_by)
        self.notifications.notify_one(
            counterpart,
            "engagement_cancelled",
            "Booking cancelled",
            f"The booking was cancelled: {reason.strip()}",
            {"engagement_id": engagement_id},
        )
        return updated

    # Sweeps

    def list_expirable_offer_ids(self, cutoff_iso: str) -> List[str]:
        with self.database.read() as conn:
            rows = conn.execute(
                "SELECT id FROM offers WHERE status = 'SUBMITTED' AND created_at < ? ORDER BY created_at ASC",
                (cutoff_iso,),
            ).fetchall()
        return [row["id"] for row in rows]

    def expire_offer(self, offer_id: str, cutoff_iso: str, timeout: Optional[float] = None) -> Optional[Offer]:
        """Reject one stale offer and refund its points in full. None if already settled."""
        with self.database.transaction(timeout=timeout) as conn:
            updated = conn.execute(
                """
                UPDATE offers SET status = 'REJECTED', responded_at = ?
                WHERE id = ? AND status = 'SUBMITTED' AND created_at < ?
                """,
                (self.database.now_iso(), offer_id, cutoff_iso),
            ).rowcount
            if updated != 1:
                return None
            offer = self._load_offer(conn, offer_id)
            if offer.points_used > 0:
                self.points.refund_in(conn, offer.provider_id, offer.points_used, "offer expired", offer.id)
        return offer

    def expire_requests(self, cutoff_iso: str, timeout: Optional[float] = None) -> int:
        with self.database.transaction(timeout=timeout) as conn:
            return conn.execute(
                """
                UPDATE service_requests SET status = 'EXPIRED', updated_at = ?
                WHERE status = 'OPEN' AND created_at < ?
                """,
                (self.database.now_iso(), cutoff_iso),
            ).rowcount

    def list_auto_completable_ids(self, cutoff_iso: str) -> List[str]:
        with self.database.read() as conn:
            rows = conn.execute(
                """
                SELECT id FROM engagements
                WHERE status = 'ACCEPTED' AND completion_reported_at IS NOT NULL AND completion_reported_at < ?
                ORDER BY completion_reported_at ASC
                """,
                (cutoff_iso,),
            ).fetchall()
        return [row["id"] for row in rows]

    def auto_complete(self, engagement_id: str, cutoff_iso: str, timeout: Optional[float] = None) -> Optional[Engagement]:
        with self.database.transaction(timeout=timeout) as conn:
            now_iso = self.database.now_iso()
            updated = conn.execute(
                """
                UPDATE engagements
                SET status = 'COMPLETED', completed_at = ?, completed_by = 'SYSTEM', updated_at = ?
                WHERE id = ? AND status = 'ACCEPTED'
                  AND completion_reported_at IS NOT NULL AND completion_reported_at < ?
                """,
                (now_iso, now_iso, engagement_id, cutoff_iso),
            ).rowcount
            if updated != 1:
                return None
            return self._load_engagement(conn, engagement_id)


request_store = RequestStore(
    database=database,
    settings=settings_store,
    providers=provider_store,
    quota=quota_ledger,
    points=point_ledger,
    matcher=candidate_matcher,
    resolver=coordinate_resolver,
    rooms=room_store,
    notifications=notification_store,
)
