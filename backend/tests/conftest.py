import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# The module-level stores open their database on import.
os.environ.setdefault("CLEANMATCH_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="cleanmatch-tests-"), "api.sqlite3"))
os.environ.setdefault("KAKAO_REST_API_KEY", "")
os.environ.setdefault("FIREBASE_CREDENTIALS_PATH", "")

from cleanmatch.models import ProviderProfileCreate, ServiceRequestCreate  # noqa: E402
from cleanmatch.services.candidate_matcher import CandidateMatcher  # noqa: E402
from cleanmatch.services.database import Database  # noqa: E402
from cleanmatch.services.geocoder import CoordinateResolver  # noqa: E402
from cleanmatch.services.notification_store import NotificationStore  # noqa: E402
from cleanmatch.services.point_ledger import PointLedger  # noqa: E402
from cleanmatch.services.provider_store import ProviderStore  # noqa: E402
from cleanmatch.services.push_sender import PushSender  # noqa: E402
from cleanmatch.services.quota_ledger import QuotaLedger  # noqa: E402
from cleanmatch.services.request_store import RequestStore  # noqa: E402
from cleanmatch.services.room_store import RoomStore  # noqa: E402
from cleanmatch.services.settings_store import SettingsStore  # noqa: E402
from cleanmatch.services.subscription_store import SubscriptionStore  # noqa: E402
from cleanmatch.services.sweeper import LifecycleSweeper  # noqa: E402

# 2026-03-10 12:00 in Asia/Seoul.
START = datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def services(tmp_path, clock):
    database = Database(db_path=str(tmp_path / "cleanmatch.sqlite3"), clock=clock)
    settings = SettingsStore(database=database)
    subscriptions = SubscriptionStore(database=database)
    resolver = CoordinateResolver(api_key="")
    providers = ProviderStore(database=database, resolver=resolver, subscriptions=subscriptions)
    points = PointLedger(database=database)
    rooms = RoomStore(database=database)
    notifications = NotificationStore(sender=PushSender(credentials_path=""))
    matcher = CandidateMatcher(database=database, providers=providers, settings=settings)
    quota = QuotaLedger(database=database, subscriptions=subscriptions, timezone_name="Asia/Seoul")
    requests = RequestStore(
        database=database,
        settings=settings,
        providers=providers,
        quota=quota,
        points=points,
        matcher=matcher,
        resolver=resolver,
        rooms=rooms,
        notifications=notifications,
    )
    sweeper = LifecycleSweeper(
        database=database,
        settings=settings,
        requests=requests,
        subscriptions=subscriptions,
        providers=providers,
        notifications=notifications,
    )
    return SimpleNamespace(
        clock=clock,
        database=database,
        settings=settings,
        subscriptions=subscriptions,
        providers=providers,
        points=points,
        rooms=rooms,
        notifications=notifications,
        matcher=matcher,
        quota=quota,
        requests=requests,
        sweeper=sweeper,
    )


@pytest.fixture
def make_provider(services):
    def _make(
        user_id: str,
        *,
        latitude=37.50,
        longitude=127.03,
        service_range_km=None,
        specialties=None,
        service_areas=None,
        address="서울특별시 강남구 역삼동",
        approve=True,
    ):
        profile = services.providers.register(
            ProviderProfileCreate(
                user_id=user_id,
                business_name=f"{user_id} cleaning",
                address=address,
                latitude=latitude,
                longitude=longitude,
                service_range_km=service_range_km,
                specialties=specialties or [],
                service_areas=service_areas or [],
            )
        )
        if approve:
            profile = services.providers.review(profile.id, "approve")
        return profile

    return _make


@pytest.fixture
def make_request(services):
    def _make(customer_id: str = "cust_1", **overrides):
        payload = {
            "customer_id": customer_id,
            "service_type": "MOVE_IN",
            "address": "서울특별시 강남구 역삼동 123",
            "latitude": 37.50,
            "longitude": 127.03,
            "description": "Two bedroom apartment",
        }
        payload.update(overrides)
        return services.requests.create_request(ServiceRequestCreate(**payload)).request

    return _make
