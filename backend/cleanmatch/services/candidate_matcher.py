import logging
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from cleanmatch.models import ProviderProfile, ServiceRequest
from cleanmatch.services.database import Database, database
from cleanmatch.services.provider_store import ProviderStore, provider_store
from cleanmatch.services.settings_store import SettingsStore, settings_store

logger = logging.getLogger(__name__)

KM_PER_DEGREE = 111.0
EARTH_RADIUS_KM = 6371.0

_ADMIN_SUFFIXES = re.compile(r"(특별시|광역시|특별자치시|특별자치도)")
_TOKEN_SPLIT = re.compile(r"[\s,]+")


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def bounding_box(latitude: float, longitude: float, radius_km: float) -> Tuple[float, float, float, float]:
    """Box that contains every point within ``radius_km`` of the origin.

    The longitude span is computed at the poleward edge of the box, where a
    degree of longitude is shortest.
    """
    lat_delta = radius_km / KM_PER_DEGREE
    min_lat = max(-90.0, latitude - lat_delta)
    max_lat = min(90.0, latitude + lat_delta)
    edge_lat = max(abs(min_lat), abs(max_lat))
    cos_edge = math.cos(math.radians(edge_lat))
    if cos_edge < 1e-6:
        return min_lat, max_lat, -180.0, 180.0
    lng_delta = min(180.0, radius_km / (KM_PER_DEGREE * cos_edge))
    return min_lat, max_lat, longitude - lng_delta, longitude + lng_delta


def tokenize_address(address: str) -> List[str]:
    cleaned = _ADMIN_SUFFIXES.sub("", address or "")
    tokens = [token for token in _TOKEN_SPLIT.split(cleaned) if len(token) >= 2]
    return tokens[:3]


def text_matches(provider: ProviderProfile, tokens: List[str]) -> bool:
    # A provider without declared service areas covers every region.
    if not provider.service_areas:
        return True
    if not tokens:
        return False
    for token in tokens:
        if any(token in area for area in provider.service_areas):
            return True
        if token in provider.address:
            return True
    return False


@dataclass
class CandidateMatcher:
    """Advisory list of providers to notify about a new request."""

    database: Database
    providers: ProviderStore
    settings: SettingsStore

    def _fetch(self, request: ServiceRequest, radius_km: float) -> List[ProviderProfile]:
        params: list = [request.customer_id]
        geo_clause = ""
        if request.latitude is not None and request.longitude is not None:
            min_lat, max_lat, min_lng, max_lng = bounding_box(request.latitude, request.longitude, radius_km)
            if min_lng < -180.0 or max_lng > 180.0:
                # Antimeridian wrap: latitude band only.
                geo_clause = " AND (latitude IS NULL OR latitude BETWEEN ? AND ?)"
                params.extend([min_lat, max_lat])
            else:
                geo_clause = " AND (latitude IS NULL OR (latitude BETWEEN ? AND ? AND longitude BETWEEN ? AND ?))"
                params.extend([min_lat, max_lat, min_lng, max_lng])
        with self.database.read() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM provider_profiles
                WHERE verification_status = 'APPROVED'
                  AND is_active = 1
                  AND user_id != ?{geo_clause}
                ORDER BY created_at ASC
                """,
                params,
            ).fetchall()
        return [self.providers.row_to_profile(row) for row in rows]

    def _within_range(self, request: ServiceRequest, provider: ProviderProfile, radius_km: float) -> Optional[bool]:
        if request.latitude is None or request.longitude is None:
            return None
        if provider.latitude is None or provider.longitude is None:
            return None
        limit = min(provider.service_range_km or radius_km, radius_km)
        distance = haversine_km(request.latitude, request.longitude, provider.latitude, provider.longitude)
        return distance <= limit

    def match(self, request: ServiceRequest) -> List[ProviderProfile]:
        radius_km = self.settings.get_float("max_service_radius_km")
        tokens = tokenize_address(request.address)
        matched: List[ProviderProfile] = []
        for provider in self._fetch(request, radius_km):
            if provider.specialties and request.service_type not in provider.specialties:
                continue
            in_range = self._within_range(request, provider, radius_km)
            if in_range is None:
                in_range = text_matches(provider, tokens)
            if in_range:
                matched.append(provider)
        logger.info(
            "Candidate match: request=%s type=%s candidates=%s",
            request.id,
            request.service_type,
            len(matched),
        )
        return matched

    def find_candidates(self, request: ServiceRequest) -> List[str]:
        return [provider.id for provider in self.match(request)]


candidate_matcher = CandidateMatcher(
    database=database,
    providers=provider_store,
    settings=settings_store,
)
