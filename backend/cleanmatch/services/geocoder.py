import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import httpx

from cleanmatch.config import GEOCODER_TIMEOUT_SECONDS, KAKAO_REST_API_KEY

logger = logging.getLogger(__name__)

KAKAO_ADDRESS_SEARCH_URL = "https://dapi.kakao.com/v2/local/search/address.json"


@dataclass
class CoordinateResolver:
    """Address -> (latitude, longitude) via Kakao local search.

    Returns None when no API key is configured or on any lookup failure.
    """

    api_key: str = KAKAO_REST_API_KEY
    timeout_seconds: float = GEOCODER_TIMEOUT_SECONDS

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def resolve(self, address: str) -> Optional[Tuple[float, float]]:
        if not self.enabled or not address.strip():
            return None
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                resp = client.get(
                    KAKAO_ADDRESS_SEARCH_URL,
                    params={"query": address},
                    headers={"Authorization": f"KakaoAK {self.api_key}"},
                )
                resp.raise_for_status()
                documents = resp.json().get("documents") or []
        except (httpx.HTTPError, ValueError):
            logger.exception("Geocoding failed for address=%s", address)
            return None
        if not documents:
            logger.info("Geocoding returned no match for address=%s", address)
            return None
        try:
            return float(documents[0]["y"]), float(documents[0]["x"])
        except (KeyError, TypeError, ValueError):
            logger.warning("Geocoding returned malformed document for address=%s", address)
            return None


coordinate_resolver = CoordinateResolver()
