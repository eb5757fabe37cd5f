import os
from pathlib import Path
from typing import List


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


def _env_csv(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes"}


DEFAULT_DB_PATH = str(Path(__file__).resolve().parents[1] / "data" / "cleanmatch.sqlite3")
DB_PATH = os.getenv("CLEANMATCH_DB_PATH", DEFAULT_DB_PATH)

# Daily offer quotas reset at local midnight in this zone.
QUOTA_TIMEZONE = os.getenv("QUOTA_TIMEZONE", "Asia/Seoul")

AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")
AUTH_REQUIRED = _env_flag("AUTH_REQUIRED")
AUTH_TOKEN_TTL_HOURS = _env_int("AUTH_TOKEN_TTL_HOURS", 24)
AUTH_DEMO_PASSWORD = os.getenv("AUTH_DEMO_PASSWORD", "cleanmatch-demo")
ADMIN_USER_IDS = set(_env_csv("ADMIN_USER_IDS", "admin"))

CORS_ORIGINS = _env_csv("CORS_ORIGINS", "*")
TRUSTED_HOSTS = _env_csv("TRUSTED_HOSTS", "*")

KAKAO_REST_API_KEY = os.getenv("KAKAO_REST_API_KEY", "").strip()
GEOCODER_TIMEOUT_SECONDS = _env_int("GEOCODER_TIMEOUT_SECONDS", 5)

FIREBASE_CREDENTIALS_PATH = os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
