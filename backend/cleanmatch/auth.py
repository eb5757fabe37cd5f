import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from fastapi import Header, HTTPException, status

from cleanmatch.config import ADMIN_USER_IDS, AUTH_REQUIRED, AUTH_SECRET, AUTH_TOKEN_TTL_HOURS

ROLES = {"customer", "provider", "admin"}


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def create_access_token(user_id: str, role: str) -> tuple[str, str]:
    expiry = datetime.now(timezone.utc) + timedelta(hours=AUTH_TOKEN_TTL_HOURS)
    payload = f"{user_id}|{role}|{int(expiry.timestamp())}".encode("utf-8")
    payload_part = _b64url(payload)
    sig = hmac.new(AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
    token = f"{payload_part}.{_b64url(sig)}"
    return token, expiry.isoformat()


def verify_access_token(token: str) -> Optional[Tuple[str, str]]:
    """Returns (user_id, role) for a valid, unexpired token."""
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        expected_sig = hmac.new(AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()
        if not hmac.compare_digest(sent_sig, expected_sig):
            return None
        user_id, role, expiry_ts = payload.decode("utf-8").rsplit("|", 2)
        if role not in ROLES:
            return None
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts):
            return None
        return user_id, role
    except (ValueError, UnicodeDecodeError):
        return None


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_principal(authorization: Optional[str]) -> Optional[Tuple[str, str]]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token)


def is_admin_user(user_id: str) -> bool:
    return user_id in ADMIN_USER_IDS


def require_authenticated_user(authorization: Optional[str] = Header(default=None)) -> Tuple[str, str]:
    principal = resolve_request_principal(authorization)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return principal


def assert_actor_authorized(
    actor_user_id: str,
    authorization: Optional[str] = Header(default=None),
) -> None:
    principal = resolve_request_principal(authorization)
    if not principal:
        if AUTH_REQUIRED:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        return
    if principal[0] != actor_user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token user does not match actor user")


def require_admin(authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    principal = resolve_request_principal(authorization)
    if not principal:
        if AUTH_REQUIRED:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        return None
    user_id, role = principal
    if role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return user_id
