from typing import Tuple

from fastapi import APIRouter, Depends, HTTPException

from cleanmatch.auth import create_access_token, is_admin_user, require_authenticated_user
from cleanmatch.config import AUTH_DEMO_PASSWORD
from cleanmatch.models import AuthLoginRequest, AuthLoginResponse, AuthMeResponse

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    if payload.password != AUTH_DEMO_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if payload.role == "admin" and not is_admin_user(user_id):
        raise HTTPException(status_code=403, detail="User is not an administrator")
    token, expires_at = create_access_token(user_id=user_id, role=payload.role)
    return AuthLoginResponse(access_token=token, user_id=user_id, role=payload.role, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(principal: Tuple[str, str] = Depends(require_authenticated_user)):
    user_id, role = principal
    return AuthMeResponse(user_id=user_id, role=role)
