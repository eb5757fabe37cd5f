from typing import Optional

from fastapi import APIRouter, Header, Query

from cleanmatch.auth import assert_actor_authorized
from cleanmatch.models import PointBalance, ProviderProfile, ProviderProfileCreate
from cleanmatch.routers.errors import raise_store_http_error
from cleanmatch.services.errors import StoreError
from cleanmatch.services.point_ledger import point_ledger
from cleanmatch.services.provider_store import provider_store

router = APIRouter(prefix="/providers", tags=["providers"])


@router.post("", response_model=ProviderProfile)
def register_provider(
    payload: ProviderProfileCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.user_id, authorization=authorization)
    try:
        return provider_store.register(payload)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("", response_model=list[ProviderProfile])
def list_providers(verification_status: Optional[str] = Query(default=None)):
    return provider_store.list_providers(verification_status=verification_status)


@router.get("/by-user/{user_id}", response_model=ProviderProfile)
def get_provider_by_user(user_id: str):
    try:
        return provider_store.get_by_user(user_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/{provider_id}", response_model=ProviderProfile)
def get_provider(provider_id: str):
    try:
        return provider_store.get(provider_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/{provider_id}/points", response_model=PointBalance)
def get_point_balance(
    provider_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        provider_store.get_owned(provider_id, actor_user_id)
        return point_ledger.balance(provider_id)
    except StoreError as exc:
        raise_store_http_error(exc)
