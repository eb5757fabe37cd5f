from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query

from cleanmatch.auth import require_admin
from cleanmatch.models import (
    PointBalance,
    PointChargeRequest,
    ProviderProfile,
    ProviderReviewRequest,
    SettingUpdateRequest,
    Subscription,
    SubscriptionExtendRequest,
    SubscriptionTierChangeRequest,
    SweepResult,
)
from cleanmatch.routers.errors import raise_store_http_error
from cleanmatch.services.errors import StoreError
from cleanmatch.services.notification_store import notification_store
from cleanmatch.services.point_ledger import point_ledger
from cleanmatch.services.provider_store import provider_store
from cleanmatch.services.settings_store import settings_store
from cleanmatch.services.subscription_store import subscription_store
from cleanmatch.services.sweeper import lifecycle_sweeper

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])

SWEEPS = {
    "hourly": lifecycle_sweeper.run_hourly,
    "daily": lifecycle_sweeper.run_daily,
    "expire_offers": lambda: [lifecycle_sweeper.expire_offers()],
    "expire_requests": lambda: [lifecycle_sweeper.expire_requests()],
    "auto_complete_engagements": lambda: [lifecycle_sweeper.auto_complete_engagements()],
    "sweep_subscriptions": lambda: [lifecycle_sweeper.sweep_subscriptions()],
}


@router.get("/settings", response_model=Dict[str, Dict[str, Any]])
def list_settings():
    return settings_store.all()


@router.put("/settings/{key}", response_model=Dict[str, Any])
def update_setting(key: str, payload: SettingUpdateRequest):
    try:
        value = settings_store.set(key, payload.value)
    except StoreError as exc:
        raise_store_http_error(exc)
    return {"key": key, "value": value}


@router.post("/settings/reload", response_model=Dict[str, Any])
def reload_settings():
    return settings_store.reload()


@router.post("/providers/{provider_id}/review", response_model=ProviderProfile)
def review_provider(provider_id: str, payload: ProviderReviewRequest):
    try:
        profile = provider_store.review(provider_id, payload.decision)
    except StoreError as exc:
        raise_store_http_error(exc)
    approved = profile.verification_status == "APPROVED"
    notification_store.notify_one(
        profile.user_id,
        "provider_reviewed",
        "Provider application approved" if approved else "Provider application rejected",
        "Your free Basic trial has started." if approved else "Please review your application details.",
        {"provider_id": profile.id},
    )
    return profile


@router.post("/providers/{provider_id}/active", response_model=ProviderProfile)
def set_provider_active(provider_id: str, is_active: bool = Query(...)):
    try:
        return provider_store.set_active(provider_id, is_active)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/providers/{provider_id}/subscription", response_model=Subscription)
def change_provider_tier(provider_id: str, payload: SubscriptionTierChangeRequest):
    try:
        provider_store.get(provider_id)
        return subscription_store.change_tier(provider_id, payload.plan_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/subscriptions/{subscription_id}/extend", response_model=Subscription)
def extend_subscription(subscription_id: str, payload: SubscriptionExtendRequest):
    try:
        return subscription_store.extend(subscription_id, payload.months)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/providers/{provider_id}/points", response_model=PointBalance)
def charge_points(provider_id: str, payload: PointChargeRequest):
    try:
        provider_store.get(provider_id)
        return point_ledger.charge(provider_id, payload.amount, payload.description)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/sweeps/{name}", response_model=List[SweepResult])
def run_sweep(name: str):
    sweep = SWEEPS.get(name)
    if sweep is None:
        raise HTTPException(status_code=404, detail=f"Unknown sweep: {name}")
    return sweep()
