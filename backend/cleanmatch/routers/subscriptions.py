from typing import Optional

from fastapi import APIRouter, Header, Query

from cleanmatch.auth import assert_actor_authorized
from cleanmatch.models import QuotaInfo, Subscription, SubscriptionPlan, SubscriptionPurchaseRequest
from cleanmatch.routers.errors import raise_store_http_error
from cleanmatch.services.errors import StoreError
from cleanmatch.services.provider_store import provider_store
from cleanmatch.services.quota_ledger import quota_ledger
from cleanmatch.services.subscription_store import subscription_store

router = APIRouter(tags=["subscriptions"])


@router.get("/subscriptions/plans", response_model=list[SubscriptionPlan])
def list_plans():
    return subscription_store.list_plans()


@router.post("/subscriptions", response_model=Subscription)
def purchase_subscription(
    payload: SubscriptionPurchaseRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        provider_store.get_owned(payload.provider_id, payload.actor_user_id)
        return subscription_store.purchase(payload.provider_id, payload.plan_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/subscriptions", response_model=list[Subscription])
def subscription_history(provider_id: str = Query(...)):
    return subscription_store.history(provider_id)


@router.get("/subscriptions/effective", response_model=Optional[Subscription])
def effective_subscription(provider_id: str = Query(...)):
    return subscription_store.effective_tier(provider_id)


def _owned_subscription(subscription_id: str, actor_user_id: str, authorization: Optional[str]) -> None:
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    subscription = subscription_store.get(subscription_id)
    provider_store.get_owned(subscription.provider_id, actor_user_id)


@router.post("/subscriptions/{subscription_id}/pause", response_model=Subscription)
def pause_subscription(
    subscription_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    try:
        _owned_subscription(subscription_id, actor_user_id, authorization)
        return subscription_store.pause(subscription_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/subscriptions/{subscription_id}/resume", response_model=Subscription)
def resume_subscription(
    subscription_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    try:
        _owned_subscription(subscription_id, actor_user_id, authorization)
        return subscription_store.resume(subscription_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/subscriptions/{subscription_id}/cancel", response_model=Subscription)
def cancel_subscription(
    subscription_id: str,
    actor_user_id: str = Query(...),
    authorization: Optional[str] = Header(default=None),
):
    try:
        _owned_subscription(subscription_id, actor_user_id, authorization)
        return subscription_store.cancel(subscription_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/quota/{provider_id}", response_model=QuotaInfo)
def get_quota(provider_id: str):
    try:
        provider_store.get(provider_id)
        return quota_ledger.can_submit(provider_id)
    except StoreError as exc:
        raise_store_http_error(exc)
