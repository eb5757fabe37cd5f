from typing import Optional

from fastapi import APIRouter, Header, Query

from cleanmatch.auth import assert_actor_authorized
from cleanmatch.models import AcceptOfferResult, Offer, OfferDecisionRequest, OfferSubmit
from cleanmatch.routers.errors import raise_store_http_error
from cleanmatch.services.errors import StoreError
from cleanmatch.services.request_store import request_store

router = APIRouter(tags=["offers"])


@router.post("/requests/{request_id}/offers", response_model=Offer)
def submit_offer(
    request_id: str,
    payload: OfferSubmit,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.provider_user_id, authorization=authorization)
    try:
        return request_store.submit_offer(request_id, payload)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("/offers", response_model=list[Offer])
def list_provider_offers(
    provider_user_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=provider_user_id, authorization=authorization)
    try:
        return request_store.list_provider_offers(provider_user_id, status=status)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/offers/{offer_id}/accept", response_model=AcceptOfferResult)
def accept_offer(
    offer_id: str,
    payload: OfferDecisionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.customer_id, authorization=authorization)
    try:
        return request_store.accept_offer(offer_id, payload.customer_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/offers/{offer_id}/reject", response_model=Offer)
def reject_offer(
    offer_id: str,
    payload: OfferDecisionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.customer_id, authorization=authorization)
    try:
        return request_store.reject_offer(offer_id, payload.customer_id)
    except StoreError as exc:
        raise_store_http_error(exc)
