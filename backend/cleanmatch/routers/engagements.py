from typing import Optional

from fastapi import APIRouter, Header, Query

from cleanmatch.auth import assert_actor_authorized
from cleanmatch.models import (
    CompletionConfirmRequest,
    CompletionReportRequest,
    Engagement,
    EngagementCancelRequest,
)
from cleanmatch.routers.errors import raise_store_http_error
from cleanmatch.services.errors import StoreError
from cleanmatch.services.request_store import request_store

router = APIRouter(prefix="/engagements", tags=["engagements"])


@router.get("", response_model=list[Engagement])
def list_engagements(
    user_id: str = Query(...),
    status: Optional[str] = Query(default=None),
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=user_id, authorization=authorization)
    return request_store.list_engagements(user_id, status=status)


@router.get("/{engagement_id}", response_model=Engagement)
def get_engagement(engagement_id: str):
    try:
        return request_store.get_engagement(engagement_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/{engagement_id}/room", response_model=Engagement)
def ensure_room(engagement_id: str):
    try:
        return request_store.ensure_room(engagement_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/{engagement_id}/completion-report", response_model=Engagement)
def report_completion(
    engagement_id: str,
    payload: CompletionReportRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.provider_user_id, authorization=authorization)
    try:
        return request_store.report_completion(engagement_id, payload.provider_user_id, payload.images)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/{engagement_id}/confirm", response_model=Engagement)
def confirm_completion(
    engagement_id: str,
    payload: CompletionConfirmRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.customer_id, authorization=authorization)
    try:
        return request_store.confirm_completion(engagement_id, payload.customer_id)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.post("/{engagement_id}/cancel", response_model=Engagement)
def cancel_engagement(
    engagement_id: str,
    payload: EngagementCancelRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.actor_user_id, authorization=authorization)
    try:
        return request_store.cancel_engagement(engagement_id, payload.actor_user_id, payload.reason)
    except StoreError as exc:
        raise_store_http_error(exc)
