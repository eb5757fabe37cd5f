from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from cleanmatch.auth import assert_actor_authorized
from cleanmatch.models import (
    ChecklistTemplate,
    ServiceRequest,
    ServiceRequestCreate,
    ServiceRequestCreated,
    ServiceRequestDetails,
)
from cleanmatch.routers.errors import raise_store_http_error
from cleanmatch.services.checklists import get_checklist_template, list_checklist_templates
from cleanmatch.services.errors import StoreError
from cleanmatch.services.request_store import request_store

router = APIRouter(prefix="/requests", tags=["requests"])


@router.get("/checklists", response_model=list[ChecklistTemplate])
def list_checklists():
    return list_checklist_templates()


@router.get("/checklists/{service_type}", response_model=ChecklistTemplate)
def get_checklist(service_type: str):
    template = get_checklist_template(service_type.upper())
    if not template:
        raise HTTPException(status_code=404, detail="Checklist template not found")
    return template


@router.post("", response_model=ServiceRequestCreated)
def create_request(
    payload: ServiceRequestCreate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=payload.customer_id, authorization=authorization)
    try:
        return request_store.create_request(payload)
    except StoreError as exc:
        raise_store_http_error(exc)


@router.get("", response_model=list[ServiceRequest])
def list_requests(
    customer_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    service_type: Optional[str] = Query(default=None),
):
    return request_store.list_requests(customer_id=customer_id, status=status, service_type=service_type)


@router.get("/{request_id}", response_model=ServiceRequestDetails)
def get_request(request_id: str):
    try:
        return request_store.get_request(request_id)
    except StoreError as exc:
        raise_store_http_error(exc)
