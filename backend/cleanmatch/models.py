from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

ServiceType = Literal[
    "MOVE_IN",
    "MOVE_OUT",
    "FULL",
    "OFFICE",
    "STORE",
    "CONSTRUCTION",
    "AIRCON",
    "CARPET",
    "EXTERIOR",
]
RequestStatus = Literal["OPEN", "CLOSED", "EXPIRED"]
OfferStatus = Literal["SUBMITTED", "ACCEPTED", "REJECTED"]
EngagementStatus = Literal["PENDING", "ACCEPTED", "COMPLETED", "CANCELLED"]
SubscriptionTier = Literal["BASIC", "PRO", "PREMIUM"]
SubscriptionStatus = Literal["ACTIVE", "PAUSED", "QUEUED", "CANCELLED", "EXPIRED"]
VerificationStatus = Literal["PENDING", "APPROVED", "REJECTED"]
UserRole = Literal["customer", "provider", "admin"]


class ChecklistItem(BaseModel):
    key: str
    label: str
    required: bool


class ChecklistTemplate(BaseModel):
    service_type: ServiceType
    label: str
    items: list[ChecklistItem]


class ServiceRequestCreate(BaseModel):
    customer_id: str
    service_type: ServiceType
    address: str = Field(min_length=1, max_length=300)
    detail_address: Optional[str] = Field(default=None, max_length=200)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    area_size: Optional[int] = Field(default=None, ge=1)
    desired_date: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    desired_time: Optional[str] = Field(default=None, max_length=10)
    description: str = Field(min_length=1)
    budget: Optional[int] = Field(default=None, ge=0)
    checklist: Dict[str, bool] = Field(default_factory=dict)
    images: list[str] = Field(default_factory=list, max_length=10)
    max_offers: Optional[int] = Field(default=None, ge=1, le=20)


class ServiceRequest(BaseModel):
    id: str
    customer_id: str
    service_type: ServiceType
    address: str
    detail_address: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    area_size: Optional[int] = None
    desired_date: Optional[str] = None
    desired_time: Optional[str] = None
    description: str
    budget: Optional[int] = None
    checklist: Dict[str, bool] = Field(default_factory=dict)
    images: list[str] = Field(default_factory=list)
    status: RequestStatus
    max_offers: int
    created_at: str
    updated_at: str


class OfferSubmit(BaseModel):
    provider_user_id: str
    price: int = Field(ge=1)
    message: Optional[str] = Field(default=None, max_length=2000)
    estimated_duration: Optional[str] = Field(default=None, max_length=50)
    available_date: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    images: list[str] = Field(default_factory=list, max_length=10)


class Offer(BaseModel):
    id: str
    request_id: str
    provider_id: str
    price: int
    message: Optional[str] = None
    estimated_duration: Optional[str] = None
    available_date: Optional[str] = None
    images: list[str] = Field(default_factory=list)
    points_used: int = 0
    status: OfferStatus
    created_at: str
    responded_at: Optional[str] = None


class ServiceRequestCreated(BaseModel):
    request: ServiceRequest
    candidate_provider_ids: list[str] = Field(default_factory=list)


class ServiceRequestDetails(BaseModel):
    request: ServiceRequest
    offers: list[Offer]


class OfferDecisionRequest(BaseModel):
    customer_id: str


class Engagement(BaseModel):
    id: str
    customer_id: str
    provider_id: str
    provider_user_id: str
    offer_id: str
    request_id: str
    service_type: ServiceType
    address: str
    detail_address: Optional[str] = None
    area_size: Optional[int] = None
    desired_date: Optional[str] = None
    desired_time: Optional[str] = None
    description: str = ""
    price: int
    room_id: Optional[str] = None
    status: EngagementStatus
    completion_reported_at: Optional[str] = None
    completion_images: list[str] = Field(default_factory=list)
    completed_at: Optional[str] = None
    completed_by: Optional[Literal["CUSTOMER", "SYSTEM"]] = None
    cancelled_by: Optional[Literal["CUSTOMER", "PROVIDER"]] = None
    cancellation_reason: Optional[str] = None
    created_at: str


class AcceptOfferResult(BaseModel):
    offer: Offer
    engagement: Engagement
    rejected_offer_ids: list[str] = Field(default_factory=list)
    room_id: Optional[str] = None


class CompletionReportRequest(BaseModel):
    provider_user_id: str
    images: list[str] = Field(default_factory=list, max_length=10)


class CompletionConfirmRequest(BaseModel):
    customer_id: str


class EngagementCancelRequest(BaseModel):
    actor_user_id: str
    reason: str = Field(min_length=1, max_length=500)


class ProviderProfileCreate(BaseModel):
    user_id: str
    business_name: str = Field(min_length=1, max_length=100)
    address: str = Field(min_length=1, max_length=300)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    service_range_km: Optional[float] = Field(default=None, gt=0)
    specialties: list[ServiceType] = Field(default_factory=list)
    service_areas: list[str] = Field(default_factory=list)


class ProviderProfile(BaseModel):
    id: str
    user_id: str
    business_name: str
    address: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    service_range_km: Optional[float] = None
    specialties: list[ServiceType] = Field(default_factory=list)
    service_areas: list[str] = Field(default_factory=list)
    verification_status: VerificationStatus
    is_active: bool = True
    total_matches: int = 0
    created_at: str


class ProviderReviewRequest(BaseModel):
    decision: Literal["approve", "reject"]


class SubscriptionPlan(BaseModel):
    id: str
    name: str
    tier: SubscriptionTier
    duration_months: int
    price: int
    daily_offer_limit: int
    priority_weight: float
    sort_order: int = 0


class Subscription(BaseModel):
    id: str
    provider_id: str
    plan_id: str
    plan_name: str
    tier: SubscriptionTier
    daily_offer_limit: int
    priority_weight: float
    status: SubscriptionStatus
    current_period_start: str
    current_period_end: str
    is_trial: bool = False
    cancelled_at: Optional[str] = None
    created_at: str


class SubscriptionPurchaseRequest(BaseModel):
    actor_user_id: str
    provider_id: str
    plan_id: str


class SubscriptionExtendRequest(BaseModel):
    months: int = Field(ge=1, le=36)


class SubscriptionTierChangeRequest(BaseModel):
    plan_id: str


class QuotaInfo(BaseModel):
    provider_id: str
    tier: Optional[SubscriptionTier] = None
    allowed: bool
    used: int
    limit: int
    remaining: int
    reset_at: str


class SweepResult(BaseModel):
    name: str
    processed: int = 0
    failed: int = 0
    failed_ids: list[str] = Field(default_factory=list)


class SettingUpdateRequest(BaseModel):
    value: Any


class PointBalance(BaseModel):
    provider_id: str
    balance: int


class PointChargeRequest(BaseModel):
    amount: int = Field(ge=1)
    description: str = "manual charge"


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = ""
    role: UserRole = "customer"


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    role: UserRole
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    role: UserRole


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    kind: str
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: str
