from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

UserRole = Literal["requester", "provider", "admin"]
QuotationStatus = Literal["pending", "quoted", "accepted", "rejected"]
RequestStatus = Literal["open", "fulfilled", "closed"]


class User(BaseModel):
    id: str
    display_name: str
    email: str
    role: UserRole
    profile: Dict[str, Any] = Field(default_factory=dict)
    created_at: str


class UserCreateRequest(BaseModel):
    display_name: str
    email: str
    role: UserRole = "requester"
    profile: Dict[str, Any] = Field(default_factory=dict)


class ServiceEntry(BaseModel):
    name: str
    price: float = Field(ge=0)
    description: str = ""
    available: bool = True


class ServiceProvider(BaseModel):
    id: str
    owner_user_id: str
    name: str
    services: list[ServiceEntry] = Field(default_factory=list)
    rating: float = 0.0
    status: Literal["active", "inactive"] = "active"
    created_at: str


class ServiceProviderCreateRequest(BaseModel):
    user_id: str
    name: str
    services: list[ServiceEntry] = Field(default_factory=list)
    rating: float = Field(default=0.0, ge=0, le=5)


class ServiceProviderDeactivateRequest(BaseModel):
    user_id: str


class Quote(BaseModel):
    price: float
    currency: str = "USD"
    timeline: str
    description: str = ""


class QuotationRequest(BaseModel):
    id: str
    requester_id: str
    details: str
    provider_ids: list[str]
    created_at: str


class Quotation(BaseModel):
    id: str
    request_id: str
    provider_id: str
    quote: Optional[Quote] = None
    status: QuotationStatus
    created_at: str
    updated_at: str


class QuotationTransition(BaseModel):
    id: str
    quotation_id: str
    request_id: str
    actor_user_id: str
    from_status: QuotationStatus
    to_status: QuotationStatus
    event: str
    created_at: str


class QuotationRequestCreate(BaseModel):
    user_id: str
    details: str
    provider_ids: list[str]


class QuoteSubmitRequest(BaseModel):
    actor_user_id: str
    price: float
    timeline: str
    description: str = ""
    currency: Optional[str] = None


class QuotationActionRequest(BaseModel):
    actor_user_id: str


class QuotationRequestView(BaseModel):
    request: QuotationRequest
    status: RequestStatus
    quotations: list[Quotation]


class TransitionResult(BaseModel):
    request: QuotationRequest
    status: RequestStatus
    quotation: Optional[Quotation] = None
    quotations: list[Quotation]
    warnings: list[str] = Field(default_factory=list)
    invoice: Optional["Invoice"] = None


class RequestStatusView(BaseModel):
    request_id: str
    status: RequestStatus


class Invoice(BaseModel):
    id: str
    quotation_id: str
    amount: float
    currency: str
    status: str = "open"


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = ""


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
    title: str
    body: str
    category: Literal["quotation", "system"] = "system"
    read: bool = False
    created_at: str
    deep_link: Optional[str] = None


TransitionResult.model_rebuild()
