from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, model_validator

RequestStatus = Literal["open", "in_progress", "completed", "cancelled"]
ProposalStatus = Literal["pending", "accepted", "rejected", "withdrawn"]
RadiusScope = Literal["local", "city_wide", "unlimited"]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Location(BaseModel):
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)
    city: Optional[str] = None
    state: Optional[str] = None
    address: Optional[str] = None

    @property
    def is_locatable(self) -> bool:
        return self.lat is not None and self.lng is not None

    def display(self) -> str:
        parts = [part for part in (self.city, self.state) if part]
        return ", ".join(parts) or self.address or ""


class Category(BaseModel):
    id: str
    name: str
    description: str = ""
    icon: str = ""
    # None means online/unlimited: location never restricts matching.
    match_radius_km: Optional[float] = Field(default=None, ge=0)


class ProviderProfile(BaseModel):
    user_id: str
    full_name: str = "Provider"
    skills: list[str] = Field(default_factory=list)
    location: Optional[Location] = None
    rating: float = 0.0
    review_count: int = 0
    hourly_rate: Optional[float] = None
    bio: str = ""
    is_verified: bool = False


class ServiceRequest(BaseModel):
    id: str
    buyer_id: str
    category_id: str
    title: str
    description: str = ""
    budget_min: float = 0
    budget_max: float = 0
    deadline: Optional[str] = None
    location: Optional[Location] = None
    status: RequestStatus = "open"
    created_at: str
    updated_at: Optional[str] = None

    @model_validator(mode="after")
    def _check_budget(self) -> "ServiceRequest":
        if self.budget_min > self.budget_max:
            raise ValueError("budget_min must not exceed budget_max")
        return self

    def location_text(self) -> str:
        return self.location.display() if self.location else ""


class Proposal(BaseModel):
    id: str
    request_id: str
    provider_id: str
    price: float
    timeline_estimate: str = ""
    cover_letter: str = ""
    status: ProposalStatus = "pending"
    created_at: str
    updated_at: Optional[str] = None


class Conversation(BaseModel):
    id: str
    request_id: str
    buyer_id: str
    provider_id: str
    request_title: str = ""
    created_at: str


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    type: str
    title: str
    body: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: str


class ServiceRequestCreate(BaseModel):
    buyer_id: str
    category_id: str
    title: str = Field(min_length=1)
    description: str = ""
    budget_min: float = Field(default=0, ge=0)
    budget_max: float = Field(default=0, ge=0)
    deadline: Optional[str] = None
    location: Optional[Location] = None

    @model_validator(mode="after")
    def _check_budget(self) -> "ServiceRequestCreate":
        if self.budget_min > self.budget_max:
            raise ValueError("budget_min must not exceed budget_max")
        return self


class ServiceRequestUpdate(BaseModel):
    actor_user_id: str
    title: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    budget_min: Optional[float] = Field(default=None, ge=0)
    budget_max: Optional[float] = Field(default=None, ge=0)
    deadline: Optional[str] = None
    location: Optional[Location] = None

    @model_validator(mode="after")
    def _reject_nulls(self) -> "ServiceRequestUpdate":
        # null clears deadline and location; these fields cannot be cleared.
        for name in ("title", "description", "budget_min", "budget_max"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class ProposalCreate(BaseModel):
    provider_id: str
    price: float = Field(gt=0)
    timeline_estimate: str = ""
    cover_letter: str = ""


class ActorRequest(BaseModel):
    actor_user_id: str


class DeviceTokenRegisterRequest(BaseModel):
    user_id: str
    device_token: str
    platform: Literal["android", "ios", "web"] = "android"


class ProposalSubmission(BaseModel):
    proposal: Proposal
    outside_budget: bool = False


class ServiceRequestView(BaseModel):
    request: ServiceRequest
    proposals: list[Proposal] = Field(default_factory=list)
    notified_providers: Optional[int] = None


class AcceptanceView(BaseModel):
    request: ServiceRequest
    proposal: Proposal
    rejected_proposal_ids: list[str] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    partial_failures: list[str] = Field(default_factory=list)


class ReconciliationView(BaseModel):
    request: ServiceRequest
    rejected_proposal_ids: list[str] = Field(default_factory=list)
    conversation_id: Optional[str] = None
    changed: bool = False
