# backend/schemas.py
from pydantic import BaseModel, AliasChoices, Field, field_validator, model_validator
from datetime import datetime, date, time
from typing import Optional, List, Dict, Any

# Service fields arrive under legacy names from older clients
# (title / pricePerSession / sessionDuration / specialty). They are folded
# into the canonical names here and nowhere else.
NAME_ALIASES = AliasChoices("name", "title")
PRICE_ALIASES = AliasChoices("price", "pricePerSession", "price_per_session")
DURATION_ALIASES = AliasChoices("duration", "sessionDuration", "session_duration")
CATEGORY_ALIASES = AliasChoices("category", "specialty")


# User / auth schemas
class UserResponse(BaseModel):
    id: int
    email: str
    name: str
    role: str
    avatar: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class GoogleLoginRequest(BaseModel):
    credential: str = Field(min_length=1)


class LoginResponse(BaseModel):
    token: str
    user: UserResponse


PHONE_ALIASES = AliasChoices("phone", "phoneNumber", "phone_number")


class UserProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, max_length=32, validation_alias=PHONE_ALIASES)
    avatar: Optional[str] = None


class AdminUserUpdate(UserProfileUpdate):
    role: Optional[str] = None

    @field_validator("role")
    @classmethod
    def check_role(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        value = value.strip().lower()
        if value not in ("client", "consultant", "admin"):
            raise ValueError("role must be one of client, consultant, admin")
        return value


# Catalog schemas
class ConsultantProfileUpdate(BaseModel):
    specialty: Optional[str] = Field(None, validation_alias=AliasChoices("specialty", "specialization"))
    description: Optional[str] = None


class ServiceCreate(BaseModel):
    name: str = Field(min_length=1, validation_alias=NAME_ALIASES)
    description: str = Field(min_length=1)
    price: float = Field(ge=0, validation_alias=PRICE_ALIASES)
    duration: int = Field(gt=0, le=480, validation_alias=DURATION_ALIASES)
    category: str = Field("General", validation_alias=CATEGORY_ALIASES)


class ServiceUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, validation_alias=NAME_ALIASES)
    description: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0, validation_alias=PRICE_ALIASES)
    duration: Optional[int] = Field(None, gt=0, le=480, validation_alias=DURATION_ALIASES)
    category: Optional[str] = Field(None, validation_alias=CATEGORY_ALIASES)


class ServiceResponse(BaseModel):
    id: int
    consultant_id: int
    name: str
    description: str
    price: float
    duration: int
    category: Optional[str] = None
    is_active: bool

    class Config:
        from_attributes = True


class SlotCreate(BaseModel):
    date: date
    start_time: time = Field(validation_alias=AliasChoices("start_time", "startTime"))
    end_time: time = Field(validation_alias=AliasChoices("end_time", "endTime"))

    @model_validator(mode="after")
    def check_range(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class AvailabilityRequest(BaseModel):
    slots: List[SlotCreate] = Field(min_length=1)


class SlotResponse(BaseModel):
    id: int
    date: date
    start_time: time
    end_time: time
    is_booked: bool

    class Config:
        from_attributes = True


class ConsultantSummary(BaseModel):
    id: int
    user_id: int
    name: str
    email: str
    avatar: Optional[str] = None
    specialty: Optional[str] = None
    description: Optional[str] = None
    average_rating: float
    review_count: int
    services: List[ServiceResponse] = []


class ConsultantDetail(ConsultantSummary):
    slots: List[SlotResponse] = []


# Booking schemas
class BookingDocumentResponse(BaseModel):
    id: int
    filename: str
    original_name: str
    path: str
    mime_type: Optional[str] = None
    size: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class BookingResponse(BaseModel):
    id: int
    client_id: int
    consultant_id: int
    service_id: int
    date: date
    time: time
    duration: int
    status: str
    payment_status: str
    amount: Optional[float] = None
    notes: Optional[str] = None
    cancel_reason: Optional[str] = None
    documents: List[BookingDocumentResponse] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class BookingUpdate(BaseModel):
    status: Optional[str] = None
    payment_status: Optional[str] = Field(
        None, validation_alias=AliasChoices("payment_status", "paymentStatus")
    )
    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    date: str
    time: str


# Review schemas
class ReviewCreate(BaseModel):
    booking_id: int = Field(validation_alias=AliasChoices("booking_id", "bookingId"))
    rating: int = Field(ge=1, le=5)
    comment: Optional[str] = None


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = None


class ReviewResponse(BaseModel):
    id: int
    booking_id: int
    consultant_id: int
    client_id: int
    rating: int
    comment: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


# Notification schemas
class NotificationResponse(BaseModel):
    id: int
    user_id: int
    type: str
    message: str
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


# Payment schemas
class PaymentIntentRequest(BaseModel):
    booking_id: int = Field(validation_alias=AliasChoices("booking_id", "bookingId"))
    method: str = Field("card", min_length=1)


class PaymentResponse(BaseModel):
    id: int
    booking_id: int
    amount: float
    method: str
    status: str
    provider_intent_id: Optional[str] = None
    failure_reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PaymentWebhookEvent(BaseModel):
    intent_id: str
    status: str
    failure_reason: Optional[str] = None

    @field_validator("status")
    @classmethod
    def normalize_status(cls, value: str) -> str:
        return value.strip().lower()


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    database: str
    cache: str
    scheduler: str
    details: Optional[Dict[str, Any]] = None
