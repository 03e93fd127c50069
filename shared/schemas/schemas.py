"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the booking engine.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shared.models.models import AvailabilityStatus


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── Availability ──────────────────────────────────────────────

class AvailabilityCheckRequest(BaseSchema):
    talent_id: uuid.UUID
    start_date: datetime
    end_date: datetime


class AvailabilityEntryResponse(BaseSchema):
    id: uuid.UUID
    talent_id: uuid.UUID
    start_date: datetime
    end_date: datetime
    status: str
    is_recurring: bool
    recurring_pattern: Optional[str]
    recurring_days: List[int]
    notes: Optional[str]


class AvailabilityCheckResponse(BaseSchema):
    is_available: bool
    conflicting_entries: List[AvailabilityEntryResponse]
    message: str


class AvailabilityEntryCreate(BaseSchema):
    start_date: datetime
    end_date: datetime
    status: AvailabilityStatus = AvailabilityStatus.AVAILABLE
    is_recurring: bool = False
    recurring_pattern: Optional[str] = Field(None, max_length=50)
    recurring_days: List[int] = Field(default_factory=list)
    notes: Optional[str] = Field(None, max_length=1000)
    # When set on a recurring entry, concrete rows are generated up to this date
    generate_until: Optional[datetime] = None

    @field_validator("recurring_days")
    @classmethod
    def validate_recurring_days(cls, v: List[int]) -> List[int]:
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("Weekday indices run from 0 (Sunday) to 6 (Saturday)")
        return sorted(set(v))


class RecurringAvailabilityRequest(AvailabilityEntryCreate):
    is_recurring: bool = True
    generate_until: datetime


class AvailabilityEntryUpdate(BaseSchema):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[AvailabilityStatus] = None
    notes: Optional[str] = Field(None, max_length=1000)


class RecurringGenerateResponse(BaseSchema):
    created: int


# ── Booking ───────────────────────────────────────────────────

class EventCreate(BaseSchema):
    title: str = Field(..., min_length=2, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    venue: Optional[str] = Field(None, max_length=500)
    event_date: datetime
    duration_hours: Optional[int] = Field(None, ge=1, le=240)


class BookingCreateRequest(BaseSchema):
    talent_id: uuid.UUID
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    currency: Optional[str] = Field(None, pattern=r"^[A-Z]{3}$")
    event_id: Optional[uuid.UUID] = None
    event: Optional[EventCreate] = None
    proposed_date: Optional[datetime] = None
    event_end_date_time: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def validate_event_reference(self):
        if (self.event_id is None) == (self.event is None):
            raise ValueError("Provide exactly one of event_id or event")
        return self


class BookingResponse(BaseSchema):
    id: uuid.UUID
    organizer_id: uuid.UUID
    talent_id: uuid.UUID
    event_id: uuid.UUID
    amount: Decimal
    platform_fee: Decimal
    talent_amount: Optional[Decimal]
    currency: str
    proposed_date: Optional[datetime]
    accepted_date: Optional[datetime]
    event_end_date_time: Optional[datetime]
    completed_date: Optional[datetime]
    status: str
    notes: Optional[str]
    decline_reason: Optional[str]
    cancellation_reason: Optional[str]
    cancelled_by: Optional[str]
    cancelled_at: Optional[datetime]
    created_at: datetime


class ReviewPayload(BaseSchema):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class BookingActionRequest(BaseSchema):
    action: str
    notes: Optional[str] = Field(None, max_length=2000)
    reason: Optional[str] = Field(None, max_length=500)
    review: Optional[ReviewPayload] = None


class BookingActionResponse(BaseSchema):
    booking: BookingResponse
    warnings: List[str] = Field(default_factory=list)
    payout_transaction_id: Optional[uuid.UUID] = None
    review_id: Optional[uuid.UUID] = None


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(ReviewPayload):
    booking_id: uuid.UUID


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    giver_id: uuid.UUID
    receiver_id: uuid.UUID
    rating: int
    comment: Optional[str]
    reviewer_type: str
    is_visible: bool
    created_at: datetime


class ReviewSubmissionResponse(ReviewResponse):
    warnings: List[str] = Field(default_factory=list)


class VisibilityResponse(BaseSchema):
    booking_id: uuid.UUID
    visible: bool
    changed: bool


# ── Settlement ────────────────────────────────────────────────

class TransactionResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    user_id: uuid.UUID
    type: str
    status: str
    amount: Decimal
    currency: str
    description: Optional[str]
    tx_metadata: Optional[dict] = Field(None, serialization_alias="metadata")
    created_at: datetime


class EarningsSummaryResponse(BaseSchema):
    currency: str
    total_earnings: Decimal
    pending_earnings: Decimal
    completed_earnings: Decimal
    payout_count: int


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True
