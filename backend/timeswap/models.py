from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Interval(BaseModel):
    """Half-open time range ``[start, end)`` in naive UTC."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return _to_naive_utc(value)


class RecurringPattern(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class WeeklyRule(BaseModel):
    id: str
    subject_id: str
    day_of_week: int = Field(ge=0, le=6)
    start_time: time
    end_time: time
    is_active: bool = True


class WeeklyRuleCreate(BaseModel):
    actor_user_id: str
    day_of_week: int = Field(ge=0, le=6)
    start_time: time
    end_time: time
    is_active: bool = True


class WeeklyRuleUpdate(BaseModel):
    actor_user_id: str
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    is_active: Optional[bool] = None


class DateOverride(BaseModel):
    subject_id: str
    date: date
    start_time: time
    end_time: time
    is_available: bool = True
    note: Optional[str] = None
    updated_at: Optional[datetime] = None


class DateOverrideUpsert(BaseModel):
    actor_user_id: str
    date: date
    start_time: time
    end_time: time
    is_available: bool = True
    note: Optional[str] = None


class BlockedPeriod(BaseModel):
    id: str
    subject_id: str
    start: datetime
    end: datetime
    reason: Optional[str] = None
    is_recurring: bool = False
    recurring_pattern: Optional[RecurringPattern] = None

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return _to_naive_utc(value)


class BlockedPeriodCreate(BaseModel):
    actor_user_id: str
    start: datetime
    end: datetime
    reason: Optional[str] = None
    is_recurring: bool = False
    recurring_pattern: Optional[RecurringPattern] = None

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return _to_naive_utc(value)


class BlockedPeriodUpdate(BaseModel):
    actor_user_id: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    reason: Optional[str] = None
    is_recurring: Optional[bool] = None
    recurring_pattern: Optional[RecurringPattern] = None

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(value) if value is not None else None


class AvailableSlot(BaseModel):
    date: date
    start: datetime
    end: datetime


class DayAvailability(BaseModel):
    date: date
    source: Literal["weekly", "override", "none"]
    slots: list[AvailableSlot] = Field(default_factory=list)


class AvailabilityCheck(BaseModel):
    subject_id: str
    interval: Interval
    available: bool


class CommittedInterval(BaseModel):
    id: str
    kind: Literal["exchange", "booking"]
    subject_id: str
    interval: Interval
    status: str


class ConflictCheckRequest(BaseModel):
    interval: Interval


class ConflictResult(BaseModel):
    conflict: bool
    conflicting_ids: list[str] = Field(default_factory=list)


class ExchangeStatus(str, Enum):
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    ACTIVE = "active"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class Exchange(BaseModel):
    id: str
    requestor_id: str
    provider_id: str
    title: str
    description: str = ""
    interval: Interval
    duration_minutes: int
    status: ExchangeStatus
    requestor_confirmed: bool = False
    provider_confirmed: bool = False
    disputed: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ExchangeRequestCreate(BaseModel):
    requestor_id: str
    provider_id: str
    title: str
    description: str = ""
    interval: Interval
    duration_minutes: Optional[int] = None


class ExchangeDecisionRequest(BaseModel):
    actor_user_id: str
    decision: Literal["accept", "decline"]


class ExchangeActorRequest(BaseModel):
    actor_user_id: str
    note: str = ""


class ExchangeHistoryEntry(BaseModel):
    id: str
    exchange_id: str
    actor_user_id: str
    from_status: str
    to_status: str
    note: str = ""
    created_at: str


class DisputeStatus(str, Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class Dispute(BaseModel):
    id: str
    exchange_id: str
    reporter_id: str
    reason: str
    details: str = ""
    status: DisputeStatus = DisputeStatus.PENDING
    admin_notes: Optional[str] = None
    mediation_required: bool = False
    created_at: str
    resolved_at: Optional[str] = None
    resolved_by: Optional[str] = None


class DisputeCreateRequest(BaseModel):
    reporter_id: str
    reason: str
    details: str = ""
    mediation_required: bool = False


class DisputeResolveRequest(BaseModel):
    admin_user_id: str
    admin_notes: str
    status: str = "resolved"


class Property(BaseModel):
    id: str
    host_user_id: str
    name: str = ""


class PropertyRegisterRequest(BaseModel):
    property_id: str
    host_user_id: str
    name: str = ""


BookingStatus = Literal["pending", "confirmed", "declined", "cancelled", "completed"]


class Booking(BaseModel):
    id: str
    property_id: str
    guest_user_id: str
    host_user_id: str
    interval: Interval
    guest_count: int = 1
    status: BookingStatus
    created_at: Optional[str] = None


class BookingRequest(BaseModel):
    guest_user_id: str
    property_id: str
    interval: Interval
    guest_count: int = Field(default=1, ge=1)


class BookingStatusUpdateRequest(BaseModel):
    actor_user_id: str
    status: Literal["confirmed", "declined", "cancelled", "completed"]


class AuthLoginRequest(BaseModel):
    user_id: str
    password: str = "timeswap-demo"


class AuthLoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    user_id: str
    expires_at: str


class AuthMeResponse(BaseModel):
    user_id: str
    is_admin: bool = False


class NotificationRecord(BaseModel):
    id: str
    user_id: str
    title: str
    body: str
    category: Literal["exchange", "booking", "dispute", "system"] = "system"
    read: bool = False
    created_at: str
    related_id: Optional[str] = None
    related_type: Optional[str] = None
