from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models import AuditActorType, BookingStatus, RecurrenceFrequency, UserRole
from app.services.time_windows import as_utc


def _utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive values; everything stored is UTC.
    return as_utc(value) if value is not None else None


class BookingCreateRequest(BaseModel):
    room_id: str = Field(min_length=1, max_length=16)
    start_at: str = Field(min_length=1, max_length=64)
    end_at: str = Field(min_length=1, max_length=64)
    title: str | None = Field(default=None, max_length=255)


class BookingRead(BaseModel):
    id: int
    room_id: str
    title: str | None = None
    start_at: datetime
    end_at: datetime
    status: BookingStatus
    created_by_id: int
    recurring_rule_id: int | None = None
    canceled_at: datetime | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("start_at", "end_at", "canceled_at", "created_at")
    @classmethod
    def _normalize_instants(cls, value: datetime | None) -> datetime | None:
        return _utc(value)


class BookingCredentialsRead(BaseModel):
    pin: str
    qr_token: str


class BookingCreateResponse(BaseModel):
    booking: BookingRead
    credentials: BookingCredentialsRead


class BookingListResponse(BaseModel):
    bookings: list[BookingRead]


class RecurringBookingRequest(BaseModel):
    room_id: str = Field(min_length=1, max_length=16)
    title: str | None = Field(default=None, max_length=255)
    start_at: str = Field(min_length=1, max_length=64)
    duration_minutes: int = Field(ge=1, le=24 * 60)
    frequency: RecurrenceFrequency
    interval: int = Field(default=1, ge=1, le=52)
    days_of_week: list[int] | None = None
    end_date: date | None = None
    count: int | None = Field(default=None, ge=1)

    @field_validator("days_of_week")
    @classmethod
    def _validate_days(cls, value: list[int] | None) -> list[int] | None:
        if value is None:
            return None
        invalid = [day for day in value if day < 0 or day > 6]
        if invalid:
            raise ValueError("days_of_week values must be between 0 (Sunday) and 6 (Saturday).")
        return sorted(set(value))


class RecurringOccurrenceRead(BaseModel):
    start_at: datetime
    end_at: datetime
    booking_id: int | None = None
    error: str | None = None


class RecurringBookingResponse(BaseModel):
    rule_id: int
    created: int
    results: list[RecurringOccurrenceRead]


class BookingCancelRequest(BaseModel):
    booking_id: int = Field(ge=1)


class BookingCancelResponse(BaseModel):
    booking: BookingRead
    already_canceled: bool = False


class RoomRead(BaseModel):
    id: str
    name: str
    capacity: int
    availability_start_minutes: int
    availability_end_minutes: int
    min_duration_minutes: int
    max_duration_minutes: int
    buffer_minutes: int
    time_zone: str | None = None

    model_config = ConfigDict(from_attributes=True)


class RoomListResponse(BaseModel):
    rooms: list[RoomRead]


class RoomCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    capacity: int = Field(default=1, ge=1)
    availability_start_minutes: int = Field(default=480, ge=0, le=24 * 60)
    availability_end_minutes: int = Field(default=1080, ge=0, le=24 * 60)
    min_duration_minutes: int = Field(default=15, ge=15)
    max_duration_minutes: int = Field(default=240, ge=15)
    buffer_minutes: int = Field(default=0, ge=0)
    time_zone: str | None = Field(default=None, max_length=64)


class RoomUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    capacity: int | None = Field(default=None, ge=1)
    availability_start_minutes: int | None = Field(default=None, ge=0, le=24 * 60)
    availability_end_minutes: int | None = Field(default=None, ge=0, le=24 * 60)
    min_duration_minutes: int | None = Field(default=None, ge=15)
    max_duration_minutes: int | None = Field(default=None, ge=15)
    buffer_minutes: int | None = Field(default=None, ge=0)
    time_zone: str | None = Field(default=None, max_length=64)


class RoomDeleteResponse(BaseModel):
    room: RoomRead
    deleted_at: datetime

    @field_validator("deleted_at")
    @classmethod
    def _normalize_instants(cls, value: datetime) -> datetime | None:
        return _utc(value)


class AvailabilityBookingRead(BaseModel):
    id: int
    title: str | None = None
    start_at: datetime
    end_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("start_at", "end_at")
    @classmethod
    def _normalize_instants(cls, value: datetime) -> datetime | None:
        return _utc(value)


class RoomAvailabilityResponse(BaseModel):
    room: RoomRead
    time_zone: str
    bookings: list[AvailabilityBookingRead]


class TabletAuthRequest(BaseModel):
    tablet_id: int = Field(ge=1)
    credential: str = Field(min_length=1, max_length=256)


class TabletAuthResponse(BaseModel):
    tablet_id: int
    room_id: str
    session_token: str
    session_expires_at: datetime


class TabletLoginChallengeResponse(BaseModel):
    challenge_id: int
    pin: str
    qr_token: str
    expires_at: datetime


class TabletValidateRequest(BaseModel):
    pin: str | None = Field(default=None, max_length=32)
    booking_id: int | None = Field(default=None, ge=1)
    qr_token: str | None = Field(default=None, max_length=256)

    @model_validator(mode="after")
    def _validate_credential(self) -> "TabletValidateRequest":
        pin = self.pin.strip() if self.pin is not None else None
        qr_token = (self.qr_token or "").strip()
        if pin is None and not (self.booking_id is not None and qr_token):
            raise ValueError("Provide a pin or booking_id and qr_token.")
        self.pin = pin
        self.qr_token = qr_token or None
        return self


class ValidatedBookingRead(BaseModel):
    id: int
    room_id: str
    title: str | None = None
    start_at: datetime
    end_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("start_at", "end_at")
    @classmethod
    def _normalize_instants(cls, value: datetime) -> datetime | None:
        return _utc(value)


class TabletValidateResponse(BaseModel):
    booking: ValidatedBookingRead


class TabletProvisionRequest(BaseModel):
    room_id: str = Field(min_length=1, max_length=16)
    name: str | None = Field(default=None, max_length=255)


class TabletProvisionResponse(BaseModel):
    tablet_id: int
    room_id: str
    name: str | None = None
    credential: str


class TabletRead(BaseModel):
    id: int
    room_id: str
    name: str | None = None
    session_expires_at: datetime | None = None
    last_seen_at: datetime | None = None
    revoked_at: datetime | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)

    @field_validator("session_expires_at", "last_seen_at", "revoked_at", "created_at")
    @classmethod
    def _normalize_instants(cls, value: datetime | None) -> datetime | None:
        return _utc(value)


class LoginPinRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)


class LoginPinRequestResponse(BaseModel):
    ok: bool = True
    expires_at: datetime


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    pin: str = Field(min_length=1, max_length=32)


class UserRead(BaseModel):
    id: int
    organization_id: int
    email: str
    full_name: str | None = None
    role: UserRole

    model_config = ConfigDict(from_attributes=True)


class LoginResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_in: int
    user: UserRead


class PinVerifyRequest(BaseModel):
    pin: str | None = Field(default=None, max_length=32)
    challenge_id: int | None = Field(default=None, ge=1)
    token: str | None = Field(default=None, max_length=256)

    @model_validator(mode="after")
    def _validate_factor(self) -> "PinVerifyRequest":
        pin = (self.pin or "").strip()
        token = (self.token or "").strip()
        if not pin and not (self.challenge_id is not None and token):
            raise ValueError("PIN or challenge token required.")
        self.pin = pin or None
        self.token = token or None
        return self


class PinVerifyResponse(BaseModel):
    verified: bool
    pin_verified_at: datetime


class AuditLogRead(BaseModel):
    id: int
    ts_utc: datetime
    organization_id: int | None = None
    actor_type: AuditActorType
    actor_id: str
    action: str
    booking_id: int | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    ip: str | None = None
    user_agent: str | None = None
    success: bool
    details: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)

    @field_validator("ts_utc")
    @classmethod
    def _normalize_instants(cls, value: datetime) -> datetime | None:
        return _utc(value)
