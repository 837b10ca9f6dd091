from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.clock import parse_time_of_day

from .enums import DoseStatus, EventType, RecipientRole, Role, SkipReason


def normalize_identity(value: str | None) -> str:
    return (value or "").strip().lower()


def clean_contact(value: str | None) -> str:
    return (value or "").strip()[:30]


class RecordModel(BaseModel):
    """Read model hydrated from ORM rows; naive timestamps are treated as UTC."""

    model_config = ConfigDict(from_attributes=True)

    @field_validator("*", mode="after")
    @classmethod
    def attach_utc(cls, value):
        if isinstance(value, datetime) and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class GatewayResult(BaseModel):
    ok: bool
    provider: str
    status: str
    reference: str = ""
    message: str = ""


class AuthIdentity(BaseModel):
    user_id: str
    email: str
    role: Role


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=1, max_length=256)


class LoginResponse(BaseModel):
    token: str
    user: AuthIdentity
    expires_at: datetime


class RegisterRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=80)
    email: str = Field(min_length=3, max_length=254)
    password: str = Field(min_length=6, max_length=256)
    role: Role = Role.PATIENT
    city: str = Field(default="Hassan, Karnataka", max_length=120)
    phone: str = Field(default="", max_length=30)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = normalize_identity(v)
        if "@" not in v:
            raise ValueError("email must be an e-mail address")
        return v


class ScheduleCreate(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    patient_identity: str = Field(min_length=3, max_length=254)
    medicine_name: str = Field(min_length=1, max_length=120)
    dosage: str = Field(min_length=1, max_length=80)
    time_of_day: str = Field(min_length=5, max_length=5)
    notes: str = Field(default="", max_length=240)
    caretaker_contact: str = Field(default="", max_length=30)

    @model_validator(mode="after")
    def validate_payload(self) -> "ScheduleCreate":
        self.patient_identity = normalize_identity(self.patient_identity)
        if "@" not in self.patient_identity:
            raise ValueError("patient_identity must be an e-mail address")
        parse_time_of_day(self.time_of_day)
        self.caretaker_contact = clean_contact(self.caretaker_contact)
        return self


class UserDTO(RecordModel):
    id: str
    name: str
    email: str
    role: Role
    city: str = ""
    phone: str = ""
    created_at: datetime


class ScheduleDTO(RecordModel):
    id: str
    owner_id: str
    patient_identity: str
    medicine_name: str
    dosage: str
    time_of_day: str
    notes: str = ""
    caretaker_contact: str = ""
    created_at: datetime


class DoseLogDTO(RecordModel):
    id: str
    schedule_id: str
    date_key: str
    status: DoseStatus
    scheduled_at: datetime | None = None
    taken_at: datetime | None = None
    escalated_at: datetime | None = None
    caretaker_contact: str = ""
    caretaker_called_at: datetime | None = None
    call_provider: str | None = None
    call_reference: str | None = None
    call_status: str | None = None
    created_at: datetime
    updated_at: datetime


class NotificationDTO(RecordModel):
    id: str
    schedule_id: str
    date_key: str
    event_type: EventType
    recipient_role: RecipientRole
    recipient_contact: str
    message: str
    provider: str | None = None
    provider_reference: str | None = None
    delivery_status: str
    created_at: datetime


class SendOnceResult(BaseModel):
    sent: bool
    skipped: bool
    reason: SkipReason | None = None
    result: GatewayResult | None = None
    item: NotificationDTO | None = None


class EscalationResult(BaseModel):
    log: DoseLogDTO | None = None
    call_result: GatewayResult | None = None


class DoseTakenResponse(BaseModel):
    log: DoseLogDTO
    notify_result: SendOnceResult


class EscalateResponse(BaseModel):
    log: DoseLogDTO | None = None
    call_result: GatewayResult | None = None
    notify_results: list[SendOnceResult] = Field(default_factory=list)


class SweepFailure(BaseModel):
    schedule_id: str
    error: str


class SweepReport(BaseModel):
    date_key: str
    minutes_now: int
    skipped_taken: int = 0
    upcoming: int = 0
    due: int = 0
    missed: int = 0
    failures: list[SweepFailure] = Field(default_factory=list)
