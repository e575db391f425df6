"""Pydantic models for the PMS domain.

These are transient DTOs hydrated from the practice-management system on
every request; nothing here is owned state except ``CredentialState`` and
``WritebackRecord``, which the stores persist.

PHI note: ``Patient``, ``Insurance`` and ``EmergencyContact`` carry
protected health information.  Never log them; log ids only.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

T = TypeVar("T")


def utcnow() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    """Naive timestamps are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ── Providers & integration state ────────────────────────────────────


class PmsProvider(str, Enum):
    SIKKA = "SIKKA"
    KOLLA = "KOLLA"
    DENTRIX = "DENTRIX"
    EAGLESOFT = "EAGLESOFT"
    OPEN_DENTAL = "OPEN_DENTAL"
    CUSTOM = "CUSTOM"


class ConnectionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"
    ERROR = "ERROR"
    SETUP_REQUIRED = "SETUP_REQUIRED"


class WritebackResult(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SikkaCredentials(BaseModel):
    """App-level secrets plus whatever practice/token state is already known."""

    app_id: str = ""
    app_key: str = ""
    office_id: str | None = Field(
        default=None, validation_alias=AliasChoices("office_id", "practice_key"),
    )
    secret_key: str | None = Field(
        default=None, validation_alias=AliasChoices("secret_key", "spu_installation_key"),
    )
    request_key: str | None = None
    refresh_key: str | None = None
    token_expiry: datetime | None = None

    @field_validator("token_expiry")
    @classmethod
    def expiry_as_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class CredentialState(BaseModel):
    """Persisted token record for one PMS integration."""

    integration_id: str
    account_id: str | None = None
    office_id: str | None = None
    secret_key: str | None = None
    request_key: str | None = None
    refresh_key: str | None = None
    token_expiry: datetime | None = None
    status: ConnectionStatus = ConnectionStatus.SETUP_REQUIRED
    last_error: str | None = None
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("token_expiry")
    @classmethod
    def expiry_as_utc(cls, value: datetime | None) -> datetime | None:
        return _as_utc(value)


class WritebackStatus(BaseModel):
    """One item of the ``/writebacks`` status endpoint."""

    id: str
    result: WritebackResult
    error_message: str | None = None
    completed_time: datetime | None = None
    duration_in_seconds: str | None = None


class WritebackRecord(BaseModel):
    """Local tracking row for a submitted writeback."""

    id: str
    integration_id: str
    operation: str
    result: WritebackResult = WritebackResult.PENDING
    error_message: str | None = None
    submitted_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    last_checked_at: datetime | None = None
    check_count: int = 0


class PmsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    default_appointment_duration: int = 30
    timezone: str | None = None
    allow_online_booking: bool | None = None
    booking_advance_notice_days: int | None = None
    max_future_booking_days: int | None = None
    auto_confirm_appointments: bool | None = None
    send_sms_reminders: bool | None = None
    send_email_reminders: bool | None = None


class PmsFeatures(BaseModel):
    appointments: bool = False
    patients: bool = False
    insurance: bool = False
    payments: bool = False
    notes: bool = False
    providers: bool = False


# ── Appointments ─────────────────────────────────────────────────────


class Appointment(BaseModel):
    id: str | None = None
    patient_id: str | None = None
    patient_name: str = ""
    provider_id: str | None = None
    provider_name: str | None = None
    appointment_type: str = "General"
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration: int = 30
    status: str = "Scheduled"
    notes: str | None = None
    confirmation_number: str | None = None
    reminder_sent: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class AppointmentCreateInput(BaseModel):
    patient_id: str
    provider_id: str | None = None
    appointment_type: str | None = None
    start_time: datetime
    duration: int | None = None
    notes: str | None = None
    send_confirmation: bool | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class AppointmentUpdateInput(BaseModel):
    start_time: datetime | None = None
    duration: int | None = None
    provider_id: str | None = None
    appointment_type: str | None = None
    notes: str | None = None
    status: str | None = None
    send_notification: bool | None = None


class AppointmentCancelInput(BaseModel):
    reason: str | None = None
    send_notification: bool | None = None


class AppointmentAvailabilityQuery(BaseModel):
    date: str = Field(..., description="Day to search, YYYY-MM-DD")
    provider_id: str | None = None
    appointment_type: str | None = None
    duration: int | None = None


class TimeSlot(BaseModel):
    start_time: datetime | None = None
    end_time: datetime | None = None
    provider_id: str | None = None
    provider_name: str | None = None
    available: bool = True
    reason: str | None = None


# ── Patients (PHI) ───────────────────────────────────────────────────


class PatientAddress(BaseModel):
    street: str | None = None
    street2: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    country: str | None = None


class EmergencyContact(BaseModel):
    name: str | None = None
    phone: str | None = None
    relationship: str | None = None
    email: str | None = None


class Patient(BaseModel):
    id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    date_of_birth: str | None = None
    phone: str | None = None
    email: str | None = None
    address: PatientAddress | None = None
    emergency_contact: EmergencyContact | None = None
    balance: float | None = None
    last_visit: datetime | None = None
    notes: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PatientCreateInput(BaseModel):
    first_name: str
    last_name: str
    date_of_birth: str | None = None
    phone: str | None = None
    email: str | None = None
    address: PatientAddress | None = None
    emergency_contact: EmergencyContact | None = None
    notes: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PatientUpdateInput(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    phone: str | None = None
    email: str | None = None
    address: PatientAddress | None = None
    emergency_contact: EmergencyContact | None = None
    notes: str | None = None


class PatientSearchQuery(BaseModel):
    query: str = Field(..., min_length=1, description="Name, phone or email")
    limit: int | None = None
    offset: int | None = None


# ── Notes ────────────────────────────────────────────────────────────


class PatientNote(BaseModel):
    id: str | None = None
    patient_id: str | None = None
    content: str | None = None
    category: str | None = None
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PatientNoteCreateInput(BaseModel):
    content: str
    category: str | None = None
    created_by: str | None = None


# ── Insurance (PHI) ──────────────────────────────────────────────────


class Insurance(BaseModel):
    id: str | None = None
    patient_id: str | None = None
    provider: str | None = None
    policy_number: str | None = None
    group_number: str | None = None
    subscriber_name: str | None = None
    subscriber_dob: str | None = None
    relationship: str | None = None
    is_primary: bool = True
    effective_date: datetime | None = None
    expiration_date: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class InsuranceCreateInput(BaseModel):
    provider: str
    policy_number: str
    group_number: str | None = None
    subscriber_name: str | None = None
    subscriber_dob: str | None = None
    relationship: str | None = None
    is_primary: bool = True
    effective_date: datetime | None = None
    expiration_date: datetime | None = None


# ── Billing ──────────────────────────────────────────────────────────


class LastPayment(BaseModel):
    amount: float | None = None
    date: datetime | None = None
    method: str | None = None


class PatientBalance(BaseModel):
    total: float = 0
    insurance: float = 0
    patient: float = 0
    last_payment: LastPayment | None = None


class PaymentMethod(str, Enum):
    CASH = "cash"
    CHECK = "check"
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    ACH = "ach"
    OTHER = "other"


class Payment(BaseModel):
    id: str | None = None
    patient_id: str | None = None
    amount: float | None = None
    method: str = PaymentMethod.CASH.value
    status: str = "completed"
    confirmation_number: str | None = None
    last4: str | None = None
    notes: str | None = None
    timestamp: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PaymentCreateInput(BaseModel):
    patient_id: str
    amount: float = Field(..., gt=0)
    method: PaymentMethod
    last4: str | None = Field(default=None, max_length=4)
    notes: str | None = None


# ── Providers ────────────────────────────────────────────────────────


class Provider(BaseModel):
    id: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    title: str | None = None
    specialty: str | None = None
    phone: str | None = None
    email: str | None = None
    is_active: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)


# ── Response envelope ────────────────────────────────────────────────


class PmsError(BaseModel):
    code: str
    message: str
    details: Any = None


class PmsApiResponse(BaseModel, Generic[T]):
    """Uniform result of every PMS operation; failures never raise."""

    success: bool
    data: T | None = None
    error: PmsError | None = None
    meta: dict[str, Any] = Field(default_factory=lambda: {"timestamp": utcnow()})


class PmsListResponse(PmsApiResponse[list[T]], Generic[T]):
    pass
