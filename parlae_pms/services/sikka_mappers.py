"""Sikka wire format → Parlae domain records.

The Sikka API mixes snake_case and camelCase (and a few legacy names such as
``appointment_date`` or ``dob``) and omits fields freely.  Each mapper reads
every known spelling of a field and returns one canonical record; missing
optionals become ``None``.  A snake_case-only payload and its camelCase
equivalent map to the same record.

All functions are pure: no I/O, no logging, no exceptions for bad input.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from typing import Any

from parlae_pms.models import (
    Appointment,
    EmergencyContact,
    Insurance,
    LastPayment,
    Patient,
    PatientAddress,
    PatientBalance,
    PatientNote,
    Payment,
    Provider,
    TimeSlot,
)

DEFAULT_APPOINTMENT_DURATION = 30
DEFAULT_COUNTRY = "USA"


# ── Coercion helpers ─────────────────────────────────────────────────


def _pick(data: dict[str, Any], *keys: str) -> Any:
    """Return the first value under *keys* that is neither ``None`` nor ``""``."""
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _str(value: Any) -> str | None:
    return None if value is None else str(value)


def _dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any) -> int | None:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _not_false(data: dict[str, Any], *keys: str) -> bool:
    """Flags default to true; only an explicit ``False`` on any spelling turns them off."""
    return all(data.get(key) is not False for key in keys)


def parse_datetime(value: Any) -> datetime | None:
    """Parse ISO 8601 (``Z`` suffix allowed) or ``YYYY-MM-DD``; naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


# ── Appointments ─────────────────────────────────────────────────────


def map_appointment(
    data: dict[str, Any],
    default_duration: int = DEFAULT_APPOINTMENT_DURATION,
) -> Appointment:
    provider_id = _str(_pick(data, "provider_id", "providerId"))
    first = _pick(data, "patient_first_name", "patientFirstName") or ""
    last = _pick(data, "patient_last_name", "patientLastName") or ""
    patient_name = _str(_pick(data, "patient_name", "patientName")) or f"{first} {last}".strip()

    return Appointment(
        id=_str(_pick(data, "appointment_id", "appointmentId", "appointment_sr_no", "appointmentSrNo", "id")),
        patient_id=_str(_pick(data, "patient_id", "patientId")),
        patient_name=patient_name,
        provider_id=provider_id,
        provider_name=_str(_pick(data, "provider_name", "providerName") or provider_id),
        appointment_type=_str(_pick(data, "appointment_type", "appointmentType", "type") or "General"),
        start_time=parse_datetime(
            _pick(data, "appointment_date", "appointmentDate", "start_time", "startTime"),
        ),
        end_time=parse_datetime(_pick(data, "end_time", "endTime")),
        duration=_int(_pick(data, "duration", "length")) or default_duration,
        status=_str(_pick(data, "status", "appointment_status", "appointmentStatus") or "Scheduled"),
        notes=_str(_pick(data, "notes", "appointment_notes", "appointmentNotes")),
        confirmation_number=_str(
            _pick(data, "confirmation_number", "confirmationNumber", "confirmationCode"),
        ),
        reminder_sent=bool(_pick(data, "reminder_sent", "reminderSent")),
        metadata=_dict(data.get("metadata")),
    )


def map_time_slot(data: dict[str, Any]) -> TimeSlot:
    return TimeSlot(
        start_time=parse_datetime(_pick(data, "start_time", "startTime")),
        end_time=parse_datetime(_pick(data, "end_time", "endTime")),
        provider_id=_str(_pick(data, "provider_id", "providerId")),
        provider_name=_str(_pick(data, "provider_name", "providerName")),
        available=_not_false(data, "available"),
        reason=_str(data.get("reason")),
    )


# ── Patients ─────────────────────────────────────────────────────────


def _map_address(data: dict[str, Any]) -> PatientAddress | None:
    raw = data.get("address")
    nested = raw if isinstance(raw, dict) else {}
    street = (
        _str(_pick(data, "street", "address_line1", "addressLine1"))
        or (raw if isinstance(raw, str) and raw else None)
        or _str(_pick(nested, "street", "line1"))
    )
    if not raw and not street:
        return None
    return PatientAddress(
        street=street,
        street2=_str(_pick(data, "address_line2", "addressLine2") or _pick(nested, "street2", "line2")),
        city=_str(_pick(data, "city") or _pick(nested, "city")),
        state=_str(_pick(data, "state") or _pick(nested, "state")),
        zip=_str(
            _pick(data, "zip", "zipcode", "zip_code", "zipCode")
            or _pick(nested, "zip", "zip_code", "zipCode"),
        ),
        country=_str(_pick(data, "country") or _pick(nested, "country") or DEFAULT_COUNTRY),
    )


def _map_emergency_contact(data: dict[str, Any]) -> EmergencyContact | None:
    raw = _pick(data, "emergency_contact", "emergencyContact")
    if not isinstance(raw, dict):
        return None
    return EmergencyContact(
        name=_str(raw.get("name")),
        phone=_str(raw.get("phone")),
        relationship=_str(raw.get("relationship")),
        email=_str(raw.get("email")),
    )


def map_patient(data: dict[str, Any]) -> Patient:
    return Patient(
        id=_str(_pick(data, "patient_id", "patientId", "id")),
        first_name=_str(_pick(data, "first_name", "firstName", "firstname")),
        last_name=_str(_pick(data, "last_name", "lastName", "lastname")),
        date_of_birth=_str(_pick(data, "date_of_birth", "dateOfBirth", "birthdate", "dob")),
        phone=_str(_pick(data, "mobile_phone", "mobilePhone", "phone", "phone_number", "phoneNumber")),
        email=_str(_pick(data, "email")),
        address=_map_address(data),
        emergency_contact=_map_emergency_contact(data),
        balance=_float(_pick(data, "balance", "account_balance", "accountBalance")),
        last_visit=parse_datetime(_pick(data, "last_visit", "lastVisit")),
        notes=_str(_pick(data, "notes")),
        metadata=_dict(data.get("metadata")),
    )


def map_note(data: dict[str, Any]) -> PatientNote:
    return PatientNote(
        id=_str(_pick(data, "id", "note_id", "noteId")),
        patient_id=_str(_pick(data, "patient_id", "patientId")),
        content=_str(_pick(data, "content", "note", "text")),
        category=_str(_pick(data, "category", "type")),
        created_by=_str(_pick(data, "created_by", "createdBy", "author")),
        created_at=parse_datetime(_pick(data, "created_at", "createdAt", "created_date", "createdDate")),
        updated_at=parse_datetime(_pick(data, "updated_at", "updatedAt")),
        metadata=_dict(data.get("metadata")),
    )


# ── Insurance & billing ──────────────────────────────────────────────


def map_insurance(data: dict[str, Any]) -> Insurance:
    return Insurance(
        id=_str(_pick(data, "id", "insurance_id", "insuranceId")),
        patient_id=_str(_pick(data, "patient_id", "patientId")),
        provider=_str(_pick(data, "provider", "insurance_provider", "insuranceProvider")),
        policy_number=_str(_pick(data, "policy_number", "policyNumber")),
        group_number=_str(_pick(data, "group_number", "groupNumber")),
        subscriber_name=_str(_pick(data, "subscriber_name", "subscriberName")),
        subscriber_dob=_str(
            _pick(data, "subscriber_dob", "subscriberDob", "subscriber_date_of_birth", "subscriberDateOfBirth"),
        ),
        relationship=_str(_pick(data, "relationship")),
        is_primary=_not_false(data, "is_primary", "isPrimary"),
        effective_date=parse_datetime(_pick(data, "effective_date", "effectiveDate")),
        expiration_date=parse_datetime(_pick(data, "expiration_date", "expirationDate")),
        metadata=_dict(data.get("metadata")),
    )


def map_balance(data: dict[str, Any]) -> PatientBalance:
    raw_last = _pick(data, "last_payment", "lastPayment")
    last_payment = None
    if isinstance(raw_last, dict):
        last_payment = LastPayment(
            amount=_float(raw_last.get("amount")),
            date=parse_datetime(raw_last.get("date")),
            method=_str(raw_last.get("method")),
        )
    return PatientBalance(
        total=_float(_pick(data, "total", "total_balance", "totalBalance")) or 0,
        insurance=_float(_pick(data, "insurance", "insurance_balance", "insuranceBalance")) or 0,
        patient=_float(_pick(data, "patient", "patient_balance", "patientBalance")) or 0,
        last_payment=last_payment,
    )


def map_payment(data: dict[str, Any]) -> Payment:
    return Payment(
        id=_str(_pick(data, "id", "payment_id", "paymentId", "transaction_id", "transactionId")),
        patient_id=_str(_pick(data, "patient_id", "patientId")),
        amount=_float(_pick(data, "amount")),
        method=_str(_pick(data, "method", "payment_method", "paymentMethod") or "cash"),
        status=_str(_pick(data, "status") or "completed"),
        confirmation_number=_str(
            _pick(data, "confirmation_number", "confirmationNumber", "transaction_id", "transactionId"),
        ),
        last4=_str(_pick(data, "last4", "card_last4", "cardLast4")),
        notes=_str(_pick(data, "notes")),
        timestamp=parse_datetime(
            _pick(data, "timestamp", "payment_date", "paymentDate", "created_at", "createdAt"),
        ),
        metadata=_dict(data.get("metadata")),
    )


# ── Providers ────────────────────────────────────────────────────────


def map_provider(data: dict[str, Any]) -> Provider:
    return Provider(
        id=_str(_pick(data, "id", "provider_id", "providerId")),
        first_name=_str(_pick(data, "first_name", "firstName")),
        last_name=_str(_pick(data, "last_name", "lastName")),
        title=_str(_pick(data, "title", "credentials")),
        specialty=_str(_pick(data, "specialty")),
        phone=_str(_pick(data, "phone", "phone_number", "phoneNumber")),
        email=_str(_pick(data, "email")),
        is_active=_not_false(data, "is_active", "isActive"),
        metadata=_dict(data.get("metadata")),
    )
