"""LangChain tools for the voice assistant's PMS actions.

Each tool wraps a ``SikkaPmsService`` operation and returns a short,
human-readable string the assistant can read back to the caller.
Failures come back as strings too; the tools never raise.
"""

from __future__ import annotations

import logging
from datetime import datetime

from langchain_core.tools import tool
from pydantic import ValidationError

from parlae_pms.models import (
    AppointmentAvailabilityQuery,
    AppointmentCancelInput,
    AppointmentCreateInput,
    AppointmentUpdateInput,
    PatientCreateInput,
    PatientSearchQuery,
    PmsApiResponse,
)
from parlae_pms.services.sikka_service import get_pms_service

logger = logging.getLogger(__name__)


def _format_dt(dt: datetime | None) -> str:
    """Render a datetime as 'Mon 17 Feb 2026 at 10:30'."""
    if dt is None:
        return "an unknown time"
    return dt.strftime("%a %d %b %Y at %H:%M")


def _parse_iso(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _failure(action: str, response: PmsApiResponse) -> str:
    error = response.error
    logger.error("PMS tool %s failed: %s", action, error.code if error else "unknown")
    if error and error.code == "WRITEBACK_TIMEOUT":
        return (
            f"The practice system has not confirmed the {action} yet. "
            "It is still being processed; please let the caller know the office will confirm shortly."
        )
    message = error.message if error else "unknown error"
    return f"Sorry, I couldn't complete the {action}. Error: {message}. Please try again."


# ── Scheduling ───────────────────────────────────────────────────────


@tool
def check_availability(date: str, provider_id: str = "", duration: int = 0) -> str:
    """List open appointment slots for a day.

    Args:
        date: Day to search in YYYY-MM-DD format (e.g. "2026-02-17").
        provider_id: Optional provider to restrict the search to.
        duration: Optional appointment length in minutes.
    """
    query = AppointmentAvailabilityQuery(
        date=date,
        provider_id=provider_id or None,
        duration=duration or None,
    )
    response = get_pms_service().check_availability(query)
    if not response.success:
        return _failure("availability check", response)

    slots = [slot for slot in response.data or [] if slot.available]
    if not slots:
        return f"No available slots on {date}. Please ask the caller for another day."

    lines = [f"Available slots on {date}:"]
    for slot in slots:
        provider = f" with {slot.provider_name}" if slot.provider_name else ""
        lines.append(f"  • {_format_dt(slot.start_time)}{provider}")
    return "\n".join(lines)


@tool
def book_appointment(
    patient_id: str,
    start_time: str,
    duration: int = 0,
    provider_id: str = "",
    appointment_type: str = "",
    notes: str = "",
) -> str:
    """Book an appointment for an existing patient.

    Args:
        patient_id: The patient's PMS id (from search_patients or create_patient).
        start_time: Appointment start in ISO 8601 format (e.g. "2026-02-17T10:30:00Z").
        duration: Length in minutes; the practice default is used when omitted.
        provider_id: Optional provider id.
        appointment_type: Optional type such as "Cleaning" or "Exam".
        notes: Optional notes for the front desk.
    """
    try:
        data = AppointmentCreateInput(
            patient_id=patient_id,
            start_time=_parse_iso(start_time),
            duration=duration or None,
            provider_id=provider_id or None,
            appointment_type=appointment_type or None,
            notes=notes or None,
        )
    except (ValueError, ValidationError):
        return f'"{start_time}" is not a valid appointment time. Please use ISO 8601, e.g. 2026-02-17T10:30:00Z.'

    response = get_pms_service().book_appointment(data)
    if not response.success:
        return _failure("booking", response)

    appointment = response.data
    return (
        f"Appointment booked successfully!\n"
        f"  Time: {_format_dt(appointment.start_time)}\n"
        f"  Duration: {appointment.duration} minutes\n"
        f"  Type: {appointment.appointment_type}\n"
        f"  Reference: {appointment.id}"
    )


@tool
def reschedule_appointment(appointment_id: str, new_start_time: str) -> str:
    """Move an existing appointment to a new time.

    Args:
        appointment_id: The appointment id to move.
        new_start_time: New start in ISO 8601 format (e.g. "2026-02-20T14:00:00Z").
    """
    try:
        updates = AppointmentUpdateInput(start_time=_parse_iso(new_start_time))
    except (ValueError, ValidationError):
        return f'"{new_start_time}" is not a valid appointment time. Please use ISO 8601.'

    response = get_pms_service().reschedule_appointment(appointment_id, updates)
    if not response.success:
        return _failure("reschedule", response)
    return (
        f"Appointment {appointment_id} has been moved to "
        f"{_format_dt(response.data.start_time or updates.start_time)}."
    )


@tool
def cancel_appointment(appointment_id: str, reason: str = "Cancelled by patient via phone") -> str:
    """Cancel an existing appointment.

    Args:
        appointment_id: The appointment id to cancel.
        reason: Why the appointment is being cancelled.
    """
    response = get_pms_service().cancel_appointment(
        appointment_id, AppointmentCancelInput(reason=reason),
    )
    if not response.success:
        return _failure("cancellation", response)
    return (
        f"Appointment {appointment_id} has been cancelled. "
        "Would the caller like to reschedule for another time?"
    )


# ── Patients ─────────────────────────────────────────────────────────


@tool
def search_patients(query: str) -> str:
    """Find patients by name, phone number or email.

    Args:
        query: Name, phone number or email to search for.
    """
    if not query.strip():
        return "Please ask the caller for their name or phone number."

    response = get_pms_service().search_patients(PatientSearchQuery(query=query.strip()))
    if not response.success:
        return _failure("patient search", response)

    patients = response.data or []
    if not patients:
        return "No matching patient found. Offer to create a new patient profile."

    lines = [f"Found {len(patients)} matching patient(s):"]
    for patient in patients:
        name = f"{patient.first_name or ''} {patient.last_name or ''}".strip() or "Unknown"
        dob = f", born {patient.date_of_birth}" if patient.date_of_birth else ""
        lines.append(f"  • {name} (ID: {patient.id}{dob})")
    return "\n".join(lines)


@tool
def create_patient(
    first_name: str,
    last_name: str,
    phone: str = "",
    email: str = "",
    date_of_birth: str = "",
) -> str:
    """Create a new patient profile.

    Args:
        first_name: Patient's first name.
        last_name: Patient's last name.
        phone: Optional phone number.
        email: Optional email address.
        date_of_birth: Optional date of birth in YYYY-MM-DD format.
    """
    try:
        data = PatientCreateInput(
            first_name=first_name,
            last_name=last_name,
            phone=phone or None,
            email=email or None,
            date_of_birth=date_of_birth or None,
        )
    except ValidationError:
        return "A first and last name are required to create a patient profile."

    response = get_pms_service().create_patient(data)
    if not response.success:
        return _failure("patient registration", response)
    return f"Created a patient profile for {first_name} {last_name} (ID: {response.data.id})."


# ── Billing & providers ──────────────────────────────────────────────


@tool
def get_patient_balance(patient_id: str) -> str:
    """Look up what a patient currently owes.

    Args:
        patient_id: The patient's PMS id.
    """
    response = get_pms_service().get_patient_balance(patient_id)
    if not response.success:
        return _failure("balance lookup", response)

    balance = response.data
    text = (
        f"Total balance: ${balance.total:.2f} "
        f"(patient portion ${balance.patient:.2f}, insurance portion ${balance.insurance:.2f})."
    )
    if balance.last_payment and balance.last_payment.amount is not None:
        text += f" Last payment: ${balance.last_payment.amount:.2f}"
        if balance.last_payment.date:
            text += f" on {balance.last_payment.date.strftime('%d %b %Y')}"
        text += "."
    return text


@tool
def list_providers() -> str:
    """List the practice's active providers (dentists and hygienists)."""
    response = get_pms_service().get_providers()
    if not response.success:
        return _failure("provider lookup", response)

    providers = [p for p in response.data or [] if p.is_active]
    if not providers:
        return "No active providers found."

    lines = ["Providers:"]
    for provider in providers:
        name = " ".join(filter(None, [provider.title, provider.first_name, provider.last_name]))
        specialty = f" ({provider.specialty})" if provider.specialty else ""
        lines.append(f"  • {name or provider.id}{specialty} (ID: {provider.id})")
    return "\n".join(lines)


PMS_TOOLS = [
    check_availability,
    book_appointment,
    reschedule_appointment,
    cancel_appointment,
    search_patients,
    create_patient,
    get_patient_balance,
    list_providers,
]

TOOLS_BY_NAME = {t.name: t for t in PMS_TOOLS}
