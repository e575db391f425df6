"""Sikka implementation of ``PmsService``.

Reads are plain ``GET`` calls mapped through ``sikka_mappers``.  Writes
go through the writeback protocol (``WritebackPoller``): the call blocks
until the practice's on-site agent confirms or rejects the change, or the
poll budget runs out (``WRITEBACK_TIMEOUT``; the sweeper finishes the job
in the background).
"""

from __future__ import annotations

import logging
import threading
from datetime import date, datetime, timedelta
from typing import Any

import httpx
from pydantic import BaseModel

from parlae_pms.config import (
    DATABASE_URL,
    DEFAULT_APPOINTMENT_DURATION,
    PMS_ACCOUNT_ID,
    PMS_INTEGRATION_ID,
    SIKKA_APP_ID,
    SIKKA_APP_KEY,
    SIKKA_BASE_URL,
    SIKKA_OFFICE_ID,
    SIKKA_SECRET_KEY,
)
from parlae_pms.models import (
    Appointment,
    AppointmentAvailabilityQuery,
    AppointmentCancelInput,
    AppointmentCreateInput,
    AppointmentUpdateInput,
    InsuranceCreateInput,
    Patient,
    PatientCreateInput,
    PatientNote,
    PatientNoteCreateInput,
    PatientSearchQuery,
    PatientUpdateInput,
    Payment,
    PaymentCreateInput,
    PmsApiResponse,
    PmsConfig,
    PmsFeatures,
    PmsListResponse,
    PmsProvider,
    SikkaCredentials,
    WritebackResult,
    WritebackStatus,
    utcnow,
)
from parlae_pms.services import sikka_mappers as mappers
from parlae_pms.services.errors import SikkaError
from parlae_pms.services.pms_service import PmsService
from parlae_pms.services.sikka_auth import TokenManager
from parlae_pms.services.sikka_client import SikkaClient
from parlae_pms.services.store import CredentialStore, WritebackStore, build_stores
from parlae_pms.services.writebacks import WritebackPoller

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
DEFAULT_SEARCH_LIMIT = 10

# Errors an operation converts into an error response; anything else is a bug
_HANDLED = (SikkaError, httpx.HTTPError)


def _compact(payload: dict[str, Any]) -> dict[str, Any]:
    """Drop ``None`` values so Sikka does not overwrite fields with nulls."""
    return {key: value for key, value in payload.items() if value is not None}


def _day(value: date | datetime) -> str:
    return value.strftime("%Y-%m-%d")


def _items(data: dict[str, Any], *fallback_keys: str) -> list[dict[str, Any]]:
    for key in ("items", *fallback_keys):
        value = data.get(key)
        if value and isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
    return []


def _total(data: dict[str, Any], default: int) -> int:
    try:
        return int(data.get("total_count") or default)
    except (TypeError, ValueError):
        return default


def _has_more(data: dict[str, Any]) -> bool:
    pagination = data.get("pagination")
    return isinstance(pagination, dict) and bool(pagination.get("next"))


class SikkaPmsService(PmsService):
    """Sikka API v4 integration for one practice."""

    provider = PmsProvider.SIKKA

    def __init__(
        self,
        account_id: str,
        credentials: SikkaCredentials,
        config: PmsConfig | None = None,
        *,
        integration_id: str = "default",
        store: CredentialStore | None = None,
        writeback_store: WritebackStore | None = None,
        base_url: str | None = None,
        poll_interval: float | None = None,
        max_attempts: int | None = None,
    ):
        super().__init__(account_id, credentials, config)
        self.integration_id = integration_id
        self.credential_store = store
        self.writeback_store = writeback_store
        self.token_manager = TokenManager(
            credentials,
            integration_id=integration_id,
            account_id=account_id,
            store=store,
            base_url=base_url,
        )
        self.client = SikkaClient(self.token_manager, base_url=base_url)

        poller_options: dict[str, Any] = {}
        if poll_interval is not None:
            poller_options["poll_interval"] = poll_interval
        if max_attempts is not None:
            poller_options["max_attempts"] = max_attempts
        self.writebacks = WritebackPoller(
            self.client,
            integration_id=integration_id,
            store=writeback_store,
            **poller_options,
        )

    def close(self) -> None:
        self.client.close()

    @property
    def default_duration(self) -> int:
        return self.config.default_appointment_duration or DEFAULT_APPOINTMENT_DURATION

    def _writeback_failed(self, label: str, status: WritebackStatus) -> PmsApiResponse:
        logger.warning("Sikka: writeback %s failed: %s", status.id, status.error_message)
        return self._error(
            "WRITEBACK_FAILED",
            f"{label} failed: {status.error_message}",
            {"writeback_id": status.id, "error_message": status.error_message},
        )

    # ── Connection & configuration ───────────────────────────────────

    def test_connection(self) -> PmsApiResponse[dict[str, Any]]:
        try:
            self.client.get("/appointments", {"limit": 1})
        except _HANDLED as exc:
            logger.error("Sikka connection test failed: %s", exc)
            return self._error(
                "CONNECTION_FAILED",
                "Failed to connect to Sikka API. Please check your credentials.",
                {"error": str(exc)},
            )
        return self._success(
            {"connection_valid": True, "message": "Successfully connected to Sikka API"},
        )

    def get_features(self) -> PmsApiResponse[PmsFeatures]:
        return self._success(
            PmsFeatures(
                appointments=True,
                patients=True,
                insurance=True,
                payments=True,
                notes=True,
                providers=True,
            ),
        )

    def update_config(self, **changes: Any) -> PmsApiResponse[PmsConfig]:
        self.config = PmsConfig.model_validate({**self.config.model_dump(), **changes})
        return self._success(self.config)

    # ── Appointments ─────────────────────────────────────────────────

    def get_appointments(
        self,
        *,
        start_date: date | datetime | None = None,
        end_date: date | datetime | None = None,
        patient_id: str | None = None,
        provider_id: str | None = None,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> PmsListResponse[Appointment]:
        params = _compact(
            {
                "limit": limit or DEFAULT_PAGE_SIZE,
                "offset": offset or 0,
                "startDate": _day(start_date) if start_date else None,
                "endDate": _day(end_date) if end_date else None,
                "patientId": patient_id,
                "providerId": provider_id,
                "status": status,
            }
        )
        try:
            data = self.client.get("/appointments", params)
        except _HANDLED as exc:
            return self._handle_error(exc, "get_appointments")

        appointments = [mappers.map_appointment(item, self.default_duration) for item in _items(data)]
        return self._list(
            appointments,
            total=_total(data, 0),
            limit=params["limit"],
            offset=params["offset"],
            has_more=_has_more(data),
        )

    def get_appointment(self, appointment_id: str) -> PmsApiResponse[Appointment]:
        try:
            data = self.client.get(f"/appointments/{appointment_id}")
        except _HANDLED as exc:
            return self._handle_error(exc, "get_appointment")
        return self._success(mappers.map_appointment(data, self.default_duration))

    def check_availability(self, query: AppointmentAvailabilityQuery) -> PmsApiResponse:
        params = _compact(
            {
                "date": query.date,
                "duration": query.duration or self.default_duration,
                "providerId": query.provider_id,
                "appointmentType": query.appointment_type,
            }
        )
        try:
            data = self.client.get("/appointments_available_slots", params)
        except _HANDLED as exc:
            return self._handle_error(exc, "check_availability")
        return self._success([mappers.map_time_slot(item) for item in _items(data)])

    def book_appointment(self, data: AppointmentCreateInput) -> PmsApiResponse[Appointment]:
        duration = data.duration or self.default_duration
        payload = _compact(
            {
                "patient_id": data.patient_id,
                "provider_id": data.provider_id,
                "appointment_type": data.appointment_type,
                "start_time": data.start_time.isoformat(),
                "duration": duration,
                "notes": data.notes,
            }
        )
        try:
            status = self.writebacks.submit_and_wait(
                "POST", "/appointment", payload, "book_appointment",
            )
        except _HANDLED as exc:
            return self._handle_error(exc, "book_appointment")

        if status.result != WritebackResult.COMPLETED:
            return self._writeback_failed("Appointment booking", status)

        return self._success(
            Appointment(
                id=status.id,
                patient_id=data.patient_id,
                patient_name="",
                provider_id=data.provider_id or "",
                provider_name="",
                appointment_type=data.appointment_type or "General",
                start_time=data.start_time,
                end_time=data.start_time + timedelta(minutes=duration),
                duration=duration,
                status="Scheduled",
                notes=data.notes,
                metadata=data.metadata,
            ),
        )

    def reschedule_appointment(
        self, appointment_id: str, updates: AppointmentUpdateInput,
    ) -> PmsApiResponse[Appointment]:
        payload = _compact(
            {
                "start_time": updates.start_time.isoformat() if updates.start_time else None,
                "duration": updates.duration,
                "provider_id": updates.provider_id,
                "appointment_type": updates.appointment_type,
                "notes": updates.notes,
                "status": updates.status,
            }
        )
        try:
            status = self.writebacks.submit_and_wait(
                "PATCH", f"/appointments/{appointment_id}", payload, "reschedule_appointment",
            )
        except _HANDLED as exc:
            return self._handle_error(exc, "reschedule_appointment")

        if status.result != WritebackResult.COMPLETED:
            return self._writeback_failed("Appointment update", status)
        return self.get_appointment(appointment_id)

    def cancel_appointment(
        self, appointment_id: str, data: AppointmentCancelInput,
    ) -> PmsApiResponse[dict[str, Any]]:
        try:
            status = self.writebacks.submit_and_wait(
                "DELETE", f"/appointments/{appointment_id}", {"reason": data.reason},
                "cancel_appointment",
            )
        except _HANDLED as exc:
            return self._handle_error(exc, "cancel_appointment")

        if status.result != WritebackResult.COMPLETED:
            return self._writeback_failed("Appointment cancellation", status)
        return self._success({"cancelled": True, "message": "Appointment cancelled successfully"})

    # ── Patients ─────────────────────────────────────────────────────

    def search_patients(self, query: PatientSearchQuery) -> PmsListResponse[Patient]:
        params = {
            "query": query.query,
            "limit": query.limit or DEFAULT_SEARCH_LIMIT,
            "offset": query.offset or 0,
        }
        try:
            data = self.client.get("/patients/search", params)
        except _HANDLED as exc:
            return self._handle_error(exc, "search_patients")

        patients = [mappers.map_patient(item) for item in _items(data)]
        return self._list(
            patients,
            total=_total(data, 0),
            limit=params["limit"],
            offset=params["offset"],
            has_more=_has_more(data),
        )

    def get_patient(self, patient_id: str) -> PmsApiResponse[Patient]:
        try:
            data = self.client.get(f"/patients/{patient_id}")
        except _HANDLED as exc:
            return self._handle_error(exc, "get_patient")
        return self._success(mappers.map_patient(data))

    def create_patient(self, data: PatientCreateInput) -> PmsApiResponse[Patient]:
        payload = _compact(
            {
                "first_name": data.first_name,
                "last_name": data.last_name,
                "date_of_birth": data.date_of_birth,
                "phone": data.phone,
                "mobile_phone": data.phone,
                "email": data.email,
                "address": data.address.model_dump(exclude_none=True) if data.address else None,
                "emergency_contact": (
                    data.emergency_contact.model_dump(exclude_none=True)
                    if data.emergency_contact else None
                ),
                "notes": data.notes,
            }
        )
        try:
            status = self.writebacks.submit_and_wait("POST", "/patient", payload, "create_patient")
        except _HANDLED as exc:
            return self._handle_error(exc, "create_patient")

        if status.result != WritebackResult.COMPLETED:
            return self._writeback_failed("Patient creation", status)

        # Sikka only reports the writeback id; the PMS patient id arrives on the next sync
        return self._success(
            Patient(
                id=status.id,
                first_name=data.first_name,
                last_name=data.last_name,
                date_of_birth=data.date_of_birth,
                phone=data.phone,
                email=data.email,
                address=data.address,
                emergency_contact=data.emergency_contact,
                notes=data.notes,
                metadata=data.metadata,
            ),
        )

    def update_patient(self, patient_id: str, updates: PatientUpdateInput) -> PmsApiResponse[Patient]:
        payload = updates.model_dump(mode="json", exclude_none=True)
        try:
            status = self.writebacks.submit_and_wait(
                "PATCH", f"/patient/{patient_id}", payload, "update_patient",
            )
        except _HANDLED as exc:
            return self._handle_error(exc, "update_patient")

        if status.result != WritebackResult.COMPLETED:
            return self._writeback_failed("Patient update", status)
        return self.get_patient(patient_id)

    # ── Notes ────────────────────────────────────────────────────────

    def get_patient_notes(self, patient_id: str) -> PmsListResponse[PatientNote]:
        try:
            data = self.client.get(f"/patients/{patient_id}/notes")
        except _HANDLED as exc:
            return self._handle_error(exc, "get_patient_notes")

        notes = [mappers.map_note(item) for item in _items(data, "notes")]
        return self._list(notes, total=_total(data, len(notes)))

    def add_patient_note(
        self, patient_id: str, note: PatientNoteCreateInput,
    ) -> PmsApiResponse[PatientNote]:
        payload = {"patient_id": patient_id, **note.model_dump(exclude_none=True)}
        try:
            status = self.writebacks.submit_and_wait(
                "POST", "/medical_notes", payload, "add_patient_note",
            )
        except _HANDLED as exc:
            return self._handle_error(exc, "add_patient_note")

        if status.result != WritebackResult.COMPLETED:
            return self._writeback_failed("Note creation", status)
        return self._success(
            PatientNote(
                id=status.id,
                patient_id=patient_id,
                content=note.content,
                category=note.category,
                created_by=note.created_by,
                created_at=utcnow(),
            ),
        )

    # ── Insurance ────────────────────────────────────────────────────

    def get_patient_insurance(self, patient_id: str) -> PmsListResponse:
        try:
            data = self.client.get(f"/patients/{patient_id}/insurance")
        except _HANDLED as exc:
            return self._handle_error(exc, "get_patient_insurance")

        policies = [mappers.map_insurance(item) for item in _items(data, "insurance")]
        return self._list(policies, total=_total(data, len(policies)))

    def add_patient_insurance(
        self, patient_id: str, insurance: InsuranceCreateInput,
    ) -> PmsApiResponse:
        try:
            data = self.client.request(
                "POST",
                f"/patients/{patient_id}/insurance",
                json_body=insurance.model_dump(mode="json", exclude_none=True),
            )
        except _HANDLED as exc:
            return self._handle_error(exc, "add_patient_insurance")
        return self._success(mappers.map_insurance(data))

    def update_patient_insurance(
        self,
        patient_id: str,
        insurance_id: str,
        updates: dict[str, Any] | BaseModel,
    ) -> PmsApiResponse:
        if isinstance(updates, BaseModel):
            updates = updates.model_dump(mode="json", exclude_unset=True)
        try:
            data = self.client.request(
                "PATCH",
                f"/patients/{patient_id}/insurance/{insurance_id}",
                json_body=_compact(updates),
            )
        except _HANDLED as exc:
            return self._handle_error(exc, "update_patient_insurance")
        return self._success(mappers.map_insurance(data))

    # ── Billing ──────────────────────────────────────────────────────

    def get_patient_balance(self, patient_id: str) -> PmsApiResponse:
        try:
            data = self.client.get("/patient_balance", {"patient_id": patient_id})
        except _HANDLED as exc:
            return self._handle_error(exc, "get_patient_balance")
        return self._success(mappers.map_balance(data))

    def process_payment(self, payment: PaymentCreateInput) -> PmsApiResponse[Payment]:
        payload = _compact(
            {
                "patient_id": payment.patient_id,
                "amount": payment.amount,
                "method": payment.method.value,
                "last4": payment.last4,
                "notes": payment.notes,
            }
        )
        try:
            status = self.writebacks.submit_and_wait("POST", "/transaction", payload, "process_payment")
        except _HANDLED as exc:
            return self._handle_error(exc, "process_payment")

        if status.result != WritebackResult.COMPLETED:
            return self._writeback_failed("Payment", status)
        return self._success(
            Payment(
                id=status.id,
                patient_id=payment.patient_id,
                amount=payment.amount,
                method=payment.method.value,
                status="completed",
                last4=payment.last4,
                notes=payment.notes,
                timestamp=utcnow(),
            ),
        )

    def get_payment_history(self, patient_id: str) -> PmsListResponse[Payment]:
        try:
            data = self.client.get("/transactions", {"patient_id": patient_id})
        except _HANDLED as exc:
            return self._handle_error(exc, "get_payment_history")

        payments = [mappers.map_payment(item) for item in _items(data, "payments")]
        return self._list(payments, total=_total(data, len(payments)))

    # ── Providers ────────────────────────────────────────────────────

    def get_providers(self) -> PmsListResponse:
        try:
            data = self.client.get("/providers")
        except _HANDLED as exc:
            return self._handle_error(exc, "get_providers")

        providers = [mappers.map_provider(item) for item in _items(data, "providers")]
        return self._list(providers, total=_total(data, len(providers)))

    def get_provider(self, provider_id: str) -> PmsApiResponse:
        try:
            data = self.client.get(f"/providers/{provider_id}")
        except _HANDLED as exc:
            return self._handle_error(exc, "get_provider")
        return self._success(mappers.map_provider(data))


# ── Module-level singleton (thread-safe) ────────────────────────────
_service: SikkaPmsService | None = None
_service_lock = threading.Lock()


def get_pms_service() -> SikkaPmsService:
    """Return the process-wide service for the configured practice.

    Uses double-checked locking so that the lock is only acquired during
    the first initialisation, not on every subsequent call.
    """
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                credential_store, writeback_store = build_stores(DATABASE_URL)
                _service = SikkaPmsService(
                    PMS_ACCOUNT_ID,
                    SikkaCredentials(
                        app_id=SIKKA_APP_ID,
                        app_key=SIKKA_APP_KEY,
                        office_id=SIKKA_OFFICE_ID,
                        secret_key=SIKKA_SECRET_KEY,
                    ),
                    PmsConfig(default_appointment_duration=DEFAULT_APPOINTMENT_DURATION),
                    integration_id=PMS_INTEGRATION_ID,
                    store=credential_store,
                    writeback_store=writeback_store,
                    base_url=SIKKA_BASE_URL,
                )
    return _service
