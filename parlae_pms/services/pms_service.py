"""Provider-agnostic PMS service contract.

Every practice-management backend implements ``PmsService``.  Operations
never raise for upstream failures: they return a ``PmsApiResponse`` whose
``error`` carries a stable code (``HTTP_404``, ``TIMEOUT``,
``WRITEBACK_FAILED``...) the voice-assistant layer can branch on.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime
from typing import Any

import httpx
from pydantic import BaseModel

from parlae_pms.models import (
    AppointmentAvailabilityQuery,
    AppointmentCancelInput,
    AppointmentCreateInput,
    AppointmentUpdateInput,
    InsuranceCreateInput,
    PatientCreateInput,
    PatientNoteCreateInput,
    PatientSearchQuery,
    PatientUpdateInput,
    PaymentCreateInput,
    PmsApiResponse,
    PmsConfig,
    PmsError,
    PmsListResponse,
    PmsProvider,
    utcnow,
)
from parlae_pms.services.errors import (
    SikkaAPIError,
    SikkaAuthError,
    SikkaError,
    WritebackTimeoutError,
)

logger = logging.getLogger(__name__)


class PmsService(ABC):
    """Base class for PMS integrations."""

    provider: PmsProvider

    def __init__(
        self,
        account_id: str,
        credentials: Any,
        config: PmsConfig | None = None,
    ):
        self.account_id = account_id
        self.credentials = credentials
        self.config = config or PmsConfig()

    # ── Connection & configuration ───────────────────────────────────

    @abstractmethod
    def test_connection(self) -> PmsApiResponse[dict[str, Any]]: ...

    @abstractmethod
    def get_features(self) -> PmsApiResponse: ...

    @abstractmethod
    def update_config(self, **changes: Any) -> PmsApiResponse[PmsConfig]: ...

    # ── Appointments ─────────────────────────────────────────────────

    @abstractmethod
    def get_appointments(
        self,
        *,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        patient_id: str | None = None,
        provider_id: str | None = None,
        status: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> PmsListResponse: ...

    @abstractmethod
    def get_appointment(self, appointment_id: str) -> PmsApiResponse: ...

    @abstractmethod
    def check_availability(self, query: AppointmentAvailabilityQuery) -> PmsApiResponse: ...

    @abstractmethod
    def book_appointment(self, data: AppointmentCreateInput) -> PmsApiResponse: ...

    @abstractmethod
    def reschedule_appointment(
        self, appointment_id: str, updates: AppointmentUpdateInput,
    ) -> PmsApiResponse: ...

    @abstractmethod
    def cancel_appointment(
        self, appointment_id: str, data: AppointmentCancelInput,
    ) -> PmsApiResponse[dict[str, Any]]: ...

    # ── Patients ─────────────────────────────────────────────────────

    @abstractmethod
    def search_patients(self, query: PatientSearchQuery) -> PmsListResponse: ...

    @abstractmethod
    def get_patient(self, patient_id: str) -> PmsApiResponse: ...

    @abstractmethod
    def create_patient(self, data: PatientCreateInput) -> PmsApiResponse: ...

    @abstractmethod
    def update_patient(self, patient_id: str, updates: PatientUpdateInput) -> PmsApiResponse: ...

    @abstractmethod
    def get_patient_notes(self, patient_id: str) -> PmsListResponse: ...

    @abstractmethod
    def add_patient_note(self, patient_id: str, note: PatientNoteCreateInput) -> PmsApiResponse: ...

    # ── Insurance ────────────────────────────────────────────────────

    @abstractmethod
    def get_patient_insurance(self, patient_id: str) -> PmsListResponse: ...

    @abstractmethod
    def add_patient_insurance(
        self, patient_id: str, insurance: InsuranceCreateInput,
    ) -> PmsApiResponse: ...

    @abstractmethod
    def update_patient_insurance(
        self, patient_id: str, insurance_id: str, updates: dict[str, Any],
    ) -> PmsApiResponse: ...

    # ── Billing ──────────────────────────────────────────────────────

    @abstractmethod
    def get_patient_balance(self, patient_id: str) -> PmsApiResponse: ...

    @abstractmethod
    def process_payment(self, payment: PaymentCreateInput) -> PmsApiResponse: ...

    @abstractmethod
    def get_payment_history(self, patient_id: str) -> PmsListResponse: ...

    # ── Providers ────────────────────────────────────────────────────

    @abstractmethod
    def get_providers(self) -> PmsListResponse: ...

    @abstractmethod
    def get_provider(self, provider_id: str) -> PmsApiResponse: ...

    # ── Response helpers ─────────────────────────────────────────────

    @staticmethod
    def _success(data: Any, **meta: Any) -> PmsApiResponse:
        return PmsApiResponse(success=True, data=data, meta={"timestamp": utcnow(), **meta})

    @staticmethod
    def _list(items: list[Any], **meta: Any) -> PmsListResponse:
        return PmsListResponse(success=True, data=items, meta={"timestamp": utcnow(), **meta})

    @staticmethod
    def _error(code: str, message: str, details: Any = None) -> PmsApiResponse:
        return PmsApiResponse(
            success=False,
            error=PmsError(code=code, message=message, details=details),
        )

    def _handle_error(self, exc: Exception, context: str) -> PmsApiResponse:
        """Map an integration failure onto a stable error code."""
        logger.error("PMS error in %s: %s", context, exc)

        if isinstance(exc, WritebackTimeoutError):
            return self._error(
                "WRITEBACK_TIMEOUT",
                "The practice system is taking longer than usual to confirm this change.",
                {"writeback_id": exc.writeback_id, "attempts": exc.attempts},
            )
        if isinstance(exc, SikkaAuthError):
            return self._error("AUTHENTICATION_FAILED", str(exc), exc.body)

        if isinstance(exc, SikkaAPIError) and exc.status_code is None:
            # Transport failure; classify by its cause
            cause = exc.__cause__
            if isinstance(cause, httpx.HTTPError):
                exc = cause

        if isinstance(exc, SikkaAPIError) and exc.status_code is not None:
            body = exc.body if isinstance(exc.body, dict) else {}
            return self._error(
                f"HTTP_{exc.status_code}",
                body.get("message") or str(exc),
                exc.body,
            )
        if isinstance(exc, httpx.ConnectError):
            return self._error(
                "CONNECTION_REFUSED",
                "Unable to connect to PMS. Please check your network connection.",
                {"code": type(exc).__name__},
            )
        if isinstance(exc, httpx.TimeoutException):
            return self._error(
                "TIMEOUT",
                "Request to PMS timed out. Please try again.",
                {"code": type(exc).__name__},
            )
        return self._error(
            "UNKNOWN_ERROR",
            str(exc) or "An unexpected error occurred",
            {"error": repr(exc)},
        )


# ── Factory ──────────────────────────────────────────────────────────

_NOT_IMPLEMENTED = {
    PmsProvider.KOLLA,
    PmsProvider.DENTRIX,
    PmsProvider.EAGLESOFT,
    PmsProvider.OPEN_DENTAL,
    PmsProvider.CUSTOM,
}


def _as_provider(provider: PmsProvider | str) -> PmsProvider:
    try:
        return PmsProvider(provider)
    except ValueError:
        raise ValueError(f"Unknown PMS provider: {provider}") from None


def _field(credentials: Any, name: str) -> Any:
    if isinstance(credentials, Mapping):
        return credentials.get(name)
    return getattr(credentials, name, None)


def create_pms_service(
    provider: PmsProvider | str,
    account_id: str,
    credentials: Any,
    config: PmsConfig | None = None,
    **kwargs: Any,
) -> PmsService:
    """Build the ``PmsService`` for *provider*.

    Extra keyword arguments (``store``, ``writeback_store``,
    ``integration_id``...) are passed through to the implementation.
    """
    kind = _as_provider(provider)
    if kind == PmsProvider.SIKKA:
        from parlae_pms.models import SikkaCredentials
        from parlae_pms.services.sikka_service import SikkaPmsService

        if not isinstance(credentials, SikkaCredentials):
            data = credentials.model_dump() if isinstance(credentials, BaseModel) else credentials
            credentials = SikkaCredentials.model_validate(data)
        return SikkaPmsService(account_id, credentials, config, **kwargs)
    if kind in _NOT_IMPLEMENTED:
        raise NotImplementedError(f"{kind.value} PMS integration not yet implemented")
    raise ValueError(f"Unknown PMS provider: {provider}")


def validate_pms_credentials(provider: PmsProvider | str, credentials: Any) -> bool:
    """Return ``True`` or raise ``ValueError`` naming the missing fields."""
    kind = _as_provider(provider)
    if kind == PmsProvider.SIKKA:
        if not _field(credentials, "app_id") or not _field(credentials, "app_key"):
            raise ValueError("Sikka credentials require app_id and app_key")
        return True
    if kind == PmsProvider.KOLLA:
        if not _field(credentials, "api_key"):
            raise ValueError("Kolla credentials require api_key")
        return True
    raise ValueError(f"No credential rules for {kind.value}: integration not yet implemented")
