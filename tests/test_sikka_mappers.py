"""Tests for the Sikka → domain mappers."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from parlae_pms.services.sikka_mappers import (
    map_appointment,
    map_balance,
    map_insurance,
    map_note,
    map_patient,
    map_payment,
    map_provider,
    map_time_slot,
    parse_datetime,
)


class TestParseDatetime:
    def test_zulu_suffix(self):
        assert parse_datetime("2024-01-01T10:00:00Z") == datetime(2024, 1, 1, 10, 0, tzinfo=UTC)

    def test_date_only(self):
        assert parse_datetime("2024-01-01") == datetime(2024, 1, 1, tzinfo=UTC)

    def test_naive_values_are_utc(self):
        assert parse_datetime("2024-01-01T10:00:00").tzinfo == UTC

    @pytest.mark.parametrize("value", [None, "", "not a date", "13/45/2024"])
    def test_unparseable_is_none(self, value):
        assert parse_datetime(value) is None


class TestCaseInsensitivity:
    """snake_case-only and camelCase-only payloads must map identically."""

    def test_appointment(self):
        snake = {
            "appointment_id": 1001,
            "patient_id": "P1",
            "patient_name": "Jane Doe",
            "provider_id": "D1",
            "provider_name": "Dr. Smith",
            "appointment_type": "Cleaning",
            "start_time": "2024-01-01T10:00:00Z",
            "end_time": "2024-01-01T10:45:00Z",
            "duration": 45,
            "appointment_status": "Confirmed",
            "appointment_notes": "Sensitive teeth",
            "confirmation_number": "C-9",
            "reminder_sent": True,
        }
        camel = {
            "appointmentId": 1001,
            "patientId": "P1",
            "patientName": "Jane Doe",
            "providerId": "D1",
            "providerName": "Dr. Smith",
            "appointmentType": "Cleaning",
            "startTime": "2024-01-01T10:00:00Z",
            "endTime": "2024-01-01T10:45:00Z",
            "duration": 45,
            "appointmentStatus": "Confirmed",
            "appointmentNotes": "Sensitive teeth",
            "confirmationNumber": "C-9",
            "reminderSent": True,
        }
        assert map_appointment(snake) == map_appointment(camel)
        assert map_appointment(snake).id == "1001"

    def test_patient(self):
        snake = {
            "patient_id": 42,
            "first_name": "Jane",
            "last_name": "Doe",
            "date_of_birth": "1990-05-01",
            "mobile_phone": "555-0100",
            "email": "jane@example.com",
            "account_balance": "12.50",
            "last_visit": "2023-11-02",
            "emergency_contact": {"name": "John", "phone": 5550101},
        }
        camel = {
            "patientId": 42,
            "firstName": "Jane",
            "lastName": "Doe",
            "dateOfBirth": "1990-05-01",
            "mobilePhone": "555-0100",
            "email": "jane@example.com",
            "accountBalance": "12.50",
            "lastVisit": "2023-11-02",
            "emergencyContact": {"name": "John", "phone": 5550101},
        }
        assert map_patient(snake) == map_patient(camel)

    def test_provider(self):
        snake = {"provider_id": "D1", "first_name": "Ann", "last_name": "Lee", "phone_number": "1", "is_active": False}
        camel = {"providerId": "D1", "firstName": "Ann", "lastName": "Lee", "phoneNumber": "1", "isActive": False}
        assert map_provider(snake) == map_provider(camel)

    def test_payment(self):
        snake = {"payment_id": "T1", "patient_id": "P1", "amount": "20", "payment_method": "check", "payment_date": "2024-02-01"}
        camel = {"paymentId": "T1", "patientId": "P1", "amount": "20", "paymentMethod": "check", "paymentDate": "2024-02-01"}
        assert map_payment(snake) == map_payment(camel)

    def test_insurance(self):
        snake = {"insurance_id": "I1", "patient_id": "P1", "insurance_provider": "Delta", "policy_number": "X1", "is_primary": False}
        camel = {"insuranceId": "I1", "patientId": "P1", "insuranceProvider": "Delta", "policyNumber": "X1", "isPrimary": False}
        assert map_insurance(snake) == map_insurance(camel)


class TestAppointmentDefaults:
    def test_missing_fields_use_defaults(self):
        appt = map_appointment({"appointment_sr_no": "77"})
        assert appt.id == "77"
        assert appt.appointment_type == "General"
        assert appt.status == "Scheduled"
        assert appt.duration == 30
        assert appt.start_time is None
        assert appt.reminder_sent is False

    def test_configured_default_duration(self):
        assert map_appointment({}, default_duration=60).duration == 60

    def test_legacy_appointment_date(self):
        appt = map_appointment({"appointment_date": "2024-01-01T09:30:00Z"})
        assert appt.start_time == datetime(2024, 1, 1, 9, 30, tzinfo=UTC)

    def test_patient_name_from_parts(self):
        appt = map_appointment({"patient_first_name": "Jane", "patient_last_name": "Doe"})
        assert appt.patient_name == "Jane Doe"

    def test_provider_name_falls_back_to_id(self):
        assert map_appointment({"provider_id": 9}).provider_name == "9"


class TestPatientMapping:
    def test_flat_address_fields(self):
        patient = map_patient({"patient_id": "1", "street": "1 Main St", "city": "Austin", "state": "TX", "zipcode": 78701})
        assert patient.address.street == "1 Main St"
        assert patient.address.zip == "78701"
        assert patient.address.country == "USA"

    def test_nested_address(self):
        patient = map_patient({"address": {"street": "2 Oak", "city": "Reno", "zip": "89501", "country": "US"}})
        assert patient.address.street == "2 Oak"
        assert patient.address.country == "US"

    def test_no_address(self):
        assert map_patient({"patient_id": "1"}).address is None

    def test_dob_alias(self):
        assert map_patient({"dob": "1980-01-01"}).date_of_birth == "1980-01-01"

    def test_phone_prefers_mobile(self):
        assert map_patient({"mobile_phone": "111", "phone": "222"}).phone == "111"


class TestOtherMappers:
    def test_time_slot_available_unless_false(self):
        assert map_time_slot({"start_time": "2024-01-01T10:00:00Z"}).available is True
        assert map_time_slot({"available": False}).available is False

    def test_note_text_aliases(self):
        note = map_note({"note_id": 5, "patientId": "P1", "note": "Allergic to latex", "createdDate": "2024-01-01"})
        assert note.id == "5"
        assert note.content == "Allergic to latex"
        assert note.created_at == datetime(2024, 1, 1, tzinfo=UTC)

    def test_insurance_is_primary_by_default(self):
        assert map_insurance({"insurance_id": "I1"}).is_primary is True

    def test_balance_with_last_payment(self):
        balance = map_balance(
            {
                "total_balance": "150.00",
                "insurance_balance": 100,
                "patient_balance": "50",
                "last_payment": {"amount": "25", "date": "2024-01-15", "method": "cash"},
            }
        )
        assert balance.total == 150.0
        assert balance.insurance == 100.0
        assert balance.patient == 50.0
        assert balance.last_payment.amount == 25.0
        assert balance.last_payment.date == datetime(2024, 1, 15, tzinfo=UTC)

    def test_empty_balance_is_zero(self):
        balance = map_balance({})
        assert (balance.total, balance.insurance, balance.patient) == (0, 0, 0)
        assert balance.last_payment is None

    def test_payment_defaults(self):
        payment = map_payment({"transaction_id": "T7", "amount": 10})
        assert payment.id == "T7"
        assert payment.confirmation_number == "T7"
        assert payment.method == "cash"
        assert payment.status == "completed"

    def test_provider_active_by_default(self):
        provider = map_provider({"id": 3, "credentials": "DDS"})
        assert provider.id == "3"
        assert provider.title == "DDS"
        assert provider.is_active is True


class TestLooseTypes:
    def test_numeric_text_fields_become_strings(self):
        appointment = map_appointment({"appointment_type": 5, "status": 2, "provider_name": 7})
        assert appointment.appointment_type == "5"
        assert appointment.status == "2"
        assert appointment.provider_name == "7"

    def test_numeric_patient_fields_become_strings(self):
        patient = map_patient({"first_name": 1, "last_name": 2, "city": 3, "state": 4})
        assert (patient.first_name, patient.last_name) == ("1", "2")
        assert patient.address.city == "3"

    def test_non_object_metadata_is_dropped(self):
        assert map_provider({"id": "D1", "metadata": ["x"]}).metadata == {}
