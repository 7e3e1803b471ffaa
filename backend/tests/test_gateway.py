from datetime import datetime

import httpx
import pytest

from fake_appointment_api import BASE_URL, SLOT_DATE
from mediai.errors import AuthRequired, GatewayError, InvalidArgument
from mediai.gateway import AppointmentGateway, normalize_id, slots_from_entry, synthesize_slots
from mediai.models import AppointmentRequest


def _times(slots):
    return [(s.start_time, s.end_time) for s in slots]


def _gateway(credentials, handler):
    return AppointmentGateway(
        credentials, client=httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    )


def test_synthesize_slots_splits_six_hours_into_three():
    slots = synthesize_slots(SLOT_DATE, datetime(2025, 3, 10, 9), datetime(2025, 3, 10, 15))
    assert _times(slots) == [("09:00", "11:00"), ("11:00", "13:00"), ("13:00", "15:00")]
    assert all(s.date == SLOT_DATE for s in slots)


def test_synthesize_slots_clips_last_slot_to_end():
    slots = synthesize_slots(SLOT_DATE, datetime(2025, 3, 10, 9), datetime(2025, 3, 10, 14))
    assert _times(slots) == [("09:00", "11:00"), ("11:00", "13:00"), ("13:00", "14:00")]


def test_short_entry_is_kept_as_single_slot():
    slots = slots_from_entry({
        "date": SLOT_DATE, "startTime": "10:00", "endTime": "10:30", "displayText": "Morning", "_id": "s1",
    })
    assert len(slots) == 1
    assert slots[0].display_text == "Morning"
    assert slots[0].id == "s1"


def test_iso_bounds_take_date_from_start():
    slots = slots_from_entry({"startTime": "2025-03-11T09:00:00Z", "endTime": "2025-03-11T13:00:00Z"})
    assert [s.date for s in slots] == ["2025-03-11", "2025-03-11"]
    assert _times(slots) == [("09:00", "11:00"), ("11:00", "13:00")]


def test_entry_without_bounds_is_skipped():
    assert slots_from_entry({"date": SLOT_DATE}) == []
    assert slots_from_entry({"date": SLOT_DATE, "startTime": "15:00", "endTime": "09:00"}) == []


def test_normalize_id():
    assert normalize_id("64b7f0c2a1b2c3d4e5f60718") == "64b7f0c2a1b2c3d4e5f60718"
    assert normalize_id("abc123") == "firebase_abc123"
    assert normalize_id("firebase_abc123") == "firebase_abc123"


async def test_fetch_doctors_sends_bearer_token(gateway, api):
    doctors = await gateway.fetch_doctors("Cardiologist")

    assert [d.display_name for d in doctors] == ["Rajesh Kumar", "Dr. Priya Sharma"]
    assert doctors[0].id == "64b7f0c2a1b2c3d4e5f60718"
    assert api.requests[0].headers["Authorization"] == "Bearer test-token"
    assert api.requests[0].url.params["specialty"] == "Cardiologist"


@pytest.mark.parametrize("body", [
    [{"date": SLOT_DATE, "startTime": "09:00", "endTime": "15:00"}],
    {"data": [{"date": SLOT_DATE, "startTime": "09:00", "endTime": "15:00"}]},
    {"slots": [{"date": SLOT_DATE, "startTime": "09:00", "endTime": "15:00"}]},
    {"availability": [{"startTime": f"{SLOT_DATE}T09:00:00Z", "endTime": f"{SLOT_DATE}T15:00:00Z"}]},
])
async def test_fetch_availability_accepts_every_response_shape(gateway, api, body):
    api.availability["d1"] = body

    slots = await gateway.fetch_availability("d1")

    assert _times(slots) == [("09:00", "11:00"), ("11:00", "13:00"), ("13:00", "15:00")]


async def test_fetch_availability_empty_is_valid(gateway, api):
    api.availability["d1"] = {"data": []}
    assert await gateway.fetch_availability("d1") == []


async def test_fetch_availability_requires_doctor_id(gateway, api):
    with pytest.raises(InvalidArgument):
        await gateway.fetch_availability("")
    assert api.requests == []


async def test_request_appointment_tags_foreign_ids(gateway, api):
    confirmation = await gateway.request_appointment(AppointmentRequest(
        doctor_id="doc_priya",
        patient_external_id="uid-42",
        date=SLOT_DATE,
        time="09:00",
        slot_id="64b7f0c2a1b2c3d4e5f607ff",
        reason="Checkup",
    ))

    booking = api.bookings[0]
    assert confirmation.appointment_id == booking["id"]
    assert confirmation.status == "pending"
    assert booking["doctorId"] == "firebase_doc_priya"
    assert booking["patientExternalId"] == "firebase_uid-42"
    assert booking["slotId"] == "64b7f0c2a1b2c3d4e5f607ff"
    assert booking["reason"] == "Checkup"


@pytest.mark.parametrize("details", [
    {"date": SLOT_DATE, "time": "09:00"},
    {"doctorId": "64b7f0c2a1b2c3d4e5f60718"},
])
async def test_request_appointment_validates_before_any_request(gateway, api, details):
    with pytest.raises(InvalidArgument):
        await gateway.request_appointment(details)
    assert api.requests == []


async def test_request_appointment_reads_id_from_data(credentials):
    def handler(request):
        return httpx.Response(200, json={"data": {"id": "a-9", "status": "pending"}})

    gateway = _gateway(credentials, handler)
    confirmation = await gateway.request_appointment({"doctorId": "d1", "dateTime": f"{SLOT_DATE}T09:00"})
    assert confirmation.appointment_id == "a-9"


async def test_error_message_comes_from_response_body(gateway, api):
    api.failures["doctors"] = (500, {"message": "Database unavailable"})

    with pytest.raises(GatewayError) as exc:
        await gateway.fetch_doctors()

    assert str(exc.value) == "API Error: Database unavailable"
    assert exc.value.status_code == 500


async def test_error_message_falls_back_to_status(gateway, api):
    api.failures["doctors"] = (502, "<html>Bad Gateway</html>")

    with pytest.raises(GatewayError) as exc:
        await gateway.fetch_doctors()

    assert str(exc.value) == "Failed to fetch doctors. Status: 502"


async def test_unauthorized_raises_auth_required(gateway, api):
    api.token = "someone-else"
    with pytest.raises(AuthRequired):
        await gateway.fetch_doctors()


async def test_transport_failure_becomes_gateway_error(credentials):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    gateway = _gateway(credentials, handler)
    with pytest.raises(GatewayError):
        await gateway.fetch_doctors()


async def test_check_status_is_lowercased(credentials):
    def handler(request):
        assert request.url.path == "/api/appointments/a-1/status"
        return httpx.Response(200, json={"data": {"status": "APPROVED", "doctorName": "Dr. Who"}})

    gateway = _gateway(credentials, handler)
    result = await gateway.check_appointment_status("a-1")
    assert result.status == "approved"
    assert result.doctor_name == "Dr. Who"


def test_is_authenticated(gateway, logged_out):
    assert gateway.is_authenticated()
    assert not AppointmentGateway(logged_out).is_authenticated()
