"""
Typed client for the external appointment REST API.

Chain of Thought:
- Attach the bearer token read from the credential store to every request
- Turn non-2xx responses into GatewayError (401 into AuthRequired)
- Normalise the several availability shapes the remote system returns into Slots,
  splitting long start/end bounds into fixed-width sub-intervals
- Tag foreign-origin identifiers so the remote system can tell them apart from
  its own 24-hex primary keys
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Any, List, Optional, Union

import httpx

from mediai.config import (
    APPOINTMENT_API_BASE_URL, APPOINTMENT_API_TIMEOUT, ID_PROVENANCE_PREFIX, SLOT_WIDTH_HOURS
)
from mediai.credentials import CredentialStore
from mediai.errors import AuthRequired, GatewayError, InvalidArgument
from mediai.models import (
    AppointmentConfirmation, AppointmentRequest, AppointmentStatusResult, Doctor, Slot
)

logger = logging.getLogger(__name__)

OBJECT_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{24}$")

SLOT_WIDTH = timedelta(hours=SLOT_WIDTH_HOURS)


def normalize_id(value: str, prefix: str = ID_PROVENANCE_PREFIX) -> str:
    """Pass 24-hex ids through unchanged; tag everything else with `prefix`."""
    if OBJECT_ID_PATTERN.match(value) or value.startswith(prefix):
        return value
    return f"{prefix}{value}"


def synthesize_slots(date: str, start: datetime, end: datetime, width: timedelta = SLOT_WIDTH) -> List[Slot]:
    """
    Cover [start, end) with `width`-long slots; the last one is clipped to `end`.

    09:00-15:00 gives 09-11, 11-13, 13-15 and 09:00-14:00 gives 09-11, 11-13, 13-14.
    """
    slots = []
    current = start
    while current < end:
        slot_end = min(current + width, end)
        slots.append(Slot(
            date=date,
            start_time=current.strftime("%H:%M"),
            end_time=slot_end.strftime("%H:%M"),
        ))
        current = slot_end
    return slots


def _parse_bound(value: Any, date: Optional[str]) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()

    if "T" in raw:
        # Full ISO datetime; allow a trailing Z for UTC
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    if not date:
        return None
    for fmt in ("%Y-%m-%d %H:%M", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(f"{date} {raw}", fmt)
        except ValueError:
            continue
    return None


def slots_from_entry(entry: dict, width: timedelta = SLOT_WIDTH) -> List[Slot]:
    """Normalise one availability entry (discrete slot or start/end bounds)."""
    date = entry.get("date")
    date = date[:10] if isinstance(date, str) and date else None

    start = _parse_bound(entry.get("startTime") or entry.get("start"), date)
    end = _parse_bound(entry.get("endTime") or entry.get("end"), date)
    if start is None or end is None or end <= start:
        logger.warning(f"Skipping availability entry without usable bounds: {entry}")
        return []

    if date is None:
        date = start.strftime("%Y-%m-%d")

    if end - start <= width:
        return [Slot(
            date=date,
            start_time=start.strftime("%H:%M"),
            end_time=end.strftime("%H:%M"),
            display_text=entry.get("displayText"),
            id=entry.get("id") or entry.get("_id") or entry.get("slotId"),
        )]
    return synthesize_slots(date, start, end, width)


def _unwrap_list(data: Any, *keys: str) -> List[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in keys:
            value = data.get(key)
            if isinstance(value, list):
                return value
    return []


def _error_message(response: httpx.Response, action: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("message", "error"):
            msg = payload.get(key)
            if isinstance(msg, str) and msg.strip():
                return f"API Error: {msg.strip()}"
    return f"Failed to {action}. Status: {response.status_code}"


class AppointmentGateway:
    """
    Boundary to the appointment REST API.

    No local state is cached here; the only thing read from outside is the
    bearer token.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        base_url: str = APPOINTMENT_API_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = APPOINTMENT_API_TIMEOUT,
    ):
        self.credentials = credentials
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def aclose(self):
        await self._client.aclose()

    def is_authenticated(self) -> bool:
        return bool(self.credentials.get_token())

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        token = self.credentials.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(self, method: str, path: str, action: str, **kwargs) -> Any:
        logger.info(f"Calling appointment API: {method} {path}")
        try:
            response = await self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Appointment API unreachable while trying to {action}: {e}")
            raise GatewayError(f"Failed to {action}: {e}") from e

        if response.status_code == 401:
            raise AuthRequired("Please log in to the appointment system")

        if not response.is_success:
            message = _error_message(response, action)
            logger.error(f"API Error {response.status_code}: {response.text}")
            raise GatewayError(message, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise GatewayError(f"Failed to {action}: invalid JSON response", response.status_code) from e

    async def fetch_doctors(self, specialty: Optional[str] = None) -> List[Doctor]:
        params = {"specialty": specialty} if specialty else None
        data = await self._request("GET", "/doctors", "fetch doctors", params=params)
        doctors = []
        for entry in _unwrap_list(data, "data", "doctors"):
            try:
                doctors.append(Doctor.model_validate(entry))
            except ValueError as e:
                logger.warning(f"Skipping malformed doctor entry {entry}: {e}")
        return doctors

    async def fetch_availability(self, doctor_id: str) -> List[Slot]:
        if not doctor_id:
            raise InvalidArgument("Doctor ID is required")

        data = await self._request("GET", f"/doctors/{doctor_id}/availability", "fetch availability")
        slots = []
        for entry in _unwrap_list(data, "data", "slots", "availability"):
            if isinstance(entry, dict):
                slots.extend(slots_from_entry(entry))

        if not slots:
            logger.info(f"No availability slots returned for doctor {doctor_id}")
        return slots

    async def request_appointment(self, details: Union[AppointmentRequest, dict]) -> AppointmentConfirmation:
        """
        Submit a booking request.

        The caller's external patient id is forwarded so the remote system can
        resolve or create the patient record itself.
        """
        if isinstance(details, dict):
            details = AppointmentRequest.model_validate(details)

        if not details.doctor_id:
            raise InvalidArgument("doctorId is required for appointment booking")
        if not details.date and not details.date_time:
            raise InvalidArgument("Date information is required for appointment booking")

        payload = details.model_dump(by_alias=True, exclude_none=True)
        payload["doctorId"] = normalize_id(details.doctor_id)
        if details.slot_id:
            payload["slotId"] = normalize_id(details.slot_id)
        if details.patient_external_id:
            payload["patientExternalId"] = normalize_id(details.patient_external_id)

        data = await self._request("POST", "/appointments", "request appointment", json=payload)

        body = data if isinstance(data, dict) else {}
        for candidate in (body, body.get("appointment"), body.get("data")):
            if not isinstance(candidate, dict):
                continue
            appointment_id = candidate.get("appointmentId") or candidate.get("_id") or candidate.get("id")
            if appointment_id:
                return AppointmentConfirmation(
                    appointment_id=str(appointment_id),
                    status=candidate.get("status") or "pending",
                    raw=body,
                )
        raise GatewayError("Appointment API response did not include an appointment id")

    async def check_appointment_status(self, appointment_id: str) -> AppointmentStatusResult:
        if not appointment_id:
            raise InvalidArgument("Appointment ID is required")

        data = await self._request("GET", f"/appointments/{appointment_id}/status", "check appointment status")
        body = data if isinstance(data, dict) else {}
        if "status" not in body and isinstance(body.get("data"), dict):
            body = body["data"]
        if not body.get("status"):
            raise GatewayError("Appointment status response did not include a status")
        return AppointmentStatusResult(
            status=str(body["status"]).lower(),
            doctor_name=body.get("doctorName"),
            date=body.get("date"),
            time=body.get("time"),
        )
