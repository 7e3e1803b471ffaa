"""
In-process fake of the appointment REST API, served through httpx.MockTransport.

Chain of Thought:
- We don't talk to the hosted appointment system in tests, so we serve realistic mock data
- Doctors are organized by specialty; some use 24-hex ids, some don't (to exercise id tagging)
- Availability comes back as start/end bounds, the shape the remote system uses most
- Failures and status sequences can be scripted per test
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

import httpx

BASE_URL = "https://appointments.test/api"
TOKEN = "test-token"
SLOT_DATE = "2025-03-10"

MOCK_DOCTORS = {
    "Cardiologist": [
        {"_id": "64b7f0c2a1b2c3d4e5f60718", "firstName": "Rajesh", "lastName": "Kumar", "specialization": "Cardiologist"},
        {"id": "doc_priya", "name": "Dr. Priya Sharma", "specialization": "Cardiologist"},
    ],
    "Dermatologist": [
        {"_id": "64b7f0c2a1b2c3d4e5f60719", "firstName": "Meera", "lastName": "Nair", "specialization": "Dermatologist"},
    ],
    "Neurologist": [
        {"_id": "64b7f0c2a1b2c3d4e5f6071a", "name": "Lakshmi Prasad", "specialization": "Neurologist"},
    ],
}


class FakeAppointmentAPI:
    """
    Records every request it receives.

    - availability: doctor id -> response body (defaults to one 09:00-15:00 window)
    - statuses: appointment id -> statuses returned in order; the last one repeats
    - failures: route name -> (status code, body) returned instead of the normal response
    - gate: when set, every request waits on it before answering
    """

    def __init__(self, token: str = TOKEN):
        self.token = token
        self.availability: Dict[str, Any] = {}
        self.statuses: Dict[str, List[str]] = {}
        self.failures: Dict[str, Tuple[int, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.bookings: List[dict] = []
        self.gate: Optional[asyncio.Event] = None

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=BASE_URL, transport=self.transport())

    @property
    def doctors(self) -> List[dict]:
        return [doctor for doctors in MOCK_DOCTORS.values() for doctor in doctors]

    def _route(self, method: str, parts: List[str]) -> Optional[str]:
        if method == "GET" and parts == ["doctors"]:
            return "doctors"
        if method == "GET" and len(parts) == 3 and parts[0] == "doctors" and parts[2] == "availability":
            return "availability"
        if method == "POST" and parts == ["appointments"]:
            return "appointments"
        if method == "GET" and len(parts) == 3 and parts[0] == "appointments" and parts[2] == "status":
            return "status"
        return None

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()

        if request.headers.get("Authorization") != f"Bearer {self.token}":
            return httpx.Response(401, json={"message": "Not authorized, token failed"})

        path = request.url.path[len("/api"):] if request.url.path.startswith("/api") else request.url.path
        parts = [p for p in path.split("/") if p]
        route = self._route(request.method, parts)
        if route is None:
            return httpx.Response(404, json={"message": "Route not found"})

        if route in self.failures:
            status_code, body = self.failures[route]
            if isinstance(body, (dict, list)):
                return httpx.Response(status_code, json=body)
            return httpx.Response(status_code, text=body or "")

        if route == "doctors":
            specialty = request.url.params.get("specialty")
            doctors = MOCK_DOCTORS.get(specialty, []) if specialty else self.doctors
            return httpx.Response(200, json={"success": True, "data": doctors})

        if route == "availability":
            default = {"data": [{"date": SLOT_DATE, "startTime": "09:00", "endTime": "15:00"}]}
            return httpx.Response(200, json=self.availability.get(parts[1], default))

        if route == "appointments":
            payload = json.loads(request.content)
            appointment_id = f"{len(self.bookings) + 1:024x}"
            self.bookings.append({"id": appointment_id, **payload})
            self.statuses.setdefault(appointment_id, ["pending"])
            return httpx.Response(
                201, json={"success": True, "appointment": {"_id": appointment_id, "status": "pending"}}
            )

        appointment_id = parts[1]
        queue = self.statuses.get(appointment_id)
        if not queue:
            return httpx.Response(404, json={"message": "Appointment not found"})
        status = queue.pop(0) if len(queue) > 1 else queue[0]
        return httpx.Response(200, json={"success": True, "data": {"status": status}})
