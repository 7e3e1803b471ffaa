"""Local cache of booked appointments, keyed by appointment id, for display outside the chat."""

import asyncio
import json
import logging
import os
from typing import Dict, List, Optional

from mediai.models import Appointment, AppointmentStatus, utcnow

logger = logging.getLogger(__name__)


class AppointmentCache:
    """
    JSON-file backed when `path` is given, memory-only otherwise.

    Reads go to memory. Every write rewrites the file from a worker thread;
    saves are serialised so the file always ends up with the latest snapshot.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._appointments: Dict[str, Appointment] = {}
        self._save_lock = asyncio.Lock()
        self._load()

    def _load(self):
        if not self.path or not os.path.exists(self.path):
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable appointment cache {self.path}: {e}")
            return
        for appointment_id, raw in data.items():
            try:
                self._appointments[appointment_id] = Appointment.model_validate(raw)
            except ValueError as e:
                logger.warning(f"Skipping cached appointment {appointment_id}: {e}")

    def _write(self, data: dict):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    async def _save(self):
        if not self.path:
            return
        async with self._save_lock:
            data = {
                appointment_id: appointment.model_dump(by_alias=True, mode="json")
                for appointment_id, appointment in self._appointments.items()
            }
            await asyncio.to_thread(self._write, data)

    def get(self, appointment_id: str) -> Optional[Appointment]:
        return self._appointments.get(appointment_id)

    def all(self) -> List[Appointment]:
        return sorted(self._appointments.values(), key=lambda a: a.updated_at, reverse=True)

    async def put(self, appointment: Appointment):
        self._appointments[appointment.appointment_id] = appointment
        await self._save()

    async def update_status(self, appointment_id: str, status: AppointmentStatus, **fields) -> Optional[Appointment]:
        appointment = self._appointments.get(appointment_id)
        if appointment is None:
            return None
        updates = {k: v for k, v in fields.items() if v}
        updated = appointment.model_copy(update={"status": status, "updated_at": utcnow(), **updates})
        self._appointments[appointment_id] = updated
        await self._save()
        return updated
