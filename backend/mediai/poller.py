"""
Bounded polling of appointment approval status.

Chain of Thought:
- schedule() checks once immediately, then every `interval` seconds until
  `max_duration` has elapsed; the cap is not renewable for the same id
- A per-id in-flight guard keeps two checks for one appointment from overlapping
- The first `approved` seen for an id is notified exactly once: transcript
  message, listener event, cache update
- rearm() restarts polling for pending requests found in a resumed transcript
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

from mediai.appointment_cache import AppointmentCache
from mediai.config import STATUS_POLL_DURATION, STATUS_POLL_INTERVAL
from mediai.errors import AuthRequired, GatewayError, PersistenceError
from mediai.gateway import AppointmentGateway
from mediai.models import (
    Appointment, AppointmentStatus, AppointmentStatusResult, ApprovalEvent, Message, MessageRole
)
from mediai.text_heuristics import approval_content, is_pending_request
from mediai.transcript import ChatTranscriptStore

logger = logging.getLogger(__name__)


def approval_message_id(appointment_id: str) -> str:
    return f"approval_{appointment_id}"


class StatusPoller:
    """One instance per session: the notified markers and the poll caps live here."""

    def __init__(
        self,
        gateway: AppointmentGateway,
        transcript: ChatTranscriptStore,
        cache: AppointmentCache,
        interval: float = STATUS_POLL_INTERVAL,
        max_duration: float = STATUS_POLL_DURATION,
        sleep=asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.transcript = transcript
        self.cache = cache
        self.interval = interval
        self.max_duration = max_duration
        self._sleep = sleep
        self._clock = clock
        self._listeners: List[Callable[[ApprovalEvent], None]] = []
        self._tasks: Dict[str, asyncio.Task] = {}
        self._scheduled: Set[str] = set()
        self._notified: Set[str] = set()
        self._in_flight: Set[str] = set()
        self._consultations: Dict[str, Optional[str]] = {}

    def add_listener(self, listener: Callable[[ApprovalEvent], None]):
        self._listeners.append(listener)

    def is_polling(self, appointment_id: str) -> bool:
        return appointment_id in self._tasks

    def schedule(self, appointment_id: str, consultation_id: Optional[str] = None) -> Optional[asyncio.Task]:
        if appointment_id in self._scheduled:
            logger.debug(f"Appointment {appointment_id} already polled in this session")
            return None

        self._scheduled.add(appointment_id)
        self._consultations[appointment_id] = consultation_id
        task = asyncio.create_task(self._run(appointment_id))
        self._tasks[appointment_id] = task
        task.add_done_callback(lambda t: self._finished(appointment_id, t))
        logger.info(f"Polling status of appointment {appointment_id}")
        return task

    async def _run(self, appointment_id: str):
        started = self._clock()
        while True:
            await self.check_now(appointment_id)
            if self._clock() - started + self.interval > self.max_duration:
                break
            await self._sleep(self.interval)
        logger.info(f"Stopped polling appointment {appointment_id}")

    def _finished(self, appointment_id: str, task: asyncio.Task):
        self._tasks.pop(appointment_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Polling of appointment {appointment_id} failed: {error}", exc_info=error)

    async def check_now(self, appointment_id: str) -> Optional[AppointmentStatusResult]:
        """Run one status check. Returns None if skipped or failed."""
        if appointment_id in self._in_flight:
            return None

        self._in_flight.add(appointment_id)
        try:
            try:
                result = await self.gateway.check_appointment_status(appointment_id)
            except (GatewayError, AuthRequired) as e:
                logger.warning(f"Status check failed for appointment {appointment_id}: {e}")
                return None

            if result.status == AppointmentStatus.APPROVED.value:
                await self._notify_approved(appointment_id, result)
            elif result.status == AppointmentStatus.CANCELLED.value:
                await self.cache.update_status(appointment_id, AppointmentStatus.CANCELLED)
            return result
        finally:
            self._in_flight.discard(appointment_id)

    async def _notify_approved(self, appointment_id: str, result: AppointmentStatusResult):
        if appointment_id in self._notified:
            return
        self._notified.add(appointment_id)

        cached = self.cache.get(appointment_id)
        doctor_name = result.doctor_name or (cached.doctor_name if cached else None)
        date = result.date or (cached.date if cached else None)
        time_ = result.time or (cached.time if cached else None)
        consultation_id = self._consultations.get(appointment_id) or (cached.consultation_id if cached else None)
        content = approval_content(doctor_name, date, time_)

        if consultation_id:
            message = Message(
                id=approval_message_id(appointment_id),
                role=MessageRole.ASSISTANT,
                content=content,
                appointment_id=appointment_id,
                is_appointment_update=True,
            )
            try:
                await self.transcript.append_message(consultation_id, message)
            except PersistenceError as e:
                logger.warning(f"Approval message for {appointment_id} not persisted yet: {e}")

        if cached:
            await self.cache.update_status(
                appointment_id, AppointmentStatus.APPROVED, doctor_name=doctor_name, date=date, time=time_
            )
        else:
            await self.cache.put(Appointment(
                appointment_id=appointment_id,
                doctor_name=doctor_name or "Unknown Doctor",
                date=date,
                time=time_,
                status=AppointmentStatus.APPROVED,
                consultation_id=consultation_id,
            ))

        event = ApprovalEvent(
            appointment_id=appointment_id,
            consultation_id=consultation_id,
            doctor_name=doctor_name,
            date=date,
            time=time_,
            message=content,
        )
        for listener in self._listeners:
            listener(event)
        logger.info(f"Appointment {appointment_id} approved")

    def rearm(self, consultation_id: str, messages: Iterable[Message]) -> List[str]:
        """Resume polling for request-sent messages that never got an approval."""
        messages = list(messages)
        approved = {m.appointment_id for m in messages if m.is_appointment_update and m.appointment_id}
        self._notified.update(approved)

        rearmed = []
        for message in messages:
            appointment_id = message.appointment_id
            if not is_pending_request(message) or appointment_id in approved:
                continue
            if self.schedule(appointment_id, consultation_id) is not None:
                rearmed.append(appointment_id)
        return rearmed

    async def shutdown(self):
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
