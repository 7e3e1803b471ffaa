"""
In-chat appointment booking flow.

Chain of Thought - State Machine:
1. IDLE: no booking in progress
   → "start booking" (authenticated only): fetch doctors, go to SELECTING_DOCTOR
2. SELECTING_DOCTOR: waiting for the user to pick a doctor
   → doctor picked: record it on the consultation, fetch availability, go to SELECTING_SLOT
3. SELECTING_SLOT: waiting for the user to pick a slot
   → slot picked: record it, submit the booking, go to CONFIRMING
   → unknown slot: back to SELECTING_DOCTOR (doctor list is kept)
4. CONFIRMING: booking request in flight
   → success: confirmation message, cache, hand off to the status poller, DONE → IDLE
5. Any step → IDLE on cancel or on an unrecoverable gateway error

Every gateway call shows a loading message first; whatever happens, that
message is replaced in place, so no loading indicator is ever left behind.
"""

import asyncio
import logging
import uuid
from typing import Callable, Optional

from mediai.appointment_cache import AppointmentCache
from mediai.errors import AuthRequired, GatewayError, InvalidArgument, PersistenceError
from mediai.gateway import AppointmentGateway
from mediai.models import (
    Appointment, AppointmentRequest, BookingFlowState, BookingStep, FlowResponse, Message,
    MessageRole, dump_list
)
from mediai.poller import StatusPoller
from mediai.text_heuristics import doctor_title, request_sent_content
from mediai.transcript import ChatTranscriptStore

logger = logging.getLogger(__name__)

LOGIN_REQUIRED_MESSAGE = "Please log in to the appointment system to book an appointment."


class BookingFlowController:
    """
    Drives one consultation's booking conversation.

    Intents are serialised by a lock so each step's transcript write happens
    before the next step's network call. cancel() does not wait for the lock.
    """

    def __init__(
        self,
        consultation_id: str,
        patient_id: str,
        gateway: AppointmentGateway,
        transcript: ChatTranscriptStore,
        poller: StatusPoller,
        cache: AppointmentCache,
        reason: Optional[str] = None,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.consultation_id = consultation_id
        self.patient_id = patient_id
        self.gateway = gateway
        self.transcript = transcript
        self.poller = poller
        self.cache = cache
        self.reason = reason
        self.state = BookingFlowState()
        self._new_id = id_factory
        self._lock = asyncio.Lock()
        self._generation = 0

    @property
    def is_active(self) -> bool:
        return self.state.step != BookingStep.IDLE

    async def start_booking(self, specialty: Optional[str] = None) -> FlowResponse:
        async with self._lock:
            if self.is_active:
                return self._reject("A booking is already in progress. Pick an option or cancel it first.")
            if not self.gateway.is_authenticated():
                return self._login_required()
            return await self._handle_doctor_fetch(specialty)

    async def select_doctor(self, doctor_id: str) -> FlowResponse:
        async with self._lock:
            if self.state.step != BookingStep.SELECTING_DOCTOR:
                return self._reject("There is no doctor to choose right now.")

            doctor = next((d for d in self.state.available_doctors if d.id == doctor_id), None)
            if doctor is None:
                return self._reject(
                    "Please choose one of the doctors shown.",
                    data={"doctors": dump_list(self.state.available_doctors)},
                )
            return await self._handle_doctor_selected(doctor)

    async def select_slot(self, date: str, start_time: str) -> FlowResponse:
        async with self._lock:
            if self.state.step != BookingStep.SELECTING_SLOT:
                return self._reject("There is no time slot to choose right now.")

            slot = next(
                (s for s in self.state.available_slots if s.date == date and s.start_time == start_time),
                None,
            )
            if slot is None:
                self._back_to_doctor_selection()
                message = await self._record(self._assistant(
                    "That time slot is not available. Please choose a doctor again."
                ))
                return FlowResponse(
                    step=self.state.step,
                    message=message,
                    message_type="doctor_selection",
                    error="Unknown slot",
                    data={"doctors": dump_list(self.state.available_doctors)},
                )
            return await self._handle_slot_selected(slot)

    async def cancel(self) -> FlowResponse:
        """Reset immediately. In-flight fetches are discarded when they return."""
        if not self.is_active:
            return FlowResponse(step=BookingStep.IDLE, error="There is no booking in progress.")

        self._generation += 1
        self._reset()
        message = await self._record(self._assistant(
            "Booking cancelled. Let me know if there is anything else I can help with."
        ))
        return FlowResponse(step=BookingStep.IDLE, message=message)

    async def _handle_doctor_fetch(self, specialty: Optional[str]) -> FlowResponse:
        self.state.step = BookingStep.SELECTING_DOCTOR
        generation = self._generation
        loading = self._show_loading("Finding available doctors...")

        try:
            doctors = await self.gateway.fetch_doctors(specialty)
        except AuthRequired:
            return self._login_required(loading)
        except GatewayError as e:
            if generation != self._generation:
                return self._discard(loading)
            logger.error(f"Doctor fetch failed for consultation {self.consultation_id}: {e}")
            return await self._fail(loading, f"Sorry, I couldn't load the list of doctors. {e}", BookingStep.IDLE)

        if generation != self._generation:
            return self._discard(loading)

        if not doctors:
            return await self._fail(
                loading, "No doctors are available right now. Please try again later.", BookingStep.IDLE
            )

        self.state.available_doctors = doctors
        message = await self._resolve(loading, "Please choose a doctor for your appointment:")
        return FlowResponse(
            step=self.state.step,
            message=message,
            message_type="doctor_selection",
            data={"doctors": dump_list(doctors)},
        )

    async def _handle_doctor_selected(self, doctor) -> FlowResponse:
        title = doctor_title(doctor.display_name)
        self.state.selected_doctor = doctor
        await self._update_consultation(doctor_id=doctor.id, doctor_name=doctor.display_name)
        await self._record(self._message(MessageRole.USER, f"I'd like to book with {title}."))

        self.state.step = BookingStep.SELECTING_SLOT
        generation = self._generation
        loading = self._show_loading(f"Checking availability for {title}...")

        try:
            slots = await self.gateway.fetch_availability(doctor.id)
        except AuthRequired:
            return self._login_required(loading)
        except (GatewayError, InvalidArgument) as e:
            if generation != self._generation:
                return self._discard(loading)
            logger.error(f"Availability fetch failed for doctor {doctor.id}: {e}")
            return await self._fail(
                loading, f"Sorry, I couldn't load availability for {title}. {e}", BookingStep.SELECTING_DOCTOR
            )

        if generation != self._generation:
            return self._discard(loading)

        if not slots:
            return await self._fail(
                loading,
                f"{title} has no open time slots right now. Please choose another doctor.",
                BookingStep.SELECTING_DOCTOR,
            )

        self.state.available_slots = slots
        message = await self._resolve(loading, f"Here are the available times for {title}. Please pick a slot:")
        return FlowResponse(
            step=self.state.step,
            message=message,
            message_type="slot_selection",
            data={"doctor": doctor.model_dump(by_alias=True), "slots": dump_list(slots)},
        )

    async def _handle_slot_selected(self, slot) -> FlowResponse:
        doctor = self.state.selected_doctor
        self.state.selected_slot = slot
        await self._update_consultation(appointment_date=slot.date, appointment_time=slot.start_time)
        await self._record(self._message(MessageRole.USER, f"I'll take {slot.label}."))

        self.state.step = BookingStep.CONFIRMING
        loading = self._show_loading(
            f"Requesting an appointment with {doctor_title(doctor.display_name)} "
            f"on {slot.date} at {slot.start_time}..."
        )
        request = AppointmentRequest(
            doctor_id=doctor.id,
            patient_external_id=self.patient_id,
            date=slot.date,
            time=slot.start_time,
            date_time=f"{slot.date}T{slot.start_time}",
            slot_id=slot.id,
            reason=self.reason or "Medical Consultation",
        )

        try:
            confirmation = await self.gateway.request_appointment(request)
        except AuthRequired:
            return self._login_required(loading)
        except (GatewayError, InvalidArgument) as e:
            logger.error(f"Appointment request failed for consultation {self.consultation_id}: {e}")
            return await self._fail(loading, f"Sorry, your appointment request failed. {e}", BookingStep.IDLE)

        # The appointment exists remotely now, so it is recorded even if the
        # flow was cancelled while the request was in flight.
        appointment = Appointment(
            appointment_id=confirmation.appointment_id,
            doctor_id=doctor.id,
            doctor_name=doctor.display_name,
            date=slot.date,
            time=slot.start_time,
            reason=request.reason,
            consultation_id=self.consultation_id,
        )
        await self.cache.put(appointment)
        message = await self._resolve(
            loading,
            request_sent_content(doctor.display_name, slot.date, slot.start_time),
            appointment_id=appointment.appointment_id,
        )
        self.poller.schedule(appointment.appointment_id, self.consultation_id)
        logger.info(f"Appointment {appointment.appointment_id} requested for consultation {self.consultation_id}")

        self.state.step = BookingStep.DONE
        self._reset()
        return FlowResponse(
            step=BookingStep.DONE,
            message=message,
            message_type="booking_complete",
            data={"appointment": appointment.model_dump(by_alias=True, mode="json")},
        )

    def _reset(self):
        self.state = BookingFlowState()

    def _back_to_doctor_selection(self):
        self.state.step = BookingStep.SELECTING_DOCTOR
        self.state.selected_doctor = None
        self.state.selected_slot = None
        self.state.available_slots = []

    def _reject(self, error: str, data: Optional[dict] = None) -> FlowResponse:
        return FlowResponse(step=self.state.step, message_type="error", error=error, data=data)

    def _login_required(self, loading: Optional[Message] = None) -> FlowResponse:
        if loading is not None:
            self.transcript.discard_transient(self.consultation_id, loading.id)
        self._reset()
        return FlowResponse(step=BookingStep.IDLE, login_required=True, error=LOGIN_REQUIRED_MESSAGE)

    def _discard(self, loading: Message) -> FlowResponse:
        self.transcript.discard_transient(self.consultation_id, loading.id)
        return FlowResponse(step=self.state.step, error="Booking was cancelled.")

    async def _fail(self, loading: Message, content: str, step: BookingStep) -> FlowResponse:
        message = await self._resolve(loading, content)
        if step == BookingStep.IDLE:
            self._reset()
        else:
            self._back_to_doctor_selection()
        return FlowResponse(
            step=self.state.step,
            message=message,
            message_type="error",
            error=content,
            data={"doctors": dump_list(self.state.available_doctors)} if self.state.available_doctors else None,
        )

    def _message(self, role: MessageRole, content: str, **fields) -> Message:
        return Message(id=self._new_id(), role=role, content=content, **fields)

    def _assistant(self, content: str, **fields) -> Message:
        return self._message(MessageRole.ASSISTANT, content, **fields)

    def _show_loading(self, content: str) -> Message:
        loading = self._assistant(content, is_loading=True)
        self.transcript.show_transient(self.consultation_id, loading)
        return loading

    async def _resolve(self, loading: Message, content: str, **fields) -> Message:
        message = Message(id=loading.id, role=MessageRole.ASSISTANT, content=content, **fields)
        try:
            await self.transcript.replace_message(self.consultation_id, loading.id, message)
        except PersistenceError as e:
            logger.warning(f"Booking message kept locally, not persisted yet: {e}")
        return message

    async def _record(self, message: Message) -> Message:
        try:
            await self.transcript.append_message(self.consultation_id, message)
        except PersistenceError as e:
            logger.warning(f"Booking message kept locally, not persisted yet: {e}")
        return message

    async def _update_consultation(self, **fields):
        try:
            await self.transcript.update_consultation(self.consultation_id, **fields)
        except PersistenceError as e:
            logger.warning(f"Could not update consultation {self.consultation_id}: {e}")
