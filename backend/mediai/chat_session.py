"""
Per-consultation chat sessions and the service that owns them.

Chain of Thought:
- ChatSession: one consultation's conversation. Plain chat and image analysis go
  to the assistant; booking intents go to the consultation's BookingFlowController.
  While a booking is in progress, plain chat is rejected rather than interleaved.
- ChatService: keeps sessions in memory keyed by consultation id (can be replaced
  with Redis/DB), enforces ownership, resumes stored consultations (re-arming the
  status poller) and collects approval notifications for the frontend.
"""

import logging
import uuid
from typing import Dict, List, Optional

from mediai.appointment_cache import AppointmentCache
from mediai.assistant import MedicalAssistant
from mediai.booking_flow import BookingFlowController
from mediai.errors import PersistenceError
from mediai.gateway import AppointmentGateway
from mediai.media import MediaHost
from mediai.models import (
    Appointment, ApprovalEvent, ChatReply, Consultation, ConsultationStatus, ConsultationView,
    CurrentUser, FlowResponse, Message, MessageRole
)
from mediai.poller import StatusPoller
from mediai.text_heuristics import (
    extract_diagnosis, extract_recommendations, infer_specialty, reconstruct_appointments
)
from mediai.transcript import ChatTranscriptStore

logger = logging.getLogger(__name__)

BOOKING_IN_PROGRESS = "Please finish or cancel the current booking first."


class ConsultationNotFound(LookupError):
    pass


class ChatSession:
    def __init__(
        self,
        consultation_id: str,
        owner: CurrentUser,
        transcript: ChatTranscriptStore,
        assistant: MedicalAssistant,
        media: MediaHost,
        booking: BookingFlowController,
        symptoms: str = "",
    ):
        self.consultation_id = consultation_id
        self.owner = owner
        self.transcript = transcript
        self.assistant = assistant
        self.media = media
        self.booking = booking
        self.symptoms = symptoms
        self.booking.reason = symptoms or None

    @property
    def messages(self) -> List[Message]:
        return self.transcript.messages(self.consultation_id)

    def _rejected(self) -> ChatReply:
        return ChatReply(consultation_id=self.consultation_id, rejected=True, error=BOOKING_IN_PROGRESS)

    async def send_message(self, text: str) -> ChatReply:
        if self.booking.is_active:
            return self._rejected()
        user_message = Message(id=uuid.uuid4().hex, role=MessageRole.USER, content=text)
        return await self.converse(user_message)

    async def converse(self, user_message: Message) -> ChatReply:
        """Record the user's message (no-op if already stored) and answer it."""
        history = [m for m in self.messages if m.id != user_message.id]
        await self._record(user_message)

        reply = await self.assistant.reply(user_message.content, history)
        await self._record(reply)
        await self._update_insights(user_message, reply)

        return ChatReply(
            consultation_id=self.consultation_id,
            messages=[user_message, reply],
            suggested_specialty=infer_specialty(self.symptoms) if reply.suggests_booking else None,
        )

    async def analyze_image(self, data: bytes, filename: str, content_type: str, prompt: str) -> ChatReply:
        if self.booking.is_active:
            return self._rejected()

        image_url = await self.media.upload(data, filename, content_type)
        question = prompt or "Please analyze this medical image."
        user_message = Message(
            id=uuid.uuid4().hex,
            role=MessageRole.USER,
            content=question,
            image=image_url,
            image_prompt=prompt or None,
        )
        await self._record(user_message)

        reply = await self.assistant.analyze_image(image_url, question)
        await self._record(reply)
        await self._update_insights(user_message, reply)
        return ChatReply(consultation_id=self.consultation_id, messages=[user_message, reply])

    async def start_booking(self, specialty: Optional[str] = None) -> FlowResponse:
        return await self.booking.start_booking(specialty)

    async def select_doctor(self, doctor_id: str) -> FlowResponse:
        return await self.booking.select_doctor(doctor_id)

    async def select_slot(self, date: str, start_time: str) -> FlowResponse:
        return await self.booking.select_slot(date, start_time)

    async def cancel_booking(self) -> FlowResponse:
        return await self.booking.cancel()

    async def finalize(self):
        """Save the conversation as completed. Raises PersistenceError if that fails."""
        if self.booking.is_active:
            await self.booking.cancel()

        messages = self.messages
        if not messages:
            return
        last = messages[-1].content if len(messages) >= 2 else ""
        await self.transcript.finalize_consultation(
            self.consultation_id,
            messages,
            diagnosis=extract_diagnosis(last),
            recommendations=extract_recommendations(last),
        )
        logger.info(f"Consultation {self.consultation_id} saved as completed")

    async def _record(self, message: Message):
        try:
            await self.transcript.append_message(self.consultation_id, message)
        except PersistenceError as e:
            logger.warning(f"Message {message.id} shown but not persisted yet: {e}")

    async def _update_insights(self, user_message: Message, reply: Message):
        fields = {
            "status": ConsultationStatus.ACTIVE.value,
            "diagnosis": extract_diagnosis(reply.content),
            "recommendations": extract_recommendations(reply.content),
        }
        if not self.symptoms:
            self.symptoms = user_message.content
            self.booking.reason = self.symptoms
            fields["symptoms"] = self.symptoms
        try:
            await self.transcript.update_consultation(self.consultation_id, **fields)
        except PersistenceError as e:
            logger.warning(f"Could not update insights for consultation {self.consultation_id}: {e}")


class ChatService:
    def __init__(
        self,
        transcript: ChatTranscriptStore,
        gateway: AppointmentGateway,
        assistant: MedicalAssistant,
        media: MediaHost,
        cache: AppointmentCache,
        poller: StatusPoller,
    ):
        self.transcript = transcript
        self.gateway = gateway
        self.assistant = assistant
        self.media = media
        self.cache = cache
        self.poller = poller
        self.sessions: Dict[str, ChatSession] = {}
        self.notifications: Dict[str, List[ApprovalEvent]] = {}
        poller.add_listener(self._on_approved)

    def _on_approved(self, event: ApprovalEvent):
        if not event.consultation_id:
            logger.info(f"Approval of appointment {event.appointment_id} has no consultation to notify")
            return
        self.notifications.setdefault(event.consultation_id, []).append(event)

    def drain_notifications(self, consultation_id: str) -> List[ApprovalEvent]:
        return self.notifications.pop(consultation_id, [])

    def _open(self, consultation_id: str, user: CurrentUser, symptoms: str = "") -> ChatSession:
        booking = BookingFlowController(
            consultation_id=consultation_id,
            patient_id=user.uid,
            gateway=self.gateway,
            transcript=self.transcript,
            poller=self.poller,
            cache=self.cache,
        )
        session = ChatSession(
            consultation_id, user, self.transcript, self.assistant, self.media, booking, symptoms
        )
        self.sessions[consultation_id] = session
        return session

    async def new_consultation(
        self, user: CurrentUser, previous_id: Optional[str] = None, first_message: Optional[str] = None
    ) -> ChatReply:
        """
        Start a new chat.

        The previous consultation is saved as completed first; if that save fails
        the PersistenceError propagates and no new chat is created.
        """
        if previous_id:
            previous = await self.get_session(user, previous_id)
            await previous.finalize()
            self.sessions.pop(previous_id, None)

        opening = Message(id=uuid.uuid4().hex, role=MessageRole.USER, content=first_message) if first_message else None
        consultation_id = await self.transcript.create_consultation(user.uid, opening)
        session = self._open(consultation_id, user)

        if opening is None:
            return ChatReply(consultation_id=consultation_id)
        return await session.converse(opening)

    async def get_session(self, user: CurrentUser, consultation_id: str) -> ChatSession:
        session = self.sessions.get(consultation_id)
        if session is not None:
            if session.owner.uid != user.uid:
                raise ConsultationNotFound(consultation_id)
            return session

        consultation = await self.transcript.get_consultation(consultation_id)
        if consultation is None or consultation.user_id != user.uid:
            raise ConsultationNotFound(consultation_id)

        session = self._open(consultation_id, user, consultation.symptoms)
        rearmed = self.poller.rearm(consultation_id, consultation.messages)
        if rearmed:
            logger.info(f"Resumed status polling for {rearmed} in consultation {consultation_id}")
        return session

    async def view(self, user: CurrentUser, consultation_id: str) -> ConsultationView:
        session = await self.get_session(user, consultation_id)
        consultation = await self.transcript.get_consultation(consultation_id)
        if consultation is None:
            raise ConsultationNotFound(consultation_id)
        consultation.messages = session.messages
        return ConsultationView(
            consultation=consultation,
            booking=session.booking.state,
            unsynced=self.transcript.has_unsynced(consultation_id),
        )

    async def list_consultations(self, user: CurrentUser) -> List[Consultation]:
        return await self.transcript.list_consultations(user.uid)

    async def appointments(self, user: CurrentUser) -> List[Appointment]:
        """Cached appointments merged over the ones rebuilt from the user's transcripts."""
        consultations = await self.transcript.list_consultations(user.uid)
        owned = {c.id for c in consultations}

        merged = {a.appointment_id: a for a in reconstruct_appointments(consultations)}
        for appointment in self.cache.all():
            if appointment.consultation_id in owned:
                merged[appointment.appointment_id] = appointment
        return sorted(merged.values(), key=lambda a: a.updated_at, reverse=True)

    async def shutdown(self):
        await self.poller.shutdown()
        await self.gateway.aclose()
        await self.media.aclose()
