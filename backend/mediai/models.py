"""
Pydantic models for the consultation transcript, the booking flow and the API.

Chain of Thought:
- Message / Consultation: what the document store persists (camelCase on the wire)
- SymptomLog: a symptom diary entry, stored on its own
- Doctor, Slot, Appointment: data exchanged with the appointment REST API
- BookingFlowState: transient per-consultation state owned by the booking flow
- FlowResponse, ChatReply and request bodies: what the HTTP layer returns/accepts
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model: snake_case attributes, camelCase wire names, both accepted."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class ConsultationStatus(str, Enum):
    NEW = "new"
    ACTIVE = "active"
    COMPLETED = "completed"


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    CANCELLED = "cancelled"


class BookingStep(str, Enum):
    """
    Steps of the in-chat booking flow.

    Flow: IDLE → SELECTING_DOCTOR → SELECTING_SLOT → CONFIRMING → DONE (→ IDLE)
    """
    IDLE = "idle"
    SELECTING_DOCTOR = "selecting_doctor"
    SELECTING_SLOT = "selecting_slot"
    CONFIRMING = "confirming"
    DONE = "done"


class Message(CamelModel):
    """Single chat turn. `id` is unique within a consultation."""
    id: str
    role: MessageRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    image: Optional[str] = None
    image_prompt: Optional[str] = None
    is_loading: Optional[bool] = None
    suggests_booking: Optional[bool] = None
    appointment_id: Optional[str] = None
    is_appointment_update: Optional[bool] = None

    def to_wire(self) -> dict:
        """Document-store representation: ISO timestamp, no loading flag."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json", exclude={"is_loading"})


class Consultation(CamelModel):
    id: str
    user_id: str
    title: str = "Chat"
    status: ConsultationStatus = ConsultationStatus.NEW
    messages: List[Message] = []
    symptoms: str = ""
    diagnosis: str = ""
    recommendations: str = ""
    doctor_id: Optional[str] = None
    doctor_name: Optional[str] = None
    appointment_date: Optional[str] = None
    appointment_time: Optional[str] = None
    created_at: Optional[datetime] = Field(default=None, alias="date")
    last_updated: Optional[datetime] = None


class SymptomLog(CamelModel):
    """One symptom diary entry."""
    id: str
    user_id: str
    symptom: str
    timestamp: Optional[datetime] = None


class Doctor(CamelModel):
    """Doctor as returned by the appointment API."""
    id: str = Field(validation_alias=AliasChoices("id", "_id", "doctorId"))
    name: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    specialization: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("specialization", "specialty")
    )

    @property
    def display_name(self) -> str:
        if self.name:
            return self.name
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) if parts else "Unknown Doctor"


class Slot(CamelModel):
    """Bookable time window. Times are HH:MM strings on `date` (YYYY-MM-DD)."""
    date: str
    start_time: str
    end_time: str
    display_text: Optional[str] = None
    id: Optional[str] = Field(default=None, validation_alias=AliasChoices("id", "_id", "slotId"))

    @property
    def label(self) -> str:
        return self.display_text or f"{self.date} {self.start_time}-{self.end_time}"


class AppointmentRequest(CamelModel):
    """Details submitted to `POST /appointments`. Validated by the gateway."""
    doctor_id: Optional[str] = None
    patient_external_id: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    date_time: Optional[str] = None
    slot_id: Optional[str] = None
    reason: Optional[str] = None


class AppointmentConfirmation(CamelModel):
    appointment_id: str
    status: str = AppointmentStatus.PENDING.value
    raw: dict = {}


class AppointmentStatusResult(CamelModel):
    status: str
    doctor_name: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None


class Appointment(CamelModel):
    """Booking record, mirrored into the local appointment cache."""
    appointment_id: str
    doctor_id: Optional[str] = None
    doctor_name: str = "Unknown Doctor"
    date: Optional[str] = None
    time: Optional[str] = None
    status: AppointmentStatus = AppointmentStatus.PENDING
    reason: str = "Medical Consultation"
    consultation_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


class BookingFlowState(CamelModel):
    """
    Transient booking state for one consultation.

    Chain of Thought:
    - step: where the conversation is in the booking flow
    - selected_doctor / selected_slot: the user's picks so far
    - available_doctors / available_slots: the options last shown to the user
    """
    step: BookingStep = BookingStep.IDLE
    selected_doctor: Optional[Doctor] = None
    selected_slot: Optional[Slot] = None
    available_doctors: List[Doctor] = []
    available_slots: List[Slot] = []


class FlowResponse(CamelModel):
    """Result of a booking intent, returned to the frontend."""
    step: BookingStep
    message: Optional[Message] = None
    message_type: str = "text"
    login_required: bool = False
    error: Optional[str] = None
    data: Optional[dict] = None


class ChatReply(CamelModel):
    consultation_id: str
    messages: List[Message] = []
    rejected: bool = False
    error: Optional[str] = None
    suggested_specialty: Optional[str] = None


class ApprovalEvent(CamelModel):
    """One-shot UI notification emitted when an appointment gets approved."""
    appointment_id: str
    consultation_id: Optional[str] = None
    doctor_name: Optional[str] = None
    date: Optional[str] = None
    time: Optional[str] = None
    message: str


class CurrentUser(CamelModel):
    uid: str
    display_name: Optional[str] = None
    email: Optional[str] = None


class ChatRequest(CamelModel):
    message: str


class NewConsultationRequest(CamelModel):
    previous_consultation_id: Optional[str] = None
    message: Optional[str] = None


class SymptomLogRequest(CamelModel):
    symptom: str


class BookingStartRequest(CamelModel):
    specialty: Optional[str] = None


class DoctorSelection(CamelModel):
    doctor_id: str


class SlotSelection(CamelModel):
    date: str
    start_time: str


class ConsultationView(CamelModel):
    consultation: Consultation
    booking: BookingFlowState
    unsynced: bool = False


class AppointmentList(CamelModel):
    appointments: List[Appointment] = []


def dump_list(items: List[BaseModel]) -> List[Any]:
    return [item.model_dump(by_alias=True, mode="json") for item in items]
