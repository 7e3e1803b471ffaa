"""
Keyword and regex heuristics over free text.

Everything that reads structure out of unstructured text lives here so it can be
swapped out: cleanup of AI replies, booking-intent detection, diagnosis and
recommendation extraction, and rebuilding appointments from old transcripts.
The booking flow's own state is the source of truth for anything it produced;
these parsers are only used when that state is gone (resumed sessions, history).
"""

import re
from typing import Dict, Iterable, List, Optional, Tuple

from mediai.config import BOOKING_KEYWORDS, REQUEST_SENT_MARKER, SPECIALIST_MAPPING
from mediai.models import Appointment, AppointmentStatus, Consultation, Message

REQUEST_SENT_PATTERN = re.compile(
    r"notified once (.+?) confirms for (\d{4}-\d{2}-\d{2}) at (\d{2}:\d{2})", re.DOTALL
)
APPROVAL_DOCTOR_PATTERN = re.compile(r"(Dr\.\s*.+?)\s+has approved")
APPROVAL_WHEN_PATTERN = re.compile(r"for\s+(\S+)\s+at\s+([0-9:]+)")


def clean_response(text: str) -> str:
    """Strip markdown emphasis, numbered-list markers and repeated blank lines."""
    text = re.sub(r"\*\*|__|\*", "", text)
    text = re.sub(r"^[ \t]*\d+\.[ \t]+", "", text, flags=re.MULTILINE)
    text = re.sub(r"\n\s*\n+", "\n", text)
    return text.strip()


def suggests_booking(text: str) -> bool:
    lower = text.lower()
    return any(keyword in lower for keyword in BOOKING_KEYWORDS)


def _sentence_from(content: str, pattern: str) -> str:
    match = re.search(pattern, content, re.IGNORECASE)
    if not match:
        return ""
    end = content.find(".", match.start())
    return content[match.start():] if end == -1 else content[match.start():end + 1]


def extract_diagnosis(content: str) -> str:
    return _sentence_from(content, r"diagnosis|assessment")


def extract_recommendations(content: str) -> str:
    return _sentence_from(content, r"recommend|suggest|advise")


def infer_specialty(symptoms: str) -> Optional[str]:
    """Pick the specialist whose keywords best match the symptom text, if any."""
    lower = (symptoms or "").lower()
    best, best_hits = None, 0
    for specialist, info in SPECIALIST_MAPPING.items():
        hits = sum(1 for keyword in info["keywords"] if keyword in lower)
        if hits > best_hits:
            best, best_hits = specialist, hits
    return best


def doctor_title(name: str) -> str:
    return name if re.match(r"dr\.?\s", name, re.IGNORECASE) else f"Dr. {name}"


def request_sent_content(doctor_name: str, date: str, time: str) -> str:
    return (
        f"{REQUEST_SENT_MARKER} You'll be notified once {doctor_title(doctor_name)} "
        f"confirms for {date} at {time}."
    )


def approval_content(doctor_name: Optional[str], date: Optional[str], time: Optional[str]) -> str:
    who = doctor_title(doctor_name) if doctor_name else "The doctor"
    if date and time:
        return f"{who} has approved your appointment for {date} at {time}."
    return f"{who} has approved your appointment."


def is_pending_request(message: Message) -> bool:
    return bool(message.appointment_id) and REQUEST_SENT_MARKER in message.content


def parse_request_sent(content: str) -> Optional[Tuple[str, str, str]]:
    match = REQUEST_SENT_PATTERN.search(content)
    if not match:
        return None
    return match.group(1).strip(), match.group(2), match.group(3)


def reconstruct_appointments(consultations: Iterable[Consultation]) -> List[Appointment]:
    """
    Rebuild appointments from the messages that mention them.

    Chain of Thought:
    - Group messages by appointment_id across all consultations
    - The request-sent message gives doctor, date and time
    - An approval update overrides status (and doctor/date/time when present)
    - Any message mentioning cancellation wins over everything else
    """
    grouped: Dict[str, List[Tuple[Message, Consultation]]] = {}
    for consultation in consultations:
        for message in consultation.messages:
            if message.appointment_id:
                grouped.setdefault(message.appointment_id, []).append((message, consultation))

    appointments = []
    for appointment_id, entries in grouped.items():
        entries.sort(key=lambda entry: entry[0].timestamp)
        consultation = entries[0][1]
        appointment = Appointment(
            appointment_id=appointment_id,
            doctor_id=consultation.doctor_id,
            doctor_name=consultation.doctor_name or "Unknown Doctor",
            reason=consultation.symptoms or "Medical Consultation",
            consultation_id=consultation.id,
            updated_at=entries[-1][0].timestamp,
        )

        for message, _ in entries:
            parsed = parse_request_sent(message.content) if REQUEST_SENT_MARKER in message.content else None
            if parsed:
                appointment.doctor_name, appointment.date, appointment.time = parsed
                break

        for message, _ in entries:
            if message.is_appointment_update and "approved" in message.content:
                appointment.status = AppointmentStatus.APPROVED
                doctor = APPROVAL_DOCTOR_PATTERN.search(message.content)
                if doctor:
                    appointment.doctor_name = doctor.group(1).strip()
                when = APPROVAL_WHEN_PATTERN.search(message.content)
                if when:
                    appointment.date, appointment.time = when.group(1), when.group(2)
                break

        if any("cancelled" in message.content.lower() for message, _ in entries):
            appointment.status = AppointmentStatus.CANCELLED

        appointments.append(appointment)
    return appointments
