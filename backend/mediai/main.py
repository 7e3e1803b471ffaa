"""
FastAPI Backend for the MediAI patient consultation chat.

Chain of Thought:
- Expose REST API endpoints for the chat frontend
- /api/consultations: new chat, list, resume, messages and image analysis
- /api/consultations/{id}/booking: the in-chat appointment booking intents
- /api/appointments: appointment history outside the chat
- /api/symptom-logs: the symptom diary
- /api/consultations/{id}/speech: websocket for voice dictation into the chat
- Every route except the health check needs a Firebase ID token
- CORS enabled for frontend communication
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional

from fastapi import (
    Depends, FastAPI, File, Form, Header, HTTPException, Query, UploadFile, WebSocket, WebSocketDisconnect,
    WebSocketException, status
)
from fastapi.middleware.cors import CORSMiddleware
from firebase_admin import auth, exceptions as firebase_exceptions

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from mediai.appointment_cache import AppointmentCache
from mediai.assistant import MedicalAssistant
from mediai.chat_session import ChatService, ChatSession, ConsultationNotFound
from mediai.config import ALLOWED_ORIGINS, APPOINTMENT_CACHE_PATH
from mediai.credentials import CredentialStore
from mediai.document_store import build_document_store, init_firebase
from mediai.errors import InvalidArgument, PersistenceError
from mediai.gateway import AppointmentGateway
from mediai.media import MediaHost, MediaUploadError
from mediai.models import (
    AppointmentList, BookingStartRequest, ChatRequest, CurrentUser, DoctorSelection,
    NewConsultationRequest, SlotSelection, SymptomLogRequest, dump_list
)
from mediai.poller import StatusPoller
from mediai.speech import FrameRecognizer, SpeechRecognitionError, TranscriptStream
from mediai.symptom_diary import SymptomDiary
from mediai.transcript import ChatTranscriptStore


@lru_cache
def get_document_store():
    return build_document_store()


@lru_cache
def get_service() -> ChatService:
    """Build the service graph once per process."""
    transcript = ChatTranscriptStore(get_document_store())
    gateway = AppointmentGateway(CredentialStore())
    cache = AppointmentCache(APPOINTMENT_CACHE_PATH)
    poller = StatusPoller(gateway, transcript, cache)
    return ChatService(transcript, gateway, MedicalAssistant(), MediaHost(), cache, poller)


@lru_cache
def get_diary() -> SymptomDiary:
    return SymptomDiary(get_document_store())


async def verify_token(token: str) -> Optional[CurrentUser]:
    """Verify a Firebase ID token. Returns None if it is rejected."""
    init_firebase()
    try:
        claims = await asyncio.to_thread(auth.verify_id_token, token)
    except (ValueError, firebase_exceptions.FirebaseError) as e:
        logger.warning(f"Rejected ID token: {e}")
        return None

    return CurrentUser(uid=claims["uid"], display_name=claims.get("name"), email=claims.get("email"))


async def get_current_user(authorization: Optional[str] = Header(None)) -> CurrentUser:
    """Verify the caller's Firebase ID token."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")

    user = await verify_token(authorization.split(" ", 1)[1].strip())
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


async def get_socket_user(token: Optional[str] = Query(None)) -> CurrentUser:
    """Browsers cannot set headers on a websocket, so the ID token comes as ?token=."""
    user = await verify_token(token) if token else None
    if user is None:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid or missing token")
    return user


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if get_service.cache_info().currsize:
        await get_service().shutdown()


app = FastAPI(
    title="MediAI Consultation Backend",
    description="AI medical consultation chat with in-chat appointment booking",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


async def _session(service: ChatService, user: CurrentUser, consultation_id: str) -> ChatSession:
    try:
        return await service.get_session(user, consultation_id)
    except ConsultationNotFound:
        raise HTTPException(status_code=404, detail="Consultation not found")
    except PersistenceError as e:
        logger.error(f"Could not load consultation {consultation_id}: {e}")
        raise HTTPException(status_code=503, detail="Could not load the consultation, please retry")


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "healthy", "service": "MediAI Consultation Backend"}


@app.post("/api/consultations")
async def create_consultation(
    request: NewConsultationRequest = None,
    user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    """
    Start a new chat.

    Chain of Thought:
    - If previous_consultation_id is given, save that chat as completed first
    - If the save fails, keep the user on the old chat (503)
    - If an opening message is given, answer it right away
    """
    request = request or NewConsultationRequest()
    try:
        reply = await service.new_consultation(user, request.previous_consultation_id, request.message)
    except ConsultationNotFound:
        raise HTTPException(status_code=404, detail="Consultation not found")
    except PersistenceError as e:
        logger.error(f"Could not start a new chat for {user.uid}: {e}")
        raise HTTPException(status_code=503, detail="Failed to save the current chat. Please try again.")
    except Exception as e:
        logger.exception(f"Error starting a new chat for {user.uid}")
        raise HTTPException(status_code=500, detail=f"Error starting chat: {str(e)}")
    return reply.model_dump(by_alias=True, mode="json")


@app.get("/api/consultations")
async def list_consultations(
    user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    try:
        consultations = await service.list_consultations(user)
    except PersistenceError as e:
        logger.error(f"Could not list consultations for {user.uid}: {e}")
        raise HTTPException(status_code=503, detail="Could not load consultations, please retry")
    return {"consultations": dump_list(consultations)}


@app.get("/api/consultations/{consultation_id}")
async def get_consultation(
    consultation_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    """Resume a consultation: messages, booking state and whether anything is unsynced."""
    try:
        view = await service.view(user, consultation_id)
    except ConsultationNotFound:
        raise HTTPException(status_code=404, detail="Consultation not found")
    except PersistenceError as e:
        logger.error(f"Could not load consultation {consultation_id}: {e}")
        raise HTTPException(status_code=503, detail="Could not load the consultation, please retry")
    return view.model_dump(by_alias=True, mode="json")


@app.post("/api/consultations/{consultation_id}/messages")
async def send_message(
    consultation_id: str,
    request: ChatRequest,
    user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    """
    Process a chat message and return the assistant's reply.

    Chain of Thought:
    - Reject empty messages
    - Reject plain chat while a booking is in progress (409)
    - Otherwise record the message, ask the assistant, record the reply
    """
    if not request.message.strip():
        raise HTTPException(status_code=400, detail="Message cannot be empty")

    session = await _session(service, user, consultation_id)
    try:
        reply = await session.send_message(request.message.strip())
    except Exception as e:
        logger.exception(f"Error processing message for consultation {consultation_id}")
        raise HTTPException(status_code=500, detail=f"Error processing message: {str(e)}")

    if reply.rejected:
        raise HTTPException(status_code=409, detail=reply.error)
    return reply.model_dump(by_alias=True, mode="json")


@app.post("/api/consultations/{consultation_id}/images")
async def analyze_image(
    consultation_id: str,
    file: UploadFile = File(...),
    prompt: str = Form(""),
    user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    session = await _session(service, user, consultation_id)
    data = await file.read()
    try:
        reply = await session.analyze_image(data, file.filename or "image", file.content_type or "", prompt.strip())
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MediaUploadError as e:
        logger.error(f"Image upload failed for consultation {consultation_id}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    except Exception as e:
        logger.exception(f"Error analyzing image for consultation {consultation_id}")
        raise HTTPException(status_code=500, detail=f"Error analyzing image: {str(e)}")

    if reply.rejected:
        raise HTTPException(status_code=409, detail=reply.error)
    return reply.model_dump(by_alias=True, mode="json")


@app.websocket("/api/consultations/{consultation_id}/speech")
async def dictate(
    websocket: WebSocket,
    consultation_id: str,
    user: CurrentUser = Depends(get_socket_user),
    service: ChatService = Depends(get_service),
):
    """
    Voice dictation into a consultation.

    Chain of Thought:
    - The browser runs speech recognition and sends {"text", "isFinal"} frames
    - Every frame is echoed back as a transcript event for live display
    - A final transcript is sent as a chat message and the reply is pushed back
    - Recognition stops on disconnect or when the browser reports an error
    """
    try:
        session = await service.get_session(user, consultation_id)
    except ConsultationNotFound:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Consultation not found")
    except PersistenceError as e:
        logger.error(f"Could not load consultation {consultation_id}: {e}")
        raise WebSocketException(code=status.WS_1011_INTERNAL_ERROR, reason="Could not load the consultation")

    await websocket.accept()
    try:
        async with TranscriptStream(FrameRecognizer(websocket.receive_json)) as stream:
            async for event in stream:
                await websocket.send_json({"type": "transcript", **event.model_dump(by_alias=True)})
                text = event.text.strip()
                if not event.is_final or not text:
                    continue
                reply = await session.send_message(text)
                await websocket.send_json({"type": "reply", **reply.model_dump(by_alias=True, mode="json")})
    except WebSocketDisconnect:
        logger.info(f"Dictation closed for consultation {consultation_id}")
    except SpeechRecognitionError as e:
        logger.warning(f"Speech recognition failed for consultation {consultation_id}: {e}")
        await websocket.send_json({"type": "error", "message": str(e)})
        await websocket.close()
    except Exception:
        logger.exception(f"Error during dictation for consultation {consultation_id}")
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)


@app.get("/api/consultations/{consultation_id}/booking")
async def get_booking(
    consultation_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    session = await _session(service, user, consultation_id)
    return session.booking.state.model_dump(by_alias=True, mode="json")


@app.post("/api/consultations/{consultation_id}/booking/start")
async def start_booking(
    consultation_id: str,
    request: BookingStartRequest = None,
    user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    session = await _session(service, user, consultation_id)
    response = await session.start_booking(request.specialty if request else None)
    return response.model_dump(by_alias=True, mode="json")


@app.post("/api/consultations/{consultation_id}/booking/doctor")
async def select_doctor(
    consultation_id: str,
    request: DoctorSelection,
    user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    session = await _session(service, user, consultation_id)
    response = await session.select_doctor(request.doctor_id)
    return response.model_dump(by_alias=True, mode="json")


@app.post("/api/consultations/{consultation_id}/booking/slot")
async def select_slot(
    consultation_id: str,
    request: SlotSelection,
    user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    session = await _session(service, user, consultation_id)
    response = await session.select_slot(request.date, request.start_time)
    return response.model_dump(by_alias=True, mode="json")


@app.post("/api/consultations/{consultation_id}/booking/cancel")
async def cancel_booking(
    consultation_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    session = await _session(service, user, consultation_id)
    response = await session.cancel_booking()
    return response.model_dump(by_alias=True, mode="json")


@app.get("/api/consultations/{consultation_id}/notifications")
async def drain_notifications(
    consultation_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    """Approval notifications raised since the last call; each is returned once."""
    await _session(service, user, consultation_id)
    return {"notifications": dump_list(service.drain_notifications(consultation_id))}


@app.get("/api/appointments")
async def list_appointments(
    user: CurrentUser = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    try:
        appointments = await service.appointments(user)
    except PersistenceError as e:
        logger.error(f"Could not load appointment history for {user.uid}: {e}")
        raise HTTPException(status_code=503, detail="Could not load appointments, please retry")
    return AppointmentList(appointments=appointments).model_dump(by_alias=True, mode="json")


@app.get("/api/symptom-logs")
async def list_symptom_logs(
    user: CurrentUser = Depends(get_current_user),
    diary: SymptomDiary = Depends(get_diary),
):
    """The caller's symptom diary, newest entry first."""
    try:
        logs = await diary.entries(user.uid)
    except PersistenceError as e:
        logger.error(f"Could not load symptom diary for {user.uid}: {e}")
        raise HTTPException(status_code=503, detail="Failed to load symptom diary. Please try again later.")
    return {"logs": dump_list(logs)}


@app.post("/api/symptom-logs")
async def log_symptom(
    request: SymptomLogRequest,
    user: CurrentUser = Depends(get_current_user),
    diary: SymptomDiary = Depends(get_diary),
):
    try:
        entry = await diary.log(user.uid, request.symptom)
    except InvalidArgument as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        logger.error(f"Could not log symptom for {user.uid}: {e}")
        raise HTTPException(status_code=503, detail="Failed to save the symptom. Please try again.")
    return entry.model_dump(by_alias=True, mode="json")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
