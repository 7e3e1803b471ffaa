import pytest

from fake_appointment_api import FakeAppointmentAPI
from mediai.appointment_cache import AppointmentCache
from mediai.booking_flow import BookingFlowController
from mediai.credentials import CredentialStore
from mediai.document_store import InMemoryDocumentStore
from mediai.gateway import AppointmentGateway
from mediai.poller import StatusPoller
from mediai.transcript import ChatTranscriptStore
from support import FAST_RETRY, PATIENT_ID, FakeClock, write_token


@pytest.fixture
def credentials(tmp_path):
    path = tmp_path / "credentials.json"
    write_token(path)
    return CredentialStore(str(path))


@pytest.fixture
def logged_out(tmp_path):
    return CredentialStore(str(tmp_path / "missing.json"))


@pytest.fixture
def api():
    return FakeAppointmentAPI()


@pytest.fixture
def gateway(api, credentials):
    return AppointmentGateway(credentials, client=api.client())


@pytest.fixture
def document_store():
    return InMemoryDocumentStore()


@pytest.fixture
def transcript(document_store):
    return ChatTranscriptStore(document_store, retry_policy=FAST_RETRY)


@pytest.fixture
def cache():
    return AppointmentCache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def poller(gateway, transcript, cache, clock):
    poller = StatusPoller(gateway, transcript, cache, interval=30, max_duration=300, sleep=clock.sleep, clock=clock)
    yield poller
    await poller.shutdown()


@pytest.fixture
async def consultation_id(transcript):
    return await transcript.create_consultation(PATIENT_ID)


@pytest.fixture
def controller(consultation_id, gateway, transcript, poller, cache):
    return BookingFlowController(
        consultation_id=consultation_id,
        patient_id=PATIENT_ID,
        gateway=gateway,
        transcript=transcript,
        poller=poller,
        cache=cache,
        reason="Chest pain when climbing stairs",
    )