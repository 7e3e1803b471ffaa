import asyncio

from mediai.appointment_cache import AppointmentCache
from mediai.credentials import CredentialStore
from mediai.models import Appointment, AppointmentStatus


async def test_cache_survives_restart(tmp_path):
    path = str(tmp_path / "cache" / "appointments.json")
    cache = AppointmentCache(path)
    await cache.put(Appointment(appointment_id="a1", doctor_name="Dr. Rajesh Kumar", date="2025-03-10", time="09:00"))

    await cache.update_status("a1", AppointmentStatus.APPROVED, time="11:00", date=None)

    reloaded = AppointmentCache(path).get("a1")
    assert reloaded.status == AppointmentStatus.APPROVED
    assert (reloaded.date, reloaded.time) == ("2025-03-10", "11:00")


async def test_concurrent_writes_keep_every_appointment(tmp_path):
    path = str(tmp_path / "appointments.json")
    cache = AppointmentCache(path)

    await asyncio.gather(*(cache.put(Appointment(appointment_id=f"a{i}")) for i in range(5)))

    assert sorted(a.appointment_id for a in AppointmentCache(path).all()) == ["a0", "a1", "a2", "a3", "a4"]


async def test_update_of_unknown_appointment_is_ignored():
    assert await AppointmentCache().update_status("missing", AppointmentStatus.CANCELLED) is None


def test_unreadable_cache_file_starts_empty(tmp_path):
    path = tmp_path / "appointments.json"
    path.write_text("{not json")

    assert AppointmentCache(str(path)).all() == []


def test_token_is_read_on_every_call(tmp_path):
    path = tmp_path / "credentials.json"
    store = CredentialStore(str(path))
    assert store.get_token() is None

    path.write_text('{"appointment_auth_token": "fresh"}')
    assert store.get_token() == "fresh"

    path.write_text('{"appointment_auth_token": ""}')
    assert store.get_token() is None


def test_corrupt_credentials_mean_logged_out(tmp_path):
    path = tmp_path / "credentials.json"
    path.write_text("[]")
    assert CredentialStore(str(path)).get_token() is None

    path.write_text("{broken")
    assert CredentialStore(str(path)).get_token() is None
