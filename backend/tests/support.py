"""Test doubles shared across the suite."""

import asyncio
import json

from google.api_core import retry

from fake_appointment_api import TOKEN

PATIENT_ID = "patient-1"

FAST_RETRY = retry.Retry(
    predicate=retry.if_transient_error, initial=0.001, maximum=0.002, multiplier=1.0, deadline=0.05
)


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def write_token(path, token=TOKEN):
    path.write_text(json.dumps({"appointment_auth_token": token}))
