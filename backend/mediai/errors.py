"""Error taxonomy shared by the gateway, the transcript store and the booking flow."""

from typing import Optional


class MediAIError(Exception):
    """Base class for errors raised by this package."""


class InvalidArgument(MediAIError):
    """Required booking fields are missing. Raised before any network call."""


class AuthRequired(MediAIError):
    """The appointment system has no valid bearer token for this user."""


class GatewayError(MediAIError):
    """Non-2xx (or transport failure) from the appointment REST API."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PersistenceError(MediAIError):
    """A transcript write could not be persisted after retrying."""
