"""
Read-only access to the appointment API bearer token.

The token is issued by the appointment system's login/verification flow, which
writes it into a small JSON file under a fixed key. This package only reads it.
"""

import json
import logging
import os
from typing import Optional

from mediai.config import APPOINTMENT_TOKEN_KEY, APPOINTMENT_TOKEN_PATH

logger = logging.getLogger(__name__)


class CredentialStore:
    """Reads the token on every call so a fresh login is picked up without restart."""

    def __init__(self, path: str = APPOINTMENT_TOKEN_PATH, key: str = APPOINTMENT_TOKEN_KEY):
        self.path = path
        self.key = key

    def get_token(self) -> Optional[str]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read credential file {self.path}: {e}")
            return None
        token = data.get(self.key) if isinstance(data, dict) else None
        return token or None
