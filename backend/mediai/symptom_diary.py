"""
Symptom diary: short free-text symptom notes kept per user, newest first.

Entries are stored one document each, with a server timestamp, outside any
consultation.
"""

import logging
from typing import List

from google.api_core import retry

from mediai.config import SYMPTOM_LOGS_COLLECTION
from mediai.errors import InvalidArgument
from mediai.models import SymptomLog, utcnow
from mediai.transcript import DEFAULT_RETRY, store_call

logger = logging.getLogger(__name__)


class SymptomDiary:
    def __init__(self, store, collection: str = SYMPTOM_LOGS_COLLECTION, retry_policy: retry.Retry = DEFAULT_RETRY):
        self.store = store
        self.collection = collection
        self._retry = retry_policy

    async def log(self, user_id: str, symptom: str) -> SymptomLog:
        symptom = (symptom or "").strip()
        if not symptom:
            raise InvalidArgument("Symptom cannot be empty")

        data = {"userId": user_id, "symptom": symptom, "timestamp": self.store.server_timestamp()}
        # add is not idempotent, so it is not retried
        log_id = await store_call(self.store.add, self.collection, data)
        logger.info(f"Logged symptom {log_id} for user {user_id}")
        return SymptomLog(id=log_id, user_id=user_id, symptom=symptom, timestamp=utcnow())

    async def entries(self, user_id: str) -> List[SymptomLog]:
        docs = await store_call(
            self.store.query, self.collection, "userId", user_id, "timestamp", True, retry_policy=self._retry
        )
        logs = []
        for doc_id, doc in docs:
            try:
                logs.append(SymptomLog.model_validate({**doc, "id": doc_id}))
            except ValueError as e:
                logger.warning(f"Skipping malformed symptom log {doc_id}: {e}")
        return logs
