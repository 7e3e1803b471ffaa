"""
Append-only, idempotent persistence of chat messages under a consultation.

Chain of Thought:
- The document store de-duplicates array appends by full value (ArrayUnion)
- The in-memory projection de-duplicates strictly by message id
- Loading messages live only in the projection; they are never persisted
- Transient write failures are retried with backoff; messages that still fail
  are queued and flushed with the next write so nothing is silently dropped
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from google.api_core import exceptions, retry
from pydantic.alias_generators import to_camel

from mediai.config import CONSULTATIONS_COLLECTION
from mediai.errors import PersistenceError
from mediai.models import Consultation, ConsultationStatus, Message

logger = logging.getLogger(__name__)

DEFAULT_RETRY = retry.Retry(
    predicate=retry.if_transient_error, initial=0.5, maximum=4.0, multiplier=2.0, deadline=15.0
)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


async def store_call(fn, *args, retry_policy: Optional[retry.Retry] = None):
    """Run a blocking document-store call off the event loop; store errors become PersistenceError."""
    target = retry_policy(fn) if retry_policy else fn
    try:
        return await asyncio.to_thread(target, *args)
    except (exceptions.GoogleAPICallError, exceptions.RetryError) as e:
        raise PersistenceError(str(e)) from e


def dedupe_messages(messages: Iterable[Message]) -> List[Message]:
    """Keep the first message seen for each id, preserving order."""
    seen = set()
    unique = []
    for message in messages:
        if message.id in seen:
            continue
        seen.add(message.id)
        unique.append(message)
    return unique


def hydrate_messages(raw_messages: Iterable[dict]) -> List[Message]:
    messages = []
    for raw in raw_messages or []:
        try:
            messages.append(Message.model_validate(raw))
        except ValueError as e:
            logger.warning(f"Skipping malformed stored message {raw!r}: {e}")
    return messages


class ChatTranscriptStore:
    def __init__(self, store, collection: str = CONSULTATIONS_COLLECTION, retry_policy: retry.Retry = DEFAULT_RETRY):
        self.store = store
        self.collection = collection
        self._retry = retry_policy
        self._projection: Dict[str, List[Message]] = {}
        self._pending: Dict[str, List[Message]] = {}

    async def _call(self, fn, *args, retried: bool = True):
        return await store_call(fn, *args, retry_policy=self._retry if retried else None)

    async def create_consultation(self, owner_id: str, first_message: Optional[Message] = None,
                                  title: Optional[str] = None) -> str:
        now = self.store.server_timestamp()
        data = {
            "userId": owner_id,
            "title": title or f"Chat {datetime.now().strftime('%Y-%m-%d')}",
            "date": now,
            "lastUpdated": now,
            "status": (ConsultationStatus.ACTIVE if first_message else ConsultationStatus.NEW).value,
            "messages": [first_message.to_wire()] if first_message else [],
            "symptoms": first_message.content if first_message else "",
        }
        # add() is not idempotent, so it is not retried
        consultation_id = await self._call(self.store.add, self.collection, data, retried=False)
        self._projection[consultation_id] = [first_message] if first_message else []
        logger.info(f"Created consultation {consultation_id} for user {owner_id}")
        return consultation_id

    def messages(self, consultation_id: str) -> List[Message]:
        return list(self._projection.get(consultation_id, []))

    def has_unsynced(self, consultation_id: str) -> bool:
        return bool(self._pending.get(consultation_id))

    def contains(self, consultation_id: str, message_id: str) -> bool:
        return any(m.id == message_id for m in self._projection.get(consultation_id, []))

    async def append_message(self, consultation_id: str, message: Message) -> bool:
        """
        Add a message to the transcript. Returns False if its id is already there.

        Raises PersistenceError when the write fails after retrying; the message
        is still visible in the projection and will be written with the next
        successful append.
        """
        projection = self._projection.setdefault(consultation_id, [])
        if any(m.id == message.id for m in projection):
            logger.debug(f"Message {message.id} already in consultation {consultation_id}")
            return False

        projection.append(message)
        if not message.is_loading:
            await self._persist(consultation_id, [message])
        return True

    def show_transient(self, consultation_id: str, message: Message):
        """Display-only message (e.g. a loading indicator); never persisted."""
        projection = self._projection.setdefault(consultation_id, [])
        if not any(m.id == message.id for m in projection):
            projection.append(message)

    def discard_transient(self, consultation_id: str, message_id: str):
        projection = self._projection.get(consultation_id, [])
        self._projection[consultation_id] = [
            m for m in projection if not (m.id == message_id and m.is_loading)
        ]

    async def replace_message(self, consultation_id: str, message_id: str, message: Message):
        """Swap a (transient) message in place and persist the replacement."""
        projection = self._projection.setdefault(consultation_id, [])
        for index, existing in enumerate(projection):
            if existing.id == message_id:
                projection[index] = message
                break
        else:
            projection.append(message)

        if not message.is_loading:
            await self._persist(consultation_id, [message])

    async def _persist(self, consultation_id: str, messages: List[Message]):
        batch = self._pending.pop(consultation_id, []) + messages
        try:
            await self._call(
                self.store.array_union,
                self.collection,
                consultation_id,
                "messages",
                [m.to_wire() for m in batch],
                {"lastUpdated": self.store.server_timestamp()},
            )
        except PersistenceError:
            self._pending[consultation_id] = batch
            logger.error(f"Failed to persist {len(batch)} message(s) to consultation {consultation_id}")
            raise

    async def update_consultation(self, consultation_id: str, **fields):
        update = {to_camel(key): value for key, value in fields.items()}
        update["lastUpdated"] = self.store.server_timestamp()
        await self._call(self.store.update, self.collection, consultation_id, update)

    async def finalize_consultation(self, consultation_id: str, messages: List[Message],
                                    diagnosis: Optional[str] = None, recommendations: Optional[str] = None):
        """Mark the consultation completed and write its full message list."""
        final = dedupe_messages(m for m in messages if not m.is_loading)
        update = {
            "status": ConsultationStatus.COMPLETED.value,
            "messages": [m.to_wire() for m in final],
            "lastUpdated": self.store.server_timestamp(),
        }
        if diagnosis is not None:
            update["diagnosis"] = diagnosis
        if recommendations is not None:
            update["recommendations"] = recommendations

        await self._call(self.store.update, self.collection, consultation_id, update)
        self._pending.pop(consultation_id, None)
        self._projection[consultation_id] = final

    def load_messages(self, consultation: Consultation) -> List[Message]:
        return dedupe_messages(consultation.messages)

    def _to_consultation(self, consultation_id: str, doc: dict) -> Consultation:
        raw_messages = doc.get("messages") or []
        consultation = Consultation.model_validate({**doc, "id": consultation_id, "messages": []})
        consultation.messages = hydrate_messages(raw_messages)
        return consultation

    async def get_consultation(self, consultation_id: str) -> Optional[Consultation]:
        """Load a consultation and rebuild the projection from the stored messages."""
        doc = await self._call(self.store.get, self.collection, consultation_id)
        if doc is None:
            return None

        consultation = self._to_consultation(consultation_id, doc)
        consultation.messages = self.load_messages(consultation)

        # keep local messages that have not reached the store yet
        stored_ids = {m.id for m in consultation.messages}
        local_only = [m for m in self._projection.get(consultation_id, []) if m.id not in stored_ids]
        self._projection[consultation_id] = consultation.messages + local_only
        return consultation

    async def list_consultations(self, owner_id: str) -> List[Consultation]:
        docs = await self._call(self.store.query, self.collection, "userId", owner_id)
        consultations = []
        for doc_id, doc in docs:
            try:
                consultation = self._to_consultation(doc_id, doc)
            except ValueError as e:
                logger.warning(f"Skipping malformed consultation {doc_id}: {e}")
                continue
            consultation.messages = self.load_messages(consultation)
            consultations.append(consultation)
        consultations.sort(key=lambda c: c.last_updated or c.created_at or _EPOCH, reverse=True)
        return consultations
