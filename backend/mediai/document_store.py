"""
Document-store backends for consultation transcripts and the symptom diary.

Two implementations share the same small surface:
- FirestoreDocumentStore: the hosted store, through firebase-admin
- InMemoryDocumentStore: process-local, used for development and tests

Both expose an "append to array field, de-duplicated by full value" write,
matching Firestore's ArrayUnion semantics.
"""

import copy
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core import exceptions
from google.cloud.firestore_v1.base_query import FieldFilter

from mediai.config import FIREBASE_CREDENTIALS_PATH

logger = logging.getLogger(__name__)


class FirestoreDocumentStore:
    def __init__(self, client=None):
        self._db = client or firestore.client()

    def server_timestamp(self):
        return firestore.SERVER_TIMESTAMP

    def add(self, collection: str, data: dict) -> str:
        _, doc_ref = self._db.collection(collection).add(data)
        return doc_ref.id

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        snapshot = self._db.collection(collection).document(doc_id).get()
        return snapshot.to_dict() if snapshot.exists else None

    def update(self, collection: str, doc_id: str, fields: dict):
        self._db.collection(collection).document(doc_id).update(fields)

    def array_union(self, collection: str, doc_id: str, field: str, values: List[Any], fields: Optional[dict] = None):
        update = dict(fields or {})
        update[field] = firestore.ArrayUnion(values)
        self._db.collection(collection).document(doc_id).update(update)

    def query(self, collection: str, field: str, value: Any, order_by: Optional[str] = None,
              descending: bool = False) -> List[Tuple[str, dict]]:
        query = self._db.collection(collection).where(filter=FieldFilter(field, "==", value))
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        docs = query.stream()
        return [(doc.id, doc.to_dict()) for doc in docs]


class InMemoryDocumentStore:
    def __init__(self):
        self.collections: Dict[str, Dict[str, dict]] = {}

    def server_timestamp(self):
        return datetime.now(timezone.utc)

    def _doc(self, collection: str, doc_id: str) -> dict:
        doc = self.collections.get(collection, {}).get(doc_id)
        if doc is None:
            raise exceptions.NotFound(f"No document to update: {collection}/{doc_id}")
        return doc

    def add(self, collection: str, data: dict) -> str:
        doc_id = uuid.uuid4().hex[:20]
        self.collections.setdefault(collection, {})[doc_id] = copy.deepcopy(data)
        return doc_id

    def get(self, collection: str, doc_id: str) -> Optional[dict]:
        doc = self.collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    def update(self, collection: str, doc_id: str, fields: dict):
        self._doc(collection, doc_id).update(copy.deepcopy(fields))

    def array_union(self, collection: str, doc_id: str, field: str, values: List[Any], fields: Optional[dict] = None):
        doc = self._doc(collection, doc_id)
        current = doc.setdefault(field, [])
        for value in values:
            if value not in current:
                current.append(copy.deepcopy(value))
        if fields:
            doc.update(copy.deepcopy(fields))

    def query(self, collection: str, field: str, value: Any, order_by: Optional[str] = None,
              descending: bool = False) -> List[Tuple[str, dict]]:
        results = [
            (doc_id, copy.deepcopy(doc))
            for doc_id, doc in self.collections.get(collection, {}).items()
            if doc.get(field) == value
        ]
        if order_by:
            # like Firestore, documents without the ordering field are left out
            results = [r for r in results if r[1].get(order_by) is not None]
            results.sort(key=lambda r: r[1][order_by], reverse=descending)
        return results


def init_firebase() -> bool:
    """Initialise the default Firebase app once. False when no credentials are configured."""
    if not FIREBASE_CREDENTIALS_PATH:
        return False
    if not firebase_admin._apps:
        cred = credentials.Certificate(FIREBASE_CREDENTIALS_PATH)
        firebase_admin.initialize_app(cred)
        logger.info("Firebase initialized successfully. SDK Version: %s", firebase_admin.__version__)
    return True


def build_document_store():
    """Firestore when service-account credentials are configured, in-memory otherwise."""
    if not init_firebase():
        logger.warning("FIREBASE_CREDENTIALS_PATH not set, consultations are kept in memory only")
        return InMemoryDocumentStore()
    return FirestoreDocumentStore()
