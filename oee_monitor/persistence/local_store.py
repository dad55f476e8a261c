"""
OEE Monitor - Local Document Store

In-process fallback store. Documents live in one ordered dict per collection
and are deep-copied on the way in and out, so callers never share state with
the store.
"""

import copy
import threading
from collections import OrderedDict
from typing import Any, Dict, List

import structlog

from oee_monitor.persistence.base import DocumentQuery, DocumentStore
from oee_monitor.utils.exceptions import NotFoundError, ValidationError

logger = structlog.get_logger()


class LocalDocumentStore(DocumentStore):
    """In-memory document store used as the gateway's fallback."""

    name = "local"

    def __init__(self):
        self._collections: Dict[str, "OrderedDict[str, Dict[str, Any]]"] = {}
        self._lock = threading.RLock()

    def _collection(self, collection: str) -> "OrderedDict[str, Dict[str, Any]]":
        return self._collections.setdefault(collection, OrderedDict())

    @staticmethod
    def _document_id(document: Dict[str, Any]) -> str:
        doc_id = document.get("id")
        if not doc_id:
            raise ValidationError("Document id is required")
        return str(doc_id)

    async def get(self, collection: str, doc_id: str) -> Dict[str, Any]:
        with self._lock:
            document = self._collection(collection).get(doc_id)
            if document is None:
                raise NotFoundError(collection, doc_id)
            return copy.deepcopy(document)

    async def list(self, collection: str, query: DocumentQuery) -> List[Dict[str, Any]]:
        with self._lock:
            selected = query.apply(self._collection(collection).values())
            return copy.deepcopy(selected)

    async def count(self, collection: str, query: DocumentQuery) -> int:
        with self._lock:
            return sum(1 for doc in self._collection(collection).values() if query.matches(doc))

    async def create(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        doc_id = self._document_id(document)
        with self._lock:
            documents = self._collection(collection)
            if doc_id in documents:
                raise ValidationError(f"{collection} document already exists", {"id": doc_id})
            documents[doc_id] = copy.deepcopy(document)
            return copy.deepcopy(document)

    async def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            documents = self._collection(collection)
            if doc_id not in documents:
                raise NotFoundError(collection, doc_id)
            merged = {**documents[doc_id], **copy.deepcopy(changes), "id": doc_id}
            documents[doc_id] = merged
            return copy.deepcopy(merged)

    async def delete(self, collection: str, doc_id: str) -> None:
        with self._lock:
            documents = self._collection(collection)
            if doc_id not in documents:
                raise NotFoundError(collection, doc_id)
            del documents[doc_id]

    async def put(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        doc_id = self._document_id(document)
        with self._lock:
            self._collection(collection)[doc_id] = copy.deepcopy(document)
            return copy.deepcopy(document)

    def stats(self) -> Dict[str, int]:
        """Document counts per collection."""
        with self._lock:
            return {name: len(documents) for name, documents in self._collections.items()}
