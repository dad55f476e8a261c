"""
OEE Monitor - Document Store Contract

Both stores behind the hybrid gateway implement ``DocumentStore``. Documents are
JSON-compatible dicts carrying a string ``id``; timestamps are ISO-8601 strings.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional


class Collections:
    """Collection names shared by every store."""
    MACHINES = "machines"
    PRODUCTION_RECORDS = "production_records"
    OEE_HISTORY = "oee_history"
    DOWNTIME_EVENTS = "downtime_events"
    ALERTS = "alerts"


# Field each collection is ranged on by time queries
COLLECTION_TIME_FIELDS = {
    Collections.MACHINES: "created_at",
    Collections.PRODUCTION_RECORDS: "start_time",
    Collections.OEE_HISTORY: "timestamp",
    Collections.DOWNTIME_EVENTS: "start_time",
    Collections.ALERTS: "created_at",
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or datetime into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        moment = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass
class DocumentQuery:
    """
    Filter, range and page a collection.

    ``filters`` are exact-match equality on top-level fields. ``start`` and
    ``end`` bound ``time_field`` inclusively. ``order_by`` must name a
    timestamp field.
    """

    filters: Dict[str, Any] = field(default_factory=dict)
    time_field: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    order_by: str = "created_at"
    descending: bool = True
    limit: Optional[int] = None
    offset: int = 0

    def without_paging(self) -> "DocumentQuery":
        return replace(self, limit=None, offset=0)

    def matches(self, document: Dict[str, Any]) -> bool:
        for key, expected in self.filters.items():
            if document.get(key) != expected:
                return False

        if self.time_field and (self.start is not None or self.end is not None):
            moment = parse_timestamp(document.get(self.time_field))
            if moment is None:
                return False
            if self.start is not None and moment < parse_timestamp(self.start):
                return False
            if self.end is not None and moment > parse_timestamp(self.end):
                return False

        return True

    def apply(self, documents: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Filter, order and page documents in memory."""
        selected = [doc for doc in documents if self.matches(doc)]
        selected.sort(
            key=lambda doc: parse_timestamp(doc.get(self.order_by)) or _EPOCH,
            reverse=self.descending
        )
        if self.offset:
            selected = selected[self.offset:]
        if self.limit is not None:
            selected = selected[:self.limit]
        return selected


class DocumentStore(ABC):
    """Async document store keyed by (collection, id)."""

    name: str = "store"

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Dict[str, Any]:
        """Return a document; raise NotFoundError when absent."""

    @abstractmethod
    async def list(self, collection: str, query: DocumentQuery) -> List[Dict[str, Any]]:
        """Return the documents matching a query."""

    @abstractmethod
    async def count(self, collection: str, query: DocumentQuery) -> int:
        """Count the documents matching a query, ignoring paging."""

    @abstractmethod
    async def create(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a document that carries its own id."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Merge changes into a document and return it; raise NotFoundError when absent."""

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Delete a document; raise NotFoundError when absent."""

    @abstractmethod
    async def put(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        """Insert or replace a document by id."""
