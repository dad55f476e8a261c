"""
OEE Monitor - SQL Document Store

Primary store over SQLAlchemy's async engine. Collection, machine and the
collection's time range are pushed down to SQL; the remaining filters and
paging are applied to the fetched documents.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
import structlog

from oee_monitor.database import documents_table
from oee_monitor.persistence.base import (
    COLLECTION_TIME_FIELDS,
    DocumentQuery,
    DocumentStore,
    parse_timestamp,
)
from oee_monitor.utils.exceptions import NotFoundError, ValidationError

logger = structlog.get_logger()


def _naive_utc(value: Any) -> Optional[datetime]:
    moment = parse_timestamp(value)
    if moment is None:
        return None
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


class SqlDocumentStore(DocumentStore):
    """Document store backed by a single SQL table."""

    name = "sql"

    def __init__(self, engine: AsyncEngine):
        self._engine = engine

    def _row_values(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        time_field = COLLECTION_TIME_FIELDS.get(collection, "created_at")
        created_at = _naive_utc(document.get("created_at")) or _naive_utc(datetime.now(timezone.utc))
        return {
            "machine_id": document.get("machine_id"),
            "ts": _naive_utc(document.get(time_field)),
            "created_at": created_at,
            "data": document,
        }

    async def _fetch_one(self, conn: AsyncConnection, collection: str, doc_id: str) -> Dict[str, Any]:
        result = await conn.execute(
            select(documents_table.c.data).where(
                and_(documents_table.c.collection == collection, documents_table.c.id == doc_id)
            )
        )
        row = result.first()
        if row is None:
            raise NotFoundError(collection, doc_id)
        return dict(row.data)

    def _pushdown(self, collection: str, query: DocumentQuery):
        """Build SQL conditions for the pushed-down part of a query and the residual query."""
        conditions = [documents_table.c.collection == collection]
        residual_filters = dict(query.filters)

        if "machine_id" in residual_filters:
            conditions.append(documents_table.c.machine_id == residual_filters.pop("machine_id"))

        residual = DocumentQuery(
            filters=residual_filters,
            time_field=query.time_field,
            start=query.start,
            end=query.end,
            order_by=query.order_by,
            descending=query.descending,
            limit=query.limit,
            offset=query.offset,
        )

        if query.time_field and query.time_field == COLLECTION_TIME_FIELDS.get(collection):
            if query.start is not None:
                conditions.append(documents_table.c.ts >= _naive_utc(query.start))
            if query.end is not None:
                conditions.append(documents_table.c.ts <= _naive_utc(query.end))
            residual.time_field = None
            residual.start = None
            residual.end = None

        return conditions, residual

    async def get(self, collection: str, doc_id: str) -> Dict[str, Any]:
        async with self._engine.connect() as conn:
            return await self._fetch_one(conn, collection, doc_id)

    async def list(self, collection: str, query: DocumentQuery) -> List[Dict[str, Any]]:
        conditions, residual = self._pushdown(collection, query)
        async with self._engine.connect() as conn:
            result = await conn.execute(select(documents_table.c.data).where(and_(*conditions)))
            documents = [dict(row.data) for row in result]
        return residual.apply(documents)

    async def count(self, collection: str, query: DocumentQuery) -> int:
        conditions, residual = self._pushdown(collection, query.without_paging())
        async with self._engine.connect() as conn:
            if not residual.filters and residual.time_field is None:
                result = await conn.execute(
                    select(func.count()).select_from(documents_table).where(and_(*conditions))
                )
                return int(result.scalar() or 0)
            result = await conn.execute(select(documents_table.c.data).where(and_(*conditions)))
            return sum(1 for row in result if residual.matches(dict(row.data)))

    async def create(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        doc_id = document.get("id")
        if not doc_id:
            raise ValidationError("Document id is required")
        try:
            async with self._engine.begin() as conn:
                await conn.execute(
                    insert(documents_table).values(
                        collection=collection, id=str(doc_id), **self._row_values(collection, document)
                    )
                )
        except IntegrityError as e:
            raise ValidationError(
                f"Document already exists in {collection}", {"id": str(doc_id)}
            ) from e
        logger.debug("Document created", store=self.name, collection=collection, id=doc_id)
        return dict(document)

    async def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        async with self._engine.begin() as conn:
            current = await self._fetch_one(conn, collection, doc_id)
            merged = {**current, **changes, "id": doc_id}
            await conn.execute(
                update(documents_table)
                .where(and_(documents_table.c.collection == collection, documents_table.c.id == doc_id))
                .values(**self._row_values(collection, merged))
            )
        return merged

    async def delete(self, collection: str, doc_id: str) -> None:
        async with self._engine.begin() as conn:
            result = await conn.execute(
                delete(documents_table).where(
                    and_(documents_table.c.collection == collection, documents_table.c.id == doc_id)
                )
            )
            if result.rowcount == 0:
                raise NotFoundError(collection, doc_id)

    async def put(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        doc_id = document.get("id")
        if not doc_id:
            raise ValidationError("Document id is required")
        values = self._row_values(collection, document)
        async with self._engine.begin() as conn:
            result = await conn.execute(
                update(documents_table)
                .where(and_(documents_table.c.collection == collection, documents_table.c.id == str(doc_id)))
                .values(**values)
            )
            if result.rowcount == 0:
                await conn.execute(
                    insert(documents_table).values(collection=collection, id=str(doc_id), **values)
                )
        return dict(document)
