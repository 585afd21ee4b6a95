"""
Tenant event source and the poller checkpoint.

Events are read from an append-only table with a monotonic integer id. The
table and its column names come from EventSourceConfig, so they are checked
as identifiers and used through SQLAlchemy Core constructs, never formatted
into SQL text.
"""
import json
import logging
from typing import Callable, Optional

import sqlalchemy as sa
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from eventrelay.models.worker_checkpoint import WorkerCheckpoint
from eventrelay.schemas.events import ColumnMapping, RawEvent, validate_table_name
from eventrelay.utils.timezone import utcnow

logger = logging.getLogger(__name__)


def _payload(value) -> dict:
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except ValueError:
            return {}
    return value if isinstance(value, dict) else {}


class SqlEventSource:
    """Reads RawEvents with id > checkpoint in ascending id order."""

    def __init__(self, session_factory: Callable, table_name: str, mapping: Optional[ColumnMapping] = None):
        self._session_factory = session_factory
        self.mapping = mapping or ColumnMapping()
        schema, _, name = validate_table_name(table_name).rpartition(".")
        columns = [
            self.mapping.id, self.mapping.tenant_id, self.mapping.event_type, self.mapping.payload,
        ]
        if self.mapping.created_at:
            columns.append(self.mapping.created_at)
        self.table = sa.table(name, *(sa.column(c) for c in columns), schema=schema or None)

    def _to_event(self, row) -> Optional[RawEvent]:
        data = row._mapping
        tenant_id = data[self.mapping.tenant_id]
        event_type = data[self.mapping.event_type]
        if tenant_id is None or not event_type:
            logger.warning("Skipping source row %s without tenant or event type", data[self.mapping.id])
            return None
        return RawEvent(
            id=int(data[self.mapping.id]),
            tenant_id=str(tenant_id),
            event_type=str(event_type),
            payload=_payload(data[self.mapping.payload]),
            created_at=data[self.mapping.created_at] if self.mapping.created_at else None,
        )

    async def poll(self, since_id: int, limit: int) -> tuple[list[RawEvent], Optional[int]]:
        """
        Next batch after since_id. Returns (events, max id read); the max id
        also covers rows skipped as malformed so they are not re-read forever.
        """
        id_col = self.table.c[self.mapping.id]
        async with self._session_factory() as db:
            result = await db.execute(
                select(self.table).where(id_col > since_id).order_by(id_col.asc()).limit(limit)
            )
            rows = result.all()

        events = []
        max_id = None
        for row in rows:
            row_id = int(row._mapping[self.mapping.id])
            max_id = row_id if max_id is None else max(max_id, row_id)
            event = self._to_event(row)
            if event is not None:
                events.append(event)
        return events, max_id

    async def latest_id(self) -> int:
        async with self._session_factory() as db:
            result = await db.execute(select(func.max(self.table.c[self.mapping.id])))
            return int(result.scalar() or 0)


class CheckpointStore:
    """Durable last-processed id per worker. Only ever moves forward."""

    def __init__(self, session_factory: Callable):
        self._session_factory = session_factory

    async def load(self, worker_id: str) -> Optional[int]:
        async with self._session_factory() as db:
            checkpoint = await db.get(WorkerCheckpoint, worker_id)
            return checkpoint.last_processed_id if checkpoint else None

    async def advance(self, worker_id: str, new_id: int) -> bool:
        """Move the checkpoint to new_id if that is forward. Returns True if moved."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(WorkerCheckpoint)
                .where(
                    WorkerCheckpoint.worker_id == worker_id,
                    WorkerCheckpoint.last_processed_id < new_id,
                )
                .values(last_processed_id=new_id, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if result.rowcount == 1:
                return True

            if await db.get(WorkerCheckpoint, worker_id) is not None:
                return False
            db.add(WorkerCheckpoint(worker_id=worker_id, last_processed_id=new_id, updated_at=utcnow()))
            try:
                await db.commit()
                return True
            except IntegrityError:
                await db.rollback()

        # Another worker inserted it first
        return await self.advance(worker_id, new_id)
