"""Change feed ingestion.

Row-level changes committed to the row store arrive as ``ChangeEvent``
messages.  ``EventIngestor`` merges them into the in-memory stores in
arrival order; the async ``run`` loop is the single writer fed by
``submit``.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field

from circulation.catalog import CatalogStore
from circulation.directory import DirectoryStore
from circulation.engine import CirculationEngine
from circulation.models import UtcDatetime, utcnow
from exceptions.exceptions import LibraryException, ValidationError

logger = logging.getLogger(__name__)


class ChangeTable(str, Enum):
    BOOKS = "books"
    USERS = "users"
    TRANSACTIONS = "transactions"


class ChangeOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    table: ChangeTable
    operation: ChangeOperation
    row: Dict[str, Any]
    committed_at: UtcDatetime = Field(default_factory=utcnow)

    @property
    def record_id(self) -> str:
        return str(self.row.get("id", ""))


class EventIngestor:
    def __init__(
        self,
        catalog: CatalogStore,
        directory: DirectoryStore,
        engine: CirculationEngine,
    ):
        self.catalog = catalog
        self.directory = directory
        self.engine = engine
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()
        self.applied = 0
        self.skipped = 0

    def apply(self, event: ChangeEvent) -> bool:
        """Merge one event; returns False when it was skipped."""
        if not event.record_id:
            raise ValidationError(f"{event.table.value} change event carries no row id")

        if event.operation == ChangeOperation.DELETE:
            applied = self._apply_delete(event)
        elif event.table == ChangeTable.BOOKS:
            applied = self.catalog.merge_book(event.row) is not None
        elif event.table == ChangeTable.USERS:
            applied = self.directory.merge_user(event.row) is not None
        else:
            applied = self.engine.merge_transaction(event.row) is not None

        if applied:
            self.applied += 1
        else:
            self.skipped += 1
        return applied

    def _apply_delete(self, event: ChangeEvent) -> bool:
        if event.table == ChangeTable.BOOKS:
            return self.catalog.discard_book(event.record_id)
        if event.table == ChangeTable.USERS:
            return self.directory.discard_user(event.record_id)
        logger.warning(f"Ignoring delete of transaction {event.record_id}; transactions are never deleted")
        return False

    async def submit(self, event: ChangeEvent) -> None:
        await self._queue.put(event)

    async def drain(self) -> None:
        await self._queue.join()

    async def run(self) -> None:
        logger.info("Change feed ingestion started")
        while True:
            event = await self._queue.get()
            try:
                self.apply(event)
            except LibraryException as e:
                logger.error(
                    f"Rejected {event.operation.value} on {event.table.value} "
                    f"{event.record_id}: {e}"
                )
            finally:
                self._queue.task_done()
