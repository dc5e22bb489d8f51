"""Request/response access to the row store plus its change feed.

Every committed insert, update or delete is announced to the subscribed
listeners, in commit order, as a ``ChangeEvent``.
"""

import contextlib
import logging
import threading
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from circulation.events import ChangeEvent, ChangeOperation
from exceptions.exceptions import DatabaseError
from rowstore.crud import delete_row, insert_row, select_rows, update_row

logger = logging.getLogger(__name__)

ChangeListener = Callable[[ChangeEvent], None]


class RowChange(NamedTuple):
    operation: ChangeOperation
    table: str
    row_id: Optional[str] = None
    values: Optional[Dict[str, Any]] = None

    @classmethod
    def insert(cls, table: str, row: Dict[str, Any] | BaseModel) -> "RowChange":
        if isinstance(row, BaseModel):
            row = row.model_dump()
        return cls(ChangeOperation.INSERT, table, row.get("id"), row)

    @classmethod
    def update(cls, table: str, row_id: str, patch: Dict[str, Any]) -> "RowChange":
        return cls(ChangeOperation.UPDATE, table, row_id, patch)

    @classmethod
    def delete(cls, table: str, row_id: str) -> "RowChange":
        return cls(ChangeOperation.DELETE, table, row_id)


class RowStoreGateway:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self._listeners: List[ChangeListener] = []
        # commit and notification happen together so listeners see commit order
        self._write_lock = threading.Lock()

    @contextlib.contextmanager
    def get_session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self, table: str, operation: ChangeOperation, row: Dict[str, Any]) -> None:
        event = ChangeEvent(table=table, operation=operation, row=row)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Change listener failed on {table} {row.get('id')}: {e}")

    def _apply(self, db, change: RowChange) -> Dict[str, Any]:
        if change.operation == ChangeOperation.INSERT:
            return insert_row(db, change.table, change.values, commit=False)
        if change.operation == ChangeOperation.UPDATE:
            return update_row(db, change.table, change.row_id, change.values, commit=False)
        return delete_row(db, change.table, change.row_id, commit=False)

    def write_many(self, changes: Iterable[RowChange]) -> List[Dict[str, Any]]:
        """Commit all changes in one transaction; none of them on failure."""
        changes = list(changes)
        with self._write_lock, self.get_session() as db:
            try:
                rows = [self._apply(db, change) for change in changes]
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise DatabaseError("commit", str(e))
            except Exception:
                db.rollback()
                raise
            for change, row in zip(changes, rows):
                self._notify(change.table, change.operation, row)
        for change in changes:
            logger.info(f"Committed {change.operation.value} of {change.table} row {change.row_id}")
        return rows

    def select(self, table: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        with self.get_session() as db:
            return select_rows(db, table, filters)

    def insert(self, table: str, row: Dict[str, Any] | BaseModel) -> Dict[str, Any]:
        return self.write_many([RowChange.insert(table, row)])[0]

    def update(self, table: str, row_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        return self.write_many([RowChange.update(table, row_id, patch)])[0]

    def delete(self, table: str, row_id: str) -> Dict[str, Any]:
        return self.write_many([RowChange.delete(table, row_id)])[0]
