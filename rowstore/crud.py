import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from exceptions.exceptions import DatabaseError, NotFoundError, ValidationError
from rowstore.models import TABLES

logger = logging.getLogger(__name__)


def get_table(table: str):
    try:
        return TABLES[table]
    except KeyError:
        raise ValidationError(f"Unknown table {table}")


def row_to_dict(row) -> Dict[str, Any]:
    return {c.name: getattr(row, c.name) for c in row.__table__.columns}


def _prepare(model, values: Dict[str, Any]) -> Dict[str, Any]:
    columns = set(model.__table__.columns.keys())
    unknown = set(values) - columns
    if unknown:
        raise ValidationError(f"Unknown columns for {model.__tablename__}: {sorted(unknown)}")
    return {k: v.value if isinstance(v, Enum) else v for k, v in values.items()}


def _finish(db: Session, commit: bool) -> None:
    # without commit the caller owns the transaction and commits a batch at once
    if commit:
        db.commit()
    else:
        db.flush()


def select_rows(db: Session, table: str, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    model = get_table(table)
    filters = _prepare(model, filters or {})
    try:
        query = db.query(model)
        for column, value in filters.items():
            query = query.filter(getattr(model, column) == value)
        return [row_to_dict(row) for row in query.all()]
    except SQLAlchemyError as e:
        raise DatabaseError("select", str(e))


def insert_row(db: Session, table: str, values: Dict[str, Any], commit: bool = True) -> Dict[str, Any]:
    model = get_table(table)
    try:
        row = model(**_prepare(model, values))
        db.add(row)
        _finish(db, commit)
        db.refresh(row)
        return row_to_dict(row)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("insert", str(e))


def update_row(
    db: Session, table: str, row_id: str, patch: Dict[str, Any], commit: bool = True
) -> Dict[str, Any]:
    model = get_table(table)
    patch = _prepare(model, patch)
    patch.pop("id", None)
    try:
        row = db.query(model).filter(model.id == row_id).first()
        if row is None:
            raise NotFoundError(table, row_id)
        for column, value in patch.items():
            setattr(row, column, value)
        _finish(db, commit)
        db.refresh(row)
        return row_to_dict(row)
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("update", str(e))


def delete_row(db: Session, table: str, row_id: str, commit: bool = True) -> Dict[str, Any]:
    model = get_table(table)
    try:
        row = db.query(model).filter(model.id == row_id).first()
        if row is None:
            raise NotFoundError(table, row_id)
        deleted = row_to_dict(row)
        db.delete(row)
        _finish(db, commit)
        return deleted
    except SQLAlchemyError as e:
        db.rollback()
        raise DatabaseError("delete", str(e))
