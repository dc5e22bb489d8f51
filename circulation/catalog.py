import logging
import threading
from datetime import datetime
from typing import Callable, Iterator, List, Optional

from circulation.models import Book, as_fields, as_utc, build, utcnow
from circulation.schemas import BookCreate, BookUpdate
from exceptions.exceptions import (
    BookNotAvailableError,
    BookNotFoundError,
    ConflictError,
    ValidationError,
)

logger = logging.getLogger(__name__)

RemovalGuard = Callable[[str], bool]


class CatalogStore:
    """Books held in memory, keeping ``0 <= available_copies <= total_copies``."""

    def __init__(self, lock: Optional[threading.RLock] = None):
        self._lock = lock or threading.RLock()
        self._books: dict[str, Book] = {}
        self._removal_guards: List[RemovalGuard] = []

    def add_removal_guard(self, guard: RemovalGuard) -> None:
        """Register a check returning True while a book must not be removed."""
        self._removal_guards.append(guard)

    def _require(self, book_id: str) -> Book:
        book = self._books.get(book_id)
        if book is None:
            raise BookNotFoundError(book_id)
        return book

    def __contains__(self, book_id: str) -> bool:
        with self._lock:
            return book_id in self._books

    def __len__(self) -> int:
        with self._lock:
            return len(self._books)

    def add_book(self, fields: BookCreate | dict) -> Book:
        data = as_fields(fields)
        total = data.get("total_copies")
        if total is None or total < 1:
            raise ValidationError("total_copies must be at least 1")
        requested = data.get("available_copies")
        if requested is None:
            requested = total
        if requested < 0:
            raise ValidationError("available_copies cannot be negative")
        data["available_copies"] = min(requested, total)
        book = build(Book, data)

        with self._lock:
            if book.id in self._books:
                raise ConflictError(f"Book with id {book.id} already exists")
            self._books[book.id] = book
        logger.info(f"Added book {book.id}: {book.title}")
        return book.model_copy()

    def update_book(self, book_id: str, fields: BookUpdate | dict) -> Book:
        patch = as_fields(fields, exclude_unset=True)
        patch.pop("id", None)
        patch.pop("created_at", None)
        with self._lock:
            current = self._require(book_id)
            merged = current.model_dump()
            merged.update({k: v for k, v in patch.items() if v is not None})
            if merged["total_copies"] < 0:
                raise ValidationError("total_copies cannot be negative")
            if merged["available_copies"] < 0:
                raise ValidationError("available_copies cannot be negative")
            merged["available_copies"] = min(merged["available_copies"], merged["total_copies"])
            merged["updated_at"] = utcnow()
            book = build(Book, merged)
            self._books[book_id] = book
        logger.info(f"Updated book {book_id}")
        return book.model_copy()

    def remove_book(self, book_id: str) -> Book:
        with self._lock:
            book = self._require(book_id)
            if any(guard(book_id) for guard in self._removal_guards):
                raise ConflictError(
                    f"Book with id {book_id} has open transactions and cannot be removed"
                )
            del self._books[book_id]
        logger.info(f"Removed book {book_id}")
        return book

    def get_book(self, book_id: str) -> Book:
        with self._lock:
            return self._require(book_id).model_copy()

    def find_books(self, predicate: Optional[Callable[[Book], bool]] = None) -> Iterator[Book]:
        with self._lock:
            snapshot = [book.model_copy() for book in self._books.values()]
        return (book for book in snapshot if predicate is None or predicate(book))

    def reserve_copy(self, book_id: str, now: Optional[datetime] = None) -> Book:
        with self._lock:
            book = self._require(book_id)
            if book.available_copies <= 0:
                raise BookNotAvailableError(book_id)
            book = book.model_copy(
                update={
                    "available_copies": book.available_copies - 1,
                    "updated_at": as_utc(now) if now else utcnow(),
                }
            )
            self._books[book_id] = book
            return book.model_copy()

    def release_copy(self, book_id: str, now: Optional[datetime] = None) -> Book:
        with self._lock:
            book = self._require(book_id)
            book = book.model_copy(
                update={
                    "available_copies": min(book.available_copies + 1, book.total_copies),
                    "updated_at": as_utc(now) if now else utcnow(),
                }
            )
            self._books[book_id] = book
            return book.model_copy()

    def merge_book(self, row: dict) -> Optional[Book]:
        """Upsert a book row from the change feed; stale rows are skipped."""
        data = dict(row)
        total = data.get("total_copies")
        if isinstance(total, int) and isinstance(data.get("available_copies"), int):
            data["available_copies"] = max(0, min(data["available_copies"], total))
        book = build(Book, data)
        with self._lock:
            current = self._books.get(book.id)
            if current is not None and book.updated_at < current.updated_at:
                logger.info(f"Skipping stale row for book {book.id}")
                return None
            self._books[book.id] = book
        return book.model_copy()

    def discard_book(self, book_id: str) -> bool:
        with self._lock:
            return self._books.pop(book_id, None) is not None

    def restore_book(self, book: Book) -> None:
        """Put back a record exactly as it was, e.g. when persisting a change failed."""
        with self._lock:
            self._books[book.id] = book.model_copy()
