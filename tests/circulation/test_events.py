import asyncio
from datetime import timedelta

import pytest

from circulation.events import ChangeEvent, ChangeOperation, ChangeTable
from circulation.models import TransactionStatus
from conftest import DAY0
from exceptions.exceptions import BookNotFoundError, ValidationError


def book_row(**overrides):
    row = {
        "id": "book-1",
        "title": "Modern Psychology",
        "author": "Sarah Wilson",
        "category": "Human Science",
        "total_copies": 6,
        "available_copies": 4,
        "updated_at": DAY0,
    }
    row.update(overrides)
    return row


def test_insert_then_update_book(library):
    ingestor = library.ingestor
    assert ingestor.apply(ChangeEvent(table="books", operation="insert", row=book_row()))
    assert ingestor.apply(
        ChangeEvent(
            table=ChangeTable.BOOKS,
            operation=ChangeOperation.UPDATE,
            row=book_row(available_copies=2, updated_at=DAY0 + timedelta(minutes=1)),
        )
    )
    assert library.catalog.get_book("book-1").available_copies == 2
    assert ingestor.applied == 2


def test_stale_event_is_skipped(library):
    ingestor = library.ingestor
    ingestor.apply(ChangeEvent(table="books", operation="update", row=book_row(updated_at=DAY0 + timedelta(hours=1))))
    assert not ingestor.apply(ChangeEvent(table="books", operation="update", row=book_row(title="Old Title")))
    assert library.catalog.get_book("book-1").title == "Modern Psychology"
    assert ingestor.skipped == 1


def test_event_clamps_available_copies(library):
    library.ingestor.apply(ChangeEvent(table="books", operation="insert", row=book_row(available_copies=60)))
    assert library.catalog.get_book("book-1").available_copies == 6


def test_delete_events(library, borrowed, test_book, test_user):
    ingestor = library.ingestor
    assert not ingestor.apply(ChangeEvent(table="transactions", operation="delete", row={"id": borrowed.id}))
    assert len(library.engine) == 1

    assert ingestor.apply(ChangeEvent(table="books", operation="delete", row={"id": test_book.id}))
    with pytest.raises(BookNotFoundError):
        library.catalog.get_book(test_book.id)
    # the loan can still be closed once its book is gone
    returned = library.engine.record_return(borrowed.id, DAY0 + timedelta(days=1))
    assert returned.status == TransactionStatus.RETURNED


def test_event_without_id_is_rejected(library):
    with pytest.raises(ValidationError):
        library.ingestor.apply(ChangeEvent(table="users", operation="insert", row={"email": "x@library.com"}))


def test_transaction_event(library, test_user, test_book):
    row = {
        "id": "loan-1",
        "user_id": test_user.id,
        "user_name": test_user.name,
        "book_id": test_book.id,
        "book_title": test_book.title,
        "borrow_date": DAY0,
        "due_date": DAY0 + timedelta(days=14),
        "status": "borrowed",
        "fine_amount": "0",
        "updated_at": DAY0,
    }
    assert library.ingestor.apply(ChangeEvent(table="transactions", operation="insert", row=row))
    assert library.engine.get_transaction("loan-1", now=DAY0 + timedelta(days=15)).status == TransactionStatus.OVERDUE


@pytest.mark.asyncio
async def test_run_applies_submitted_events_in_order(library):
    ingestor = library.ingestor
    task = asyncio.create_task(ingestor.run())
    try:
        await ingestor.submit(ChangeEvent(table="books", operation="insert", row=book_row()))
        await ingestor.submit(ChangeEvent(table="books", operation="update", row={"id": "book-1", "title": ""}))
        await ingestor.submit(
            ChangeEvent(table="books", operation="update", row=book_row(total_copies=9, updated_at=DAY0 + timedelta(days=1)))
        )
        await ingestor.drain()
    finally:
        task.cancel()

    book = library.catalog.get_book("book-1")
    assert book.total_copies == 9
    assert book.title == "Modern Psychology"
    assert ingestor.applied == 2
