import pytest

from circulation.models import BookCategory
from circulation.schemas import BookCreate, BookUpdate
from exceptions.exceptions import (
    BookNotAvailableError,
    BookNotFoundError,
    ConflictError,
    ValidationError,
)


def test_add_book_defaults_available_to_total(library):
    book = library.catalog.add_book(
        BookCreate(title="Advanced Calculus", author="Robert Smith", category=BookCategory.MATHS, total_copies=8)
    )
    assert book.total_copies == 8
    assert book.available_copies == 8
    assert book.id in library.catalog


def test_add_book_clamps_requested_available_copies(library):
    book = library.catalog.add_book(
        {"title": "Advanced Calculus", "author": "Robert Smith", "total_copies": 3, "available_copies": 10}
    )
    assert book.available_copies == 3


@pytest.mark.parametrize(
    "fields",
    [
        {"title": "", "author": "Robert Smith", "total_copies": 1},
        {"title": "Advanced Calculus", "author": "   ", "total_copies": 1},
        {"title": "Advanced Calculus", "author": "Robert Smith", "total_copies": 0},
        {"title": "Advanced Calculus", "author": "Robert Smith", "total_copies": 2, "available_copies": -1},
        {"title": "Advanced Calculus", "author": "Robert Smith", "total_copies": 2, "category": "Poetry"},
    ],
)
def test_add_book_rejects_invalid_fields(library, fields):
    with pytest.raises(ValidationError):
        library.catalog.add_book(fields)
    assert len(library.catalog) == 0


def test_update_book_clamps_available_to_new_total(library, test_book):
    updated = library.catalog.update_book(test_book.id, {"total_copies": 0})
    assert updated.total_copies == 0
    assert updated.available_copies == 0


def test_update_book_lowering_total_keeps_smaller_available(library, shelf):
    calculus = shelf[0]
    updated = library.catalog.update_book(calculus.id, BookUpdate(total_copies=6))
    assert updated.available_copies == 5
    updated = library.catalog.update_book(calculus.id, BookUpdate(total_copies=2))
    assert updated.available_copies == 2


def test_update_book_revalidates_merged_record(library, test_book):
    with pytest.raises(ValidationError):
        library.catalog.update_book(test_book.id, {"title": " "})
    with pytest.raises(ValidationError):
        library.catalog.update_book(test_book.id, {"total_copies": -1})
    assert library.catalog.get_book(test_book.id).title == "Quantum Physics Explained"


def test_update_book_bumps_updated_at(library, test_book):
    updated = library.catalog.update_book(test_book.id, {"publisher": "Physics Press"})
    assert updated.publisher == "Physics Press"
    assert updated.updated_at >= test_book.updated_at
    assert updated.created_at == test_book.created_at


def test_update_unknown_book(library):
    with pytest.raises(BookNotFoundError):
        library.catalog.update_book("missing", {"title": "Anything"})


def test_remove_book_blocked_by_open_transaction(library, borrowed, test_book):
    with pytest.raises(ConflictError):
        library.catalog.remove_book(test_book.id)
    assert test_book.id in library.catalog


def test_remove_book_after_return(library, borrowed, test_book):
    library.engine.record_return(borrowed.id, borrowed.due_date)
    library.catalog.remove_book(test_book.id)
    assert test_book.id not in library.catalog


def test_find_books_is_lazy_snapshot(library, shelf):
    results = library.catalog.find_books(lambda book: book.category == BookCategory.NOVELS)
    library.catalog.add_book({"title": "Emma", "author": "Jane Austen", "category": BookCategory.NOVELS, "total_copies": 1})
    assert [book.title for book in results] == ["Pride and Prejudice"]


def test_returned_books_are_copies(library, test_book):
    book = library.catalog.get_book(test_book.id)
    book.available_copies = 99
    assert library.catalog.get_book(test_book.id).available_copies == 1


def test_reserve_and_release_stay_in_bounds(library, test_book):
    assert library.catalog.reserve_copy(test_book.id).available_copies == 0
    with pytest.raises(BookNotAvailableError):
        library.catalog.reserve_copy(test_book.id)
    assert library.catalog.release_copy(test_book.id).available_copies == 1
    assert library.catalog.release_copy(test_book.id).available_copies == 1


def test_merge_book_clamps_and_skips_stale_rows(library, test_book):
    row = test_book.model_dump() | {"total_copies": 2, "available_copies": 7}
    merged = library.catalog.merge_book(row)
    assert merged.available_copies == 2

    stale = test_book.model_dump() | {"updated_at": test_book.updated_at.replace(year=2000)}
    assert library.catalog.merge_book(stale) is None
    assert library.catalog.get_book(test_book.id).total_copies == 2
