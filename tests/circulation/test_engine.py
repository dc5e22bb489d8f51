import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from circulation.engine import recompute_status
from circulation.fines import FlatDailyRate
from circulation.models import TransactionStatus
from circulation.session import SessionContext
from conftest import DAY0
from exceptions.exceptions import (
    BookNotAvailableError,
    BookNotFoundError,
    StateError,
    TransactionNotFoundError,
    UserNotFoundError,
    ValidationError,
)


def test_borrow_decrements_copies(library, borrowed, test_book, test_user):
    assert borrowed.status == TransactionStatus.BORROWED
    assert borrowed.fine_amount == Decimal("0.00")
    assert borrowed.return_date is None
    assert borrowed.user_name == test_user.name
    assert borrowed.book_title == test_book.title
    assert library.catalog.get_book(test_book.id).available_copies == 0


def test_borrow_with_no_copies_creates_nothing(library, borrowed, test_user, test_book):
    with pytest.raises(BookNotAvailableError):
        library.engine.borrow(test_user.id, test_book.id, DAY0, DAY0 + timedelta(days=7))
    assert len(library.engine) == 1
    assert library.catalog.get_book(test_book.id).available_copies == 0


def test_borrow_unknown_user_or_book(library, test_user, test_book):
    with pytest.raises(UserNotFoundError):
        library.engine.borrow("ghost", test_book.id, DAY0, DAY0 + timedelta(days=7))
    with pytest.raises(BookNotFoundError):
        library.engine.borrow(test_user.id, "ghost", DAY0, DAY0 + timedelta(days=7))
    assert library.catalog.get_book(test_book.id).available_copies == 1


@pytest.mark.parametrize("days", [0, -3])
def test_borrow_rejects_due_date_not_after_borrow_date(library, test_user, test_book, days):
    with pytest.raises(ValidationError):
        library.engine.borrow(test_user.id, test_book.id, DAY0, DAY0 + timedelta(days=days))
    assert len(library.engine) == 0
    assert library.catalog.get_book(test_book.id).available_copies == 1


def test_borrow_records_session_user(library, admin, test_user, test_book):
    session = SessionContext(token="t", user=admin)
    transaction = library.engine.borrow(
        test_user.id, test_book.id, DAY0, DAY0 + timedelta(days=14), session=session
    )
    assert transaction.recorded_by == admin.id


def test_borrow_then_return_restores_copies(library, shelf, test_user):
    calculus = shelf[0]
    transaction = library.engine.borrow(test_user.id, calculus.id, DAY0, DAY0 + timedelta(days=14))
    assert library.catalog.get_book(calculus.id).available_copies == 4
    library.engine.record_return(transaction.id, DAY0 + timedelta(days=1))
    assert library.catalog.get_book(calculus.id).available_copies == 5


def test_overdue_example(library, borrowed, test_book):
    later = DAY0 + timedelta(days=20)
    overdue = library.engine.recompute_status(borrowed, later)
    assert overdue.status == TransactionStatus.OVERDUE
    assert overdue.fine_amount == Decimal("3.00")

    returned = library.engine.record_return(borrowed.id, later)
    assert returned.status == TransactionStatus.RETURNED
    assert returned.return_date == later
    assert returned.fine_amount == Decimal("3.00")
    assert library.catalog.get_book(test_book.id).available_copies == 1

    much_later = library.engine.get_transaction(borrowed.id, now=DAY0 + timedelta(days=60))
    assert much_later.status == TransactionStatus.RETURNED
    assert much_later.fine_amount == Decimal("3.00")


def test_return_on_time_has_no_fine(library, borrowed):
    returned = library.engine.record_return(borrowed.id, borrowed.due_date)
    assert returned.fine_amount == Decimal("0.00")


def test_partial_day_counts_as_a_day(library, borrowed):
    returned = library.engine.record_return(borrowed.id, borrowed.due_date + timedelta(hours=2))
    assert returned.fine_amount == Decimal("0.50")


def test_double_return_is_a_state_error(library, borrowed):
    library.engine.record_return(borrowed.id, DAY0 + timedelta(days=3))
    with pytest.raises(StateError):
        library.engine.record_return(borrowed.id, DAY0 + timedelta(days=4))


def test_return_before_borrow_date(library, borrowed):
    with pytest.raises(ValidationError):
        library.engine.record_return(borrowed.id, DAY0 - timedelta(days=1))


def test_return_unknown_transaction(library):
    with pytest.raises(TransactionNotFoundError):
        library.engine.record_return("missing", DAY0)


def test_return_never_exceeds_total_copies(library, borrowed, test_book):
    library.catalog.update_book(test_book.id, {"total_copies": 1, "available_copies": 1})
    library.engine.record_return(borrowed.id, DAY0 + timedelta(days=2))
    book = library.catalog.get_book(test_book.id)
    assert book.available_copies == book.total_copies == 1


def test_recompute_status_is_pure_and_idempotent(borrowed):
    policy = FlatDailyRate("0.50")
    now = DAY0 + timedelta(days=17)
    first = recompute_status(borrowed, now, policy)
    second = recompute_status(first, now, policy)
    assert first.status == second.status == TransactionStatus.OVERDUE
    assert first.fine_amount == second.fine_amount == Decimal("1.50")
    assert borrowed.status == TransactionStatus.BORROWED


def test_recompute_status_before_due_date(borrowed):
    current = recompute_status(borrowed, DAY0 + timedelta(days=14), FlatDailyRate("0.50"))
    assert current.status == TransactionStatus.BORROWED
    assert current.fine_amount == Decimal("0.00")


def test_listing_derives_overdue(library, borrowed, shelf, test_user):
    library.engine.borrow(test_user.id, shelf[1].id, DAY0 + timedelta(days=5), DAY0 + timedelta(days=30))
    listed = library.engine.list_transactions(DAY0 + timedelta(days=20))
    assert [t.status for t in listed] == [TransactionStatus.BORROWED, TransactionStatus.OVERDUE]
    # stored record keeps the status it was created with
    assert library.engine.snapshot()[0].status == TransactionStatus.BORROWED


def test_merge_transaction_does_not_reopen_returned(library, borrowed):
    returned = library.engine.record_return(borrowed.id, DAY0 + timedelta(days=2))
    assert library.engine.merge_transaction(borrowed.model_dump() | {"updated_at": returned.updated_at}) is None
    assert library.engine.get_transaction(borrowed.id).status == TransactionStatus.RETURNED


def test_concurrent_borrows_of_last_copy(library, test_user, test_book):
    workers = 8
    barrier = threading.Barrier(workers)
    outcomes = []

    def attempt():
        barrier.wait()
        try:
            library.engine.borrow(test_user.id, test_book.id, DAY0, DAY0 + timedelta(days=14))
            outcomes.append("borrowed")
        except BookNotAvailableError:
            outcomes.append("unavailable")

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["borrowed"] + ["unavailable"] * (workers - 1)
    assert len(library.engine) == 1
    assert library.catalog.get_book(test_book.id).available_copies == 0
