"""Borrow/return lifecycle over the catalog and the directory.

A transaction moves ``borrowed -> returned`` or ``borrowed -> overdue ->
returned``.  Overdue is never stored as a fact: it is derived from the
caller's ``now`` each time transactions are read, with the fine accruing
until the book comes back.  Returning fixes the fine for good.
"""

import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Iterator, List, Optional

from circulation.catalog import CatalogStore
from circulation.directory import DirectoryStore
from circulation.fines import ZERO, FinePolicy, FlatDailyRate, calculate_fine
from circulation.models import Transaction, TransactionStatus, as_utc, build, utcnow
from exceptions.exceptions import (
    BookNotAvailableError,
    StateError,
    TransactionNotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from circulation.session import SessionContext

logger = logging.getLogger(__name__)


def recompute_status(transaction: Transaction, now: datetime, policy: FinePolicy) -> Transaction:
    """Return ``transaction`` with status and fine as of ``now``.

    Pure and idempotent: the input is left untouched and the same ``now``
    always gives the same answer.
    """
    if transaction.return_date is not None:
        if transaction.status == TransactionStatus.RETURNED:
            return transaction.model_copy()
        return transaction.model_copy(update={"status": TransactionStatus.RETURNED})
    now = as_utc(now)
    if now > transaction.due_date:
        return transaction.model_copy(
            update={
                "status": TransactionStatus.OVERDUE,
                "fine_amount": calculate_fine(transaction.due_date, now, policy),
            }
        )
    return transaction.model_copy(
        update={"status": TransactionStatus.BORROWED, "fine_amount": ZERO}
    )


class CirculationEngine:
    def __init__(
        self,
        catalog: CatalogStore,
        directory: DirectoryStore,
        fine_policy: Optional[FinePolicy] = None,
        lock: Optional[threading.RLock] = None,
    ):
        self.catalog = catalog
        self.directory = directory
        self.fine_policy = fine_policy or FlatDailyRate()
        self._lock = lock or threading.RLock()
        self._transactions: dict[str, Transaction] = {}
        catalog.add_removal_guard(self.has_open_transactions_for_book)
        directory.add_removal_guard(self.has_open_transactions_for_user)

    def _require(self, transaction_id: str) -> Transaction:
        transaction = self._transactions.get(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        return transaction

    def borrow(
        self,
        user_id: str,
        book_id: str,
        borrow_date: datetime,
        due_date: datetime,
        session: Optional["SessionContext"] = None,
    ) -> Transaction:
        borrow_date = as_utc(borrow_date)
        due_date = as_utc(due_date)
        with self._lock:
            user = self.directory.get_user(user_id)
            book = self.catalog.get_book(book_id)
            if book.available_copies <= 0:
                raise BookNotAvailableError(book_id)
            if due_date <= borrow_date:
                raise ValidationError("due_date must be after borrow_date")

            book = self.catalog.reserve_copy(book_id)
            now = utcnow()
            transaction = Transaction(
                user_id=user.id,
                user_name=user.name,
                book_id=book.id,
                book_title=book.title,
                borrow_date=borrow_date,
                due_date=due_date,
                status=TransactionStatus.BORROWED,
                fine_amount=ZERO,
                recorded_by=session.user.id if session else None,
                created_at=now,
                updated_at=now,
            )
            self._transactions[transaction.id] = transaction

        logger.info(
            f"{user.name} borrowed '{book.title}' ({book.available_copies} left), "
            f"due {due_date.isoformat()}"
        )
        return transaction.model_copy()

    def record_return(
        self,
        transaction_id: str,
        return_date: Optional[datetime] = None,
        session: Optional["SessionContext"] = None,
    ) -> Transaction:
        return_date = as_utc(return_date) if return_date else utcnow()
        with self._lock:
            transaction = self._require(transaction_id)
            if transaction.return_date is not None:
                raise StateError(f"Transaction {transaction_id} has already been returned")
            if return_date < transaction.borrow_date:
                raise ValidationError("return_date cannot be before borrow_date")

            fine = calculate_fine(transaction.due_date, return_date, self.fine_policy)
            closed = transaction.model_copy(
                update={
                    "return_date": return_date,
                    "status": TransactionStatus.RETURNED,
                    "fine_amount": fine,
                    "returned_by": session.user.id if session else None,
                    "updated_at": utcnow(),
                }
            )
            if transaction.book_id in self.catalog:
                self.catalog.release_copy(transaction.book_id)
            else:
                logger.warning(
                    f"Book {transaction.book_id} left the catalog while on loan; "
                    f"closing transaction {transaction_id} without restocking"
                )
            self._transactions[transaction_id] = closed

        logger.info(f"Transaction {transaction_id} returned with fine {fine}")
        return closed.model_copy()

    def recompute_status(self, transaction: Transaction, now: datetime) -> Transaction:
        return recompute_status(transaction, now, self.fine_policy)

    def get_transaction(self, transaction_id: str, now: Optional[datetime] = None) -> Transaction:
        with self._lock:
            transaction = self._require(transaction_id)
        return self.recompute_status(transaction, now or utcnow())

    def get_record(self, transaction_id: str) -> Transaction:
        """The transaction as stored, without derived overdue state."""
        with self._lock:
            return self._require(transaction_id).model_copy()

    def find_transactions(
        self,
        predicate: Optional[Callable[[Transaction], bool]] = None,
        now: Optional[datetime] = None,
    ) -> Iterator[Transaction]:
        now = now or utcnow()
        with self._lock:
            snapshot = list(self._transactions.values())
        recomputed = (self.recompute_status(transaction, now) for transaction in snapshot)
        return (t for t in recomputed if predicate is None or predicate(t))

    def snapshot(self) -> List[Transaction]:
        """Stored transactions as recorded, without derived overdue state."""
        with self._lock:
            return [transaction.model_copy() for transaction in self._transactions.values()]

    def list_transactions(self, now: Optional[datetime] = None) -> List[Transaction]:
        return sorted(
            self.find_transactions(now=now), key=lambda t: t.borrow_date, reverse=True
        )

    def has_open_transactions_for_book(self, book_id: str) -> bool:
        with self._lock:
            return any(t.book_id == book_id and t.is_open for t in self._transactions.values())

    def has_open_transactions_for_user(self, user_id: str) -> bool:
        with self._lock:
            return any(t.user_id == user_id and t.is_open for t in self._transactions.values())

    def merge_transaction(self, row: dict) -> Optional[Transaction]:
        transaction = build(Transaction, row)
        with self._lock:
            current = self._transactions.get(transaction.id)
            if current is not None:
                if transaction.updated_at < current.updated_at:
                    logger.info(f"Skipping stale row for transaction {transaction.id}")
                    return None
                if current.return_date is not None and transaction.return_date is None:
                    logger.warning(f"Ignoring reopen of returned transaction {transaction.id}")
                    return None
            self._transactions[transaction.id] = transaction
        return transaction.model_copy()

    def discard_transaction(self, transaction_id: str) -> bool:
        """Forget a transaction whose borrow could not be persisted."""
        with self._lock:
            return self._transactions.pop(transaction_id, None) is not None

    def restore_transaction(self, transaction: Transaction) -> None:
        with self._lock:
            self._transactions[transaction.id] = transaction.model_copy()

    def __len__(self) -> int:
        with self._lock:
            return len(self._transactions)
