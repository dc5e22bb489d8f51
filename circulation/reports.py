"""Dashboard and report figures.

Every function expects transactions that were already recomputed for the
moment being reported on (see ``CirculationEngine.list_transactions``).
"""

from collections import Counter
from decimal import Decimal
from typing import Iterable, List, Optional

from circulation.fines import ZERO
from circulation.models import Book, BookCategory, Transaction, TransactionStatus
from circulation.schemas import CategoryCount, DashboardStats, MonthlyCirculation, PopularBook

MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


def dashboard_stats(books: Iterable[Book], transactions: Iterable[Transaction]) -> DashboardStats:
    books = list(books)
    open_transactions = [t for t in transactions if t.is_open]
    return DashboardStats(
        total_books=sum(book.total_copies for book in books),
        books_borrowed=len(open_transactions),
        books_overdue=sum(1 for t in open_transactions if t.status == TransactionStatus.OVERDUE),
        books_available=sum(book.available_copies for book in books),
    )


def category_distribution(books: Iterable[Book]) -> List[CategoryCount]:
    counts = Counter(book.category for book in books)
    return [
        CategoryCount(name=category.value, count=counts[category])
        for category in BookCategory
        if counts[category]
    ]


def monthly_circulation(transactions: Iterable[Transaction], year: int) -> List[MonthlyCirculation]:
    borrowed = Counter()
    returned = Counter()
    for transaction in transactions:
        if transaction.borrow_date.year == year:
            borrowed[transaction.borrow_date.month] += 1
        if transaction.return_date is not None and transaction.return_date.year == year:
            returned[transaction.return_date.month] += 1
    return [
        MonthlyCirculation(month=name, borrowed=borrowed[number], returned=returned[number])
        for number, name in enumerate(MONTHS, start=1)
    ]


def popular_books(transactions: Iterable[Transaction], limit: int = 5) -> List[PopularBook]:
    counts = Counter()
    titles = {}
    for transaction in transactions:
        counts[transaction.book_id] += 1
        titles[transaction.book_id] = transaction.book_title
    return [
        PopularBook(book_id=book_id, title=titles[book_id], count=count)
        for book_id, count in counts.most_common(limit)
    ]


def overdue_items(transactions: Iterable[Transaction]) -> List[Transaction]:
    return sorted(
        (t for t in transactions if t.status == TransactionStatus.OVERDUE),
        key=lambda t: t.due_date,
    )


def overdue_by_category(
    books: Iterable[Book], transactions: Iterable[Transaction]
) -> List[CategoryCount]:
    categories = {book.id: book.category for book in books}
    counts = Counter(
        categories.get(t.book_id, BookCategory.OTHER)
        for t in transactions
        if t.status == TransactionStatus.OVERDUE
    )
    return [
        CategoryCount(name=category.value, count=counts[category])
        for category in BookCategory
        if counts[category]
    ]


def outstanding_fines(transactions: Iterable[Transaction], user_id: Optional[str] = None) -> Decimal:
    """Fines accrued on loans that are still out."""
    return sum(
        (
            t.fine_amount
            for t in transactions
            if t.status == TransactionStatus.OVERDUE and (user_id is None or t.user_id == user_id)
        ),
        ZERO,
    )
