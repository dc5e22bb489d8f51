"""Stateless views over the stores: search, colour coding, grouping."""

from typing import Callable, Dict, Iterable, List, Optional

from circulation.models import Book, BookCategory, Transaction, TransactionStatus, User

CATEGORY_COLORS = {
    BookCategory.HUMAN_SCIENCE: "bg-green-100 text-green-800",
    BookCategory.MATHS: "bg-blue-100 text-blue-800",
    BookCategory.CHEMISTRY: "bg-purple-100 text-purple-800",
    BookCategory.PHYSICS: "bg-yellow-100 text-yellow-800",
    BookCategory.NOVELS: "bg-pink-100 text-pink-800",
}
DEFAULT_CATEGORY_COLOR = "bg-gray-100 text-gray-800"

STATUS_COLORS = {
    TransactionStatus.BORROWED: "bg-blue-100 text-blue-800",
    TransactionStatus.RETURNED: "bg-green-100 text-green-800",
    TransactionStatus.OVERDUE: "bg-red-100 text-red-800",
}


def _matches(term: str, *fields: Optional[str]) -> bool:
    return any(field and term in str(field).lower() for field in fields)


def book_matcher(term: str) -> Callable[[Book], bool]:
    term = term.strip().lower()
    return lambda book: not term or _matches(
        term, book.title, book.author, book.category.value, book.isbn
    )


def user_matcher(term: str) -> Callable[[User], bool]:
    term = term.strip().lower()
    return lambda user: not term or _matches(term, user.name, user.email, user.role.value)


def transaction_matcher(term: str) -> Callable[[Transaction], bool]:
    term = term.strip().lower()
    return lambda transaction: not term or _matches(
        term, transaction.user_name, transaction.book_title
    )


def search_books(books: Iterable[Book], term: str) -> List[Book]:
    return [book for book in books if book_matcher(term)(book)]


def search_users(users: Iterable[User], term: str) -> List[User]:
    return [user for user in users if user_matcher(term)(user)]


def search_transactions(transactions: Iterable[Transaction], term: str) -> List[Transaction]:
    return [t for t in transactions if transaction_matcher(term)(t)]


def category_color(category: BookCategory | str) -> str:
    try:
        category = BookCategory(category)
    except ValueError:
        return DEFAULT_CATEGORY_COLOR
    return CATEGORY_COLORS.get(category, DEFAULT_CATEGORY_COLOR)


def status_color(status: TransactionStatus | str) -> str:
    return STATUS_COLORS.get(TransactionStatus(status))


def filter_by_status(
    transactions: Iterable[Transaction], status: TransactionStatus | str
) -> List[Transaction]:
    status = TransactionStatus(status)
    return [t for t in transactions if t.status == status]


def group_by_status(transactions: Iterable[Transaction]) -> Dict[TransactionStatus, List[Transaction]]:
    groups: Dict[TransactionStatus, List[Transaction]] = {status: [] for status in TransactionStatus}
    for transaction in transactions:
        groups[transaction.status].append(transaction)
    return groups
