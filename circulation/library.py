import logging
import threading
from datetime import datetime
from typing import Iterable, List, Optional

from circulation.catalog import CatalogStore
from circulation.directory import DirectoryStore
from circulation.engine import CirculationEngine
from circulation.events import EventIngestor
from circulation.fines import FinePolicy
from circulation.models import Book, Transaction, User, utcnow
from circulation.queries import book_matcher, transaction_matcher, user_matcher
from circulation.reports import dashboard_stats, outstanding_fines, overdue_items
from circulation.schemas import DashboardSchema
from circulation.session import SessionProvider

logger = logging.getLogger(__name__)


class Library:
    """Catalog, directory and circulation sharing one lock."""

    def __init__(self, fine_policy: Optional[FinePolicy] = None, require_admin: bool = True):
        self.lock = threading.RLock()
        self.catalog = CatalogStore(lock=self.lock)
        self.directory = DirectoryStore(lock=self.lock, require_admin=require_admin)
        self.engine = CirculationEngine(
            self.catalog, self.directory, fine_policy=fine_policy, lock=self.lock
        )
        self.sessions = SessionProvider(self.directory)
        self.ingestor = EventIngestor(self.catalog, self.directory, self.engine)

    def search_books(self, term: str = "") -> List[Book]:
        return sorted(self.catalog.find_books(book_matcher(term)), key=lambda b: b.title.lower())

    def search_users(self, term: str = "") -> List[User]:
        return sorted(self.directory.find_users(user_matcher(term)), key=lambda u: u.name.lower())

    def search_transactions(self, term: str = "", now: Optional[datetime] = None) -> List[Transaction]:
        return sorted(
            self.engine.find_transactions(transaction_matcher(term), now=now),
            key=lambda t: t.borrow_date,
            reverse=True,
        )

    def dashboard(self, now: Optional[datetime] = None) -> DashboardSchema:
        now = now or utcnow()
        with self.lock:
            books = list(self.catalog.find_books())
            transactions = self.engine.list_transactions(now)
        return DashboardSchema(
            stats=dashboard_stats(books, transactions),
            overdue_items=overdue_items(transactions),
            outstanding_fines=outstanding_fines(transactions),
        )

    def load(
        self,
        books: Iterable[dict] = (),
        users: Iterable[dict] = (),
        transactions: Iterable[dict] = (),
    ) -> None:
        """Fill the stores from row-store rows, e.g. at startup."""
        with self.lock:
            for row in users:
                self.directory.merge_user(row)
            for row in books:
                self.catalog.merge_book(row)
            for row in transactions:
                self.engine.merge_transaction(row)
        logger.info(
            f"Loaded {len(self.catalog)} books and {len(self.engine)} transactions from the row store"
        )
