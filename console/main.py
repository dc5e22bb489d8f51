import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
import logging
from typing import Callable, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Response, status

from circulation.fines import policy_from_settings
from circulation.library import Library
from circulation.models import Book, BookCategory, Transaction, TransactionStatus, User, UserRole, utcnow
from circulation.queries import category_color, filter_by_status
from circulation.reports import (
    category_distribution,
    monthly_circulation,
    overdue_by_category,
    popular_books,
)
from circulation.schemas import (
    BookCreate,
    BookUpdate,
    BorrowRequestSchema,
    CategoryCount,
    DashboardSchema,
    MonthlyCirculation,
    PopularBook,
    ReturnRequestSchema,
    SignInRequest,
    SignInResponse,
    UserCreate,
    UserUpdate,
)
from circulation.seed import seed_demo_credentials, seed_demo_data
from circulation.session import SessionContext, require_role
from console import settings
from console.internal_message import cleanup_messaging, setup_messaging
from exceptions.exceptions import LibraryException, add_exception_handlers
from rowstore.gateway import RowChange, RowStoreGateway
from rowstore.internal_messaging import ChangeFeedPublisher
from rowstore.storage import init_db, make_session_factory

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

TABLE_ORDER = ("users", "books", "transactions")


def bootstrap(library: Library, gateway: RowStoreGateway) -> None:
    """Load the stores from the row store, seeding an empty one."""
    rows = {table: gateway.select(table) for table in TABLE_ORDER}
    if any(rows.values()):
        library.load(**rows)
        if settings.SEED_DEMO_DATA:
            seed_demo_credentials(library)
        return
    if not settings.SEED_DEMO_DATA:
        return
    seed_demo_data(library)
    for user in library.directory.find_users():
        gateway.insert("users", user)
    for book in library.catalog.find_books():
        gateway.insert("books", book)
    for transaction in library.engine.snapshot():
        gateway.insert("transactions", transaction)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.testing = app.state.testing if hasattr(app.state, "testing") else False

    library = Library(
        fine_policy=policy_from_settings(
            settings.FINE_DAILY_RATE, settings.FINE_TIERS, settings.FINE_CAP
        )
    )
    app.state.library = library
    if getattr(app.state, "gateway", None) is None:
        app.state.gateway = RowStoreGateway(
            make_session_factory(settings.SQLALCHEMY_DATABASE_URL)
        )
    init_db(app.state.gateway.session_factory)
    bootstrap(library, app.state.gateway)
    library.sessions.initialize()
    ingestion = asyncio.create_task(library.ingestor.run())

    if not app.state.testing:
        publisher = ChangeFeedPublisher(settings.CHANGE_FEED_EXCHANGE)
        await publisher.connect(settings.RABBIT_MQ_CONN_STR)
        publisher.attach(app.state.gateway)
        app.state.change_feed_publisher = publisher
        await setup_messaging(app, settings.RABBIT_MQ_CONN_STR, settings.CHANGE_FEED_EXCHANGE)
    yield
    if not app.state.testing:
        await cleanup_messaging(app)
        await app.state.change_feed_publisher.close()
    ingestion.cancel()
    library.sessions.close()


app = FastAPI(
    title="Library Console API",
    lifespan=lifespan,
    description="Catalog, circulation and staff directory for the library console",
    version="1.0.0",
)

add_exception_handlers(app)


def get_library() -> Library:
    return app.state.library


def get_gateway() -> RowStoreGateway:
    return app.state.gateway


def get_session(
    authorization: Optional[str] = Header(None),
    library: Library = Depends(get_library),
) -> SessionContext:
    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
    return library.sessions.resolve(token)


def librarian_session(session: SessionContext = Depends(get_session)) -> SessionContext:
    return require_role(session, UserRole.LIBRARIAN)


def admin_session(session: SessionContext = Depends(get_session)) -> SessionContext:
    return require_role(session, UserRole.ADMIN)


def _book_row(book: Book) -> dict:
    return book.model_dump(exclude={"id", "created_at"})


def _write_through(gateway: RowStoreGateway, changes: List[RowChange], undo: Callable[[], None]):
    """Persist changes already made in memory, undoing them if the row store refuses.

    Callers hold ``library.lock`` so the rows written are the ones in memory.
    """
    try:
        return gateway.write_many(changes)
    except LibraryException as e:
        logger.error(f"Row store rejected {len(changes)} change(s), undoing: {e}")
        undo()
        raise


# Authentication
@app.post("/auth/sign-in", response_model=SignInResponse)
def sign_in(request: SignInRequest, library: Library = Depends(get_library)):
    session, error = library.sessions.sign_in(request.email, request.password)
    if error:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=error)
    return SignInResponse(token=session.token, user=session.user)


@app.post("/auth/sign-out", status_code=status.HTTP_204_NO_CONTENT)
def sign_out(session: SessionContext = Depends(get_session), library: Library = Depends(get_library)):
    library.sessions.sign_out(session.token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/auth/me", response_model=User)
def current_user(session: SessionContext = Depends(get_session)):
    return session.user


# Books
@app.get("/books/", response_model=List[Book])
def list_books(
    search: str = "",
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
):
    return library.search_books(search)


@app.get("/books/categories")
def list_categories(session: SessionContext = Depends(librarian_session)):
    return [{"name": c.value, "color": category_color(c)} for c in BookCategory]


@app.get("/books/{book_id}", response_model=Book)
def fetch_single_book(
    book_id: str,
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
):
    return library.catalog.get_book(book_id)


@app.post("/books/", response_model=Book, status_code=status.HTTP_201_CREATED)
def create_book(
    book: BookCreate,
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
    gateway: RowStoreGateway = Depends(get_gateway),
):
    with library.lock:
        created = library.catalog.add_book(book)
        _write_through(
            gateway,
            [RowChange.insert("books", created)],
            lambda: library.catalog.discard_book(created.id),
        )
    return created


@app.put("/books/{book_id}", response_model=Book)
def modify_book(
    book_id: str,
    book_update: BookUpdate,
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
    gateway: RowStoreGateway = Depends(get_gateway),
):
    with library.lock:
        previous = library.catalog.get_book(book_id)
        updated = library.catalog.update_book(book_id, book_update)
        _write_through(
            gateway,
            [RowChange.update("books", book_id, _book_row(updated))],
            lambda: library.catalog.restore_book(previous),
        )
    return updated


@app.delete("/books/{book_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_book(
    book_id: str,
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
    gateway: RowStoreGateway = Depends(get_gateway),
):
    with library.lock:
        removed = library.catalog.remove_book(book_id)
        _write_through(
            gateway,
            [RowChange.delete("books", book_id)],
            lambda: library.catalog.restore_book(removed),
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Users
@app.get("/users/", response_model=List[User])
def list_users(
    search: str = "",
    session: SessionContext = Depends(admin_session),
    library: Library = Depends(get_library),
):
    return library.search_users(search)


@app.post("/users/", response_model=User, status_code=status.HTTP_201_CREATED)
def create_user(
    user: UserCreate,
    session: SessionContext = Depends(admin_session),
    library: Library = Depends(get_library),
    gateway: RowStoreGateway = Depends(get_gateway),
):
    if user.password:
        library.sessions.check_password(user.password)
    with library.lock:
        created = library.directory.add_user(user)
        _write_through(
            gateway,
            [RowChange.insert("users", created)],
            lambda: library.directory.discard_user(created.id),
        )
    if user.password:
        library.sessions.set_password(created.id, user.password)
    return created


@app.put("/users/{user_id}", response_model=User)
def modify_user(
    user_id: str,
    user_update: UserUpdate,
    session: SessionContext = Depends(admin_session),
    library: Library = Depends(get_library),
    gateway: RowStoreGateway = Depends(get_gateway),
):
    if user_update.password:
        library.sessions.check_password(user_update.password)
    with library.lock:
        previous = library.directory.get_user(user_id)
        updated = library.directory.update_user(user_id, user_update)
        _write_through(
            gateway,
            [RowChange.update("users", user_id, updated.model_dump(exclude={"id", "created_at"}))],
            lambda: library.directory.restore_user(previous),
        )
    if user_update.password:
        library.sessions.set_password(user_id, user_update.password)
    return updated


@app.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_user(
    user_id: str,
    session: SessionContext = Depends(admin_session),
    library: Library = Depends(get_library),
    gateway: RowStoreGateway = Depends(get_gateway),
):
    with library.lock:
        removed = library.directory.remove_user(user_id)
        _write_through(
            gateway,
            [RowChange.delete("users", user_id)],
            lambda: library.directory.restore_user(removed),
        )
    library.sessions.forget(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Transactions
@app.get("/transactions/", response_model=List[Transaction])
def list_transactions(
    search: str = "",
    status_filter: Optional[TransactionStatus] = None,
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
):
    transactions = library.search_transactions(search, now=utcnow())
    if status_filter is not None:
        transactions = filter_by_status(transactions, status_filter)
    return transactions


@app.get("/transactions/{transaction_id}", response_model=Transaction)
def fetch_transaction(
    transaction_id: str,
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
):
    return library.engine.get_transaction(transaction_id, now=utcnow())


@app.post("/transactions/borrow/", response_model=Transaction, status_code=status.HTTP_201_CREATED)
def borrow_book_item(
    borrow_request: BorrowRequestSchema,
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
    gateway: RowStoreGateway = Depends(get_gateway),
):
    borrow_date = borrow_request.borrow_date or utcnow()
    due_date = borrow_request.due_date or borrow_date + timedelta(
        days=borrow_request.num_of_days or settings.DEFAULT_LOAN_DAYS
    )
    with library.lock:
        previous_book = library.catalog.get_book(borrow_request.book_id)
        transaction = library.engine.borrow(
            borrow_request.user_id, borrow_request.book_id, borrow_date, due_date, session=session
        )
        book = library.catalog.get_book(transaction.book_id)

        def undo():
            library.engine.discard_transaction(transaction.id)
            library.catalog.restore_book(previous_book)

        _write_through(
            gateway,
            [
                RowChange.insert("transactions", transaction),
                RowChange.update("books", book.id, _book_row(book)),
            ],
            undo,
        )
    return library.engine.recompute_status(transaction, utcnow())


@app.post("/transactions/{transaction_id}/return/", response_model=Transaction)
def return_book_item(
    transaction_id: str,
    return_request: Optional[ReturnRequestSchema] = None,
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
    gateway: RowStoreGateway = Depends(get_gateway),
):
    return_date = return_request.return_date if return_request else None
    with library.lock:
        previous = library.engine.get_record(transaction_id)
        previous_book = (
            library.catalog.get_book(previous.book_id) if previous.book_id in library.catalog else None
        )
        transaction = library.engine.record_return(transaction_id, return_date, session=session)
        changes = [
            RowChange.update(
                "transactions", transaction_id, transaction.model_dump(exclude={"id", "created_at"})
            )
        ]
        if previous_book is not None:
            book = library.catalog.get_book(previous_book.id)
            changes.append(RowChange.update("books", book.id, _book_row(book)))

        def undo():
            library.engine.restore_transaction(previous)
            if previous_book is not None:
                library.catalog.restore_book(previous_book)

        _write_through(gateway, changes, undo)
    return transaction


# Dashboard and reports
@app.get("/dashboard/", response_model=DashboardSchema)
def dashboard(
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
):
    return library.dashboard(utcnow())


@app.get("/reports/categories", response_model=List[CategoryCount])
def report_categories(
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
):
    return category_distribution(library.catalog.find_books())


@app.get("/reports/monthly", response_model=List[MonthlyCirculation])
def report_monthly(
    year: Optional[int] = None,
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
):
    now = utcnow()
    return monthly_circulation(library.engine.list_transactions(now), year or now.year)


@app.get("/reports/popular", response_model=List[PopularBook])
def report_popular(
    limit: int = 5,
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
):
    return popular_books(library.engine.list_transactions(utcnow()), limit)


@app.get("/reports/overdue-by-category", response_model=List[CategoryCount])
def report_overdue_by_category(
    session: SessionContext = Depends(librarian_session),
    library: Library = Depends(get_library),
):
    now = utcnow()
    return overdue_by_category(library.catalog.find_books(), library.engine.list_transactions(now))


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting console on port {settings.CONSOLE_PORT}")
    uvicorn.run(app, host="0.0.0.0", port=settings.CONSOLE_PORT)
