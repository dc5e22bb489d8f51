from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging

logger = logging.getLogger(__name__)


class LibraryException(Exception):
    """Base exception for library-related errors."""

    status_code = 400


class ValidationError(LibraryException):
    """Malformed or out-of-range input."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Invalid data: {message}")


class NotFoundError(LibraryException):
    status_code = 404

    def __init__(self, kind: str, record_id: str):
        self.record_id = record_id
        super().__init__(f"{kind} with id {record_id} not found")


class BookNotFoundError(NotFoundError):
    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__("Book", book_id)


class UserNotFoundError(NotFoundError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("User", user_id)


class TransactionNotFoundError(NotFoundError):
    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__("Transaction", transaction_id)


class UnavailableError(LibraryException):
    status_code = 409


class BookNotAvailableError(UnavailableError):
    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"Book with id {book_id} has no copies available for borrowing")


class StateError(LibraryException):
    """Illegal transaction transition, e.g. a second return."""

    status_code = 409


class ConflictError(LibraryException):
    """Operation blocked by an active reference."""

    status_code = 409


class AuthenticationError(LibraryException):
    status_code = 401


class AuthorizationError(LibraryException):
    status_code = 403

    def __init__(self, role: str, required: str):
        self.role = role
        self.required = required
        super().__init__(f"Role '{role}' may not perform an operation requiring '{required}'")


class DatabaseError(LibraryException):
    status_code = 503

    def __init__(self, operation: str, details: str):
        super().__init__(f"Database error during {operation}: {details}")


# Exception handlers
def _error(status_code: int, detail, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail, "code": code})


async def library_exception_handler(request: Request, exc: LibraryException):
    logger.error(f"{request.method} {request.url.path} -> {type(exc).__name__}: {exc}")
    return _error(exc.status_code, str(exc), type(exc).__name__)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"{request.method} {request.url.path} -> HTTP {exc.status_code}: {exc.detail}")
    return _error(exc.status_code, exc.detail, "HTTPException")


async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = [".".join(str(part) for part in error["loc"]) for error in exc.errors()]
    logger.error(f"{request.method} {request.url.path} -> malformed request: {fields}")
    return _error(422, f"Invalid request fields: {', '.join(fields)}", "RequestValidationError")


async def unexpected_exception_handler(request: Request, exc: Exception):
    logger.error(f"{request.method} {request.url.path} -> unexpected {type(exc).__name__}", exc_info=exc)
    return _error(500, "An unexpected error occurred", "InternalError")


def add_exception_handlers(app: FastAPI):
    app.add_exception_handler(LibraryException, library_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unexpected_exception_handler)
