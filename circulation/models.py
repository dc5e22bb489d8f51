"""Domain records for the library console.

Books, users and transactions are pydantic models so the same classes
validate API payloads, rows coming back from the row store and change
events arriving over the feed.  Stores never hand out their own
instances; they return copies.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Any, Optional, Type, TypeVar

from pydantic import AfterValidator, BaseModel, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from exceptions.exceptions import ValidationError

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes (SQLite drops tzinfo) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def new_id() -> str:
    return uuid.uuid4().hex


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class BookCategory(str, Enum):
    HUMAN_SCIENCE = "Human Science"
    MATHS = "Maths"
    CHEMISTRY = "Chemistry"
    PHYSICS = "Physics"
    NOVELS = "Novels"
    OTHER = "Other"


class UserRole(str, Enum):
    ADMIN = "admin"
    LIBRARIAN = "librarian"


class TransactionStatus(str, Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"
    OVERDUE = "overdue"


class Book(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    author: str
    category: BookCategory = BookCategory.OTHER
    total_copies: int = Field(ge=0)
    available_copies: int = Field(ge=0)
    isbn: Optional[str] = None
    published_year: Optional[int] = None
    publisher: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    @field_validator("title", "author")
    @classmethod
    def strip_required_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @model_validator(mode="after")
    def check_copies(self) -> "Book":
        if self.available_copies > self.total_copies:
            raise ValueError("available_copies cannot exceed total_copies")
        return self


class User(BaseModel):
    id: str = Field(default_factory=new_id)
    email: str
    name: str
    role: UserRole = UserRole.LIBRARIAN
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    @field_validator("email")
    @classmethod
    def check_email(cls, value: str) -> str:
        value = value.strip()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("is not a valid email address")
        return value

    @field_validator("name")
    @classmethod
    def check_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value


class Transaction(BaseModel):
    id: str = Field(default_factory=new_id)
    user_id: str
    user_name: str
    book_id: str
    book_title: str
    borrow_date: UtcDatetime
    due_date: UtcDatetime
    return_date: Optional[UtcDatetime] = None
    status: TransactionStatus = TransactionStatus.BORROWED
    fine_amount: Decimal = Decimal("0.00")
    recorded_by: Optional[str] = None
    returned_by: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    @field_validator("fine_amount")
    @classmethod
    def check_fine(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("fine_amount cannot be negative")
        return to_money(value)

    @model_validator(mode="after")
    def check_lifecycle(self) -> "Transaction":
        if self.due_date <= self.borrow_date:
            raise ValueError("due_date must be after borrow_date")
        if (self.status == TransactionStatus.RETURNED) != (self.return_date is not None):
            raise ValueError("status is 'returned' exactly when return_date is set")
        return self

    @property
    def is_open(self) -> bool:
        return self.return_date is None


ModelT = TypeVar("ModelT", bound=BaseModel)


def build(model: Type[ModelT], data: dict) -> ModelT:
    """Validate ``data`` into ``model``, raising the library's ValidationError."""
    try:
        return model.model_validate(data)
    except PydanticValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc']) or model.__name__}: {error['msg']}"
            for error in e.errors()
        )
        raise ValidationError(problems) from e


def as_fields(fields: Any, exclude_unset: bool = False) -> dict:
    if isinstance(fields, BaseModel):
        return fields.model_dump(exclude_unset=exclude_unset)
    return dict(fields)
