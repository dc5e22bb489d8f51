from datetime import datetime
from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional

from circulation.models import BookCategory, Transaction, User, UserRole


class BookBase(BaseModel):
    title: str
    author: str
    category: BookCategory = BookCategory.OTHER
    isbn: str | None = None
    published_year: int | None = None
    publisher: str | None = None


class BookCreate(BookBase):
    total_copies: int
    available_copies: int | None = None


class BookUpdate(BaseModel):
    title: Optional[str] = None
    author: Optional[str] = None
    category: Optional[BookCategory] = None
    isbn: Optional[str] = None
    published_year: Optional[int] = None
    publisher: Optional[str] = None
    total_copies: Optional[int] = None
    available_copies: Optional[int] = None


class UserBase(BaseModel):
    email: str
    name: str
    role: UserRole = UserRole.LIBRARIAN


class UserCreate(UserBase):
    password: str | None = None


class UserUpdate(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    role: Optional[UserRole] = None
    password: Optional[str] = None


class BorrowRequestSchema(BaseModel):
    user_id: str
    book_id: str
    borrow_date: datetime | None = None
    due_date: datetime | None = None
    num_of_days: int | None = Field(None, ge=1)


class ReturnRequestSchema(BaseModel):
    return_date: datetime | None = None


class SignInRequest(BaseModel):
    email: str
    password: str


class SignInResponse(BaseModel):
    token: str
    user: User


class DashboardStats(BaseModel):
    total_books: int
    books_borrowed: int
    books_overdue: int
    books_available: int


class CategoryCount(BaseModel):
    name: str
    count: int


class MonthlyCirculation(BaseModel):
    month: str
    borrowed: int
    returned: int


class PopularBook(BaseModel):
    book_id: str
    title: str
    count: int


class DashboardSchema(BaseModel):
    stats: DashboardStats
    overdue_items: list[Transaction] = []
    outstanding_fines: Decimal = Decimal("0.00")
