from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Numeric
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=False)
    role = Column(String, nullable=False, default="librarian")
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class BookRow(Base):
    __tablename__ = "books"

    id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=False)
    author = Column(String, nullable=False)
    category = Column(String, nullable=False, default="Other")
    total_copies = Column(Integer, nullable=False)
    available_copies = Column(Integer, nullable=False)
    isbn = Column(String, nullable=True)
    published_year = Column(Integer, nullable=True)
    publisher = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class TransactionRow(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    user_name = Column(String, nullable=False)
    book_id = Column(String, ForeignKey("books.id"), nullable=False, index=True)
    book_title = Column(String, nullable=False)
    borrow_date = Column(DateTime(timezone=True), nullable=False)
    due_date = Column(DateTime(timezone=True), nullable=False, index=True)
    return_date = Column(DateTime(timezone=True), nullable=True)
    status = Column(String, nullable=False, default="borrowed")
    fine_amount = Column(Numeric(10, 2), nullable=False, default=0)
    recorded_by = Column(String, nullable=True)
    returned_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


TABLES = {
    "users": UserRow,
    "books": BookRow,
    "transactions": TransactionRow,
}
