from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict
from sqlalchemy import (
    Column,
    Integer,
    String,
    TIMESTAMP,
    ForeignKey,
    Index,
    UniqueConstraint,
    CheckConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()

# ====================================================================
# DATABASE MODELS
# ====================================================================


class Book(Base):
    """Book with its page count and a denormalized (advisory) read-page count"""
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("number_of_pages > 0", name="ck_books_number_of_pages_positive"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    number_of_pages = Column(Integer, nullable=False)
    # Written by the recompute worker; may lag behind the intervals table
    number_of_read_pages = Column(Integer, nullable=False, server_default="0", default=0)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now())


class ReadingInterval(Base):
    """Immutable (user, book, start_page, end_page) record; merged only when read"""
    __tablename__ = "reading_intervals"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "book_id", "start_page", "end_page",
            name="uq_reading_intervals_user_book_pages",
        ),
        CheckConstraint("start_page >= 1", name="ck_reading_intervals_start_page"),
        CheckConstraint("end_page >= start_page", name="ck_reading_intervals_page_order"),
        Index("ix_reading_intervals_book_start", "book_id", "start_page"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False)
    book_id = Column(Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False)
    start_page = Column(Integer, nullable=False)
    end_page = Column(Integer, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())


# ====================================================================
# API / DOMAIN MODELS
# ====================================================================


class BookCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=500, examples=["The Great Gatsby"])
    number_of_pages: int = Field(..., ge=1, examples=[180])


class BookUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    number_of_pages: Optional[int] = Field(None, ge=1)


class BookRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    number_of_pages: int
    number_of_read_pages: int = 0


class IntervalSubmission(BaseModel):
    """A single reading interval as submitted by a reader.

    Bounds are checked against the book by the ingestion service, so only
    the types are enforced here.
    """

    book_id: int = Field(..., examples=[1])
    start_page: int = Field(..., examples=[1])
    end_page: int = Field(..., examples=[50])


class IntervalBatchSubmission(BaseModel):
    intervals: List[IntervalSubmission] = Field(..., min_length=1, max_length=500)


class SubmitResult(BaseModel):
    created: bool
    book_id: int
    invalidated: bool = False
    job_enqueued: bool = False


class BatchItemError(BaseModel):
    index: int
    book_id: int
    start_page: int
    end_page: int
    error_code: str
    message: str


class BatchSubmitResult(BaseModel):
    success_count: int = 0
    failed_count: int = 0
    errors: List[BatchItemError] = Field(default_factory=list)


class RankedBook(BaseModel):
    """One row of the top-books ranking."""

    book_id: int
    title: str
    number_of_pages: int
    unique_pages_read: int


class CacheStats(BaseModel):
    enabled: bool
    ttl: int
    cache_key_prefix: str
