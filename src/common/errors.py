"""
Error kinds for the reading-interval service.

Every failure the core surfaces to a caller is a ``ReadingTrackerError``
subclass carrying its HTTP status, so the API layer can render any of them
without a per-route ``except`` ladder.
"""

from typing import Dict, Any, Optional


class ReadingTrackerError(Exception):
    """Base exception for reading-interval service errors."""

    def __init__(
        self,
        message: str,
        error_type: str = "internal_error",
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        http_status: int = 500,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.error_code = error_code
        self.details = details or {}
        self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.error_type,
            "code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class BookNotFoundError(ReadingTrackerError):
    """The referenced book does not exist."""

    def __init__(self, book_id: int, message: str = "Book not found"):
        super().__init__(
            message=message,
            error_type="not_found",
            error_code="BOOK_NOT_FOUND",
            details={"book_id": book_id},
            http_status=404,
        )


class InvalidRangeError(ReadingTrackerError):
    """Page bounds violate ``1 <= start_page <= end_page <= book.number_of_pages``."""

    def __init__(
        self,
        message: str = "Invalid page range",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            error_type="invalid_range",
            error_code="INVALID_RANGE",
            details=details,
            http_status=400,
        )


class InvalidArgumentError(ReadingTrackerError):
    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(
            message=message,
            error_type="invalid_argument",
            error_code="INVALID_ARGUMENT",
            details=error_details,
            http_status=400,
        )


class RateLimitedError(ReadingTrackerError):
    """Rejected by the admission controller."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if retry_after is not None:
            error_details["retry_after"] = retry_after
        super().__init__(
            message=message,
            error_type="rate_limited",
            error_code="RATE_LIMITED",
            details=error_details,
            http_status=429,
        )
        self.retry_after = retry_after


class ConflictError(ReadingTrackerError):
    def __init__(
        self,
        message: str = "Resource already exists",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message,
            error_type="conflict",
            error_code="CONFLICT",
            details=details,
            http_status=409,
        )


class IntervalAlreadyExistsError(ConflictError):
    """Unique (user_id, book_id, start_page, end_page) violation raised by the store."""

    def __init__(self, user_id: int, book_id: int, start_page: int, end_page: int):
        super().__init__(
            message="Reading interval already exists",
            details={
                "user_id": user_id,
                "book_id": book_id,
                "start_page": start_page,
                "end_page": end_page,
            },
        )


class TransientError(ReadingTrackerError):
    """Store, cache or queue unavailable or timed out."""

    def __init__(
        self,
        message: str = "Dependency temporarily unavailable",
        dependency: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        error_details = details or {}
        if dependency:
            error_details["dependency"] = dependency
        super().__init__(
            message=message,
            error_type="transient",
            error_code="TRANSIENT",
            details=error_details,
            http_status=503,
        )
