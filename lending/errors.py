"""Domain exceptions.

Every error raised by the services carries the HTTP status the API layer
should answer with, so route handlers never translate outcomes by hand.
"""


class LibraryError(Exception):
    """Base class for expected, client-facing failures."""

    status_code = 500

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(LibraryError):
    status_code = 400


class NotAvailableError(LibraryError):
    """Raised when a book has no copies left to lend."""

    status_code = 400

    def __init__(self, message: str = "Book is not available for borrowing") -> None:
        super().__init__(message)


class AlreadyBorrowedError(LibraryError):
    status_code = 400

    def __init__(self, message: str = "User already has this book borrowed") -> None:
        super().__init__(message)


class AlreadyReturnedError(LibraryError):
    status_code = 400

    def __init__(self, message: str = "Book already returned") -> None:
        super().__init__(message)


class AuthError(LibraryError):
    status_code = 401


class ForbiddenError(LibraryError):
    status_code = 403

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message)


class NotFoundError(LibraryError):
    status_code = 404


class ConflictError(LibraryError):
    status_code = 409


class RateLimitedError(LibraryError):
    """Raised when a client exceeds the request budget of a rate-limited route."""

    status_code = 429

    def __init__(self, message: str = "Too many requests, please try again later.", retry_after: int = 0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class DatabaseUnavailableError(Exception):
    """The data store could not be opened; fatal at startup."""
