"""Error taxonomy shared by the store, the workflows and the outer surfaces.

Not-found errors derive from ``LookupError`` and bad input from ``ValueError``
so callers that only care about the broad category can catch the builtins.
"""

from typing import Optional


class LibraryError(Exception):
    """Base class for every error raised by the library backend."""


class NotFoundError(LibraryError, LookupError):
    """The referenced document does not exist."""

    resource = "resource"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or f"the requested {self.resource} resource could not be found")


class BookNotFoundError(NotFoundError):
    resource = "book"


class PatronNotFoundError(NotFoundError):
    resource = "patron"


class TransactionNotFoundError(NotFoundError):
    resource = "transaction"


class DuplicateKeyError(LibraryError, ValueError):
    """A uniqueness constraint (id, ISBN, email) was violated on insert or update."""


class DuplicateIDError(DuplicateKeyError):
    pass


class DuplicateISBNError(DuplicateKeyError):
    pass


class DuplicateEmailError(DuplicateKeyError):
    pass


class EditConflictError(LibraryError):
    """The stored version no longer matches the version the caller read."""

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message or "unable to update the record due to an edit conflict, please try again")


class ValidationError(LibraryError, ValueError):
    """Input rejected before any mutation was attempted."""


class InvalidStateError(LibraryError):
    """The operation is not allowed in the document's current state."""


class CapacityError(LibraryError):
    """A business rule rejected the request (e.g. not enough copies)."""


class StoreError(LibraryError):
    """The underlying store failed."""


class StoreTimeoutError(StoreError):
    """A store call exceeded its deadline."""
