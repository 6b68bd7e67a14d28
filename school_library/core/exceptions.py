# school_library/core/exceptions.py


class LibraryError(Exception):
    """Base class for circulation and catalog errors."""
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFoundError(LibraryError):
    """A referenced member, book or ledger entry does not exist."""
    status_code = 404


class InvalidStateError(LibraryError):
    """A precondition of the operation is not met. Nothing was written."""
    status_code = 409


class InputValidationError(LibraryError):
    """A required field is missing or malformed."""
    status_code = 422


class ConcurrencyConflictError(LibraryError):
    """Another operation changed the same entity first. Safe to retry."""
    status_code = 409
    retryable = True
