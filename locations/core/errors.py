"""Exceptions raised across the persistence and audit layers."""


class NotFoundError(LookupError):
    """Raised when a location record or history entry does not exist."""


class ConflictError(RuntimeError):
    """Raised when a store code is already used by another record of the tenant."""


class InvalidRecordError(ValueError):
    """Raised when a write carries problems that must not be persisted."""

    def __init__(self, message: str, errors=()):
        super().__init__(message)
        self.errors = list(errors)
