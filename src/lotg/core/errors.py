"""Error taxonomy for the question bank core."""


class LotgError(Exception):
    """Base error for question bank operations."""

    status_code = 500


class InvalidRequestError(LotgError):
    """Raised when a request is malformed or a field is out of range."""

    status_code = 400


class NotFoundError(LotgError):
    """Raised when a job or question id does not exist."""

    status_code = 404


class ConflictError(LotgError):
    """Raised when an insert collides with an existing key or content hash."""

    status_code = 409


class PolicyViolationError(LotgError):
    """Raised when an operation is not allowed in the entity's current state."""

    status_code = 400


class StoreError(LotgError):
    """Raised when the backing store rejects or fails an operation."""

    status_code = 500


class TransientStoreError(StoreError):
    """Raised when the backing store fails in a way that may succeed on retry."""

    status_code = 503


class ExtractionError(LotgError):
    """Raised when the extraction model call fails."""

    status_code = 502
