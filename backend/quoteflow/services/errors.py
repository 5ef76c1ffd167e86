class QuotationError(ValueError):
    """Base class for user-visible directory and quotation errors."""

    kind = "error"


class NotFoundError(QuotationError):
    kind = "not_found"


class InvalidInputError(QuotationError):
    kind = "invalid_input"


class InvalidStateError(QuotationError):
    kind = "invalid_state"


class UnauthorizedError(QuotationError):
    kind = "unauthorized"


class ConflictRetryError(QuotationError):
    """A concurrent writer won the race; re-read current status and retry."""

    kind = "conflict_retry"
