"""Domain error taxonomy.

Every error carries the HTTP status it maps to and whether a workflow step
that raised it may be retried. Services raise these directly; the HTTP layer
renders them in ``middleware/error_handler.py``.
"""

from __future__ import annotations


class TriviaError(Exception):
    """Base class for domain errors."""

    status_code: int = 400
    code: str = "error"
    permanent: bool = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(TriviaError):
    """Malformed input or input inconsistent with current state."""

    status_code = 400
    code = "validation_error"


class UnauthorizedError(TriviaError):
    status_code = 401
    code = "unauthorized"


class ForbiddenError(TriviaError):
    status_code = 403
    code = "forbidden"


class NotFoundError(TriviaError):
    status_code = 404
    code = "not_found"


class PreconditionError(TriviaError):
    """A business rule blocks the operation (quota, lock, ownership, stock...)."""

    status_code = 409
    code = "precondition_failed"


class TransientError(TriviaError):
    """Store or provider failure that may succeed on retry."""

    status_code = 503
    code = "transient_error"
    permanent = False


class MissingTokensError(PreconditionError):
    """Required input tokens were not found in the owner's unspent outputs."""

    code = "missing_tokens"

    def __init__(self, missing: dict[str, int]) -> None:
        units = ", ".join(f"{unit} (need {count})" for unit, count in sorted(missing.items()))
        super().__init__(f"Missing tokens: {units}")
        self.missing = missing


class InsufficientFundsError(PreconditionError):
    code = "insufficient_funds"


class InvalidAddressError(PreconditionError):
    code = "invalid_address"


class PendingError(TransientError):
    """Waiting on something outside the service (a confirmation, a signature).

    Workflow steps raising it are polled until the run's deadline instead of
    spending the step's retry budget.
    """

    code = "pending"
