"""
Domain exceptions for the billing and trip generation engine.

Each exception carries the HTTP status and error code the API layer
reports for it (see core/exception_handlers.py). Services raise these and
never half-commit: callers roll the session back before re-raising.
"""


class EngineError(Exception):
    """Base class for all engine errors."""

    status_code = 500
    code = "engine_error"
    detail = "Internal engine error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.detail
        super().__init__(self.detail)


class ValidationError(EngineError):
    """Bad input: non-positive amount, blank reason, start >= end, ..."""

    status_code = 400
    code = "validation_error"
    detail = "Invalid input"


class InsufficientBalance(EngineError):
    status_code = 402
    code = "insufficient_balance"
    detail = "Insufficient wallet balance"

    def __init__(self, required=None, available=None):
        self.required = required
        self.available = available
        if required is not None:
            super().__init__(f"Insufficient wallet balance. Required: {required}, available: {available}")
        else:
            super().__init__()


class NotFound(EngineError):
    status_code = 404
    code = "not_found"
    detail = "Resource not found"


class ConcurrencyConflict(EngineError):
    """Lost-update detected and bounded retries exhausted; safe to retry later."""

    status_code = 409
    code = "concurrency_conflict"
    detail = "Concurrent modification, please retry"


class OptimizerUnavailable(EngineError):
    """Grouping service timed out, failed or returned malformed output.

    Absorbed by the trip matcher; never reaches an API caller.
    """

    status_code = 503
    code = "optimizer_unavailable"
    detail = "Optimizing grouping service unavailable"
