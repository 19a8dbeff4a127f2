"""Typed service errors.

Every error carries a fixed machine-readable ``code`` and an HTTP status so
route handlers and callers dispatch on the class or the code, never on the
message text.
"""

from typing import Any, Dict, List, Optional


class ServiceError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "INTERNAL"
    http_status = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.details = details

    def to_payload(self) -> Dict[str, Any]:
        """Render as the standard ``{"error": {...}}`` body."""
        error: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            error["details"] = self.details
        return {"error": error}


class InvalidInputError(ServiceError):
    code = "INVALID_INPUT"
    http_status = 400


class NotFoundError(ServiceError):
    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found: {resource_id}" if resource_id else f"{resource} not found"
        super().__init__(message)
        self.resource = resource


class NoEligibleDaysError(ServiceError):
    code = "NO_ELIGIBLE_DAYS"
    http_status = 400

    def __init__(self, message: str = "No days match the filter criteria"):
        super().__init__(message)


class ConflictError(ServiceError):
    """Precondition failure; the code names which precondition."""

    http_status = 409

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class TimezoneMismatchError(ConflictError):
    def __init__(self, timezones: List[str], batch_ids: List[str]):
        super().__init__(
            "TIMEZONE_MISMATCH",
            f"Import batches have different timezones: {', '.join(timezones)}",
            details={"timezones": timezones, "batch_ids": batch_ids},
        )
        self.timezones = timezones
        self.batch_ids = batch_ids


class LockManagerClosedError(ServiceError):
    code = "SHUTTING_DOWN"
    http_status = 503

    def __init__(self, message: str = "Lock manager is shutting down"):
        super().__init__(message)


# =============================================================================
# LLM collaborator errors
# =============================================================================


class LlmError(Exception):
    """Structured error raised by the summarizer/classifier collaborators."""

    retriable = True
    http_status = 502

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


class LlmProviderError(LlmError):
    def __init__(self, provider: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("LLM_PROVIDER_ERROR", message, {"provider": provider, **(details or {})})


class MissingApiKeyError(LlmError):
    retriable = False
    http_status = 500

    def __init__(self, provider: str):
        super().__init__(
            "MISSING_API_KEY",
            f'API key not configured for provider "{provider}".',
            {"provider": provider},
        )


class BudgetExceededError(LlmError):
    retriable = False
    http_status = 402

    def __init__(self, next_cost_usd: float, spent_usd_so_far: float, limit_usd: float, limit_type: str):
        super().__init__(
            "BUDGET_EXCEEDED",
            f"Budget exceeded: next call would cost ${next_cost_usd:.4f}, "
            f"already spent ${spent_usd_so_far:.4f} against {limit_type} limit of ${limit_usd:.4f}.",
            {
                "next_cost_usd": next_cost_usd,
                "spent_usd_so_far": spent_usd_so_far,
                "limit_usd": limit_usd,
                "limit_type": limit_type,
            },
        )


class LlmBadOutputError(LlmError):
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("LLM_BAD_OUTPUT", message, details)


class UnknownModelPricingError(LlmError):
    retriable = False
    http_status = 400

    def __init__(self, provider: str, model: str):
        super().__init__(
            "UNKNOWN_MODEL_PRICING",
            f'No pricing data for provider "{provider}", model "{model}".',
            {"provider": provider, "model": model},
        )
