"""
Error taxonomy for the auto-apply pipeline.

HTTP-facing errors carry a status code; the FastAPI app turns them into
JSON responses through a single exception handler.
"""

from typing import Any, Dict, Optional


class AutoApplyError(RuntimeError):
    status_code = 500

    def __init__(self, detail: str = "", **extra: Any):
        super().__init__(detail)
        self.detail = detail
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": type(self).__name__, "detail": self.detail}
        body.update(self.extra)
        return body


class QuotaExceeded(AutoApplyError):
    """Daily limit or queue capacity leaves no slot for new entries."""

    status_code = 429

    def __init__(
        self,
        remaining_slots: int,
        daily_limit: int,
        applied_today: int,
        queued: int,
        detail: Optional[str] = None,
    ):
        super().__init__(
            detail or "Daily application limit reached",
            remaining_slots=remaining_slots,
            daily_limit=daily_limit,
            applied_today=applied_today,
            queued=queued,
        )
        self.remaining_slots = remaining_slots


class AlreadyClaimed(AutoApplyError):
    status_code = 409


class InvalidTransition(AutoApplyError):
    status_code = 409


class PreconditionFailed(AutoApplyError):
    status_code = 412


class NotFound(AutoApplyError):
    status_code = 404


class Unauthorized(AutoApplyError):
    status_code = 401


class BadRequest(AutoApplyError):
    status_code = 400


# Raised inside the dispatch loop and recovered into a terminal queue state.

class IntrospectionFailed(AutoApplyError):
    """Executor returned no usable form description."""


class InfeasibleForm(AutoApplyError):
    """A required field cannot be satisfied from stored data."""


class ExecutorUnavailable(AutoApplyError):
    """Executor unreachable, timed out, or answered with a server error."""

    status_code = 503


class ProviderUnavailable(AutoApplyError):
    """Every AI provider stage failed; callers apply their local fallback."""

    status_code = 503
