"""
Exception hierarchy for the conversion backend.

Every error raised by the job pipeline derives from ConverterError and carries
a machine-readable ``code`` plus a ``details`` dictionary. The HTTP layer maps
each subclass to a status code (see ``http_status``) and renders
``{"detail": message, "code": code, **details}``.

Strategy-level failures (StrategyTimeoutError and whatever a backend raises)
are caught inside the strategy chain and only surface as ConversionError once
every strategy has been exhausted.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple


class ConverterError(Exception):
    """Base exception for all conversion backend errors."""

    http_status = 500
    default_code = "internal_error"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return self.message

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.details}


class ValidationError(ConverterError):
    """Raised for user-correctable input problems (wrong type, missing field)."""

    http_status = 400
    default_code = "invalid_request"


class FileTooLargeError(ValidationError):
    """Raised when an upload exceeds the configured size ceiling."""

    http_status = 413
    default_code = "file_too_large"

    def __init__(self, max_bytes: int) -> None:
        super().__init__(
            f"File too large. Maximum size is {max_bytes // (1024 * 1024)}MB.",
            details={"max_bytes": max_bytes},
        )


class NotFoundError(ConverterError):
    """Raised for unknown job ids or missing backing files."""

    http_status = 404
    default_code = "not_found"


class InvalidTransitionError(ConverterError):
    """Raised when a job is asked to move backwards or skip a lifecycle state."""

    http_status = 409
    default_code = "invalid_transition"

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Job {job_id} cannot move from '{current}' to '{requested}'",
            details={"job_id": job_id, "status": current},
        )


class QuotaError(ConverterError):
    """
    Raised when the quota gate denies admission.

    Attributes:
        reason: ``free_quota_exhausted`` or ``paid_quota_exhausted``
        plan: The user's plan name at admission time
        conversions_left: Remaining allowance (always < 1 when raised)
    """

    http_status = 403
    default_code = "quota_exceeded"

    def __init__(self, message: str, reason: str, plan: str, conversions_left: int) -> None:
        self.reason = reason
        self.plan = plan
        self.conversions_left = conversions_left
        super().__init__(
            message,
            details={"reason": reason, "plan": plan, "conversions_left": conversions_left},
        )


class ConversionError(ConverterError):
    """
    Raised by the strategy chain once every strategy has failed.

    ``attempts`` holds ``(strategy_name, error_message)`` pairs in the order
    the strategies were tried; the message names the last failure.
    """

    http_status = 500
    default_code = "conversion_failed"

    def __init__(self, message: str, attempts: Optional[List[Tuple[str, str]]] = None) -> None:
        self.attempts = list(attempts or [])
        super().__init__(message, details={"attempts": [name for name, _ in self.attempts]})


class StrategyTimeoutError(ConverterError):
    """A single strategy exceeded its initialization or execution budget."""

    default_code = "strategy_timeout"

    def __init__(self, strategy: str, phase: str, timeout: float) -> None:
        self.strategy = strategy
        self.phase = phase
        self.timeout = timeout
        super().__init__(
            f"{strategy} {phase} timed out after {timeout:g}s",
            details={"strategy": strategy, "phase": phase},
        )
