"""Structured error types for lab lifecycle operations."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any


class HackLabError(RuntimeError):
    """Structured exception carrying the failing phase and retry hint."""

    code = "hacklab_error"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        phase: str = "unknown",
        retryable: bool = False,
        details: dict[str, Any] | None = None,
        timestamp: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or type(self).code
        self.phase = phase
        self.message = message
        self.retryable = retryable
        self.details = details or {}
        self.timestamp = timestamp or datetime.now(UTC).isoformat()

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for logs/status surfaces."""
        return {
            "code": self.code,
            "phase": self.phase,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
            "timestamp": self.timestamp,
        }

    def to_json(self) -> str:
        """Serialize the error as a compact JSON string."""
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=True)


class ValidationError(HackLabError):
    """Bad lab/OS type or missing input, rejected before touching the cluster."""

    code = "validation_error"


class AuthenticationError(HackLabError):
    """The request carries no resolvable user."""

    code = "unauthenticated"


class NotFoundError(HackLabError):
    """The referenced record does not exist in the record store."""

    code = "not_found"


class ConfigurationError(HackLabError):
    """Deployment configuration cannot produce a safe result."""

    code = "configuration_error"


class OrchestratorError(HackLabError):
    """The orchestrator control API failed."""

    code = "orchestrator_error"


class OrchestratorTransientError(OrchestratorError):
    """Conditions expected to clear on their own (timeouts, races, 5xx)."""

    code = "orchestrator_transient"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)


class OrchestratorPermanentError(OrchestratorError):
    """Terminal workload failure, missing image, quota or invalid spec."""

    code = "orchestrator_permanent"


class WaitTimeoutError(OrchestratorTransientError):
    """A readiness or deletion wait ran past its deadline."""

    code = "wait_timeout"


class ExecError(HackLabError):
    """Reading from inside a running workload failed."""

    code = "exec_error"


class LifecycleError(HackLabError):
    """A start/stop/restart failed at a named step."""

    code = "lifecycle_error"

    def __init__(self, message: str, *, cause: HackLabError | None = None, **kwargs: Any) -> None:
        if cause is not None:
            kwargs.setdefault("retryable", cause.retryable)
            details = dict(kwargs.pop("details", None) or {})
            details.setdefault("cause", cause.to_dict())
            kwargs["details"] = details
        super().__init__(message, **kwargs)
        self.cause = cause


def ensure_hacklab_error(
    error: Exception,
    *,
    code: str = "unexpected_error",
    phase: str = "unknown",
    retryable: bool = False,
    details: dict[str, Any] | None = None,
) -> HackLabError:
    """Normalize unknown exceptions into a structured error."""
    if isinstance(error, HackLabError):
        return error

    merged_details = dict(details or {})
    merged_details.setdefault("exception_type", type(error).__name__)

    return HackLabError(
        str(error) or "Unknown error",
        code=code,
        phase=phase,
        retryable=retryable,
        details=merged_details,
    )


__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "ExecError",
    "HackLabError",
    "LifecycleError",
    "NotFoundError",
    "OrchestratorError",
    "OrchestratorPermanentError",
    "OrchestratorTransientError",
    "ValidationError",
    "WaitTimeoutError",
    "ensure_hacklab_error",
]
