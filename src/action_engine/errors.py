"""Engine error taxonomy.

Every error carries a stable ``code`` and a single human-readable message so
callers can surface one terminal message instead of a stack trace.
"""

from __future__ import annotations

from typing import Any


class EngineError(RuntimeError):
    code = "ENGINE_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        if code:
            self.code = code
        self.message = message
        self.details = details or {}


class ConfigurationError(EngineError):
    """Invalid action/step definition, detected before any run starts."""

    code = "INVALID_CONFIG"


class RegistryError(ConfigurationError):
    """Duplicate names or dangling action references in the registry."""


class UnknownActionError(EngineError):
    code = "NOT_FOUND"

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown action: {name}", details={"action": name})
        self.name = name


class InputValidationError(EngineError):
    code = "INVALID_ARGUMENT"

    def __init__(self, action: str, errors: list[str]) -> None:
        super().__init__(
            f"Validation failed for {action}: {', '.join(errors)}",
            details={"action": action, "errors": list(errors)},
        )
        self.action = action
        self.errors = list(errors)


class StepTimeoutError(EngineError):
    code = "STEP_TIMEOUT"

    def __init__(self, timeout_s: float) -> None:
        super().__init__(f"Operation timed out after {timeout_s:g}s", details={"timeout_s": timeout_s})
        self.timeout_s = timeout_s


class StepFailedError(EngineError):
    """A step raised, timed out, or exhausted the model cascade."""

    code = "STEP_FAILED"

    def __init__(self, action: str, step_index: int, cause: BaseException) -> None:
        reason = getattr(cause, "message", None) or str(cause) or type(cause).__name__
        super().__init__(
            f"Step {step_index + 1} failed: {reason}",
            details={"action": action, "step_index": step_index},
        )
        self.action = action
        self.step_index = step_index
        self.cause = cause

    @property
    def validation_errors(self) -> list[str]:
        """Field violations from the innermost validation failure, if any."""
        cause: BaseException | None = self.cause
        while isinstance(cause, StepFailedError):
            cause = cause.cause
        if isinstance(cause, InputValidationError):
            return cause.errors
        return []


class ModelCallError(EngineError):
    """Transport or provider failure for one model candidate."""

    code = "MODEL_ERROR"

    def __init__(self, message: str, *, tool_choice_unsupported: bool = False, details: dict[str, Any] | None = None) -> None:
        super().__init__(message, details=details)
        self.tool_choice_unsupported = tool_choice_unsupported


class CascadeExhaustedError(EngineError):
    code = "ALL_MODELS_FAILED"

    def __init__(self, last_error: BaseException | None, attempts: list[dict[str, Any]] | None = None) -> None:
        last = str(last_error) if last_error is not None else "Unknown"
        super().__init__(f"All models failed. Last error: {last}", details={"attempts": attempts or []})
        self.last_error = last_error
        self.attempts = attempts or []
