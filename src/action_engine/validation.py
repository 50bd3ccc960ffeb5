"""Input validation against an action's declared fields.

Never raises: callers decide whether a failed validation is fatal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from .schemas import InputSchema


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


_TYPE_CHECKS = {
    "string": lambda v: isinstance(v, str),
    "number": _is_number,
    "boolean": lambda v: isinstance(v, bool),
    "array": lambda v: isinstance(v, (list, tuple)),
    "object": lambda v: isinstance(v, Mapping),
}


def validate_params(params: Any, schema: InputSchema) -> ValidationResult:
    if not isinstance(params, Mapping):
        return ValidationResult(valid=False, errors=["Parameters must be an object"])

    errors: list[str] = []
    for key, spec in schema.items():
        present = key in params and params[key] is not None
        if spec.required and not present:
            errors.append(f"Missing required field: {key}")
            continue
        if not present:
            continue
        value = params[key]
        check = _TYPE_CHECKS.get(spec.type)
        if check is not None and not check(value):
            errors.append(f"Field {key} must be a {spec.type}, got {type(value).__name__}")
        elif spec.enum and value not in spec.enum:
            errors.append(f"Field {key} must be one of {list(spec.enum)}")
    return ValidationResult(valid=not errors, errors=errors)
