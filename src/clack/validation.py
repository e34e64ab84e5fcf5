"""Argument validation against tagged tool schemas.

`validate_arguments` is the only entry point. It never raises for bad input;
it returns every field-level problem it finds so the caller can report them
together. An empty list means the arguments are valid.

Unknown fields are rejected (strict policy).
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .models import parse_timestamp
from .schema import BooleanField, FieldSchema, NumberField, ObjectSchema, StringField

# Error kinds
MISSING_REQUIRED_FIELD = "missing_required_field"
UNKNOWN_FIELD = "unknown_field"
TYPE_MISMATCH = "type_mismatch"
OUT_OF_RANGE = "out_of_range"
INVALID_FORMAT = "invalid_format"


@dataclass(frozen=True)
class FieldError:
    kind: str
    field: str
    message: str
    expected: str | None = None
    actual: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"kind": self.kind, "field": self.field, "message": self.message}
        if self.expected is not None:
            out["expected"] = self.expected
        if self.actual is not None:
            out["actual"] = self.actual
        return out


def missing_required_field(field: str) -> FieldError:
    return FieldError(MISSING_REQUIRED_FIELD, field, f"Missing required field: {field}")


def unknown_field(field: str) -> FieldError:
    return FieldError(UNKNOWN_FIELD, field, f"Unknown field: {field}")


def type_mismatch(field: str, expected: str, actual: str) -> FieldError:
    return FieldError(
        TYPE_MISMATCH,
        field,
        f"Field {field} must be a {expected}, got {actual}",
        expected=expected,
        actual=actual,
    )


def out_of_range(field: str, message: str) -> FieldError:
    return FieldError(OUT_OF_RANGE, field, message)


def invalid_format(field: str, expected: str) -> FieldError:
    return FieldError(
        INVALID_FORMAT,
        field,
        f"Field {field} must be a valid {expected}",
        expected=expected,
    )


def json_type_name(value: Any) -> str:
    """Name a runtime value the way JSON Schema would."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def _check_number(name: str, declared: NumberField, value: Any) -> list[FieldError]:
    # bool is an int subclass but never a JSON number
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return [type_mismatch(name, "number", json_type_name(value))]
    if isinstance(value, float) and not math.isfinite(value):
        return [type_mismatch(name, "number", "non-finite number")]
    if declared.integer and isinstance(value, float) and not value.is_integer():
        return [type_mismatch(name, "integer", "number")]
    if declared.minimum is not None and value < declared.minimum:
        return [out_of_range(name, f"Field {name} must be at least {_fmt(declared.minimum)}")]
    if declared.maximum is not None and value > declared.maximum:
        return [out_of_range(name, f"Field {name} must be at most {_fmt(declared.maximum)}")]
    return []


def _check_string(name: str, declared: StringField, value: Any) -> list[FieldError]:
    if not isinstance(value, str):
        return [type_mismatch(name, "string", json_type_name(value))]
    if declared.min_length is not None and len(value) < declared.min_length:
        return [
            out_of_range(name, f"Field {name} must be at least {declared.min_length} characters")
        ]
    if declared.max_length is not None and len(value) > declared.max_length:
        return [
            out_of_range(name, f"Field {name} must be at most {declared.max_length} characters")
        ]
    if declared.format == "date-time" and _parse_date_time(value) is None:
        return [invalid_format(name, "date-time")]
    return []


def _check_field(name: str, declared: FieldSchema, value: Any) -> list[FieldError]:
    if isinstance(declared, NumberField):
        return _check_number(name, declared, value)
    if isinstance(declared, StringField):
        return _check_string(name, declared, value)
    if isinstance(declared, BooleanField):
        if not isinstance(value, bool):
            return [type_mismatch(name, "boolean", json_type_name(value))]
        return []
    raise TypeError(f"Unsupported field schema: {declared!r}")


def _parse_date_time(value: str) -> datetime | None:
    if "T" not in value and " " not in value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def _comparable(declared: FieldSchema, value: Any) -> Any:
    if isinstance(declared, StringField) and declared.format == "date-time":
        return _parse_date_time(value)
    return value


def validate_arguments(schema: ObjectSchema, arguments: dict[str, Any]) -> list[FieldError]:
    """Check `arguments` against `schema`; return all field-level errors."""
    errors: list[FieldError] = []

    for name in schema.required:
        if name not in arguments:
            errors.append(missing_required_field(name))

    bad_fields: set[str] = set()
    for name, value in arguments.items():
        declared = schema.properties.get(name)
        if declared is None:
            errors.append(unknown_field(name))
            continue
        field_errors = _check_field(name, declared, value)
        if field_errors:
            bad_fields.add(name)
            errors.extend(field_errors)

    for pair in schema.ordered:
        if pair.lower not in arguments or pair.upper not in arguments:
            continue
        if pair.lower in bad_fields or pair.upper in bad_fields:
            continue
        lower_decl = schema.properties[pair.lower]
        upper_decl = schema.properties[pair.upper]
        lower = _comparable(lower_decl, arguments[pair.lower])
        upper = _comparable(upper_decl, arguments[pair.upper])
        if upper < lower:
            errors.append(
                out_of_range(pair.upper, f"Field {pair.upper} must not be before {pair.lower}")
            )

    return errors


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)
