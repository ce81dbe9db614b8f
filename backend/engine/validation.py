"""
Event payload validation.

Turns raw client payloads into typed payload variants, or raises a
ValidationError whose ``details`` maps each offending field to a message.
"""
from __future__ import annotations

from typing import Any, Optional

import pydantic

from shared.errors import ValidationError
from shared.models.domain import MAX_IDEMPOTENCY_KEY_LENGTH, SpatialCoordinates
from shared.models.enums import EventType
from shared.models.payloads import PAYLOAD_MODELS, EventPayloadModel

_TYPE_NAMES = {
    "int_type": "integer",
    "string_type": "string",
    "bool_type": "boolean",
    "float_type": "number",
}


def parse_event_type(event_type: Any) -> EventType:
    try:
        return EventType(event_type)
    except ValueError:
        raise ValidationError(
            "UNKNOWN_EVENT_TYPE",
            f"Unknown event type: {event_type}",
            {"event_type": str(event_type)},
        ) from None


def validate_event_payload(event_type: Any, payload: Any) -> EventPayloadModel:
    """Validate ``payload`` against the schema registered for ``event_type``."""
    etype = parse_event_type(event_type)
    if not isinstance(payload, dict):
        raise ValidationError(
            "INVALID_EVENT_PAYLOAD",
            f"Invalid payload for event type {etype.value}",
            {"payload": f"Expected object, received {_json_type(payload)}"},
        )
    model = PAYLOAD_MODELS[etype]
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "INVALID_EVENT_PAYLOAD",
            f"Invalid payload for event type {etype.value}",
            format_errors(exc, payload),
        ) from None


def format_errors(exc: pydantic.ValidationError, payload: dict[str, Any]) -> dict[str, str]:
    """Flatten pydantic errors into {field: message}, first error per field wins."""
    details: dict[str, str] = {}
    for err in exc.errors():
        field = ".".join(str(p) for p in err["loc"]) or "payload"
        if field in details:
            continue
        details[field] = _message(err, payload.get(field))
    return details


def _message(err: dict[str, Any], value: Any) -> str:
    kind = err["type"]
    ctx = err.get("ctx") or {}
    field = ".".join(str(p) for p in err["loc"])
    if kind == "missing":
        return f"Missing required field: {field}"
    if kind == "extra_forbidden":
        return f"Unknown field: {field}"
    if kind in _TYPE_NAMES:
        return f"Expected {_TYPE_NAMES[kind]}, received {_json_type(value)}"
    if kind == "greater_than_equal":
        return f"Must be >= {ctx.get('ge')}"
    if kind == "string_too_short":
        return f"Must be at least {ctx.get('min_length')} characters"
    if kind.startswith("datetime"):
        return "Invalid format, expected date-time"
    return str(err["msg"])


def _json_type(value: Any) -> str:
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
    return "object"


def validate_spatial_coordinates(raw: Optional[Any]) -> Optional[SpatialCoordinates]:
    """Both axes must be numbers in [0.0, 1.0]; zone is an optional string."""
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValidationError(
            "INVALID_SPATIAL_COORDINATES",
            "Spatial coordinates must be an object",
            {"spatial_coordinates": f"Expected object, received {_json_type(raw)}"},
        )
    details: dict[str, str] = {}
    for axis in ("x", "y"):
        value = raw.get(axis)
        if value is None:
            details[axis] = f"Missing required field: {axis}"
        elif isinstance(value, bool) or not isinstance(value, (int, float)):
            details[axis] = f"Expected number, received {_json_type(value)}"
        elif not 0.0 <= value <= 1.0:
            details[axis] = f"{axis} coordinate must be between 0.0 and 1.0, received {value}"
    zone = raw.get("zone")
    if zone is not None and not isinstance(zone, str):
        details["zone"] = f"Expected string, received {_json_type(zone)}"
    unknown = set(raw) - {"x", "y", "zone"}
    for key in sorted(unknown):
        details[key] = f"Unknown field: {key}"
    if details:
        raise ValidationError(
            "INVALID_SPATIAL_COORDINATES",
            "Invalid spatial coordinates",
            details,
        )
    return SpatialCoordinates(x=float(raw["x"]), y=float(raw["y"]), zone=zone)


def validate_idempotency_key(key: Optional[str]) -> Optional[str]:
    """None means no key; otherwise 1 to MAX_IDEMPOTENCY_KEY_LENGTH characters."""
    if key is None:
        return None
    if not isinstance(key, str) or not 0 < len(key) <= MAX_IDEMPOTENCY_KEY_LENGTH:
        raise ValidationError(
            "INVALID_IDEMPOTENCY_KEY",
            f"Idempotency key must be 1-{MAX_IDEMPOTENCY_KEY_LENGTH} characters",
        )
    return key
