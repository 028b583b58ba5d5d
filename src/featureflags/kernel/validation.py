"""
Pure input validation for engine operations.

Each `validate_*` function takes the request value and returns a list of
field-level errors ({"field": ..., "message": ...}); an empty list means the
input is acceptable. Nothing here touches the store.
"""
from __future__ import annotations

from typing import Any, Dict, List

from jsonschema import Draft202012Validator
from jsonschema import ValidationError as SchemaError

from featureflags.kernel.errors import ValidationError

FieldError = Dict[str, str]

# alphanumerics, '_' and '-', not starting/ending with '_' or '-'
FLAG_NAME_PATTERN = r"^[A-Za-z0-9](?:[A-Za-z0-9_-]*[A-Za-z0-9])?$"

FLAG_NAME_MESSAGE = (
    "Flag name must contain only alphanumeric characters, underscores, and hyphens, "
    "and cannot start or end with underscore or hyphen"
)

_DEPENDENCY_IDS = {
    "type": "array",
    "items": {"type": "integer", "minimum": 1},
}

CREATE_FLAG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["name"],
    "properties": {
        "name": {"type": "string", "minLength": 3, "maxLength": 100, "pattern": FLAG_NAME_PATTERN},
        "dependencies": _DEPENDENCY_IDS,
    },
}

TOGGLE_FLAG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["enable", "reason"],
    "properties": {
        "enable": {"type": "boolean"},
        "reason": {"type": "string", "minLength": 3, "maxLength": 500},
    },
}

ADD_DEPENDENCIES_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["dependencies"],
    "properties": {
        "dependencies": {**_DEPENDENCY_IDS, "minItems": 1},
    },
}

ACTOR_SCHEMA: Dict[str, Any] = {"type": "string", "minLength": 1, "maxLength": 100}

_create_validator = Draft202012Validator(CREATE_FLAG_SCHEMA)
_toggle_validator = Draft202012Validator(TOGGLE_FLAG_SCHEMA)
_add_deps_validator = Draft202012Validator(ADD_DEPENDENCIES_SCHEMA)
_actor_validator = Draft202012Validator(ACTOR_SCHEMA)


def _field_name(e: SchemaError, default: str) -> str:
    # dependencies/2 -> "dependencies[2]"
    parts = list(e.absolute_path)
    if not parts:
        return default
    name = str(parts[0])
    for p in parts[1:]:
        name += f"[{p}]" if isinstance(p, int) else f".{p}"
    return name


def _message(e: SchemaError) -> str:
    v = e.validator
    if v == "required":
        return "This field is required"
    if v == "pattern":
        return FLAG_NAME_MESSAGE
    if v == "minLength":
        return f"Must be at least {e.validator_value} characters long"
    if v == "maxLength":
        return f"Must be at most {e.validator_value} characters long"
    if v == "minimum":
        return f"Must be greater than {int(e.validator_value) - 1}"
    if v == "minItems":
        return f"Must contain at least {e.validator_value} item(s)"
    if v == "type":
        return f"Must be of type {e.validator_value}"
    return "Invalid value"


def _collect(validator: Draft202012Validator, instance: Any, root: str = "(root)") -> List[FieldError]:
    out: List[FieldError] = []
    reported = set()
    for e in sorted(validator.iter_errors(instance), key=lambda e: [str(p) for p in e.absolute_path]):
        if e.validator == "required":
            # jsonschema yields one error per missing property, each carrying
            # the whole required list; report every missing property once
            present = e.instance if isinstance(e.instance, dict) else {}
            for prop in e.validator_value:
                if prop not in present and prop not in reported:
                    reported.add(prop)
                    out.append({"field": prop, "message": _message(e)})
            continue
        out.append({"field": _field_name(e, root), "message": _message(e)})
    return out


def validate_create_request(data: Dict[str, Any]) -> List[FieldError]:
    return _collect(_create_validator, data)


def validate_toggle_request(data: Dict[str, Any]) -> List[FieldError]:
    return _collect(_toggle_validator, data)


def validate_dependencies_request(data: Dict[str, Any]) -> List[FieldError]:
    return _collect(_add_deps_validator, data)


def validate_reason(reason: Any) -> List[FieldError]:
    if reason is None:
        return [{"field": "reason", "message": "This field is required"}]
    # reuse the toggle schema so the rules live in one place
    return [e for e in validate_toggle_request({"enable": True, "reason": reason}) if e["field"] == "reason"]


def validate_actor(actor: Any) -> List[FieldError]:
    if actor is None:
        return [{"field": "actor", "message": "This field is required"}]
    return _collect(_actor_validator, actor, root="actor")


def validate_flag_id(flag_id: Any, field: str = "id") -> List[FieldError]:
    # bool is an int subclass; reject it explicitly
    if isinstance(flag_id, bool) or not isinstance(flag_id, int):
        return [{"field": field, "message": "Must be an integer"}]
    if flag_id <= 0:
        return [{"field": field, "message": "Must be greater than 0"}]
    return []


def require_valid(errors: List[FieldError]) -> None:
    """Raise ValidationError carrying every field error, if any."""
    if errors:
        detail = ", ".join(f"{e['field']}: {e['message']}" for e in errors)
        raise ValidationError(detail=detail, errors=errors)


def validate_page(limit: Any, offset: Any) -> List[FieldError]:
    errors = validate_flag_id(limit, field="limit")
    if isinstance(offset, bool) or not isinstance(offset, int):
        errors.append({"field": "offset", "message": "Must be an integer"})
    elif offset < 0:
        errors.append({"field": "offset", "message": "Must be greater than -1"})
    return errors
