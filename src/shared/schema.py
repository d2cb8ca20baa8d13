"""JSON Schema utilities for tool input schemas."""

from typing import Any

from jsonschema import Draft7Validator, SchemaError

# Keywords every function-calling backend accepts
SUPPORTED_KEYWORDS = frozenset({
    "type", "description", "properties", "required", "items",
    "enum", "minimum", "maximum", "minLength", "maxLength",
    "pattern", "default", "title", "anyOf", "oneOf", "allOf",
})

COMPOSITION_KEYWORDS = frozenset({"anyOf", "oneOf", "allOf"})


def clean_schema(
    schema: Any,
    supported: frozenset[str] = SUPPORTED_KEYWORDS
) -> Any:
    """
    Filter a JSON Schema down to a backend's supported keyword subset.

    Unsupported keywords (``additionalProperties``, ``$schema``, ``format``
    and the like) are dropped at every level: nested ``properties``,
    array ``items`` and each composition branch. Supported keyword values
    are copied unchanged.

    Args:
        schema: JSON Schema (non-dict values are returned as-is)
        supported: Keywords to keep

    Returns:
        A new, filtered schema
    """
    if not isinstance(schema, dict):
        return schema

    cleaned: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in supported:
            continue

        if key == "properties" and isinstance(value, dict):
            cleaned[key] = {
                name: clean_schema(prop, supported)
                for name, prop in value.items()
            }
        elif key == "items":
            cleaned[key] = clean_schema(value, supported)
        elif key in COMPOSITION_KEYWORDS and isinstance(value, list):
            cleaned[key] = [clean_schema(branch, supported) for branch in value]
        else:
            cleaned[key] = value

    return cleaned


def validate_schema(schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Check that a tool input schema is itself a valid Draft 7 schema.

    Args:
        schema: JSON Schema to check

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        path = ".".join(str(p) for p in e.path)
        return False, [f"{path}: {e.message}" if path else e.message]

    return True, []
