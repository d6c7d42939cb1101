"""JSON Schema validation utilities."""

from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError


def validate_schema(data: Any, schema: dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate data against a JSON Schema.

    Tool hosts publish their own schemas; a schema that is itself
    invalid is treated as "accept anything" so the host stays the
    final judge of its arguments.

    Args:
        data: The data to validate
        schema: JSON Schema to validate against

    Returns:
        Tuple of (is_valid, list of error messages)
    """
    if not schema:
        return True, []

    try:
        Draft7Validator.check_schema(schema)
    except SchemaError:
        return True, []

    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))

    if not errors:
        return True, []

    error_messages = [
        f"{'.'.join(str(p) for p in e.path)}: {e.message}" if e.path else e.message
        for e in errors
    ]

    return False, error_messages
