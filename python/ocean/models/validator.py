"""
ocean/models/validator.py

TypeAdapter-based helpers for checking loosely typed values (context-manager
yields, JSON printed by remote scripts) against the pydantic types we expect.
"""

from typing import Any, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T]) -> T:
    """
    Validate a Python object against `expected_type`.

    Raises:
        ValueError: If the object does not conform.
    """
    try:
        return TypeAdapter(expected_type).validate_python(obj)
    except ValidationError as e:
        raise ValueError(f"Validation failed for type {expected_type}: {e}") from e


def validate_json(text: str, expected_type: Type[T]) -> T:
    """
    Parse a JSON document and validate it against `expected_type`.

    Args:
        text: Raw JSON, e.g. stdout of a remote script. Surrounding whitespace
            is ignored.
        expected_type: The pydantic model or type to produce.

    Returns:
        T: The parsed and validated value.

    Raises:
        ValueError: If the text is not valid JSON or does not conform.
    """
    try:
        return TypeAdapter(expected_type).validate_json(text.strip())
    except ValidationError as e:
        raise ValueError(f"Invalid JSON for type {expected_type}: {e}") from e
