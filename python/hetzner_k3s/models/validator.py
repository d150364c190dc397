"""
hetzner_k3s/models/validator.py

Validates loosely-typed data (decoded JSON from the Hetzner API, YAML from the
cluster file) against pydantic-compatible types using TypeAdapter.
"""

from typing import Any, Type, TypeVar
from pydantic import ValidationError, TypeAdapter

T = TypeVar("T")


def validate_type(obj: Any, expected_type: Type[T], context: str = "") -> T:
    """
    Validates that `obj` conforms to `expected_type`.

    Args:
        obj (Any): The object to validate, typically decoded JSON.
        expected_type (Type[T]): The type (pydantic model or typing construct).
        context (str): Optional description of where `obj` came from, included
            in the error message (e.g. "GET /servers").

    Returns:
        T: The validated object.

    Raises:
        ValueError: If validation fails.
    """
    try:
        return TypeAdapter(expected_type).validate_python(obj)
    except ValidationError as e:
        where = f" ({context})" if context else ""
        raise ValueError(f"Unexpected data for {expected_type}{where}: {e}") from e
