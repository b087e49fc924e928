"""Schema validation for finalized structured data.

A schema can be a pydantic model class, a ``TypeAdapter``, or a plain
``(value) -> bool`` predicate.  Validation never raises: callers get a
``(ok, value)`` pair and decide whether to suppress or keep the raw value.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Union

from pydantic import BaseModel, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

SchemaValidator = Union[type[BaseModel], TypeAdapter, Callable[[Any], bool]]


def validate_with_schema(schema: SchemaValidator | None, value: Any) -> tuple[bool, Any]:
    """Check ``value`` against ``schema``.

    Returns ``(True, validated)`` on success, where ``validated`` is the
    model instance for pydantic schemas and the value itself for predicates.
    Returns ``(False, value)`` on failure.
    """
    if schema is None:
        return True, value

    try:
        if isinstance(schema, type) and issubclass(schema, BaseModel):
            return True, schema.model_validate(value)
        if isinstance(schema, TypeAdapter):
            return True, schema.validate_python(value)
        if schema(value):
            return True, value
    except ValidationError as e:
        logger.debug("Structured value failed validation: %s", e.errors(include_url=False))
        return False, value
    except Exception as e:
        logger.warning("Schema predicate raised: %s", e)
        return False, value

    return False, value
