"""Compiles JSON-schema-like definitions into pydantic validators.

Only a small subset is understood: ``object`` (``properties`` and
``required``), ``array`` (``items``), ``string`` with an optional ``enum``,
``number``/``integer`` and ``boolean``. Anything else accepts any value. A
bare list is read as an array of its first element.
"""

import json
from typing import Any, List, Literal, Optional, Union

from pydantic import StrictBool, StrictFloat, StrictInt, StrictStr, TypeAdapter, create_model

from .exceptions import SchemaCompilationError


def compile_schema(definition: Any) -> TypeAdapter:
    """Return a ``TypeAdapter`` validating values against ``definition``.

    ``definition`` may be a mapping, a list or a JSON string.
    """
    if isinstance(definition, str):
        try:
            definition = json.loads(definition)
        except json.JSONDecodeError as e:
            raise SchemaCompilationError(f"Schema is not valid JSON: {e}") from e
    
    return TypeAdapter(_build_type(definition, "StructuredOutput"))


def _build_type(definition: Any, name: str):
    if isinstance(definition, list):
        return List[_build_type(definition[0] if definition else None, f"{name}Item")]
    
    if not isinstance(definition, dict):
        return Any
    
    schema_type = definition.get("type")
    
    if schema_type == "object":
        required = set(definition.get("required") or [])
        fields = {}
        for key, value in (definition.get("properties") or {}).items():
            field_type = _build_type(value, f"{name}_{_safe_name(key)}")
            if key in required:
                fields[key] = (field_type, ...)
            else:
                fields[key] = (Optional[field_type], None)
        try:
            return create_model(name, **fields)
        except (TypeError, ValueError, NameError) as e:
            raise SchemaCompilationError(f"Cannot build object schema '{name}': {e}") from e
    
    if schema_type == "array":
        return List[_build_type(definition.get("items"), f"{name}Item")]
    
    if schema_type == "string":
        enum = definition.get("enum")
        if isinstance(enum, list) and enum:
            return Literal[tuple(enum)]
        return StrictStr
    
    if schema_type in ("number", "integer"):
        return Union[StrictInt, StrictFloat]
    
    if schema_type == "boolean":
        return StrictBool
    
    return Any


def _safe_name(key: str) -> str:
    return "".join(ch if ch.isalnum() else "_" for ch in str(key)) or "field"
