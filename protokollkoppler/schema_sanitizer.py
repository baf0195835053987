"""Normalize tool parameter schemas into the dialect the backend accepts.

The backend understands an OpenAPI-flavoured subset of JSON Schema. Keywords it
rejects are dropped, validation keywords it cannot express are folded into the
description, nullable unions become `nullable: true`, and unions made only of
enums collapse into a single enum. Anything that is not a schema object passes
through untouched.
"""

from __future__ import annotations

from typing import Any

REMOVED_KEYWORDS = frozenset(
    {
        "$schema",
        "additionalProperties",
        "default",
        "uniqueItems",
        "propertyNames",
        "patternProperties",
        "unevaluatedProperties",
    }
)

VALIDATION_KEYWORDS = (
    "minLength",
    "maxLength",
    "minimum",
    "maximum",
    "exclusiveMinimum",
    "exclusiveMaximum",
    "minItems",
    "maxItems",
)

_UNION_KEYWORDS = ("anyOf", "oneOf")
_PURE_ENUM_KEYS = frozenset({"type", "enum", "description", "title", "nullable"})


def clean_json_schema(schema: Any, *, uppercase_types: bool = False) -> Any:
    """Return a backend-compatible copy of `schema`.

    With `uppercase_types`, every `type` token in the tree is upper-cased
    (`string` -> `STRING`), which is what the parts-oriented dialect expects.
    """
    cleaned = _clean(schema)
    if uppercase_types:
        return uppercase_schema_types(cleaned)
    return cleaned


def uppercase_schema_types(schema: Any) -> Any:
    """Upper-case `type` tokens tree-wide, leaving property names alone."""
    if isinstance(schema, list):
        return [uppercase_schema_types(item) for item in schema]
    if not isinstance(schema, dict):
        return schema
    out: dict[str, Any] = {}
    for key, value in schema.items():
        if key == "type" and isinstance(value, str):
            out[key] = value.upper()
        elif key == "type" and isinstance(value, list):
            out[key] = [item.upper() if isinstance(item, str) else item for item in value]
        elif key == "properties" and isinstance(value, dict):
            out[key] = {name: uppercase_schema_types(prop) for name, prop in value.items()}
        else:
            out[key] = uppercase_schema_types(value)
    return out


def infer_type_from_value(value: Any) -> str | None:
    """Map a Python value to the JSON Schema type name describing it."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return None


def _unique(values: list[Any]) -> list[Any]:
    out: list[Any] = []
    for value in values:
        # `True == 1` in Python; enum members must also agree on type.
        if not any(type(seen) is type(value) and seen == value for seen in out):
            out.append(value)
    return out


def _is_null_type(value: Any) -> bool:
    return isinstance(value, str) and value.lower() == "null"


def _clean(schema: Any) -> Any:
    if isinstance(schema, list):
        return [_clean(item) for item in schema]
    if not isinstance(schema, dict):
        return schema

    validations = [f"{key}: {schema[key]}" for key in VALIDATION_KEYWORDS if key in schema]
    cleaned: dict[str, Any] = {}
    enum_values: list[Any] | None = None
    has_const = False
    const_value: Any = None
    nullable = False

    for key, value in schema.items():
        if key in REMOVED_KEYWORDS or key in VALIDATION_KEYWORDS:
            continue
        if key == "const":
            has_const = True
            const_value = value
            continue
        if key == "enum" and isinstance(value, list):
            enum_values = list(value)
            cleaned["enum"] = enum_values
            continue
        if key == "type" and isinstance(value, list):
            concrete = [item for item in value if not _is_null_type(item)]
            if concrete:
                cleaned["type"] = concrete[0]
                if len(concrete) < len(value):
                    nullable = True
            else:
                cleaned["type"] = value[0] if value else "string"
            continue
        if key == "properties" and isinstance(value, dict):
            # Property names are user data, never keywords.
            cleaned[key] = {
                name: _clean(prop) if isinstance(prop, (dict, list)) else prop
                for name, prop in value.items()
            }
            continue
        if key in _UNION_KEYWORDS and isinstance(value, list):
            branches = [_clean(branch) for branch in value]
            flattened = _flatten_enum_union(branches)
            if flattened is None:
                cleaned[key] = branches
                continue
            union_type, union_values, union_nullable = flattened
            cleaned.setdefault("type", union_type)
            enum_values = (enum_values or []) + union_values
            cleaned["enum"] = enum_values
            nullable = nullable or union_nullable
            continue
        if isinstance(value, (dict, list)):
            cleaned[key] = _clean(value)
        else:
            cleaned[key] = value

    if has_const:
        enum_values = [const_value, *(enum_values or [])]
        cleaned["enum"] = enum_values
        if "type" not in cleaned:
            inferred = infer_type_from_value(const_value)
            if inferred:
                cleaned["type"] = inferred

    if enum_values is not None:
        cleaned["enum"] = _unique(enum_values)

    if nullable:
        cleaned["nullable"] = True

    if validations:
        annotation = ", ".join(validations)
        description = cleaned.get("description")
        if isinstance(description, str) and description:
            cleaned["description"] = f"{description} ({annotation})"
        else:
            cleaned["description"] = f"Validation: {annotation}"

    return cleaned


def _flatten_enum_union(branches: list[Any]) -> tuple[str, list[Any], bool] | None:
    """Collapse `anyOf`/`oneOf` branches that are all enums of one type."""
    shared_type: str | None = None
    values: list[Any] = []
    nullable = False
    saw_enum = False
    for branch in branches:
        if not isinstance(branch, dict):
            return None
        branch_type = branch.get("type")
        if _is_null_type(branch_type) and "enum" not in branch:
            nullable = True
            continue
        if not set(branch) <= _PURE_ENUM_KEYS:
            return None
        enum = branch.get("enum")
        if not isinstance(enum, list) or not isinstance(branch_type, str):
            return None
        if shared_type is None:
            shared_type = branch_type
        elif shared_type != branch_type:
            return None
        saw_enum = True
        values.extend(enum)
        if branch.get("nullable") is True:
            nullable = True
    if not saw_enum or shared_type is None:
        return None
    return shared_type, _unique(values), nullable
