from __future__ import annotations

import logging
from typing import Any

UNSUPPORTED_SCHEMA_KEYS = (
    "propertyNames",
    "$ref",
    "$defs",
    "definitions",
    "patternProperties",
    "unevaluatedProperties",
    "unevaluatedItems",
    "dependentSchemas",
    "dependentRequired",
    "if",
    "then",
    "else",
    "not",
    "contentMediaType",
    "contentEncoding",
    "contentSchema",
    "minContains",
    "maxContains",
)

UNION_KEYS = ("anyOf", "oneOf")

_SINGLE_SCHEMA_KEYS = ("items", "additionalProperties", "contains", "propertyNames")
_SCHEMA_LIST_KEYS = ("items", "prefixItems", "allOf", "anyOf", "oneOf")

logger = logging.getLogger("uvicorn.error")


def normalize_schema(schema: dict[str, Any] | None) -> dict[str, Any] | None:
    """Rewrite a JSON Schema in place into the subset Gemini function calling accepts.

    Unsupported keywords are dropped, ``anyOf``/``oneOf`` collapse to their first
    non-null branch, ``allOf`` members are merged first-writer-wins and type arrays
    collapse to their first non-null entry. Malformed constructs are skipped.
    """
    if schema is None:
        return None
    if not isinstance(schema, dict):
        return schema

    _drop_unsupported_keys(schema)
    for union_key in UNION_KEYS:
        if union_key in schema:
            _flatten_union(schema, union_key)
    if "allOf" in schema:
        _merge_all_of(schema)
    _collapse_type_array(schema)
    _normalize_nested(schema)
    # allOf members can carry keys that were already swept above.
    _drop_unsupported_keys(schema)
    return schema


def _drop_unsupported_keys(schema: dict[str, Any]) -> None:
    for key in UNSUPPORTED_SCHEMA_KEYS:
        if key in schema:
            schema.pop(key)
            logger.debug("schema_key_removed key=%s", key)


def _flatten_union(schema: dict[str, Any], union_key: str) -> None:
    branches = schema.pop(union_key)
    if not isinstance(branches, list) or not branches:
        return

    selected: dict[str, Any] | None = None
    for branch in branches:
        if not isinstance(branch, dict):
            continue
        normalize_schema(branch)
        if selected is not None:
            continue
        branch_type = branch.get("type")
        if isinstance(branch_type, str) and branch_type != "null":
            selected = branch

    if selected is None:
        logger.debug("schema_union_unresolved key=%s branches=%d", union_key, len(branches))
        return
    for key, value in selected.items():
        schema[key] = value
    logger.debug("schema_union_flattened key=%s type=%s", union_key, selected["type"])


def _merge_all_of(schema: dict[str, Any]) -> None:
    members = schema.pop("allOf")
    if not isinstance(members, list):
        return
    for member in members:
        if not isinstance(member, dict):
            continue
        normalize_schema(member)
        for key, value in member.items():
            if key not in schema:
                schema[key] = value


def _collapse_type_array(schema: dict[str, Any]) -> None:
    type_value = schema.get("type")
    if not isinstance(type_value, list):
        return
    for candidate in type_value:
        if isinstance(candidate, str) and candidate != "null":
            schema["type"] = candidate
            logger.debug("schema_type_array_collapsed type=%s", candidate)
            return
    # A type array made only of "null" is left as-is.


def _normalize_nested(schema: dict[str, Any]) -> None:
    properties = schema.get("properties")
    if isinstance(properties, dict):
        for value in properties.values():
            if isinstance(value, dict):
                normalize_schema(value)

    for key in _SINGLE_SCHEMA_KEYS:
        value = schema.get(key)
        if isinstance(value, dict):
            normalize_schema(value)

    for key in _SCHEMA_LIST_KEYS:
        values = schema.get(key)
        if not isinstance(values, list):
            continue
        for value in values:
            if isinstance(value, dict):
                normalize_schema(value)
