"""Operator edit overlay shared by preview, validation and commit."""

from __future__ import annotations

from typing import Any, Mapping

from roster_app.importer.contracts import get_customer_field_specs
from roster_app.importer.errors import MappingConfigError

from .transform import coerce_value


def apply_edits(mapped: Mapping[str, Any] | None, edits: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Return ``mapped`` with operator edits laid over it.

    Edits are keyed by target field; an edited value always wins over the
    mapped one, including an edit that blanks the field.
    """

    result = dict(mapped or {})
    if edits:
        for field_name, value in edits.items():
            result[field_name] = value
    return result


def normalize_edits(edits: Mapping[str, Any]) -> dict[str, Any]:
    """Coerce incoming edit values per field type; unknown fields are rejected."""

    specs = get_customer_field_specs()
    normalized: dict[str, Any] = {}
    for field_name, value in edits.items():
        spec = specs.get(field_name)
        if spec is None:
            raise MappingConfigError(f"Unknown target field '{field_name}'.", field=field_name)
        normalized[field_name] = coerce_value(value, spec.field_type)
    return normalized
