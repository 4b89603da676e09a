"""Target field catalog for roster imports."""

from __future__ import annotations

from .customer import (
    COMPLETENESS_WEIGHTS,
    CUSTOMER_FIELDS,
    FIELD_TYPES,
    REQUIRED_FIELDS,
    FieldSpec,
    get_customer_field_specs,
    get_field_spec,
    is_required_field,
    normalize_header,
)

__all__ = [
    "COMPLETENESS_WEIGHTS",
    "CUSTOMER_FIELDS",
    "FIELD_TYPES",
    "REQUIRED_FIELDS",
    "FieldSpec",
    "get_customer_field_specs",
    "get_field_spec",
    "is_required_field",
    "normalize_header",
]
