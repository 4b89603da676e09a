"""Canonical customer field catalog for roster imports.

Every mapping targets one of these fields. The Norwegian keys are what
operators see in the mapping step; ``attribute`` names the ``Customer`` column
the committed value lands in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Tuple

FIELD_TYPES = ("string", "email", "phone", "postal", "date", "integer", "category")


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing a target customer field."""

    name: str
    description: str
    attribute: str
    field_type: str = "string"
    required: bool = False
    aliases: Tuple[str, ...] = ()
    min_length: int | None = None
    expected_format: str | None = None

    def headers(self) -> Tuple[str, ...]:
        """Return the canonical key plus aliases used for header matching."""

        return (self.name, *self.aliases)


CUSTOMER_FIELDS: Tuple[FieldSpec, ...] = (
    FieldSpec(
        name="navn",
        description="Customer or company name.",
        attribute="name",
        required=True,
        aliases=("kundenavn", "firmanavn", "bedriftsnavn", "name", "customer", "company"),
        min_length=2,
        expected_format="At least 2 characters",
    ),
    FieldSpec(
        name="adresse",
        description="Street address of the serviced site.",
        attribute="address",
        required=True,
        aliases=("gateadresse", "besøksadresse", "address", "street", "street address"),
        min_length=3,
        expected_format="At least 3 characters",
    ),
    FieldSpec(
        name="postnummer",
        description="Four digit Norwegian postal code.",
        attribute="postal_code",
        field_type="postal",
        aliases=("postnr", "zip", "zipcode", "postal code", "postcode"),
        expected_format="4 digits, e.g. 0150",
    ),
    FieldSpec(
        name="poststed",
        description="Postal town.",
        attribute="city",
        aliases=("sted", "by", "city", "town"),
    ),
    FieldSpec(
        name="telefon",
        description="Primary phone number.",
        attribute="phone",
        field_type="phone",
        aliases=("tlf", "mobil", "telefonnummer", "phone", "mobile", "phone number"),
        expected_format="8 digits, e.g. 22 33 44 55",
    ),
    FieldSpec(
        name="epost",
        description="Primary email address (normalized lower-case).",
        attribute="email",
        field_type="email",
        aliases=("e-post", "email", "e-mail", "mail", "epostadresse"),
        expected_format="name@domain.no",
    ),
    FieldSpec(
        name="kontaktperson",
        description="Named contact at the customer.",
        attribute="contact_person",
        aliases=("kontakt", "contact", "contact person"),
    ),
    FieldSpec(
        name="kategori",
        description="Service category.",
        attribute="category",
        field_type="category",
        aliases=("type", "bransje", "category"),
    ),
    FieldSpec(
        name="notater",
        description="Free-text notes.",
        attribute="notes",
        aliases=("notat", "merknad", "kommentar", "notes", "comments"),
    ),
    FieldSpec(
        name="ekstern_id",
        description="Identifier from the operator's previous system.",
        attribute="external_id",
        aliases=("kundenummer", "kundenr", "id", "customer id", "external id"),
    ),
    FieldSpec(
        name="org_nummer",
        description="Norwegian organization number.",
        attribute="org_number",
        aliases=("orgnr", "organisasjonsnummer", "org nr", "org number"),
    ),
    FieldSpec(
        name="siste_kontroll",
        description="Date of the last inspection.",
        attribute="last_inspection",
        field_type="date",
        aliases=("sist kontrollert", "forrige kontroll", "last inspection", "last control"),
        expected_format="YYYY-MM-DD or DD.MM.YYYY",
    ),
    FieldSpec(
        name="neste_kontroll",
        description="Date the next inspection is due.",
        attribute="next_inspection",
        field_type="date",
        aliases=("neste kontroll", "next inspection", "next control"),
        expected_format="YYYY-MM-DD or DD.MM.YYYY",
    ),
    FieldSpec(
        name="kontroll_intervall_mnd",
        description="Months between inspections.",
        attribute="inspection_interval_months",
        field_type="integer",
        aliases=("intervall", "kontrollintervall", "interval", "interval months"),
        expected_format="Whole number of months",
    ),
)

REQUIRED_FIELDS: Tuple[str, ...] = tuple(spec.name for spec in CUSTOMER_FIELDS if spec.required)

# Weights used for row completeness scoring; unlisted fields do not count.
COMPLETENESS_WEIGHTS: Mapping[str, float] = {
    "navn": 1.0,
    "adresse": 1.0,
    "postnummer": 0.8,
    "poststed": 0.6,
    "telefon": 0.7,
    "epost": 0.7,
    "kontaktperson": 0.5,
    "siste_kontroll": 0.9,
    "neste_kontroll": 0.9,
}


def get_customer_field_specs() -> Mapping[str, FieldSpec]:
    """Return field specs keyed by name, in catalog order."""

    return {spec.name: spec for spec in CUSTOMER_FIELDS}


def get_field_spec(name: str) -> FieldSpec | None:
    return get_customer_field_specs().get(name)


def is_required_field(name: str | None) -> bool:
    return bool(name) and name in REQUIRED_FIELDS


def normalize_header(header: str) -> str:
    """Lower-case and collapse separators so headers compare consistently."""

    return " ".join(str(header or "").replace("_", " ").replace("-", " ").lower().split())
