"""
Tests for row validation: field checks, duplicates, counts and idempotency.
"""

from __future__ import annotations

import pytest

from roster_app.importer.errors import BatchStateError
from roster_app.importer.pipeline import BatchStore, ColumnMapping, Validator
from roster_app.importer.pipeline.validator import (
    DUPLICATE_EXISTING,
    DUPLICATE_IN_BATCH,
    INVALID_DATE,
    INVALID_EMAIL,
    INVALID_POSTAL_CODE,
    REQUIRED_FIELD_MISSING,
    UNKNOWN_CATEGORY,
    correct_email,
    status_for,
    suggest_email_domain_fix,
    validate_values,
)
from roster_app.models import db
from roster_app.models.importer.schema import ImportBatchStatus, RowValidationStatus

MAPPINGS = [
    ColumnMapping("Kundenavn", "navn", required=True, human_confirmed=True),
    ColumnMapping("Adresse", "adresse", required=True, human_confirmed=True),
    ColumnMapping("Epost", "epost", field_type="email"),
    ColumnMapping("Postnr", "postnummer", field_type="postal"),
]


def _codes(issues):
    return {(issue.code, issue.severity) for issue in issues}


def test_malformed_email_gets_a_suggested_correction():
    issues = validate_values({"navn": "Bakeriet Nord", "adresse": "Storgata 12", "epost": "kari@firma,no"}, MAPPINGS)

    assert len(issues) == 1
    issue = issues[0]
    assert issue.code == INVALID_EMAIL
    assert issue.severity == "warning"
    assert issue.suggestion == "kari@firma.no"
    assert issue.source_column == "Epost"
    assert status_for(issues) == RowValidationStatus.WARNING


def test_email_helpers():
    assert suggest_email_domain_fix("ola@gmial.com") == "ola@gmail.com"
    assert suggest_email_domain_fix("ola@online.no") is None
    assert correct_email("ola @@firma.no") == "ola@firma.no"
    assert correct_email("ola@firma.no") is None


def test_unrepairable_email_and_short_name_are_errors():
    issues = validate_values({"navn": "A", "adresse": "Storgata 12", "epost": "ikke en epost"}, MAPPINGS)

    assert _codes(issues) == {(REQUIRED_FIELD_MISSING, "error"), (INVALID_EMAIL, "error")}
    assert status_for(issues) == RowValidationStatus.INVALID


def test_required_fields_are_checked_even_when_blank():
    issues = validate_values({"navn": None, "adresse": "Storgata 12"}, MAPPINGS[:2])

    assert [(issue.field, issue.code) for issue in issues] == [("navn", REQUIRED_FIELD_MISSING)]


def test_category_warning_suggests_the_closest_known_category():
    issues = validate_values(
        {"navn": "Fjordkafeen AS", "adresse": "Strandgata 4", "kategori": "Restaurnt"},
        MAPPINGS[:2],
        categories=("Restaurant", "Hotell"),
    )

    assert issues[0].code == UNKNOWN_CATEGORY
    assert issues[0].suggestion == "Restaurant"
    assert validate_values(
        {"navn": "Fjordkafeen AS", "adresse": "Strandgata 4", "kategori": "hotell"},
        MAPPINGS[:2],
        categories=("Restaurant", "Hotell"),
    ) == []


def test_preview_counts_and_stores_issues(preview_batch):
    state = preview_batch()

    batch = BatchStore().get_batch(state.batch_id)
    assert batch.status == ImportBatchStatus.VALIDATED
    assert (batch.valid_count, batch.warning_count, batch.error_count) == (2, 1, 0)
    assert batch.quality_report_json["overall_score"] > 0

    row = BatchStore().get_row(state.batch_id, 1)
    assert row.validation_status == RowValidationStatus.WARNING
    assert row.issues[0]["suggestion"] == "kari@firma.no"
    assert row.completeness_score > 0


def test_revalidation_is_idempotent(preview_batch):
    state = preview_batch()
    validator = Validator()

    first = validator.validate(state.batch_id).to_dict()
    issues_before = [row.errors_json for row in BatchStore().get_rows(state.batch_id)]
    second = validator.validate(state.batch_id).to_dict()
    issues_after = [row.errors_json for row in BatchStore().get_rows(state.batch_id)]

    assert issues_before == issues_after
    for key in ("valid_count", "warning_count", "error_count", "duplicate_count", "issue_groups"):
        assert first[key] == second[key]


def test_postal_and_inspection_dates(preview_batch, roster_csv):
    payload = roster_csv(
        "Kundenavn;Adresse;Postnr;Siste kontroll;Neste kontroll",
        "Fjordkafeen AS;Strandgata 4;12;15.03.2024;01.01.2024",
        "Hotell Vest;Kaigata 1;5003;01.05.1999;01.05.2025",
    )

    state = preview_batch(payload)

    invalid, old = BatchStore().get_rows(state.batch_id)
    assert invalid.validation_status == RowValidationStatus.INVALID
    assert {issue["code"] for issue in invalid.issues} == {INVALID_POSTAL_CODE, INVALID_DATE}
    assert invalid.mapped_json["siste_kontroll"] == "2024-03-15"
    assert old.validation_status == RowValidationStatus.WARNING
    assert old.issues[0]["code"] == INVALID_DATE


def test_duplicates_in_file_and_against_existing_customers(preview_batch, roster_csv, customer_factory):
    existing = customer_factory("Hotell Vest AS", "Kaigata 1")
    payload = roster_csv(
        "Kundenavn;Adresse",
        "Fjordkafeen AS;Strandgata 4",
        "Fjordkafeen;Strandgata 4",
        "Hotell Vest;Kaigata 1",
    )

    state = preview_batch(payload)

    first, repeat, known = BatchStore().get_rows(state.batch_id)
    assert first.duplicate_of_row_index is None
    assert repeat.duplicate_of_row_index == 0
    assert repeat.issues[0]["code"] == DUPLICATE_IN_BATCH
    assert repeat.issues[0]["message"] == "Possible duplicate of row 2 in this file."
    assert known.existing_customer_id == existing.id
    assert known.issues[0]["code"] == DUPLICATE_EXISTING
    assert known.issues[0]["suggestion"] == "update"
    assert BatchStore().get_batch(state.batch_id).counts_json["duplicates"] == 2


def test_organization_categories_override_config(preview_batch, roster_csv, test_organization):
    test_organization.known_categories_json = ["Restaurant", "Hotell"]
    db.session.commit()
    payload = roster_csv(
        "Kundenavn;Adresse;Kategori",
        "Fjordkafeen AS;Strandgata 4;Restaurnt",
        "Hotell Vest;Kaigata 1;hotell",
    )

    state = preview_batch(payload)

    flagged, accepted = BatchStore().get_rows(state.batch_id)
    assert flagged.issues[0]["code"] == UNKNOWN_CATEGORY
    assert accepted.validation_status == RowValidationStatus.VALID


def test_validate_requires_an_applied_mapping(upload_roster):
    state, _ = upload_roster()

    with pytest.raises(BatchStateError):
        Validator().validate(state.batch_id)

    assert BatchStore().get_batch(state.batch_id).status == ImportBatchStatus.CLEANED


def test_edit_fixes_an_invalid_row(controller, preview_batch, roster_csv):
    state = preview_batch(roster_csv("Kundenavn;Adresse", "A;Strandgata 4", "Hotell Vest;Kaigata 1"))
    assert BatchStore().get_row(state.batch_id, 0).validation_status == RowValidationStatus.INVALID

    state = controller.edit_cell(state, 0, {"navn": "Apotek Nord"})
    state = controller.to_preview(state)

    row = BatchStore().get_row(state.batch_id, 0)
    assert row.validation_status == RowValidationStatus.VALID
    assert row.mapped_json["navn"] == "A"
    assert state.edits == {"0": {"navn": "Apotek Nord"}}
