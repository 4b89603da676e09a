"""
Tests for column mapping: header catalog, resolver strategies, the required
field invariant and the external classifier client.
"""

from __future__ import annotations

import pytest
import requests

from roster_app.importer.errors import AmbiguousRequiredField, MappingConfigError, RequiredFieldUnmapped
from roster_app.importer.mapping import MappingLoadError, load_header_patterns, match_header
from roster_app.importer.pipeline import (
    BatchStore,
    ClassifierSuggestion,
    ColumnMapping,
    DisabledClassifier,
    HttpColumnClassifier,
    MappingResolver,
    SessionPhase,
    build_classifier,
    check_required_fields,
)
from roster_app.importer.pipeline.classifier import parse_classifier_response
from roster_app.importer.pipeline.resolver import compare_headers
from roster_app.importer.pipeline.session import ImportStep


class StaticClassifier:
    def __init__(self, suggestions):
        self.suggestions = suggestions
        self.calls = []

    def classify(self, headers, samples, already_mapped):
        self.calls.append((list(headers), dict(already_mapped)))
        return self.suggestions


class FakeResponse:
    def __init__(self, text, status_code=200):
        self.text = text
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeHttp:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.requests = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.requests.append({"url": url, "json": json, "headers": headers, "timeout": timeout})
        if self.exc is not None:
            raise self.exc
        return self.response


def test_match_header_tries_compact_form():
    assert match_header("Kundenavn").field == "navn"
    match = match_header("Post nr")
    assert match.field == "postnummer"
    assert match.confidence == 1.0
    assert match_header("Firma").confidence == 0.9
    assert match_header("   ") is None


def test_load_header_patterns_rejects_unknown_field(tmp_path):
    path = tmp_path / "patterns.yaml"
    path.write_text("version: 1\nfields:\n  skostorrelse:\n    - {pattern: '^sko$'}\n", encoding="utf-8")

    with pytest.raises(MappingLoadError, match="skostorrelse"):
        load_header_patterns(path)


def test_resolve_suggests_catalog_matches_and_open_questions(app):
    resolver = MappingResolver(classifier=DisabledClassifier())

    resolution = resolver.resolve(
        ["Kundenavn", "Adresse", "Epost", "Ukjent kolonne"],
        {"Ukjent kolonne": ["x1", "", "x2"]},
    )

    by_column = {mapping.source_column: mapping for mapping in resolution.mappings}
    assert by_column["Kundenavn"].target_field == "navn"
    assert by_column["Kundenavn"].confidence == 1.0
    assert by_column["Epost"].target_field == "epost"
    assert by_column["Ukjent kolonne"].target_field is None

    question = resolution.open_questions[0]
    assert question["source_column"] == "Ukjent kolonne"
    assert question["options"] == ["custom", "ignore"]
    assert question["samples"] == ["x1", "x2"]
    assert [item["target_field"] for item in resolution.confirmations_required] == ["navn", "adresse"]


def test_classifier_only_sees_unresolved_headers(app):
    classifier = StaticClassifier([ClassifierSuggestion("Kol A", "telefon", 0.9)])
    resolver = MappingResolver(classifier=classifier)

    resolution = resolver.resolve(["Kundenavn", "Adresse", "Kol A"], {})

    headers, already_mapped = classifier.calls[0]
    assert headers == ["Kol A"]
    assert already_mapped == {"Kundenavn": "navn", "Adresse": "adresse"}
    mapping = resolution.mappings[2]
    assert mapping.target_field == "telefon"
    assert mapping.origin == "ai"
    assert resolution.open_questions == []


def test_each_target_goes_to_the_most_confident_column(app):
    resolution = MappingResolver(classifier=DisabledClassifier()).resolve(["Firma", "Kundenavn", "Adresse"], {})

    by_column = {mapping.source_column: mapping for mapping in resolution.mappings}
    assert by_column["Kundenavn"].target_field == "navn"
    assert by_column["Firma"].target_field is None


def test_one_column_on_two_required_fields_is_ambiguous():
    mappings = [
        ColumnMapping("Kunde", "navn", required=True, human_confirmed=True),
        ColumnMapping("Kunde", "adresse", required=True, human_confirmed=True),
    ]

    with pytest.raises(AmbiguousRequiredField) as excinfo:
        check_required_fields(mappings)

    assert excinfo.value.fields == ("navn", "adresse")
    assert excinfo.value.http_status == 422


def test_unconfirmed_required_field_blocks_apply(controller, upload_roster):
    state, _ = upload_roster()
    state = controller.approve_cleaning(state)

    with pytest.raises(RequiredFieldUnmapped) as excinfo:
        controller.apply_mapping(state, state.mapping)

    assert excinfo.value.reason == "unconfirmed"
    assert state.step == ImportStep.MAPPING
    assert state.phase == SessionPhase.ERROR
    assert state.error_code == "REQUIRED_FIELD_UNMAPPED"
    assert BatchStore().get_batch(state.batch_id).mapping_config_json is None


def test_ignoring_a_required_column_is_reported_missing(controller, upload_roster, confirm_mapping):
    state, _ = upload_roster()
    state = controller.approve_cleaning(state)
    entries = [
        {"source_column": "Adresse", "ignored": True} if entry["source_column"] == "Adresse" else entry
        for entry in confirm_mapping(state.mapping)
    ]

    with pytest.raises(RequiredFieldUnmapped) as excinfo:
        controller.apply_mapping(state, entries)

    assert excinfo.value.field == "adresse"
    assert excinfo.value.reason == "missing"


def test_apply_mapping_rejects_unknown_columns(controller, upload_roster, confirm_mapping):
    state, _ = upload_roster()
    state = controller.approve_cleaning(state)
    entries = confirm_mapping(state.mapping) + [{"source_column": "Finnes ikke", "ignored": True}]

    with pytest.raises(MappingConfigError):
        controller.apply_mapping(state, entries)


def test_custom_columns_land_under_extra(controller, upload_roster, roster_csv, confirm_mapping):
    payload = roster_csv("Kundenavn;Adresse;Intern kode", "Hotell Vest;Kaigata 1;A1")
    state, _ = upload_roster(payload)
    state = controller.approve_cleaning(state)
    entries = []
    for entry in confirm_mapping(state.mapping):
        if entry["source_column"] == "Intern kode":
            entry = {"source_column": "Intern kode", "custom": True, "custom_name": "kode"}
        entries.append(entry)

    state = controller.apply_mapping(state, entries)

    row = BatchStore().get_row(state.batch_id, 0)
    assert row.mapped_json["navn"] == "Hotell Vest"
    assert row.mapped_json["extra"] == {"kode": "A1"}


def test_confirmed_mapping_is_reused_for_the_same_headers(controller, upload_roster, confirm_mapping):
    state, _ = upload_roster()
    state = controller.approve_cleaning(state)
    controller.apply_mapping(state, confirm_mapping(state.mapping))

    second, result = upload_roster(file_name="kunder-mai.csv")

    assert result["template_id"] is not None
    assert {entry["origin"] for entry in second.mapping} == {"template"}
    assert result["format_change"] is None


def test_changed_headers_report_a_format_change(controller, upload_roster, roster_csv, confirm_mapping):
    state, _ = upload_roster()
    state = controller.approve_cleaning(state)
    controller.apply_mapping(state, confirm_mapping(state.mapping))

    payload = roster_csv("Kundenavn;Gateadresse;Epost", "Hotell Vest;Kaigata 1;resepsjon@hotellvest.no")
    _, result = upload_roster(payload)

    change = result["format_change"]
    assert change["renamed"][0]["old"] == "adresse"
    assert change["renamed"][0]["new"] == "gateadresse"
    assert result["template_id"] is None


def test_compare_headers_scores_renames():
    comparison = compare_headers(["Kundenavn", "Adresse", "Epost"], ["Kundenavn", "Gateadresse", "Epost", "Telefon"])

    assert comparison["added"] == ["telefon"]
    assert comparison["removed"] == []
    assert comparison["similarity"] == 0.75


def test_parse_classifier_response_tolerates_fences_and_filters():
    body = """```json
    {"mappings": [
        {"source_column": "Kol A", "target_field": "telefon", "confidence": 0.92},
        {"source_column": "Kol B", "target_field": "skostorrelse", "confidence": 0.9},
        {"source_column": "Kol C", "target_field": "epost", "confidence": 0.2}
    ]}
    ```"""

    suggestions = parse_classifier_response(body, ["Kol A", "Kol B", "Kol C"])

    assert suggestions == [ClassifierSuggestion("Kol A", "telefon", 0.92)]


def test_parse_classifier_response_rejects_wrong_shape():
    with pytest.raises(ValueError):
        parse_classifier_response('{"columns": []}', ["Kol A"])


def test_http_classifier_posts_unmapped_fields_only():
    http = FakeHttp(FakeResponse('{"mappings": [{"source_column": "Kol A", "target_field": "telefon", "confidence": 0.8}]}'))
    classifier = HttpColumnClassifier("https://classifier.invalid/v1", api_key="secret", http=http)

    suggestions = classifier.classify(["Kol A"], {"Kol A": ["22 33 44 55"]}, {"Kundenavn": "navn"})

    assert suggestions[0].target_field == "telefon"
    sent = http.requests[0]
    assert sent["headers"]["Authorization"] == "Bearer secret"
    assert "navn" not in {item["field"] for item in sent["json"]["fields"]}
    assert sent["json"]["samples"] == {"Kol A": ["22 33 44 55"]}


@pytest.mark.parametrize(
    "http",
    [
        FakeHttp(exc=requests.ConnectionError("connection refused")),
        FakeHttp(FakeResponse("upstream exploded", status_code=502)),
        FakeHttp(FakeResponse("not json")),
    ],
)
def test_http_classifier_failures_yield_no_suggestions(http):
    classifier = HttpColumnClassifier("https://classifier.invalid/v1", http=http)

    assert classifier.classify(["Kol A"], {}, {}) is None


def test_build_classifier_requires_flag_and_url():
    assert isinstance(build_classifier({"IMPORTER_CLASSIFIER_ENABLED": False}), DisabledClassifier)
    assert isinstance(build_classifier({"IMPORTER_CLASSIFIER_ENABLED": True}), DisabledClassifier)

    classifier = build_classifier(
        {
            "IMPORTER_CLASSIFIER_ENABLED": True,
            "IMPORTER_CLASSIFIER_URL": "https://classifier.invalid/v1",
            "IMPORTER_CLASSIFIER_TIMEOUT_SECONDS": 3,
        }
    )
    assert isinstance(classifier, HttpColumnClassifier)
    assert classifier.timeout == 3.0
