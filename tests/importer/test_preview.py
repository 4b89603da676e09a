from __future__ import annotations

import csv
from io import StringIO

import pytest

from roster_app.importer.errors import BatchBusy, MappingConfigError
from roster_app.importer.pipeline import (
    BatchLockRegistry,
    BatchStore,
    PreviewProjector,
    apply_edits,
    batch_locks,
    build_error_report,
    is_stale,
    normalize_edits,
)
from roster_app.importer.pipeline.report import ERROR_REPORT_COLUMNS


def test_apply_edits_wins_even_when_blanking():
    mapped = {"navn": "Hotell Vest", "epost": "post@hotellvest.no"}

    assert apply_edits(mapped, {"epost": None}) == {"navn": "Hotell Vest", "epost": None}
    assert apply_edits(None, None) == {}
    assert mapped["epost"] == "post@hotellvest.no"


def test_normalize_edits_coerces_and_rejects_unknown_fields():
    assert normalize_edits({"siste_kontroll": "15.03.2024", "epost": " Kari@Firma.no "}) == {
        "siste_kontroll": "2024-03-15",
        "epost": "kari@firma.no",
    }
    with pytest.raises(MappingConfigError):
        normalize_edits({"skostorrelse": "42"})


def test_preview_pages_and_filters_rows(preview_batch):
    state = preview_batch()
    projector = PreviewProjector()

    page = projector.preview(state.batch_id, limit=1, offset=1)
    assert page.total_rows == 3
    assert [row["row_index"] for row in page.rows] == [1]
    assert page.stale is False

    errors_only = projector.preview(state.batch_id, show_errors=True)
    assert [row["row_index"] for row in errors_only.rows] == [1]

    with pytest.raises(ValueError):
        projector.preview(state.batch_id, mode="sideways")


def test_before_after_mode_lists_changed_fields(preview_batch, roster_csv):
    state = preview_batch(roster_csv("Kundenavn;Adresse", "  Fjordkafeen AS  ;Strandgata 4", ";", "Hotell Vest;Kaigata 1"))

    preview = PreviewProjector().preview(state.batch_id, mode="before_after")

    assert preview.total_rows == 2
    first = preview.rows[0]
    assert first["changes"] == {"navn": {"before": "  Fjordkafeen AS  ", "after": "Fjordkafeen AS"}}
    assert preview.rows[1]["changes"] == {}


def test_edits_show_in_preview_and_mark_it_stale(controller, preview_batch):
    state = preview_batch()

    controller.edit_cell(state, 1, {"epost": "kari@firma.no"})

    preview = PreviewProjector().preview(state.batch_id)
    row = preview.rows[1]
    assert row["values"]["epost"] == "kari@firma.no"
    assert row["edited_fields"] == ["epost"]
    assert preview.stale is True

    controller.to_preview(state)
    assert PreviewProjector().preview(state.batch_id).stale is False


def test_preview_is_stale_while_a_lock_is_held(preview_batch):
    state = preview_batch()
    batch = BatchStore().get_batch(state.batch_id)

    with batch_locks.hold(batch.id, "commit"):
        assert is_stale(batch) is True
    assert is_stale(batch) is False


def test_lock_registry_rejects_a_second_holder():
    registry = BatchLockRegistry()
    registry.acquire(7, "commit")

    with pytest.raises(BatchBusy) as excinfo:
        registry.acquire(7, "rollback")

    assert excinfo.value.retryable is True
    assert excinfo.value.to_dict()["operation"] == "commit"
    assert registry.holder(7) == "commit"
    registry.release(7)
    assert not registry.is_locked(7)


def test_lock_is_released_when_the_operation_fails():
    registry = BatchLockRegistry()

    with pytest.raises(RuntimeError):
        with registry.hold(3, "validate"):
            raise RuntimeError("boom")

    assert not registry.is_locked(3)


def test_commit_is_refused_while_the_batch_is_busy(controller, preview_batch):
    state = preview_batch()

    with batch_locks.hold(state.batch_id, "rollback"):
        with pytest.raises(BatchBusy):
            controller.commit(state)

    assert state.retryable is True
    assert state.error_code == "BATCH_BUSY"


def test_error_report_lists_issues_with_original_values(preview_batch, roster_csv):
    payload = roster_csv(
        "Kundenavn;Adresse;Epost",
        "=1+1;Storgata 12;ikke en epost",
        "Hotell Vest;Kaigata 1;resepsjon@hotellvest.no",
    )
    state = preview_batch(payload)
    batch = BatchStore().get_batch(state.batch_id)

    filename, text = build_error_report(batch, BatchStore().get_rows(batch.id))

    assert filename.startswith(f"import_batch_{batch.id}_errors_")
    rows = list(csv.reader(StringIO(text)))
    assert rows[0] == [*ERROR_REPORT_COLUMNS, "Kundenavn", "Adresse", "Epost"]
    assert len(rows) == 2
    line = dict(zip(rows[0], rows[1]))
    assert line["code"] == "INVALID_EMAIL"
    assert line["severity"] == "error"
    assert line["source_line"] == "2"
    assert line["Kundenavn"] == "'=1+1"
