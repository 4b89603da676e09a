"""
Tests for batch persistence, listing, detail payloads and cancellation.
"""

from __future__ import annotations

import pytest

from roster_app.importer.errors import BatchNotFound, BatchStateError, RowNotFound
from roster_app.importer.pipeline import BatchFilters, BatchStore, ImportBatchService, compute_column_fingerprint
from roster_app.models import db
from roster_app.models.importer.schema import ImportAuditLog, ImportBatchStatus, StagingRow


def test_fingerprint_ignores_order_case_and_separators():
    assert compute_column_fingerprint(["Kundenavn", "Post_nr"]) == compute_column_fingerprint(["post nr", "KUNDENAVN"])
    assert compute_column_fingerprint(["Kundenavn"]) != compute_column_fingerprint(["Kundenavn", "Adresse"])


def test_create_batch_assigns_row_indexes_and_audits(test_organization, operator_user):
    store = BatchStore()

    batch = store.create_batch(
        test_organization.id,
        ["Kundenavn", "Adresse"],
        [(2, {"Kundenavn": "Hotell Vest", "Adresse": "Kaigata 1"}), (4, {"Kundenavn": "Fjordkafeen AS"})],
        file_name="kunder.csv",
        file_bytes=b"abc",
        created_by=operator_user.id,
    )

    rows = store.get_rows(batch.id)
    assert [(row.row_index, row.source_line) for row in rows] == [(0, 2), (1, 4)]
    assert rows[1].raw_json == {"Kundenavn": "Fjordkafeen AS", "Adresse": ""}
    assert batch.file_size_bytes == 3
    assert len(batch.file_hash) == 64
    audit = ImportAuditLog.query.filter_by(batch_id=batch.id).one()
    assert audit.action == "upload"
    assert audit.actor_user_id == operator_user.id


def test_get_batch_scopes_by_organization(upload_roster, other_organization):
    state, _ = upload_roster()
    store = BatchStore()

    with pytest.raises(BatchNotFound) as excinfo:
        store.get_batch(state.batch_id, organization_id=other_organization.id)
    assert excinfo.value.http_status == 404

    with pytest.raises(RowNotFound):
        store.get_row(state.batch_id, 99)


def test_list_batches_filters_and_hides_cancelled(controller, upload_roster, other_organization, test_organization):
    kept, _ = upload_roster(file_name="kunder-april.csv")
    cancelled, _ = upload_roster(file_name="kunder-mai.csv")
    controller.cancel(cancelled)
    controller.upload(other_organization.id, "andre.csv", b"Kundenavn;Adresse\nA AS;Gate 1\n")
    service = ImportBatchService()

    listing = service.list_batches(BatchFilters.coerce(), organization_id=test_organization.id)
    assert [item["id"] for item in listing.items] == [kept.batch_id]

    everything = service.list_batches(BatchFilters.coerce(include_cancelled="true"), organization_id=test_organization.id)
    assert everything.total == 2

    only_cancelled = service.list_batches(BatchFilters.coerce(statuses=["cancelled"]), organization_id=test_organization.id)
    assert [item["status"] for item in only_cancelled.items] == ["cancelled"]

    searched = service.list_batches(BatchFilters.coerce(search="april"))
    assert searched.total == 1

    all_tenants = service.list_batches(BatchFilters.coerce())
    assert all_tenants.total == 2


def test_batch_filters_validate_input():
    with pytest.raises(ValueError):
        BatchFilters.coerce(sort="-password")
    with pytest.raises(ValueError):
        BatchFilters.coerce(statuses=["exploded"])
    with pytest.raises(ValueError):
        BatchFilters.coerce(page="first")

    filters = BatchFilters.coerce(page="2", page_size=500, sort="row_count")
    assert (filters.page, filters.page_size, filters.sort) == (2, 100, "row_count")


def test_detail_includes_mapping_counts_and_session(preview_batch):
    state = preview_batch()
    service = ImportBatchService()

    detail = service.detail(BatchStore().get_batch(state.batch_id))

    assert detail["status"] == "validated"
    assert detail["counts"]["valid"] == 2
    assert [entry["target_field"] for entry in detail["mapping"]] == ["navn", "adresse", "epost"]
    assert detail["stale"] is False
    assert detail["active_commit"] is None
    assert detail["session"]["step_name"] == "preview"


def test_cancel_discards_rows_but_keeps_the_batch(controller, upload_roster):
    state, _ = upload_roster()

    state = controller.cancel(state)

    batch = BatchStore().get_batch(state.batch_id)
    assert batch.status == ImportBatchStatus.CANCELLED
    assert StagingRow.query.filter_by(batch_id=batch.id).count() == 0
    assert ImportAuditLog.query.filter_by(batch_id=batch.id, action="cancel").one().details_json == {
        "rows_discarded": 3
    }


def test_committed_batch_cannot_be_cancelled(controller, preview_batch):
    state = preview_batch()
    controller.commit(state)

    with pytest.raises(BatchStateError):
        ImportBatchService().cancel_batch(state.batch_id)


def test_delete_batch_removes_rows(upload_roster):
    state, _ = upload_roster()

    BatchStore().delete_batch(state.batch_id)

    db.session.expire_all()
    assert StagingRow.query.filter_by(batch_id=state.batch_id).count() == 0
    with pytest.raises(BatchNotFound):
        BatchStore().get_batch(state.batch_id)


def test_update_status_records_the_error_message(upload_roster):
    state, _ = upload_roster()
    store = BatchStore()

    batch = store.update_status(state.batch_id, ImportBatchStatus.FAILED, "reader crashed")

    db.session.expire_all()
    reloaded = store.get_batch(batch.id)
    assert reloaded.status == ImportBatchStatus.FAILED
    assert reloaded.error_message == "reader crashed"
