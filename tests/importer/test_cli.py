import csv
import json
from io import StringIO

from roster_app.importer.pipeline import BatchStore
from roster_app.models import Customer, db
from roster_app.models.importer.schema import ImportBatchStatus


def test_upload_stages_a_batch(runner, tmp_path, basic_roster, test_organization, operator_user):
    roster = tmp_path / "kunder.csv"
    roster.write_bytes(basic_roster)

    result = runner.invoke(
        args=["importer", "upload", str(roster), "--org", str(test_organization.id), "--user", str(operator_user.id)]
    )

    assert result.exit_code == 0, result.output
    assert "staged with 3 rows." in result.output
    assert "Kundenavn" in result.output
    assert "-> navn" in result.output
    batch_id = int(result.output.split()[1])
    batch = BatchStore().get_batch(batch_id)
    assert batch.organization_id == test_organization.id
    assert batch.created_by_user_id == operator_user.id
    assert batch.update_on_duplicate is True


def test_upload_can_turn_off_duplicate_updates(runner, tmp_path, basic_roster, test_organization):
    roster = tmp_path / "kunder.csv"
    roster.write_bytes(basic_roster)

    result = runner.invoke(
        args=["importer", "upload", str(roster), "--org", str(test_organization.id), "--no-update-duplicates"]
    )

    assert result.exit_code == 0, result.output
    batch_id = int(result.output.split()[1])
    assert BatchStore().get_batch(batch_id).update_on_duplicate is False


def test_upload_rejects_unknown_organization(runner, tmp_path, basic_roster):
    roster = tmp_path / "kunder.csv"
    roster.write_bytes(basic_roster)

    result = runner.invoke(args=["importer", "upload", str(roster), "--org", "999"])

    assert result.exit_code != 0
    assert "Organization 999 not found." in result.output


def test_upload_reports_unreadable_files(runner, tmp_path, test_organization):
    roster = tmp_path / "kunder.txt"
    roster.write_text("Kundenavn;Adresse\n", encoding="utf-8")

    result = runner.invoke(args=["importer", "upload", str(roster), "--org", str(test_organization.id)])

    assert result.exit_code != 0
    assert "UNREADABLE_FILE" in result.output


def test_validate_prints_counts(runner, preview_batch):
    state = preview_batch()

    result = runner.invoke(args=["importer", "validate", str(state.batch_id)])

    assert result.exit_code == 0, result.output
    assert f"Batch {state.batch_id}: 2 valid, 1 warning, 0 invalid, 0 removed." in result.output
    assert "epost" in result.output


def test_validate_needs_an_applied_mapping(runner, upload_roster):
    state, _ = upload_roster()

    result = runner.invoke(args=["importer", "validate", str(state.batch_id)])

    assert result.exit_code != 0
    assert "INVALID_BATCH_STATE" in result.output


def test_pipeline_errors_name_the_code(runner):
    result = runner.invoke(args=["importer", "validate", "4242"])

    assert result.exit_code != 0
    assert "BATCH_NOT_FOUND:" in result.output


def test_commit_prints_the_result(runner, preview_batch, test_organization):
    state = preview_batch()

    result = runner.invoke(args=["importer", "commit", str(state.batch_id), "--exclude", "1"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert (payload["created"], payload["skipped"], payload["failed"]) == (2, 1, 0)
    assert payload["dry_run"] is False
    db.session.expire_all()
    batch = BatchStore().get_batch(state.batch_id)
    assert batch.status == ImportBatchStatus.COMMITTED
    assert batch.session_json["step_name"] == "result"
    assert Customer.query.filter_by(organization_id=test_organization.id).count() == 2


def test_commit_dry_run_writes_nothing(runner, preview_batch, test_organization):
    state = preview_batch()

    result = runner.invoke(args=["importer", "commit", str(state.batch_id), "--dry-run"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["dry_run"] is True
    assert payload["commit_id"] is None
    assert payload["created"] == 3
    assert Customer.query.filter_by(organization_id=test_organization.id).count() == 0


def test_rollback_reports_deleted_customers(runner, controller, preview_batch, test_organization):
    state = preview_batch()
    controller.commit(state)

    result = runner.invoke(args=["importer", "rollback", str(state.batch_id), "--reason", "Feil fil"])

    assert result.exit_code == 0, result.output
    assert f"Batch {state.batch_id} rolled back; 3 customer(s) deleted." in result.output
    db.session.expire_all()
    assert Customer.query.filter_by(organization_id=test_organization.id).count() == 0
    assert BatchStore().get_batch(state.batch_id).status == ImportBatchStatus.ROLLED_BACK


def test_rollback_requires_a_reason(runner, preview_batch):
    state = preview_batch()

    result = runner.invoke(args=["importer", "rollback", str(state.batch_id)])

    assert result.exit_code == 2
    assert "--reason" in result.output


def test_error_report_to_stdout_and_file(runner, preview_batch, tmp_path):
    state = preview_batch()

    printed = runner.invoke(args=["importer", "error-report", str(state.batch_id)])

    assert printed.exit_code == 0, printed.output
    lines = list(csv.DictReader(StringIO(printed.output)))
    assert {line["Kundenavn"] for line in lines} == {"Bakeriet Nord"}

    target = tmp_path / "feil.csv"
    written = runner.invoke(args=["importer", "error-report", str(state.batch_id), "--output", str(target)])

    assert written.exit_code == 0, written.output
    assert f"to {target}." in written.output
    with target.open(newline="", encoding="utf-8") as handle:
        assert list(csv.DictReader(handle)) == lines


def test_batches_lists_and_filters(runner, controller, upload_roster, preview_batch, test_organization, other_organization):
    staged, _ = upload_roster(file_name="kunder-april.csv")
    validated = preview_batch()
    controller.upload(other_organization.id, "andre.csv", b"Kundenavn;Adresse\nA AS;Gate 1\n")

    listed = runner.invoke(args=["importer", "batches"])

    assert listed.exit_code == 0, listed.output
    assert "kunder-april.csv" in listed.output
    assert "Page 1 of 1 (3 total)." in listed.output

    filtered = runner.invoke(
        args=["importer", "batches", "--org", str(test_organization.id), "--status", "validated", "--json"]
    )

    assert filtered.exit_code == 0, filtered.output
    payload = json.loads(filtered.output)
    assert [item["id"] for item in payload["items"]] == [validated.batch_id]
    assert staged.batch_id not in [item["id"] for item in payload["items"]]


def test_batches_handles_empty_and_invalid_filters(runner):
    empty = runner.invoke(args=["importer", "batches"])
    assert empty.exit_code == 0, empty.output
    assert "No import batches found." in empty.output

    invalid = runner.invoke(args=["importer", "batches", "--status", "exploded"])
    assert invalid.exit_code != 0
    assert "exploded" in invalid.output
