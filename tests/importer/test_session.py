"""
Tests for the import step state machine.
"""

from __future__ import annotations

import pytest

from roster_app.importer.errors import BatchBusy, RequiredFieldUnmapped, SessionTransitionError
from roster_app.importer.pipeline import BatchStore, ImportSession, ImportStep, SessionPhase
from roster_app.models import Customer
from roster_app.models.importer.schema import CleaningDecision


def test_upload_starts_at_cleaning_with_a_suggested_mapping(upload_roster):
    state, result = upload_roster()

    assert state.step == ImportStep.CLEANING
    assert state.cleaning_decision == CleaningDecision.PENDING.value
    assert [entry["target_field"] for entry in state.mapping] == ["navn", "adresse", "epost"]
    assert result["total_rows"] == 3
    assert result["headers"] == ["Kundenavn", "Adresse", "Epost"]


def test_mapping_needs_a_cleaning_decision(controller, upload_roster):
    state, _ = upload_roster()

    with pytest.raises(SessionTransitionError):
        controller.goto(state, ImportStep.MAPPING)
    with pytest.raises(SessionTransitionError):
        controller.goto(state, ImportStep.PREVIEW)

    state = controller.skip_cleaning(state)
    assert state.step == ImportStep.MAPPING
    assert state.cleaning_decision == CleaningDecision.SKIPPED.value


def test_preview_is_blocked_until_the_mapping_is_applied(controller, upload_roster):
    state, _ = upload_roster()
    state = controller.approve_cleaning(state)

    with pytest.raises(RequiredFieldUnmapped):
        controller.goto(state, ImportStep.PREVIEW)

    assert state.step == ImportStep.MAPPING
    assert state.phase == SessionPhase.ERROR

    state = controller.retry(state)
    assert state.phase == SessionPhase.IDLE
    assert state.error_code is None
    assert state.step == ImportStep.MAPPING


def test_moving_back_keeps_the_mapping(controller, upload_roster, confirm_mapping):
    state, _ = upload_roster()
    state = controller.approve_cleaning(state)
    state = controller.apply_mapping(state, confirm_mapping(state.mapping))
    state = controller.goto(state, ImportStep.PREVIEW)

    state = controller.back(state)
    assert state.step == ImportStep.MAPPING
    state = controller.back(state)
    assert state.step == ImportStep.CLEANING

    state = controller.approve_cleaning(state)
    assert state.step == ImportStep.MAPPING
    assert all(entry["human_confirmed"] for entry in state.mapping)


def test_result_step_only_allows_reimport_or_rollback(controller, preview_batch):
    state = preview_batch()
    state, _ = controller.commit(state)

    with pytest.raises(SessionTransitionError):
        controller.back(state)
    with pytest.raises(SessionTransitionError):
        controller.toggle_rule(state, "fix_phone", False)
    with pytest.raises(SessionTransitionError):
        controller.cancel(state)
    with pytest.raises(SessionTransitionError):
        controller.goto(state, ImportStep.MAPPING)


def test_result_is_only_reached_by_committing(controller, preview_batch):
    state = preview_batch()

    with pytest.raises(SessionTransitionError):
        controller.goto(state, ImportStep.RESULT)


def test_session_is_persisted_on_the_batch(controller, preview_batch):
    state = preview_batch()
    controller.set_excluded(state, [2, 0, 2])

    loaded = controller.load(state.batch_id)

    assert loaded.to_dict() == state.to_dict()
    assert loaded.excluded_rows == [0, 2]
    assert ImportSession.from_dict(loaded.to_dict()) == loaded


def test_commit_is_only_available_from_preview(controller, upload_roster, confirm_mapping, test_organization):
    state, _ = upload_roster()
    state = controller.approve_cleaning(state)
    state = controller.apply_mapping(state, confirm_mapping(state.mapping))

    with pytest.raises(SessionTransitionError):
        controller.commit(state)

    assert controller.load(state.batch_id).step == ImportStep.MAPPING
    assert Customer.query.filter_by(organization_id=test_organization.id).count() == 0


def test_queued_task_blocks_mutations_until_released(app, monkeypatch, controller, preview_batch):
    state = preview_batch()

    state = controller.reserve_task(state, "importer.batch.commit")

    with pytest.raises(BatchBusy) as excinfo:
        controller.ensure_idle(controller.load(state.batch_id))
    assert excinfo.value.retryable is True

    with monkeypatch.context() as patched:
        patched.setitem(app.config, "IMPORTER_TASK_TIMEOUT_SECONDS", 0)
        controller.ensure_idle(controller.load(state.batch_id))

    released = controller.release_task(state.batch_id)
    assert released.pending_task is None
    controller.ensure_idle(released)


def test_rollback_returns_the_session_to_preview(controller, preview_batch):
    state = preview_batch()
    state, result = controller.commit(state)

    assert state.last_commit_id == result.commit_id
    assert BatchStore().get_batch(state.batch_id).session_json["step_name"] == "result"

    state, _ = controller.rollback(state, reason="Feil fil")
    assert state.step == ImportStep.PREVIEW
    assert controller.load(state.batch_id).last_result is None
