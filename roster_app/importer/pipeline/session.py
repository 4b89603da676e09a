"""
Operator session: the import step state machine.

``ImportSession`` is a plain serializable struct passed into and returned from
every ``SessionController`` call and persisted on the batch so a reload
resumes where the operator left off. The loading/error ``phase`` is tracked
separately from the step: a failed call leaves the step unchanged.
"""

from __future__ import annotations

import enum
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Iterator, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from roster_app.importer.adapters import read_spreadsheet
from roster_app.importer.errors import (
    BatchBusy,
    BatchStateError,
    ImportPipelineError,
    SessionTransitionError,
    SpreadsheetReadError,
)
from roster_app.importer.metrics import record_batch_uploaded
from roster_app.importer.registry import adapter_for_filename, get_adapter_registry, resolve_adapters
from roster_app.models import db
from roster_app.models.base import utcnow
from roster_app.models.importer.schema import CleaningDecision, ImportBatch, ImportBatchStatus, ImportCommitStatus

from .batch_service import ImportBatchService
from .batch_store import BatchStore
from .cleaning import EDITABLE_STATUSES, CleaningEngine, load_toggles
from .commit import CommitExecutor, CommitResult, failed_row_indexes
from .locks import batch_locks
from .overlay import normalize_edits
from .resolver import MappingResolver, check_required_fields, load_mappings
from .rollback import RollbackManager, RollbackResult
from .validator import ValidationSummary, Validator


class ImportStep(enum.IntEnum):
    UPLOAD = 1
    CLEANING = 2
    MAPPING = 3
    PREVIEW = 4
    RESULT = 5


class SessionPhase(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    ERROR = "error"


@dataclass
class ImportSession:
    batch_id: int
    step: ImportStep = ImportStep.CLEANING
    phase: SessionPhase = SessionPhase.IDLE
    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False
    cleaning_decision: str = CleaningDecision.PENDING.value
    rule_toggles: dict[str, bool] = field(default_factory=dict)
    mapping: list[dict[str, Any]] = field(default_factory=list)
    open_questions: list[dict[str, Any]] = field(default_factory=list)
    confirmations_required: list[dict[str, Any]] = field(default_factory=list)
    edits: dict[str, dict[str, Any]] = field(default_factory=dict)
    excluded_rows: list[int] = field(default_factory=list)
    row_scope: list[int] | None = None
    last_commit_id: int | None = None
    last_result: dict[str, Any] | None = None
    pending_task: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "step": int(self.step),
            "step_name": self.step.name.lower(),
            "phase": self.phase.value,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "retryable": self.retryable,
            "cleaning_decision": self.cleaning_decision,
            "rule_toggles": dict(self.rule_toggles),
            "mapping": list(self.mapping),
            "open_questions": list(self.open_questions),
            "confirmations_required": list(self.confirmations_required),
            "edits": {key: dict(values) for key, values in self.edits.items()},
            "excluded_rows": sorted(self.excluded_rows),
            "row_scope": list(self.row_scope) if self.row_scope is not None else None,
            "last_commit_id": self.last_commit_id,
            "last_result": self.last_result,
            "pending_task": self.pending_task,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ImportSession":
        row_scope = payload.get("row_scope")
        return cls(
            batch_id=int(payload["batch_id"]),
            step=ImportStep(int(payload.get("step", ImportStep.CLEANING))),
            phase=SessionPhase(payload.get("phase", SessionPhase.IDLE.value)),
            error_code=payload.get("error_code"),
            error_message=payload.get("error_message"),
            retryable=bool(payload.get("retryable", False)),
            cleaning_decision=payload.get("cleaning_decision", CleaningDecision.PENDING.value),
            rule_toggles=dict(payload.get("rule_toggles") or {}),
            mapping=list(payload.get("mapping") or ()),
            open_questions=list(payload.get("open_questions") or ()),
            confirmations_required=list(payload.get("confirmations_required") or ()),
            edits={str(key): dict(values) for key, values in (payload.get("edits") or {}).items()},
            excluded_rows=[int(value) for value in payload.get("excluded_rows") or ()],
            row_scope=[int(value) for value in row_scope] if row_scope is not None else None,
            last_commit_id=payload.get("last_commit_id"),
            last_result=payload.get("last_result"),
            pending_task=payload.get("pending_task"),
        )

    @property
    def committed(self) -> bool:
        return self.step == ImportStep.RESULT


class SessionController:
    """Sequences the pipeline services behind the step state machine."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        resolver: MappingResolver | None = None,
        executor: CommitExecutor | None = None,
        rollback_manager: RollbackManager | None = None,
    ) -> None:
        self.session = session or db.session
        self.store = BatchStore(self.session)
        self.cleaning = CleaningEngine(self.session)
        self.resolver = resolver or MappingResolver(self.session)
        self.validator = Validator(self.session)
        self.executor = executor or CommitExecutor(self.session)
        self.rollback_manager = rollback_manager or RollbackManager(self.session)

    # ---- Public API ----

    def upload(
        self,
        organization_id: int,
        file_name: str,
        payload: bytes,
        *,
        created_by: int | None = None,
        update_on_duplicate: bool | None = None,
    ) -> tuple[ImportSession, dict[str, Any]]:
        """
        Stage a spreadsheet: parse it, persist the batch, detect cleaning changes
        and suggest a mapping. The session starts at the cleaning step.
        """

        config = current_app.config
        adapter = _adapter_for(file_name)
        max_rows = config.get("IMPORTER_MAX_ROWS")
        sheet = read_spreadsheet(payload, adapter, max_rows=int(max_rows) if max_rows else None)
        if not sheet.rows:
            raise SpreadsheetReadError(f"'{file_name}' contains no data rows.")
        if update_on_duplicate is None:
            update_on_duplicate = bool(config.get("IMPORTER_UPDATE_ON_DUPLICATE", True))

        batch = self.store.create_batch(
            organization_id,
            sheet.headers,
            [(row.source_line, row.values) for row in sheet.rows],
            file_name=file_name,
            file_bytes=payload,
            created_by=created_by,
            update_on_duplicate=update_on_duplicate,
        )
        record_batch_uploaded(adapter)
        report = self.cleaning.run_detection(batch)
        resolution = self.resolver.suggest_for_batch(batch)

        state = ImportSession(
            batch_id=batch.id,
            step=ImportStep.CLEANING,
            rule_toggles=dict(batch.rule_toggles_json or {}),
            mapping=[mapping.to_dict() for mapping in resolution.mappings],
            open_questions=list(resolution.open_questions),
            confirmations_required=list(resolution.confirmations_required),
        )
        self._save(state)
        return state, {
            "batch_id": batch.id,
            "headers": list(batch.headers),
            "total_rows": batch.row_count,
            "suggested_mapping": state.mapping,
            "open_questions": state.open_questions,
            "confirmations_required": state.confirmations_required,
            "format_change": resolution.format_change,
            "template_id": resolution.template_id,
            "cleaning_report": report.to_dict(load_toggles(batch)),
        }

    def load(self, batch_id: int) -> ImportSession:
        """Resume the persisted session of a batch, or start one at the cleaning step."""

        batch = self.store.get_batch(batch_id)
        if batch.session_json:
            return ImportSession.from_dict(batch.session_json)
        return ImportSession(
            batch_id=batch.id,
            step=ImportStep.CLEANING,
            cleaning_decision=batch.cleaning_decision.value,
            rule_toggles=dict(batch.rule_toggles_json or {}),
            mapping=list(batch.mapping_config_json or ()),
        )

    def goto(self, state: ImportSession, step: ImportStep | int) -> ImportSession:
        """Move to ``step``; backwards is free before commit, forwards one guarded step at a time."""

        target = ImportStep(int(step))
        if target == state.step:
            return state
        if state.step == ImportStep.RESULT:
            raise SessionTransitionError(
                "The batch is committed; use reimport or rollback instead of navigating back.",
                step=int(state.step),
                target=int(target),
            )
        if target < state.step:
            state.step = target
            if target < ImportStep.PREVIEW:
                state.row_scope = None
            return self._save(state)
        if target != state.step + 1:
            raise SessionTransitionError(
                f"Cannot jump from {state.step.name.lower()} to {target.name.lower()}.",
                step=int(state.step),
                target=int(target),
            )
        if target == ImportStep.MAPPING:
            if state.cleaning_decision == CleaningDecision.PENDING.value:
                raise SessionTransitionError(
                    "Approve or skip cleaning before mapping.",
                    step=int(state.step),
                    target=int(target),
                )
            return self._enter_mapping(state)
        if target == ImportStep.PREVIEW:
            return self.to_preview(state)
        if target == ImportStep.RESULT:
            raise SessionTransitionError(
                "Commit the batch to reach the result step.",
                step=int(state.step),
                target=int(target),
            )
        state.step = target
        return self._save(state)

    def back(self, state: ImportSession) -> ImportSession:
        if state.step == ImportStep.UPLOAD:
            return state
        return self.goto(state, state.step - 1)

    def toggle_rule(self, state: ImportSession, rule_id: str, enabled: bool) -> ImportSession:
        self._ensure_before_commit(state)
        with self._phase(state):
            self.cleaning.toggle_rule(state.batch_id, rule_id, enabled)
        batch = self.store.get_batch(state.batch_id)
        state.rule_toggles = dict(batch.rule_toggles_json or {})
        return self._save(state)

    def approve_cleaning(self, state: ImportSession, *, actor_user_id: int | None = None) -> ImportSession:
        return self._decide_cleaning(state, CleaningDecision.APPROVED, actor_user_id)

    def skip_cleaning(self, state: ImportSession, *, actor_user_id: int | None = None) -> ImportSession:
        """Continue with raw values; detected changes and removals are not applied."""

        return self._decide_cleaning(state, CleaningDecision.SKIPPED, actor_user_id)

    def apply_mapping(
        self,
        state: ImportSession,
        mapping_config: Sequence[Mapping[str, Any]],
        *,
        update_on_duplicate: bool | None = None,
        actor_user_id: int | None = None,
    ) -> ImportSession:
        self._ensure_before_commit(state)
        with self._phase(state):
            batch = self.resolver.apply_mapping(
                state.batch_id,
                mapping_config,
                update_on_duplicate=update_on_duplicate,
                actor_user_id=actor_user_id,
            )
        state.mapping = list(batch.mapping_config_json or ())
        state.open_questions = []
        state.confirmations_required = []
        if state.step < ImportStep.MAPPING:
            state.step = ImportStep.MAPPING
        return self._save(state)

    def to_preview(self, state: ImportSession) -> ImportSession:
        """Validate the batch and enter preview; the step is unchanged when the required mapping fails."""

        self._ensure_before_commit(state)
        with self._phase(state):
            batch = self.store.get_batch(state.batch_id)
            check_required_fields(load_mappings(batch))
            self.validator.validate(state.batch_id)
        state.step = ImportStep.PREVIEW
        state.row_scope = None
        return self._save(state)

    def edit_cell(
        self,
        state: ImportSession,
        row_index: int,
        values: Mapping[str, Any],
        *,
        actor_user_id: int | None = None,
    ) -> ImportSession:
        """Store operator overrides for one row, keyed by target field."""

        with self._phase(state):
            edits = edit_row(self.session, state.batch_id, row_index, values, actor_user_id=actor_user_id)
        state.edits[str(row_index)] = edits
        return self._save(state)

    def set_excluded(self, state: ImportSession, row_indexes: Iterable[int]) -> ImportSession:
        state.excluded_rows = sorted({int(row_index) for row_index in row_indexes})
        return self._save(state)

    def check_commit_step(self, state: ImportSession) -> None:
        if state.step != ImportStep.PREVIEW:
            raise SessionTransitionError(
                "Commit is only available from the preview step.",
                step=int(state.step),
            )

    def commit(
        self,
        state: ImportSession,
        *,
        excluded_row_ids: Iterable[int] | None = None,
        row_edits: Mapping[int | str, Mapping[str, Any]] | None = None,
        dry_run: bool = False,
        actor_user_id: int | None = None,
    ) -> tuple[ImportSession, CommitResult]:
        """
        Run the commit from preview; a real commit moves the session to the result step.

        ``excluded_row_ids`` replaces the session's exclusions when given. A
        commit interrupted after it wrote customers still lands on the result
        step, in the error phase, so the unwritten rows can be reimported.
        """

        self.check_commit_step(state)
        if excluded_row_ids is not None:
            state.excluded_rows = sorted({int(row_index) for row_index in excluded_row_ids})
        reimport = state.row_scope is not None
        try:
            with self._phase(state):
                result = self.executor.commit(
                    state.batch_id,
                    excluded_row_ids=state.excluded_rows,
                    row_edits=row_edits,
                    dry_run=dry_run,
                    actor_user_id=actor_user_id,
                    row_scope=state.row_scope,
                    reimport=reimport,
                )
        except ImportPipelineError:
            if not dry_run:
                self._follow_interrupted_commit(state)
            raise
        if dry_run:
            return self._save(state), result
        return self._record_commit(state, result), result

    def validate(self, state: ImportSession) -> ValidationSummary:
        """Revalidate the batch; during a reimport the committed batch keeps its status."""

        with self._phase(state):
            summary = self.validator.validate(state.batch_id, reimport=state.row_scope is not None)
        self._save(state)
        return summary

    def ensure_idle(self, state: ImportSession) -> None:
        """Reject a mutating request while the batch is held, in flight, or has a queued task."""

        batch = self.store.get_batch(state.batch_id)
        holder = batch_locks.holder(batch.id)
        if holder is None and batch.status in (ImportBatchStatus.COMMITTING, ImportBatchStatus.ROLLING_BACK):
            holder = batch.status.value
        if holder is None and self._task_pending(state):
            holder = f"queued {state.pending_task['name']}"
        if holder is not None:
            raise BatchBusy(
                f"Batch {batch.id} is busy ({holder}); try again shortly.",
                batch_id=batch.id,
                operation=holder,
            )

    def reserve_task(self, state: ImportSession, task_name: str) -> ImportSession:
        """Record a worker task on the session before it is queued."""

        self.ensure_idle(state)
        state.pending_task = {"name": task_name, "queued_at": utcnow().isoformat()}
        return self._save(state)

    def release_task(self, batch_id: int) -> ImportSession:
        state = self.load(batch_id)
        if state.pending_task is None:
            return state
        state.pending_task = None
        return self._save(state)

    def start_reimport(self, state: ImportSession) -> ImportSession:
        """Scope a fresh preview to the rows that failed in the last commit."""

        if state.step != ImportStep.RESULT:
            raise SessionTransitionError("Reimport is only available after a commit.", step=int(state.step))
        batch = self.store.get_batch(state.batch_id)
        failed = failed_row_indexes(batch)
        if not failed:
            raise BatchStateError(
                f"Batch {batch.id} has no failed rows to reimport.",
                batch_id=batch.id,
            )
        state.row_scope = failed
        state.excluded_rows = []
        state.step = ImportStep.PREVIEW
        return self._save(state)

    def rollback(
        self,
        state: ImportSession,
        *,
        reason: str | None = None,
        actor_user_id: int | None = None,
    ) -> tuple[ImportSession, RollbackResult]:
        """Reverse the commit and return to preview with the batch eligible for a fresh commit."""

        with self._phase(state):
            result = self.rollback_manager.rollback(state.batch_id, reason, actor_user_id=actor_user_id)
        return self._record_rollback(state), result

    def cancel(self, state: ImportSession, *, actor_user_id: int | None = None) -> ImportSession:
        self._ensure_before_commit(state)
        with self._phase(state):
            ImportBatchService(self.session).cancel_batch(state.batch_id, actor_user_id=actor_user_id)
        state.step = ImportStep.UPLOAD
        return self._save(state)

    def retry(self, state: ImportSession) -> ImportSession:
        """Clear the error sub-state; the step stays where it was."""

        state.phase = SessionPhase.IDLE
        state.error_code = None
        state.error_message = None
        state.retryable = False
        return self._save(state)

    # ---- Internal helpers ----

    def _decide_cleaning(
        self,
        state: ImportSession,
        decision: CleaningDecision,
        actor_user_id: int | None,
    ) -> ImportSession:
        self._ensure_before_commit(state)
        with self._phase(state):
            self.cleaning.set_decision(state.batch_id, decision, actor_user_id=actor_user_id)
        state.cleaning_decision = decision.value
        if state.step == ImportStep.CLEANING:
            return self._enter_mapping(state)
        return self._save(state)

    def _record_commit(self, state: ImportSession, result: CommitResult) -> ImportSession:
        state.step = ImportStep.RESULT
        state.last_commit_id = result.commit_id
        state.last_result = result.to_dict()
        state.row_scope = None
        state.excluded_rows = []
        return self._save(state)

    def _follow_interrupted_commit(self, state: ImportSession) -> None:
        batch = self.store.get_batch(state.batch_id)
        if batch.status != ImportBatchStatus.COMMITTED:
            return
        records = [record for record in batch.commits if record.status == ImportCommitStatus.COMMITTED]
        if not records or records[-1].id == state.last_commit_id:
            return
        result = CommitResult.from_commit(records[-1])
        state.step = ImportStep.RESULT
        state.last_commit_id = result.commit_id
        state.last_result = result.to_dict()
        state.row_scope = None
        state.excluded_rows = []
        self._save(state)

    def _task_pending(self, state: ImportSession) -> bool:
        if not state.pending_task:
            return False
        timeout = int(current_app.config.get("IMPORTER_TASK_TIMEOUT_SECONDS", 900)) if has_app_context() else 900
        queued_at = datetime.fromisoformat(state.pending_task["queued_at"])
        return utcnow() - queued_at < timedelta(seconds=timeout)

    def _record_rollback(self, state: ImportSession) -> ImportSession:
        state.step = ImportStep.PREVIEW
        state.row_scope = None
        state.last_result = None
        return self._save(state)

    def _enter_mapping(self, state: ImportSession) -> ImportSession:
        with self._phase(state):
            batch = self.store.get_batch(state.batch_id)
            if not batch.mapping_config_json and not state.mapping:
                resolution = self.resolver.suggest_for_batch(batch)
                state.mapping = [mapping.to_dict() for mapping in resolution.mappings]
                state.open_questions = list(resolution.open_questions)
                state.confirmations_required = list(resolution.confirmations_required)
        state.step = ImportStep.MAPPING
        return self._save(state)

    def _ensure_before_commit(self, state: ImportSession) -> None:
        if state.step == ImportStep.RESULT:
            raise SessionTransitionError(
                "The batch is committed; only reimport or rollback are available.",
                step=int(state.step),
            )

    @contextmanager
    def _phase(self, state: ImportSession) -> Iterator[None]:
        state.phase = SessionPhase.LOADING
        try:
            yield
        except ImportPipelineError as exc:
            self.session.rollback()
            state.phase = SessionPhase.ERROR
            state.error_code = exc.code
            state.error_message = exc.message
            state.retryable = exc.retryable
            self._save(state)
            raise
        state.phase = SessionPhase.IDLE
        state.error_code = None
        state.error_message = None
        state.retryable = False

    def _save(self, state: ImportSession) -> ImportSession:
        batch = self.store.get_batch(state.batch_id)
        batch.session_json = state.to_dict()
        self.session.commit()
        return state


def edit_row(
    session: Session,
    batch_id: int,
    row_index: int,
    values: Mapping[str, Any],
    *,
    actor_user_id: int | None = None,
) -> dict[str, Any]:
    """
    Merge operator overrides into a row's edit overlay and mark validation stale.

    ``selected`` toggles the row's selection flag; every other key must be a
    target field.
    """

    store = BatchStore(session)
    with batch_locks.hold(batch_id, "edit"):
        batch: ImportBatch = store.get_batch(batch_id)
        if batch.status not in EDITABLE_STATUSES and batch.status != ImportBatchStatus.COMMITTED:
            raise BatchStateError(
                f"Batch {batch.id} is {batch.status.value}; rows can no longer be edited.",
                batch_id=batch.id,
                status=batch.status.value,
            )
        row = store.get_row(batch_id, row_index)
        payload = dict(values)
        selected = payload.pop("selected", None)
        edits = normalize_edits(payload)
        try:
            if selected is not None:
                row.selected = bool(selected)
            if edits:
                row.edits_json = {**(row.edits_json or {}), **edits}
            batch.edits_updated_at = utcnow()
            session.commit()
        except Exception:
            session.rollback()
            raise

    if has_app_context():
        current_app.logger.info(
            "Row %s of batch %s edited (%s)",
            row_index,
            batch_id,
            ", ".join(sorted(edits)) or "selection",
            extra={"importer_batch_id": batch_id, "importer_row_index": row_index, "importer_actor_id": actor_user_id},
        )
    return dict(row.edits_json or {})


def _adapter_for(file_name: str) -> str:
    state = current_app.extensions.get("importer") or {}
    active = state.get("active_adapters") or tuple(resolve_adapters(("csv", "xlsx"), get_adapter_registry()))
    descriptor = adapter_for_filename(file_name, active)
    if descriptor is None:
        supported = ", ".join(ext for item in active for ext in item.extensions)
        raise SpreadsheetReadError(f"Unsupported file type for '{file_name}'. Supported: {supported}.")
    return descriptor.name
