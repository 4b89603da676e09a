"""
Commit of validated staging rows into the customer store.

Rows are processed in groups through a bounded thread pool. A failing row
never aborts its siblings: the failure is recorded on the row and in the
commit result, and the row can later be re-imported.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable, Iterator, Mapping, Protocol, Sequence

from flask import Flask, current_app, has_app_context
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from roster_app.importer.contracts import get_customer_field_specs
from roster_app.importer.errors import (
    PARTIAL_COMMIT_FAILURE,
    BatchBusy,
    BatchStateError,
    ImportPipelineError,
    NetworkFailure,
)
from roster_app.importer.metrics import record_commit
from roster_app.models import db
from roster_app.models.base import utcnow
from roster_app.models.customer import Customer
from roster_app.models.importer.schema import (
    ImportBatch,
    ImportBatchStatus,
    ImportCommit,
    ImportCommitStatus,
    RowAction,
    RowValidationStatus,
    StagingRow,
)

from .batch_store import BatchStore
from .cleaning import is_row_removed, load_toggles
from .locks import batch_locks
from .overlay import apply_edits, normalize_edits
from .transform import parse_integer
from .validator import Validator, parse_iso_date

logger = logging.getLogger(__name__)

DEFAULT_GROUP_SIZE = 50
DEFAULT_CONCURRENCY = 4

COMMITTABLE_STATUSES = frozenset(
    {
        ImportBatchStatus.MAPPED,
        ImportBatchStatus.VALIDATED,
        ImportBatchStatus.ROLLED_BACK,
        ImportBatchStatus.FAILED,
    }
)


class CustomerStore(Protocol):
    """Target record store written by commits and reversed by rollbacks."""

    def create(
        self,
        organization_id: int,
        attributes: Mapping[str, Any],
        *,
        batch_id: int,
        commit_id: int,
    ) -> int:
        ...

    def update(self, organization_id: int, customer_id: int, attributes: Mapping[str, Any]) -> int:
        ...

    def delete(self, organization_id: int, customer_ids: Sequence[int]) -> int:
        ...


class SqlCustomerStore:
    """
    ``CustomerStore`` over the application database.

    Worker threads each push their own application context; a process lock
    serializes writes so SQLite connections never contend.
    """

    def __init__(self, app: Flask) -> None:
        self.app = app
        self._lock = threading.Lock()

    def create(self, organization_id, attributes, *, batch_id, commit_id):
        with self._lock, self.app.app_context():
            customer = Customer(
                organization_id=organization_id,
                import_batch_id=batch_id,
                import_commit_id=commit_id,
                **attributes,
            )
            db.session.add(customer)
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
            return customer.id

    def update(self, organization_id, customer_id, attributes):
        with self._lock, self.app.app_context():
            customer = db.session.get(Customer, customer_id)
            if customer is None or customer.organization_id != organization_id:
                raise LookupError(f"Customer {customer_id} not found.")
            for key, value in attributes.items():
                if key == "extra_json":
                    value = {**(customer.extra_json or {}), **value}
                setattr(customer, key, value)
            try:
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
            return customer.id

    def delete(self, organization_id, customer_ids):
        if not customer_ids:
            return 0
        with self._lock, self.app.app_context():
            try:
                deleted = (
                    db.session.query(Customer)
                    .filter(Customer.organization_id == organization_id, Customer.id.in_(list(customer_ids)))
                    .delete(synchronize_session=False)
                )
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise
            return deleted


def default_customer_store() -> CustomerStore:
    """Store configured on the importer extension, else the SQL store."""

    app = current_app._get_current_object()
    factory = (app.extensions.get("importer") or {}).get("customer_store_factory")
    if factory is not None:
        return factory(app)
    return SqlCustomerStore(app)


def customer_attributes(values: Mapping[str, Any], *, for_update: bool = False) -> dict[str, Any]:
    """Translate target-field values into ``Customer`` column values."""

    attributes: dict[str, Any] = {}
    for name, spec in get_customer_field_specs().items():
        if name not in values:
            continue
        value = values[name]
        if isinstance(value, str):
            value = value.strip() or None
        if value is not None and spec.field_type == "date" and not isinstance(value, date):
            value = parse_iso_date(value)
        elif value is not None and spec.field_type == "integer":
            value = parse_integer(value)
        if for_update and value is None:
            continue
        attributes[spec.attribute] = value
    extra = values.get("extra")
    if extra:
        attributes["extra_json"] = dict(extra)
    return attributes


@dataclass(frozen=True)
class CommitWorkItem:
    row_index: int
    source_line: int
    values: Mapping[str, Any]
    existing_customer_id: int | None = None


@dataclass(frozen=True)
class RowOutcome:
    row_index: int
    source_line: int
    action: RowAction
    customer_id: int | None = None
    error: str | None = None
    code: str | None = None


@dataclass
class CommitResult:
    batch_id: int
    commit_id: int | None = None
    success: bool = True
    total_processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    created_ids: list[int] = field(default_factory=list)
    updated_ids: list[int] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0
    dry_run: bool = False
    retry_of_commit_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "commit_id": self.commit_id,
            "success": self.success,
            "total_processed": self.total_processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "created_ids": list(self.created_ids),
            "updated_ids": list(self.updated_ids),
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
            "dry_run": self.dry_run,
            "retry_of_commit_id": self.retry_of_commit_id,
        }

    @classmethod
    def from_commit(cls, record: ImportCommit) -> "CommitResult":
        return cls(
            batch_id=record.batch_id,
            commit_id=record.id,
            success=record.status != ImportCommitStatus.RUNNING,
            total_processed=record.created_count + record.updated_count + record.failed_count,
            created=record.created_count,
            updated=record.updated_count,
            skipped=record.skipped_count,
            failed=record.failed_count,
            created_ids=list(record.created_ids_json or ()),
            updated_ids=list(record.updated_ids_json or ()),
            errors=list(record.errors_json or ()),
            duration_ms=record.duration_ms or 0,
            retry_of_commit_id=record.retry_of_id,
        )


def _groups(items: Sequence[CommitWorkItem], size: int) -> Iterator[Sequence[CommitWorkItem]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def active_commit(batch: ImportBatch) -> ImportCommit | None:
    """The batch's committed, non-retry commit, if any."""

    for record in reversed(batch.commits):
        if record.retry_of_id is None and record.status == ImportCommitStatus.COMMITTED:
            return record
    return None


def failed_row_indexes(batch: ImportBatch) -> list[int]:
    return sorted(row.row_index for row in batch.rows if row.action_taken == RowAction.FAILED)


class CommitExecutor:
    """Writes the committable rows of a batch to the customer store."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        store: CustomerStore | None = None,
        group_size: int | None = None,
        concurrency: int | None = None,
    ) -> None:
        self.session = session or db.session
        self.batches = BatchStore(self.session)
        self._store = store
        self.group_size = group_size
        self.concurrency = concurrency

    # ---- Public API ----

    def commit(
        self,
        batch_id: int,
        *,
        excluded_row_ids: Iterable[int] = (),
        row_edits: Mapping[int | str, Mapping[str, Any]] | None = None,
        dry_run: bool = False,
        actor_user_id: int | None = None,
        row_scope: Sequence[int] | None = None,
        reimport: bool = False,
    ) -> CommitResult:
        """
        Commit the selection ``selected and valid-or-warning and not excluded and not removed``.

        ``reimport`` commits previously failed rows as a retry of the batch's
        active commit; otherwise a committed batch is rejected.
        """

        with batch_locks.hold(batch_id, "commit"):
            batch = self.batches.get_batch(batch_id)
            retry_of = self._check_status(batch, reimport=reimport)
            if reimport and row_scope is None:
                row_scope = failed_row_indexes(batch)

            try:
                self._persist_operator_input(batch, excluded_row_ids, row_edits or {}, row_scope)
                Validator(self.session).run(batch, commit=False)
                items, skipped = self._select(batch, row_scope)
                if dry_run:
                    result = self._dry_run(batch, items, skipped)
                    self.session.rollback()
                    return result
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

            return self._execute(batch, items, skipped, actor_user_id=actor_user_id, retry_of=retry_of)

    # ---- Internal helpers ----

    def _resolve_store(self) -> CustomerStore:
        return self._store if self._store is not None else default_customer_store()

    def _settings(self) -> tuple[int, int]:
        config = current_app.config if has_app_context() else {}
        group_size = self.group_size or int(config.get("IMPORTER_COMMIT_GROUP_SIZE", DEFAULT_GROUP_SIZE))
        concurrency = self.concurrency or int(config.get("IMPORTER_COMMIT_CONCURRENCY", DEFAULT_CONCURRENCY))
        return max(1, group_size), max(1, concurrency)

    def _check_status(self, batch: ImportBatch, *, reimport: bool) -> ImportCommit | None:
        if batch.status in (ImportBatchStatus.COMMITTING, ImportBatchStatus.ROLLING_BACK):
            raise BatchBusy(
                f"Batch {batch.id} is {batch.status.value}; try again shortly.",
                batch_id=batch.id,
                status=batch.status.value,
            )
        if reimport:
            record = active_commit(batch)
            if batch.status != ImportBatchStatus.COMMITTED or record is None:
                raise BatchStateError(
                    f"Batch {batch.id} has no active commit to retry.",
                    batch_id=batch.id,
                    status=batch.status.value,
                )
            return record
        if batch.status == ImportBatchStatus.COMMITTED:
            raise BatchStateError(
                f"Batch {batch.id} is already committed; roll it back before committing again.",
                batch_id=batch.id,
                status=batch.status.value,
            )
        if batch.status not in COMMITTABLE_STATUSES:
            raise BatchStateError(
                f"Batch {batch.id} is {batch.status.value}; apply a mapping before committing.",
                batch_id=batch.id,
                status=batch.status.value,
            )
        return None

    def _persist_operator_input(
        self,
        batch: ImportBatch,
        excluded_row_ids: Iterable[int],
        row_edits: Mapping[int | str, Mapping[str, Any]],
        row_scope: Sequence[int] | None,
    ) -> None:
        excluded = {int(row_index) for row_index in excluded_row_ids}
        scope = set(row_scope) if row_scope is not None else None
        edits = {int(row_index): normalize_edits(values) for row_index, values in row_edits.items() if values}
        for row in self.batches.get_rows(batch.id):
            if scope is not None and row.row_index not in scope:
                continue
            row.excluded = row.row_index in excluded
            if row.row_index in edits:
                row.edits_json = {**(row.edits_json or {}), **edits[row.row_index]}
        if edits:
            batch.edits_updated_at = utcnow()

    def _select(
        self, batch: ImportBatch, row_scope: Sequence[int] | None
    ) -> tuple[list[CommitWorkItem], list[StagingRow]]:
        toggles = load_toggles(batch)
        items: list[CommitWorkItem] = []
        skipped: list[StagingRow] = []
        for row in self.batches.get_rows(batch.id, row_indexes=row_scope):
            if is_row_removed(row, batch, toggles):
                continue
            if not row.selected or row.excluded or row.validation_status == RowValidationStatus.INVALID:
                skipped.append(row)
                continue
            items.append(
                CommitWorkItem(
                    row_index=row.row_index,
                    source_line=row.source_line,
                    values=apply_edits(row.mapped_json, row.edits_json),
                    existing_customer_id=row.existing_customer_id if batch.update_on_duplicate else None,
                )
            )
        return items, skipped

    def _dry_run(self, batch: ImportBatch, items: Sequence[CommitWorkItem], skipped: Sequence[StagingRow]) -> CommitResult:
        updates = sum(1 for item in items if item.existing_customer_id is not None)
        return CommitResult(
            batch_id=batch.id,
            total_processed=len(items),
            created=len(items) - updates,
            updated=updates,
            skipped=len(skipped),
            dry_run=True,
        )

    def _execute(
        self,
        batch: ImportBatch,
        items: Sequence[CommitWorkItem],
        skipped: Sequence[StagingRow],
        *,
        actor_user_id: int | None,
        retry_of: ImportCommit | None,
    ) -> CommitResult:
        started = time.perf_counter()
        record = ImportCommit(
            batch_id=batch.id,
            status=ImportCommitStatus.RUNNING,
            retry_of_id=retry_of.id if retry_of is not None else None,
            triggered_by_user_id=actor_user_id,
            started_at=utcnow(),
        )
        self.session.add(record)
        batch.status = ImportBatchStatus.COMMITTING
        batch.error_message = None
        self.session.commit()

        outcomes: list[RowOutcome] = []
        try:
            self._run_groups(batch.organization_id, batch.id, record.id, items, outcomes)
            result = self._finalize(batch, record, outcomes, skipped, started, actor_user_id, retry_of)
        except Exception as exc:
            self.session.rollback()
            logger.exception("Commit of batch %s failed", batch.id)
            try:
                self._settle_interrupted(batch, record, items, outcomes, skipped, started, actor_user_id, retry_of, exc)
            except Exception:
                self.session.rollback()
                logger.exception("Could not record the interrupted commit of batch %s", batch.id)
            if isinstance(exc, (ConnectionError, OperationalError)):
                raise NetworkFailure(
                    f"Commit of batch {batch.id} lost its connection to the customer store.",
                    batch_id=batch.id,
                ) from exc
            raise
        return result

    def _run_groups(
        self,
        organization_id: int,
        batch_id: int,
        commit_id: int,
        items: Sequence[CommitWorkItem],
        outcomes: list[RowOutcome],
    ) -> list[RowOutcome]:
        """Write ``items`` group by group, appending each outcome to ``outcomes`` as its group finishes."""

        store = self._resolve_store()
        group_size, concurrency = self._settings()
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="roster-commit") as pool:
            for group in _groups(list(items), group_size):
                futures = [
                    pool.submit(_process_row, store, organization_id, batch_id, commit_id, item) for item in group
                ]
                outcomes.extend(future.result() for future in futures)
        return outcomes

    def _settle_interrupted(
        self,
        batch: ImportBatch,
        record: ImportCommit,
        items: Sequence[CommitWorkItem],
        outcomes: Sequence[RowOutcome],
        skipped: Sequence[StagingRow],
        started: float,
        actor_user_id: int | None,
        retry_of: ImportCommit | None,
        exc: Exception,
    ) -> None:
        """
        Close a commit that stopped before it was finalized.

        Without any write the empty record is dropped and the batch goes back
        to a committable state. Otherwise the record is committed over what was
        written, so rollback finds the created customers, and every row the
        run never reached is marked failed for reimport.
        """

        written = [outcome for outcome in outcomes if outcome.action in (RowAction.CREATED, RowAction.UPDATED)]
        if not written:
            self.session.delete(record)
            batch.status = ImportBatchStatus.COMMITTED if retry_of is not None else ImportBatchStatus.FAILED
            batch.error_message = str(exc)
            self.session.commit()
            return

        reached = {outcome.row_index for outcome in outcomes}
        unreached = [
            RowOutcome(item.row_index, item.source_line, RowAction.FAILED, error=str(exc), code=PARTIAL_COMMIT_FAILURE)
            for item in items
            if item.row_index not in reached
        ]
        self._apply_outcomes(
            batch, record, [*outcomes, *unreached], skipped, started, actor_user_id, retry_of, interrupted=str(exc)
        )
        batch.error_message = str(exc)
        self.session.commit()
        logger.warning(
            "Commit of batch %s was interrupted after %s writes; %s row(s) left for reimport",
            batch.id,
            len(written),
            len(unreached),
        )

    def _finalize(
        self,
        batch: ImportBatch,
        record: ImportCommit,
        outcomes: Sequence[RowOutcome],
        skipped: Sequence[StagingRow],
        started: float,
        actor_user_id: int | None,
        retry_of: ImportCommit | None,
    ) -> CommitResult:
        result = self._apply_outcomes(batch, record, outcomes, skipped, started, actor_user_id, retry_of)
        self.session.commit()
        return self._report(batch, record, result)

    def _apply_outcomes(
        self,
        batch: ImportBatch,
        record: ImportCommit,
        outcomes: Sequence[RowOutcome],
        skipped: Sequence[StagingRow],
        started: float,
        actor_user_id: int | None,
        retry_of: ImportCommit | None,
        *,
        interrupted: str | None = None,
    ) -> CommitResult:
        result = CommitResult(batch_id=batch.id, commit_id=record.id, retry_of_commit_id=record.retry_of_id)
        by_index = {outcome.row_index: outcome for outcome in outcomes}
        rows = self.batches.get_rows(batch.id, row_indexes=[*by_index, *(row.row_index for row in skipped)])
        for row in rows:
            outcome = by_index.get(row.row_index)
            if outcome is None:
                row.action_taken = RowAction.SKIPPED
                row.target_customer_id = None
                row.commit_id = record.id
                continue
            row.action_taken = outcome.action
            row.target_customer_id = outcome.customer_id
            row.commit_id = record.id
            row.last_error = outcome.error

        for outcome in sorted(outcomes, key=lambda item: item.row_index):
            if outcome.action == RowAction.CREATED:
                result.created += 1
                result.created_ids.append(outcome.customer_id)
            elif outcome.action == RowAction.UPDATED:
                result.updated += 1
                result.updated_ids.append(outcome.customer_id)
            else:
                result.failed += 1
                result.errors.append(
                    {
                        "row_index": outcome.row_index,
                        "source_line": outcome.source_line,
                        "message": outcome.error,
                        "code": outcome.code,
                    }
                )
        result.skipped = len(skipped)
        result.total_processed = len(outcomes)
        result.duration_ms = int((time.perf_counter() - started) * 1000)

        record.status = ImportCommitStatus.COMMITTED
        record.created_count = result.created
        record.updated_count = result.updated
        record.skipped_count = result.skipped
        record.failed_count = result.failed
        record.created_ids_json = result.created_ids
        record.updated_ids_json = result.updated_ids
        record.errors_json = result.errors
        record.finished_at = utcnow()
        record.duration_ms = result.duration_ms

        batch.status = ImportBatchStatus.COMMITTED
        if retry_of is None:
            batch.committed_at = record.finished_at
            batch.committed_by_user_id = actor_user_id
        details: dict[str, Any] = {
            "commit_id": record.id,
            "created": result.created,
            "updated": result.updated,
            "skipped": result.skipped,
            "failed": result.failed,
        }
        if interrupted is not None:
            details["interrupted"] = interrupted
        self.batches.record_audit(
            batch,
            "reimport" if retry_of is not None else "commit",
            actor_user_id=actor_user_id,
            affected_customer_ids=[*result.created_ids, *result.updated_ids],
            details=details,
        )
        return result

    def _report(self, batch: ImportBatch, record: ImportCommit, result: CommitResult) -> CommitResult:
        record_commit(
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            failed=result.failed,
            duration_seconds=result.duration_ms / 1000,
        )
        if has_app_context():
            current_app.logger.info(
                "Committed batch %s: %s created, %s updated, %s failed",
                batch.id,
                result.created,
                result.updated,
                result.failed,
                extra={
                    "importer_batch_id": batch.id,
                    "importer_commit_id": record.id,
                    "importer_created": result.created,
                    "importer_updated": result.updated,
                    "importer_failed": result.failed,
                },
            )
        return result


def _process_row(
    store: CustomerStore,
    organization_id: int,
    batch_id: int,
    commit_id: int,
    item: CommitWorkItem,
) -> RowOutcome:
    try:
        if item.existing_customer_id is not None:
            customer_id = store.update(
                organization_id, item.existing_customer_id, customer_attributes(item.values, for_update=True)
            )
            return RowOutcome(item.row_index, item.source_line, RowAction.UPDATED, customer_id)
        customer_id = store.create(
            organization_id, customer_attributes(item.values), batch_id=batch_id, commit_id=commit_id
        )
        return RowOutcome(item.row_index, item.source_line, RowAction.CREATED, customer_id)
    except Exception as exc:  # row failures are reported on the result
        logger.warning("Commit of row %s in batch %s failed: %s", item.row_index, batch_id, exc)
        code = exc.code if isinstance(exc, ImportPipelineError) else PARTIAL_COMMIT_FAILURE
        return RowOutcome(item.row_index, item.source_line, RowAction.FAILED, error=str(exc), code=code)
