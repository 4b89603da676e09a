"""
Rollback of a committed batch.

Only customers a commit created are deleted; records the batch updated keep
their new values. The batch lock is held for the whole run so no commit can
start meanwhile.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from roster_app.importer.errors import RollbackConflict
from roster_app.importer.metrics import record_rollback
from roster_app.models import db
from roster_app.models.base import utcnow
from roster_app.models.customer import Customer
from roster_app.models.importer.schema import (
    ImportBatch,
    ImportBatchStatus,
    ImportCommit,
    ImportCommitStatus,
)

from .batch_store import BatchStore
from .commit import CustomerStore, active_commit, default_customer_store
from .locks import batch_locks


@dataclass
class RollbackResult:
    batch_id: int
    records_deleted: int = 0
    commit_ids: list[int] = field(default_factory=list)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "records_deleted": self.records_deleted,
            "commit_ids": list(self.commit_ids),
            "reason": self.reason,
        }


class RollbackManager:
    def __init__(self, session: Session | None = None, *, store: CustomerStore | None = None) -> None:
        self.session = session or db.session
        self.batches = BatchStore(self.session)
        self._store = store

    # ---- Public API ----

    def rollback(
        self,
        batch_id: int,
        reason: str | None = None,
        *,
        actor_user_id: int | None = None,
    ) -> RollbackResult:
        """Delete the customers created by the batch's active commit and its retries."""

        with batch_locks.hold(batch_id, "rollback", conflict=RollbackConflict):
            batch = self.batches.get_batch(batch_id)
            record = self._check_status(batch)
            commits = [record, *self._retries_of(batch, record)]
            commit_ids = [item.id for item in commits]

            batch.status = ImportBatchStatus.ROLLING_BACK
            self.session.commit()

            try:
                created_ids = [
                    customer_id
                    for (customer_id,) in self.session.query(Customer.id)
                    .filter(
                        Customer.organization_id == batch.organization_id,
                        Customer.import_commit_id.in_(commit_ids),
                    )
                    .order_by(Customer.id)
                ]
                # Release the read transaction before the store writes on its own connection.
                self.session.commit()
                store = self._store if self._store is not None else default_customer_store()
                deleted = store.delete(batch.organization_id, created_ids)
                result = self._finalize(batch, commits, deleted, created_ids, reason, actor_user_id)
            except Exception:
                self.session.rollback()
                record_rollback("failure")
                batch = self.batches.get_batch(batch_id)
                batch.status = ImportBatchStatus.COMMITTED
                self.session.commit()
                raise
        return result

    # ---- Internal helpers ----

    def _check_status(self, batch: ImportBatch) -> ImportCommit:
        if batch.status in (ImportBatchStatus.COMMITTING, ImportBatchStatus.ROLLING_BACK):
            raise RollbackConflict(
                f"Batch {batch.id} is {batch.status.value}; rollback must wait.",
                batch_id=batch.id,
                status=batch.status.value,
            )
        record = active_commit(batch)
        if batch.status != ImportBatchStatus.COMMITTED or record is None:
            raise RollbackConflict(
                f"Batch {batch.id} is {batch.status.value}; only committed batches can be rolled back.",
                batch_id=batch.id,
                status=batch.status.value,
            )
        return record

    def _retries_of(self, batch: ImportBatch, record: ImportCommit) -> list[ImportCommit]:
        return [
            item
            for item in batch.commits
            if item.retry_of_id == record.id and item.status == ImportCommitStatus.COMMITTED
        ]

    def _finalize(
        self,
        batch: ImportBatch,
        commits: list[ImportCommit],
        deleted: int,
        created_ids: list[int],
        reason: str | None,
        actor_user_id: int | None,
    ) -> RollbackResult:
        now = utcnow()
        for index, record in enumerate(commits):
            record.status = ImportCommitStatus.ROLLED_BACK
            record.rolled_back_at = now
            record.rollback_reason = reason
            if index == 0:
                record.records_deleted = deleted

        for row in self.batches.get_rows(batch.id):
            row.action_taken = None
            row.target_customer_id = None
            row.commit_id = None
            row.last_error = None

        batch.status = ImportBatchStatus.ROLLED_BACK
        batch.committed_at = None
        batch.committed_by_user_id = None
        self.batches.record_audit(
            batch,
            "rollback",
            actor_user_id=actor_user_id,
            affected_customer_ids=created_ids,
            details={
                "commit_ids": [record.id for record in commits],
                "records_deleted": deleted,
                "reason": reason,
            },
        )
        self.session.commit()

        record_rollback("success")
        if has_app_context():
            current_app.logger.info(
                "Rolled back batch %s: %s customers deleted",
                batch.id,
                deleted,
                extra={
                    "importer_batch_id": batch.id,
                    "importer_commit_id": commits[0].id,
                    "importer_records_deleted": deleted,
                },
            )
        return RollbackResult(
            batch_id=batch.id,
            records_deleted=deleted,
            commit_ids=[record.id for record in commits],
            reason=reason,
        )
