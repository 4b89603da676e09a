"""
Persistence for import batches and their staging rows.

``BatchStore`` is the only component that creates or deletes batches. Other
pipeline services load batches through it so unknown ids and tenant mismatches
surface uniformly as ``BatchNotFound``.
"""

from __future__ import annotations

import hashlib
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from roster_app.importer.contracts import normalize_header
from roster_app.importer.errors import BatchNotFound, RowNotFound
from roster_app.models import db
from roster_app.models.base import utcnow
from roster_app.models.importer.schema import (
    ImportAuditLog,
    ImportBatch,
    ImportBatchStatus,
    StagingRow,
)


def compute_column_fingerprint(headers: Iterable[str]) -> str:
    """Stable hash of the header set, independent of order and case."""

    normalized = sorted(normalize_header(header) for header in headers)
    return hashlib.sha256("|".join(normalized).encode("utf-8")).hexdigest()


def _log_info(message: str, *args: Any, **extra: Any) -> None:
    if has_app_context():
        current_app.logger.info(message, *args, extra=extra)


class BatchStore:
    """Create, load and clean up import batches."""

    def __init__(self, session: Session | None = None) -> None:
        self.session = session or db.session

    # ---- Public API ----

    def create_batch(
        self,
        organization_id: int,
        headers: Sequence[str],
        raw_rows: Sequence[tuple[int, Mapping[str, Any]]],
        *,
        file_name: str | None = None,
        file_bytes: bytes | None = None,
        file_size_bytes: int | None = None,
        file_hash: str | None = None,
        created_by: int | None = None,
        update_on_duplicate: bool = True,
    ) -> ImportBatch:
        """
        Persist a batch plus one staging row per ``(source_line, values)`` pair.

        Row indexes are assigned in file order starting at 0 and never change.
        """

        if file_bytes is not None:
            file_size_bytes = len(file_bytes)
            file_hash = hashlib.sha256(file_bytes).hexdigest()

        batch = ImportBatch(
            organization_id=organization_id,
            created_by_user_id=created_by,
            status=ImportBatchStatus.UPLOADED,
            file_name=file_name,
            file_size_bytes=file_size_bytes,
            file_hash=file_hash,
            headers_json=list(headers),
            column_fingerprint=compute_column_fingerprint(headers),
            row_count=len(raw_rows),
            update_on_duplicate=update_on_duplicate,
        )
        self.session.add(batch)
        self.session.flush()

        for row_index, (source_line, values) in enumerate(raw_rows):
            raw = {header: _as_text(values.get(header)) for header in headers}
            self.session.add(
                StagingRow(
                    batch_id=batch.id,
                    row_index=row_index,
                    source_line=source_line,
                    raw_json=raw,
                    cleaned_json=dict(raw),
                )
            )

        self.record_audit(
            batch,
            "upload",
            actor_user_id=created_by,
            details={"file_name": file_name, "row_count": len(raw_rows), "columns": len(headers)},
        )
        self.session.commit()
        _log_info(
            "Import batch %s created with %s rows",
            batch.id,
            batch.row_count,
            importer_batch_id=batch.id,
            importer_organization_id=organization_id,
        )
        return batch

    def get_batch(self, batch_id: int, organization_id: int | None = None) -> ImportBatch:
        batch = self.session.get(ImportBatch, batch_id)
        if batch is None:
            raise BatchNotFound(batch_id)
        if organization_id is not None and batch.organization_id != organization_id:
            raise BatchNotFound(batch_id)
        return batch

    def get_rows(
        self,
        batch_id: int,
        offset: int = 0,
        limit: int | None = None,
        row_indexes: Iterable[int] | None = None,
    ) -> list[StagingRow]:
        self.get_batch(batch_id)
        query = self.session.query(StagingRow).filter(StagingRow.batch_id == batch_id)
        if row_indexes is not None:
            indexes = sorted(set(row_indexes))
            if not indexes:
                return []
            query = query.filter(StagingRow.row_index.in_(indexes))
        query = query.order_by(StagingRow.row_index)
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return list(query)

    def get_row(self, batch_id: int, row_index: int) -> StagingRow:
        row = (
            self.session.query(StagingRow)
            .filter(StagingRow.batch_id == batch_id, StagingRow.row_index == row_index)
            .one_or_none()
        )
        if row is None:
            raise RowNotFound(batch_id, row_index)
        return row

    def update_status(
        self,
        batch_id: int,
        status: ImportBatchStatus,
        error_message: str | None = None,
        *,
        commit: bool = True,
    ) -> ImportBatch:
        batch = self.get_batch(batch_id)
        batch.status = status
        batch.error_message = error_message
        if commit:
            self.session.commit()
        return batch

    def delete_batch(self, batch_id: int) -> None:
        """Explicit cleanup: drop the batch and its staging rows."""

        batch = self.get_batch(batch_id)
        organization_id = batch.organization_id
        self.discard_rows(batch)
        self.session.delete(batch)
        self.session.commit()
        _log_info(
            "Import batch %s deleted",
            batch_id,
            importer_batch_id=batch_id,
            importer_organization_id=organization_id,
        )

    def discard_rows(self, batch: ImportBatch) -> int:
        """Delete a batch's staging rows while keeping the batch record; the caller commits."""

        deleted = (
            self.session.query(StagingRow)
            .filter(StagingRow.batch_id == batch.id)
            .delete(synchronize_session=False)
        )
        self.session.expire(batch, ["rows"])
        return deleted

    def record_audit(
        self,
        batch: ImportBatch,
        action: str,
        *,
        actor_user_id: int | None = None,
        affected_customer_ids: Sequence[int] | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> ImportAuditLog:
        """Add an audit entry to the current transaction; the caller commits."""

        entry = ImportAuditLog(
            organization_id=batch.organization_id,
            batch_id=batch.id,
            action=action,
            actor_user_id=actor_user_id,
            affected_customer_ids_json=list(affected_customer_ids) if affected_customer_ids else None,
            details_json=dict(details) if details else None,
            created_at=utcnow(),
        )
        self.session.add(entry)
        return entry


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)
