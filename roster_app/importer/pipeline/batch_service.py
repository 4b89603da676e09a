"""
Service helpers for import batch listing, filtering, serialization and cancel.

The JSON API and the CLI consume these helpers to provide paginated listings
and detail payloads while keeping SQLAlchemy logic in one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from flask import current_app, has_app_context
from sqlalchemy import and_
from sqlalchemy.orm import Session

from roster_app.importer.errors import BatchStateError
from roster_app.models import User, db
from roster_app.models.importer.schema import ImportBatch, ImportBatchStatus

from .batch_store import BatchStore
from .cleaning import EDITABLE_STATUSES
from .commit import CommitResult, active_commit
from .locks import batch_locks
from .preview import is_stale

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-created_at"

VALID_SORT_FIELDS = {
    "id": ImportBatch.id,
    "status": ImportBatch.status,
    "file_name": ImportBatch.file_name,
    "row_count": ImportBatch.row_count,
    "created_at": ImportBatch.created_at,
    "committed_at": ImportBatch.committed_at,
}


@dataclass(frozen=True)
class BatchFilters:
    """Canonical set of filter options applied to import batch queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[ImportBatchStatus, ...] = field(default_factory=tuple)
    search: str | None = None
    include_cancelled: bool = False

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        search: str | None = None,
        include_cancelled: str | bool | None = None,
    ) -> "BatchFilters":
        """Coerce mixed user input into a validated ``BatchFilters`` instance."""

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        default_size = DEFAULT_PAGE_SIZE
        if has_app_context():
            default_size = int(current_app.config.get("IMPORTER_BATCHES_PAGE_SIZE_DEFAULT", DEFAULT_PAGE_SIZE))
        resolved_size = min(_coerce_positive_int(page_size, fallback=default_size), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        if resolved_sort.lstrip("-") not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{resolved_sort.lstrip('-')}'.")

        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value)
        resolved_search = search.strip() if isinstance(search, str) and search.strip() else None

        return cls(
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            statuses=resolved_statuses,
            search=resolved_search,
            include_cancelled=_coerce_bool(include_cancelled, default=False),
        )


@dataclass(slots=True)
class BatchListResult:
    items: list[dict[str, Any]]
    total: int
    page: int
    page_size: int
    total_pages: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


class ImportBatchService:
    """Facade for querying and cancelling import batches with tenant scoping."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session
        self.store = BatchStore(self.session)

    # ---- Public API ----

    def list_batches(self, filters: BatchFilters, *, organization_id: int | None = None) -> BatchListResult:
        """List batches; ``organization_id=None`` means every tenant (super admins)."""

        predicates = []
        if organization_id is not None:
            predicates.append(ImportBatch.organization_id == organization_id)
        if filters.statuses:
            predicates.append(ImportBatch.status.in_(filters.statuses))
        elif not filters.include_cancelled:
            predicates.append(ImportBatch.status != ImportBatchStatus.CANCELLED)
        if filters.search:
            predicates.append(ImportBatch.file_name.ilike(f"%{filters.search}%"))

        query = self.session.query(ImportBatch)
        if predicates:
            query = query.filter(and_(*predicates))

        total = query.count()
        if total == 0:
            return BatchListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        batches = (
            query.order_by(_resolve_sort_expression(filters.sort), ImportBatch.id.desc())
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return BatchListResult(
            items=[self.summarize(batch) for batch in batches],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def summarize(self, batch: ImportBatch) -> dict[str, Any]:
        created_by = None
        if batch.created_by_user_id:
            user: User | None = self.session.get(User, batch.created_by_user_id)
            if user:
                created_by = {"id": user.id, "username": user.username, "email": user.email}
        return {
            "id": batch.id,
            "organization_id": batch.organization_id,
            "status": batch.status.value,
            "file_name": batch.file_name,
            "row_count": batch.row_count,
            "valid_count": batch.valid_count,
            "warning_count": batch.warning_count,
            "error_count": batch.error_count,
            "created_by": created_by,
            "created_at": _isoformat(batch.created_at),
            "committed_at": _isoformat(batch.committed_at),
        }

    def detail(self, batch: ImportBatch) -> dict[str, Any]:
        """Full payload for one batch: summary plus mapping, counts and commit history."""

        payload = self.summarize(batch)
        record = active_commit(batch)
        payload.update(
            {
                "headers": batch.headers,
                "column_fingerprint": batch.column_fingerprint,
                "file_size_bytes": batch.file_size_bytes,
                "cleaning_decision": batch.cleaning_decision.value,
                "rule_toggles": dict(batch.rule_toggles_json or {}),
                "mapping": list(batch.mapping_config_json or ()),
                "format_change": batch.format_change_json,
                "update_on_duplicate": batch.update_on_duplicate,
                "counts": dict(batch.counts_json or {}),
                "quality_report": batch.quality_report_json,
                "validated_at": _isoformat(batch.validated_at),
                "stale": is_stale(batch),
                "error_message": batch.error_message,
                "active_commit": CommitResult.from_commit(record).to_dict() if record is not None else None,
                "commits": [
                    {
                        "id": item.id,
                        "status": item.status.value,
                        "retry_of_id": item.retry_of_id,
                        "created": item.created_count,
                        "updated": item.updated_count,
                        "failed": item.failed_count,
                        "finished_at": _isoformat(item.finished_at),
                        "rolled_back_at": _isoformat(item.rolled_back_at),
                        "records_deleted": item.records_deleted,
                    }
                    for item in batch.commits
                ],
                "session": batch.session_json,
            }
        )
        return payload

    def cancel_batch(self, batch_id: int, *, actor_user_id: int | None = None) -> ImportBatch:
        """
        Discard an uncommitted batch: status ``cancelled`` and staging rows deleted.

        The batch record stays for the audit trail. Committed batches must be
        rolled back instead.
        """

        with batch_locks.hold(batch_id, "cancel"):
            batch = self.store.get_batch(batch_id)
            if batch.status not in EDITABLE_STATUSES:
                raise BatchStateError(
                    f"Batch {batch.id} is {batch.status.value}; only uncommitted batches can be cancelled.",
                    batch_id=batch.id,
                    status=batch.status.value,
                )
            try:
                discarded = self.store.discard_rows(batch)
                batch.status = ImportBatchStatus.CANCELLED
                self.store.record_audit(batch, "cancel", actor_user_id=actor_user_id, details={"rows_discarded": discarded})
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

        if has_app_context():
            current_app.logger.info(
                "Import batch %s cancelled (%s staging rows discarded)",
                batch.id,
                discarded,
                extra={"importer_batch_id": batch.id},
            )
        return batch


# ---- Helper functions ----


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | ImportBatchStatus) -> ImportBatchStatus:
    if isinstance(value, ImportBatchStatus):
        return value
    try:
        return ImportBatchStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _coerce_bool(candidate: str | bool | None, *, default: bool) -> bool:
    if candidate is None:
        return default
    if isinstance(candidate, bool):
        return candidate
    normalized = candidate.strip().lower()
    if normalized in ("1", "true", "yes", "y", "on"):
        return True
    if normalized in ("0", "false", "no", "n", "off"):
        return False
    return default


def _resolve_sort_expression(sort: str):
    column = VALID_SORT_FIELDS[sort.lstrip("-")]
    return column.desc() if sort.startswith("-") else column.asc()
