"""
Read-only projection of staged rows for the preview step.

Preview never takes the batch lock. When a mutating call is in flight, or the
last validation predates a mapping, toggle or edit change, the projection is
still returned but flagged ``stale``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Sequence

from sqlalchemy.orm import Session

from roster_app.models import db
from roster_app.models.importer.schema import ImportBatch, ImportBatchStatus, StagingRow

from .batch_store import BatchStore
from .cleaning import is_row_removed, load_toggles
from .locks import batch_locks
from .overlay import apply_edits
from .resolver import load_mappings

MODE_AFTER = "after"
MODE_BEFORE_AFTER = "before_after"
PREVIEW_MODES = (MODE_AFTER, MODE_BEFORE_AFTER)
DEFAULT_PREVIEW_LIMIT = 100
MAX_PREVIEW_LIMIT = 1000

_IN_FLIGHT_STATUSES = frozenset(
    {ImportBatchStatus.VALIDATING, ImportBatchStatus.COMMITTING, ImportBatchStatus.ROLLING_BACK}
)


@dataclass
class Preview:
    batch_id: int
    rows: list[dict[str, Any]] = field(default_factory=list)
    total_rows: int = 0
    stale: bool = True
    mode: str = MODE_AFTER
    offset: int = 0
    limit: int = DEFAULT_PREVIEW_LIMIT

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "rows": list(self.rows),
            "total_rows": self.total_rows,
            "stale": self.stale,
            "mode": self.mode,
            "offset": self.offset,
            "limit": self.limit,
        }


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_stale(batch: ImportBatch) -> bool:
    """True when the last validation cannot be trusted for ``batch``."""

    if batch_locks.is_locked(batch.id) or batch.status in _IN_FLIGHT_STATUSES:
        return True
    validated_at = _as_utc(batch.validated_at)
    if validated_at is None:
        return True
    changes = [
        _as_utc(stamp)
        for stamp in (batch.cleaning_updated_at, batch.mapping_applied_at, batch.edits_updated_at)
        if stamp is not None
    ]
    return any(stamp > validated_at for stamp in changes)


def project_row(
    row: StagingRow,
    *,
    mode: str = MODE_AFTER,
    column_by_field: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Shape one row for display: edited value if present, else the mapped value."""

    values = apply_edits(row.mapped_json, row.edits_json)
    payload: dict[str, Any] = {
        "row_index": row.row_index,
        "source_line": row.source_line,
        "status": row.validation_status.value,
        "selected": row.selected,
        "excluded": row.excluded,
        "values": values,
        "edited_fields": sorted((row.edits_json or {}).keys()),
        "issues": row.issues,
        "duplicate_of_row_index": row.duplicate_of_row_index,
        "existing_customer_id": row.existing_customer_id,
        "completeness_score": row.completeness_score,
        "action_taken": row.action_taken.value if row.action_taken else None,
        "target_customer_id": row.target_customer_id,
    }
    if mode == MODE_BEFORE_AFTER:
        changes: dict[str, dict[str, Any]] = {}
        raw = row.raw_json or {}
        for field_name, column in (column_by_field or {}).items():
            before = raw.get(column)
            after = values.get(field_name)
            if (before or "") != ("" if after is None else str(after)):
                changes[field_name] = {"before": before, "after": after}
        payload["changes"] = changes
    return payload


class PreviewProjector:
    def __init__(self, session: Session | None = None) -> None:
        self.session = session or db.session
        self.store = BatchStore(self.session)

    def preview(
        self,
        batch_id: int,
        *,
        show_errors: bool = False,
        limit: int | None = None,
        offset: int = 0,
        mode: str = MODE_AFTER,
        row_indexes: Sequence[int] | None = None,
    ) -> Preview:
        if mode not in PREVIEW_MODES:
            raise ValueError(f"Unsupported preview mode '{mode}'.")
        limit = DEFAULT_PREVIEW_LIMIT if limit is None else max(1, min(int(limit), MAX_PREVIEW_LIMIT))
        offset = max(0, int(offset or 0))

        batch = self.store.get_batch(batch_id)
        rows = self.visible_rows(batch, show_errors=show_errors, row_indexes=row_indexes)
        column_by_field = {
            mapping.target_field: mapping.source_column
            for mapping in load_mappings(batch)
            if mapping.target_field and not mapping.ignored
        }
        page = rows[offset : offset + limit]
        return Preview(
            batch_id=batch.id,
            rows=[project_row(row, mode=mode, column_by_field=column_by_field) for row in page],
            total_rows=len(rows),
            stale=is_stale(batch),
            mode=mode,
            offset=offset,
            limit=limit,
        )

    def visible_rows(
        self,
        batch: ImportBatch,
        *,
        show_errors: bool = False,
        row_indexes: Iterable[int] | None = None,
    ) -> list[StagingRow]:
        toggles = load_toggles(batch)
        rows = self.store.get_rows(batch.id, row_indexes=row_indexes)
        visible = [row for row in rows if not is_row_removed(row, batch, toggles)]
        if show_errors:
            visible = [row for row in visible if row.errors_json or row.last_error]
        return visible
