"""
Auto-cleaning of uploaded roster data.

Detection runs once per batch, at upload, over every row. It records each cell
change and each row removal together with the rule that produced it. Toggling
a rule later only re-filters those records; detection is never re-run. The
effective value of a cell is the cleaned value of the last enabled change for
that cell, else the raw value. A row is removed when the rule recorded for it
is enabled.
"""

from __future__ import annotations

import enum
import math
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Sequence

from flask import current_app, has_app_context
from sqlalchemy.orm import Session

from roster_app.importer.errors import BatchStateError, UnknownCleaningRule
from roster_app.importer.mapping import match_header
from roster_app.models import db
from roster_app.models.base import utcnow
from roster_app.models.importer.schema import (
    CleaningDecision,
    ImportBatch,
    ImportBatchStatus,
    StagingRow,
)

from .batch_store import BatchStore
from .locks import batch_locks


class CleaningRuleId(str, enum.Enum):
    REMOVE_EMPTY_ROWS = "remove_empty_rows"
    REMOVE_SUMMARY_ROWS = "remove_summary_rows"
    REMOVE_DUPLICATE_ROWS = "remove_duplicate_rows"
    REMOVE_INVISIBLE_CHARS = "remove_invisible_chars"
    TRIM_WHITESPACE = "trim_whitespace"
    NORMALIZE_WHITESPACE = "normalize_whitespace"
    FIX_ENCODING = "fix_encoding"
    STANDARDIZE_EMPTY = "standardize_empty"
    FIX_POSTAL_CODE = "fix_postal_code"
    FIX_PHONE = "fix_phone"


@dataclass(frozen=True)
class CleaningRule:
    id: CleaningRuleId
    category: str
    name: str
    description: str
    default_enabled: bool = True


RULE_CATALOG: tuple[CleaningRule, ...] = (
    CleaningRule(CleaningRuleId.REMOVE_EMPTY_ROWS, "rows", "Remove empty rows", "Rows where every cell is empty."),
    CleaningRule(
        CleaningRuleId.REMOVE_SUMMARY_ROWS,
        "rows",
        "Remove summary rows",
        'Sparse rows containing "sum", "total" and similar keywords.',
    ),
    CleaningRule(
        CleaningRuleId.REMOVE_DUPLICATE_ROWS,
        "rows",
        "Remove duplicate rows",
        "Exact copies of an earlier row; the first one is kept.",
    ),
    CleaningRule(
        CleaningRuleId.REMOVE_INVISIBLE_CHARS,
        "cells",
        "Remove invisible characters",
        "Zero-width characters, soft hyphens and direction marks; non-breaking spaces become spaces.",
    ),
    CleaningRule(CleaningRuleId.TRIM_WHITESPACE, "cells", "Trim whitespace", "Leading and trailing whitespace."),
    CleaningRule(
        CleaningRuleId.NORMALIZE_WHITESPACE, "cells", "Normalize whitespace", "Runs of whitespace become one space."
    ),
    CleaningRule(
        CleaningRuleId.FIX_ENCODING,
        "cells",
        "Fix character encoding",
        "Repairs Norwegian letters garbled by a wrong encoding (Ã¦ to æ, Ã¸ to ø).",
    ),
    CleaningRule(
        CleaningRuleId.STANDARDIZE_EMPTY,
        "cells",
        "Standardize empty values",
        'Placeholders such as "-", "N/A" and "ingen" become empty.',
    ),
    CleaningRule(
        CleaningRuleId.FIX_POSTAL_CODE,
        "cells",
        "Fix postal codes",
        "Three digit postal codes get their leading zero back.",
    ),
    CleaningRule(
        CleaningRuleId.FIX_PHONE,
        "cells",
        "Fix phone numbers",
        "Strips the +47 country code and formats eight digit numbers.",
    ),
)

RULES_BY_ID: Mapping[CleaningRuleId, CleaningRule] = {rule.id: rule for rule in RULE_CATALOG}

ENCODING_FIXES: tuple[tuple[str, str], ...] = (
    ("Ã¦", "æ"),
    ("Ã¸", "ø"),
    ("Ã¥", "å"),
    ("Ã†", "Æ"),
    ("Ã˜", "Ø"),
    ("Ã…", "Å"),
    ("Ã©", "é"),
    ("Ã¶", "ö"),
    ("Ã¤", "ä"),
    ("Ã¼", "ü"),
    ("Ã–", "Ö"),
    ("Ã„", "Ä"),
)

EMPTY_PATTERN = re.compile(r"^(-|N/A|n/a|NA|na|ingen|tom|null|undefined|#N/A|#REF!|#VERDI!|–|—|\.)$")
SUMMARY_PATTERN = re.compile(r"\b(sum|total|totalt|subtotal|i alt|gjennomsnitt|snitt|antall)\b", re.IGNORECASE)
INVISIBLE_PATTERN = re.compile("[\u200b\u200c\u200d\ufeff\u00ad\u200e\u200f]")
WHITESPACE_RUN = re.compile(r"\s{2,}")


# ---- Toggles ----


class RuleToggles:
    """Typed enabled/disabled table over the fixed rule catalog."""

    def __init__(self, values: Mapping[str, bool] | None = None) -> None:
        self._enabled: dict[CleaningRuleId, bool] = {rule.id: rule.default_enabled for rule in RULE_CATALOG}
        for key, enabled in (values or {}).items():
            self._enabled[coerce_rule_id(key)] = bool(enabled)

    def is_enabled(self, rule_id: CleaningRuleId | str) -> bool:
        return self._enabled[coerce_rule_id(rule_id)]

    def with_rule(self, rule_id: CleaningRuleId | str, enabled: bool) -> "RuleToggles":
        updated = self.to_dict()
        updated[coerce_rule_id(rule_id).value] = bool(enabled)
        return RuleToggles(updated)

    def to_dict(self) -> dict[str, bool]:
        return {rule_id.value: enabled for rule_id, enabled in self._enabled.items()}

    def __eq__(self, other: object) -> bool:
        return isinstance(other, RuleToggles) and other._enabled == self._enabled

    def __repr__(self) -> str:
        disabled = [rule_id.value for rule_id, enabled in self._enabled.items() if not enabled]
        return f"<RuleToggles disabled={disabled}>"


def coerce_rule_id(value: CleaningRuleId | str) -> CleaningRuleId:
    if isinstance(value, CleaningRuleId):
        return value
    try:
        return CleaningRuleId(str(value))
    except ValueError as exc:
        raise UnknownCleaningRule(str(value)) from exc


# ---- Report ----


@dataclass(frozen=True)
class CellChange:
    row_index: int
    column: str
    rule_id: CleaningRuleId
    original_value: str
    cleaned_value: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_index": self.row_index,
            "column": self.column,
            "rule_id": self.rule_id.value,
            "original_value": self.original_value,
            "cleaned_value": self.cleaned_value,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CellChange":
        return cls(
            row_index=int(payload["row_index"]),
            column=str(payload["column"]),
            rule_id=CleaningRuleId(payload["rule_id"]),
            original_value=payload.get("original_value") or "",
            cleaned_value=payload.get("cleaned_value") or "",
        )


@dataclass(frozen=True)
class RowRemoval:
    row_index: int
    rule_id: CleaningRuleId
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"row_index": self.row_index, "rule_id": self.rule_id.value, "reason": self.reason}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RowRemoval":
        return cls(
            row_index=int(payload["row_index"]),
            rule_id=CleaningRuleId(payload["rule_id"]),
            reason=str(payload.get("reason") or ""),
        )


@dataclass
class CleaningReport:
    cell_changes: list[CellChange] = field(default_factory=list)
    row_removals: list[RowRemoval] = field(default_factory=list)
    postal_columns: tuple[str, ...] = ()
    phone_columns: tuple[str, ...] = ()

    def affected_counts(self) -> dict[CleaningRuleId, int]:
        counts = {rule.id: 0 for rule in RULE_CATALOG}
        for change in self.cell_changes:
            counts[change.rule_id] += 1
        for removal in self.row_removals:
            counts[removal.rule_id] += 1
        return counts

    def rules(self, toggles: RuleToggles | None = None) -> list[dict[str, Any]]:
        toggles = toggles or RuleToggles()
        counts = self.affected_counts()
        return [
            {
                "rule_id": rule.id.value,
                "category": rule.category,
                "name": rule.name,
                "description": rule.description,
                "default_enabled": rule.default_enabled,
                "enabled": toggles.is_enabled(rule.id),
                "affected_count": counts[rule.id],
            }
            for rule in RULE_CATALOG
        ]

    def changes_by_cell(self) -> dict[tuple[int, str], list[CellChange]]:
        grouped: dict[tuple[int, str], list[CellChange]] = {}
        for change in self.cell_changes:
            grouped.setdefault((change.row_index, change.column), []).append(change)
        return grouped

    def removals_by_row(self) -> dict[int, RowRemoval]:
        return {removal.row_index: removal for removal in self.row_removals}

    def to_dict(self, toggles: RuleToggles | None = None) -> dict[str, Any]:
        return {
            "rules": self.rules(toggles),
            "cell_changes": [change.to_dict() for change in self.cell_changes],
            "row_removals": [removal.to_dict() for removal in self.row_removals],
            "postal_columns": list(self.postal_columns),
            "phone_columns": list(self.phone_columns),
            "total_cells_cleaned": len(self.cell_changes),
            "total_rows_removed": len(self.row_removals),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "CleaningReport":
        payload = payload or {}
        return cls(
            cell_changes=[CellChange.from_dict(item) for item in payload.get("cell_changes") or ()],
            row_removals=[RowRemoval.from_dict(item) for item in payload.get("row_removals") or ()],
            postal_columns=tuple(payload.get("postal_columns") or ()),
            phone_columns=tuple(payload.get("phone_columns") or ()),
        )


# ---- Cell fixes ----


def remove_invisible_chars(value: str) -> str:
    return INVISIBLE_PATTERN.sub("", value).replace("\u00a0", " ")


def fix_encoding(value: str) -> str:
    for broken, fixed in ENCODING_FIXES:
        value = value.replace(broken, fixed)
    return value


def fix_postal_code(value: str) -> str | None:
    digits = re.sub(r"\D", "", value)
    if len(digits) == 4:
        return digits
    if len(digits) == 3:
        return "0" + digits
    return None


def fix_phone(value: str) -> str | None:
    stripped = value.strip()
    if not stripped:
        return None
    normalized = re.sub(r"[^\d+]", "", stripped)
    if normalized.startswith("+47"):
        normalized = normalized[3:]
    elif normalized.startswith("0047"):
        normalized = normalized[4:]
    elif normalized.startswith("47") and len(normalized) > 10:
        normalized = normalized[2:]
    normalized = re.sub(r"\D", "", normalized)
    if len(normalized) < 8:
        return None
    if len(normalized) == 8:
        return f"{normalized[0:2]} {normalized[2:4]} {normalized[4:6]} {normalized[6:8]}"
    return normalized


def _is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


# ---- Detection ----


def detect_target_columns(headers: Sequence[str]) -> tuple[tuple[str, ...], tuple[str, ...]]:
    """Return (postal columns, phone columns) judged from header names."""

    postal: list[str] = []
    phone: list[str] = []
    for header in headers:
        match = match_header(header)
        if match is None:
            continue
        if match.field == "postnummer":
            postal.append(header)
        elif match.field == "telefon":
            phone.append(header)
    return tuple(postal), tuple(phone)


def detect_changes(
    headers: Sequence[str],
    rows: Sequence[tuple[int, int, Mapping[str, str]]],
) -> CleaningReport:
    """
    Run every rule over ``rows`` (``(row_index, source_line, values)`` triples).

    Row rules run first, in catalog order, each over the rows earlier row
    rules left in place. Cell rules then run over every row, removed or not, so
    turning a removal rule off later still yields cleaned cells.
    """

    postal_columns, phone_columns = detect_target_columns(headers)
    report = CleaningReport(postal_columns=postal_columns, phone_columns=phone_columns)
    remaining = list(rows)

    kept = []
    for row_index, source_line, values in remaining:
        if all(_is_blank(values.get(header)) for header in headers):
            report.row_removals.append(RowRemoval(row_index, CleaningRuleId.REMOVE_EMPTY_ROWS, "Empty row"))
        else:
            kept.append((row_index, source_line, values))
    remaining = kept

    kept = []
    half = math.ceil(len(headers) / 2)
    for row_index, source_line, values in remaining:
        summary_cell = next(
            (values.get(h) for h in headers if values.get(h) and SUMMARY_PATTERN.search(values.get(h))),
            None,
        )
        filled = sum(1 for header in headers if not _is_blank(values.get(header)))
        if summary_cell is not None and filled <= half:
            report.row_removals.append(
                RowRemoval(
                    row_index,
                    CleaningRuleId.REMOVE_SUMMARY_ROWS,
                    f'Summary row ("{str(summary_cell)[:40]}")',
                )
            )
        else:
            kept.append((row_index, source_line, values))
    remaining = kept

    first_seen: dict[tuple[str, ...], int] = {}
    for row_index, source_line, values in remaining:
        key = tuple(values.get(header) or "" for header in headers)
        if key in first_seen:
            report.row_removals.append(
                RowRemoval(
                    row_index,
                    CleaningRuleId.REMOVE_DUPLICATE_ROWS,
                    f"Duplicate of row {first_seen[key]}",
                )
            )
        else:
            first_seen[key] = source_line

    postal_set = set(postal_columns)
    phone_set = set(phone_columns)
    for row_index, _source_line, values in rows:
        for header in headers:
            value = values.get(header)
            if not value:
                continue
            report.cell_changes.extend(_detect_cell(row_index, header, value, header in postal_set, header in phone_set))

    report.row_removals.sort(key=lambda removal: removal.row_index)
    return report


def _detect_cell(row_index: int, column: str, value: str, is_postal: bool, is_phone: bool) -> list[CellChange]:
    changes: list[CellChange] = []
    current = value

    def step(rule_id: CleaningRuleId, updated: str | None) -> None:
        nonlocal current
        if updated is None or updated == current:
            return
        changes.append(CellChange(row_index, column, rule_id, current, updated))
        current = updated

    step(CleaningRuleId.REMOVE_INVISIBLE_CHARS, remove_invisible_chars(current))
    step(CleaningRuleId.TRIM_WHITESPACE, current.strip())
    step(CleaningRuleId.NORMALIZE_WHITESPACE, WHITESPACE_RUN.sub(" ", current))
    step(CleaningRuleId.FIX_ENCODING, fix_encoding(current))
    if EMPTY_PATTERN.match(current):
        step(CleaningRuleId.STANDARDIZE_EMPTY, "")
        return changes
    if is_postal:
        step(CleaningRuleId.FIX_POSTAL_CODE, fix_postal_code(current))
    if is_phone:
        step(CleaningRuleId.FIX_PHONE, fix_phone(current))
    return changes


# ---- Effective dataset ----


def effective_values(
    raw: Mapping[str, str],
    changes: Mapping[str, Sequence[CellChange]],
    toggles: RuleToggles,
) -> dict[str, str]:
    """Apply the last enabled change per column over the raw values."""

    result = dict(raw)
    for column, column_changes in changes.items():
        enabled = [change for change in column_changes if toggles.is_enabled(change.rule_id)]
        if enabled:
            result[column] = enabled[-1].cleaned_value
    return result


def load_toggles(batch: ImportBatch) -> RuleToggles:
    return RuleToggles(batch.rule_toggles_json or {})


def is_row_removed(row: StagingRow, batch: ImportBatch, toggles: RuleToggles | None = None) -> bool:
    """A row is removed when its detected removal rule is enabled and cleaning was not skipped."""

    if not row.removal_rule or batch.cleaning_decision == CleaningDecision.SKIPPED:
        return False
    toggles = toggles or load_toggles(batch)
    return toggles.is_enabled(row.removal_rule)


def source_values(row: StagingRow, batch: ImportBatch) -> dict[str, str]:
    """Values the mapping step reads: raw when cleaning was skipped, else effective cleaned."""

    if batch.cleaning_decision == CleaningDecision.SKIPPED:
        return dict(row.raw_json or {})
    return dict(row.cleaned_json if row.cleaned_json is not None else row.raw_json or {})


class CleaningEngine:
    """Runs detection at upload and maintains the effective dataset as rules toggle."""

    def __init__(self, session: Session | None = None) -> None:
        self.session = session or db.session
        self.store = BatchStore(self.session)

    # ---- Public API ----

    def run_detection(self, batch: ImportBatch) -> CleaningReport:
        rows = self.store.get_rows(batch.id)
        report = detect_changes(
            batch.headers,
            [(row.row_index, row.source_line, row.raw_json or {}) for row in rows],
        )
        toggles = RuleToggles()
        batch.cleaning_report_json = report.to_dict(toggles)
        batch.rule_toggles_json = toggles.to_dict()
        removals = report.removals_by_row()
        for row in rows:
            removal = removals.get(row.row_index)
            row.removal_rule = removal.rule_id.value if removal else None
            row.removal_reason = removal.reason if removal else None
        self._refresh_effective(batch, rows, report, toggles)
        batch.status = ImportBatchStatus.CLEANED
        self.session.commit()
        if has_app_context():
            current_app.logger.info(
                "Cleaning detection for batch %s: %s cell changes, %s row removals",
                batch.id,
                len(report.cell_changes),
                len(report.row_removals),
                extra={"importer_batch_id": batch.id},
            )
        return report

    def get_report(self, batch: ImportBatch) -> CleaningReport:
        return CleaningReport.from_dict(batch.cleaning_report_json)

    def toggle_rule(self, batch_id: int, rule_id: CleaningRuleId | str, enabled: bool) -> dict[str, Any]:
        """Enable or disable one rule and recompute the effective cleaned values."""

        resolved = coerce_rule_id(rule_id)
        with batch_locks.hold(batch_id, "toggle_rule"):
            batch = self.store.get_batch(batch_id)
            _ensure_editable(batch)
            toggles = load_toggles(batch).with_rule(resolved, enabled)
            report = self.get_report(batch)
            batch.rule_toggles_json = toggles.to_dict()
            batch.cleaning_report_json = report.to_dict(toggles)
            self._refresh_effective(batch, self.store.get_rows(batch_id), report, toggles)
            batch.cleaning_updated_at = utcnow()
            self.session.commit()
        return batch.cleaning_report_json

    def set_decision(self, batch_id: int, decision: CleaningDecision | str, *, actor_user_id: int | None = None) -> ImportBatch:
        resolved = CleaningDecision(decision)
        with batch_locks.hold(batch_id, "cleaning_decision"):
            batch = self.store.get_batch(batch_id)
            _ensure_editable(batch)
            if batch.cleaning_decision != resolved:
                batch.cleaning_decision = resolved
                batch.cleaning_updated_at = utcnow()
            self.store.record_audit(batch, "clean", actor_user_id=actor_user_id, details={"decision": resolved.value})
            self.session.commit()
        return batch

    def _refresh_effective(
        self,
        batch: ImportBatch,
        rows: Iterable[StagingRow],
        report: CleaningReport,
        toggles: RuleToggles,
    ) -> None:
        by_row: dict[int, dict[str, list[CellChange]]] = {}
        for (row_index, column), changes in report.changes_by_cell().items():
            by_row.setdefault(row_index, {})[column] = changes
        for row in rows:
            row.cleaned_json = effective_values(row.raw_json or {}, by_row.get(row.row_index, {}), toggles)


EDITABLE_STATUSES = frozenset(
    {
        ImportBatchStatus.UPLOADED,
        ImportBatchStatus.CLEANED,
        ImportBatchStatus.MAPPED,
        ImportBatchStatus.VALIDATED,
        ImportBatchStatus.ROLLED_BACK,
        ImportBatchStatus.FAILED,
    }
)


def _ensure_editable(batch: ImportBatch) -> None:
    if batch.status not in EDITABLE_STATUSES:
        raise BatchStateError(
            f"Batch {batch.id} is {batch.status.value}; cleaning can no longer change.",
            batch_id=batch.id,
            status=batch.status.value,
        )
