"""
Batch reports: the downloadable error report and the quality report.

The error report lists one CSV line per row issue and per failed commit row,
followed by the row's original values so the file can be corrected and
uploaded again.
"""

from __future__ import annotations

import csv
from datetime import datetime, timezone
from io import StringIO
from typing import TYPE_CHECKING, Any, Iterable, Sequence

from roster_app.importer.errors import PARTIAL_COMMIT_FAILURE
from roster_app.models.importer.schema import ImportBatch, RowAction, RowValidationStatus, StagingRow

from .overlay import apply_edits

if TYPE_CHECKING:
    from .validator import ValidationSummary

LEADING_FORMULA_CHARACTERS = ("=", "+", "-", "@")
COVERAGE_FIELDS: tuple[str, ...] = ("navn", "adresse", "postnummer", "poststed", "telefon", "epost", "kontaktperson")
LOW_COVERAGE = 0.5
LOW_VALID_SHARE = 0.8

ERROR_REPORT_COLUMNS: tuple[str, ...] = (
    "row_index",
    "source_line",
    "status",
    "severity",
    "code",
    "field",
    "source_column",
    "message",
    "actual_value",
    "suggestion",
)


def _sanitize_csv(value: object) -> str:
    if value is None:
        return ""
    text = str(value)
    if text and text[0] in LEADING_FORMULA_CHARACTERS:
        return f"'{text}"
    return text


def _has_value(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def build_quality_report(rows: Sequence[StagingRow], summary: "ValidationSummary") -> dict[str, Any]:
    """
    Score a validated batch from 0 to 100.

    Valid share and average completeness weigh 40 points each; coverage of the
    core contact fields weighs 20.
    """

    total = summary.total_rows
    valid_share = summary.valid_count / total if total else 0.0
    scores = [row.completeness_score or 0.0 for row in rows]
    completeness_average = sum(scores) / len(scores) if scores else 0.0

    displayed = [apply_edits(row.mapped_json, row.edits_json) for row in rows]
    coverage: dict[str, float] = {}
    for field_name in COVERAGE_FIELDS:
        filled = sum(1 for values in displayed if _has_value(values.get(field_name)))
        coverage[field_name] = round(filled / len(rows), 3) if rows else 0.0

    counts: dict[tuple[str, str], dict[str, Any]] = {}
    for row in rows:
        for issue in row.issues:
            key = (issue.get("code") or "UNKNOWN", issue.get("field") or "")
            entry = counts.setdefault(
                key, {"code": key[0], "field": key[1], "count": 0, "message": issue.get("message")}
            )
            entry["count"] += 1
    common_errors = sorted(counts.values(), key=lambda item: (-item["count"], item["code"], item["field"]))

    suggestions: list[str] = []
    for field_name, share in coverage.items():
        if share < LOW_COVERAGE:
            suggestions.append(f"{round((1 - share) * 100)}% of rows are missing {field_name}.")
    if total and valid_share < LOW_VALID_SHARE:
        suggestions.append(
            f"Only {round(valid_share * 100)}% of rows are valid; consider fixing errors before committing."
        )

    coverage_average = sum(coverage.values()) / len(coverage) if coverage else 0.0
    overall = round(valid_share * 40 + completeness_average * 40 + min(1.0, coverage_average) * 20)
    return {
        "overall_score": overall,
        "valid_share": round(valid_share, 3),
        "completeness_average": round(completeness_average, 3),
        "field_coverage": coverage,
        "common_errors": common_errors,
        "suggestions": suggestions,
    }


def build_error_report(batch: ImportBatch, rows: Iterable[StagingRow]) -> tuple[str, str]:
    """Return ``(filename, csv_text)`` for rows with issues or failed commits."""

    headers = batch.headers
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow([*ERROR_REPORT_COLUMNS, *headers])

    for row in rows:
        raw_values = [_sanitize_csv((row.raw_json or {}).get(header)) for header in headers]
        status = row.validation_status.value if isinstance(row.validation_status, RowValidationStatus) else ""
        if row.action_taken == RowAction.FAILED:
            writer.writerow(
                [
                    row.row_index,
                    row.source_line,
                    RowAction.FAILED.value,
                    "error",
                    PARTIAL_COMMIT_FAILURE,
                    "",
                    "",
                    _sanitize_csv(row.last_error),
                    "",
                    "",
                    *raw_values,
                ]
            )
        for issue in row.issues:
            writer.writerow(
                [
                    row.row_index,
                    row.source_line,
                    status,
                    issue.get("severity") or "",
                    issue.get("code") or "",
                    issue.get("field") or "",
                    _sanitize_csv(issue.get("source_column")),
                    _sanitize_csv(issue.get("message")),
                    _sanitize_csv(issue.get("actual_value")),
                    _sanitize_csv(issue.get("suggestion")),
                    *raw_values,
                ]
            )

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    filename = f"import_batch_{batch.id}_errors_{timestamp}.csv"
    return filename, buffer.getvalue()
