"""
Row validation for staged roster imports.

A row's status is a pure function of its mapped values, the operator's edits
and the active rule set: every run recomputes issues from scratch and replaces
what the previous run stored.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Mapping, Sequence

from email_validator import EmailNotValidError, validate_email
from flask import current_app, has_app_context
from rapidfuzz import fuzz, process
from rapidfuzz.distance import Levenshtein
from sqlalchemy.orm import Session

from roster_app.importer.contracts import COMPLETENESS_WEIGHTS, FieldSpec, get_customer_field_specs
from roster_app.importer.errors import BatchStateError
from roster_app.importer.metrics import record_validation
from roster_app.models import db
from roster_app.models.base import utcnow
from roster_app.models.importer.schema import (
    ImportBatch,
    ImportBatchStatus,
    RowValidationStatus,
    StagingRow,
)
from roster_app.models.organization import Organization
from roster_app.utils.importer import get_known_categories

from .batch_store import BatchStore
from .cleaning import is_row_removed, load_toggles
from .duplicates import DuplicateDetector, DuplicateKey
from .locks import batch_locks
from .overlay import apply_edits
from .report import build_quality_report
from .resolver import ColumnMapping, check_required_fields, load_mappings, remap_rows
from .transform import parse_integer

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

REQUIRED_FIELD_MISSING = "REQUIRED_FIELD_MISSING"
INVALID_FORMAT = "INVALID_FORMAT"
INVALID_EMAIL = "INVALID_EMAIL"
INVALID_PHONE = "INVALID_PHONE"
INVALID_POSTAL_CODE = "INVALID_POSTAL_CODE"
INVALID_DATE = "INVALID_DATE"
INVALID_NUMBER = "INVALID_NUMBER"
UNKNOWN_CATEGORY = "UNKNOWN_CATEGORY"
DUPLICATE_IN_BATCH = "DUPLICATE_IN_BATCH"
DUPLICATE_EXISTING = "DUPLICATE_EXISTING"

OLD_DATE_YEAR = 2000
CATEGORY_SUGGESTION_CUTOFF = 80
ISSUE_GROUP_ROW_LIMIT = 50

EMAIL_DOMAIN_TYPOS: Mapping[str, str] = {
    "gmai.com": "gmail.com",
    "gmial.com": "gmail.com",
    "gamil.com": "gmail.com",
    "gnail.com": "gmail.com",
    "gmail.no": "gmail.com",
    "hotmal.com": "hotmail.com",
    "hotmial.com": "hotmail.com",
    "hotmai.com": "hotmail.com",
    "outlok.com": "outlook.com",
    "outllok.com": "outlook.com",
    "outlool.com": "outlook.com",
    "yahooo.com": "yahoo.com",
    "yaho.com": "yahoo.com",
}
COMMON_EMAIL_DOMAINS: tuple[str, ...] = (
    "gmail.com",
    "hotmail.com",
    "outlook.com",
    "yahoo.com",
    "live.com",
    "icloud.com",
    "me.com",
    "msn.com",
    "aol.com",
    "protonmail.com",
    "online.no",
    "broadpark.no",
    "getmail.no",
    "frisurf.no",
)

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_POSTAL_CODE = re.compile(r"^\d{4}$")
_ORG_NUMBER = re.compile(r"^\d{9}$")


@dataclass(frozen=True)
class RowIssue:
    """One problem found on a row; error severity makes the row invalid."""

    severity: str
    code: str
    field: str
    message: str
    source_column: str | None = None
    expected_format: str | None = None
    actual_value: Any = None
    suggestion: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity,
            "code": self.code,
            "field": self.field,
            "source_column": self.source_column,
            "message": self.message,
            "expected_format": self.expected_format,
            "actual_value": self.actual_value,
            "suggestion": self.suggestion,
        }


@dataclass
class ValidationSummary:
    batch_id: int
    valid_count: int = 0
    warning_count: int = 0
    error_count: int = 0
    removed_count: int = 0
    duplicate_count: int = 0
    issue_groups: list[dict[str, Any]] = field(default_factory=list)
    quality_report: dict[str, Any] | None = None
    validated_at: datetime | None = None

    @property
    def total_rows(self) -> int:
        return self.valid_count + self.warning_count + self.error_count

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "valid_count": self.valid_count,
            "warning_count": self.warning_count,
            "error_count": self.error_count,
            "removed_count": self.removed_count,
            "duplicate_count": self.duplicate_count,
            "total_rows": self.total_rows,
            "issue_groups": list(self.issue_groups),
            "quality_report": self.quality_report,
            "validated_at": self.validated_at.isoformat() if self.validated_at else None,
        }


# ---- Field checks ----


def _text(value: Any) -> str:
    if value is None:
        return ""
    return value.strip() if isinstance(value, str) else str(value).strip()


def suggest_email_domain_fix(email: str) -> str | None:
    """Suggest a corrected address when the domain looks like a typo of a common provider."""

    local, sep, domain = email.rpartition("@")
    if not sep:
        return None
    domain = domain.lower()
    if domain in EMAIL_DOMAIN_TYPOS:
        return f"{local}@{EMAIL_DOMAIN_TYPOS[domain]}"
    if domain in COMMON_EMAIL_DOMAINS:
        return None
    for known in COMMON_EMAIL_DOMAINS:
        if Levenshtein.distance(domain, known) == 1:
            return f"{local}@{known}"
    return None


def correct_email(email: str) -> str | None:
    """Repair common slips: inner spaces, a comma for a dot, a doubled @."""

    candidate = re.sub(r"\s+", "", email)
    candidate = candidate.replace(",", ".")
    candidate = re.sub(r"@{2,}", "@", candidate)
    candidate = candidate.strip(".")
    fixed_domain = suggest_email_domain_fix(candidate)
    if fixed_domain:
        candidate = fixed_domain
    return candidate if candidate != email else None


def _email_is_valid(email: str) -> bool:
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def check_email(value: Any, spec: FieldSpec, source_column: str | None) -> list[RowIssue]:
    email = _text(value)
    if not email:
        return []
    if _email_is_valid(email):
        suggestion = suggest_email_domain_fix(email)
        if suggestion is None:
            return []
        return [
            RowIssue(
                SEVERITY_WARNING,
                INVALID_EMAIL,
                spec.name,
                "Possible typo in the email domain.",
                source_column,
                spec.expected_format,
                email,
                suggestion,
            )
        ]
    corrected = correct_email(email)
    if corrected and _email_is_valid(corrected):
        return [
            RowIssue(
                SEVERITY_WARNING,
                INVALID_EMAIL,
                spec.name,
                "Malformed email address; a correction is suggested.",
                source_column,
                spec.expected_format,
                email,
                corrected,
            )
        ]
    return [
        RowIssue(
            SEVERITY_ERROR,
            INVALID_EMAIL,
            spec.name,
            "Invalid email address.",
            source_column,
            spec.expected_format,
            email,
        )
    ]


def normalize_phone_digits(value: Any) -> str:
    digits = re.sub(r"[^\d+]", "", _text(value))
    if digits.startswith("+47"):
        digits = digits[3:]
    elif digits.startswith("0047"):
        digits = digits[4:]
    return re.sub(r"\D", "", digits)


def check_phone(value: Any, spec: FieldSpec, source_column: str | None) -> list[RowIssue]:
    text = _text(value)
    if not text or len(normalize_phone_digits(text)) == 8:
        return []
    return [
        RowIssue(
            SEVERITY_WARNING,
            INVALID_PHONE,
            spec.name,
            "Phone number should have 8 digits.",
            source_column,
            spec.expected_format,
            text,
        )
    ]


def check_postal(value: Any, spec: FieldSpec, source_column: str | None) -> list[RowIssue]:
    text = _text(value)
    if not text or _POSTAL_CODE.match(text):
        return []
    return [
        RowIssue(
            SEVERITY_ERROR,
            INVALID_POSTAL_CODE,
            spec.name,
            "Postal code must be exactly 4 digits.",
            source_column,
            spec.expected_format,
            text,
        )
    ]


def parse_iso_date(value: Any) -> date | None:
    if isinstance(value, date):
        return value
    text = _text(value)
    if not _ISO_DATE.match(text):
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def check_date(value: Any, spec: FieldSpec, source_column: str | None) -> list[RowIssue]:
    text = _text(value)
    if not text:
        return []
    parsed = parse_iso_date(value)
    if parsed is None:
        return [
            RowIssue(
                SEVERITY_ERROR,
                INVALID_DATE,
                spec.name,
                "Unrecognized date.",
                source_column,
                "YYYY-MM-DD",
                text,
            )
        ]
    if parsed.year < OLD_DATE_YEAR:
        return [
            RowIssue(
                SEVERITY_WARNING,
                INVALID_DATE,
                spec.name,
                f"Date before {OLD_DATE_YEAR}; please verify it.",
                source_column,
                "YYYY-MM-DD",
                text,
            )
        ]
    return []


def check_integer(value: Any, spec: FieldSpec, source_column: str | None) -> list[RowIssue]:
    if value is None or _text(value) == "" or (isinstance(value, int) and not isinstance(value, bool)):
        return []
    if parse_integer(value) is not None:
        return []
    return [
        RowIssue(
            SEVERITY_ERROR,
            INVALID_NUMBER,
            spec.name,
            "Value must be a whole number.",
            source_column,
            spec.expected_format,
            _text(value),
        )
    ]


def check_category(
    value: Any,
    spec: FieldSpec,
    source_column: str | None,
    categories: Sequence[str],
) -> list[RowIssue]:
    text = _text(value)
    if not text or not categories:
        return []
    if text.casefold() in {category.casefold() for category in categories}:
        return []
    found = process.extractOne(text, list(categories), scorer=fuzz.WRatio, score_cutoff=CATEGORY_SUGGESTION_CUTOFF)
    return [
        RowIssue(
            SEVERITY_WARNING,
            UNKNOWN_CATEGORY,
            spec.name,
            "Category is not one of the organization's known categories.",
            source_column,
            ", ".join(categories),
            text,
            found[0] if found else None,
        )
    ]


def check_string(value: Any, spec: FieldSpec, source_column: str | None) -> list[RowIssue]:
    text = _text(value)
    if spec.required and len(text) < (spec.min_length or 1):
        return [
            RowIssue(
                SEVERITY_ERROR,
                REQUIRED_FIELD_MISSING,
                spec.name,
                f"{spec.name} is required and needs at least {spec.min_length or 1} characters.",
                source_column,
                spec.expected_format,
                text or None,
            )
        ]
    if spec.name == "org_nummer" and text and not _ORG_NUMBER.match(re.sub(r"\s", "", text)):
        return [
            RowIssue(
                SEVERITY_WARNING,
                INVALID_FORMAT,
                spec.name,
                "Organization numbers have 9 digits.",
                source_column,
                "9 digits",
                text,
            )
        ]
    return []


_CHECKS = {
    "string": check_string,
    "email": check_email,
    "phone": check_phone,
    "postal": check_postal,
    "date": check_date,
    "integer": check_integer,
}


def validate_values(
    values: Mapping[str, Any],
    mappings: Sequence[ColumnMapping],
    *,
    categories: Sequence[str] = (),
) -> list[RowIssue]:
    """Run the field type checks over one row's mapped-and-edited values."""

    specs = get_customer_field_specs()
    columns = {mapping.target_field: mapping.source_column for mapping in mappings if mapping.target_field}
    issues: list[RowIssue] = []
    for spec in specs.values():
        if spec.name not in columns and not spec.required and spec.name not in values:
            continue
        value = values.get(spec.name)
        source_column = columns.get(spec.name)
        if spec.field_type == "category":
            issues.extend(check_category(value, spec, source_column, categories))
        else:
            issues.extend(_CHECKS[spec.field_type](value, spec, source_column))

    last = parse_iso_date(values.get("siste_kontroll"))
    upcoming = parse_iso_date(values.get("neste_kontroll"))
    if last and upcoming and upcoming <= last:
        issues.append(
            RowIssue(
                SEVERITY_ERROR,
                INVALID_DATE,
                "neste_kontroll",
                "Next inspection must be after the last inspection.",
                columns.get("neste_kontroll"),
                "YYYY-MM-DD",
                _text(values.get("neste_kontroll")),
            )
        )
    return issues


def completeness_score(values: Mapping[str, Any]) -> float:
    total = sum(COMPLETENESS_WEIGHTS.values())
    filled = sum(weight for name, weight in COMPLETENESS_WEIGHTS.items() if _text(values.get(name)))
    return round(filled / total, 3) if total else 0.0


def status_for(issues: Iterable[RowIssue | Mapping[str, Any]]) -> RowValidationStatus:
    severities = {issue["severity"] if isinstance(issue, Mapping) else issue.severity for issue in issues}
    if SEVERITY_ERROR in severities:
        return RowValidationStatus.INVALID
    if SEVERITY_WARNING in severities:
        return RowValidationStatus.WARNING
    return RowValidationStatus.VALID


def group_issues(rows: Iterable[StagingRow]) -> list[dict[str, Any]]:
    """Aggregate row issues by field, code and message."""

    groups: dict[tuple[str, str, str], dict[str, Any]] = {}
    for row in rows:
        for issue in row.issues:
            key = (issue.get("field") or "", issue.get("code") or "", issue.get("message") or "")
            group = groups.get(key)
            if group is None:
                group = groups[key] = {
                    "field": key[0],
                    "code": key[1],
                    "message": key[2],
                    "severity": issue.get("severity"),
                    "count": 0,
                    "row_indexes": [],
                }
            group["count"] += 1
            if len(group["row_indexes"]) < ISSUE_GROUP_ROW_LIMIT:
                group["row_indexes"].append(row.row_index)
    return sorted(groups.values(), key=lambda item: (-item["count"], item["field"], item["code"]))


VALIDATABLE_STATUSES = frozenset(
    {
        ImportBatchStatus.MAPPED,
        ImportBatchStatus.VALIDATED,
        ImportBatchStatus.ROLLED_BACK,
        ImportBatchStatus.FAILED,
    }
)


class Validator:
    """Validates every kept row of a batch and stores the outcome on the rows."""

    def __init__(self, session: Session | None = None) -> None:
        self.session = session or db.session
        self.store = BatchStore(self.session)

    # ---- Public API ----

    def validate(self, batch_id: int, *, reimport: bool = False) -> ValidationSummary:
        """
        Validate a batch under its lock; blocked while the required mapping is unresolved.

        With ``reimport`` a committed batch is revalidated in place so edits to
        its failed rows can be checked before the retry commit.
        """

        with batch_locks.hold(batch_id, "validate"):
            batch = self.store.get_batch(batch_id)
            if reimport and batch.status == ImportBatchStatus.COMMITTED:
                try:
                    return self.run(batch)
                except Exception:
                    self.session.rollback()
                    raise
            if batch.status not in VALIDATABLE_STATUSES:
                raise BatchStateError(
                    f"Batch {batch.id} is {batch.status.value}; apply a mapping before validating.",
                    batch_id=batch.id,
                    status=batch.status.value,
                )
            check_required_fields(load_mappings(batch))
            previous_status = batch.status
            batch.status = ImportBatchStatus.VALIDATING
            self.session.commit()
            try:
                summary = self.run(batch)
            except Exception:
                self.session.rollback()
                batch = self.store.get_batch(batch_id)
                batch.status = previous_status
                self.session.commit()
                raise
        return summary

    def run(self, batch: ImportBatch, *, commit: bool = True) -> ValidationSummary:
        """
        Recompute mapped values and issues for every row of ``batch``.

        Callers hold the batch lock. Removed rows are reset to ``pending`` and
        do not count.
        """

        mappings = load_mappings(batch)
        check_required_fields(mappings)
        rows = self.store.get_rows(batch.id)
        remap_rows(batch, rows, mappings)

        toggles = load_toggles(batch)
        organization = self.session.get(Organization, batch.organization_id)
        categories = get_known_categories(organization)
        detector = DuplicateDetector(self.session, batch.organization_id, batch_id=batch.id)
        source_lines = {row.row_index: row.source_line for row in rows}
        summary = ValidationSummary(batch_id=batch.id)
        kept: list[StagingRow] = []

        for row in rows:
            if is_row_removed(row, batch, toggles):
                row.validation_status = RowValidationStatus.PENDING
                row.errors_json = None
                row.duplicate_of_row_index = None
                row.existing_customer_id = None
                row.completeness_score = None
                summary.removed_count += 1
                continue

            values = apply_edits(row.mapped_json, row.edits_json)
            issues = validate_values(values, mappings, categories=categories)

            key = DuplicateKey.from_mapped(values)
            first_index = detector.register(key, row.row_index)
            row.duplicate_of_row_index = first_index
            if first_index is not None:
                issues.append(
                    RowIssue(
                        SEVERITY_WARNING,
                        DUPLICATE_IN_BATCH,
                        "navn",
                        f"Possible duplicate of row {source_lines.get(first_index, first_index)} in this file.",
                        actual_value=values.get("navn"),
                    )
                )
            existing_id = detector.find_existing(key)
            row.existing_customer_id = existing_id
            if existing_id is not None:
                issues.append(
                    RowIssue(
                        SEVERITY_WARNING,
                        DUPLICATE_EXISTING,
                        "navn",
                        "Matches an existing customer.",
                        actual_value=values.get("navn"),
                        suggestion="update" if batch.update_on_duplicate else "create",
                    )
                )
            if first_index is not None or existing_id is not None:
                summary.duplicate_count += 1

            row.errors_json = [issue.to_dict() for issue in issues]
            row.validation_status = status_for(issues)
            row.completeness_score = completeness_score(values)
            kept.append(row)

            if row.validation_status == RowValidationStatus.INVALID:
                summary.error_count += 1
            elif row.validation_status == RowValidationStatus.WARNING:
                summary.warning_count += 1
            else:
                summary.valid_count += 1

        summary.issue_groups = group_issues(kept)
        summary.quality_report = build_quality_report(kept, summary)
        summary.validated_at = utcnow()

        batch.valid_count = summary.valid_count
        batch.warning_count = summary.warning_count
        batch.error_count = summary.error_count
        batch.counts_json = {
            "valid": summary.valid_count,
            "warning": summary.warning_count,
            "invalid": summary.error_count,
            "removed": summary.removed_count,
            "duplicates": summary.duplicate_count,
            "issue_groups": summary.issue_groups,
        }
        batch.quality_report_json = summary.quality_report
        batch.validated_at = summary.validated_at
        if batch.status in (ImportBatchStatus.VALIDATING, ImportBatchStatus.MAPPED):
            batch.status = ImportBatchStatus.VALIDATED
        if commit:
            self.session.commit()

        record_validation(summary.valid_count, summary.warning_count, summary.error_count)
        if has_app_context():
            current_app.logger.info(
                "Validated batch %s: %s valid, %s warning, %s invalid",
                batch.id,
                summary.valid_count,
                summary.warning_count,
                summary.error_count,
                extra={
                    "importer_batch_id": batch.id,
                    "importer_valid": summary.valid_count,
                    "importer_warning": summary.warning_count,
                    "importer_invalid": summary.error_count,
                },
            )
        return summary

    def summary_for(self, batch: ImportBatch) -> ValidationSummary:
        """Rebuild the last run's summary from what the batch stored."""

        counts = batch.counts_json or {}
        return ValidationSummary(
            batch_id=batch.id,
            valid_count=batch.valid_count,
            warning_count=batch.warning_count,
            error_count=batch.error_count,
            removed_count=int(counts.get("removed", 0)),
            duplicate_count=int(counts.get("duplicates", 0)),
            issue_groups=list(counts.get("issue_groups") or ()),
            quality_report=batch.quality_report_json,
            validated_at=batch.validated_at,
        )
