"""Roster import pipeline services."""

from __future__ import annotations

from .batch_service import BatchFilters, BatchListResult, ImportBatchService
from .batch_store import BatchStore, compute_column_fingerprint
from .classifier import ClassifierSuggestion, DisabledClassifier, HttpColumnClassifier, build_classifier
from .cleaning import CleaningEngine, CleaningReport, CleaningRuleId, RuleToggles
from .commit import CommitExecutor, CommitResult, CustomerStore, SqlCustomerStore
from .locks import BatchLockRegistry, batch_locks
from .overlay import apply_edits, normalize_edits
from .preview import Preview, PreviewProjector, is_stale
from .report import build_error_report, build_quality_report
from .resolver import ColumnMapping, MappingResolver, Resolution, check_required_fields
from .rollback import RollbackManager, RollbackResult
from .session import ImportSession, ImportStep, SessionController, SessionPhase, edit_row
from .validator import RowIssue, ValidationSummary, Validator

__all__ = [
    "BatchFilters",
    "BatchListResult",
    "BatchLockRegistry",
    "BatchStore",
    "ClassifierSuggestion",
    "CleaningEngine",
    "CleaningReport",
    "CleaningRuleId",
    "ColumnMapping",
    "CommitExecutor",
    "CommitResult",
    "CustomerStore",
    "DisabledClassifier",
    "HttpColumnClassifier",
    "ImportBatchService",
    "ImportSession",
    "ImportStep",
    "MappingResolver",
    "Preview",
    "PreviewProjector",
    "Resolution",
    "RollbackManager",
    "RollbackResult",
    "RowIssue",
    "RuleToggles",
    "SessionController",
    "SessionPhase",
    "SqlCustomerStore",
    "ValidationSummary",
    "Validator",
    "apply_edits",
    "batch_locks",
    "build_classifier",
    "build_error_report",
    "build_quality_report",
    "check_required_fields",
    "compute_column_fingerprint",
    "edit_row",
    "is_stale",
    "normalize_edits",
]
