"""
Importer model package exposing staging, commit and audit tables.
"""

from .schema import (
    CleaningDecision,
    ImportAuditLog,
    ImportBatch,
    ImportBatchStatus,
    ImportCommit,
    ImportCommitStatus,
    ImportMappingTemplate,
    RowAction,
    RowValidationStatus,
    StagingRow,
)

__all__ = [
    "CleaningDecision",
    "ImportAuditLog",
    "ImportBatch",
    "ImportBatchStatus",
    "ImportCommit",
    "ImportCommitStatus",
    "ImportMappingTemplate",
    "RowAction",
    "RowValidationStatus",
    "StagingRow",
]
