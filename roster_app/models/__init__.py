# roster_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .customer import Customer
from .importer import (
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
from .organization import Organization
from .user import User

__all__ = [
    "db",
    "BaseModel",
    "User",
    "Organization",
    "Customer",
    # Importer models
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
