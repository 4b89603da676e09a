"""
SQLAlchemy models for staged roster imports.

A batch owns its staging rows from upload until explicit cleanup. Commits and
the audit log record which customer rows a batch created so rollback can
reverse exactly those.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db, utcnow


class ImportBatchStatus(str, enum.Enum):
    """Lifecycle states for an import batch."""

    UPLOADED = "uploaded"
    CLEANED = "cleaned"
    MAPPED = "mapped"
    VALIDATING = "validating"
    VALIDATED = "validated"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CleaningDecision(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    SKIPPED = "skipped"


class RowValidationStatus(str, enum.Enum):
    """Validation outcome for a staging row."""

    PENDING = "pending"
    VALID = "valid"
    WARNING = "warning"
    INVALID = "invalid"


class RowAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    FAILED = "failed"


class ImportCommitStatus(str, enum.Enum):
    RUNNING = "running"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class ImportBatch(BaseModel):
    """One import attempt, from upload through optional rollback."""

    __tablename__ = "import_batches"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    status: Mapped[ImportBatchStatus] = mapped_column(
        Enum(ImportBatchStatus, name="import_batch_status_enum"),
        nullable=False,
        default=ImportBatchStatus.UPLOADED,
        index=True,
    )
    file_name: Mapped[str | None] = mapped_column(db.String(255))
    file_size_bytes: Mapped[int | None] = mapped_column(db.Integer)
    file_hash: Mapped[str | None] = mapped_column(db.String(64))
    headers_json: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    column_fingerprint: Mapped[str] = mapped_column(db.String(64), nullable=False, index=True)
    row_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    cleaning_report_json: Mapped[dict | None] = mapped_column(db.JSON)
    rule_toggles_json: Mapped[dict | None] = mapped_column(db.JSON)
    cleaning_decision: Mapped[CleaningDecision] = mapped_column(
        Enum(CleaningDecision, name="import_cleaning_decision_enum"),
        nullable=False,
        default=CleaningDecision.PENDING,
    )
    mapping_config_json: Mapped[list | None] = mapped_column(db.JSON)
    format_change_json: Mapped[dict | None] = mapped_column(db.JSON)
    update_on_duplicate: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)

    valid_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    warning_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    counts_json: Mapped[dict | None] = mapped_column(db.JSON)
    quality_report_json: Mapped[dict | None] = mapped_column(db.JSON)
    session_json: Mapped[dict | None] = mapped_column(db.JSON)

    cleaning_updated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    mapping_applied_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    edits_updated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    validated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    committed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    committed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    error_message: Mapped[str | None] = mapped_column(db.Text)

    organization = relationship("Organization")
    created_by_user = relationship("User", foreign_keys=[created_by_user_id])
    rows = relationship(
        "StagingRow",
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="StagingRow.row_index",
    )
    commits = relationship(
        "ImportCommit",
        back_populates="batch",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ImportCommit.id",
    )

    __table_args__ = (Index("idx_import_batches_org_status", "organization_id", "status"),)

    @property
    def headers(self) -> list[str]:
        return list(self.headers_json or [])


class StagingRow(BaseModel):
    """One source record in its raw, cleaned, mapped and edited forms."""

    __tablename__ = "import_staging_rows"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("import_batches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    row_index: Mapped[int] = mapped_column(db.Integer, nullable=False)
    source_line: Mapped[int] = mapped_column(db.Integer, nullable=False)
    raw_json: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    cleaned_json: Mapped[dict | None] = mapped_column(db.JSON)
    mapped_json: Mapped[dict | None] = mapped_column(db.JSON)
    edits_json: Mapped[dict | None] = mapped_column(db.JSON)
    removal_rule: Mapped[str | None] = mapped_column(db.String(64))
    removal_reason: Mapped[str | None] = mapped_column(db.String(255))
    selected: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    excluded: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    validation_status: Mapped[RowValidationStatus] = mapped_column(
        Enum(RowValidationStatus, name="import_row_validation_status_enum"),
        nullable=False,
        default=RowValidationStatus.PENDING,
        index=True,
    )
    errors_json: Mapped[list | None] = mapped_column(db.JSON)
    duplicate_of_row_index: Mapped[int | None] = mapped_column(db.Integer)
    existing_customer_id: Mapped[int | None] = mapped_column(db.Integer)
    completeness_score: Mapped[float | None] = mapped_column(db.Float)
    action_taken: Mapped[RowAction | None] = mapped_column(
        Enum(RowAction, name="import_row_action_enum"), nullable=True
    )
    target_customer_id: Mapped[int | None] = mapped_column(db.Integer)
    commit_id: Mapped[int | None] = mapped_column(ForeignKey("import_commits.id", ondelete="SET NULL"))
    last_error: Mapped[str | None] = mapped_column(db.Text)

    batch = relationship("ImportBatch", back_populates="rows")

    __table_args__ = (
        UniqueConstraint("batch_id", "row_index", name="uq_import_staging_rows_batch_row"),
        Index("idx_import_staging_rows_batch_status", "batch_id", "validation_status"),
    )

    @property
    def issues(self) -> list[dict]:
        return list(self.errors_json or [])


class ImportCommit(BaseModel):
    """Persisted commit result and the audit anchor for rollback."""

    __tablename__ = "import_commits"

    id: Mapped[int] = mapped_column(primary_key=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey("import_batches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[ImportCommitStatus] = mapped_column(
        Enum(ImportCommitStatus, name="import_commit_status_enum"),
        nullable=False,
        default=ImportCommitStatus.RUNNING,
        index=True,
    )
    retry_of_id: Mapped[int | None] = mapped_column(ForeignKey("import_commits.id"), nullable=True)
    triggered_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    created_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    updated_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    created_ids_json: Mapped[list | None] = mapped_column(db.JSON)
    updated_ids_json: Mapped[list | None] = mapped_column(db.JSON)
    errors_json: Mapped[list | None] = mapped_column(db.JSON)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    duration_ms: Mapped[int | None] = mapped_column(db.Integer)
    rolled_back_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    rollback_reason: Mapped[str | None] = mapped_column(db.Text)
    records_deleted: Mapped[int | None] = mapped_column(db.Integer)

    batch = relationship("ImportBatch", back_populates="commits")
    retry_of = relationship("ImportCommit", remote_side=[id])


class ImportMappingTemplate(BaseModel):
    """Saved column mapping reused for uploads with the same header set."""

    __tablename__ = "import_mapping_templates"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )
    column_fingerprint: Mapped[str] = mapped_column(db.String(64), nullable=False)
    headers_json: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    mapping_config_json: Mapped[list] = mapped_column(db.JSON, nullable=False, default=list)
    human_confirmed: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    use_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    last_used_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("organization_id", "column_fingerprint", name="uq_import_mapping_templates_org_fp"),
    )


class ImportAuditLog(db.Model):
    """Append-only audit trail of batch operations."""

    __tablename__ = "import_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    organization_id: Mapped[int] = mapped_column(ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False)
    batch_id: Mapped[int | None] = mapped_column(
        ForeignKey("import_batches.id", ondelete="SET NULL"), nullable=True, index=True
    )
    action: Mapped[str] = mapped_column(db.String(32), nullable=False, index=True)
    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id"), nullable=True)
    affected_customer_ids_json: Mapped[list | None] = mapped_column(db.JSON)
    details_json: Mapped[dict | None] = mapped_column(db.JSON)
    created_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
