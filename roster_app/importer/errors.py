"""
Error taxonomy for the roster import pipeline.

Operation-level failures are exceptions carrying a stable ``code`` and the HTTP
status the API answers with. Row-scoped problems are not raised; they are
recorded on the row as issue codes or commit error entries.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import Any, Sequence

# Row-scoped outcome codes recorded in data, never raised.
ROW_VALIDATION_ERROR = "ROW_VALIDATION_ERROR"
DUPLICATE_ROW_DETECTED = "DUPLICATE_ROW_DETECTED"
PARTIAL_COMMIT_FAILURE = "PARTIAL_COMMIT_FAILURE"


class ImportPipelineError(Exception):
    """Base class for operation-level import failures."""

    code = "IMPORT_ERROR"
    http_status = HTTPStatus.BAD_REQUEST
    retryable = False

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        payload.update(self.details)
        if self.retryable:
            payload["retryable"] = True
        return payload


class BatchNotFound(ImportPipelineError):
    code = "BATCH_NOT_FOUND"
    http_status = HTTPStatus.NOT_FOUND

    def __init__(self, batch_id: int) -> None:
        super().__init__(f"Import batch {batch_id} not found.", batch_id=batch_id)


class BatchStateError(ImportPipelineError):
    """The batch is in a status that does not allow the requested operation."""

    code = "INVALID_BATCH_STATE"
    http_status = HTTPStatus.CONFLICT


class BatchBusy(BatchStateError):
    """Another commit, rollback or validation holds the batch."""

    code = "BATCH_BUSY"
    retryable = True


class RollbackConflict(BatchStateError):
    code = "ROLLBACK_CONFLICT"


class RequiredFieldUnmapped(ImportPipelineError):
    code = "REQUIRED_FIELD_UNMAPPED"
    http_status = HTTPStatus.UNPROCESSABLE_ENTITY

    def __init__(self, field: str, reason: str = "missing") -> None:
        if reason == "unconfirmed":
            message = f"Required field '{field}' must be confirmed before the mapping can be applied."
        else:
            message = f"Required field '{field}' is not mapped to any column."
        super().__init__(message, field=field, reason=reason)
        self.field = field
        self.reason = reason


class AmbiguousRequiredField(ImportPipelineError):
    code = "AMBIGUOUS_REQUIRED_FIELD"
    http_status = HTTPStatus.UNPROCESSABLE_ENTITY

    def __init__(self, column: str, fields: Sequence[str]) -> None:
        super().__init__(
            f"Column '{column}' is mapped to more than one required field: {', '.join(fields)}.",
            column=column,
            fields=list(fields),
        )
        self.column = column
        self.fields = tuple(fields)


class MappingConfigError(ImportPipelineError):
    """Structurally invalid mapping: unknown column or field, or duplicate target."""

    code = "INVALID_MAPPING"
    http_status = HTTPStatus.UNPROCESSABLE_ENTITY


class UnknownCleaningRule(ImportPipelineError):
    code = "UNKNOWN_CLEANING_RULE"
    http_status = HTTPStatus.UNPROCESSABLE_ENTITY

    def __init__(self, rule_id: str) -> None:
        super().__init__(f"Unknown cleaning rule '{rule_id}'.", rule_id=rule_id)
        self.rule_id = rule_id


class SessionTransitionError(ImportPipelineError):
    code = "INVALID_STEP_TRANSITION"
    http_status = HTTPStatus.CONFLICT


class SpreadsheetReadError(ImportPipelineError):
    code = "UNREADABLE_FILE"
    http_status = HTTPStatus.BAD_REQUEST


class NetworkFailure(ImportPipelineError):
    """A remote dependency could not be reached; the operation may be retried."""

    code = "NETWORK_FAILURE"
    http_status = HTTPStatus.SERVICE_UNAVAILABLE
    retryable = True


class RowNotFound(ImportPipelineError):
    code = "ROW_NOT_FOUND"
    http_status = HTTPStatus.NOT_FOUND

    def __init__(self, batch_id: int, row_index: int) -> None:
        super().__init__(
            f"Row {row_index} not found in batch {batch_id}.",
            batch_id=batch_id,
            row_index=row_index,
        )
