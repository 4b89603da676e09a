"""Prometheus metrics helpers for roster imports."""

from __future__ import annotations

from typing import Literal

try:
    from prometheus_client import Counter, Histogram

    _PROMETHEUS_AVAILABLE = True
except ImportError:  # pragma: no cover - metrics optional in some deployments
    Counter = Histogram = None  # type: ignore
    _PROMETHEUS_AVAILABLE = False


if _PROMETHEUS_AVAILABLE:
    _batches_uploaded = Counter(
        "roster_import_batches_uploaded_total",
        "Roster batches uploaded by adapter.",
        ["adapter"],
    )
    _rows_validated = Counter(
        "roster_import_rows_validated_total",
        "Staging rows validated by outcome.",
        ["status"],
    )
    _commit_rows = Counter(
        "roster_import_commit_rows_total",
        "Rows processed by commit, by outcome.",
        ["outcome"],
    )
    _commit_duration = Histogram(
        "roster_import_commit_duration_seconds",
        "Duration of batch commits in seconds.",
        buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300),
    )
    _rollbacks = Counter(
        "roster_import_rollbacks_total",
        "Batch rollbacks by outcome.",
        ["outcome"],
    )
    _classifier_calls = Counter(
        "roster_import_classifier_calls_total",
        "Column classifier calls by outcome.",
        ["outcome"],
    )
else:  # pragma: no cover - fallbacks when prometheus_client missing
    _batches_uploaded = None
    _rows_validated = None
    _commit_rows = None
    _commit_duration = None
    _rollbacks = None
    _classifier_calls = None


def record_batch_uploaded(adapter: str) -> None:
    if _batches_uploaded is None:
        return
    _batches_uploaded.labels(adapter=adapter).inc()


def record_validation(valid: int, warning: int, invalid: int) -> None:
    """Add one validation run's row outcomes to the counters."""

    if _rows_validated is None:
        return
    for status, count in (("valid", valid), ("warning", warning), ("invalid", invalid)):
        if count:
            _rows_validated.labels(status=status).inc(count)


def record_commit(
    *,
    created: int,
    updated: int,
    skipped: int,
    failed: int,
    duration_seconds: float,
) -> None:
    """Capture metrics for one executed commit."""

    if _commit_rows is not None:
        for outcome, count in (
            ("created", created),
            ("updated", updated),
            ("skipped", skipped),
            ("failed", failed),
        ):
            if count:
                _commit_rows.labels(outcome=outcome).inc(count)
    if _commit_duration is not None:
        _commit_duration.observe(duration_seconds)


def record_rollback(outcome: Literal["success", "failure"]) -> None:
    if _rollbacks is None:
        return
    _rollbacks.labels(outcome=outcome).inc()


def record_classifier_call(outcome: Literal["success", "failure", "skipped"]) -> None:
    if _classifier_calls is None:
        return
    _classifier_calls.labels(outcome=outcome).inc()
