"""
Importer Celery tasks.

Commit and rollback can run on the importer worker when
``IMPORTER_WORKER_ENABLED`` is set; the API then answers ``202`` with the task
id. Both tasks run the same services the inline path uses.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from roster_app.importer.errors import ImportPipelineError
from roster_app.importer.pipeline import SessionController
from roster_app.models.base import db


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


@shared_task(name="importer.batch.commit", bind=True)
def commit_batch(
    self,
    *,
    batch_id: int,
    excluded_row_ids: list[int] | None = None,
    row_edits: dict[str, dict[str, Any]] | None = None,
    dry_run: bool = False,
    actor_user_id: int | None = None,
) -> dict[str, Any]:
    """Commit a batch from its session's preview step on the worker and return the ``CommitResult`` payload."""

    controller = SessionController()
    try:
        _, result = controller.commit(
            controller.load(batch_id),
            excluded_row_ids=excluded_row_ids,
            row_edits=row_edits,
            dry_run=dry_run,
            actor_user_id=actor_user_id,
        )
    except ImportPipelineError as exc:
        db.session.rollback()
        current_app.logger.warning(
            "Importer commit task rejected",
            extra={"importer_batch_id": batch_id, "importer_error_code": exc.code, "importer_error": exc.message},
        )
        raise
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Importer commit task failed",
            extra={"importer_batch_id": batch_id, "importer_error": str(exc)},
        )
        raise
    finally:
        controller.release_task(batch_id)

    current_app.logger.info(
        "Importer commit task completed",
        extra={
            "importer_batch_id": batch_id,
            "importer_task_id": self.request.id,
            "importer_commit_id": result.commit_id,
            "importer_dry_run": dry_run,
        },
    )
    return result.to_dict()


@shared_task(name="importer.batch.rollback", bind=True)
def rollback_batch(
    self,
    *,
    batch_id: int,
    reason: str | None = None,
    actor_user_id: int | None = None,
) -> dict[str, Any]:
    """Roll back a committed batch on the worker."""

    controller = SessionController()
    try:
        _, result = controller.rollback(controller.load(batch_id), reason=reason, actor_user_id=actor_user_id)
    except Exception as exc:
        db.session.rollback()
        current_app.logger.exception(
            "Importer rollback task failed",
            extra={"importer_batch_id": batch_id, "importer_error": str(exc)},
        )
        raise
    finally:
        controller.release_task(batch_id)

    current_app.logger.info(
        "Importer rollback task completed",
        extra={
            "importer_batch_id": batch_id,
            "importer_task_id": self.request.id,
            "importer_records_deleted": result.records_deleted,
        },
    )
    return result.to_dict()
