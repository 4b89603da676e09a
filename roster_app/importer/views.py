"""
Importer blueprint: JSON endpoints for the staged roster import pipeline.
"""

from __future__ import annotations

import time
from functools import wraps
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, g, jsonify, make_response, request
from flask_login import current_user

from config.monitoring import ImporterMonitoring
from roster_app.importer.errors import BatchNotFound, ImportPipelineError
from roster_app.importer.pipeline import (
    BatchFilters,
    BatchStore,
    ImportBatchService,
    PreviewProjector,
    SessionController,
    ValidationSummary,
    Validator,
    build_error_report,
)
from roster_app.models import ImportBatch
from roster_app.utils.importer import is_importer_enabled
from roster_app.utils.permissions import MANAGE_IMPORTS, VIEW_IMPORTS, can_access_organization, has_permission

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .registry import AdapterDescriptor
from .utils import allowed_file

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")


def _serialize_adapter(adapter: AdapterDescriptor) -> dict:
    return {
        "name": adapter.name,
        "title": adapter.title,
        "summary": adapter.summary,
        "extensions": list(adapter.extensions),
        "optional_dependencies": list(adapter.optional_dependencies),
    }


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    adapters = importer_state.get("active_adapters", ())
    classifier = importer_state.get("classifier")
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
                "classifier": type(classifier).__name__ if classifier is not None else None,
                "adapters": [_serialize_adapter(adapter) for adapter in adapters],
            }
        ),
        200,
    )


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """
    Validate importer worker availability via the heartbeat task.
    """
    importer_state = current_app.extensions.get("importer", {})
    worker_enabled = importer_state.get("worker_enabled", False)
    timeout_seconds = float(request.args.get("timeout", 5))
    payload = {
        "importer_enabled": importer_state.get("enabled", False),
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }
    if not payload["importer_enabled"] or not worker_enabled:
        payload["status"] = "disabled"
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("importer.healthcheck") if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504
    payload["status"] = "ok"
    return jsonify(payload), 200


# ---- Guards and helpers ----


def _json_error(message: str, status: HTTPStatus, **details):
    payload = {"error": message}
    payload.update(details)
    return jsonify(payload), status


def _api(permission: str):
    """Enabled flag, authentication and permission checks plus request metrics."""

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            if not is_importer_enabled(current_app):
                return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
            if not current_user.is_authenticated:
                return _json_error("Authentication required.", HTTPStatus.UNAUTHORIZED)
            if not has_permission(current_user, permission):
                return _json_error(f"Missing {permission} permission.", HTTPStatus.FORBIDDEN)
            g.importer_request_started = time.perf_counter()
            response = current_app.make_response(view(*args, **kwargs))
            _record_request(response.status_code)
            return response

        return wrapper

    return decorator


def _record_request(status_code: int) -> None:
    started = g.get("importer_request_started")
    if started is None:
        return
    ImporterMonitoring.record_request(
        endpoint=(request.endpoint or "unknown").rsplit(".", 1)[-1],
        duration_seconds=time.perf_counter() - started,
        status="success" if status_code < 400 else "error",
    )


@importer_blueprint.errorhandler(ImportPipelineError)
def _handle_pipeline_error(exc: ImportPipelineError):
    _record_request(int(exc.http_status))
    return jsonify(exc.to_dict()), exc.http_status


@importer_blueprint.errorhandler(ValueError)
def _handle_bad_input(exc: ValueError):
    _record_request(int(HTTPStatus.BAD_REQUEST))
    return _json_error(str(exc), HTTPStatus.BAD_REQUEST)


def _load_batch(batch_id: int) -> ImportBatch:
    """Batches of other tenants are reported as missing."""

    batch = BatchStore().get_batch(batch_id)
    if not can_access_organization(current_user, batch.organization_id):
        raise BatchNotFound(batch_id)
    return batch


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _parse_int_list(values, *, field: str) -> list[int]:
    try:
        return [int(value) for value in values or ()]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{field}' must be a list of row indexes.") from exc


def _worker_enabled() -> bool:
    state = current_app.extensions.get("importer", {})
    return bool(state.get("worker_enabled") or current_app.config.get("IMPORTER_WORKER_ENABLED"))


def _enqueue(controller: SessionController, state, task_name: str, **kwargs):
    """Queue a batch task; the session records it so a second request is rejected until it reports back."""

    celery_app = get_celery_app(current_app)
    if celery_app is None:
        return _json_error("Importer worker is not configured.", HTTPStatus.SERVICE_UNAVAILABLE)
    controller.reserve_task(state, task_name)
    task = celery_app.tasks.get(task_name)
    try:
        if task is not None:
            async_result = task.apply_async(kwargs=kwargs)
        else:
            async_result = celery_app.send_task(task_name, kwargs=kwargs)
    except Exception:
        controller.release_task(state.batch_id)
        raise
    current_app.logger.info(
        "Importer task queued",
        extra={"importer_task": task_name, "importer_task_id": async_result.id, "importer_batch_id": kwargs.get("batch_id")},
    )
    return (
        jsonify({"batch_id": kwargs.get("batch_id"), "task_id": async_result.id, "status": "queued"}),
        HTTPStatus.ACCEPTED,
    )


# ---- Batches ----


@importer_blueprint.get("/batches")
@_api(VIEW_IMPORTS)
def list_batches():
    started = time.perf_counter()
    raw = request.args
    try:
        filters = BatchFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("per_page") or raw.get("page_size"),
            sort=raw.get("sort"),
            statuses=_split_csv(raw.get("status")),
            search=raw.get("search"),
            include_cancelled=raw.get("include_cancelled"),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    organization_id = None if current_user.is_super_admin else current_user.organization_id
    if current_user.is_super_admin and raw.get("organization_id", "").isdigit():
        organization_id = int(raw["organization_id"])
    listing = ImportBatchService().list_batches(filters, organization_id=organization_id)
    ImporterMonitoring.record_batch_list(
        duration_seconds=time.perf_counter() - started, status="success", result_count=len(listing.items)
    )
    return jsonify(listing.to_dict())


@importer_blueprint.post("/batches")
@_api(MANAGE_IMPORTS)
def upload_batch():
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return _json_error("A spreadsheet file is required.", HTTPStatus.BAD_REQUEST)
    if not allowed_file(upload.filename):
        return _json_error("Unsupported file type; upload a CSV or XLSX file.", HTTPStatus.BAD_REQUEST)

    organization_id = current_user.organization_id
    if current_user.is_super_admin and request.form.get("organization_id", "").isdigit():
        organization_id = int(request.form["organization_id"])
    if organization_id is None:
        return _json_error("An organization is required for the upload.", HTTPStatus.BAD_REQUEST)

    payload = upload.read()
    max_bytes = int(current_app.config.get("IMPORTER_MAX_UPLOAD_MB", 25)) * 1024 * 1024
    if len(payload) > max_bytes:
        return _json_error("The file is larger than the upload limit.", HTTPStatus.REQUEST_ENTITY_TOO_LARGE)

    update_on_duplicate = request.form.get("update_on_duplicate")
    state, result = SessionController().upload(
        organization_id,
        upload.filename,
        payload,
        created_by=current_user.id,
        update_on_duplicate=None if update_on_duplicate is None else update_on_duplicate.lower() in ("1", "true", "yes", "on"),
    )
    result["session"] = state.to_dict()
    return jsonify(result), HTTPStatus.CREATED


@importer_blueprint.get("/batches/<int:batch_id>")
@_api(VIEW_IMPORTS)
def batch_detail(batch_id: int):
    batch = _load_batch(batch_id)
    return jsonify(ImportBatchService().detail(batch))


@importer_blueprint.delete("/batches/<int:batch_id>")
@_api(MANAGE_IMPORTS)
def cancel_batch(batch_id: int):
    _load_batch(batch_id)
    batch = ImportBatchService().cancel_batch(batch_id, actor_user_id=current_user.id)
    return jsonify({"batch_id": batch.id, "status": batch.status.value})


# ---- Session ----


@importer_blueprint.get("/batches/<int:batch_id>/session")
@_api(VIEW_IMPORTS)
def get_session(batch_id: int):
    _load_batch(batch_id)
    return jsonify(SessionController().load(batch_id).to_dict())


@importer_blueprint.post("/batches/<int:batch_id>/session/step")
@_api(MANAGE_IMPORTS)
def goto_step(batch_id: int):
    _load_batch(batch_id)
    step = _json_body().get("step")
    if not isinstance(step, int) or not 1 <= step <= 5:
        return _json_error("'step' must be an integer between 1 and 5.", HTTPStatus.BAD_REQUEST)
    controller = SessionController()
    state = controller.goto(controller.load(batch_id), step)
    return jsonify(state.to_dict())


@importer_blueprint.post("/batches/<int:batch_id>/session/retry")
@_api(MANAGE_IMPORTS)
def retry_session(batch_id: int):
    _load_batch(batch_id)
    controller = SessionController()
    return jsonify(controller.retry(controller.load(batch_id)).to_dict())


# ---- Cleaning ----


@importer_blueprint.post("/batches/<int:batch_id>/cleaning/rules")
@_api(MANAGE_IMPORTS)
def toggle_cleaning_rule(batch_id: int):
    _load_batch(batch_id)
    body = _json_body()
    rule_id = body.get("rule_id")
    enabled = body.get("enabled")
    if not rule_id or not isinstance(enabled, bool):
        return _json_error("'rule_id' and boolean 'enabled' are required.", HTTPStatus.BAD_REQUEST)
    controller = SessionController()
    controller.toggle_rule(controller.load(batch_id), rule_id, enabled)
    return jsonify(_load_batch(batch_id).cleaning_report_json)


@importer_blueprint.post("/batches/<int:batch_id>/cleaning/decision")
@_api(MANAGE_IMPORTS)
def cleaning_decision(batch_id: int):
    _load_batch(batch_id)
    decision = _json_body().get("decision")
    controller = SessionController()
    state = controller.load(batch_id)
    if decision == "approve":
        state = controller.approve_cleaning(state, actor_user_id=current_user.id)
    elif decision == "skip":
        state = controller.skip_cleaning(state, actor_user_id=current_user.id)
    else:
        return _json_error("'decision' must be 'approve' or 'skip'.", HTTPStatus.BAD_REQUEST)
    return jsonify(state.to_dict())


# ---- Mapping and validation ----


@importer_blueprint.post("/batches/<int:batch_id>/mapping")
@_api(MANAGE_IMPORTS)
def apply_mapping(batch_id: int):
    _load_batch(batch_id)
    body = _json_body()
    mappings = body.get("mappings")
    if not isinstance(mappings, list):
        return _json_error("'mappings' must be a list.", HTTPStatus.BAD_REQUEST)
    update_on_duplicate = body.get("update_on_duplicate")
    controller = SessionController()
    state = controller.apply_mapping(
        controller.load(batch_id),
        mappings,
        update_on_duplicate=update_on_duplicate if isinstance(update_on_duplicate, bool) else None,
        actor_user_id=current_user.id,
    )
    return jsonify({"ok": True, "session": state.to_dict()})


@importer_blueprint.post("/batches/<int:batch_id>/validate")
@_api(MANAGE_IMPORTS)
def validate_batch(batch_id: int):
    _load_batch(batch_id)
    controller = SessionController()
    summary: ValidationSummary = controller.validate(controller.load(batch_id))
    return jsonify(summary.to_dict())


@importer_blueprint.get("/batches/<int:batch_id>/validation")
@_api(VIEW_IMPORTS)
def validation_summary(batch_id: int):
    batch = _load_batch(batch_id)
    return jsonify(Validator().summary_for(batch).to_dict())


# ---- Rows and preview ----


@importer_blueprint.patch("/batches/<int:batch_id>/rows/<int:row_index>")
@_api(MANAGE_IMPORTS)
def edit_batch_row(batch_id: int, row_index: int):
    _load_batch(batch_id)
    body = _json_body()
    if not body:
        return _json_error("Provide at least one field to edit.", HTTPStatus.BAD_REQUEST)
    controller = SessionController()
    state = controller.edit_cell(controller.load(batch_id), row_index, body, actor_user_id=current_user.id)
    edits = state.edits.get(str(row_index), {})
    return jsonify({"batch_id": batch_id, "row_index": row_index, "edits": edits, "stale": True})


@importer_blueprint.get("/batches/<int:batch_id>/preview")
@_api(VIEW_IMPORTS)
def preview_batch(batch_id: int):
    _load_batch(batch_id)
    raw = request.args
    try:
        limit = int(raw["limit"]) if raw.get("limit") else None
        offset = int(raw.get("offset") or 0)
    except ValueError:
        return _json_error("'limit' and 'offset' must be integers.", HTTPStatus.BAD_REQUEST)
    row_indexes = SessionController().load(batch_id).row_scope
    try:
        preview = PreviewProjector().preview(
            batch_id,
            show_errors=raw.get("show_errors", "").lower() in ("1", "true", "yes", "on"),
            limit=limit,
            offset=offset,
            mode=raw.get("mode") or "after",
            row_indexes=row_indexes,
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    payload = preview.to_dict()
    payload["row_scope"] = row_indexes
    return jsonify(payload)


# ---- Commit, reimport and rollback ----


@importer_blueprint.post("/batches/<int:batch_id>/commit")
@_api(MANAGE_IMPORTS)
def commit_batch(batch_id: int):
    _load_batch(batch_id)
    body = _json_body()
    try:
        excluded = _parse_int_list(body.get("excluded_row_ids"), field="excluded_row_ids")
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)
    row_edits = body.get("row_edits") or {}
    if not isinstance(row_edits, dict):
        return _json_error("'row_edits' must map row indexes to field values.", HTTPStatus.BAD_REQUEST)
    dry_run = bool(body.get("dry_run", False))
    excluded_row_ids = excluded if "excluded_row_ids" in body else None

    controller = SessionController()
    state = controller.load(batch_id)
    controller.check_commit_step(state)
    if _worker_enabled() and not dry_run:
        return _enqueue(
            controller,
            state,
            "importer.batch.commit",
            batch_id=batch_id,
            excluded_row_ids=excluded_row_ids,
            row_edits=row_edits,
            actor_user_id=current_user.id,
        )

    controller.ensure_idle(state)
    _, result = controller.commit(
        state,
        excluded_row_ids=excluded_row_ids,
        row_edits=row_edits,
        dry_run=dry_run,
        actor_user_id=current_user.id,
    )
    return jsonify(result.to_dict())


@importer_blueprint.post("/batches/<int:batch_id>/reimport")
@_api(MANAGE_IMPORTS)
def start_reimport(batch_id: int):
    _load_batch(batch_id)
    controller = SessionController()
    state = controller.start_reimport(controller.load(batch_id))
    return jsonify({"batch_id": batch_id, "row_scope": state.row_scope, "session": state.to_dict()})


@importer_blueprint.post("/batches/<int:batch_id>/rollback")
@_api(MANAGE_IMPORTS)
def rollback_batch(batch_id: int):
    _load_batch(batch_id)
    reason = _json_body().get("reason")
    controller = SessionController()
    state = controller.load(batch_id)
    if _worker_enabled():
        return _enqueue(
            controller, state, "importer.batch.rollback", batch_id=batch_id, reason=reason, actor_user_id=current_user.id
        )
    controller.ensure_idle(state)
    _, result = controller.rollback(state, reason=reason, actor_user_id=current_user.id)
    return jsonify(result.to_dict())


@importer_blueprint.get("/batches/<int:batch_id>/error-report")
@_api(VIEW_IMPORTS)
def download_error_report(batch_id: int):
    started = time.perf_counter()
    batch = _load_batch(batch_id)
    rows = [row for row in BatchStore().get_rows(batch_id) if row.errors_json or row.last_error]
    filename, body = build_error_report(batch, rows)
    ImporterMonitoring.record_error_report(
        duration_seconds=time.perf_counter() - started, status="success", row_count=len(rows)
    )
    response = make_response(body)
    response.headers["Content-Type"] = "text/csv; charset=utf-8"
    response.headers["Content-Disposition"] = f'attachment; filename="{filename}"'
    return response
