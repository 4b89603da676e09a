import json
from types import SimpleNamespace
from typing import Any, Dict

import pytest
from flask import Flask

from roster_app.importer import get_celery_app, init_importer
from roster_app.importer.celery_app import DEFAULT_QUEUE_NAME
from roster_app.importer.errors import SessionTransitionError
from roster_app.importer.pipeline import BatchStore
from roster_app.models import Customer, db
from roster_app.models.importer.schema import ImportBatchStatus
from tests.importer.conftest import controller, preview_batch, upload_roster  # noqa: F401


def build_importer_app(instance_path, **overrides) -> Flask:
    """
    Construct a minimal Flask app with the importer enabled for worker tests.
    """
    app = Flask(__name__, instance_path=str(instance_path))
    app.config.update(
        SECRET_KEY="test-secret",
        TESTING=True,
        IMPORTER_ENABLED=True,
        IMPORTER_ADAPTERS=("csv",),
    )
    app.config.update(overrides)
    init_importer(app)
    return app


@pytest.fixture
def eager_worker(app, monkeypatch):
    """Route commits and rollbacks through the worker, running tasks in-process."""
    celery_app = get_celery_app(app)
    monkeypatch.setitem(celery_app.conf, "task_always_eager", True)
    monkeypatch.setitem(celery_app.conf, "task_eager_propagates", True)
    monkeypatch.setitem(app.extensions["importer"], "worker_enabled", True)
    return celery_app


def test_celery_defaults_to_sqlite_transport(tmp_path):
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir()
    sqlite_path = instance_dir / "custom.sqlite"

    app = build_importer_app(
        instance_dir,
        CELERY_SQLITE_PATH=str(sqlite_path),
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
    )

    celery_app = get_celery_app(app)
    assert celery_app is not None
    assert celery_app.conf.broker_url.startswith("sqla+sqlite:///")
    assert sqlite_path.name in celery_app.conf.broker_url
    assert celery_app.conf.result_backend.startswith("db+sqlite:///")
    assert celery_app.conf.task_default_queue == DEFAULT_QUEUE_NAME
    assert celery_app.conf.worker_prefetch_multiplier == 1
    assert celery_app.conf.task_always_eager is True


def test_celery_config_accepts_json_strings(tmp_path):
    app = build_importer_app(tmp_path, CELERY_CONFIG='{"task_time_limit": 60}')

    assert get_celery_app(app).conf.task_time_limit == 60


def test_pipeline_tasks_are_registered(app):
    celery_app = get_celery_app(app)

    assert {"importer.healthcheck", "importer.batch.commit", "importer.batch.rollback"} <= set(celery_app.tasks)


def test_worker_ping_cli(runner, eager_worker):
    result = runner.invoke(args=["importer", "worker", "ping"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["status"] == "ok"
    assert "timestamp" in payload
    assert "worker_hostname" in payload


def test_worker_run_invokes_celery(runner, monkeypatch, eager_worker):
    calls: Dict[str, Any] = {}

    def fake_worker_main(argv=None):
        calls["argv"] = argv

    monkeypatch.setattr(eager_worker, "worker_main", fake_worker_main)

    result = runner.invoke(
        args=[
            "importer",
            "worker",
            "run",
            "--loglevel",
            "debug",
            "--concurrency",
            "2",
            "--pool",
            "solo",
            "--queues",
            "imports",
        ]
    )

    assert result.exit_code == 0, result.output
    assert calls["argv"] == [
        "worker",
        "--loglevel",
        "debug",
        "-Q",
        "imports",
        "--concurrency",
        "2",
        "--pool",
        "solo",
    ]


def test_worker_health_endpoint_states(tmp_path):
    app = build_importer_app(tmp_path / "disabled")
    client = app.test_client()

    disabled_resp = client.get("/importer/worker_health")
    assert disabled_resp.status_code == 200
    disabled_payload = disabled_resp.get_json()
    assert disabled_payload["status"] == "disabled"
    assert disabled_payload["worker_enabled"] is False

    eager_app = build_importer_app(
        tmp_path / "eager",
        IMPORTER_WORKER_ENABLED=True,
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
    )
    eager_client = eager_app.test_client()
    ok_resp = eager_client.get("/importer/worker_health")
    assert ok_resp.status_code == 200
    ok_payload = ok_resp.get_json()
    assert ok_payload["status"] == "ok"
    assert ok_payload["heartbeat"]["status"] == "ok"


def test_commit_is_queued_when_the_worker_is_enabled(
    login_client, operator_user, preview_batch, eager_worker, test_organization
):
    state = preview_batch()
    client = login_client(operator_user)

    response = client.post(f"/importer/batches/{state.batch_id}/commit", json={"excluded_row_ids": [1]})

    assert response.status_code == 202
    payload = response.get_json()
    assert payload["status"] == "queued"
    assert payload["batch_id"] == state.batch_id
    assert payload["task_id"]

    db.session.expire_all()
    batch = BatchStore().get_batch(state.batch_id)
    assert batch.status == ImportBatchStatus.COMMITTED
    assert batch.session_json["step_name"] == "result"
    assert Customer.query.filter_by(organization_id=test_organization.id).count() == 2


def test_dry_run_stays_inline_with_the_worker_enabled(login_client, operator_user, preview_batch, eager_worker):
    state = preview_batch()
    client = login_client(operator_user)

    response = client.post(f"/importer/batches/{state.batch_id}/commit", json={"dry_run": True})

    assert response.status_code == 200
    assert response.get_json()["created"] == 3


def test_rollback_is_queued_when_the_worker_is_enabled(
    login_client, operator_user, controller, preview_batch, eager_worker, test_organization
):
    state = preview_batch()
    controller.commit(state)
    client = login_client(operator_user)

    response = client.post(f"/importer/batches/{state.batch_id}/rollback", json={"reason": "Feil fil"})

    assert response.status_code == 202
    db.session.expire_all()
    assert BatchStore().get_batch(state.batch_id).status == ImportBatchStatus.ROLLED_BACK
    assert Customer.query.filter_by(organization_id=test_organization.id).count() == 0


def test_commit_task_needs_the_preview_step(upload_roster, eager_worker):
    state, _ = upload_roster()

    with pytest.raises(SessionTransitionError):
        eager_worker.tasks["importer.batch.commit"].apply_async(kwargs={"batch_id": state.batch_id})


def test_second_request_is_rejected_while_a_task_is_queued(
    app, login_client, operator_user, preview_batch, eager_worker, monkeypatch
):
    state = preview_batch()
    client = login_client(operator_user)
    queued: list[Dict[str, Any]] = []

    def hold_in_queue(kwargs=None, **options):
        queued.append(kwargs)
        return SimpleNamespace(id=f"pending-{len(queued)}")

    monkeypatch.setattr(eager_worker.tasks["importer.batch.commit"], "apply_async", hold_in_queue)

    first = client.post(f"/importer/batches/{state.batch_id}/commit", json={})
    assert first.status_code == 202

    second = client.post(f"/importer/batches/{state.batch_id}/commit", json={})
    assert second.status_code == 409
    assert second.get_json()["code"] == "BATCH_BUSY"
    assert client.post(f"/importer/batches/{state.batch_id}/rollback", json={"reason": "Feil fil"}).status_code == 409
    assert len(queued) == 1

    monkeypatch.setitem(app.config, "IMPORTER_TASK_TIMEOUT_SECONDS", 0)
    assert client.post(f"/importer/batches/{state.batch_id}/commit", json={}).status_code == 202
    assert len(queued) == 2


def test_finished_task_releases_the_batch(login_client, operator_user, preview_batch, eager_worker):
    state = preview_batch()
    client = login_client(operator_user)

    assert client.post(f"/importer/batches/{state.batch_id}/commit", json={}).status_code == 202

    db.session.expire_all()
    assert BatchStore().get_batch(state.batch_id).session_json["pending_task"] is None
    assert client.post(f"/importer/batches/{state.batch_id}/rollback", json={"reason": "Feil fil"}).status_code == 202
