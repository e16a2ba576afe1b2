import os
import pytest
from unittest.mock import patch
from filelock import FileLock
from fastapi.testclient import TestClient

from main import app
from engine.database import DatabaseManager, RunRepository
from engine.pipeline.conditions import AllPresent
from engine.pipeline.engine import Options, PipelineDefinition
from engine.pipeline.stage import Stage
from engine.pipeline.steps import ShellStep


@pytest.fixture
def client(make_engine):
    manager = DatabaseManager("sqlite://")
    manager.create_tables()
    repository = RunRepository(manager)
    engine = make_engine(run_number_provider=repository.next_run_number, listeners=[repository.save_result])

    demo = PipelineDefinition(
        name="demo",
        stages=(
            Stage("Build", (ShellStep(command="true"),)),
            Stage("Deploy", (ShellStep(command="true"),), condition=AllPresent("STAGING_URL")),
        ),
    )
    exclusive = PipelineDefinition(
        name="exclusive",
        stages=(Stage("Build", (ShellStep(command="true"),)),),
        options=Options(concurrency_policy="reject"),
    )

    app.state.repository = repository
    app.state.engine = engine
    app.state.catalog = {demo.name: demo, exclusive.name: exclusive}
    yield TestClient(app)
    for name in ("repository", "engine", "catalog"):
        delattr(app.state, name)


def test_list_pipelines(client):
    response = client.get("/api/pipelines")
    assert response.status_code == 200
    data = response.json()
    assert [p["name"] for p in data] == ["demo", "exclusive"]
    assert data[0]["stages"] == ["Build", "Deploy"]
    assert data[0]["running"] is False
    assert data[1]["concurrency_policy"] == "reject"


def test_trigger_run_and_read_history(client):
    response = client.post("/api/pipelines/demo/runs", json={"parameters": {"STAGING_URL": "http://staging"}})
    assert response.status_code == 202
    assert response.json()["status"] == "accepted"

    runs = client.get("/api/pipelines/demo/runs").json()
    assert len(runs) == 1
    run = runs[0]
    assert run["status"] == "success"
    assert run["run_number"] == 1
    assert [s["status"] for s in run["stages"]] == ["success", "success"]

    detail = client.get(f"/api/runs/{run['run_id']}")
    assert detail.status_code == 200
    assert detail.json()["pipeline_name"] == "demo"


def test_trigger_without_body(client):
    response = client.post("/api/pipelines/demo/runs")
    assert response.status_code == 202

    run = client.get("/api/pipelines/demo/runs").json()[0]
    assert [s["status"] for s in run["stages"]] == ["success", "skipped"]


def test_trigger_unknown_pipeline(client):
    response = client.post("/api/pipelines/missing/runs", json={})
    assert response.status_code == 404


def test_history_of_unknown_pipeline(client):
    assert client.get("/api/pipelines/missing/runs").status_code == 404


def test_unknown_run(client):
    assert client.get("/api/runs/does-not-exist").status_code == 404


def hold_run_lock(key):
    path = app.state.engine.locks.lock_path(key)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    return FileLock(path)


def test_conflicting_run_is_rejected(client):
    held = hold_run_lock("exclusive")
    with held:
        response = client.post("/api/pipelines/exclusive/runs", json={})
    assert response.status_code == 409
    assert client.get("/api/pipelines/exclusive/runs").json() == []


def test_rejecting_pipeline_accepts_after_lock_is_released(client):
    held = hold_run_lock("exclusive")
    with held:
        assert client.post("/api/pipelines/exclusive/runs", json={}).status_code == 409

    assert client.post("/api/pipelines/exclusive/runs", json={}).status_code == 202
    assert client.post("/api/pipelines/exclusive/runs", json={}).status_code == 202

    runs = client.get("/api/pipelines/exclusive/runs").json()
    assert [r["status"] for r in runs] == ["success", "success"]
    assert app.state.engine.is_running(app.state.catalog["exclusive"]) is False


def test_queued_run_is_reported(client):
    with patch.object(app.state.engine, "is_running", return_value=True):
        response = client.post("/api/pipelines/demo/runs", json={})
    assert response.status_code == 202
    assert response.json()["queued_behind_running_build"] is True
