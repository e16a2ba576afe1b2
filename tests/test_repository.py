import pytest

from engine.database import DatabaseManager, RunRepository
from engine.pipeline.engine import PipelineDefinition
from engine.pipeline.stage import Stage
from engine.pipeline.steps import ShellStep
from engine.pipeline.types import (
    ArtifactReference,
    ExecutionResult,
    FailureKind,
    PipelineResult,
    PipelineStatus,
    StageStatus,
)


@pytest.fixture
def repository():
    manager = DatabaseManager("sqlite://")
    manager.create_tables()
    return RunRepository(manager)


def make_result(run_id="run-1", run_number=1, status=PipelineStatus.FAILURE):
    return PipelineResult(
        run_id=run_id,
        pipeline_name="delivery",
        run_number=run_number,
        status=status,
        stages=(
            ExecutionResult("Build", StageStatus.SUCCESS, exit_code=0,
                            artifacts=[ArtifactReference("archive/TEST-a.xml", "build")]),
            ExecutionResult("Quality Gate", StageStatus.FAILURE, failure_kind=FailureKind.QUALITY_GATE,
                            message="Quality gate for 'demo' returned ERROR"),
            ExecutionResult("Docker Build", StageStatus.SKIPPED,
                            skip_reason="halted after stage 'Quality Gate' failed"),
        ),
        started_at="2026-01-01T10:00:00+00:00",
        completed_at="2026-01-01T10:05:00+00:00",
        duration_seconds=300.0,
        failure_kind=FailureKind.QUALITY_GATE,
        message="Stage 'Quality Gate' failed",
        cleanup_errors=("cleanup: docker unavailable",),
    )


def test_next_run_number_starts_at_one(repository):
    assert repository.next_run_number("delivery") == 1


def test_save_and_get(repository):
    repository.save_result(make_result())
    run = repository.get_run("run-1")

    assert run["status"] == "failure"
    assert run["failure_kind"] == "quality_gate"
    assert run["cleanup_errors"] == ["cleanup: docker unavailable"]
    assert [s["stage_name"] for s in run["stages"]] == ["Build", "Quality Gate", "Docker Build"]
    assert run["stages"][0]["artifacts"] == [{"path": "archive/TEST-a.xml", "label": "build"}]
    assert run["stages"][2]["skip_reason"] == "halted after stage 'Quality Gate' failed"


def test_get_unknown_run(repository):
    assert repository.get_run("missing") is None


def test_list_runs_newest_first(repository):
    repository.save_result(make_result("run-1", 1))
    repository.save_result(make_result("run-2", 2, PipelineStatus.SUCCESS))

    runs = repository.list_runs("delivery")
    assert [r["run_number"] for r in runs] == [2, 1]
    assert repository.next_run_number("delivery") == 3
    assert repository.list_runs("other") == []


async def test_engine_records_results(repository, make_engine):
    engine = make_engine(run_number_provider=repository.next_run_number, listeners=[repository.save_result])
    definition = PipelineDefinition(name="demo", stages=(Stage("Noop", (ShellStep(command="true"),)),))

    first = await engine.run(definition)
    second = await engine.run(definition)

    assert (first.run_number, second.run_number) == (1, 2)
    stored = repository.list_runs("demo")
    assert [r["run_id"] for r in stored] == [second.run_id, first.run_id]
    assert stored[0]["stages"][0]["status"] == "success"
