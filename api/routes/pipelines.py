"""
Pipeline endpoints: list definitions, trigger runs and read run history.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from engine.database import RunRepository
from engine.pipeline.engine import PipelineDefinition, PipelineEngine, RunLease
from engine.pipeline.exceptions import ResourceConflict
from utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["pipelines"])


class RunRequest(BaseModel):
    """Request model for triggering a run."""
    parameters: Dict[str, str] = Field(default_factory=dict)
    run_number: Optional[int] = None


class RunAcceptedResponse(BaseModel):
    """Response model for an accepted run."""
    pipeline_name: str
    status: str
    queued_behind_running_build: bool


class PipelineSummaryResponse(BaseModel):
    """Response model for a pipeline definition."""
    name: str
    stages: List[str]
    timeout_seconds: float
    allow_concurrent_runs: bool
    concurrency_policy: str
    running: bool


class StageRunResponse(BaseModel):
    stage_name: str
    status: str
    exit_code: Optional[int]
    failure_kind: Optional[str]
    message: Optional[str]
    skip_reason: Optional[str]
    duration_seconds: float
    artifacts: List[Dict[str, Any]]


class RunResponse(BaseModel):
    """Response model for a stored run."""
    run_id: str
    pipeline_name: str
    run_number: int
    status: str
    failure_kind: Optional[str]
    message: Optional[str]
    cleanup_errors: List[str]
    started_at: str
    completed_at: str
    duration_seconds: float
    stages: List[StageRunResponse]


def get_catalog(request: Request) -> Dict[str, PipelineDefinition]:
    return request.app.state.catalog


def get_engine(request: Request) -> PipelineEngine:
    return request.app.state.engine


def get_repository(request: Request) -> RunRepository:
    return request.app.state.repository


def get_definition(name: str, catalog: Dict[str, PipelineDefinition]) -> PipelineDefinition:
    definition = catalog.get(name)
    if definition is None:
        raise HTTPException(status_code=404, detail=f"Pipeline '{name}' not found")
    return definition


async def execute_run(engine: PipelineEngine, definition: PipelineDefinition,
                      parameters: Dict[str, str], run_number: Optional[int],
                      lease: Optional[RunLease] = None):
    """Background task running one pipeline to its terminal state."""
    try:
        result = await engine.run(definition, overrides=parameters, run_number=run_number, lease=lease)
        logger.info(f"Run {definition.name} #{result.run_number} ended {result.status.value}")
    except ResourceConflict as e:
        logger.warning(f"Run of '{definition.name}' rejected: {e}")
    except Exception as e:
        logger.error(f"Run of '{definition.name}' crashed: {e}")


@router.get("/pipelines", response_model=List[PipelineSummaryResponse])
async def list_pipelines(
    catalog: Dict[str, PipelineDefinition] = Depends(get_catalog),
    engine: PipelineEngine = Depends(get_engine),
):
    """List known pipeline definitions."""
    return [
        PipelineSummaryResponse(
            name=definition.name,
            stages=[stage.name for stage in definition.stages],
            timeout_seconds=definition.options.timeout_seconds,
            allow_concurrent_runs=definition.options.allow_concurrent_runs,
            concurrency_policy=definition.options.concurrency_policy,
            running=engine.is_running(definition),
        )
        for definition in sorted(catalog.values(), key=lambda d: d.name)
    ]


@router.post("/pipelines/{name}/runs", response_model=RunAcceptedResponse, status_code=202)
async def trigger_run(
    name: str,
    background_tasks: BackgroundTasks,
    payload: Optional[RunRequest] = None,
    catalog: Dict[str, PipelineDefinition] = Depends(get_catalog),
    engine: PipelineEngine = Depends(get_engine),
):
    """Start a run in the background."""
    definition = get_definition(name, catalog)
    payload = payload or RunRequest()
    options = definition.options
    running = engine.is_running(definition)

    lease = None
    if not options.allow_concurrent_runs and options.concurrency_policy == "reject":
        # Held from here until the background run ends
        try:
            lease = await engine.claim(definition)
        except ResourceConflict:
            raise HTTPException(status_code=409, detail=f"A run of '{name}' is already in progress")

    background_tasks.add_task(execute_run, engine, definition, payload.parameters, payload.run_number, lease)
    logger.info(f"Accepted run request for '{name}'")
    return RunAcceptedResponse(
        pipeline_name=name,
        status="accepted",
        queued_behind_running_build=running and not options.allow_concurrent_runs,
    )


@router.get("/pipelines/{name}/runs", response_model=List[RunResponse])
async def list_runs(
    name: str,
    limit: int = Query(20, ge=1, le=200),
    catalog: Dict[str, PipelineDefinition] = Depends(get_catalog),
    repository: RunRepository = Depends(get_repository),
):
    """Run history of one pipeline, newest first."""
    get_definition(name, catalog)
    return repository.list_runs(name, limit=limit)


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, repository: RunRepository = Depends(get_repository)):
    """One stored run."""
    run = repository.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return run
