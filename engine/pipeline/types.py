"""
Shared types and models for pipeline execution.
"""
from typing import List, Dict, Any, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum


class StageStatus(Enum):
    """Terminal status of a single stage"""
    SUCCESS = "success"
    UNSTABLE = "unstable"
    FAILURE = "failure"
    SKIPPED = "skipped"

    @property
    def severity(self) -> int:
        return _STAGE_SEVERITY[self]


_STAGE_SEVERITY = {
    StageStatus.SKIPPED: 0,
    StageStatus.SUCCESS: 0,
    StageStatus.UNSTABLE: 1,
    StageStatus.FAILURE: 2,
}


class PipelineStatus(Enum):
    """Terminal status of a pipeline run"""
    SUCCESS = "success"
    UNSTABLE = "unstable"
    FAILURE = "failure"
    ABORTED = "aborted"


class StageState(Enum):
    """Intermediate states a stage moves through while executing"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDING = "succeeding"
    FAILING = "failing"


class EngineState(Enum):
    """Top-level states of a pipeline run"""
    INIT = "init"
    RUNNING = "running"
    CLEANUP = "cleanup"
    TERMINAL = "terminal"


class FailureKind(Enum):
    """Why a stage or run failed"""
    COMMAND_FAILURE = "command_failure"
    TIMEOUT = "timeout"
    QUALITY_GATE = "quality_gate"
    PUBLISH_FAILURE = "publish_failure"
    NOT_FOUND = "not_found"
    CREDENTIAL = "credential"
    RESOURCE_CONFLICT = "resource_conflict"
    ERROR = "error"


class GateStatus(Enum):
    """Quality gate verdict"""
    OK = "OK"
    WARN = "WARN"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True)
class ArtifactReference:
    """A resolved file produced by a stage"""
    path: str
    label: str

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "label": self.label}


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command"""
    command: Tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": list(self.command),
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class ExecutionResult:
    """Per-stage record produced by the stage executor"""
    stage_name: str
    status: StageStatus
    exit_code: Optional[int] = None
    artifacts: List[ArtifactReference] = field(default_factory=list)
    duration_seconds: float = 0.0
    failure_kind: Optional[FailureKind] = None
    message: Optional[str] = None
    skip_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert stage result to dictionary"""
        return {
            "stage_name": self.stage_name,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "artifacts": [artifact.to_dict() for artifact in self.artifacts],
            "duration_seconds": self.duration_seconds,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "message": self.message,
            "skip_reason": self.skip_reason,
        }


@dataclass(frozen=True)
class PipelineResult:
    """Terminal record of a pipeline run; never modified once built"""
    run_id: str
    pipeline_name: str
    run_number: int
    status: PipelineStatus
    stages: Tuple[ExecutionResult, ...]
    started_at: str
    completed_at: str
    duration_seconds: float
    failure_kind: Optional[FailureKind] = None
    message: Optional[str] = None
    cleanup_errors: Tuple[str, ...] = ()
    post_artifacts: Tuple[ArtifactReference, ...] = ()

    def stage(self, name: str) -> Optional[ExecutionResult]:
        for result in self.stages:
            if result.stage_name == name:
                return result
        return None

    @property
    def artifacts(self) -> List[ArtifactReference]:
        collected = []
        for result in self.stages:
            collected.extend(result.artifacts)
        collected.extend(self.post_artifacts)
        return collected

    def to_dict(self) -> Dict[str, Any]:
        """Convert pipeline result to dictionary"""
        return {
            "run_id": self.run_id,
            "pipeline_name": self.pipeline_name,
            "run_number": self.run_number,
            "status": self.status.value,
            "stages": [stage.to_dict() for stage in self.stages],
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "message": self.message,
            "cleanup_errors": list(self.cleanup_errors),
            "post_artifacts": [artifact.to_dict() for artifact in self.post_artifacts],
        }


def aggregate_status(results: List[ExecutionResult]) -> PipelineStatus:
    """Most severe status among executed stages; skipped stages never count."""
    worst = 0
    for result in results:
        if result.status == StageStatus.SKIPPED:
            continue
        worst = max(worst, result.status.severity)
    if worst >= 2:
        return PipelineStatus.FAILURE
    if worst == 1:
        return PipelineStatus.UNSTABLE
    return PipelineStatus.SUCCESS
