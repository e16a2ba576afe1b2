"""
Run-wide and stage-local execution context.
"""
from dataclasses import dataclass, field
from string import Template
from typing import Callable, Dict, List, Mapping, Optional

from .artifacts import ArtifactPublisher, ReportArchiver
from .credentials import SecretStore
from .environment import Environment
from .health import HealthPoller
from .quality_gate import QualityGateClient
from .runner import ExternalCommandRunner
from .types import ArtifactReference, EngineState


@dataclass
class RunContext:
    """Everything a run shares across stages; the environment is frozen once stages start"""
    pipeline_name: str
    run_id: str
    run_number: int
    environment: Environment
    workdir: str
    archive_dir: str
    runner: ExternalCommandRunner
    health_poller: HealthPoller
    publisher: ArtifactPublisher
    archiver: ReportArchiver
    quality_gate_factory: Callable[[str, str], QualityGateClient]
    secret_store: Optional[SecretStore] = None
    project_name: str = "app"
    cleanup_grace_seconds: float = 300.0
    state: EngineState = EngineState.INIT

    def stage_context(self, stage_name: str, environment: Environment) -> "StageContext":
        return StageContext(
            run=self,
            stage_name=stage_name,
            environment=environment,
            runner=self.runner.for_stage(environment),
        )

    def export(self, values: Mapping[str, str]) -> None:
        """Layer checkout outputs (e.g. GIT_COMMIT) over the snapshot; INIT only."""
        if self.state != EngineState.INIT:
            raise RuntimeError(f"Environment is read-only in state {self.state.value}")
        self.environment = self.environment.with_overrides(values)
        self.runner = self.runner.for_stage(self.environment)


@dataclass
class StageContext:
    """View handed to the steps of one stage"""
    run: RunContext
    stage_name: str
    environment: Environment
    runner: ExternalCommandRunner
    artifacts: List[ArtifactReference] = field(default_factory=list)
    exit_code: Optional[int] = None
    unstable_reasons: List[str] = field(default_factory=list)
    captured: Dict[str, str] = field(default_factory=dict)

    @property
    def workdir(self) -> str:
        return self.run.workdir

    def expand(self, value: str) -> str:
        """Substitute ``${NAME}`` references from the stage environment."""
        values = dict(self.environment.as_dict())
        values.update(self.captured)
        values.setdefault("RUN_NUMBER", str(self.run.run_number))
        values.setdefault("PIPELINE_NAME", self.run.pipeline_name)
        values.setdefault("PROJECT_NAME", self.run.project_name)
        return Template(value).safe_substitute(values)

    def mark_unstable(self, reason: str) -> None:
        self.unstable_reasons.append(reason)
