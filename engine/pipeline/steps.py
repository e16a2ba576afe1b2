"""
Actions a stage body or post block is made of.

Each step is an immutable value with an async ``execute(ctx)``; a step
signals failure by raising a PipelineError subclass.
"""
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Union

from .artifacts import ArtifactPublisher, find_matches
from .context import StageContext
from .credentials import Credential
from .exceptions import (
    ArtifactNotFound,
    CommandFailure,
    DefinitionError,
    HealthCheckTimeout,
    QualityGateRejected,
)
from .quality_gate import read_report_task
from .runner import split_command
from .types import GateStatus
from utils.logger import get_logger

logger = get_logger(__name__)


class Step(ABC):
    """One action of a stage"""

    @abstractmethod
    async def execute(self, ctx: StageContext) -> None:
        pass

    @abstractmethod
    def describe(self) -> str:
        pass


def _tuple(value: Any) -> Tuple:
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return (value,)


@dataclass(frozen=True)
class ShellStep(Step):
    """
    Run an external command.

    Exit 0 succeeds; codes in ``unstable_exit_codes`` mark the stage unstable;
    codes in ``tolerated_exit_codes`` are accepted silently; anything else
    raises CommandFailure. ``expect_artifacts`` patterns must match at least
    one file after a successful run (e.g. test reports of a build).
    ``capture`` stores the trimmed stdout under that name; during checkout
    the captured values become part of the run environment.
    """
    command: Union[str, Tuple[str, ...]]
    workdir: Optional[str] = None
    timeout: Optional[float] = None
    env: Tuple[Tuple[str, str], ...] = ()
    tolerated_exit_codes: Tuple[int, ...] = ()
    unstable_exit_codes: Tuple[int, ...] = ()
    expect_artifacts: Tuple[str, ...] = ()
    stdin: Optional[str] = None
    capture: Optional[str] = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ShellStep":
        if "command" not in config:
            raise DefinitionError(f"sh step needs a 'command': {dict(config)!r}")
        command = config["command"]
        return cls(
            command=command if isinstance(command, str) else tuple(command),
            workdir=config.get("workdir"),
            timeout=config.get("timeout"),
            env=tuple(sorted((config.get("env") or {}).items())),
            tolerated_exit_codes=tuple(int(c) for c in _tuple(config.get("tolerated_exit_codes"))),
            unstable_exit_codes=tuple(int(c) for c in _tuple(config.get("unstable_exit_codes"))),
            expect_artifacts=_tuple(config.get("expect_artifacts")),
            stdin=config.get("stdin"),
            capture=config.get("capture"),
        )

    def describe(self) -> str:
        return self.command if isinstance(self.command, str) else " ".join(self.command)

    async def execute(self, ctx: StageContext) -> None:
        argv = [ctx.expand(part) for part in split_command(self.command)]
        workdir = os.path.join(ctx.workdir, ctx.expand(self.workdir)) if self.workdir else ctx.workdir
        env = {key: ctx.expand(value) for key, value in self.env}

        stdin_data = ctx.expand(self.stdin) if self.stdin is not None else None

        result = await ctx.runner.run(argv, workdir=workdir, env_overrides=env,
                                      timeout=self.timeout, stdin_data=stdin_data)
        ctx.exit_code = result.exit_code

        if result.exit_code in self.unstable_exit_codes:
            ctx.mark_unstable(f"'{argv[0]}' exited with {result.exit_code}")
        elif result.exit_code != 0 and result.exit_code not in self.tolerated_exit_codes:
            raise CommandFailure(result.command, result.exit_code, result.stderr or result.stdout)

        for pattern in self.expect_artifacts:
            if not find_matches(ctx.expand(pattern), workdir):
                raise ArtifactNotFound(pattern, workdir)

        if self.capture:
            ctx.captured[self.capture] = result.stdout.strip()


@dataclass(frozen=True)
class HealthCheckStep(Step):
    """Poll an endpoint; exhausting the attempts fails the stage"""
    url: str
    max_attempts: int = 10
    interval: float = 3.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "HealthCheckStep":
        if "url" not in config:
            raise DefinitionError("health_check step needs a 'url'")
        return cls(
            url=config["url"],
            max_attempts=int(config.get("max_attempts", 10)),
            interval=float(config.get("interval", 3.0)),
        )

    def describe(self) -> str:
        return f"health_check {self.url} ({self.max_attempts}x{self.interval}s)"

    async def execute(self, ctx: StageContext) -> None:
        url = ctx.expand(self.url)
        healthy = await ctx.run.health_poller.poll(url, self.max_attempts, self.interval)
        if not healthy:
            raise HealthCheckTimeout(url, self.max_attempts)


@dataclass(frozen=True)
class QualityGateStep(Step):
    """Block until the analysis server returns a verdict; anything but OK fails"""
    project_key: str
    timeout: float = 300.0
    report_task_path: Optional[str] = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "QualityGateStep":
        if "project_key" not in config:
            raise DefinitionError("quality_gate step needs a 'project_key'")
        return cls(
            project_key=config["project_key"],
            timeout=float(config.get("timeout", 300.0)),
            report_task_path=config.get("report_task_path"),
        )

    def describe(self) -> str:
        return f"quality_gate {self.project_key}"

    async def execute(self, ctx: StageContext) -> None:
        project_key = ctx.expand(self.project_key)
        task_id = None
        if self.report_task_path:
            path = os.path.join(ctx.workdir, ctx.expand(self.report_task_path))
            task_id = read_report_task(path).get("ceTaskId")

        server_url = ctx.environment.get("SONAR_HOST_URL", "")
        token = ctx.environment.get("SONAR_TOKEN", "")
        async with ctx.run.quality_gate_factory(server_url, token) as client:
            status = await client.await_gate(project_key, self.timeout, task_id=task_id)
        if status != GateStatus.OK:
            raise QualityGateRejected(project_key, status)


@dataclass(frozen=True)
class PublishStep(Step):
    """
    Upload one artifact to ``{base_url}/{repo_path}/{project}/{run}/{file}``.

    Username and password come from stage environment variables, which may
    be bound from a credential for the duration of the stage.
    """
    pattern: str
    base_url: str = "${NEXUS_URL}"
    repo_path: str = "${NEXUS_REPOSITORY}"
    username_variable: str = "NEXUS_USERNAME"
    password_variable: str = "NEXUS_PASSWORD"

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "PublishStep":
        if "pattern" not in config:
            raise DefinitionError("publish step needs a 'pattern'")
        defaults = cls(pattern=config["pattern"])
        return cls(
            pattern=config["pattern"],
            base_url=config.get("base_url", defaults.base_url),
            repo_path=config.get("repo_path", defaults.repo_path),
            username_variable=config.get("username_variable", defaults.username_variable),
            password_variable=config.get("password_variable", defaults.password_variable),
        )

    def describe(self) -> str:
        return f"publish {self.pattern}"

    async def execute(self, ctx: StageContext) -> None:
        destination = ArtifactPublisher.upload_url(
            ctx.expand(self.base_url),
            ctx.expand(self.repo_path),
            ctx.run.project_name,
            ctx.run.run_number,
            "",
        )
        credential = Credential(
            credential_id="artifact-repository",
            username=ctx.environment.get(self.username_variable),
            password=ctx.environment.get(self.password_variable),
        )
        reference = await ctx.run.publisher.publish(ctx.expand(self.pattern), destination, credential)
        ctx.artifacts.append(reference)


@dataclass(frozen=True)
class ArchiveStep(Step):
    """Copy report files into the run's artifact directory"""
    patterns: Tuple[str, ...]
    allow_empty: bool = True
    label: Optional[str] = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "ArchiveStep":
        patterns = _tuple(config.get("patterns") or config.get("pattern"))
        if not patterns:
            raise DefinitionError("archive step needs 'patterns'")
        return cls(patterns=patterns, allow_empty=bool(config.get("allow_empty", True)),
                   label=config.get("label"))

    def describe(self) -> str:
        return f"archive {', '.join(self.patterns)}"

    async def execute(self, ctx: StageContext) -> None:
        for pattern in self.patterns:
            ctx.artifacts.extend(
                ctx.run.archiver.archive(ctx.expand(pattern), label=self.label, allow_empty=self.allow_empty)
            )


@dataclass(frozen=True)
class TeardownStep(Step):
    """Remove a named container if it exists; absence is not an error"""
    container: str
    docker: str = "docker"
    timeout: Optional[float] = 120.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "TeardownStep":
        if "container" not in config:
            raise DefinitionError("teardown step needs a 'container'")
        return cls(container=config["container"], docker=config.get("docker", "docker"),
                   timeout=config.get("timeout", 120.0))

    def describe(self) -> str:
        return f"teardown {self.container}"

    async def execute(self, ctx: StageContext) -> None:
        name = ctx.expand(self.container)
        lookup = await ctx.runner.run(
            [self.docker, "ps", "-aq", "--filter", f"name=^/{name}$"],
            workdir=ctx.workdir, timeout=self.timeout,
        )
        if lookup.exit_code == 0 and not lookup.stdout.strip():
            logger.info(f"Container {name} not present, nothing to remove")
            return

        removal = await ctx.runner.run([self.docker, "rm", "-f", name], workdir=ctx.workdir, timeout=self.timeout)
        if removal.exit_code != 0 and "no such container" not in removal.stderr.lower():
            raise CommandFailure(removal.command, removal.exit_code, removal.stderr)
        logger.info(f"Container {name} removed")


@dataclass(frozen=True)
class CallableStep(Step):
    """Wrap a coroutine function taking the stage context"""
    func: Callable[[StageContext], Awaitable[None]]
    name: str = field(default="callable")

    def describe(self) -> str:
        return self.name

    async def execute(self, ctx: StageContext) -> None:
        await self.func(ctx)


STEP_TYPES: Dict[str, Callable[[Mapping[str, Any]], Step]] = {
    "sh": ShellStep.from_config,
    "health_check": HealthCheckStep.from_config,
    "quality_gate": QualityGateStep.from_config,
    "publish": PublishStep.from_config,
    "archive": ArchiveStep.from_config,
    "teardown": TeardownStep.from_config,
}


def step_from_config(config: Any) -> Step:
    """Build a step from ``{"sh": "mvn -B verify"}`` or ``{"sh": {...}}``."""
    if isinstance(config, str):
        return ShellStep(command=config)
    if not isinstance(config, dict) or len(config) != 1:
        raise DefinitionError(f"Step must be a mapping with exactly one key, got {config!r}")

    kind, body = next(iter(config.items()))
    factory = STEP_TYPES.get(kind)
    if factory is None:
        raise DefinitionError(f"Unknown step type '{kind}'")
    if isinstance(body, str):
        shorthand = {"sh": "command", "health_check": "url", "quality_gate": "project_key",
                     "publish": "pattern", "archive": "patterns", "teardown": "container"}
        body = {shorthand[kind]: body}
    return factory(body or {})
