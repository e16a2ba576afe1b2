"""
Pipeline engine: drives the ordered stage list of one definition.

INIT(checkout) -> RUNNING(stage_1 .. stage_n) -> CLEANUP -> TERMINAL(status)
"""
import asyncio
import os
import re
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import AsyncIterator, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from filelock import FileLock, Timeout

from .artifacts import ArtifactPublisher, ReportArchiver
from .context import RunContext
from .credentials import SecretStore
from .environment import Environment
from .exceptions import DefinitionError, ResourceConflict
from .health import HealthPoller
from .quality_gate import QualityGateClient
from .runner import DEFAULT_SECRET_PREFIX, ExternalCommandRunner
from .stage import PostBlock, Stage, StageExecutor, run_hooks
from .steps import Step
from .types import (
    EngineState,
    ExecutionResult,
    FailureKind,
    PipelineResult,
    PipelineStatus,
    StageStatus,
    aggregate_status,
)
from utils.logger import configure_logging, get_logger

logger = get_logger(__name__)

CHECKOUT_STAGE = "checkout"
CONCURRENCY_POLICIES = ("queue", "reject")


@dataclass(frozen=True)
class Options:
    """Global options of a pipeline definition"""
    timeout_seconds: float = 45 * 60
    allow_concurrent_runs: bool = False
    log_color: str = "none"
    concurrency_policy: str = "queue"
    cleanup_grace_seconds: float = 300.0

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise DefinitionError("timeout must be positive")
        if self.concurrency_policy not in CONCURRENCY_POLICIES:
            raise DefinitionError(f"concurrency_policy must be one of {CONCURRENCY_POLICIES}")


@dataclass(frozen=True)
class PipelineDefinition:
    """Static, immutable description of a pipeline"""
    name: str
    stages: Tuple[Stage, ...]
    options: Options = field(default_factory=Options)
    post: PostBlock = field(default_factory=PostBlock)
    environment: Tuple[Tuple[str, str], ...] = ()
    checkout: Tuple[Step, ...] = ()
    lock_resource: Optional[str] = None

    def __post_init__(self):
        if not self.name:
            raise DefinitionError("Pipeline name is required")
        seen = set()
        for stage in self.stages:
            if stage.name in seen:
                raise DefinitionError(f"Duplicate stage name '{stage.name}'")
            seen.add(stage.name)
        if self.checkout and CHECKOUT_STAGE in seen:
            raise DefinitionError(f"Stage name '{CHECKOUT_STAGE}' is reserved when checkout is declared")

    @property
    def lock_key(self) -> str:
        return self.lock_resource or self.name

    def stage(self, name: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.name == name:
                return stage
        return None


class RunLease:
    """A held run lock; ``release`` is idempotent"""

    def __init__(self, key: str, lock: asyncio.Lock, file_lock: Optional[FileLock] = None):
        self.key = key
        self._lock = lock
        self._file_lock = file_lock
        self._released = False

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            if self._file_lock is not None:
                self._file_lock.release()
        finally:
            self._lock.release()


class RunLockRegistry:
    """
    One lock per pipeline identity; separate runs of it never overlap.

    Runs in this process queue on an asyncio lock. With ``lock_dir`` set, a
    lock file per key also excludes runs in other processes (two CLI runs
    against the same staging container, the API next to a CLI run).
    """

    def __init__(self, lock_dir: Optional[str] = None, poll_interval: float = 0.5):
        self.lock_dir = lock_dir
        self.poll_interval = poll_interval
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def lock_path(self, key: str) -> Optional[str]:
        if self.lock_dir is None:
            return None
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", key)
        return os.path.join(self.lock_dir, f"{safe}.lock")

    def _file_lock_for(self, key: str) -> Optional[FileLock]:
        path = self.lock_path(key)
        if path is None:
            return None
        os.makedirs(self.lock_dir, exist_ok=True)
        return FileLock(path)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        if lock is not None and lock.locked():
            return True
        file_lock = self._file_lock_for(key)
        if file_lock is None:
            return False
        try:
            file_lock.acquire(timeout=0)
        except Timeout:
            return True
        file_lock.release()
        return False

    async def acquire(self, key: str, policy: str = "queue") -> RunLease:
        """
        Take the lock for ``key``

        Raises:
            ResourceConflict: policy is "reject" and another run holds the lock
        """
        lock = self._lock_for(key)
        if policy == "reject" and lock.locked():
            raise ResourceConflict(key)
        if lock.locked():
            logger.info(f"Waiting for the running build of '{key}' to finish")
        await lock.acquire()

        file_lock = self._file_lock_for(key)
        if file_lock is not None:
            try:
                await self._acquire_file(key, file_lock, policy)
            except BaseException:
                lock.release()
                raise
        return RunLease(key, lock, file_lock)

    async def _acquire_file(self, key: str, file_lock: FileLock, policy: str) -> None:
        waiting = False
        while True:
            try:
                file_lock.acquire(timeout=0)
                return
            except Timeout:
                if policy == "reject":
                    raise ResourceConflict(key) from None
                if not waiting:
                    logger.info(f"Waiting for a run of '{key}' in another process to finish")
                    waiting = True
            await asyncio.sleep(self.poll_interval)

    @asynccontextmanager
    async def hold(self, key: str, policy: str = "queue") -> AsyncIterator[RunLease]:
        lease = await self.acquire(key, policy)
        try:
            yield lease
        finally:
            lease.release()


class PipelineEngine:
    """Runs pipeline definitions; each run is one sequential control flow"""

    def __init__(self,
                 secret_store: Optional[SecretStore] = None,
                 workdir: str = ".",
                 artifacts_dir: str = "./run_artifacts",
                 project_name: str = "app",
                 command_timeout: Optional[float] = None,
                 health_poller: Optional[HealthPoller] = None,
                 quality_gate_factory: Optional[Callable[[str, str], QualityGateClient]] = None,
                 publisher: Optional[ArtifactPublisher] = None,
                 lock_registry: Optional[RunLockRegistry] = None,
                 run_number_provider: Optional[Callable[[str], int]] = None,
                 listeners: Sequence[Callable[[PipelineResult], None]] = (),
                 secret_env_prefix: Optional[str] = DEFAULT_SECRET_PREFIX):
        self.secret_store = secret_store
        self.workdir = workdir
        self.artifacts_dir = artifacts_dir
        self.project_name = project_name
        self.command_timeout = command_timeout
        self.health_poller = health_poller or HealthPoller()
        self.quality_gate_factory = quality_gate_factory or QualityGateClient
        self.publisher = publisher or ArtifactPublisher(workdir=workdir)
        self.locks = lock_registry or RunLockRegistry(lock_dir=os.path.join(artifacts_dir, ".locks"))
        self.run_number_provider = run_number_provider
        self.listeners = list(listeners)
        self.secret_env_prefix = secret_env_prefix
        self.executor = StageExecutor()
        self.active_runs: Dict[str, RunContext] = {}
        self._run_numbers: Dict[str, int] = {}

    def is_running(self, definition: PipelineDefinition) -> bool:
        return self.locks.is_locked(definition.lock_key)

    def _next_run_number(self, pipeline_name: str) -> int:
        if self.run_number_provider is not None:
            number = self.run_number_provider(pipeline_name)
        else:
            number = self._run_numbers.get(pipeline_name, 0) + 1
        self._run_numbers[pipeline_name] = number
        return number

    async def claim(self, definition: PipelineDefinition) -> Optional[RunLease]:
        """
        Take the run lock now and hand it to a later ``run``

        Returns None when the definition allows concurrent runs.

        Raises:
            ResourceConflict: the policy is "reject" and a run is in flight
        """
        options = definition.options
        if options.allow_concurrent_runs:
            return None
        return await self.locks.acquire(definition.lock_key, options.concurrency_policy)

    async def run(self, definition: PipelineDefinition,
                  overrides: Optional[Mapping[str, str]] = None,
                  run_number: Optional[int] = None,
                  lease: Optional[RunLease] = None) -> PipelineResult:
        """
        Execute a pipeline definition to completion

        Args:
            definition: the pipeline to run
            overrides: externally supplied environment values (credentials, URLs)
            run_number: explicit run number, otherwise the next one is assigned
            lease: lock taken earlier with ``claim``; released when the run ends

        Returns:
            The terminal PipelineResult

        Raises:
            ResourceConflict: concurrent runs are disallowed, the policy is
                "reject" and another run of the same resource is in flight
        """
        options = definition.options
        if lease is not None:
            try:
                return await self._run(definition, overrides, run_number)
            finally:
                lease.release()
        if options.allow_concurrent_runs:
            return await self._run(definition, overrides, run_number)
        async with self.locks.hold(definition.lock_key, options.concurrency_policy):
            return await self._run(definition, overrides, run_number)

    async def _run(self, definition: PipelineDefinition,
                   overrides: Optional[Mapping[str, str]],
                   run_number: Optional[int]) -> PipelineResult:
        options = definition.options
        configure_logging(color_mode=options.log_color)

        run_id = uuid.uuid4().hex
        run_number = run_number if run_number is not None else self._next_run_number(definition.name)
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        deadline = started + options.timeout_seconds

        defaults = dict(definition.environment)
        defaults.setdefault("PIPELINE_NAME", definition.name)
        defaults.setdefault("WORKSPACE", os.path.abspath(self.workdir))
        defaults["RUN_NUMBER"] = str(run_number)
        defaults["RUN_ID"] = run_id
        environment = Environment.assemble(defaults, overrides)
        archive_dir = os.path.join(self.artifacts_dir, definition.name, str(run_number))

        run_ctx = RunContext(
            pipeline_name=definition.name,
            run_id=run_id,
            run_number=run_number,
            environment=environment,
            workdir=self.workdir,
            archive_dir=archive_dir,
            runner=ExternalCommandRunner(environment, default_timeout=self.command_timeout,
                                         secret_env_prefix=self.secret_env_prefix),
            health_poller=self.health_poller,
            publisher=self.publisher,
            archiver=ReportArchiver(self.workdir, archive_dir),
            quality_gate_factory=self.quality_gate_factory,
            secret_store=self.secret_store,
            project_name=self.project_name,
            cleanup_grace_seconds=options.cleanup_grace_seconds,
        )
        self.active_runs[run_id] = run_ctx

        logger.info(f"Pipeline '{definition.name}' #{run_number} starting ({run_id})")
        logger.debug(f"Environment: {environment.redacted()}")

        results: List[ExecutionResult] = []
        failure_kind: Optional[FailureKind] = None
        message: Optional[str] = None
        aborted = False

        try:
            try:
                await asyncio.wait_for(
                    self._run_stages(definition, run_ctx, results),
                    timeout=options.timeout_seconds,
                )
            except asyncio.TimeoutError:
                aborted = True
                failure_kind = FailureKind.TIMEOUT
                message = f"Pipeline exceeded its timeout of {options.timeout_seconds} seconds"
                logger.error(message)

            self._skip_remaining(definition, results, "not started before the pipeline timeout" if aborted else None)

            if aborted:
                status = PipelineStatus.ABORTED
            else:
                status = aggregate_status(results)
                failed = next((r for r in results if r.status == StageStatus.FAILURE), None)
                if failed is not None:
                    failure_kind = failed.failure_kind
                    message = f"Stage '{failed.stage_name}' failed: {failed.message}"

            run_ctx.state = EngineState.CLEANUP
            cleanup_budget = deadline - time.monotonic()
            if cleanup_budget <= 0:
                cleanup_budget = options.cleanup_grace_seconds
            post_ctx = run_ctx.stage_context("post", run_ctx.environment)
            try:
                cleanup_errors = await asyncio.wait_for(
                    run_hooks(definition.post.hooks(status.value), post_ctx, "pipeline"),
                    timeout=cleanup_budget,
                )
            except asyncio.TimeoutError:
                cleanup_errors = [f"cleanup exceeded {cleanup_budget:.0f} seconds"]
                logger.error(f"Pipeline '{definition.name}' cleanup timed out")
            for error in cleanup_errors:
                logger.warning(f"Cleanup problem (status unchanged): {error}")

            run_ctx.state = EngineState.TERMINAL
        finally:
            self.active_runs.pop(run_id, None)

        result = PipelineResult(
            run_id=run_id,
            pipeline_name=definition.name,
            run_number=run_number,
            status=status,
            stages=tuple(results),
            started_at=started_at.isoformat(),
            completed_at=datetime.now(timezone.utc).isoformat(),
            duration_seconds=time.monotonic() - started,
            failure_kind=failure_kind,
            message=message,
            cleanup_errors=tuple(cleanup_errors),
            post_artifacts=tuple(post_ctx.artifacts),
        )
        logger.info(f"Pipeline '{definition.name}' #{run_number} finished: {status.value.upper()}")
        self._notify(result)
        return result

    async def _run_stages(self, definition: PipelineDefinition, run_ctx: RunContext,
                          results: List[ExecutionResult]) -> None:
        halted_by: Optional[str] = None
        if definition.checkout:
            exports: Dict[str, str] = {}
            checkout = Stage(name=CHECKOUT_STAGE, body=definition.checkout)
            result = await self.executor.execute(checkout, run_ctx, on_complete=results.append, exports=exports)
            if result.status == StageStatus.FAILURE:
                halted_by = CHECKOUT_STAGE
            elif exports:
                run_ctx.export(exports)
                logger.info(f"Checkout exported {', '.join(sorted(exports))}")

        run_ctx.state = EngineState.RUNNING
        for stage in definition.stages:
            if halted_by is not None:
                results.append(ExecutionResult(
                    stage_name=stage.name,
                    status=StageStatus.SKIPPED,
                    skip_reason=f"halted after stage '{halted_by}' failed",
                ))
                continue
            result = await self.executor.execute(stage, run_ctx, on_complete=results.append)
            if result.status == StageStatus.FAILURE:
                halted_by = stage.name
                logger.error(f"Stage '{stage.name}' failed; remaining stages will not run")

    def _skip_remaining(self, definition: PipelineDefinition, results: List[ExecutionResult],
                        reason: Optional[str]) -> None:
        if reason is None:
            return
        recorded = {r.stage_name for r in results}
        for stage in definition.stages:
            if stage.name not in recorded:
                results.append(ExecutionResult(stage_name=stage.name, status=StageStatus.SKIPPED,
                                               skip_reason=reason))

    def _notify(self, result: PipelineResult) -> None:
        for listener in self.listeners:
            try:
                listener(result)
            except Exception as e:
                logger.error(f"Result listener {listener!r} failed: {e}")
