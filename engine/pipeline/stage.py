"""
Stage model and the two-phase stage executor (body, then post hooks).
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .conditions import Condition, evaluate
from .context import RunContext, StageContext
from .credentials import CredentialBinding, bound_credentials, missing_credentials
from .exceptions import DefinitionError, PipelineError, PipelineTimeout, StageTimeout
from .steps import Step
from .types import ExecutionResult, FailureKind, StageState, StageStatus
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PostBlock:
    """Hooks run after a stage body or after the whole pipeline"""
    always: Tuple[Step, ...] = ()
    success: Tuple[Step, ...] = ()
    failure: Tuple[Step, ...] = ()
    unstable: Tuple[Step, ...] = ()
    aborted: Tuple[Step, ...] = ()
    cleanup: Tuple[Step, ...] = ()

    def __bool__(self) -> bool:
        return any((self.always, self.success, self.failure, self.unstable, self.aborted, self.cleanup))

    def hooks(self, outcome: str) -> List[Tuple[str, Step]]:
        """Ordered hooks for an outcome: always, the matching block, cleanup."""
        matching = {
            "success": self.success,
            "failure": self.failure,
            "unstable": self.unstable,
            "aborted": self.aborted,
        }.get(outcome, ())
        ordered = [("always", step) for step in self.always]
        ordered += [(outcome, step) for step in matching]
        ordered += [("cleanup", step) for step in self.cleanup]
        return ordered


@dataclass(frozen=True)
class Stage:
    """A named unit of pipeline work"""
    name: str
    body: Tuple[Step, ...]
    condition: Optional[Condition] = None
    post: PostBlock = field(default_factory=PostBlock)
    required: bool = True
    environment: Tuple[Tuple[str, str], ...] = ()
    credentials: Tuple[CredentialBinding, ...] = ()
    timeout: Optional[float] = None

    def __post_init__(self):
        if not self.name:
            raise DefinitionError("Stage name must not be empty")


async def run_hooks(hooks: List[Tuple[str, Step]], ctx: StageContext, owner: str) -> List[str]:
    """Run post hooks one after another; failures are collected, never raised."""
    errors: List[str] = []
    for tag, step in hooks:
        try:
            logger.info(f"[{owner}] post/{tag}: {step.describe()}")
            await step.execute(ctx)
        except PipelineError as e:
            logger.error(f"[{owner}] post/{tag} step '{step.describe()}' failed: {e}")
            errors.append(f"{tag}: {e}")
        except Exception as e:
            logger.exception(f"[{owner}] post/{tag} step '{step.describe()}' crashed")
            errors.append(f"{tag}: {e.__class__.__name__}: {e}")
    return errors


class StageExecutor:
    """
    Executes one stage.

    PENDING -> SKIPPED when the condition is not satisfied or a bound
    credential is unavailable (nothing runs).
    PENDING -> RUNNING -> SUCCEEDING -> SUCCESS, or RUNNING -> FAILING -> FAILURE.
    Post hooks run on every exit path out of RUNNING, including cancellation
    by the global pipeline timeout, where they get at most the cleanup grace.
    """

    async def execute(self, stage: Stage, run: RunContext,
                      on_complete: Optional[Callable[[ExecutionResult], None]] = None,
                      exports: Optional[Dict[str, str]] = None) -> ExecutionResult:
        reason = self.skip_reason(stage, run)
        if reason is not None:
            logger.info(f"Stage '{stage.name}' skipped: {reason}")
            result = ExecutionResult(stage_name=stage.name, status=StageStatus.SKIPPED, skip_reason=reason)
            if on_complete:
                on_complete(result)
            return result

        logger.info(f"Stage '{stage.name}' started")
        started = time.monotonic()
        stage_env = run.environment.with_overrides(
            {key: value for key, value in stage.environment}
        )
        ctx = run.stage_context(stage.name, stage_env)
        state = StageState.RUNNING
        error: Optional[PipelineError] = None
        cancelled = False

        try:
            await self._run_body(stage, ctx)
            state = StageState.SUCCEEDING
        except asyncio.CancelledError:
            state = StageState.FAILING
            cancelled = True
            error = PipelineTimeout(f"Stage '{stage.name}' aborted by pipeline timeout")
            raise
        except PipelineError as e:
            state = StageState.FAILING
            error = e
        except Exception as e:
            logger.exception(f"Stage '{stage.name}' raised an unexpected error")
            state = StageState.FAILING
            error = PipelineError(f"{e.__class__.__name__}: {e}")
        finally:
            outcome = "success" if state == StageState.SUCCEEDING else "failure"
            hooks = stage.post.hooks(outcome)
            if cancelled:
                post_errors = await self._run_hooks_within_grace(hooks, ctx, stage.name)
            else:
                post_errors = await run_hooks(hooks, ctx, stage.name)
            if exports is not None and state == StageState.SUCCEEDING:
                exports.update(ctx.captured)
            result = self._build_result(stage, ctx, error, post_errors, time.monotonic() - started)
            logger.info(f"Stage '{stage.name}' finished: {result.status.value.upper()}"
                        f" in {result.duration_seconds:.1f}s")
            if on_complete:
                on_complete(result)

        return result

    def skip_reason(self, stage: Stage, run: RunContext) -> Optional[str]:
        """Why a stage is not eligible to run, or None when it is."""
        if not evaluate(stage.condition, run.environment):
            return f"condition {stage.condition.describe()} not satisfied"
        missing = missing_credentials(run.secret_store, list(stage.credentials))
        if missing:
            return f"credentials not available: {', '.join(missing)}"
        return None

    async def _run_hooks_within_grace(self, hooks: List[Tuple[str, Step]], ctx: StageContext,
                                      owner: str) -> List[str]:
        grace = ctx.run.cleanup_grace_seconds
        try:
            return await asyncio.wait_for(run_hooks(hooks, ctx, owner), timeout=grace)
        except asyncio.TimeoutError:
            logger.error(f"[{owner}] post hooks cut off after {grace} seconds")
            return [f"post hooks exceeded {grace:g} seconds after the pipeline timeout"]

    async def _run_body(self, stage: Stage, ctx: StageContext) -> None:
        if stage.timeout is None:
            await self._run_steps(stage, ctx)
            return
        try:
            await asyncio.wait_for(self._run_steps(stage, ctx), timeout=stage.timeout)
        except asyncio.TimeoutError:
            raise StageTimeout(f"Stage '{stage.name}' exceeded {stage.timeout} seconds") from None

    async def _run_steps(self, stage: Stage, ctx: StageContext) -> None:
        # Credentials exist only while the body runs
        async with bound_credentials(ctx.run.secret_store, list(stage.credentials)) as secrets:
            base_environment, base_runner = ctx.environment, ctx.runner
            if secrets:
                ctx.environment = base_environment.with_overrides(secrets=secrets)
                ctx.runner = base_runner.for_stage(ctx.environment)
            try:
                for step in stage.body:
                    logger.info(f"[{stage.name}] {step.describe()}")
                    await step.execute(ctx)
            finally:
                ctx.environment, ctx.runner = base_environment, base_runner

    def _build_result(self, stage: Stage, ctx: StageContext, error: Optional[PipelineError],
                      post_errors: List[str], duration: float) -> ExecutionResult:
        exit_code = ctx.exit_code
        if error is not None:
            if error.exit_code is not None:
                exit_code = error.exit_code
            status = StageStatus.FAILURE if stage.required else StageStatus.UNSTABLE
            if not stage.required:
                logger.warning(f"Stage '{stage.name}' failed but is not required; marking unstable")
            return ExecutionResult(
                stage_name=stage.name,
                status=status,
                exit_code=exit_code,
                artifacts=list(ctx.artifacts),
                duration_seconds=duration,
                failure_kind=error.kind,
                message="; ".join([error.message] + [f"post hook failed ({e})" for e in post_errors]),
            )

        notes = list(ctx.unstable_reasons) + [f"post hook failed ({e})" for e in post_errors]
        return ExecutionResult(
            stage_name=stage.name,
            status=StageStatus.UNSTABLE if notes else StageStatus.SUCCESS,
            exit_code=exit_code,
            artifacts=list(ctx.artifacts),
            duration_seconds=duration,
            failure_kind=FailureKind.ERROR if post_errors else None,
            message="; ".join(notes) or None,
        )
