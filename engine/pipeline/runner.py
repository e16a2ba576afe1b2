"""
External command runner.

Every tool the pipeline drives (Maven, scanners, Docker, git) goes through
``ExternalCommandRunner.run``; the engine never special-cases a tool.
"""
import asyncio
import os
import shlex
import time
from typing import Dict, List, Mapping, Optional, Sequence, Union

from .environment import Environment
from .exceptions import CommandTimeout
from .types import CommandResult
from utils.logger import get_logger

logger = get_logger(__name__)

Command = Union[str, Sequence[str]]

# Exit code a shell reports when the executable cannot be found
EXIT_NOT_FOUND = 127

DEFAULT_SECRET_PREFIX = "PIPELINE_SECRET_"


def split_command(command: Command) -> List[str]:
    if isinstance(command, str):
        return shlex.split(command)
    return [str(part) for part in command]


class ExternalCommandRunner:
    """Runs child processes with captured output and a hard timeout"""

    def __init__(self, environment: Optional[Environment] = None,
                 default_timeout: Optional[float] = None,
                 inherit_os_environ: bool = True,
                 secret_env_prefix: Optional[str] = DEFAULT_SECRET_PREFIX):
        self.environment = environment or Environment()
        self.default_timeout = default_timeout
        self.inherit_os_environ = inherit_os_environ
        self.secret_env_prefix = secret_env_prefix

    def _child_environment(self, env_overrides: Optional[Mapping[str, str]]) -> Dict[str, str]:
        child_env: Dict[str, str] = {}
        if self.inherit_os_environ:
            # Secret store entries reach a child only through a stage credential binding
            child_env = {
                key: value for key, value in os.environ.items()
                if not (self.secret_env_prefix and key.startswith(self.secret_env_prefix))
            }
        child_env.update(self.environment.as_dict())
        if env_overrides:
            child_env.update({k: str(v) for k, v in env_overrides.items() if v is not None})
        return child_env

    async def run(self, command: Command, workdir: Optional[str] = None,
                  env_overrides: Optional[Mapping[str, str]] = None,
                  timeout: Optional[float] = None,
                  stdin_data: Optional[str] = None) -> CommandResult:
        """
        Execute a command and capture its output

        Args:
            command: argv list or a shell-style string (split with shlex, no shell)
            workdir: working directory for the child process
            env_overrides: values layered on top of the pipeline environment
            timeout: seconds before the process is killed
            stdin_data: text written to the child's stdin (e.g. a password for --password-stdin)

        Returns:
            CommandResult; a non-zero exit is returned, not raised

        Raises:
            CommandTimeout: the process ran past ``timeout`` and was killed
        """
        argv = split_command(command)
        if not argv:
            raise ValueError("Empty command")

        timeout = timeout if timeout is not None else self.default_timeout
        # Secrets never leave the runner in command lines
        shown = tuple(self.environment.mask(part) for part in argv)
        display = " ".join(shown)
        logger.info(f"Running: {display}" + (f" (cwd={workdir})" if workdir else ""))

        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=workdir,
                env=self._child_environment(env_overrides),
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.error(f"Could not start '{argv[0]}': {e}")
            return CommandResult(
                command=shown,
                exit_code=EXIT_NOT_FOUND,
                stdout="",
                stderr=str(e),
                duration_seconds=time.monotonic() - start,
            )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(stdin_data.encode("utf-8") if stdin_data is not None else None),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await self._terminate(process)
            logger.error(f"Command timed out after {timeout} seconds: {display}")
            raise CommandTimeout(shown, timeout)
        except asyncio.CancelledError:
            # Global pipeline timeout or shutdown: never leave the child behind
            await self._terminate(process)
            raise

        result = CommandResult(
            command=shown,
            exit_code=process.returncode,
            stdout=self.environment.mask(stdout.decode("utf-8", errors="replace") if stdout else ""),
            stderr=self.environment.mask(stderr.decode("utf-8", errors="replace") if stderr else ""),
            duration_seconds=time.monotonic() - start,
        )

        if result.exit_code == 0:
            logger.info(f"Command finished in {result.duration_seconds:.1f}s: {display}")
        else:
            logger.warning(f"Command exited with {result.exit_code}: {display}")
        return result

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    def for_stage(self, environment: Environment) -> "ExternalCommandRunner":
        """Runner bound to a stage-local environment view."""
        return ExternalCommandRunner(
            environment=environment,
            default_timeout=self.default_timeout,
            inherit_os_environ=self.inherit_os_environ,
            secret_env_prefix=self.secret_env_prefix,
        )
