"""
Pipeline exception hierarchy.

Every error carries the FailureKind recorded on the stage or run it ends.
"""
from typing import Optional, Sequence

from .types import FailureKind, GateStatus


class PipelineError(Exception):
    """Base class for errors raised while running a pipeline"""
    kind = FailureKind.ERROR

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code


class DefinitionError(PipelineError):
    """A pipeline definition is malformed"""


class CommandFailure(PipelineError):
    """An external tool exited with a status the step does not tolerate"""
    kind = FailureKind.COMMAND_FAILURE

    def __init__(self, command: Sequence[str], exit_code: int, stderr: str = ""):
        tail = stderr.strip().splitlines()[-5:] if stderr else []
        detail = f": {' | '.join(tail)}" if tail else ""
        super().__init__(
            f"Command '{' '.join(command)}' exited with {exit_code}{detail}",
            exit_code=exit_code,
        )
        self.command = tuple(command)
        self.stderr = stderr


class CommandTimeout(PipelineError):
    """An external tool ran past its time budget and was killed"""
    kind = FailureKind.TIMEOUT

    def __init__(self, command: Sequence[str], timeout: float):
        super().__init__(f"Command '{' '.join(command)}' timed out after {timeout} seconds")
        self.command = tuple(command)
        self.timeout = timeout


class HealthCheckTimeout(PipelineError):
    """A health endpoint never answered 2xx within the retry budget"""
    kind = FailureKind.TIMEOUT

    def __init__(self, url: str, attempts: int):
        super().__init__(f"Endpoint {url} did not become healthy after {attempts} attempts")
        self.url = url
        self.attempts = attempts


class StageTimeout(PipelineError):
    """A single stage exceeded its own timeout"""
    kind = FailureKind.TIMEOUT


class PipelineTimeout(PipelineError):
    """The run exceeded the global pipeline timeout"""
    kind = FailureKind.TIMEOUT


class QualityGateRejected(PipelineError):
    """The analysis server returned a verdict other than OK"""
    kind = FailureKind.QUALITY_GATE

    def __init__(self, project_key: str, status: GateStatus):
        super().__init__(f"Quality gate for '{project_key}' returned {status.value}")
        self.project_key = project_key
        self.status = status


class ArtifactNotFound(PipelineError):
    """No file matched an artifact pattern"""
    kind = FailureKind.NOT_FOUND

    def __init__(self, pattern: str, root: str = "."):
        super().__init__(f"No artifact matches '{pattern}' under {root}")
        self.pattern = pattern


class PublishFailure(PipelineError):
    """Uploading an artifact to the remote repository failed"""
    kind = FailureKind.PUBLISH_FAILURE

    def __init__(self, url: str, reason: str, status: Optional[int] = None):
        super().__init__(f"Upload to {url} failed: {reason}")
        self.url = url
        self.status = status


class CredentialNotFound(PipelineError):
    """A stage asked for a credential id the secret store does not know"""
    kind = FailureKind.CREDENTIAL

    def __init__(self, credential_id: str):
        super().__init__(f"Credential '{credential_id}' is not defined")
        self.credential_id = credential_id


class ResourceConflict(PipelineError):
    """Another run holds the lock for the same pipeline resource"""
    kind = FailureKind.RESOURCE_CONFLICT

    def __init__(self, resource: str):
        super().__init__(f"Pipeline resource '{resource}' is locked by another run")
        self.resource = resource
