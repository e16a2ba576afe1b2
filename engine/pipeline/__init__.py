"""
Pipeline execution engine
Runs a linear list of conditional stages with guaranteed post hooks and cleanup
"""

from .conditions import AllOf, AllPresent, AnyOf, Condition, Flag, Not, evaluate
from .credentials import (
    ChainedSecretStore,
    Credential,
    CredentialBinding,
    EnvironmentSecretStore,
    SecretStore,
    StaticSecretStore,
)
from .engine import Options, PipelineDefinition, PipelineEngine, RunLease, RunLockRegistry
from .environment import Environment
from .health import HealthPoller
from .loader import definition_from_dict, load_definition, load_definitions
from .quality_gate import QualityGateClient
from .artifacts import ArtifactPublisher, ReportArchiver, select_artifact
from .runner import ExternalCommandRunner
from .stage import PostBlock, Stage, StageExecutor
from .steps import (
    ArchiveStep,
    CallableStep,
    HealthCheckStep,
    PublishStep,
    QualityGateStep,
    ShellStep,
    TeardownStep,
)
from .types import (
    ArtifactReference,
    ExecutionResult,
    FailureKind,
    GateStatus,
    PipelineResult,
    PipelineStatus,
    StageStatus,
)

__all__ = [
    'AllOf',
    'AllPresent',
    'AnyOf',
    'Condition',
    'Flag',
    'Not',
    'evaluate',
    'ChainedSecretStore',
    'Credential',
    'CredentialBinding',
    'EnvironmentSecretStore',
    'SecretStore',
    'StaticSecretStore',
    'Options',
    'PipelineDefinition',
    'PipelineEngine',
    'RunLease',
    'RunLockRegistry',
    'Environment',
    'HealthPoller',
    'definition_from_dict',
    'load_definition',
    'load_definitions',
    'QualityGateClient',
    'ArtifactPublisher',
    'ReportArchiver',
    'select_artifact',
    'ExternalCommandRunner',
    'PostBlock',
    'Stage',
    'StageExecutor',
    'ArchiveStep',
    'CallableStep',
    'HealthCheckStep',
    'PublishStep',
    'QualityGateStep',
    'ShellStep',
    'TeardownStep',
    'ArtifactReference',
    'ExecutionResult',
    'FailureKind',
    'GateStatus',
    'PipelineResult',
    'PipelineStatus',
    'StageStatus',
]
