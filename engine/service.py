"""
Wiring of settings, secret store, run history and pipeline definitions.
"""
import os
from typing import Dict, Optional

from .config import Settings, settings as default_settings
from .database import RunRepository
from .delivery import SONAR_CREDENTIAL, build_delivery_pipeline
from .pipeline.credentials import (
    ChainedSecretStore,
    Credential,
    EnvironmentSecretStore,
    SecretStore,
    StaticSecretStore,
)
from .pipeline.engine import PipelineDefinition, PipelineEngine
from .pipeline.health import HealthPoller
from .pipeline.loader import load_definitions
from .pipeline.quality_gate import QualityGateClient
from utils.logger import get_logger

logger = get_logger(__name__)


def build_secret_store(config: Optional[Settings] = None) -> SecretStore:
    """Prefixed process environment first, then credentials configured in settings."""
    config = config or default_settings
    configured = []
    if config.sonar_token:
        configured.append(Credential(SONAR_CREDENTIAL, token=config.sonar_token))
    return ChainedSecretStore(
        EnvironmentSecretStore(prefix=config.secret_env_prefix),
        StaticSecretStore(configured),
    )


def build_engine(config: Optional[Settings] = None,
                 repository: Optional[RunRepository] = None,
                 secret_store: Optional[SecretStore] = None) -> PipelineEngine:
    """Create an engine configured from settings; results go to the repository when given."""
    config = config or default_settings

    def quality_gate_factory(server_url: str, token: str = "") -> QualityGateClient:
        return QualityGateClient(
            server_url,
            token=token,
            poll_interval=config.quality_gate_poll_interval_seconds,
        )

    return PipelineEngine(
        secret_store=secret_store or build_secret_store(config),
        workdir=config.workspace_dir,
        artifacts_dir=config.artifacts_dir,
        project_name=config.project_name,
        command_timeout=float(config.command_timeout_seconds),
        health_poller=HealthPoller(request_timeout=config.health_request_timeout_seconds),
        quality_gate_factory=quality_gate_factory,
        run_number_provider=repository.next_run_number if repository else None,
        listeners=[repository.save_result] if repository else (),
        secret_env_prefix=config.secret_env_prefix,
    )


def load_catalog(config: Optional[Settings] = None) -> Dict[str, PipelineDefinition]:
    """Built-in delivery pipeline plus any YAML definitions in the definitions directory."""
    config = config or default_settings
    catalog = {}
    delivery = build_delivery_pipeline(config)
    catalog[delivery.name] = delivery
    if os.path.isdir(config.definitions_dir):
        for name, definition in load_definitions(config.definitions_dir).items():
            if name in catalog:
                logger.warning(f"Definition '{name}' from {config.definitions_dir} replaces the built-in one")
            catalog[name] = definition
    logger.info(f"Loaded {len(catalog)} pipeline definitions")
    return catalog
