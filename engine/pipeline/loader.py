"""
Load pipeline definitions from YAML.
"""
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .conditions import condition_from_config
from .credentials import CredentialBinding
from .engine import Options, PipelineDefinition
from .exceptions import DefinitionError
from .stage import PostBlock, Stage
from .steps import step_from_config
from utils.logger import get_logger

logger = get_logger(__name__)

POST_SECTIONS = ("always", "success", "failure", "unstable", "aborted", "cleanup")


def _steps(config: Any, where: str) -> tuple:
    if config is None:
        return ()
    if not isinstance(config, list):
        raise DefinitionError(f"{where} must be a list of steps")
    return tuple(step_from_config(item) for item in config)


def _post_block(config: Optional[Mapping[str, Any]], where: str) -> PostBlock:
    if not config:
        return PostBlock()
    unknown = set(config) - set(POST_SECTIONS)
    if unknown:
        raise DefinitionError(f"Unknown post section(s) in {where}: {', '.join(sorted(unknown))}")
    return PostBlock(**{
        section: _steps(config.get(section), f"{where}.post.{section}")
        for section in POST_SECTIONS
    })


def _environment(config: Optional[Mapping[str, Any]]) -> tuple:
    if not config:
        return ()
    return tuple((str(key), "" if value is None else str(value)) for key, value in config.items())


def _stage(config: Mapping[str, Any]) -> Stage:
    if "name" not in config:
        raise DefinitionError(f"Stage without a name: {dict(config)!r}")
    name = config["name"]
    return Stage(
        name=name,
        body=_steps(config.get("steps"), f"stage '{name}'.steps"),
        condition=condition_from_config(config.get("when")),
        post=_post_block(config.get("post"), f"stage '{name}'"),
        required=bool(config.get("required", True)),
        environment=_environment(config.get("environment")),
        credentials=tuple(CredentialBinding.from_config(c) for c in config.get("credentials") or []),
        timeout=config.get("timeout"),
    )


def _options(config: Optional[Mapping[str, Any]]) -> Options:
    config = config or {}
    defaults = Options()
    timeout = config.get("timeout_seconds")
    if timeout is None and "timeout_minutes" in config:
        timeout = float(config["timeout_minutes"]) * 60
    return Options(
        timeout_seconds=float(timeout) if timeout is not None else defaults.timeout_seconds,
        allow_concurrent_runs=bool(config.get("allow_concurrent_runs", defaults.allow_concurrent_runs)),
        log_color=config.get("log_color", defaults.log_color),
        concurrency_policy=config.get("concurrency_policy", defaults.concurrency_policy),
        cleanup_grace_seconds=float(config.get("cleanup_grace_seconds", defaults.cleanup_grace_seconds)),
    )


def definition_from_dict(config: Mapping[str, Any]) -> PipelineDefinition:
    if not isinstance(config, Mapping):
        raise DefinitionError("Pipeline definition must be a mapping")
    if "name" not in config:
        raise DefinitionError("Pipeline definition needs a 'name'")
    stages = config.get("stages") or []
    if not isinstance(stages, list):
        raise DefinitionError("'stages' must be a list")
    return PipelineDefinition(
        name=config["name"],
        stages=tuple(_stage(stage) for stage in stages),
        options=_options(config.get("options")),
        post=_post_block(config.get("post"), "pipeline"),
        environment=_environment(config.get("environment")),
        checkout=_steps(config.get("checkout"), "checkout"),
        lock_resource=config.get("lock_resource"),
    )


def load_definition(path: str) -> PipelineDefinition:
    """Read one YAML pipeline definition file."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML in {path}: {e}") from e
    definition = definition_from_dict(config or {})
    logger.info(f"Loaded pipeline '{definition.name}' with {len(definition.stages)} stages from {path}")
    return definition


def load_definitions(directory: str) -> Dict[str, PipelineDefinition]:
    """All ``*.yml``/``*.yaml`` definitions in a directory, keyed by name."""
    definitions: Dict[str, PipelineDefinition] = {}
    root = Path(directory)
    if not root.is_dir():
        logger.warning(f"Pipeline directory {directory} does not exist")
        return definitions

    files: List[Path] = sorted(list(root.glob("*.yml")) + list(root.glob("*.yaml")))
    for path in files:
        definition = load_definition(str(path))
        if definition.name in definitions:
            raise DefinitionError(f"Pipeline '{definition.name}' is defined more than once")
        definitions[definition.name] = definition
    return definitions
