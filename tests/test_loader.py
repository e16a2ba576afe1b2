from pathlib import Path

import pytest

from engine.pipeline.conditions import AllOf, AllPresent
from engine.pipeline.exceptions import DefinitionError
from engine.pipeline.loader import definition_from_dict, load_definition, load_definitions
from engine.pipeline.steps import (
    ArchiveStep,
    HealthCheckStep,
    PublishStep,
    QualityGateStep,
    ShellStep,
    TeardownStep,
)
from engine.pipeline.types import PipelineStatus, StageStatus

REPO_ROOT = Path(__file__).resolve().parent.parent


def test_bundled_definition_loads():
    definition = load_definition(str(REPO_ROOT / "pipelines" / "delivery.yml"))

    assert definition.name == "service-delivery"
    assert [s.name for s in definition.stages] == [
        "Build", "Dependency Check", "SonarQube Analysis", "Quality Gate", "Docker Build",
        "Docker Push", "Publish Artifact", "Deploy Staging", "DAST",
    ]
    assert definition.options.timeout_seconds == 45 * 60
    assert definition.lock_key == "service-staging"

    deploy = definition.stage("Deploy Staging")
    assert isinstance(deploy.body[0], TeardownStep)
    assert isinstance(deploy.body[2], HealthCheckStep)
    assert deploy.condition == AllPresent("STAGING_URL")

    dast = definition.stage("DAST")
    assert isinstance(dast.condition, AllOf)
    assert not dast.required
    assert dast.body[0].unstable_exit_codes == (2,)

    publish = definition.stage("Publish Artifact")
    assert isinstance(publish.body[0], PublishStep)
    assert publish.credentials[0].credential_id == "nexus"

    assert definition.checkout[0].capture == "GIT_COMMIT"
    assert "GIT_COMMIT" not in dict(definition.environment)
    push = [step.command for step in definition.stage("Docker Push").body]
    assert push[-2:] == [
        "docker tag ${IMAGE_REPOSITORY}:latest ${REGISTRY}/${IMAGE_REPOSITORY}:latest",
        "docker push ${REGISTRY}/${IMAGE_REPOSITORY}:latest",
    ]

    assert isinstance(definition.stage("Quality Gate").body[0], QualityGateStep)
    assert isinstance(definition.stage("Build").post.always[0], ArchiveStep)
    assert len(definition.post.cleanup) == 2


def test_step_shorthands():
    definition = definition_from_dict({
        "name": "demo",
        "stages": [{"name": "Build", "steps": ["make", {"sh": "make test"}, {"archive": "out/*.xml"}]}],
    })
    body = definition.stage("Build").body
    assert body[0] == ShellStep(command="make")
    assert body[1] == ShellStep(command="make test")
    assert body[2] == ArchiveStep(patterns=("out/*.xml",))


def test_options_defaults_and_seconds():
    definition = definition_from_dict({"name": "demo", "options": {"timeout_seconds": 90}})
    assert definition.options.timeout_seconds == 90
    assert definition.options.concurrency_policy == "queue"


@pytest.mark.parametrize("config", [
    {},
    {"name": "demo", "stages": {"Build": {}}},
    {"name": "demo", "stages": [{"steps": ["make"]}]},
    {"name": "demo", "stages": [{"name": "Build", "steps": [{"unknown": "x"}]}]},
    {"name": "demo", "stages": [{"name": "Build", "steps": [{"sh": {}}]}]},
    {"name": "demo", "stages": [{"name": "Build", "post": {"sometimes": []}}]},
    {"name": "demo", "stages": [{"name": "A"}, {"name": "A"}]},
    {"name": "demo", "options": {"concurrency_policy": "parallel"}},
])
def test_invalid_definitions(config):
    with pytest.raises(DefinitionError):
        definition_from_dict(config)


def test_invalid_yaml(tmp_path):
    path = tmp_path / "broken.yml"
    path.write_text("name: [unclosed")
    with pytest.raises(DefinitionError):
        load_definition(str(path))


def test_load_definitions_directory(tmp_path):
    (tmp_path / "a.yml").write_text("name: alpha\nstages:\n  - name: One\n    steps: ['true']\n")
    (tmp_path / "b.yaml").write_text("name: beta\nstages: []\n")
    (tmp_path / "notes.txt").write_text("ignored")

    definitions = load_definitions(str(tmp_path))
    assert sorted(definitions) == ["alpha", "beta"]


def test_duplicate_names_across_files(tmp_path):
    (tmp_path / "a.yml").write_text("name: same\n")
    (tmp_path / "b.yml").write_text("name: same\n")
    with pytest.raises(DefinitionError):
        load_definitions(str(tmp_path))


def test_missing_directory_is_empty(tmp_path):
    assert load_definitions(str(tmp_path / "missing")) == {}


async def test_yaml_pipeline_runs(tmp_path, make_engine, workspace):
    path = tmp_path / "demo.yml"
    path.write_text("""
name: demo
environment:
  GREETING: hello
stages:
  - name: Write
    steps:
      - sh: sh -c 'echo ${GREETING} > greeting.txt'
    post:
      always:
        - archive:
            patterns: greeting.txt
            label: greeting
  - name: Optional
    when:
      flag: RUN_OPTIONAL
    steps:
      - sh: "false"
post:
  cleanup:
    - sh: rm -f greeting.txt
""")
    result = await make_engine().run(load_definition(str(path)))

    assert result.status == PipelineStatus.SUCCESS
    assert result.stage("Optional").status == StageStatus.SKIPPED
    assert [a.label for a in result.artifacts] == ["greeting"]
    assert not (workspace / "greeting.txt").exists()
