"""
The standard delivery pipeline:

Build -> Dependency Check -> SonarQube Analysis -> Quality Gate -> Docker Build
-> Docker Push -> Publish Artifact -> Deploy Staging -> DAST, with a post
block that always removes the staging container.
"""
from typing import Dict, Optional

from ..config import Settings, settings as default_settings
from ..pipeline.conditions import AllPresent
from ..pipeline.credentials import CredentialBinding
from ..pipeline.engine import Options, PipelineDefinition
from ..pipeline.stage import PostBlock, Stage
from ..pipeline.steps import (
    ArchiveStep,
    HealthCheckStep,
    PublishStep,
    QualityGateStep,
    ShellStep,
    TeardownStep,
)
from . import commands

REGISTRY_KEYS = ("REGISTRY", "REGISTRY_USER", "REGISTRY_PASSWORD")
NEXUS_KEYS = ("NEXUS_URL", "NEXUS_REPOSITORY", "NEXUS_USERNAME", "NEXUS_PASSWORD")

# Secret store id; settings.sonar_token backs it when the store has no entry
SONAR_CREDENTIAL = "sonar"
SONAR_KEYS = ("SONAR_HOST_URL",)
STAGING_KEYS = ("STAGING_URL",)

TEST_REPORTS = "target/surefire-reports/*.xml"
DEPENDENCY_REPORTS = ("dependency-check-report/*.html", "dependency-check-report/*.xml")
ZAP_REPORTS = ("zap-report.html", "zap-report.xml", "zap-report.json")


def build_delivery_pipeline(config: Optional[Settings] = None, name: str = "delivery",
                            image_repository: Optional[str] = None) -> PipelineDefinition:
    """
    Build the delivery pipeline definition from settings.

    The revision tag comes from checkout (`git rev-parse HEAD` captured as
    GIT_COMMIT). Sonar stages run when SONAR_HOST_URL is set, in settings or
    as a run override, and a `sonar` credential supplies the token.
    """
    config = config or default_settings
    project = config.project_name
    repository = image_repository or project
    revision = "${GIT_COMMIT}"
    container = config.staging_container_name
    local_tags = commands.image_tags(repository, revision)
    remote_tags = commands.image_tags(f"${{REGISTRY}}/{repository}", revision)

    sonar_token = CredentialBinding(SONAR_CREDENTIAL, token_variable="SONAR_TOKEN")

    build = Stage(
        name="Build",
        body=(ShellStep(command=tuple(commands.maven_build()), expect_artifacts=(TEST_REPORTS,)),),
        post=PostBlock(always=(ArchiveStep(patterns=(TEST_REPORTS, "target/*.jar"), label="build"),)),
    )

    dependency_check = Stage(
        name="Dependency Check",
        body=(ShellStep(command=tuple(commands.dependency_check(project, config.dependency_check_cvss_threshold))),),
        post=PostBlock(always=(ArchiveStep(patterns=DEPENDENCY_REPORTS, label="dependency-check"),)),
    )

    sonar = Stage(
        name="SonarQube Analysis",
        condition=AllPresent(*SONAR_KEYS),
        credentials=(sonar_token,),
        body=(ShellStep(command=tuple(commands.sonar_analysis(project))),),
    )

    quality_gate = Stage(
        name="Quality Gate",
        condition=AllPresent(*SONAR_KEYS),
        credentials=(sonar_token,),
        body=(QualityGateStep(
            project_key=project,
            timeout=float(config.quality_gate_timeout_seconds),
            report_task_path="target/sonar/report-task.txt",
        ),),
    )

    docker_build = Stage(
        name="Docker Build",
        body=(ShellStep(command=tuple(commands.docker_build(repository, revision))),),
    )

    push_steps = [ShellStep(command=tuple(commands.docker_login()), stdin="${REGISTRY_PASSWORD}")]
    for local, remote in zip(local_tags, remote_tags):
        push_steps.append(ShellStep(command=tuple(commands.docker_tag(local, remote))))
        push_steps.append(ShellStep(command=tuple(commands.docker_push(remote))))
    docker_push = Stage(
        name="Docker Push",
        condition=AllPresent(*REGISTRY_KEYS),
        body=tuple(push_steps),
        post=PostBlock(always=(ShellStep(command=tuple(commands.docker_logout()), tolerated_exit_codes=(1,)),)),
    )

    publish = Stage(
        name="Publish Artifact",
        condition=AllPresent(*NEXUS_KEYS),
        body=(PublishStep(pattern="target/*.jar"),),
    )

    deploy = Stage(
        name="Deploy Staging",
        condition=AllPresent(*STAGING_KEYS),
        body=(
            TeardownStep(container=container),
            ShellStep(command=tuple(commands.docker_run_detached(container, local_tags[0], config.staging_port))),
            HealthCheckStep(
                url="${STAGING_URL}",
                max_attempts=config.health_max_attempts,
                interval=config.health_interval_seconds,
            ),
        ),
    )

    dast = Stage(
        name="DAST",
        condition=AllPresent(*STAGING_KEYS),
        body=(ShellStep(
            command=tuple(commands.zap_baseline()),
            unstable_exit_codes=(commands.ZAP_EXIT_WARN,),
        ),),
        post=PostBlock(always=(ArchiveStep(patterns=ZAP_REPORTS, label="zap"),)),
    )

    environment: Dict[str, str] = {"IMAGE_REPOSITORY": repository}
    if config.sonar_host_url:
        environment["SONAR_HOST_URL"] = config.sonar_host_url

    return PipelineDefinition(
        name=name,
        stages=(build, dependency_check, sonar, quality_gate, docker_build,
                docker_push, publish, deploy, dast),
        options=Options(
            timeout_seconds=config.pipeline_timeout_seconds,
            allow_concurrent_runs=False,
            log_color=config.log_color,
            cleanup_grace_seconds=float(config.cleanup_grace_seconds),
        ),
        post=PostBlock(
            cleanup=(
                TeardownStep(container=container),
                ShellStep(command=("docker", "image", "prune", "-f"), tolerated_exit_codes=(1,)),
            ),
        ),
        environment=tuple(sorted(environment.items())),
        checkout=(ShellStep(command=tuple(commands.git_revision()), capture="GIT_COMMIT"),),
        lock_resource=container,
    )
