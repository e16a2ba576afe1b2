"""
Command construction for the external tools of the delivery pipeline.

Only argument lists live here; running them is the engine's job.
"""
from typing import List, Optional

DEPENDENCY_CHECK_IMAGE = "owasp/dependency-check:latest"
ZAP_IMAGE = "ghcr.io/zaproxy/zaproxy:stable"

# zap-baseline.py exit codes: 1 = at least one FAIL, 2 = at least one WARN
ZAP_EXIT_FAIL = 1
ZAP_EXIT_WARN = 2


def git_revision(ref: str = "HEAD") -> List[str]:
    return ["git", "rev-parse", ref]


def maven_build(goals: str = "clean verify", settings_file: Optional[str] = None) -> List[str]:
    cmd = ["mvn", "-B"]
    if settings_file:
        cmd.extend(["-s", settings_file])
    cmd.extend(goals.split())
    return cmd


def sonar_analysis(project_key: str, host_url: str = "${SONAR_HOST_URL}",
                   token: str = "${SONAR_TOKEN}") -> List[str]:
    return [
        "mvn", "-B", "sonar:sonar",
        f"-Dsonar.projectKey={project_key}",
        f"-Dsonar.host.url={host_url}",
        f"-Dsonar.token={token}",
    ]


def dependency_check(project_name: str, cvss_threshold: float,
                     scan_path: str = ".", report_dir: str = "dependency-check-report",
                     use_docker: bool = True) -> List[str]:
    """
    OWASP Dependency-Check invocation

    The tool exits non-zero when a finding reaches ``cvss_threshold``;
    a threshold of 0 fails on any finding.
    """
    threshold = f"{cvss_threshold:g}"
    args = [
        "--project", project_name,
        "--scan", scan_path,
        "--format", "HTML",
        "--format", "XML",
        "--out", report_dir,
        "--failOnCVSS", threshold,
    ]
    if not use_docker:
        return ["dependency-check.sh"] + args
    return [
        "docker", "run", "--rm",
        "-v", "${WORKSPACE}:/src",
        "-w", "/src",
        DEPENDENCY_CHECK_IMAGE,
    ] + args


def image_tags(repository: str, revision: str) -> List[str]:
    """``{repository}:{revision}`` and ``{repository}:latest``."""
    return [f"{repository}:{revision}", f"{repository}:latest"]


def docker_build(repository: str, revision: str, context: str = ".") -> List[str]:
    cmd = ["docker", "build"]
    for tag in image_tags(repository, revision):
        cmd.extend(["-t", tag])
    cmd.append(context)
    return cmd


def docker_login(registry: str = "${REGISTRY}", username: str = "${REGISTRY_USER}") -> List[str]:
    return ["docker", "login", registry, "-u", username, "--password-stdin"]


def docker_tag(source: str, target: str) -> List[str]:
    return ["docker", "tag", source, target]


def docker_push(tag: str) -> List[str]:
    return ["docker", "push", tag]


def docker_logout(registry: str = "${REGISTRY}") -> List[str]:
    return ["docker", "logout", registry]


def docker_run_detached(container: str, image: str, host_port: int, container_port: int = 8080) -> List[str]:
    return ["docker", "run", "-d", "--name", container, "-p", f"{host_port}:{container_port}", image]


def zap_baseline(target_url: str = "${STAGING_URL}", report_prefix: str = "zap-report") -> List[str]:
    return [
        "docker", "run", "--rm", "--network", "host",
        "-v", "${WORKSPACE}:/zap/wrk:rw",
        ZAP_IMAGE,
        "zap-baseline.py",
        "-t", target_url,
        "-r", f"{report_prefix}.html",
        "-x", f"{report_prefix}.xml",
        "-J", f"{report_prefix}.json",
    ]
