import os
import stat
import pytest
from unittest.mock import patch

from aiohttp.test_utils import TestServer

# Set test environment variables before importing app modules
os.environ["ALLOWED_ORIGINS"] = "http://localhost:3000"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_LEVEL"] = "INFO"


@pytest.fixture(autouse=True)
def mock_settings():
    """Mock settings for all tests."""
    with patch.dict(os.environ, {
        "ALLOWED_ORIGINS": "http://localhost:3000",
        "DATABASE_URL": "sqlite://",
    }):
        yield


@pytest.fixture
def workspace(tmp_path):
    """Empty working directory for a pipeline run."""
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def make_engine(tmp_path, workspace):
    """Factory for engines rooted in the test workspace."""
    from engine.pipeline import PipelineEngine, StaticSecretStore

    def _make(**kwargs):
        kwargs.setdefault("workdir", str(workspace))
        kwargs.setdefault("artifacts_dir", str(tmp_path / "archive"))
        kwargs.setdefault("secret_store", StaticSecretStore())
        kwargs.setdefault("project_name", "demo")
        return PipelineEngine(**kwargs)

    return _make


@pytest.fixture
async def serve():
    """Start aiohttp applications on local ports; all are closed after the test."""
    servers = []

    async def _serve(app):
        server = TestServer(app)
        await server.start_server()
        servers.append(server)
        return server

    yield _serve
    for server in servers:
        await server.close()


def write_script(path, body):
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def fake_docker(tmp_path, monkeypatch):
    """
    A ``docker`` executable on PATH that records its arguments.

    ``ps`` prints a container id once ``run -d`` has been called and until
    ``rm`` removes it, like a real daemon would for a named container.
    Scanner images write their reports into the working directory and exit
    with ``FAKE_DEPCHECK_EXIT`` / ``FAKE_ZAP_EXIT``.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    calls_log = tmp_path / "docker-calls.log"
    state = tmp_path / "docker-container"
    login_stdin = tmp_path / "docker-login-stdin"
    write_script(bin_dir / "docker", f"""
echo "$@" >> "{calls_log}"
case "$*" in
  *dependency-check:*)
    mkdir -p dependency-check-report
    echo '<html/>' > dependency-check-report/dependency-check-report.html
    exit ${{FAKE_DEPCHECK_EXIT:-0}} ;;
  *zap-baseline.py*)
    echo '<html/>' > zap-report.html
    exit ${{FAKE_ZAP_EXIT:-0}} ;;
esac
case "$1" in
  run) case " $* " in *" -d "*) echo running > "{state}" ;; esac; echo abc123 ;;
  ps) if [ -f "{state}" ]; then echo abc123; fi ;;
  login) cat > "{login_stdin}" ;;
  rm) if [ -f "{state}" ]; then rm -f "{state}"; else echo "Error: No such container: $3" >&2; exit 1; fi ;;
esac
exit 0
""")
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    class FakeDocker:
        log = calls_log
        container = state
        login_input = login_stdin

        @staticmethod
        def calls():
            if not calls_log.exists():
                return []
            return [line for line in calls_log.read_text().splitlines() if line]

        @staticmethod
        def start_container():
            state.write_text("running")

    return FakeDocker


@pytest.fixture
def make_script(tmp_path):
    """Write an executable shell script and return its path."""
    def _make(name, body):
        return write_script(tmp_path / name, body)
    return _make
