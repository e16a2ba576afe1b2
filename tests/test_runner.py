import time

import pytest

from engine.pipeline.environment import MASK, Environment
from engine.pipeline.exceptions import CommandTimeout
from engine.pipeline.runner import EXIT_NOT_FOUND, ExternalCommandRunner, split_command


def test_split_command():
    assert split_command("mvn -B 'clean verify'") == ["mvn", "-B", "clean verify"]
    assert split_command(["docker", "push", 1]) == ["docker", "push", "1"]


async def test_captures_output_and_exit_code():
    runner = ExternalCommandRunner()
    result = await runner.run(["sh", "-c", "echo out; echo err >&2; exit 3"])
    assert result.exit_code == 3
    assert not result.succeeded
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"


async def test_success():
    result = await ExternalCommandRunner().run("true")
    assert result.exit_code == 0
    assert result.succeeded


async def test_environment_layers(monkeypatch):
    monkeypatch.setenv("FROM_OS", "os")
    runner = ExternalCommandRunner(Environment.assemble({"FROM_PIPELINE": "pipeline", "SHARED": "pipeline"}))
    result = await runner.run(
        ["sh", "-c", 'echo "$FROM_OS $FROM_PIPELINE $SHARED"'],
        env_overrides={"SHARED": "step"},
    )
    assert result.stdout.strip() == "os pipeline step"


async def test_without_os_environment(monkeypatch):
    monkeypatch.setenv("FROM_OS", "os")
    runner = ExternalCommandRunner(Environment.assemble({"PATH": "/usr/bin:/bin"}), inherit_os_environ=False)
    result = await runner.run(["sh", "-c", 'echo "[$FROM_OS]"'])
    assert result.stdout.strip() == "[]"


async def test_workdir(tmp_path):
    (tmp_path / "marker.txt").write_text("here")
    result = await ExternalCommandRunner().run(["cat", "marker.txt"], workdir=str(tmp_path))
    assert result.stdout == "here"


async def test_stdin_data():
    result = await ExternalCommandRunner().run(["cat"], stdin_data="from stdin")
    assert result.stdout == "from stdin"


async def test_timeout_kills_process():
    runner = ExternalCommandRunner()
    started = time.monotonic()
    with pytest.raises(CommandTimeout) as exc_info:
        await runner.run(["sleep", "10"], timeout=0.3)
    assert time.monotonic() - started < 5
    assert exc_info.value.timeout == 0.3


async def test_default_timeout_applies():
    runner = ExternalCommandRunner(default_timeout=0.3)
    with pytest.raises(CommandTimeout):
        await runner.run(["sleep", "10"])


async def test_missing_executable_reports_127():
    result = await ExternalCommandRunner().run(["definitely-not-a-real-tool-xyz"])
    assert result.exit_code == EXIT_NOT_FOUND


async def test_secrets_are_masked_in_output():
    runner = ExternalCommandRunner(Environment.assemble({"REGISTRY_PASSWORD": "hunter2"}))
    result = await runner.run(["sh", "-c", 'echo "password is $REGISTRY_PASSWORD"'])
    assert "hunter2" not in result.stdout
    assert MASK in result.stdout


async def test_empty_command_rejected():
    with pytest.raises(ValueError):
        await ExternalCommandRunner().run([])


async def test_secret_store_variables_are_dropped(monkeypatch):
    monkeypatch.setenv("PIPELINE_SECRET_NEXUS_PASSWORD", "s3cret-pw")
    monkeypatch.setenv("FROM_OS", "os")
    result = await ExternalCommandRunner().run(
        ["sh", "-c", 'echo "[$PIPELINE_SECRET_NEXUS_PASSWORD] $FROM_OS"'],
    )
    assert result.stdout.strip() == "[] os"


async def test_custom_secret_prefix(monkeypatch):
    monkeypatch.setenv("VAULT_SONAR_TOKEN", "tok")
    runner = ExternalCommandRunner(secret_env_prefix="VAULT_")
    result = await runner.run(["sh", "-c", 'echo "[$VAULT_SONAR_TOKEN]"'])
    assert result.stdout.strip() == "[]"


async def test_timeout_error_masks_secrets():
    runner = ExternalCommandRunner(Environment.assemble({"SONAR_TOKEN": "tok-123-secret"}))
    with pytest.raises(CommandTimeout) as exc_info:
        await runner.run(["sh", "-c", "sleep 10", "x", "-Dsonar.token=tok-123-secret"], timeout=0.3)
    assert "tok-123-secret" not in str(exc_info.value)
    assert f"-Dsonar.token={MASK}" in exc_info.value.message
