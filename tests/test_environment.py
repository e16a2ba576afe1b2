import pytest

from engine.pipeline.environment import MASK, Environment


def test_overrides_win_over_defaults():
    env = Environment.assemble({"STAGE": "dev", "PORT": "8080"}, {"STAGE": "staging"})
    assert env["STAGE"] == "staging"
    assert env["PORT"] == "8080"


def test_none_values_are_dropped():
    env = Environment.assemble({"A": "1"}, {"A": None, "B": None})
    assert env["A"] == "1"
    assert "B" not in env


def test_snapshot_is_read_only():
    env = Environment.assemble({"A": "1"})
    with pytest.raises(TypeError):
        env["A"] = "2"


def test_has_requires_non_empty_value():
    env = Environment.assemble({"EMPTY": "", "FULL": "x"})
    assert not env.has("EMPTY")
    assert env.has("FULL")
    assert not env.has("MISSING")


def test_with_overrides_leaves_original_untouched():
    env = Environment.assemble({"A": "1"})
    stage_env = env.with_overrides({"A": "2", "B": "3"})
    assert stage_env["A"] == "2"
    assert stage_env["B"] == "3"
    assert env["A"] == "1"
    assert "B" not in env


def test_secret_like_keys_are_masked():
    env = Environment.assemble({"REGISTRY_PASSWORD": "hunter2", "SONAR_TOKEN": "tok-123", "USER": "ci"})
    assert env.mask("login ci hunter2 tok-123") == f"login ci {MASK} {MASK}"
    redacted = env.redacted()
    assert redacted["REGISTRY_PASSWORD"] == MASK
    assert redacted["SONAR_TOKEN"] == MASK
    assert redacted["USER"] == "ci"


def test_bound_secrets_are_masked_in_stage_view():
    env = Environment.assemble({"USER": "ci"})
    stage_env = env.with_overrides(secrets={"NEXUS_AUTH": "s3cr3t"})
    assert stage_env.mask("auth s3cr3t") == f"auth {MASK}"
    assert env.mask("auth s3cr3t") == "auth s3cr3t"
