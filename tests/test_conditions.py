import pytest

from engine.pipeline.conditions import (
    AllOf,
    AllPresent,
    AnyOf,
    Flag,
    Not,
    condition_from_config,
    condition_to_config,
    evaluate,
)
from engine.pipeline.environment import Environment
from engine.pipeline.exceptions import DefinitionError


def test_all_present_requires_every_key():
    condition = AllPresent("REGISTRY", "REGISTRY_USER")
    assert condition.is_satisfied({"REGISTRY": "r.example", "REGISTRY_USER": "ci"})
    assert not condition.is_satisfied({"REGISTRY": "r.example"})


def test_all_present_treats_empty_value_as_absent():
    assert not AllPresent("STAGING_URL").is_satisfied({"STAGING_URL": ""})


@pytest.mark.parametrize("value,expected", [
    ("true", True),
    ("TRUE", True),
    ("1", True),
    (" True ", True),
    ("false", False),
    ("yes", False),
    ("0", False),
    ("", False),
])
def test_flag_parsing(value, expected):
    assert Flag("RUN_DAST").is_satisfied({"RUN_DAST": value}) is expected


def test_flag_missing_key_is_false():
    assert not Flag("RUN_DAST").is_satisfied({})


def test_composition_operators():
    env = {"A": "x", "FLAG": "false"}
    assert (AllPresent("A") & ~Flag("FLAG")).is_satisfied(env)
    assert (AllPresent("B") | AllPresent("A")).is_satisfied(env)
    assert not (AllPresent("A") & AllPresent("B")).is_satisfied(env)


def test_no_condition_is_always_eligible():
    assert evaluate(None, Environment())


def test_evaluate_against_environment_snapshot():
    env = Environment.assemble({"STAGING_URL": "http://localhost:8080"})
    assert evaluate(AllPresent("STAGING_URL"), env)
    assert not evaluate(AllPresent("NEXUS_URL"), env)


def test_condition_from_config_nested():
    condition = condition_from_config({
        "all": [
            {"all_present": ["STAGING_URL"]},
            {"not": {"flag": "SKIP_DAST"}},
        ]
    })
    assert isinstance(condition, AllOf)
    assert condition.is_satisfied({"STAGING_URL": "http://x"})
    assert not condition.is_satisfied({"STAGING_URL": "http://x", "SKIP_DAST": "1"})


def test_condition_from_config_accepts_single_key_string():
    condition = condition_from_config({"all_present": "SONAR_HOST_URL"})
    assert condition == AllPresent("SONAR_HOST_URL")


def test_condition_config_round_trip_keeps_structure():
    original = AnyOf((AllPresent("A", "B"), Not(Flag("C"))))
    assert condition_from_config(condition_to_config(original)) == original


@pytest.mark.parametrize("config", [
    {"unknown": "X"},
    {"all_present": []},
    {"flag": ["A", "B"]},
    {"all": []},
    {"all_present": "A", "flag": "B"},
    "A",
])
def test_condition_from_config_rejects_bad_shapes(config):
    with pytest.raises(DefinitionError):
        condition_from_config(config)


def test_describe_is_readable():
    condition = AllPresent("A") & ~Flag("B")
    assert condition.describe() == "(all_present(A) and not flag(B))"
