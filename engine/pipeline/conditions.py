"""
Declarative stage conditions.

A condition is a value describing when a stage is eligible to run. It is
evaluated against the run's environment snapshot and has no side effects.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from .exceptions import DefinitionError

TRUTHY = ("true", "1")


class Condition(ABC):
    """Predicate over a key-value environment"""

    @abstractmethod
    def is_satisfied(self, environment: Mapping[str, str]) -> bool:
        pass

    @abstractmethod
    def describe(self) -> str:
        pass

    def __and__(self, other: "Condition") -> "Condition":
        return AllOf((self, other))

    def __or__(self, other: "Condition") -> "Condition":
        return AnyOf((self, other))

    def __invert__(self) -> "Condition":
        return Not(self)


@dataclass(frozen=True)
class AllPresent(Condition):
    """Every key exists with a non-empty value"""
    keys: Tuple[str, ...]

    def __init__(self, *keys: str):
        object.__setattr__(self, "keys", tuple(keys))

    def is_satisfied(self, environment: Mapping[str, str]) -> bool:
        return all(bool(environment.get(key)) for key in self.keys)

    def describe(self) -> str:
        return f"all_present({', '.join(self.keys)})"


@dataclass(frozen=True)
class Flag(Condition):
    """Boolean parse of one key: "true"/"1" in any case; anything else is false"""
    key: str

    def is_satisfied(self, environment: Mapping[str, str]) -> bool:
        value = environment.get(self.key)
        if value is None:
            return False
        return value.strip().lower() in TRUTHY

    def describe(self) -> str:
        return f"flag({self.key})"


@dataclass(frozen=True)
class AllOf(Condition):
    conditions: Tuple[Condition, ...]

    def is_satisfied(self, environment: Mapping[str, str]) -> bool:
        return all(condition.is_satisfied(environment) for condition in self.conditions)

    def describe(self) -> str:
        return "(" + " and ".join(c.describe() for c in self.conditions) + ")"


@dataclass(frozen=True)
class AnyOf(Condition):
    conditions: Tuple[Condition, ...]

    def is_satisfied(self, environment: Mapping[str, str]) -> bool:
        return any(condition.is_satisfied(environment) for condition in self.conditions)

    def describe(self) -> str:
        return "(" + " or ".join(c.describe() for c in self.conditions) + ")"


@dataclass(frozen=True)
class Not(Condition):
    condition: Condition

    def is_satisfied(self, environment: Mapping[str, str]) -> bool:
        return not self.condition.is_satisfied(environment)

    def describe(self) -> str:
        return f"not {self.condition.describe()}"


def evaluate(condition: Optional[Condition], environment: Mapping[str, str]) -> bool:
    """Decide whether a stage is eligible; no condition means always eligible."""
    if condition is None:
        return True
    return condition.is_satisfied(environment)


def condition_from_config(config: Any) -> Optional[Condition]:
    """
    Build a condition from its YAML form.

    Supported shapes:
        {"all_present": ["REGISTRY", "REGISTRY_USER"]}
        {"flag": "RUN_DAST"}
        {"all": [<condition>, ...]}
        {"any": [<condition>, ...]}
        {"not": <condition>}
    """
    if config is None:
        return None
    if not isinstance(config, dict) or len(config) != 1:
        raise DefinitionError(f"Condition must be a mapping with exactly one key, got {config!r}")

    kind, value = next(iter(config.items()))
    if kind == "all_present":
        keys = [value] if isinstance(value, str) else list(value or [])
        if not keys:
            raise DefinitionError("all_present needs at least one key")
        return AllPresent(*keys)
    if kind == "flag":
        if not isinstance(value, str):
            raise DefinitionError("flag takes a single environment key")
        return Flag(value)
    if kind in ("all", "any"):
        children = tuple(condition_from_config(item) for item in (value or []))
        if not children:
            raise DefinitionError(f"'{kind}' needs at least one condition")
        return AllOf(children) if kind == "all" else AnyOf(children)
    if kind == "not":
        return Not(condition_from_config(value))
    raise DefinitionError(f"Unknown condition type '{kind}'")


def condition_to_config(condition: Optional[Condition]) -> Optional[Dict[str, Any]]:
    if condition is None:
        return None
    if isinstance(condition, AllPresent):
        return {"all_present": list(condition.keys)}
    if isinstance(condition, Flag):
        return {"flag": condition.key}
    if isinstance(condition, AllOf):
        return {"all": [condition_to_config(c) for c in condition.conditions]}
    if isinstance(condition, AnyOf):
        return {"any": [condition_to_config(c) for c in condition.conditions]}
    if isinstance(condition, Not):
        return {"not": condition_to_config(condition.condition)}
    raise TypeError(f"Unsupported condition {condition!r}")
