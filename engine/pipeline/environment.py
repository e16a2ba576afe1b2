"""
Read-only environment snapshot shared by every stage of a run.
"""
import re
from types import MappingProxyType
from typing import Dict, Iterator, Mapping, Optional

_SECRET_KEY = re.compile(r"(PASSWORD|PASSWD|SECRET|TOKEN|API_KEY|CREDENTIAL)", re.IGNORECASE)
MASK = "****"


class Environment(Mapping):
    """Immutable mapping of string names to string values.

    Built once at pipeline start from declared defaults plus external
    overrides. ``with_overrides`` returns a new view for stage-local values;
    the original snapshot never changes.
    """

    def __init__(self, values: Optional[Mapping[str, str]] = None,
                 secret_values: Optional[frozenset] = None):
        cleaned: Dict[str, str] = {}
        for key, value in (values or {}).items():
            if value is None:
                continue
            cleaned[str(key)] = str(value)
        self._values = MappingProxyType(cleaned)
        self._secret_values = secret_values or frozenset()

    @classmethod
    def assemble(cls, defaults: Optional[Mapping[str, str]] = None,
                 overrides: Optional[Mapping[str, str]] = None) -> "Environment":
        """Merge declared defaults with externally supplied overrides."""
        merged: Dict[str, str] = dict(defaults or {})
        for key, value in (overrides or {}).items():
            if value is None:
                continue
            merged[key] = value
        secrets = frozenset(
            str(value) for key, value in merged.items()
            if value and _SECRET_KEY.search(key)
        )
        return cls(merged, secrets)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"Environment({self.redacted()!r})"

    def has(self, key: str) -> bool:
        """True only when the key exists with a non-empty value."""
        return bool(self._values.get(key))

    def with_overrides(self, overrides: Optional[Mapping[str, str]] = None,
                       secrets: Optional[Mapping[str, str]] = None) -> "Environment":
        """Return a new view with stage-local values layered on top."""
        merged = dict(self._values)
        merged.update({k: v for k, v in (overrides or {}).items() if v is not None})
        merged.update({k: v for k, v in (secrets or {}).items() if v is not None})
        secret_values = set(self._secret_values)
        secret_values.update(v for v in (secrets or {}).values() if v)
        secret_values.update(
            v for k, v in (overrides or {}).items() if v and _SECRET_KEY.search(k)
        )
        return Environment(merged, frozenset(secret_values))

    @property
    def secret_values(self) -> frozenset:
        return self._secret_values

    def mask(self, text: str) -> str:
        """Replace every known secret value in ``text``."""
        if not text:
            return text
        for secret in sorted(self._secret_values, key=len, reverse=True):
            text = text.replace(secret, MASK)
        return text

    def redacted(self) -> Dict[str, str]:
        """Copy safe for logging."""
        return {
            key: (MASK if _SECRET_KEY.search(key) or value in self._secret_values else value)
            for key, value in self._values.items()
        }

    def as_dict(self) -> Dict[str, str]:
        return dict(self._values)
