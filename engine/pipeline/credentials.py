"""
Credential resolution and per-stage binding.

Secrets are looked up by id when the stage that needs them starts and are
only visible inside that stage's environment view.
"""
import os
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Mapping, Optional

from .exceptions import CredentialNotFound, DefinitionError
from utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Credential:
    """A named secret: username/password pair or a single token"""
    credential_id: str
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    token: Optional[str] = field(default=None, repr=False)

    @property
    def secret(self) -> str:
        return self.token if self.token is not None else (self.password or "")

    def __repr__(self) -> str:
        return f"Credential(id={self.credential_id!r}, username={self.username!r}, secret=****)"


@dataclass(frozen=True)
class CredentialBinding:
    """Maps a credential onto stage-local environment variable names"""
    credential_id: str
    username_variable: Optional[str] = None
    password_variable: Optional[str] = None
    token_variable: Optional[str] = None

    @classmethod
    def from_config(cls, config: Mapping[str, str]) -> "CredentialBinding":
        if "id" not in config:
            raise DefinitionError(f"Credential binding needs an 'id': {dict(config)!r}")
        return cls(
            credential_id=config["id"],
            username_variable=config.get("username_variable"),
            password_variable=config.get("password_variable"),
            token_variable=config.get("token_variable"),
        )

    def variables_for(self, credential: Credential) -> Dict[str, str]:
        values: Dict[str, str] = {}
        if self.username_variable and credential.username is not None:
            values[self.username_variable] = credential.username
        if self.password_variable and credential.password is not None:
            values[self.password_variable] = credential.password
        if self.token_variable:
            values[self.token_variable] = credential.secret
        return values

    def is_satisfied_by(self, credential: Credential) -> bool:
        """Every variable this binding names would get a non-empty value."""
        values = self.variables_for(credential)
        wanted = [name for name in (self.username_variable, self.password_variable, self.token_variable) if name]
        return all(values.get(name) for name in wanted)


class SecretStore(ABC):
    """Source of credentials resolved by id"""

    @abstractmethod
    def resolve(self, credential_id: str) -> Credential:
        pass


class StaticSecretStore(SecretStore):
    """In-memory store, used for tests and programmatic runs"""

    def __init__(self, credentials: Optional[List[Credential]] = None):
        self._credentials = {c.credential_id: c for c in (credentials or [])}

    def add(self, credential: Credential) -> None:
        self._credentials[credential.credential_id] = credential

    def resolve(self, credential_id: str) -> Credential:
        try:
            return self._credentials[credential_id]
        except KeyError:
            raise CredentialNotFound(credential_id) from None


class EnvironmentSecretStore(SecretStore):
    """
    Reads credentials from process environment variables.

    A credential ``nexus-creds`` with prefix ``PIPELINE_SECRET_`` is read from
    ``PIPELINE_SECRET_NEXUS_CREDS_USERNAME``, ``..._PASSWORD`` and ``..._TOKEN``.
    """

    def __init__(self, prefix: str = "PIPELINE_SECRET_", source: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self._source = source

    def _key(self, credential_id: str, suffix: str) -> str:
        normalized = "".join(ch if ch.isalnum() else "_" for ch in credential_id).upper()
        return f"{self.prefix}{normalized}_{suffix}"

    def resolve(self, credential_id: str) -> Credential:
        source = self._source if self._source is not None else os.environ
        username = source.get(self._key(credential_id, "USERNAME"))
        password = source.get(self._key(credential_id, "PASSWORD"))
        token = source.get(self._key(credential_id, "TOKEN"))
        if username is None and password is None and token is None:
            raise CredentialNotFound(credential_id)
        return Credential(credential_id, username=username, password=password, token=token)


class ChainedSecretStore(SecretStore):
    """First store that knows a credential wins"""

    def __init__(self, *stores: Optional[SecretStore]):
        self.stores = [store for store in stores if store is not None]

    def resolve(self, credential_id: str) -> Credential:
        for store in self.stores:
            try:
                return store.resolve(credential_id)
            except CredentialNotFound:
                continue
        raise CredentialNotFound(credential_id)


def missing_credentials(store: Optional[SecretStore], bindings: List[CredentialBinding]) -> List[str]:
    """Ids of bindings the store cannot fully satisfy. Nothing resolved here is kept."""
    missing: List[str] = []
    for binding in bindings:
        try:
            credential = store.resolve(binding.credential_id) if store is not None else None
        except CredentialNotFound:
            credential = None
        if credential is None or not binding.is_satisfied_by(credential):
            missing.append(binding.credential_id)
    return missing


@asynccontextmanager
async def bound_credentials(store: Optional[SecretStore],
                            bindings: List[CredentialBinding]) -> AsyncIterator[Dict[str, str]]:
    """Resolve bindings for the duration of one stage body.

    Yields the stage-local variables; they are cleared when the block exits,
    whichever way it exits.
    """
    variables: Dict[str, str] = {}
    if bindings and store is None:
        raise CredentialNotFound(bindings[0].credential_id)
    try:
        for binding in bindings:
            credential = store.resolve(binding.credential_id)
            variables.update(binding.variables_for(credential))
            logger.debug(f"Bound credential '{binding.credential_id}'")
        yield variables
    finally:
        variables.clear()
