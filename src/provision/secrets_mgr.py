"""Secret lifecycle: generation, immutable versioning and reference hand-out.

Raw values live only in a SecretStore. Everything else (plans, state
snapshots, outputs, provider calls, logs) sees SecretToken references of
the form <name>@<version>. The one place a token turns back into a value is
resolve_runtime_environment(), used by hosting-platform bindings when they
inject environment variables into a consuming resource's runtime.
"""

import logging
import os
import secrets
import string
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Protocol

import yaml

from config import ConfigError
from provision.errors import SecretConflictError
from resources import SecretToken

logger = logging.getLogger(__name__)

DEFAULT_SPECIAL = '!#$%&*()-_=+[]{}<>:?'


class SecretValue:
    """Wrapper that keeps a secret out of repr(), str() and logs."""

    __slots__ = ('_value',)

    def __init__(self, value: str):
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return 'SecretValue(********)'

    __str__ = __repr__

    def __eq__(self, other: object) -> bool:
        return isinstance(other, SecretValue) and secrets.compare_digest(self._value, other._value)

    def __hash__(self) -> int:
        return hash(self._value)


@dataclass(frozen=True)
class SecretPolicy:
    """Composition policy for generated values.

    Attributes:
        length: Total length
        upper: Include A-Z
        lower: Include a-z
        digits: Include 0-9
        special: Include special characters
        override_special: Alphabet used for the special class
        min_per_class: Minimum characters drawn from each enabled class
    """
    length: int = 32
    upper: bool = True
    lower: bool = True
    digits: bool = True
    special: bool = True
    override_special: Optional[str] = None
    min_per_class: int = 1

    def classes(self) -> list[str]:
        pools = []
        if self.upper:
            pools.append(string.ascii_uppercase)
        if self.lower:
            pools.append(string.ascii_lowercase)
        if self.digits:
            pools.append(string.digits)
        if self.special:
            pools.append(self.override_special or DEFAULT_SPECIAL)
        return pools

    def validate(self) -> None:
        pools = self.classes()
        if not pools:
            raise ConfigError("Secret policy enables no character classes")
        if any(not p for p in pools):
            raise ConfigError("Secret policy has an empty special-character alphabet")
        if self.length < len(pools) * self.min_per_class:
            raise ConfigError(
                f"Secret length {self.length} too short for {len(pools)} classes "
                f"x {self.min_per_class} required characters"
            )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'length': self.length,
            'upper': self.upper,
            'lower': self.lower,
            'digits': self.digits,
            'special': self.special,
        }
        if self.override_special is not None:
            d['override_special'] = self.override_special
        if self.min_per_class != 1:
            d['min_per_class'] = self.min_per_class
        return d

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'SecretPolicy':
        if not data:
            return cls()
        return cls(
            length=int(data.get('length', 32)),
            upper=bool(data.get('upper', True)),
            lower=bool(data.get('lower', True)),
            digits=bool(data.get('digits', True)),
            special=bool(data.get('special', True)),
            override_special=data.get('override_special'),
            min_per_class=int(data.get('min_per_class', 1)),
        )


def generate_value(policy: SecretPolicy) -> SecretValue:
    """Generate a random value satisfying the policy."""
    policy.validate()
    rng = secrets.SystemRandom()
    pools = policy.classes()
    chars = [rng.choice(pool) for pool in pools for _ in range(policy.min_per_class)]
    alphabet = ''.join(pools)
    chars.extend(rng.choice(alphabet) for _ in range(policy.length - len(chars)))
    rng.shuffle(chars)
    return SecretValue(''.join(chars))


class SecretStore(Protocol):
    """Backend holding secret versions. Versions are numbered from 1."""

    def versions(self, name: str) -> list[int]:
        """Existing version numbers, ascending. Empty if the secret is unknown."""

    def add_version(self, name: str, value: SecretValue) -> int:
        """Append a new version and return its number."""

    def access(self, name: str, version: int) -> SecretValue:
        """Return the value of a version. Raises KeyError if absent."""


class MemorySecretStore:
    """Process-local secret store."""

    def __init__(self):
        self._data: dict[str, list[SecretValue]] = {}
        self._lock = threading.Lock()

    def versions(self, name: str) -> list[int]:
        with self._lock:
            return list(range(1, len(self._data.get(name, [])) + 1))

    def add_version(self, name: str, value: SecretValue) -> int:
        with self._lock:
            self._data.setdefault(name, []).append(value)
            return len(self._data[name])

    def access(self, name: str, version: int) -> SecretValue:
        with self._lock:
            values = self._data.get(name, [])
            if version < 1 or version > len(values):
                raise KeyError(f"{name}@{version}")
            return values[version - 1]


class FileSecretStore:
    """YAML-backed secret store, readable by the owner only.

    Layout: {secrets: {<name>: {<version>: <value>}}}. Existing versions
    are never rewritten.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, dict[int, str]]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in secret store {self.path}: {e}")
        return {
            name: {int(v): str(val) for v, val in (versions or {}).items()}
            for name, versions in (data.get('secrets') or {}).items()
        }

    def _write(self, data: dict[str, dict[int, str]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + '.tmp')
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            yaml.safe_dump({'secrets': data}, f, default_flow_style=False)
        os.replace(tmp, self.path)

    def versions(self, name: str) -> list[int]:
        with self._lock:
            return sorted(self._read().get(name, {}))

    def add_version(self, name: str, value: SecretValue) -> int:
        with self._lock:
            data = self._read()
            existing = data.setdefault(name, {})
            version = max(existing, default=0) + 1
            if version in existing:
                raise SecretConflictError(f"Secret version {name}@{version} already exists")
            existing[version] = value.reveal()
            self._write(data)
            return version

    def access(self, name: str, version: int) -> SecretValue:
        with self._lock:
            try:
                return SecretValue(self._read()[name][version])
            except KeyError:
                raise KeyError(f"{name}@{version}")


@dataclass
class SecretLifecycleManager:
    """Generates, versions and references managed secrets.

    Attributes:
        store: Backend holding the raw values
    """
    store: SecretStore = field(default_factory=MemorySecretStore)

    def __post_init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(name, threading.Lock())

    def latest(self, name: str) -> Optional[SecretToken]:
        """Reference to the newest version, or None if the secret has none."""
        versions = self.store.versions(name)
        if not versions:
            return None
        return SecretToken(name, versions[-1])

    def generate(self, name: str, policy: SecretPolicy) -> SecretToken:
        """Create the first version of a secret.

        Raises:
            SecretConflictError: If the secret already has a version
        """
        with self._lock_for(name):
            if self.store.versions(name):
                raise SecretConflictError(
                    f"Secret '{name}' already has a version; use rotate to replace it"
                )
            return self._add(name, policy)

    def ensure(self, name: str, policy: SecretPolicy) -> tuple[SecretToken, bool]:
        """Return the current version, generating the first one if needed.

        Returns:
            (token, created) tuple. created is False when a version existed.
        """
        with self._lock_for(name):
            current = self.latest(name)
            if current is not None:
                logger.debug("Secret '%s' already at version %d, nothing to generate",
                             name, current.version)
                return current, False
            return self._add(name, policy), True

    def rotate(self, name: str, policy: SecretPolicy) -> SecretToken:
        """Append a new version. Earlier versions stay intact."""
        with self._lock_for(name):
            token = self._add(name, policy)
            logger.info("Rotated secret '%s' to version %d", name, token.version)
            return token

    def _add(self, name: str, policy: SecretPolicy) -> SecretToken:
        version = self.store.add_version(name, generate_value(policy))
        logger.info("Stored secret '%s' version %d", name, version)
        return SecretToken(name, version)

    def resolve_runtime_environment(self, env: dict[str, Any]) -> dict[str, str]:
        """Resolve tokens in an environment mapping for a hosting runtime.

        Only hosting-platform bindings (the local compute-service client
        among them) call this, at the moment they hand environment
        variables to the consuming workload. The result must not be
        logged or persisted.

        Raises:
            KeyError: If a token points at a missing version
        """
        resolved = {}
        for key, value in env.items():
            if isinstance(value, SecretToken):
                resolved[key] = self.store.access(value.name, value.version).reveal()
            else:
                resolved[key] = str(value)
        return resolved
