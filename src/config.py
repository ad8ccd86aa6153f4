"""Engine settings management.

Settings are loaded from a YAML file:
- $TOPOLOGY_CONFIG if set (must exist)
- topology.yaml in the current working directory
- built-in defaults otherwise

Environment variables override file values, CLI flags override both.
The merge order is: defaults → file → environment → flags.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

CONFIG_ENV_VAR = 'TOPOLOGY_CONFIG'
DEFAULT_CONFIG_NAME = 'topology.yaml'


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient provider failures.

    Attributes:
        max_attempts: Total attempts including the first call
        base_delay: Delay before the first retry, in seconds
        max_delay: Cap applied after doubling
    """
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay to sleep after the given (1-based) failed attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'RetryPolicy':
        if not data:
            return cls()
        return cls(
            max_attempts=int(data.get('max_attempts', 5)),
            base_delay=float(data.get('base_delay', 1.0)),
            max_delay=float(data.get('max_delay', 30.0)),
        )


@dataclass
class ConsistencyOverride:
    """Per-kind override of readiness wait parameters."""
    timeout: Optional[float] = None
    interval: Optional[float] = None
    min_delay: Optional[float] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'ConsistencyOverride':
        return cls(
            timeout=data.get('timeout'),
            interval=data.get('interval'),
            min_delay=data.get('min_delay'),
        )


@dataclass
class EngineSettings:
    """Settings for a provisioning run.

    Attributes:
        parallelism: Max concurrent resource operations within a wave
        operation_timeout: Seconds allowed per resource-level operation
        poll_interval: Default readiness polling interval
        lock_timeout: Seconds to wait for the state lock
        refresh: Read live resources at the start of a run (drift detection)
        state_dir: Root directory for persisted state snapshots
        retry: Backoff policy for transient provider failures
        consistency: Per-kind readiness overrides keyed by kind value
        source_path: File the settings were loaded from (for debugging)
    """
    parallelism: int = 4
    operation_timeout: float = 900.0
    poll_interval: float = 5.0
    lock_timeout: float = 60.0
    refresh: bool = True
    state_dir: Path = field(default_factory=lambda: Path.cwd() / '.states')
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    consistency: dict[str, ConsistencyOverride] = field(default_factory=dict)
    source_path: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_dir, str):
            self.state_dir = Path(self.state_dir)
        if self.parallelism < 1:
            raise ConfigError(f"parallelism must be >= 1, got {self.parallelism}")

    @classmethod
    def from_dict(cls, data: Optional[dict], source_path: Optional[Path] = None) -> 'EngineSettings':
        """Create settings from a parsed YAML mapping."""
        if not data:
            return cls(source_path=source_path)
        if not isinstance(data, dict):
            raise ConfigError(f"Settings {source_path or ''} must be a YAML object (dict)")

        kwargs: dict[str, Any] = {}
        for key in ('parallelism',):
            if key in data:
                kwargs[key] = int(data[key])
        for key in ('operation_timeout', 'poll_interval', 'lock_timeout'):
            if key in data:
                kwargs[key] = float(data[key])
        if 'refresh' in data:
            kwargs['refresh'] = bool(data['refresh'])
        if 'state_dir' in data:
            state_dir = Path(data['state_dir'])
            # Relative paths are anchored at the settings file
            if not state_dir.is_absolute() and source_path is not None:
                state_dir = source_path.parent / state_dir
            kwargs['state_dir'] = state_dir

        consistency = {}
        for kind, override in (data.get('consistency') or {}).items():
            consistency[str(kind)] = ConsistencyOverride.from_dict(override or {})

        return cls(
            retry=RetryPolicy.from_dict(data.get('retry')),
            consistency=consistency,
            source_path=source_path,
            **kwargs,
        )

    def apply_env(self, environ: Optional[dict] = None) -> 'EngineSettings':
        """Apply TOPOLOGY_* environment overrides in place."""
        env = os.environ if environ is None else environ
        try:
            if parallelism := env.get('TOPOLOGY_PARALLELISM'):
                self.parallelism = int(parallelism)
            if op_timeout := env.get('TOPOLOGY_OPERATION_TIMEOUT'):
                self.operation_timeout = float(op_timeout)
        except ValueError as e:
            raise ConfigError(f"Invalid TOPOLOGY_* environment override: {e}")
        if state_dir := env.get('TOPOLOGY_STATE_DIR'):
            self.state_dir = Path(state_dir)
        return self


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding='utf-8') as f:
            return yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")


def find_settings_file(cwd: Optional[Path] = None) -> Optional[Path]:
    """Discover the settings file.

    Resolution order:
    1. $TOPOLOGY_CONFIG environment variable
    2. topology.yaml in the working directory
    """
    if env_path := os.environ.get(CONFIG_ENV_VAR):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"{CONFIG_ENV_VAR}={env_path} does not exist")

    candidate = (cwd or Path.cwd()) / DEFAULT_CONFIG_NAME
    if candidate.exists():
        return candidate
    return None


def load_settings(path: Optional[str] = None) -> EngineSettings:
    """Load engine settings with environment overrides applied.

    Args:
        path: Explicit settings file. If None, uses auto-discovery.

    Raises:
        ConfigError: If the file is missing or invalid
    """
    if path:
        settings_file: Optional[Path] = Path(path)
        if not settings_file.exists():
            raise ConfigError(f"Settings file not found: {settings_file}")
    else:
        settings_file = find_settings_file()

    if settings_file is None:
        settings = EngineSettings()
    else:
        settings = EngineSettings.from_dict(_parse_yaml(settings_file), source_path=settings_file)
    return settings.apply_env()
