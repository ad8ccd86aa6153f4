"""Shared pytest fixtures for topology-driver tests."""

import sys
import threading
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import EngineSettings, RetryPolicy
from providers.base import ProviderRegistry
from provision.errors import ResourceNotFound
from provision.events import EventBus
from provision.graph import ResourceGraph
from provision.reconciler import Reconciler
from provision.secrets_mgr import MemorySecretStore, SecretLifecycleManager
from provision.state import StateStore
from resources import (
    KIND_TRAITS,
    ConsistencyMode,
    ResourceKind,
    ResourceSpec,
    SecretToken,
    Timeouts,
)


class FakeClock:
    """Monotonic clock advanced only by sleep()."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


def _plain(value):
    if isinstance(value, SecretToken):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


class RecordingProvider:
    """In-memory provider client that records calls and injects failures.

    Observed attributes echo the desired ones plus a placeholder for every
    output the kind declares.
    """

    def __init__(self, kind: ResourceKind):
        self.kind = kind
        self.resources: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.received: dict[str, dict] = {}
        self._lock = threading.Lock()

    def fail(self, op: str, resource_id: str, *errors: Exception) -> None:
        """Raise errors, in order, from the next calls of op on resource_id."""
        self.failures[(op, resource_id)] = list(errors)

    def _record(self, op: str, resource_id: str) -> None:
        with self._lock:
            self.calls.append((op, resource_id))
            pending = self.failures.get((op, resource_id))
            error = pending.pop(0) if pending else None
        if error is not None:
            raise error

    def _observe(self, spec: ResourceSpec) -> dict:
        observed = _plain(spec.attributes)
        observed['id'] = f"{self.kind.value}/{spec.id}"
        for output in KIND_TRAITS[self.kind].outputs:
            observed.setdefault(output, f"{spec.id}-{output}")
        return observed

    def create(self, spec: ResourceSpec) -> dict:
        self._record('create', spec.id)
        self.received[spec.id] = dict(spec.attributes)
        self.resources[spec.id] = self._observe(spec)
        return dict(self.resources[spec.id])

    def read(self, resource_id: str) -> dict:
        self._record('read', resource_id)
        if resource_id not in self.resources:
            raise ResourceNotFound(resource_id)
        return dict(self.resources[resource_id])

    def update(self, resource_id: str, spec: ResourceSpec) -> dict:
        self._record('update', resource_id)
        if resource_id not in self.resources:
            raise ResourceNotFound(resource_id)
        self.received[resource_id] = dict(spec.attributes)
        self.resources[resource_id] = self._observe(spec)
        return dict(self.resources[resource_id])

    def destroy(self, resource_id: str) -> None:
        self._record('destroy', resource_id)
        self.resources.pop(resource_id, None)

    def ops(self, op: str) -> list[str]:
        return [rid for o, rid in self.calls if o == op]


class ReadinessProvider(RecordingProvider):
    """RecordingProvider with a readiness predicate driven by a clock.

    ready_after maps resource id -> seconds after create before is_ready()
    holds (None: never). Unlisted resources are ready immediately.
    """

    def __init__(self, kind: ResourceKind, clock: FakeClock):
        super().__init__(kind)
        self.clock = clock
        self.ready_after: dict[str, object] = {}
        self.created_at: dict[str, float] = {}
        self.checks: list[str] = []

    def create(self, spec: ResourceSpec) -> dict:
        observed = super().create(spec)
        self.created_at[spec.id] = self.clock()
        return observed

    def is_ready(self, resource_id: str) -> bool:
        self.checks.append(resource_id)
        delay = self.ready_after.get(resource_id, 0.0)
        if delay is None:
            return False
        return self.clock() - self.created_at.get(resource_id, 0.0) >= delay


class Harness:
    """Everything a reconciler test needs, wired against fakes."""

    def __init__(self, tmp_path: Path, clock: FakeClock):
        self.tmp_path = tmp_path
        self.clock = clock
        self.providers: dict[ResourceKind, RecordingProvider] = {}
        self.registry = ProviderRegistry()
        for kind in ResourceKind:
            if kind == ResourceKind.SECRET_VERSION:
                continue
            if KIND_TRAITS[kind].consistency == ConsistencyMode.PREDICATE:
                client = ReadinessProvider(kind, clock)
            else:
                client = RecordingProvider(kind)
            self.providers[kind] = client
            self.registry.register(kind, client)
        self.secret_store = MemorySecretStore()
        self.secrets = SecretLifecycleManager(self.secret_store)
        self.settings = EngineSettings(
            parallelism=4,
            state_dir=tmp_path / 'states',
            retry=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=4.0),
            refresh=False,
            lock_timeout=1.0,
        )

    def provider(self, kind: str) -> RecordingProvider:
        return self.providers[ResourceKind(kind)]

    def all_calls(self) -> list[tuple[str, str]]:
        return [call for p in self.providers.values() for call in p.calls]

    def store(self, graph: ResourceGraph) -> StateStore:
        return StateStore(self.settings.state_dir, graph.name, self.settings.lock_timeout)

    def reconciler(self, graph: ResourceGraph, **kwargs) -> Reconciler:
        kwargs.setdefault('events', EventBus())
        return Reconciler(
            graph=graph,
            providers=self.registry,
            store=self.store(graph),
            settings=self.settings,
            secrets=self.secrets,
            sleep=self.clock.sleep,
            clock=self.clock,
            **kwargs,
        )


def make_spec(resource_id, kind, attributes=None, depends_on=None, timeouts=None) -> ResourceSpec:
    """Build a ResourceSpec from plain values."""
    return ResourceSpec(
        id=resource_id,
        kind=ResourceKind(kind),
        attributes=attributes or {},
        depends_on=list(depends_on or []),
        timeouts=timeouts or Timeouts(),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def harness(tmp_path, clock):
    return Harness(tmp_path, clock)
