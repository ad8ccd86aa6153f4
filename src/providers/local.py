"""Local simulation cloud.

Implements the provider client contract for every kind against a JSON
file (or memory), so graphs can be rehearsed end to end without cloud
credentials. Computed attributes mimic what the real APIs report, and
kinds with consistency lag can be told to stay unready for a number of
readiness checks.
"""

import hashlib
import ipaddress
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional

from providers.base import Observed, ProviderRegistry
from provision.errors import PermanentProviderError, ResourceNotFound
from resources import KIND_TRAITS, ConsistencyMode, ResourceKind, ResourceSpec, SecretToken

logger = logging.getLogger(__name__)

# Token-bearing env mapping -> plain values handed to the workload
RuntimeEnv = Callable[[dict], dict]


def _plain(value: Any) -> Any:
    """Store tokens as their string form, like a hosting platform binding would."""
    if isinstance(value, SecretToken):
        return str(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _digest(*parts: Any) -> str:
    return hashlib.sha256(json.dumps(parts, sort_keys=True, default=str).encode()).hexdigest()


class LocalCloud:
    """Backing store shared by all LocalProvider clients.

    Attributes:
        path: JSON file to persist to (None keeps everything in memory)
        readiness_polls: kind value -> number of not-ready answers before ready
    """

    def __init__(self, path: Optional[Path] = None, readiness_polls: Optional[dict[str, int]] = None):
        self.path = Path(path) if path else None
        self.readiness_polls = dict(readiness_polls or {})
        self._lock = threading.RLock()
        self._resources: dict[str, dict] = self._load()
        self._polls: dict[str, int] = {}

    def _load(self) -> dict[str, dict]:
        if self.path is None or not self.path.exists():
            return {}
        with open(self.path, encoding='utf-8') as f:
            return json.load(f).get('resources', {})

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix('.tmp')
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump({'resources': self._resources}, f, indent=2)
        tmp.replace(self.path)

    def get(self, resource_id: str) -> Optional[dict]:
        with self._lock:
            record = self._resources.get(resource_id)
            return json.loads(json.dumps(record)) if record else None

    def put(self, resource_id: str, record: dict) -> None:
        with self._lock:
            self._resources[resource_id] = record
            self._polls.pop(resource_id, None)
            self._save()

    def delete(self, resource_id: str) -> bool:
        with self._lock:
            existed = self._resources.pop(resource_id, None) is not None
            self._polls.pop(resource_id, None)
            self._save()
            return existed

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._resources)

    def poll(self, resource_id: str, kind: str) -> bool:
        """Count a readiness check; True once the configured lag is used up."""
        with self._lock:
            if resource_id not in self._resources:
                raise ResourceNotFound(f"'{resource_id}' does not exist")
            count = self._polls.get(resource_id, 0) + 1
            self._polls[resource_id] = count
            return count > self.readiness_polls.get(kind, 0)


class LocalProvider:
    """Provider client for one kind backed by a LocalCloud.

    Attributes:
        cloud: Shared backing store
        kind: Resource kind served by this client
        runtime_env: Resolves a compute service's environment at deploy
            time, as the hosting platform does; None skips the binding
    """

    def __init__(self, cloud: LocalCloud, kind: ResourceKind, runtime_env: Optional[RuntimeEnv] = None):
        self.cloud = cloud
        self.kind = kind
        self.runtime_env = runtime_env

    def __repr__(self) -> str:
        return f"LocalProvider({self.kind.value})"

    def create(self, spec: ResourceSpec) -> Observed:
        if self.cloud.get(spec.id) is not None:
            raise PermanentProviderError(f"{self.kind.value} '{spec.id}' already exists")
        self._bind_runtime(spec)
        attributes = _plain(spec.attributes)
        record = {
            'kind': self.kind.value,
            'attributes': attributes,
            'revision': 1,
            'created_at': time.time(),
        }
        observed = self._observed(spec.id, record)
        self.cloud.put(spec.id, record)
        logger.debug("[local] created %s '%s'", self.kind.value, spec.id)
        return observed

    def read(self, resource_id: str) -> Observed:
        record = self.cloud.get(resource_id)
        if record is None:
            raise ResourceNotFound(f"{self.kind.value} '{resource_id}' not found")
        return self._observed(resource_id, record)

    def update(self, resource_id: str, spec: ResourceSpec) -> Observed:
        record = self.cloud.get(resource_id)
        if record is None:
            raise ResourceNotFound(f"{self.kind.value} '{resource_id}' not found")
        self._bind_runtime(spec)
        record['attributes'] = _plain(spec.attributes)
        record['revision'] = record.get('revision', 1) + 1
        self.cloud.put(resource_id, record)
        logger.debug("[local] updated %s '%s' (revision %d)",
                     self.kind.value, resource_id, record['revision'])
        return self._observed(resource_id, record)

    def destroy(self, resource_id: str) -> None:
        if self.cloud.delete(resource_id):
            logger.debug("[local] destroyed %s '%s'", self.kind.value, resource_id)

    def _bind_runtime(self, spec: ResourceSpec) -> None:
        """Hand a compute service its environment before it starts.

        Secret tokens become values only here; the values are dropped once
        the binding succeeds and the cloud record keeps the tokens.

        Raises:
            PermanentProviderError: If a token points at a missing version
        """
        if self.runtime_env is None or self.kind != ResourceKind.COMPUTE_SERVICE:
            return
        env = spec.attributes.get('env')
        if not isinstance(env, dict):
            return
        try:
            bound = self.runtime_env(env)
        except KeyError as e:
            raise PermanentProviderError(
                f"compute-service '{spec.id}' references missing secret version {e}"
            )
        logger.debug("[local] bound %d environment variable(s) for '%s'", len(bound), spec.id)

    def _observed(self, resource_id: str, record: dict) -> Observed:
        attrs = dict(record['attributes'])
        name = attrs.get('name', resource_id)
        observed: Observed = dict(attrs)
        observed['id'] = f"local/{self.kind.value}/{resource_id}"
        observed.setdefault('name', name)
        observed['self_link'] = f"local://{self.kind.value}/{name}"
        observed.update(self._computed(resource_id, name, attrs, record))
        return observed

    def _computed(self, resource_id: str, name: str, attrs: dict, record: dict) -> dict:
        kind = self.kind
        if kind == ResourceKind.SUBNET and attrs.get('ip_cidr_range'):
            try:
                net = ipaddress.ip_network(attrs['ip_cidr_range'], strict=False)
            except ValueError as e:
                raise PermanentProviderError(f"Invalid ip_cidr_range for '{resource_id}': {e}")
            return {'gateway_address': str(next(net.hosts()))}
        if kind == ResourceKind.PRIVATE_CONNECTION:
            return {
                'peering': 'servicenetworking-googleapis-com',
                'reserved_peering_ranges': attrs.get('reserved_peering_ranges', []),
            }
        if kind == ResourceKind.CONNECTOR:
            return {'state': 'READY'}
        if kind == ResourceKind.MANAGED_DATABASE:
            h = int(_digest(resource_id)[:6], 16)
            return {
                'connection_name': f"local:{attrs.get('region', 'local')}:{name}",
                'private_ip_address': f"10.{(h >> 16) & 0xff}.{(h >> 8) & 0xff}.{h & 0xff or 1}",
                'public_ip_address': None,
            }
        if kind == ResourceKind.DATABASE_USER:
            return {'instance': attrs.get('instance')}
        if kind == ResourceKind.SECRET:
            return {'secret_id': attrs.get('secret_id', resource_id)}
        if kind == ResourceKind.REGISTRY:
            location = attrs.get('location', 'local')
            repo = attrs.get('repository_id', name)
            return {'repository_url': f"{location}-docker.pkg.local/{repo}"}
        if kind == ResourceKind.COMPUTE_SERVICE:
            return {
                'uri': f"https://{name}.run.local",
                'latest_revision': f"{name}-{record.get('revision', 1):05d}",
            }
        if kind == ResourceKind.IAM_BINDING:
            return {'etag': _digest(attrs)[:12]}
        if kind == ResourceKind.LOG_SINK:
            return {'writer_identity': f"serviceAccount:sink-{name}@logging.local"}
        return {}


class LocalReadinessProvider(LocalProvider):
    """LocalProvider that also answers readiness checks."""

    def is_ready(self, resource_id: str) -> bool:
        return self.cloud.poll(resource_id, self.kind.value)


def local_registry(cloud: LocalCloud, runtime_env: Optional[RuntimeEnv] = None) -> ProviderRegistry:
    """Registry with a local client for every provider-backed kind.

    Only predicate kinds get a readiness check; fixed-delay kinds have none,
    matching IAM propagation where no signal exists. runtime_env is passed
    to every client; only compute services use it.
    """
    registry = ProviderRegistry()
    for kind in ResourceKind:
        if kind == ResourceKind.SECRET_VERSION:
            continue
        if KIND_TRAITS[kind].consistency == ConsistencyMode.PREDICATE:
            registry.register(kind, LocalReadinessProvider(cloud, kind, runtime_env))
        else:
            registry.register(kind, LocalProvider(cloud, kind, runtime_env))
    return registry
