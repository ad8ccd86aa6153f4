"""Resource graph documents: kinds, specs, references and YAML loading.

A graph document declares the desired topology:

    schema_version: 1
    name: app-stack
    variables:
      image: {required: true}
    resources:
      - id: network
        kind: network
        attributes: {name: app-net}
      - id: subnet
        kind: subnet
        attributes: {network: {ref: network.id}, ip_cidr_range: 10.8.0.0/28}
    outputs:
      network: {ref: network.self_link}

Attribute values are literals, nested lists/maps, `{ref: <id>.<attribute>}`,
`{secret_ref: <secret-version id>}` or `{var: <variable>}`. Variables are
substituted at load time; refs are resolved by the reconciler.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

import yaml

from config import ConfigError
from provision.errors import ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSIONS = {1}

RESOURCE_ID_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_-]*$')


class ResourceKind(str, Enum):
    """Closed set of resource kinds the engine knows how to reconcile."""
    NETWORK = 'network'
    SUBNET = 'subnet'
    PRIVATE_CONNECTION = 'private-connection'
    CONNECTOR = 'connector'
    MANAGED_DATABASE = 'managed-database'
    DATABASE_USER = 'database-user'
    SECRET = 'secret'
    SECRET_VERSION = 'secret-version'
    REGISTRY = 'registry'
    COMPUTE_SERVICE = 'compute-service'
    IAM_BINDING = 'iam-binding'
    LOG_METRIC = 'log-metric'
    LOG_SINK = 'log-sink'
    ALERT_POLICY = 'alert-policy'
    DASHBOARD = 'dashboard'

    @classmethod
    def parse(cls, value: str) -> 'ResourceKind':
        try:
            return cls(value)
        except ValueError:
            valid = ', '.join(k.value for k in cls)
            raise ValidationError(f"Unknown resource kind '{value}'. Valid kinds: {valid}")


class ConsistencyMode(str, Enum):
    """How dependents learn a freshly created resource is usable."""
    NONE = 'none'
    PREDICATE = 'predicate'
    FIXED_DELAY = 'fixed-delay'


@dataclass(frozen=True)
class KindTraits:
    """Static contract of a resource kind.

    Attributes:
        outputs: Attributes the provider produces (referenceable by dependents)
        immutable: Attributes whose change forces destroy + create
        sensitive: Attributes that must be given as secret references
        consistency: Readiness handling after create/update
        timeout: Default readiness deadline in seconds
        interval: Default polling interval in seconds
        min_delay: Fixed delay used when no readiness predicate is available
    """
    outputs: frozenset = frozenset()
    immutable: frozenset = frozenset()
    sensitive: frozenset = frozenset()
    consistency: ConsistencyMode = ConsistencyMode.NONE
    timeout: float = 0.0
    interval: float = 5.0
    min_delay: float = 0.0


def _traits(outputs=(), immutable=(), sensitive=(), **kwargs) -> KindTraits:
    return KindTraits(
        outputs=frozenset(('id',) + tuple(outputs)),
        immutable=frozenset(immutable),
        sensitive=frozenset(sensitive),
        **kwargs,
    )


KIND_TRAITS: dict[ResourceKind, KindTraits] = {
    ResourceKind.NETWORK: _traits(
        outputs=('name', 'self_link'),
        immutable=('name', 'auto_create_subnetworks'),
    ),
    ResourceKind.SUBNET: _traits(
        outputs=('name', 'self_link', 'gateway_address'),
        immutable=('name', 'network', 'region', 'ip_cidr_range'),
    ),
    # Peering is reported created before routes are exchanged
    ResourceKind.PRIVATE_CONNECTION: _traits(
        outputs=('peering', 'reserved_peering_ranges'),
        immutable=('network', 'service'),
        consistency=ConsistencyMode.PREDICATE, timeout=600.0, interval=10.0, min_delay=60.0,
    ),
    ResourceKind.CONNECTOR: _traits(
        outputs=('name', 'self_link', 'state'),
        immutable=('name', 'region', 'network', 'ip_cidr_range'),
        consistency=ConsistencyMode.PREDICATE, timeout=600.0, interval=10.0, min_delay=60.0,
    ),
    ResourceKind.MANAGED_DATABASE: _traits(
        outputs=('name', 'connection_name', 'private_ip_address', 'public_ip_address', 'self_link'),
        immutable=('name', 'region', 'database_version'),
        consistency=ConsistencyMode.PREDICATE, timeout=1800.0, interval=15.0, min_delay=120.0,
    ),
    ResourceKind.DATABASE_USER: _traits(
        outputs=('name', 'instance'),
        immutable=('name', 'instance'),
        sensitive=('password',),
    ),
    ResourceKind.SECRET: _traits(
        outputs=('name', 'secret_id'),
        immutable=('secret_id',),
    ),
    ResourceKind.SECRET_VERSION: _traits(
        outputs=('secret', 'version', 'ref'),
        immutable=('secret',),
    ),
    ResourceKind.REGISTRY: _traits(
        outputs=('name', 'repository_url'),
        immutable=('repository_id', 'location', 'format'),
    ),
    ResourceKind.COMPUTE_SERVICE: _traits(
        outputs=('name', 'uri', 'latest_revision'),
        immutable=('name', 'region'),
        consistency=ConsistencyMode.PREDICATE, timeout=300.0, interval=5.0, min_delay=30.0,
    ),
    # No readiness signal exists for IAM propagation
    ResourceKind.IAM_BINDING: _traits(
        outputs=('etag',),
        immutable=('role', 'member', 'resource'),
        consistency=ConsistencyMode.FIXED_DELAY, min_delay=30.0,
    ),
    ResourceKind.LOG_METRIC: _traits(outputs=('name',), immutable=('name',)),
    ResourceKind.LOG_SINK: _traits(outputs=('name', 'writer_identity'), immutable=('name',)),
    ResourceKind.ALERT_POLICY: _traits(outputs=('name',)),
    ResourceKind.DASHBOARD: _traits(),
}


def traits_for(kind: ResourceKind) -> KindTraits:
    return KIND_TRAITS[kind]


@dataclass(frozen=True)
class Ref:
    """Reference to an attribute another resource produces."""
    resource_id: str
    attribute: str

    @classmethod
    def parse(cls, text: str) -> 'Ref':
        """Parse '<resource-id>.<attribute>'."""
        if not isinstance(text, str) or '.' not in text:
            raise ValidationError(f"Invalid reference '{text}': expected '<resource>.<attribute>'")
        resource_id, attribute = text.split('.', 1)
        if not resource_id or not attribute:
            raise ValidationError(f"Invalid reference '{text}': expected '<resource>.<attribute>'")
        return cls(resource_id, attribute)

    def __str__(self) -> str:
        return f"{self.resource_id}.{self.attribute}"


@dataclass(frozen=True)
class SecretRef:
    """Reference to the current version of a managed secret.

    Points at a secret-version resource; resolves to a SecretToken, never
    to the value.
    """
    resource_id: str

    def __str__(self) -> str:
        return f"secret:{self.resource_id}"


@dataclass(frozen=True)
class SecretToken:
    """Opaque pointer to one immutable secret version."""
    name: str
    version: int

    @classmethod
    def parse(cls, text: str) -> 'SecretToken':
        name, _, version = text.rpartition('@')
        if not name or not version.isdigit():
            raise ValueError(f"Invalid secret token '{text}'")
        return cls(name, int(version))

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


def iter_refs(value: Any) -> Iterator[Any]:
    """Yield every Ref and SecretRef nested in an attribute value."""
    if isinstance(value, (Ref, SecretRef)):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_refs(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_refs(item)


@dataclass(frozen=True)
class Timeouts:
    """Per-resource deadlines. None falls back to settings / kind defaults."""
    operation: Optional[float] = None
    consistency: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'Timeouts':
        """Parse a timeouts mapping.

        Raises:
            ConfigError: If the mapping or one of its values is malformed
        """
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError(f"timeouts must be a mapping, got {type(data).__name__}")
        return cls(
            operation=_seconds(data, 'operation'),
            consistency=_seconds(data, 'consistency'),
        )


def _seconds(data: dict, key: str) -> Optional[float]:
    if data.get(key) is None:
        return None
    try:
        value = float(data[key])
    except (TypeError, ValueError):
        raise ConfigError(f"timeouts.{key} must be a number of seconds, got {data[key]!r}")
    if value <= 0:
        raise ConfigError(f"timeouts.{key} must be positive, got {data[key]!r}")
    return value


@dataclass
class ResourceSpec:
    """Desired state of one resource.

    Attributes:
        id: Identifier, unique within the graph
        kind: Resource kind
        attributes: Desired attribute mapping (may contain Ref/SecretRef)
        depends_on: Explicit dependency ids
        timeouts: Optional per-resource deadlines
    """
    id: str
    kind: ResourceKind
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    timeouts: Timeouts = field(default_factory=Timeouts)

    @property
    def traits(self) -> KindTraits:
        return KIND_TRAITS[self.kind]

    def references(self) -> list[Any]:
        """All Ref/SecretRef values in declaration order."""
        return list(iter_refs(self.attributes))

    def dependencies(self) -> list[str]:
        """Explicit dependencies plus every referenced resource, deduplicated."""
        deps: list[str] = []
        for dep in list(self.depends_on) + [r.resource_id for r in self.references()]:
            if dep not in deps:
                deps.append(dep)
        return deps

    def secret_keys(self) -> set[str]:
        """Top-level attribute keys whose value carries a secret reference."""
        return {
            key for key, value in self.attributes.items()
            if any(isinstance(r, SecretRef) for r in iter_refs(value))
        }

    def __repr__(self) -> str:
        return f"ResourceSpec({self.id}, kind={self.kind.value})"


@dataclass
class VariableDecl:
    """Graph input variable (e.g. the artifact address from a build step)."""
    name: str
    required: bool = False
    default: Any = None
    description: str = ''


@dataclass
class GraphDocument:
    """A parsed graph file.

    Attributes:
        name: Graph name (also the state snapshot directory)
        resources: Resource specs in declaration order
        outputs: Nested output expressions
        description: Optional description
        source_path: Where the document was loaded from
    """
    name: str
    resources: list[ResourceSpec]
    outputs: dict[str, Any] = field(default_factory=dict)
    description: str = ''
    source_path: Optional[Path] = None

    @classmethod
    def from_dict(
        cls,
        data: dict,
        variables: Optional[dict] = None,
        source_path: Optional[Path] = None,
    ) -> 'GraphDocument':
        """Create a GraphDocument from a mapping.

        Args:
            data: Parsed document
            variables: Values for declared variables
            source_path: Optional source path for error messages

        Raises:
            ConfigError: If the document structure is malformed
            ValidationError: If kinds, references or variables are invalid
        """
        schema_version = data.get('schema_version', 1)
        if schema_version not in SUPPORTED_SCHEMA_VERSIONS:
            raise ConfigError(
                f"Unsupported graph schema version: {schema_version}. "
                f"Supported versions: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )
        if 'name' not in data:
            raise ConfigError("Graph missing required field: name")
        if not data.get('resources'):
            raise ConfigError("Graph must declare at least one resource")

        decls = _parse_variable_decls(data.get('variables') or {})
        values = _bind_variables(decls, variables or {})

        resources = []
        for i, item in enumerate(data['resources']):
            if not isinstance(item, dict):
                raise ConfigError(f"Resource {i} must be a mapping")
            for required in ('id', 'kind'):
                if required not in item:
                    raise ConfigError(
                        f"Resource {i} ({item.get('id', 'unnamed')}) missing required field: {required}"
                    )
            rid = str(item['id'])
            if not RESOURCE_ID_PATTERN.match(rid):
                raise ValidationError(f"Invalid resource id '{rid}'", resource_id=rid)
            attributes = parse_value(item.get('attributes') or {}, values, f"{rid}.attributes")
            resources.append(ResourceSpec(
                id=rid,
                kind=ResourceKind.parse(item['kind']),
                attributes=attributes,
                depends_on=[str(d) for d in item.get('depends_on') or []],
                timeouts=Timeouts.from_dict(item.get('timeouts')),
            ))

        return cls(
            name=data['name'],
            resources=resources,
            outputs=parse_value(data.get('outputs') or {}, values, 'outputs'),
            description=data.get('description', ''),
            source_path=source_path,
        )


def _parse_variable_decls(data: dict) -> dict[str, VariableDecl]:
    decls = {}
    for name, spec in data.items():
        spec = spec or {}
        decls[name] = VariableDecl(
            name=name,
            required=bool(spec.get('required', False)),
            default=spec.get('default'),
            description=spec.get('description', ''),
        )
    return decls


def _bind_variables(decls: dict[str, VariableDecl], supplied: dict) -> dict:
    unknown = sorted(set(supplied) - set(decls))
    if unknown:
        raise ValidationError(f"Undeclared variable(s): {', '.join(unknown)}")

    values = {}
    for name, decl in decls.items():
        if name in supplied:
            values[name] = supplied[name]
        elif decl.required:
            raise ValidationError(f"Missing value for required variable '{name}'")
        else:
            values[name] = decl.default
    return values


def parse_value(value: Any, variables: dict, path: str) -> Any:
    """Convert raw document values into literals, Ref and SecretRef.

    Single-key mappings {ref: ...}, {secret_ref: ...} and {var: ...} are
    reference expressions; any other mapping is a literal container.
    """
    if isinstance(value, dict):
        if len(value) == 1:
            (key, inner), = value.items()
            if key == 'ref':
                return Ref.parse(inner)
            if key == 'secret_ref':
                return SecretRef(str(inner))
            if key == 'var':
                if inner not in variables:
                    raise ValidationError(f"{path}: reference to undeclared variable '{inner}'")
                return variables[inner]
        return {k: parse_value(v, variables, f"{path}.{k}") for k, v in value.items()}
    if isinstance(value, list):
        return [parse_value(v, variables, f"{path}[{i}]") for i, v in enumerate(value)]
    return value


class GraphLoader:
    """Loads graph documents from YAML files."""

    def __init__(self, graphs_dir: Optional[Path] = None):
        self.graphs_dir = Path(graphs_dir) if graphs_dir else Path.cwd() / 'graphs'

    def list_graphs(self) -> list[str]:
        """List graph names available in the graphs directory."""
        if not self.graphs_dir.exists():
            return []
        return sorted(f.stem for f in self.graphs_dir.glob('*.yaml') if f.is_file())

    def load(self, name: str, variables: Optional[dict] = None) -> GraphDocument:
        """Load a graph by name from the graphs directory."""
        path = self.graphs_dir / f'{name}.yaml'
        if not path.exists():
            available = self.list_graphs()
            raise ConfigError(
                f"Graph '{name}' not found at {path}. "
                f"Available: {', '.join(available) if available else 'none'}"
            )
        return self.load_file(path, variables)

    def load_file(self, path: Path, variables: Optional[dict] = None) -> GraphDocument:
        """Load a graph from a specific YAML file.

        Raises:
            ConfigError: If file not found or invalid
        """
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Graph file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in graph {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Graph {path} must be a YAML object (dict)")

        logger.debug("Loaded graph document from %s", path)
        return GraphDocument.from_dict(data, variables=variables, source_path=path)


def load_graph_document(
    name: Optional[str] = None,
    file_path: Optional[str] = None,
    variables: Optional[dict] = None,
) -> GraphDocument:
    """Load a graph document from a file path or by name.

    Raises:
        ConfigError: If neither source is given or the graph is invalid
    """
    loader = GraphLoader()
    if file_path:
        return loader.load_file(Path(file_path), variables)
    if name:
        return loader.load(name, variables)
    raise ConfigError("Specify a graph name or file")
