"""Plan computation: diff desired specs against the state snapshot.

References are resolved against observed attributes of their targets.
A target that does not exist yet makes the value unknown until apply.
Secret references resolve to SecretTokens and render as <name>@<version>,
so plans never carry secret values.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional

from provision.graph import ResourceGraph
from provision.scheduler import Scheduler, destroy_waves_for
from provision.state import Snapshot, Status
from resources import ResourceKind, ResourceSpec, Ref, SecretRef, SecretToken

logger = logging.getLogger(__name__)

Lookup = Callable[[str], Optional[dict]]


class Action(str, Enum):
    """What the reconciler will do with a resource."""
    NOOP = 'noop'
    CREATE = 'create'
    UPDATE = 'update'
    REPLACE = 'replace'
    DESTROY = 'destroy'


class _Unknown:
    """Value that only becomes known once an upstream resource is applied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '(known after apply)'


UNKNOWN = _Unknown()


def resolve_value(value: Any, lookup: Lookup) -> Any:
    """Replace Ref/SecretRef with values from upstream observed attributes.

    Args:
        value: Attribute value, possibly nested
        lookup: resource id -> observed attributes, or None if not available

    Returns:
        Resolved value. Unavailable references become UNKNOWN.
    """
    if isinstance(value, Ref):
        observed = lookup(value.resource_id)
        if observed is None or value.attribute not in observed:
            return UNKNOWN
        return observed[value.attribute]
    if isinstance(value, SecretRef):
        observed = lookup(value.resource_id)
        if observed is None or 'ref' not in observed:
            return UNKNOWN
        return SecretToken.parse(str(observed['ref']))
    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, lookup) for v in value]
    return value


def resolve_spec(spec: ResourceSpec, lookup: Lookup) -> ResourceSpec:
    """Copy of spec with references resolved."""
    return replace(spec, attributes=resolve_value(spec.attributes, lookup))


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def render_value(value: Any) -> Any:
    """Plain, display-safe form of a resolved value (tokens as strings)."""
    if isinstance(value, SecretToken):
        return str(value)
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, dict):
        return {k: render_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(v) for v in value]
    return value


@dataclass(frozen=True)
class AttributeChange:
    """One changed attribute in a plan entry."""
    key: str
    before: Any
    after: Any
    forces_replacement: bool = False
    sensitive: bool = False

    def to_dict(self) -> dict:
        d = {'key': self.key, 'before': self.before, 'after': self.after}
        if self.forces_replacement:
            d['forces_replacement'] = True
        if self.sensitive:
            d['sensitive'] = True
        return d


def diff_attributes(
    spec: ResourceSpec,
    resolved: dict[str, Any],
    observed: dict[str, Any],
) -> list[AttributeChange]:
    """Compare resolved desired attributes against observed ones.

    Only keys present in the desired mapping are compared; providers may
    report extra computed attributes.
    """
    immutable = spec.traits.immutable
    secret_keys = spec.secret_keys()
    changes = []
    for key, desired in resolved.items():
        after = render_value(desired)
        before = observed.get(key)
        if not contains_unknown(desired) and after == before:
            continue
        changes.append(AttributeChange(
            key=key,
            before=before,
            after=after,
            forces_replacement=key in immutable,
            sensitive=key in secret_keys,
        ))
    return changes


def decide_action(
    spec: ResourceSpec,
    resolved: dict[str, Any],
    observed: Optional[dict[str, Any]],
) -> tuple[Action, list[AttributeChange]]:
    """Absent ⇒ create, mutable drift ⇒ update, immutable drift ⇒ replace."""
    if observed is None:
        changes = [
            AttributeChange(key=k, before=None, after=render_value(v), sensitive=k in spec.secret_keys())
            for k, v in resolved.items()
        ]
        return Action.CREATE, changes

    changes = diff_attributes(spec, resolved, observed)
    if not changes:
        return Action.NOOP, []
    if any(c.forces_replacement for c in changes):
        return Action.REPLACE, changes
    return Action.UPDATE, changes


@dataclass
class PlanEntry:
    """Planned action for one resource."""
    resource_id: str
    kind: str
    action: Action
    changes: list[AttributeChange] = field(default_factory=list)
    wave: Optional[int] = None
    reason: str = ''

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'resource_id': self.resource_id,
            'kind': self.kind,
            'action': self.action.value,
        }
        if self.wave is not None:
            d['wave'] = self.wave
        if self.changes:
            d['changes'] = [c.to_dict() for c in self.changes]
        if self.reason:
            d['reason'] = self.reason
        return d


@dataclass
class Plan:
    """Ordered list of actions for a graph."""
    graph_name: str
    entries: list[PlanEntry] = field(default_factory=list)

    def entry(self, resource_id: str) -> PlanEntry:
        """Raises KeyError if the resource is not in the plan."""
        for e in self.entries:
            if e.resource_id == resource_id:
                return e
        raise KeyError(resource_id)

    def actions(self) -> dict[str, Action]:
        return {e.resource_id: e.action for e in self.entries}

    @property
    def is_noop(self) -> bool:
        return all(e.action == Action.NOOP for e in self.entries)

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for e in self.entries:
            counts[e.action.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'graph': self.graph_name,
            'summary': self.summary(),
            'entries': [e.to_dict() for e in self.entries],
        }


class Planner:
    """Builds a Plan from a graph and a snapshot.

    Attributes:
        graph: Validated resource graph
        scheduler: Wave ordering for the graph
        latest_secret: Optional callable name -> newest SecretToken, used to
            notice versions appended by rotation
    """

    def __init__(
        self,
        graph: ResourceGraph,
        scheduler: Optional[Scheduler] = None,
        latest_secret: Optional[Callable[[str], Optional[SecretToken]]] = None,
    ):
        self.graph = graph
        self.scheduler = scheduler or Scheduler(graph)
        self.latest_secret = latest_secret

    def plan(self, snapshot: Snapshot) -> Plan:
        plan = Plan(graph_name=self.graph.name)
        for wave_no, wave in enumerate(self.scheduler.waves()):
            for rid in wave:
                spec = self.graph.get_node(rid).spec
                entry = self.plan_resource(spec, snapshot)
                entry.wave = wave_no
                plan.entries.append(entry)
        plan.entries.extend(self.plan_orphans(snapshot))
        logger.debug("Plan for '%s': %s", self.graph.name, plan.summary())
        return plan

    def plan_resource(self, spec: ResourceSpec, snapshot: Snapshot) -> PlanEntry:
        resolved = resolve_value(spec.attributes, snapshot.observed)
        observed = snapshot.observed(spec.id)
        action, changes = decide_action(spec, resolved, observed)

        if action == Action.NOOP and spec.kind == ResourceKind.SECRET_VERSION:
            rotated = self._rotated_version(observed)
            if rotated is not None:
                return PlanEntry(
                    spec.id, spec.kind.value, Action.UPDATE,
                    [AttributeChange('ref', observed.get('ref'), str(rotated))],
                    reason='newer secret version available',
                )

        prior = snapshot.get(spec.id)
        reason = ''
        if prior is not None and prior.tainted:
            reason = 'last operation timed out; live resource is read back first'
        if action == Action.NOOP and prior is not None and prior.status != Status.READY:
            # The last run left it unconverged; apply re-checks readiness
            action = Action.UPDATE
            reason = reason or 'readiness not confirmed'
        return PlanEntry(spec.id, spec.kind.value, action, changes, reason=reason)

    def _rotated_version(self, observed: Optional[dict]) -> Optional[SecretToken]:
        if self.latest_secret is None or not observed or 'ref' not in observed:
            return None
        current = SecretToken.parse(str(observed['ref']))
        latest = self.latest_secret(current.name)
        if latest is not None and latest.version > current.version:
            return latest
        return None

    def plan_orphans(self, snapshot: Snapshot) -> list[PlanEntry]:
        """Destroy entries for resources in state but no longer in the graph."""
        orphans = [rid for rid in snapshot.resources if rid not in self.graph]
        if not orphans:
            return []
        deps = {rid: snapshot.resources[rid].depends_on for rid in orphans}
        entries = []
        for wave in destroy_waves_for(orphans, deps):
            for rid in wave:
                entries.append(PlanEntry(
                    rid, snapshot.resources[rid].kind, Action.DESTROY,
                    reason='not in graph',
                ))
        return entries
