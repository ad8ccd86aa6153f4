"""Resource graph construction and validation.

Builds a dependency graph from ResourceSpecs and rejects malformed input
before anything touches a provider:
- duplicate ids
- dangling dependency or reference targets
- dependency cycles
- references to attributes the target kind cannot produce
- sensitive attributes not given as secret references
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from provision.errors import ValidationError
from resources import (
    GraphDocument,
    Ref,
    ResourceKind,
    ResourceSpec,
    SecretRef,
    iter_refs,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DependencyEdge:
    """'source' must reach Ready before 'target' begins."""
    source: str
    target: str


@dataclass
class GraphNode:
    """A resource in the graph with its dependency edges.

    Attributes:
        spec: The underlying ResourceSpec
        index: Declaration position, used as a stable tie-breaker
        dependencies: Nodes that must be Ready first
        dependents: Nodes waiting on this one
    """
    spec: ResourceSpec
    index: int
    dependencies: list['GraphNode'] = field(default_factory=list)
    dependents: list['GraphNode'] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.spec.id

    @property
    def kind(self) -> ResourceKind:
        return self.spec.kind

    @property
    def is_root(self) -> bool:
        return not self.dependencies

    def __repr__(self) -> str:
        return f"GraphNode({self.id}, kind={self.kind.value}, index={self.index})"


class ResourceGraph:
    """Validated dependency graph over a set of ResourceSpecs."""

    def __init__(self, specs: list[ResourceSpec], name: str = 'graph', outputs: Optional[dict] = None):
        """Build and validate the graph.

        Args:
            specs: Resource specs in declaration order
            name: Graph name (state snapshot key)
            outputs: Output expressions evaluated after apply

        Raises:
            ValidationError: If the graph is malformed
        """
        if not specs:
            raise ValidationError("Resource graph requires at least one resource")

        self.name = name
        self.outputs = outputs or {}
        self._nodes: dict[str, GraphNode] = {}
        self._build(specs)
        self._check_cycles()
        self._check_references()
        self._check_outputs()

    @classmethod
    def from_document(cls, document: GraphDocument) -> 'ResourceGraph':
        return cls(document.resources, name=document.name, outputs=document.outputs)

    def _build(self, specs: list[ResourceSpec]) -> None:
        for i, spec in enumerate(specs):
            if spec.id in self._nodes:
                raise ValidationError(f"Duplicate resource id: '{spec.id}'", resource_id=spec.id)
            self._nodes[spec.id] = GraphNode(spec=spec, index=i)

        for node in self._nodes.values():
            for dep_id in node.spec.dependencies():
                if dep_id == node.id:
                    raise ValidationError(f"Resource '{node.id}' depends on itself", resource_id=node.id)
                dep = self._nodes.get(dep_id)
                if dep is None:
                    raise ValidationError(
                        f"Resource '{node.id}' has dangling reference to unknown resource '{dep_id}'",
                        resource_id=node.id,
                    )
                node.dependencies.append(dep)
                dep.dependents.append(node)

    def _check_cycles(self) -> None:
        """Depth-first traversal with a recursion-stack marker."""
        visited: set[str] = set()
        in_stack: set[str] = set()

        def _visit(node: GraphNode, path: list[str]) -> None:
            if node.id in in_stack:
                cycle = path[path.index(node.id):] + [node.id]
                raise ValidationError(
                    f"Cycle detected in resource graph: {' -> '.join(cycle)}",
                    resource_id=node.id,
                )
            if node.id in visited:
                return
            visited.add(node.id)
            in_stack.add(node.id)
            for dep in node.dependencies:
                _visit(dep, path + [node.id])
            in_stack.discard(node.id)

        for node in self.nodes():
            _visit(node, [])

    def _check_references(self) -> None:
        for node in self.nodes():
            spec = node.spec
            for ref in spec.references():
                self._check_ref(ref, f"Resource '{spec.id}'", spec.id)

            for key in spec.traits.sensitive:
                if key not in spec.attributes:
                    continue
                if not isinstance(spec.attributes[key], SecretRef):
                    raise ValidationError(
                        f"Resource '{spec.id}' attribute '{key}' is sensitive and must be a secret_ref",
                        resource_id=spec.id,
                    )

    def _check_outputs(self) -> None:
        for ref in iter_refs(self.outputs):
            if ref.resource_id not in self._nodes:
                raise ValidationError(f"Output references unknown resource '{ref.resource_id}'")
            self._check_ref(ref, "Output", None)

    def _check_ref(self, ref, owner: str, resource_id: Optional[str]) -> None:
        target = self._nodes[ref.resource_id]
        if isinstance(ref, SecretRef):
            if target.kind != ResourceKind.SECRET_VERSION:
                raise ValidationError(
                    f"{owner} secret_ref must point at a secret-version resource, "
                    f"'{target.id}' is {target.kind.value}",
                    resource_id=resource_id,
                )
            return
        if isinstance(ref, Ref) and ref.attribute not in self.producible(target.id):
            raise ValidationError(
                f"{owner} references '{ref}', but {target.kind.value} "
                f"'{target.id}' does not produce '{ref.attribute}'",
                resource_id=resource_id,
            )

    def producible(self, resource_id: str) -> set[str]:
        """Attributes a resource exposes: kind outputs plus its own desired keys."""
        spec = self._nodes[resource_id].spec
        return set(spec.traits.outputs) | set(spec.attributes)

    def get_node(self, resource_id: str) -> GraphNode:
        """Get a node by id.

        Raises:
            KeyError: If id not found
        """
        return self._nodes[resource_id]

    def __contains__(self, resource_id: str) -> bool:
        return resource_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def nodes(self) -> list[GraphNode]:
        """Nodes in declaration order."""
        return sorted(self._nodes.values(), key=lambda n: n.index)

    def specs(self) -> list[ResourceSpec]:
        return [n.spec for n in self.nodes()]

    def edges(self) -> list[DependencyEdge]:
        return [
            DependencyEdge(source=dep.id, target=node.id)
            for node in self.nodes()
            for dep in node.dependencies
        ]

    def transitive_dependents(self, resource_id: str) -> set[str]:
        """Every resource that directly or indirectly depends on resource_id."""
        seen: set[str] = set()
        stack = list(self._nodes[resource_id].dependents)
        while stack:
            node = stack.pop()
            if node.id in seen:
                continue
            seen.add(node.id)
            stack.extend(node.dependents)
        return seen
