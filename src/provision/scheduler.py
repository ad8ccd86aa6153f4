"""Wave scheduling for validated resource graphs.

Kahn's algorithm, taking every zero in-degree node at once as a wave.
Within a wave, nodes keep declaration order so that apply logs are stable
across runs on an unchanged graph.
"""

import logging
from typing import Iterable, Mapping

from provision.errors import SchedulerInvariantError
from provision.graph import ResourceGraph

logger = logging.getLogger(__name__)


def compute_waves(
    ids: Iterable[str],
    dependencies: Mapping[str, Iterable[str]],
) -> list[list[str]]:
    """Group ids into dependency waves.

    Args:
        ids: Node ids in declaration order
        dependencies: id -> ids it depends on. Entries outside `ids` are ignored.

    Returns:
        List of waves; every dependency of a node sits in an earlier wave

    Raises:
        SchedulerInvariantError: If some nodes can never be scheduled (cycle)
    """
    order = list(ids)
    position = {rid: i for i, rid in enumerate(order)}
    in_degree = {rid: 0 for rid in order}
    successors: dict[str, list[str]] = {rid: [] for rid in order}

    for rid in order:
        for dep in dependencies.get(rid, ()):
            if dep not in position or dep == rid:
                continue
            in_degree[rid] += 1
            successors[dep].append(rid)

    waves: list[list[str]] = []
    ready = [rid for rid in order if in_degree[rid] == 0]
    scheduled = 0
    while ready:
        wave = sorted(ready, key=position.__getitem__)
        waves.append(wave)
        scheduled += len(wave)
        ready = []
        for rid in wave:
            for succ in successors[rid]:
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    ready.append(succ)

    if scheduled != len(order):
        residue = [rid for rid in order if in_degree[rid] > 0]
        raise SchedulerInvariantError(
            f"Unschedulable resources (cycle or missing dependency): {', '.join(residue)}"
        )
    return waves


class Scheduler:
    """Computes apply and destroy wave orderings for a ResourceGraph."""

    def __init__(self, graph: ResourceGraph):
        self.graph = graph
        self._waves = compute_waves(
            [n.id for n in graph.nodes()],
            {n.id: [d.id for d in n.dependencies] for n in graph.nodes()},
        )
        self._wave_index = {
            rid: i for i, wave in enumerate(self._waves) for rid in wave
        }
        logger.debug("Scheduled %d resources into %d waves", len(graph), len(self._waves))

    def waves(self) -> list[list[str]]:
        """Apply order: dependencies before dependents."""
        return [list(w) for w in self._waves]

    def destroy_waves(self) -> list[list[str]]:
        """Destroy order: dependents before dependencies."""
        return [list(w) for w in reversed(self._waves)]

    def wave_index(self, resource_id: str) -> int:
        """Index of the wave a resource belongs to.

        Raises:
            KeyError: If id not scheduled
        """
        return self._wave_index[resource_id]

    def flat_order(self) -> list[str]:
        return [rid for wave in self._waves for rid in wave]


def destroy_waves_for(ids: Iterable[str], dependencies: Mapping[str, Iterable[str]]) -> list[list[str]]:
    """Reverse waves for resources known only from persisted state."""
    return list(reversed(compute_waves(ids, dependencies)))
