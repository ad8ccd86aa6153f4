"""Provider client contract and registry.

One client per resource kind. Clients raise TransientProviderError for
rate limiting and temporary unavailability, PermanentProviderError for bad
configuration, quota and authorization failures, and ResourceNotFound from
read() when nothing exists under the id.
"""

import logging
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from provision.errors import ValidationError
from resources import ResourceKind, ResourceSpec

logger = logging.getLogger(__name__)

Observed = dict[str, Any]


@runtime_checkable
class ProviderClient(Protocol):
    """CRUD capability every kind implements."""

    def create(self, spec: ResourceSpec) -> Observed:
        """Create the resource and return its observed attributes."""

    def read(self, resource_id: str) -> Observed:
        """Return observed attributes. Raises ResourceNotFound."""

    def update(self, resource_id: str, spec: ResourceSpec) -> Observed:
        """Update mutable attributes in place."""

    def destroy(self, resource_id: str) -> None:
        """Delete the resource. Deleting a missing resource is not an error."""


def readiness_predicate(client: Any, resource_id: str) -> Optional[Callable[[], bool]]:
    """Readiness check bound to a resource, if the client offers one."""
    is_ready = getattr(client, 'is_ready', None)
    if is_ready is None:
        return None
    return lambda: is_ready(resource_id)


class ProviderRegistry:
    """Maps resource kinds to provider clients."""

    def __init__(self, clients: Optional[dict[ResourceKind, ProviderClient]] = None):
        self._clients: dict[ResourceKind, ProviderClient] = dict(clients or {})

    def register(self, kind: ResourceKind, client: ProviderClient) -> None:
        self._clients[kind] = client

    def get(self, kind: ResourceKind) -> ProviderClient:
        """Client for a kind.

        Raises:
            KeyError: If no client is registered
        """
        return self._clients[kind]

    def __contains__(self, kind: ResourceKind) -> bool:
        return kind in self._clients

    def kinds(self) -> list[ResourceKind]:
        return list(self._clients)

    def check_covers(self, kinds: set[ResourceKind]) -> None:
        """Fail before any external call if some kind has no client.

        Raises:
            ValidationError: Listing the uncovered kinds
        """
        missing = sorted(k.value for k in kinds if k not in self._clients)
        if missing:
            raise ValidationError(f"No provider client registered for kind(s): {', '.join(missing)}")
