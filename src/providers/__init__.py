"""Provider clients for resource kinds."""

from providers.base import ProviderClient, ProviderRegistry, readiness_predicate
from providers.http_probe import HttpReadinessProbe
from providers.local import LocalCloud, LocalProvider, local_registry

__all__ = [
    'ProviderClient',
    'ProviderRegistry',
    'readiness_predicate',
    'HttpReadinessProbe',
    'LocalCloud',
    'LocalProvider',
    'local_registry',
]
