"""Error taxonomy for the provisioning engine.

ValidationError is raised before any provider call. Provider errors are
caught by the reconciler and turned into per-resource failures; the rest
signal conditions the caller has to act on (lock contention, broken
internal invariants).
"""

from typing import Optional


class ProvisionError(Exception):
    """Base class for engine errors."""


class ValidationError(ProvisionError):
    """Graph is structurally invalid (dangling reference, cycle, bad attribute reference)."""

    def __init__(self, message: str, resource_id: Optional[str] = None):
        self.resource_id = resource_id
        super().__init__(message)


class ProviderError(ProvisionError):
    """Base for failures reported by a provider client."""


class TransientProviderError(ProviderError):
    """Rate limiting or temporary unavailability. Retried with backoff."""


class PermanentProviderError(ProviderError):
    """Invalid configuration, quota denial or authorization failure. Never retried."""


class ResourceNotFound(ProviderError):
    """Provider has no live resource for the given id."""


class OperationTimeoutError(ProviderError):
    """A single resource-level operation exceeded its deadline."""


class ConsistencyTimeoutError(ProvisionError):
    """Readiness predicate did not become true before the deadline."""

    def __init__(self, resource_id: str, timeout: float, last_observed: Optional[dict] = None):
        self.resource_id = resource_id
        self.timeout = timeout
        self.last_observed = dict(last_observed or {})
        super().__init__(
            f"Resource '{resource_id}' not ready after {timeout:g}s"
        )


class SecretConflictError(ProvisionError):
    """Attempt to regenerate or overwrite a secret without an explicit rotation."""


class StateLockError(ProvisionError):
    """State snapshot is held by another run."""


class SchedulerInvariantError(ProvisionError):
    """Validated graph could not be fully scheduled. Indicates a bug."""


class InvalidTransitionError(ProvisionError):
    """Resource status would move backwards within a run."""
