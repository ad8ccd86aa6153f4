"""HTTP readiness probe for resources that serve traffic.

A compute service is reported as deployed before its URL answers. When
its provider client offers no readiness check, this probe supplies one by
polling the service URL.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests

from providers.base import Observed
from provision.errors import ResourceNotFound, TransientProviderError
from resources import ResourceSpec

logger = logging.getLogger(__name__)

# Any 2xx or 3xx; redirects are not followed
READY_STATUS = tuple(range(200, 400))


def check_url(url: str, expected_status: tuple[int, ...] = READY_STATUS, timeout: float = 10.0,
              verify: bool = True) -> tuple[bool, str]:
    """Probe a URL once.

    Args:
        url: URL to GET
        expected_status: Status codes that count as ready
        timeout: Request timeout in seconds
        verify: Verify TLS certificates

    Returns:
        (ready, message) tuple
    """
    try:
        resp = requests.get(url, timeout=timeout, verify=verify, allow_redirects=False)
    except requests.exceptions.ConnectionError as e:
        return False, f"Cannot connect to {url}: {e}"
    except requests.exceptions.Timeout:
        return False, f"Timeout connecting to {url}"

    if resp.status_code in expected_status:
        return True, f"{url} answered {resp.status_code}"
    if resp.status_code == 429 or resp.status_code >= 500:
        raise TransientProviderError(f"{url} answered {resp.status_code}")
    return False, f"Unexpected response from {url}: {resp.status_code}"


@dataclass
class HttpReadinessProbe:
    """Wraps a provider client, adding is_ready() based on an observed URL.

    Attributes:
        client: Provider client for the kind
        url_attribute: Observed attribute holding the URL
        path: Path appended to the URL (e.g. a health endpoint)
        expected_status: Status codes that count as ready
        timeout: Per-request timeout
    """
    client: Any
    url_attribute: str = 'uri'
    path: str = ''
    expected_status: tuple[int, ...] = READY_STATUS
    timeout: float = 10.0

    def create(self, spec: ResourceSpec) -> Observed:
        return self.client.create(spec)

    def read(self, resource_id: str) -> Observed:
        return self.client.read(resource_id)

    def update(self, resource_id: str, spec: ResourceSpec) -> Observed:
        return self.client.update(resource_id, spec)

    def destroy(self, resource_id: str) -> None:
        self.client.destroy(resource_id)

    def url_for(self, resource_id: str) -> Optional[str]:
        try:
            observed = self.client.read(resource_id)
        except ResourceNotFound:
            return None
        base = observed.get(self.url_attribute)
        if not base:
            return None
        return f"{str(base).rstrip('/')}{self.path}"

    def is_ready(self, resource_id: str) -> bool:
        url = self.url_for(resource_id)
        if url is None:
            logger.debug("[%s] no %s reported yet", resource_id, self.url_attribute)
            return False
        ready, message = check_url(url, self.expected_status, self.timeout)
        logger.debug("[%s] %s", resource_id, message)
        return ready
