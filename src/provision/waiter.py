"""Eventual-consistency waiting.

Some kinds report "created" before dependents can use them (private service
connections, managed databases, connectors). The waiter polls a readiness
predicate supplied by the provider client until it holds or the deadline
passes. Kinds with no predicate get a fixed minimum delay instead; the two
paths are kept separate so logs show which one was used.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from provision.errors import ConsistencyTimeoutError, TransientProviderError

logger = logging.getLogger(__name__)

Predicate = Callable[[], bool]


@dataclass
class WaitOutcome:
    """Result of a readiness wait.

    Attributes:
        resource_id: Resource that was waited on
        mode: 'predicate' or 'fixed-delay'
        elapsed: Seconds spent waiting
        polls: Number of predicate evaluations (0 for fixed delay)
    """
    resource_id: str
    mode: str
    elapsed: float
    polls: int = 0


@dataclass
class ConsistencyWaiter:
    """Bounded poll loop between "created" and "safe to consume".

    Attributes:
        default_interval: Polling interval when the caller gives none
        clock: Monotonic clock (injectable for tests)
        sleep: Sleep function (injectable for tests)
    """
    default_interval: float = 5.0
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def wait(
        self,
        resource_id: str,
        predicate: Predicate,
        timeout: float,
        interval: Optional[float] = None,
        last_observed: Optional[dict] = None,
    ) -> WaitOutcome:
        """Poll predicate until it returns True or timeout elapses.

        The predicate is evaluated immediately, then every interval seconds.
        The final sleep is shortened so the last evaluation lands on the
        deadline.

        Args:
            resource_id: Resource being waited on (for errors and logs)
            predicate: Readiness check from the provider client
            timeout: Deadline in seconds from now
            interval: Seconds between evaluations
            last_observed: Attributes reported at create time, attached to
                the timeout error for diagnosis

        Raises:
            ConsistencyTimeoutError: If the predicate never held in time
        """
        interval = interval or self.default_interval
        start = self.clock()
        deadline = start + timeout
        polls = 0

        logger.info("[%s] Waiting for readiness (timeout %gs, interval %gs)",
                    resource_id, timeout, interval)
        while True:
            polls += 1
            try:
                ready = bool(predicate())
            except TransientProviderError as e:
                logger.debug("[%s] readiness check failed transiently: %s", resource_id, e)
                ready = False

            now = self.clock()
            if ready:
                elapsed = now - start
                logger.info("[%s] Ready after %.1fs (%d checks)", resource_id, elapsed, polls)
                return WaitOutcome(resource_id, 'predicate', elapsed, polls)

            remaining = deadline - now
            if remaining <= 0:
                logger.error("[%s] Readiness timeout after %gs (%d checks)",
                             resource_id, timeout, polls)
                raise ConsistencyTimeoutError(resource_id, timeout, last_observed)

            logger.debug("[%s] Not ready, retrying in %gs...", resource_id, min(interval, remaining))
            self.sleep(min(interval, remaining))

    def settle(self, resource_id: str, delay: float) -> WaitOutcome:
        """Fixed minimum delay for kinds without a readiness predicate."""
        logger.info("[%s] No readiness predicate available, settling for fixed %gs",
                    resource_id, delay)
        start = self.clock()
        if delay > 0:
            self.sleep(delay)
        return WaitOutcome(resource_id, 'fixed-delay', self.clock() - start)
