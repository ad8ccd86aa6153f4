"""Resource state tracking and the persisted state snapshot.

Tracks per-resource status within a run and persists the last observed
attributes so the next run can diff against them. The snapshot file is
written atomically at the end of a run, under a lock that serialises runs
against the same graph (threads of this process and other processes).
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from provision.errors import InvalidTransitionError, StateLockError
from resources import SecretToken

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class Status(str, Enum):
    """Resource lifecycle status."""
    PENDING = 'pending'
    CREATING = 'creating'
    WAITING = 'waiting'
    READY = 'ready'
    FAILED = 'failed'
    DESTROYING = 'destroying'
    DESTROYED = 'destroyed'


# Status never moves backwards within a run. Replace goes
# Destroying -> Creating, which is an explicit recreate decision.
ALLOWED_TRANSITIONS: dict[Status, frozenset] = {
    Status.PENDING: frozenset({Status.CREATING, Status.READY, Status.DESTROYING}),
    Status.CREATING: frozenset({Status.WAITING, Status.READY, Status.FAILED}),
    Status.WAITING: frozenset({Status.READY, Status.FAILED}),
    Status.DESTROYING: frozenset({Status.DESTROYED, Status.CREATING, Status.FAILED}),
    Status.READY: frozenset(),
    Status.FAILED: frozenset(),
    Status.DESTROYED: frozenset(),
}

TERMINAL = frozenset({Status.READY, Status.FAILED, Status.DESTROYED})


@dataclass
class ResourceState:
    """Per-resource state.

    Attributes:
        id: Resource id (matches ResourceSpec.id)
        kind: Resource kind value
        status: Current status
        observed: Attributes reported by the provider (set once Ready)
        error: Error message if failed
        error_type: Exception class name if failed
        depends_on: Dependency ids, persisted for destroy ordering
        attempted: Whether this run performed any action on the resource
        note: Why a resource was skipped or left untouched
        tainted: A create or update timed out, so the live resource may
            exist in a state observed does not describe
        started_at: Timestamp when work started
        completed_at: Timestamp when work ended
    """
    id: str
    kind: str
    status: Status = Status.PENDING
    observed: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None
    depends_on: list[str] = field(default_factory=list)
    attempted: bool = False
    note: Optional[str] = None
    tainted: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def transition(self, status: Status) -> Status:
        """Move to a new status, returning the previous one.

        Raises:
            InvalidTransitionError: If the move would regress the status
        """
        previous = self.status
        if status not in ALLOWED_TRANSITIONS[previous]:
            raise InvalidTransitionError(
                f"Resource '{self.id}': illegal transition {previous.value} -> {status.value}"
            )
        self.status = status
        if previous == Status.PENDING:
            self.started_at = time.time()
        if status in TERMINAL:
            self.completed_at = time.time()
        return previous

    def ready(self, observed: dict[str, Any]) -> Status:
        self.observed = dict(observed)
        self.error = None
        self.error_type = None
        return self.transition(Status.READY)

    def fail(self, error: BaseException) -> Status:
        self.error = str(error)
        self.error_type = type(error).__name__
        return self.transition(Status.FAILED)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'kind': self.kind,
            'status': self.status.value,
        }
        if self.observed:
            d['observed'] = self.observed
        if self.depends_on:
            d['depends_on'] = list(self.depends_on)
        if self.error is not None:
            d['error'] = self.error
        if self.error_type is not None:
            d['error_type'] = self.error_type
        if self.note is not None:
            d['note'] = self.note
        if self.tainted:
            d['tainted'] = True
        if self.started_at is not None:
            d['started_at'] = self.started_at
        if self.completed_at is not None:
            d['completed_at'] = self.completed_at
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceState':
        return cls(
            id=data['id'],
            kind=data.get('kind', ''),
            status=Status(data.get('status', 'pending')),
            observed=dict(data.get('observed') or {}),
            error=data.get('error'),
            error_type=data.get('error_type'),
            depends_on=list(data.get('depends_on') or []),
            note=data.get('note'),
            tainted=bool(data.get('tainted', False)),
            started_at=data.get('started_at'),
            completed_at=data.get('completed_at'),
        )


@dataclass
class Snapshot:
    """Last persisted state of every live resource in a graph.

    Attributes:
        graph_name: Graph identifier
        resources: id -> last known ResourceState
        serial: Incremented on every save
    """
    graph_name: str
    resources: dict[str, ResourceState] = field(default_factory=dict)
    serial: int = 0

    def get(self, resource_id: str) -> Optional[ResourceState]:
        return self.resources.get(resource_id)

    def observed(self, resource_id: str) -> Optional[dict[str, Any]]:
        """Observed attributes of a resource known to exist, else None."""
        state = self.resources.get(resource_id)
        if state is None or not state.observed:
            return None
        return state.observed

    def to_dict(self) -> dict:
        return {
            'format_version': STATE_FORMAT_VERSION,
            'graph_name': self.graph_name,
            'serial': self.serial,
            'resources': {rid: s.to_dict() for rid, s in self.resources.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Snapshot':
        return cls(
            graph_name=data['graph_name'],
            serial=int(data.get('serial', 0)),
            resources={
                rid: ResourceState.from_dict(item)
                for rid, item in (data.get('resources') or {}).items()
            },
        )


def _json_default(value: Any) -> Any:
    """Render SecretTokens; refuse anything else that is not plain JSON."""
    if isinstance(value, SecretToken):
        return str(value)
    raise TypeError(f"Refusing to persist value of type {type(value).__name__}")


_process_locks: dict[Path, threading.Lock] = {}
_process_locks_guard = threading.Lock()


def _process_lock(path: Path) -> threading.Lock:
    with _process_locks_guard:
        return _process_locks.setdefault(path.resolve(), threading.Lock())


class StateStore:
    """Reads and writes the snapshot for one graph.

    State is persisted to {state_dir}/{graph}/state.json.
    """

    def __init__(self, state_dir: Path, graph_name: str, lock_timeout: float = 60.0):
        self.graph_name = graph_name
        self.path = Path(state_dir) / graph_name / 'state.json'
        self.lock_path = self.path.with_suffix('.lock')
        self.lock_timeout = lock_timeout

    def load(self) -> Snapshot:
        """Load the snapshot, or an empty one if none was saved yet."""
        if not self.path.exists():
            logger.debug("No state at %s, starting empty", self.path)
            return Snapshot(graph_name=self.graph_name)
        with open(self.path, encoding='utf-8') as f:
            data = json.load(f)
        snapshot = Snapshot.from_dict(data)
        logger.debug("Loaded state serial %d from %s", snapshot.serial, self.path)
        return snapshot

    def save(self, snapshot: Snapshot) -> Path:
        """Write the snapshot atomically (temp file + rename)."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        snapshot.serial += 1
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix='.state-', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(snapshot.to_dict(), f, indent=2, default=_json_default)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug("Saved state serial %d to %s", snapshot.serial, self.path)
        return self.path

    @contextmanager
    def lock(self) -> Iterator[None]:
        """Hold the state exclusively for the duration of a run.

        Raises:
            StateLockError: If the lock is not acquired within lock_timeout
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        thread_lock = _process_lock(self.lock_path)
        if not thread_lock.acquire(timeout=self.lock_timeout):
            raise StateLockError(f"State for '{self.graph_name}' is locked by another run")
        try:
            with open(self.lock_path, 'a+', encoding='utf-8') as lock_file:
                self._flock(lock_file)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            thread_lock.release()

    def _flock(self, lock_file) -> None:
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise StateLockError(
                        f"State for '{self.graph_name}' is locked by another process ({self.lock_path})"
                    )
                time.sleep(0.1)
