"""Reconciler for resource graphs.

Walks the scheduler's waves in order and drives each resource from its
desired spec to a matching live resource through its provider client.
Resources within a wave run concurrently on a bounded thread pool.

A failed resource blocks its transitive dependents (they stay Pending and
are reported as not attempted); unrelated branches run to completion.
The whole run holds the state lock; the snapshot is written once at the
end, on every exit path.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from common import call_with_timeout, retry_call
from config import EngineSettings
from providers.base import ProviderRegistry, readiness_predicate
from provision.errors import (
    InvalidTransitionError,
    OperationTimeoutError,
    ProvisionError,
    ResourceNotFound,
    ValidationError,
)
from provision.events import EventBus
from provision.graph import ResourceGraph
from provision.outputs import resolve_outputs, outputs_to_json, unavailable_paths
from provision.plan import (
    Action,
    Plan,
    PlanEntry,
    Planner,
    contains_unknown,
    decide_action,
    render_value,
    resolve_spec,
)
from provision.scheduler import Scheduler, destroy_waves_for
from provision.secrets_mgr import SecretLifecycleManager, SecretPolicy
from provision.state import ResourceState, Snapshot, StateStore, Status
from provision.waiter import ConsistencyWaiter
from resources import ConsistencyMode, ResourceKind, ResourceSpec, SecretToken

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    """Outcome of an apply or destroy run.

    Attributes:
        graph_name: Graph that was reconciled
        plan: Plan computed at the start of the run
        states: Final per-resource states
        outputs: Resolved outputs (values, tokens or Unavailable markers)
        cancelled: An abort signal stopped scheduling before the end
        dry_run: Nothing was executed
        duration: Wall-clock seconds
    """
    graph_name: str
    plan: Plan
    states: dict[str, ResourceState] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    cancelled: bool = False
    dry_run: bool = False
    duration: float = 0.0

    def failed(self) -> list[str]:
        return [rid for rid, s in self.states.items() if s.status == Status.FAILED]

    def not_attempted(self) -> list[str]:
        return [rid for rid, s in self.states.items() if s.status == Status.PENDING]

    @property
    def success(self) -> bool:
        if self.dry_run:
            return True
        return not self.cancelled and not self.failed() and not self.not_attempted()

    @property
    def partial(self) -> bool:
        """Some resources converged while others failed or were skipped."""
        done = any(s.status in (Status.READY, Status.DESTROYED) for s in self.states.values())
        return not self.success and done

    def status_table(self) -> list[dict[str, Any]]:
        rows = []
        for rid, s in self.states.items():
            row: dict[str, Any] = {'resource_id': rid, 'kind': s.kind, 'status': s.status.value}
            if s.status == Status.PENDING and not self.dry_run:
                row['status'] = 'not attempted'
            if s.error:
                row['error'] = s.error
                row['error_type'] = s.error_type
            if s.note:
                row['note'] = s.note
            if s.duration is not None:
                row['duration'] = round(s.duration, 3)
            rows.append(row)
        return rows

    def to_dict(self) -> dict[str, Any]:
        return {
            'graph': self.graph_name,
            'success': self.success,
            'partial': self.partial,
            'cancelled': self.cancelled,
            'dry_run': self.dry_run,
            'duration': round(self.duration, 3),
            'plan': self.plan.to_dict(),
            'resources': self.status_table(),
            'outputs': outputs_to_json(self.outputs),
            'unavailable_outputs': unavailable_paths(self.outputs),
        }


@dataclass
class _Run:
    """Mutable bookkeeping for one run."""
    snapshot: Snapshot
    plan: Plan
    states: dict[str, ResourceState] = field(default_factory=dict)
    # Live resources that exist but never reached Ready (None: known gone)
    live_observed: dict[str, Optional[dict]] = field(default_factory=dict)
    # Create/update calls that timed out; the provider may still finish them
    unknown: set[str] = field(default_factory=set)
    cancelled: bool = False

    def ready_observed(self, resource_id: str) -> Optional[dict]:
        state = self.states.get(resource_id)
        if state is None or state.status != Status.READY:
            return None
        return state.observed


@dataclass
class Reconciler:
    """Drives a resource graph to convergence.

    Attributes:
        graph: Validated resource graph
        providers: Provider clients per kind
        store: State snapshot store for the graph
        settings: Engine settings (parallelism, timeouts, retry policy)
        secrets: Secret lifecycle manager for secret-version resources
        waiter: Consistency waiter (built from settings if omitted)
        events: Event bus receiving every status transition
        abort: Set to stop scheduling new waves
        dry_run: Compute the plan only
        sleep: Sleep used for retry backoff (injectable for tests)
        clock: Monotonic clock for operation deadlines
    """
    graph: ResourceGraph
    providers: ProviderRegistry
    store: StateStore
    settings: EngineSettings = field(default_factory=EngineSettings)
    secrets: SecretLifecycleManager = field(default_factory=SecretLifecycleManager)
    waiter: Optional[ConsistencyWaiter] = None
    events: EventBus = field(default_factory=EventBus)
    abort: threading.Event = field(default_factory=threading.Event)
    dry_run: bool = False
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def __post_init__(self) -> None:
        self.scheduler = Scheduler(self.graph)
        if self.waiter is None:
            self.waiter = ConsistencyWaiter(
                default_interval=self.settings.poll_interval,
                clock=self.clock,
                sleep=self.sleep,
            )
        self.planner = Planner(self.graph, self.scheduler, latest_secret=self.secrets.latest)

    # -- public lifecycle -------------------------------------------------

    def plan(self, refresh: Optional[bool] = None) -> Plan:
        """Compute the plan against the persisted state without applying."""
        self._check_providers(self.graph.specs())
        snapshot = self.store.load()
        if self.settings.refresh if refresh is None else refresh:
            self._refresh(snapshot)
        return self.planner.plan(snapshot)

    def apply(self) -> ApplyResult:
        """Reconcile every resource in wave order, then remove orphans.

        Raises:
            ValidationError: If a kind has no provider client (before any call)
            StateLockError: If another run holds the state
        """
        self._check_providers(self.graph.specs())
        start = time.time()
        with self.store.lock():
            snapshot = self.store.load()
            run: Optional[_Run] = None
            try:
                if self.settings.refresh:
                    self._refresh(snapshot)
                plan = self.planner.plan(snapshot)
                run = _Run(snapshot=snapshot, plan=plan)
                for node in self.graph.nodes():
                    run.states[node.id] = ResourceState(
                        id=node.id,
                        kind=node.kind.value,
                        depends_on=[d.id for d in node.dependencies],
                    )

                if self.dry_run:
                    self._preview(plan)
                    return ApplyResult(self.graph.name, plan, run.states, dry_run=True,
                                       duration=time.time() - start)

                self._apply_waves(run)
                self._destroy_orphans(run)
                outputs = resolve_outputs(self.graph.outputs, run.ready_observed)
            finally:
                if run is not None and not self.dry_run:
                    self._merge(snapshot, run)
                    self.store.save(snapshot)

        result = ApplyResult(
            graph_name=self.graph.name,
            plan=plan,
            states=run.states,
            outputs=outputs,
            cancelled=run.cancelled,
            duration=time.time() - start,
        )
        self._log_summary('apply', result)
        return result

    def destroy(self) -> ApplyResult:
        """Destroy every resource recorded in state, dependents first."""
        start = time.time()
        with self.store.lock():
            snapshot = self.store.load()
            ids = list(snapshot.resources)
            deps = {rid: snapshot.resources[rid].depends_on for rid in ids}
            waves = destroy_waves_for(ids, deps)
            plan = Plan(graph_name=self.graph.name)
            for wave in waves:
                for rid in wave:
                    plan.entries.append(PlanEntry(rid, snapshot.resources[rid].kind, Action.DESTROY))
            run = _Run(snapshot=snapshot, plan=plan)
            for rid in ids:
                run.states[rid] = ResourceState(
                    id=rid, kind=snapshot.resources[rid].kind, depends_on=deps[rid],
                )

            if self.dry_run:
                self._preview(plan)
                return ApplyResult(self.graph.name, plan, run.states, dry_run=True,
                                   duration=time.time() - start)

            self._check_providers_for_kinds({snapshot.resources[rid].kind for rid in ids})
            try:
                self._destroy_waves(run, waves, dependents_of=_invert(deps))
            finally:
                self._merge(snapshot, run)
                self.store.save(snapshot)

        result = ApplyResult(
            graph_name=self.graph.name,
            plan=plan,
            states=run.states,
            cancelled=run.cancelled,
            duration=time.time() - start,
        )
        self._log_summary('destroy', result)
        return result

    def outputs(self) -> dict[str, Any]:
        """Resolve outputs from the persisted snapshot."""
        snapshot = self.store.load()

        def ready(rid: str) -> Optional[dict]:
            state = snapshot.get(rid)
            if state is None or state.status != Status.READY:
                return None
            return state.observed

        return resolve_outputs(self.graph.outputs, ready)

    def rotate_secret(self, resource_id: str) -> SecretToken:
        """Append a new version to the secret managed by a secret-version resource.

        Dependents pick the new version up on the next apply.

        Raises:
            ValidationError: If resource_id is not a secret-version resource
        """
        if resource_id not in self.graph:
            raise ValidationError(f"Unknown resource '{resource_id}'", resource_id=resource_id)
        spec = self.graph.get_node(resource_id).spec
        if spec.kind != ResourceKind.SECRET_VERSION:
            raise ValidationError(
                f"Resource '{resource_id}' is {spec.kind.value}, not secret-version",
                resource_id=resource_id,
            )
        with self.store.lock():
            snapshot = self.store.load()
            observed = snapshot.observed(resource_id)
            if observed is None:
                raise ValidationError(
                    f"Secret '{resource_id}' has not been applied yet; nothing to rotate",
                    resource_id=resource_id,
                )
            policy = SecretPolicy.from_dict(spec.attributes.get('generate'))
            return self.secrets.rotate(str(observed['secret']), policy)

    # -- waves --------------------------------------------------------------

    def _apply_waves(self, run: _Run) -> None:
        for wave_no, wave in enumerate(self.scheduler.waves()):
            if self.abort.is_set():
                self._cancel_remaining(run, wave_no)
                return

            runnable = []
            for rid in wave:
                node = self.graph.get_node(rid)
                blocked = [d.id for d in node.dependencies if run.states[d.id].status != Status.READY]
                if blocked:
                    run.states[rid].note = f"dependency '{blocked[0]}' not ready"
                    logger.warning("[%s] Not attempted: dependency '%s' not ready", rid, blocked[0])
                    continue
                runnable.append(rid)

            logger.info("Wave %d: %s", wave_no, ', '.join(runnable) if runnable else '(nothing runnable)')
            self._run_parallel(runnable, lambda rid: self._reconcile(run, rid))

    def _run_parallel(self, ids: list[str], fn: Callable[[str], None]) -> None:
        if not ids:
            return
        workers = min(self.settings.parallelism, len(ids))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='reconcile') as pool:
            futures = [pool.submit(fn, rid) for rid in ids]
            for future in futures:
                future.result()

    def _cancel_remaining(self, run: _Run, from_wave: int) -> None:
        run.cancelled = True
        skipped = [rid for wave in self.scheduler.waves()[from_wave:] for rid in wave]
        for rid in skipped:
            run.states[rid].note = 'cancelled before scheduling'
        logger.warning("Abort requested: %d resource(s) not scheduled", len(skipped))

    # -- per-resource -------------------------------------------------------

    def _reconcile(self, run: _Run, resource_id: str) -> None:
        spec = self.graph.get_node(resource_id).spec
        state = run.states[resource_id]
        try:
            if spec.kind == ResourceKind.SECRET_VERSION:
                self._reconcile_secret_version(run, spec, state)
            else:
                self._reconcile_resource(run, spec, state)
        except InvalidTransitionError:
            raise
        except Exception as e:
            if not isinstance(e, ProvisionError):
                logger.exception("[%s] Unexpected error from provider client", resource_id)
            self._fail(state, e)

    def _reconcile_resource(self, run: _Run, spec: ResourceSpec, state: ResourceState) -> None:
        resolved = resolve_spec(spec, run.ready_observed)
        if contains_unknown(resolved.attributes):
            raise ProvisionError(f"Resource '{spec.id}' has references that did not resolve")

        client = self.providers.get(spec.kind)
        deadline = self.clock() + self._operation_timeout(spec)
        prior_state = run.snapshot.get(spec.id)
        prior = run.snapshot.observed(spec.id)
        if prior_state is not None and prior_state.tainted:
            prior = self._adopt(run, spec, resolved.attributes, client, deadline)
        action, changes = decide_action(spec, resolved.attributes, prior)

        if action == Action.NOOP:
            if prior_state is not None and prior_state.status != Status.READY:
                # Exists from an earlier run but readiness was never confirmed
                self._set(state, Status.CREATING, 'confirming readiness')
                state.attempted = True
                self._await_consistency(run, spec, state, client, prior)
                return
            self._ready(state, prior, 'no changes')
            return

        state.attempted = True
        try:
            if action == Action.CREATE:
                self._set(state, Status.CREATING, 'create')
                observed = self._call(f'{spec.id}:create', lambda: client.create(resolved), deadline)
            elif action == Action.UPDATE:
                self._set(state, Status.CREATING, f"update {', '.join(c.key for c in changes)}")
                observed = self._call(f'{spec.id}:update', lambda: client.update(spec.id, resolved), deadline)
            else:
                forced = ', '.join(c.key for c in changes if c.forces_replacement)
                self._set(state, Status.DESTROYING, f"replace ({forced} cannot change in place)")
                self._call(f'{spec.id}:destroy', lambda: client.destroy(spec.id), deadline)
                run.live_observed[spec.id] = None
                self._set(state, Status.CREATING, 'create replacement')
                observed = self._call(f'{spec.id}:create', lambda: client.create(resolved), deadline)
        except OperationTimeoutError:
            run.unknown.add(spec.id)
            logger.warning("[%s] %s timed out; the next run reads it back before acting",
                           spec.id, action.value)
            raise

        observed = sanitize_observed(observed, spec, resolved.attributes)
        run.live_observed[spec.id] = observed
        self._await_consistency(run, spec, state, client, observed)

    def _adopt(self, run: _Run, spec: ResourceSpec, resolved: dict, client: Any,
               deadline: float) -> Optional[dict]:
        """Read back a resource whose last create or update timed out.

        Returns the live attributes to diff against, or None when nothing
        exists and a create is needed.
        """
        try:
            live = self._call(f'{spec.id}:read', lambda: client.read(spec.id), deadline)
        except ResourceNotFound:
            logger.info("[%s] Timed-out operation left nothing behind", spec.id)
            run.live_observed[spec.id] = None
            return None
        observed = sanitize_observed(live, spec, resolved)
        run.live_observed[spec.id] = observed
        logger.info("[%s] Adopting resource left by a timed-out operation", spec.id)
        return observed

    def _await_consistency(self, run: _Run, spec: ResourceSpec, state: ResourceState,
                           client: Any, observed: dict) -> None:
        traits = spec.traits
        override = self.settings.consistency.get(spec.kind.value)
        mode = traits.consistency

        if mode == ConsistencyMode.NONE:
            self._ready(state, observed)
            return

        predicate = readiness_predicate(client, spec.id)
        min_delay = _first(override and override.min_delay, traits.min_delay)
        if predicate is None:
            self._set(state, Status.WAITING, f"fixed delay {min_delay:g}s (no readiness predicate)")
            self.waiter.settle(spec.id, min_delay)
        else:
            timeout = _first(spec.timeouts.consistency, override and override.timeout,
                             traits.timeout or self.settings.operation_timeout)
            interval = _first(override and override.interval, traits.interval, self.settings.poll_interval)
            self._set(state, Status.WAITING, f"readiness predicate (timeout {timeout:g}s)")
            self.waiter.wait(spec.id, predicate, timeout, interval, last_observed=observed)
        self._ready(state, observed)

    def _reconcile_secret_version(self, run: _Run, spec: ResourceSpec, state: ResourceState) -> None:
        resolved = resolve_spec(spec, run.ready_observed)
        if contains_unknown(resolved.attributes):
            raise ProvisionError(f"Resource '{spec.id}' has references that did not resolve")
        name = resolved.attributes.get('secret')
        if not isinstance(name, str) or not name:
            raise ValidationError(f"secret-version '{spec.id}' needs a 'secret' name", resource_id=spec.id)
        policy = SecretPolicy.from_dict(resolved.attributes.get('generate'))

        prior = run.snapshot.observed(spec.id)
        action, _ = decide_action(spec, resolved.attributes, prior)
        latest = self.secrets.latest(name)
        if action == Action.NOOP and latest is not None and str(latest) == prior.get('ref'):
            self._ready(state, prior, 'no changes')
            return

        state.attempted = True
        self._set(state, Status.CREATING, 'bind secret version')
        token, created = self.secrets.ensure(name, policy)
        observed = dict(render_value(resolved.attributes))
        observed.update({
            'id': f"{name}/versions/{token.version}",
            'secret': name,
            'version': token.version,
            'ref': str(token),
        })
        self._ready(state, observed, 'generated first version' if created else f'bound to {token}')

    # -- destroy ------------------------------------------------------------

    def _destroy_orphans(self, run: _Run) -> None:
        orphans = [e.resource_id for e in run.plan.entries if e.action == Action.DESTROY]
        if not orphans:
            return
        deps = {rid: run.snapshot.resources[rid].depends_on for rid in orphans}
        for rid in orphans:
            run.states[rid] = ResourceState(
                id=rid, kind=run.snapshot.resources[rid].kind, depends_on=deps[rid],
            )
        self._destroy_waves(run, destroy_waves_for(orphans, deps), dependents_of=_invert(deps))

    def _destroy_waves(self, run: _Run, waves: list[list[str]], dependents_of: dict[str, list[str]]) -> None:
        for wave_no, wave in enumerate(waves):
            if self.abort.is_set():
                run.cancelled = True
                for rid in (r for w in waves[wave_no:] for r in w):
                    run.states[rid].note = 'cancelled before scheduling'
                logger.warning("Abort requested: destroy stopped before wave %d", wave_no)
                return

            runnable = []
            for rid in wave:
                blocked = [d for d in dependents_of.get(rid, [])
                           if d in run.states and run.states[d].status != Status.DESTROYED]
                if blocked:
                    run.states[rid].note = f"dependent '{blocked[0]}' still exists"
                    logger.warning("[%s] Not destroyed: dependent '%s' still exists", rid, blocked[0])
                    continue
                runnable.append(rid)
            self._run_parallel(runnable, lambda rid: self._destroy_one(run, rid))

    def _destroy_one(self, run: _Run, resource_id: str) -> None:
        state = run.states[resource_id]
        kind = ResourceKind(state.kind)
        state.attempted = True
        try:
            self._set(state, Status.DESTROYING, 'destroy')
            if kind == ResourceKind.SECRET_VERSION:
                # Versions are immutable history; only the binding goes away
                logger.info("[%s] Secret versions retained in store", resource_id)
            else:
                client = self.providers.get(kind)
                deadline = self.clock() + self.settings.operation_timeout
                try:
                    self._call(f'{resource_id}:destroy', lambda: client.destroy(resource_id), deadline)
                except ResourceNotFound:
                    logger.info("[%s] Already gone", resource_id)
            run.live_observed[resource_id] = None
            previous = state.transition(Status.DESTROYED)
            self.events.emit(resource_id, previous, Status.DESTROYED)
        except InvalidTransitionError:
            raise
        except Exception as e:
            if not isinstance(e, ProvisionError):
                logger.exception("[%s] Unexpected error from provider client", resource_id)
            self._fail(state, e)

    # -- helpers ------------------------------------------------------------

    def _call(self, label: str, fn: Callable[[], Any], deadline: float) -> Any:
        """Provider call bounded by the operation deadline, retrying transient errors."""

        def attempt():
            return call_with_timeout(fn, max(deadline - self.clock(), 0.001), label)

        return retry_call(attempt, self.settings.retry, label,
                          sleep=self.sleep, deadline=deadline, clock=self.clock)

    def _operation_timeout(self, spec: ResourceSpec) -> float:
        return _first(spec.timeouts.operation, self.settings.operation_timeout)

    def _set(self, state: ResourceState, status: Status, message: str = '') -> None:
        previous = state.transition(status)
        self.events.emit(state.id, previous, status, message)

    def _ready(self, state: ResourceState, observed: dict, message: str = '') -> None:
        previous = state.ready(observed)
        self.events.emit(state.id, previous, Status.READY, message)

    def _fail(self, state: ResourceState, error: BaseException) -> None:
        if state.status == Status.PENDING:
            # Failure before any provider call (e.g. unresolved reference)
            state.transition(Status.CREATING)
        previous = state.fail(error)
        self.events.emit(state.id, previous, Status.FAILED, f"{type(error).__name__}: {error}")

    def _check_providers(self, specs: list[ResourceSpec]) -> None:
        self._check_providers_for_kinds({s.kind.value for s in specs})

    def _check_providers_for_kinds(self, kinds: set[str]) -> None:
        needed = {ResourceKind(k) for k in kinds} - {ResourceKind.SECRET_VERSION}
        self.providers.check_covers(needed)

    def _refresh(self, snapshot: Snapshot) -> None:
        """Re-read live resources so drift shows up in the diff."""
        for rid, record in list(snapshot.resources.items()):
            if not record.observed and not record.tainted:
                continue
            kind = ResourceKind(record.kind)
            if kind == ResourceKind.SECRET_VERSION:
                if 'ref' not in record.observed:
                    continue
                token = SecretToken.parse(str(record.observed['ref']))
                if token.version not in self.secrets.store.versions(token.name):
                    logger.warning("[%s] Secret version %s missing from store", rid, token)
                    del snapshot.resources[rid]
                continue
            if kind not in self.providers:
                continue
            client = self.providers.get(kind)
            deadline = self.clock() + self.settings.operation_timeout
            try:
                live = self._call(f'{rid}:read', lambda: client.read(rid), deadline)
            except ResourceNotFound:
                logger.warning("[%s] Drift: resource no longer exists", rid)
                del snapshot.resources[rid]
                continue
            except ProvisionError as e:
                logger.warning("[%s] Refresh failed, keeping recorded state: %s", rid, e)
                continue

            spec = self.graph.get_node(rid).spec if rid in self.graph else None
            live = sanitize_observed(live, spec, record.observed)
            if live != record.observed:
                logger.info("[%s] Drift detected since last run", rid)
            record.observed = live

    def _merge(self, snapshot: Snapshot, run: _Run) -> None:
        """Fold run results into the snapshot that gets persisted."""
        for rid, state in run.states.items():
            prior = snapshot.resources.get(rid)
            if state.status == Status.READY:
                snapshot.resources[rid] = ResourceState(
                    id=rid, kind=state.kind, status=Status.READY,
                    observed=state.observed, depends_on=state.depends_on,
                    started_at=state.started_at, completed_at=state.completed_at,
                )
            elif state.status == Status.DESTROYED:
                snapshot.resources.pop(rid, None)
            elif state.status == Status.FAILED:
                if rid in run.live_observed:
                    observed = run.live_observed[rid] or {}
                else:
                    observed = prior.observed if prior else {}
                tainted = rid in run.unknown or (
                    prior is not None and prior.tainted and rid not in run.live_observed
                )
                if not observed and not tainted:
                    # Nothing exists: next run creates from scratch
                    snapshot.resources.pop(rid, None)
                    continue
                snapshot.resources[rid] = ResourceState(
                    id=rid, kind=state.kind, status=Status.FAILED, observed=observed,
                    depends_on=state.depends_on or (prior.depends_on if prior else []),
                    error=state.error, error_type=state.error_type, tainted=tainted,
                    started_at=state.started_at, completed_at=state.completed_at,
                )

    def _preview(self, plan: Plan) -> None:
        for entry in plan.entries:
            logger.info("[dry-run] %s %s (%s)", entry.action.value, entry.resource_id, entry.kind)

    def _log_summary(self, verb: str, result: ApplyResult) -> None:
        failed = result.failed()
        skipped = result.not_attempted()
        if result.success:
            logger.info("%s of '%s' converged in %.1fs", verb, result.graph_name, result.duration)
        else:
            logger.error("%s of '%s' incomplete: %d failed, %d not attempted%s",
                         verb, result.graph_name, len(failed), len(skipped),
                         ' (cancelled)' if result.cancelled else '')


def sanitize_observed(observed: dict, spec: Optional[ResourceSpec], reference: dict) -> dict:
    """Keep secret values out of observed attributes.

    Secret-typed keys (attributes carrying a secret_ref, and kind-sensitive
    attributes) take their value from reference instead: the resolved
    desired attributes, which hold tokens, or the previously recorded
    observed attributes. Keys with no reference value are dropped.
    """
    clean = dict(observed)
    secret_keys: set[str] = set()
    if spec is not None:
        secret_keys = spec.secret_keys() | set(spec.traits.sensitive)
    for key in secret_keys:
        if key not in clean:
            continue
        if key in reference:
            clean[key] = reference[key]
        else:
            del clean[key]
    return {k: render_value(v) for k, v in clean.items()}


def _first(*values):
    """First value that is not None (0 counts as a value)."""
    for value in values:
        if value is not None and value is not False:
            return value
    return None


def _invert(deps: dict[str, list[str]]) -> dict[str, list[str]]:
    dependents: dict[str, list[str]] = {rid: [] for rid in deps}
    for rid, items in deps.items():
        for dep in items:
            dependents.setdefault(dep, []).append(rid)
    return dependents
