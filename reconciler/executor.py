"""
reconciler/executor.py

Applies a Plan through the injected providers and records the results in the
State Store.

Execution model:
  - Actions run in plan order. With max_workers > 1, actions that do not
    depend on each other may run concurrently on a bounded thread pool, but
    an action never starts before everything it waits for has succeeded.
  - DEFERRED values are re-resolved from the records written earlier in the
    same apply, just before the provider call.
  - A failed action marks every action waiting on it (directly or
    transitively) as skipped; independent subtrees keep going.
  - Cancellation stops new actions from starting. Provider calls already in
    flight finish and report their own outcome.
  - Every completed action is persisted immediately. A StateStoreIOError
    aborts the whole apply and is raised to the caller.

The `log=` callable is the same hook the CLI and API use everywhere: the CLI
passes a Rich formatter, the API passes a job queue writer.
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from reconciler.errors import ProviderError, StateStoreIOError
from reconciler.model import DEFERRED, Identity, Reference, contains_deferred, resolve
from reconciler.planner import ActionType, Plan, PlannedAction, classify, diff_attributes
from reconciler.state import Records, StateRecord, StateSession, StateStore

logger = logging.getLogger(__name__)

LogFn = Callable[[str], None]


class Outcome(str, Enum):
    APPLIED            = "applied"
    UNCHANGED          = "unchanged"
    FAILED             = "failed"
    SKIPPED_DEPENDENCY = "skipped-dependency-failure"
    SKIPPED_CANCELLED  = "skipped-cancelled"


_SUCCESS = (Outcome.APPLIED, Outcome.UNCHANGED)


@dataclass
class ResourceResult:
    identity: Identity
    action: ActionType
    outcome: Outcome
    error: Optional[str] = None
    # What actually ran; an update whose deferred values resolved to the
    # recorded ones collapses to no-op.
    performed: Optional[ActionType] = None

    @property
    def ok(self) -> bool:
        return self.outcome in _SUCCESS

    def to_dict(self) -> dict:
        return {
            "resource": str(self.identity),
            "action": self.action.value,
            "outcome": self.outcome.value,
            "performed": self.performed.value if self.performed else None,
            "error": self.error,
        }


@dataclass
class ApplyReport:
    results: List[ResourceResult] = field(default_factory=list)
    records: Records = field(default_factory=dict)
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return all(r.ok for r in self.results)

    def get(self, identity: Identity) -> Optional[ResourceResult]:
        for result in self.results:
            if result.identity == identity:
                return result
        return None

    def outcome_of(self, identity: Identity) -> Optional[Outcome]:
        result = self.get(identity)
        return result.outcome if result else None

    def counts(self) -> Dict[str, int]:
        counts = {o.value: 0 for o in Outcome}
        for result in self.results:
            counts[result.outcome.value] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "cancelled": self.cancelled,
            "counts": self.counts(),
            "results": [r.to_dict() for r in self.results],
        }


def apply_plan(
    plan: Plan,
    providers: Mapping[str, Any],
    store: StateStore,
    log: LogFn = print,
    max_workers: int = 1,
    cancel: Optional[threading.Event] = None,
) -> ApplyReport:
    """
    Execute `plan`.

    Args:
        providers:   kind → provider object with create/update/destroy.
        store:       State Store; held in a session for the whole apply.
        log:         progress callable.
        max_workers: > 1 enables concurrent application of independent actions.
        cancel:      set it to stop issuing new actions.

    Raises:
        StateStoreIOError: the state could not be read or written.
    """
    with store.session() as session:
        return _run_in_session(plan, providers, session, log, max_workers, cancel)


def plan_and_apply(
    make_plan: Callable[[Records], Plan],
    providers: Mapping[str, Any],
    store: StateStore,
    log: LogFn = print,
    max_workers: int = 1,
    cancel: Optional[threading.Event] = None,
) -> ApplyReport:
    """
    Plan against the records read inside the session, then apply.

    Use this when the plan was previewed earlier and another apply may have
    changed the state since: `make_plan(records)` is called with the store
    held, so the actions always reflect what is recorded right now.

    Raises:
        PlanningError:     `make_plan` rejected the current state.
        StateStoreIOError: the state could not be read or written.
    """
    with store.session() as session:
        return _run_in_session(make_plan(session.snapshot()), providers, session, log, max_workers, cancel)


def _run_in_session(plan, providers, session, log, max_workers, cancel) -> ApplyReport:
    run = _ApplyRun(plan, providers, session, log, cancel or threading.Event())
    if max_workers <= 1:
        run.run_sequential()
    else:
        run.run_concurrent(max_workers)
    report = run.report()

    counts = report.counts()
    summary = (
        f"{counts['applied']} applied, {counts['unchanged']} unchanged, "
        f"{counts['failed']} failed, "
        f"{counts['skipped-dependency-failure'] + counts['skipped-cancelled']} skipped"
    )
    if report.cancelled:
        log(f"⏹  Apply cancelled: {summary}.")
    elif report.succeeded:
        log(f"🎉 Apply complete! {summary}.")
    else:
        log(f"❌ Apply finished with errors: {summary}.")
    return report


class _ApplyRun:
    """State of one apply: results so far, the session, cancellation."""

    def __init__(self, plan: Plan, providers, session: StateSession, log: LogFn, cancel: threading.Event):
        self.plan = plan
        self.providers = providers
        self.session = session
        self.log = log
        self.cancel = cancel
        self.in_plan = {a.identity for a in plan.actions}
        self.results: Dict[Identity, ResourceResult] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # scheduling
    # ------------------------------------------------------------------

    def run_sequential(self) -> None:
        for action in self.plan.actions:
            if self.cancel.is_set():
                self._skip_cancelled(action)
                continue
            blocker = self._blocker(action)
            if blocker is not None:
                self._skip_dependency(action, blocker)
                continue
            self._record(self._execute(action))

    def run_concurrent(self, max_workers: int) -> None:
        pending: List[PlannedAction] = list(self.plan.actions)
        in_flight: Dict[Any, PlannedAction] = {}
        fatal: Optional[StateStoreIOError] = None

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="apply") as pool:
            while pending or in_flight:
                if fatal is not None or self.cancel.is_set():
                    if fatal is None:
                        for action in pending:
                            self._skip_cancelled(action)
                    pending = []
                else:
                    for action in list(pending):
                        if len(in_flight) >= max_workers:
                            break
                        blocker = self._blocker(action)
                        if blocker is not None:
                            pending.remove(action)
                            self._skip_dependency(action, blocker)
                        elif self._ready(action):
                            pending.remove(action)
                            in_flight[pool.submit(self._execute, action)] = action

                if not in_flight:
                    if pending and not any(self._ready(a) or self._blocker(a) for a in pending):
                        raise RuntimeError(
                            "Apply stalled: no runnable action among "
                            + ", ".join(str(a.identity) for a in pending)
                        )
                    continue

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    action = in_flight.pop(future)
                    try:
                        self._record(future.result())
                    except StateStoreIOError as ex:
                        fatal = fatal or ex
                        self.log(f"❌ State store failure while applying {action.identity}: {ex}")

        if fatal is not None:
            raise fatal

    def _ready(self, action: PlannedAction) -> bool:
        return all(
            dep in self.results
            for dep in action.waits_for
            if dep in self.in_plan
        )

    def _blocker(self, action: PlannedAction) -> Optional[Identity]:
        """First dependency that did not succeed, or None."""
        for dep in action.waits_for:
            result = self.results.get(dep)
            if result is not None and not result.ok:
                return dep
        return None

    def _record(self, result: ResourceResult) -> None:
        with self._lock:
            self.results[result.identity] = result

    def _skip_cancelled(self, action: PlannedAction) -> None:
        self._record(ResourceResult(action.identity, action.action, Outcome.SKIPPED_CANCELLED,
                                    error="apply was cancelled"))
        self.log(f"⏹  {action.identity}: skipped (cancelled)")

    def _skip_dependency(self, action: PlannedAction, blocker: Identity) -> None:
        self._record(ResourceResult(action.identity, action.action, Outcome.SKIPPED_DEPENDENCY,
                                    error=f"dependency {blocker} did not succeed"))
        self.log(f"⚠️  {action.identity}: skipped, dependency {blocker} did not succeed")

    def report(self) -> ApplyReport:
        ordered = [self.results[a.identity] for a in self.plan.actions if a.identity in self.results]
        return ApplyReport(
            results=ordered,
            records=self.session.snapshot(),
            cancelled=self.cancel.is_set(),
        )

    # ------------------------------------------------------------------
    # execution
    # ------------------------------------------------------------------

    def _execute(self, action: PlannedAction) -> ResourceResult:
        identity = action.identity
        try:
            performed = self._perform(action)
        except StateStoreIOError:
            raise
        except Exception as ex:
            error = ex if isinstance(ex, ProviderError) else ProviderError(str(ex), [identity])
            self.log(f"❌ {identity}: {action.action.value} failed: {error}")
            logger.debug("provider failure for %s", identity, exc_info=True)
            return ResourceResult(identity, action.action, Outcome.FAILED, error=str(error))

        if performed is ActionType.NOOP:
            return ResourceResult(identity, action.action, Outcome.UNCHANGED, performed=performed)
        return ResourceResult(identity, action.action, Outcome.APPLIED, performed=performed)

    def _provider(self, identity: Identity):
        provider = self.providers.get(identity.kind)
        if provider is None:
            raise ProviderError(f"No provider registered for kind '{identity.kind}'", [identity])
        return provider

    def _lookup(self, reference: Reference) -> Any:
        record = self.session.snapshot().get(reference.target)
        if record is None:
            return DEFERRED
        return record.attributes.get(reference.attribute)

    def _perform(self, action: PlannedAction) -> ActionType:
        identity = action.identity

        if action.action is ActionType.NOOP:
            return ActionType.NOOP

        provider = self._provider(identity)

        if action.action is ActionType.DESTROY:
            self.log(f"🔥 {identity}: destroying...")
            provider.destroy(action.prior.provider_id, log=self.log)
            self.session.remove(identity)
            self.log(f"✅ {identity}: destroyed.")
            return ActionType.DESTROY

        attributes = resolve(action.spec, self._lookup).attributes
        if any(contains_deferred(v) for v in attributes.values()):
            raise ProviderError(f"{identity}: references could not be resolved before apply", [identity])

        if action.action is ActionType.CREATE:
            self._create(action, provider, attributes)
            return ActionType.CREATE

        # Update / Replace: classify again now that every value is known.
        schema = provider.schema
        prior = action.prior
        performed = classify(diff_attributes(schema, attributes, prior.attributes))

        if performed is ActionType.NOOP:
            self.log(f"✅ {identity}: no changes after resolving references.")
            return ActionType.NOOP

        if performed is ActionType.UPDATE:
            self.log(f"⏳ {identity}: updating in place...")
            computed = provider.update(prior.provider_id, dict(prior.attributes), dict(attributes), log=self.log)
            kept = {k: v for k, v in prior.attributes.items() if schema.is_computed(k)}
            self.session.put(StateRecord(
                identity=identity,
                provider_id=prior.provider_id,
                attributes={**kept, **attributes, **(computed or {})},
                dependencies=list(action.waits_for),
            ))
            self.log(f"✅ {identity}: updated.")
            return ActionType.UPDATE

        self.log(f"🔥 {identity}: replacing, destroying {prior.provider_id}...")
        provider.destroy(prior.provider_id, log=self.log)
        self.session.remove(identity)
        self._create(action, provider, attributes)
        return ActionType.REPLACE

    def _create(self, action: PlannedAction, provider, attributes: Dict[str, Any]) -> None:
        identity = action.identity
        self.log(f"⏳ {identity}: creating...")
        provider_id, computed = provider.create(dict(attributes), log=self.log)
        self.session.put(StateRecord(
            identity=identity,
            provider_id=provider_id,
            attributes={**attributes, **(computed or {})},
            dependencies=list(action.waits_for),
        ))
        self.log(f"✅ {identity}: created ({provider_id}).")
