"""Reconciliation of a resource graph against a backend.

One pass:
1. Validate the spec and build its resource graph
2. Load the stored snapshot and refresh it through backend.get
3. Plan a create / update / no_op / delete action per node
4. Apply actions in dependency order, independent subtrees concurrently
5. Record per-node outcomes, the new snapshot and the outputs

ORDERING:
- A node starts only after every prerequisite reached SUCCEEDED
- A failed prerequisite skips its dependents; siblings are unaffected
- Deletions start after the create/update phase has settled and run in
  reverse dependency order. A deletion is skipped when a current node that
  depended on the deleted one in the previous pass did not succeed

SAFETY: Every backend call is bounded by a timeout. A timed-out call may
still complete in its executor thread, so it is never retried within the
pass; the next pass observes whatever it left behind. Cancellation stops new
node applications; calls already in flight are allowed to finish.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .backend import Backend, BackendOperationError
from .builder import build_graph, resolve_identity_email, service_key
from .config import ReconcilerConfig
from .dependency import NodeKind, ResourceGraph, ResourceNode, topological_order
from .diff_normalizer import DiffNormalizer
from .models import ResourceSpec
from .outputs import ServiceOutputs, extract_outputs
from .preconditions import ensure_valid
from .state import ObservedResource, StateStore

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """Planned action for a node."""

    CREATE = "create"
    UPDATE = "update"
    NO_OP = "no_op"
    DELETE = "delete"


class NodeStatus(str, Enum):
    """Terminal status of a node after a pass."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class PlannedAction:
    """What the pass intends to do with one node."""

    key: str
    kind: NodeKind
    action: Action
    # Desired node; for deletions, the node as recorded in the previous pass
    node: ResourceNode
    # Keys that must succeed before this action runs
    prerequisites: list[str] = field(default_factory=list)
    # Last observed payload, empty when nothing exists yet
    observed: dict[str, Any] = field(default_factory=dict)
    changed_paths: list[str] = field(default_factory=list)


@dataclass
class Plan:
    """Actions for one pass, keyed by node key."""

    actions: dict[str, PlannedAction] = field(default_factory=dict)
    # Apply-phase keys in dependency order, then deletions dependents-first
    order: list[str] = field(default_factory=list)

    def keys_for(self, action: Action) -> list[str]:
        """Keys planned for the given action, in execution order."""
        return [key for key in self.order if self.actions[key].action == action]

    @property
    def has_changes(self) -> bool:
        return any(a.action != Action.NO_OP for a in self.actions.values())

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for planned in self.actions.values():
            counts[planned.action.value] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary(),
            "actions": [
                {
                    "key": key,
                    "kind": self.actions[key].kind.value,
                    "action": self.actions[key].action.value,
                    "prerequisites": self.actions[key].prerequisites,
                    "changedPaths": self.actions[key].changed_paths,
                }
                for key in self.order
            ],
        }


@dataclass
class NodeOutcome:
    """Terminal result of one node in a pass."""

    key: str
    kind: NodeKind
    action: Action
    status: NodeStatus
    error: str | None = None
    attempts: int = 0


@dataclass
class ReconcileResult:
    """Result of a single reconciliation pass."""

    service: str | None
    plan: Plan
    outcomes: dict[str, NodeOutcome] = field(default_factory=dict)
    # Observed snapshot after the pass; feed it to the next pass
    observed: dict[str, ObservedResource] = field(default_factory=dict)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    dry_run: bool = False
    cancelled: bool = False
    outputs: ServiceOutputs | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """True only if every node reached SUCCEEDED."""
        return not self.cancelled and all(
            o.status == NodeStatus.SUCCEEDED for o in self.outcomes.values()
        )

    def keys_with_status(self, status: NodeStatus) -> list[str]:
        return [key for key, o in self.outcomes.items() if o.status == status]

    @property
    def failed_keys(self) -> list[str]:
        return self.keys_with_status(NodeStatus.FAILED)

    @property
    def skipped_keys(self) -> list[str]:
        return self.keys_with_status(NodeStatus.SKIPPED)

    @property
    def retry_keys(self) -> list[str]:
        """Nodes a follow-up pass still has to apply."""
        return self.failed_keys + self.skipped_keys

    @property
    def errors(self) -> dict[str, str]:
        """First error per failed node."""
        return {
            key: o.error or "unknown error"
            for key, o in self.outcomes.items()
            if o.status == NodeStatus.FAILED
        }


class Reconciler:
    """Plans and applies resource graphs through a backend.

    The reconciler owns a graph exclusively for the duration of one apply.
    The graph and the observed snapshot are read-only during a pass; only the
    per-node outcome and result maps change, each entry written by the task
    applying that node.
    """

    def __init__(
        self,
        backend: Backend,
        config: ReconcilerConfig | None = None,
        normalizer: DiffNormalizer | None = None,
    ) -> None:
        self._backend = backend
        self._config = config or ReconcilerConfig()
        self._normalizer = normalizer or DiffNormalizer()

    @property
    def config(self) -> ReconcilerConfig:
        """Get the reconciler configuration."""
        return self._config

    async def reconcile(
        self,
        spec: ResourceSpec,
        store: StateStore | None = None,
        *,
        snapshot: Mapping[str, ObservedResource] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ReconcileResult:
        """Run one full pass for spec.

        Args:
            spec: Parsed service spec.
            store: State store to load the previous snapshot from and save
                the new one to. Takes precedence over snapshot.
            snapshot: Previous snapshot when no store is used.
            cancel_event: Set to stop starting new node applications.

        Raises:
            ValidationError: If the spec violates an invariant.
            PreconditionFailure: If a node's desired state cannot be built.
            GraphConsistencyFault: If the built graph is inconsistent.
            BackendOperationError: If refreshing observed state fails.
        """
        ensure_valid(spec, source=spec.name)
        graph = build_graph(spec)

        stored = store.load() if store is not None else dict(snapshot or {})
        observed = await self.refresh(graph, stored)
        plan = self.plan(graph, observed)

        logger.info(
            "Planned reconciliation",
            extra={"service": spec.name, "dry_run": self._config.dry_run, **plan.summary()},
        )

        result = await self.apply(plan, observed, cancel_event=cancel_event)
        result.service = spec.name

        if result.success and not result.dry_run:
            result.outputs = extract_outputs(
                result.observed, service_key(spec), resolve_identity_email(spec)
            )

        if store is not None and not result.dry_run:
            store.save(result.observed)

        self._log_result(result)
        return result

    async def refresh(
        self,
        graph: ResourceGraph,
        stored: Mapping[str, ObservedResource],
    ) -> dict[str, ObservedResource]:
        """Observe every graph node and every stored node through backend.get.

        Resources the backend no longer has drop out of the snapshot. Graph
        nodes found in the backend without a stored entry are adopted.
        """
        keys = list(graph.nodes) + [key for key in stored if key not in graph.nodes]
        semaphore = asyncio.Semaphore(self._config.max_concurrency)

        async def observe(key: str) -> tuple[str, dict[str, Any] | None]:
            async with semaphore:
                try:
                    payload = await self._call_backend(
                        self._backend.get, key, key=key, operation="get"
                    )
                except BackendOperationError:
                    raise
                except Exception as e:
                    logger.exception("Unexpected error observing resource", extra={"key": key})
                    raise BackendOperationError(key, f"get failed: {type(e).__name__}: {e}") from e
            return key, payload

        observed: dict[str, ObservedResource] = {}
        for key, payload in await asyncio.gather(*(observe(key) for key in keys)):
            if payload is None:
                if key in stored:
                    logger.warning("Managed resource no longer exists", extra={"key": key})
                continue
            previous = stored.get(key)
            if previous is not None:
                kind, depends_on = previous.kind, list(previous.depends_on)
            else:
                node = graph.get(key)
                kind, depends_on = node.kind, list(node.depends_on)
            observed[key] = ObservedResource(
                key=key, kind=kind, payload=payload, depends_on=depends_on
            )
        return observed

    def plan(
        self,
        graph: ResourceGraph,
        observed: Mapping[str, ObservedResource],
    ) -> Plan:
        """Compute one action per node.

        - create: no observed counterpart
        - update: observed differs from desired after normalization
        - no_op: observed matches desired
        - delete: observed but absent from the graph

        Raises:
            GraphConsistencyFault: If graph or stored dependencies contain a cycle.
        """
        plan = Plan()

        for key in graph.topological_sort():
            node = graph.get(key)
            current = observed.get(key)
            if current is None:
                action, changed = Action.CREATE, []
            else:
                changed = self._normalizer.compare(node.payload, current.payload, node.kind.value)
                action = Action.UPDATE if changed else Action.NO_OP
            plan.actions[key] = PlannedAction(
                key=key,
                kind=node.kind,
                action=action,
                prerequisites=list(node.depends_on),
                node=node,
                observed=current.payload if current is not None else {},
                changed_paths=changed,
            )
            plan.order.append(key)

        deletions = {key: res for key, res in observed.items() if key not in graph.nodes}
        delete_order = list(
            reversed(topological_order({key: res.depends_on for key, res in deletions.items()}))
        )
        for key in delete_order:
            # Anything that depended on this node last pass goes first
            prerequisites = sorted(
                other for other, res in observed.items() if key in res.depends_on
            )
            stale = deletions[key]
            plan.actions[key] = PlannedAction(
                key=key,
                kind=stale.kind,
                action=Action.DELETE,
                node=ResourceNode(stale.kind, key, stale.payload, list(stale.depends_on)),
                prerequisites=prerequisites,
                observed=stale.payload,
            )
            plan.order.append(key)

        return plan

    async def apply(
        self,
        plan: Plan,
        observed: Mapping[str, ObservedResource],
        cancel_event: asyncio.Event | None = None,
    ) -> ReconcileResult:
        """Apply a plan and return per-node outcomes and the new snapshot."""
        result = ReconcileResult(service=None, plan=plan, dry_run=self._config.dry_run)

        if self._config.dry_run:
            logger.info("Dry-run mode, skipping apply", extra=plan.summary())
            result.observed = dict(observed)
            result.end_time = datetime.now(UTC)
            return result

        cancel = cancel_event or asyncio.Event()
        semaphore = asyncio.Semaphore(self._config.max_concurrency)
        done: dict[str, asyncio.Event] = {key: asyncio.Event() for key in plan.order}
        outcomes: dict[str, NodeOutcome] = {}
        results: dict[str, dict[str, Any]] = {}

        apply_phase = [key for key in plan.order if plan.actions[key].action != Action.DELETE]

        async def run(key: str) -> None:
            planned = plan.actions[key]
            try:
                waits_for = list(planned.prerequisites)
                if planned.action == Action.DELETE:
                    waits_for.extend(apply_phase)
                for prerequisite in waits_for:
                    if prerequisite in done:
                        await done[prerequisite].wait()
                outcomes[key] = await self._run_action(
                    planned, outcomes, results, semaphore, cancel
                )
            finally:
                done[key].set()

        await asyncio.gather(*(run(key) for key in plan.order))

        result.outcomes = {key: outcomes[key] for key in plan.order}
        result.cancelled = cancel.is_set()
        result.observed = self._next_snapshot(plan, observed, result.outcomes, results)
        result.end_time = datetime.now(UTC)
        return result

    async def _run_action(
        self,
        planned: PlannedAction,
        outcomes: Mapping[str, NodeOutcome],
        results: dict[str, dict[str, Any]],
        semaphore: asyncio.Semaphore,
        cancel: asyncio.Event,
    ) -> NodeOutcome:
        outcome = NodeOutcome(
            key=planned.key,
            kind=planned.kind,
            action=planned.action,
            status=NodeStatus.SKIPPED,
        )

        blocked = [
            p
            for p in planned.prerequisites
            if p in outcomes and outcomes[p].status != NodeStatus.SUCCEEDED
        ]
        if blocked:
            outcome.error = f"prerequisite not applied: {', '.join(blocked)}"
            logger.warning(
                "Skipping node, prerequisite did not succeed",
                extra={"key": planned.key, "blocked_by": blocked},
            )
            return outcome

        if planned.action == Action.NO_OP:
            outcome.status = NodeStatus.SUCCEEDED
            return outcome

        async with semaphore:
            if cancel.is_set():
                outcome.error = "pass cancelled before node started"
                return outcome

            try:
                payload, outcome.attempts = await self._apply_with_retry(planned, cancel)
            except BackendOperationError as e:
                outcome.status = NodeStatus.FAILED
                outcome.error = e.message
                logger.error(
                    "Node application failed",
                    extra={
                        "key": planned.key,
                        "action": planned.action.value,
                        "error": e.message,
                        "retryable": e.retryable,
                    },
                )
                return outcome
            except Exception as e:
                outcome.status = NodeStatus.FAILED
                outcome.error = f"{type(e).__name__}: {e}"
                logger.exception(
                    "Unexpected error applying node",
                    extra={"key": planned.key, "action": planned.action.value},
                )
                return outcome

        if payload is not None:
            results[planned.key] = payload
        outcome.status = NodeStatus.SUCCEEDED
        logger.info(
            "Node applied",
            extra={
                "key": planned.key,
                "kind": planned.kind.value,
                "action": planned.action.value,
                "attempts": outcome.attempts,
            },
        )
        return outcome

    async def _apply_with_retry(
        self,
        planned: PlannedAction,
        cancel: asyncio.Event,
    ) -> tuple[dict[str, Any] | None, int]:
        """Apply one action with exponential backoff for retryable errors.

        Returns:
            Tuple of (observed payload or None for deletes, attempts used).

        Raises:
            BackendOperationError: If all attempts fail or the error is not
                retryable.
        """
        max_attempts = self._config.max_retries
        attempt = 1
        while True:
            try:
                return await self._apply_action(planned), attempt
            except BackendOperationError as e:
                if not e.retryable or attempt >= max_attempts or cancel.is_set():
                    raise

                # Exponential backoff with jitter
                backoff = self._config.retry_backoff_base_seconds * (2 ** (attempt - 1))
                wait_time = backoff + random.uniform(0, backoff * 0.2)
                logger.warning(
                    "Backend operation failed, retrying",
                    extra={
                        "key": planned.key,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": wait_time,
                        "error": e.message,
                    },
                )
                await asyncio.sleep(wait_time)
                attempt += 1

    async def _apply_action(self, planned: PlannedAction) -> dict[str, Any] | None:
        match planned.action:
            case Action.CREATE:
                return await self._call_backend(
                    self._backend.create, planned.node, key=planned.key, operation="create"
                )
            case Action.UPDATE:
                return await self._call_backend(
                    self._backend.update,
                    planned.node,
                    planned.observed,
                    key=planned.key,
                    operation="update",
                )
            case Action.DELETE:
                await self._call_backend(
                    self._backend.delete,
                    planned.key,
                    planned.observed,
                    key=planned.key,
                    operation="delete",
                )
                return None
            case _:
                raise ValueError(f"Nothing to apply for action {planned.action}")

    async def _call_backend(
        self,
        operation_fn: Callable[..., Any],
        *args: Any,
        key: str,
        operation: str,
    ) -> Any:
        """Run a blocking backend call in the executor with a timeout.

        Raises:
            BackendOperationError: On timeout (not retryable, the call may
                still land) or backend failure.
        """
        loop = asyncio.get_running_loop()
        timeout = self._config.operation_timeout_seconds
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, functools.partial(operation_fn, *args)),
                timeout=timeout,
            )
        except TimeoutError as e:
            logger.error(
                "Backend operation timed out",
                extra={"key": key, "operation": operation, "timeout_seconds": timeout},
            )
            raise BackendOperationError(
                key, f"{operation} timed out after {timeout}s", retryable=False
            ) from e

    def _next_snapshot(
        self,
        plan: Plan,
        observed: Mapping[str, ObservedResource],
        outcomes: Mapping[str, NodeOutcome],
        results: Mapping[str, dict[str, Any]],
    ) -> dict[str, ObservedResource]:
        """Observed snapshot after applying outcomes.

        Failed and skipped nodes keep their previous entry (or stay absent),
        so the next pass plans them again.
        """
        snapshot = dict(observed)
        for key, outcome in outcomes.items():
            if outcome.status != NodeStatus.SUCCEEDED:
                continue
            planned = plan.actions[key]
            match planned.action:
                case Action.DELETE:
                    snapshot.pop(key, None)
                case Action.CREATE | Action.UPDATE:
                    snapshot[key] = ObservedResource(
                        key=key,
                        kind=planned.kind,
                        payload=results[key],
                        depends_on=list(planned.node.depends_on),
                    )
                case Action.NO_OP:
                    snapshot[key] = ObservedResource(
                        key=key,
                        kind=planned.kind,
                        payload=planned.observed,
                        depends_on=list(planned.node.depends_on),
                    )
        return snapshot

    def _log_result(self, result: ReconcileResult) -> None:
        """Log reconciliation result with structured data."""
        extra: dict[str, Any] = {
            "service": result.service,
            "duration_seconds": result.duration_seconds,
            "dry_run": result.dry_run,
            "cancelled": result.cancelled,
            "succeeded": len(result.keys_with_status(NodeStatus.SUCCEEDED)),
            "failed": len(result.failed_keys),
            "skipped": len(result.skipped_keys),
        }

        if result.failed_keys:
            extra["errors"] = result.errors
            logger.error("Reconciliation failed", extra=extra)
        elif not result.success:
            logger.warning("Reconciliation incomplete", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)


def build_and_plan(
    spec: ResourceSpec,
    snapshot: Mapping[str, ObservedResource],
    normalizer: DiffNormalizer | None = None,
) -> Plan:
    """Plan a pass offline against a stored snapshot, without a backend."""
    ensure_valid(spec, source=spec.name)
    graph = build_graph(spec)
    planner = Reconciler(_OfflineBackend(), normalizer=normalizer)
    return planner.plan(graph, dict(snapshot))


class _OfflineBackend(Backend):
    """Backend that refuses every call; used for offline planning."""

    def get(self, key: str) -> dict[str, Any] | None:
        raise BackendOperationError(key, "offline planning has no backend")

    def create(self, node: ResourceNode) -> dict[str, Any]:
        raise BackendOperationError(node.key, "offline planning has no backend")

    def update(self, node: ResourceNode, observed: dict[str, Any]) -> dict[str, Any]:
        raise BackendOperationError(node.key, "offline planning has no backend")

    def delete(self, key: str, observed: dict[str, Any]) -> None:
        raise BackendOperationError(key, "offline planning has no backend")
