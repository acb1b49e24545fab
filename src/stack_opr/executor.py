"""Reconciler for stack apply and destroy.

Walks the ordered nodes and converges provider objects to them:

- Forward phase, in topological order: create, update or replace each
  present node. Mutually independent nodes may run concurrently when
  max_workers > 1; a node only starts once all of its dependencies have
  finished.
- Deposed cleanup: old objects of create-before-destroy replacements are
  destroyed once every dependent has been repointed.
- Delete phase: state entries with no present node are destroyed,
  dependents first, using the dependencies recorded in state.

State is saved after every successful provider call. A failed node only
blocks its dependents; nothing already applied is rolled back.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from common import NodeResult, call_with_timeout, prune_nulls
from errors import NotFound, PartialFailure, PreconditionError, RequiresReplacement, StackError
from providers.base import Provider
from stack_opr.graph import Reference, ResourceNode
from stack_opr.lifecycle import Action, Lifecycle, apply_ignored, check_preconditions, decide
from stack_opr.plan import run_lifecycle, teardown_order
from stack_opr.resolver import OrderedPlan, evaluate
from stack_opr.state import NodeState, StackState, StateStore

logger = logging.getLogger(__name__)


@dataclass
class _Run:
    """Mutable bookkeeping for one apply or destroy run."""
    state: StackState
    snapshot: Any = None
    replace: frozenset = frozenset()
    ignore_overrides: Mapping[str, Iterable[str]] = field(default_factory=dict)
    completed: list[str] = field(default_factory=list)
    failed: dict[str, Exception] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    results: list[NodeResult] = field(default_factory=list)
    precondition: Optional[PreconditionError] = None
    dirty: bool = False
    lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def halted(self) -> bool:
        return self.precondition is not None


@dataclass
class Reconciler:
    """Applies ordered resource nodes against a provider.

    Attributes:
        provider: Provider the calls go to
        store: State store written after every successful call
        timeout: Per provider call timeout in seconds (None for no limit)
        max_workers: Nodes reconciled concurrently (1 = sequential)
        refresh: Describe existing objects before deciding, re-creating
            ones deleted out of band
    """
    provider: Provider
    store: StateStore
    timeout: Optional[float] = None
    max_workers: int = 1
    refresh: bool = False
    results: list[NodeResult] = field(default_factory=list, init=False)

    # Provider calls

    def _call(self, operation: str, kind: str, *args: Any, resource_id: Optional[str] = None) -> Any:
        fn = getattr(self.provider, operation)
        return call_with_timeout(fn, kind, *args, timeout=self.timeout,
                                 operation=operation, kind=kind, resource_id=resource_id)

    def _destroy_object(self, kind: str, resource_id: str) -> None:
        try:
            self._call('destroy', kind, resource_id, resource_id=resource_id)
        except NotFound:
            logger.warning(f"{kind} {resource_id} already gone")

    def _save(self, run: _Run) -> None:
        with run.lock:
            run.dirty = True
            self.store.save(run.state)

    # Apply

    def apply(self, ordered: OrderedPlan, previous_state: StackState,
              replace: Iterable[str] = (),
              ignore_overrides: Optional[Mapping[str, Iterable[str]]] = None) -> StackState:
        """Converge provider objects to the ordered nodes.

        Args:
            ordered: Resolved nodes of this run
            previous_state: State loaded at the start of the run (not mutated)
            replace: Node names to replace regardless of differences
            ignore_overrides: node -> attributes to ignore this run

        Returns:
            The new stack state

        Raises:
            PreconditionError: A node's precondition failed (state attached)
            PartialFailure: Some nodes failed or were skipped (state attached)
        """
        state = StackState.from_dict(previous_state.to_dict())
        state.start()
        run = _Run(
            state=state,
            snapshot=ordered.snapshot,
            replace=frozenset(replace),
            ignore_overrides=dict(ignore_overrides or {}),
        )
        logger.info(f"Applying stack '{state.stack_name}' ({len(ordered)} nodes)")

        self._forward(ordered, run)
        if not run.halted:
            self._cleanup_deposed(ordered, run)
            orphans = [n for n in state.existing() if n not in ordered]
            if orphans:
                self._delete(orphans, run)

        return self._finish(run)

    def destroy(self, previous_state: StackState) -> StackState:
        """Destroy every object recorded in state, dependents first.

        Raises:
            PartialFailure: Some objects could not be destroyed (state attached)
        """
        state = StackState.from_dict(previous_state.to_dict())
        state.start()
        run = _Run(state=state)
        logger.info(f"Destroying stack '{state.stack_name}' ({len(state.existing())} objects)")

        self._delete(list(state.existing()), run)
        for name, node_state in state.nodes.items():
            if not node_state.exists and not node_state.deposed and name not in run.failed:
                state.remove_node(name)
                run.dirty = True

        return self._finish(run)

    def _finish(self, run: _Run) -> StackState:
        self.results = list(run.results)
        run.state.finish()
        if run.dirty:
            self.store.save(run.state)

        if run.precondition is not None:
            run.precondition.state = run.state
            raise run.precondition
        if run.failed:
            raise PartialFailure(run.state, run.completed, run.failed, run.skipped)
        logger.info(f"Stack '{run.state.stack_name}' converged ({len(run.completed)} nodes)")
        return run.state

    # Forward phase

    def _forward(self, ordered: OrderedPlan, run: _Run) -> None:
        if self.max_workers <= 1:
            for node in ordered:
                self._visit(node, run)
            return

        pending = list(ordered)
        finished: set[str] = set()
        with ThreadPoolExecutor(max_workers=self.max_workers,
                                thread_name_prefix='reconcile') as pool:
            running: dict = {}
            while pending or running:
                for node in list(pending):
                    if node.depends_on <= finished:
                        pending.remove(node)
                        running[pool.submit(self._visit, node, run)] = node
                if not running:
                    break
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    node = running.pop(future)
                    future.result()
                    finished.add(node.name)

    def _live_value(self, ref: Reference, run: _Run) -> Any:
        with run.lock:
            dep = run.state.find(ref.node)
            if dep is None or not dep.exists:
                raise StackError(f"'{ref}' is not available: '{ref.node}' has not been applied")
            return dep.get(ref.attribute)

    def _visit(self, node: ResourceNode, run: _Run) -> None:
        """Reconcile one node. Never raises; outcomes are recorded on run."""
        with run.lock:
            blocked = sorted(d for d in node.depends_on if d in run.failed or d in run.skipped)
            if run.halted or blocked:
                run.skipped.append(node.name)
                reason = 'run halted' if run.halted else f"dependency failed: {', '.join(blocked)}"
                logger.warning(f"[{node.name}] skipped ({reason})")
                run.results.append(NodeResult(node.name, 'skip', False, reason))
                return

        start = time.time()
        lifecycle = run_lifecycle(node.name, node.lifecycle, run.ignore_overrides)
        try:
            check_preconditions(node.name, lifecycle, run.snapshot)
        except PreconditionError as e:
            with run.lock:
                run.failed[node.name] = e
                if run.precondition is None:
                    run.precondition = e
                run.results.append(NodeResult(node.name, 'precondition', False, e.condition))
            return

        action = Action.NOOP
        calls: list[str] = []
        try:
            if self.refresh:
                self._refresh(node, run, calls)
            action, calls = self._converge(node, lifecycle, run, calls)
        except StackError as e:
            with run.lock:
                node_state = run.state.ensure_node(node.name, node.kind)
                node_state.fail(str(e))
                run.failed[node.name] = e
                self._save(run)
                run.results.append(NodeResult(node.name, str(action), False, str(e),
                                              time.time() - start, calls))
            logger.error(f"[{node.name}] failed: {e}")
            return

        with run.lock:
            run.completed.append(node.name)
            run.results.append(NodeResult(node.name, str(action), True, '',
                                          time.time() - start, calls))

    def _refresh(self, node: ResourceNode, run: _Run, calls: list[str]) -> None:
        with run.lock:
            node_state = run.state.find(node.name)
            if node_state is None or not node_state.exists:
                return
            resource_id = node_state.id
        calls.append('describe')
        try:
            observed = self._call('describe', node.kind, resource_id, resource_id=resource_id)
        except NotFound:
            logger.warning(f"[{node.name}] {node.kind} {resource_id} no longer exists, will re-create")
            with run.lock:
                node_state.mark_destroyed()
                self._save(run)
            return
        with run.lock:
            if observed != node_state.observed:
                node_state.observed = dict(observed)
                self._save(run)

    def _converge(self, node: ResourceNode, lifecycle: Lifecycle, run: _Run,
                  calls: list[str]) -> tuple[Action, list[str]]:
        with run.lock:
            node_state = run.state.find(node.name)
            prior = dict(node_state.attributes) if node_state is not None and node_state.exists else None

        configured = evaluate(node.attributes, lambda ref: self._live_value(ref, run))
        desired = apply_ignored(configured, prior, lifecycle.ignore_changes)
        action, changed = decide(lifecycle, desired, prior,
                                 force_replace=node.name in run.replace)
        dependencies = sorted(node.depends_on)

        if action == Action.NOOP:
            with run.lock:
                if node_state.dependencies != dependencies or node_state.status != 'created':
                    node_state.dependencies = dependencies
                    node_state.status = 'created'
                    node_state.error = None
                    self._save(run)
            logger.debug(f"[{node.name}] up to date")
            return action, calls

        if action == Action.CREATE:
            logger.info(f"[{node.name}] creating {node.kind}")
            self._create(node, desired, dependencies, run, calls)
        elif action == Action.UPDATE:
            logger.info(f"[{node.name}] updating {node.kind} ({', '.join(changed)})")
            try:
                self._update(node, desired, dependencies, run, calls)
            except RequiresReplacement as e:
                logger.info(f"[{node.name}] provider requires replacement: {e.message}")
                action = Action.REPLACE
                self._replace(node, lifecycle, configured, dependencies, run, calls)
        else:
            logger.info(f"[{node.name}] replacing {node.kind}"
                        + (f" ({', '.join(changed)})" if changed else ''))
            self._replace(node, lifecycle, configured, dependencies, run, calls)
        return action, calls

    def _create(self, node: ResourceNode, desired: dict, dependencies: list[str], run: _Run, calls: list[str]) -> None:
        calls.append('create')
        resource_id, observed = self._call('create', node.kind, prune_nulls(desired))
        with run.lock:
            node_state = run.state.ensure_node(node.name, node.kind)
            node_state.complete(resource_id, desired, observed, dependencies)
            self._save(run)
        logger.info(f"[{node.name}] created {resource_id}")

    def _update(self, node: ResourceNode, desired: dict, dependencies: list[str], run: _Run, calls: list[str]) -> None:
        with run.lock:
            node_state = run.state.get_node(node.name)
            resource_id = node_state.id
        calls.append('update')
        observed = self._call('update', node.kind, resource_id, prune_nulls(desired),
                              resource_id=resource_id)
        with run.lock:
            node_state.complete(resource_id, desired, observed, dependencies)
            self._save(run)

    def _replace(self, node: ResourceNode, lifecycle: Lifecycle, desired: dict,
                 dependencies: list[str], run: _Run, calls: list[str]) -> None:
        with run.lock:
            node_state = run.state.get_node(node.name)
            old_id = node_state.id
            old_attributes = dict(node_state.attributes)

        if lifecycle.create_before_destroy:
            # The old object stays until dependents have moved to the new one
            calls.append('create')
            resource_id, observed = self._call('create', node.kind, prune_nulls(desired))
            with run.lock:
                node_state.deposed.append({'id': old_id, 'attributes': old_attributes})
                node_state.complete(resource_id, desired, observed, dependencies)
                self._save(run)
            logger.info(f"[{node.name}] created replacement {resource_id}, {old_id} deposed")
            return

        calls.append('destroy')
        self._destroy_object(node.kind, old_id)
        with run.lock:
            node_state.mark_destroyed()
            self._save(run)
        self._create(node, desired, dependencies, run, calls)

    # Deposed cleanup and delete phase

    def _cleanup_deposed(self, ordered: OrderedPlan, run: _Run) -> None:
        for node in ordered.destroy_order():
            node_state = run.state.find(node.name)
            if node_state is None or not node_state.deposed:
                continue
            waiting = [d.name for d in ordered.dependents(node.name)
                       if d.name not in run.completed]
            if node.name not in run.completed or waiting:
                logger.warning(f"[{node.name}] keeping {len(node_state.deposed)} deposed object(s) "
                               f"until {', '.join(waiting or [node.name])} converge")
                continue
            self._destroy_deposed(node_state, run)

    def _destroy_deposed(self, node_state: NodeState, run: _Run) -> None:
        for old in list(node_state.deposed):
            logger.info(f"[{node_state.name}] destroying deposed {node_state.kind} {old['id']}")
            try:
                self._destroy_object(node_state.kind, old['id'])
            except StackError as e:
                logger.error(f"[{node_state.name}] deposed {old['id']} not destroyed: {e}")
                with run.lock:
                    run.failed[f"{node_state.name}[deposed]"] = e
                return
            with run.lock:
                node_state.deposed.remove(old)
                self._save(run)

    def _delete(self, names: list[str], run: _Run) -> None:
        """Destroy state entries, dependents first.

        An entry is kept while anything remaining in state still depends on it.
        """
        for name in teardown_order(run.state, names):
            node_state = run.state.get_node(name)
            holders = sorted(
                other for other, s in run.state.existing().items()
                if other != name and name in s.dependencies
            )
            if holders:
                logger.warning(f"[{name}] not deleted: still used by {', '.join(holders)}")
                run.skipped.append(name)
                run.results.append(NodeResult(name, str(Action.DELETE), False,
                                              f"still used by {', '.join(holders)}"))
                continue

            start = time.time()
            calls: list[str] = []
            try:
                self._destroy_deposed(node_state, run)
                if node_state.deposed:
                    raise StackError(f"deposed objects of '{name}' could not be destroyed")
                if node_state.exists:
                    logger.info(f"[{name}] destroying {node_state.kind} {node_state.id}")
                    calls.append('destroy')
                    self._destroy_object(node_state.kind, node_state.id)
            except StackError as e:
                logger.error(f"[{name}] destroy failed: {e}")
                node_state.fail(str(e))
                run.failed[name] = e
                self._save(run)
                run.results.append(NodeResult(name, str(Action.DELETE), False, str(e),
                                              time.time() - start, calls))
                continue

            run.state.remove_node(name)
            self._save(run)
            run.completed.append(name)
            run.results.append(NodeResult(name, str(Action.DELETE), True, '',
                                          time.time() - start, calls))
