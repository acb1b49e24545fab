"""Change planning.

Compares the ordered resource nodes of this run with the persisted state
and decides, per node, whether it is created, updated, replaced, deleted or
left alone. Planning is pure: no provider calls are made.

References are evaluated against prior state. A reference to a node that is
about to be created or replaced is unknown until apply, unless the value is
one of that node's own literal attributes (KeyPair.key_name).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional

from stack_opr.graph import Reference
from stack_opr.lifecycle import Action, apply_ignored, decide
from stack_opr.resolver import UNKNOWN, OrderedPlan, contains_unknown, evaluate
from stack_opr.state import StackState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedChange:
    """Planned action for one node.

    Attributes:
        node: Node name
        kind: Resource kind
        action: Planned action
        changed: Attributes that differ from state
        attributes: Desired attributes (unknown values where not yet known)
        deposed: Replaced objects still waiting to be destroyed
    """
    node: str
    kind: str
    action: Action
    changed: tuple[str, ...] = ()
    attributes: Mapping[str, Any] = field(default_factory=dict)
    deposed: int = 0


@dataclass
class StackPlan:
    """All planned changes for a run, forward changes first, then deletes."""
    stack_name: str
    changes: list[PlannedChange] = field(default_factory=list)

    def __iter__(self):
        return iter(self.changes)

    def get(self, node: str) -> Optional[PlannedChange]:
        for change in self.changes:
            if change.node == node:
                return change
        return None

    def action(self, node: str) -> Optional[Action]:
        change = self.get(node)
        return change.action if change else None

    @property
    def has_changes(self) -> bool:
        return any(c.action != Action.NOOP or c.deposed for c in self.changes)

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for change in self.changes:
            counts[change.action.value] += 1
        return counts


def run_lifecycle(node: str, lifecycle, ignore_overrides: Optional[Mapping[str, Iterable[str]]]):
    """Lifecycle of a node with this run's extra ignored attributes."""
    return lifecycle.with_ignored((ignore_overrides or {}).get(node, ()))


def reference_value(ref: Reference, state: StackState, actions: Mapping[str, Action],
                    desired: Mapping[str, Mapping[str, Any]]) -> Any:
    """Value of a reference at plan time.

    Args:
        ref: The reference
        state: Prior state
        actions: Actions already decided for earlier nodes
        desired: Desired attributes already resolved for earlier nodes
    """
    action = actions.get(ref.node)
    dep = state.find(ref.node)
    literal = desired.get(ref.node, {}).get(ref.attribute, UNKNOWN)
    if ref.attribute != 'id' and not contains_unknown(literal):
        if action in (Action.CREATE, Action.REPLACE, Action.UPDATE):
            return literal
    if action in (Action.CREATE, Action.REPLACE) or dep is None or not dep.exists:
        return UNKNOWN
    if action == Action.UPDATE and ref.attribute != 'id':
        return UNKNOWN
    return dep.get(ref.attribute)


def teardown_order(state: StackState, names: Iterable[str]) -> list[str]:
    """Order state entries for deletion, dependents first.

    Uses the dependencies recorded in state, so nodes no longer declared
    this run still tear down in a safe order. Among entries that nothing
    left depends on, the most recently registered goes first.
    """
    remaining = [n for n in state.nodes if n in set(names)]
    ordered: list[str] = []
    while remaining:
        blocked = {dep for n in remaining for dep in state.get_node(n).dependencies}
        free = [n for n in reversed(remaining) if n not in blocked]
        if not free:
            logger.warning(f"Dependency loop in state among: {', '.join(remaining)}")
            free = list(reversed(remaining))
        ordered.append(free[0])
        remaining.remove(free[0])
    return ordered


def build_plan(ordered: OrderedPlan, state: StackState, replace: Iterable[str] = (),
               ignore_overrides: Optional[Mapping[str, Iterable[str]]] = None) -> StackPlan:
    """Plan every change needed to converge state to the ordered nodes.

    Args:
        ordered: Resolved nodes of this run
        state: Prior stack state
        replace: Node names to replace regardless of differences
        ignore_overrides: node -> attributes to ignore this run

    Returns:
        StackPlan
    """
    replace = set(replace)
    plan = StackPlan(state.stack_name)
    actions: dict[str, Action] = {}
    desired_by_node: dict[str, dict] = {}

    for node in ordered:
        lifecycle = run_lifecycle(node.name, node.lifecycle, ignore_overrides)
        node_state = state.find(node.name)
        prior = node_state.attributes if node_state is not None and node_state.exists else None

        configured = evaluate(node.attributes,
                              lambda ref: reference_value(ref, state, actions, desired_by_node))
        desired = apply_ignored(configured, prior, lifecycle.ignore_changes)
        action, changed = decide(lifecycle, desired, prior, force_replace=node.name in replace)
        if action == Action.REPLACE:
            # A new object gets every configured value, ignored ones included
            desired = configured

        actions[node.name] = action
        desired_by_node[node.name] = desired
        plan.changes.append(PlannedChange(
            node=node.name,
            kind=node.kind,
            action=action,
            changed=tuple(changed),
            attributes=desired,
            deposed=len(node_state.deposed) if node_state is not None else 0,
        ))
        logger.debug(f"[{node.name}] planned {action}"
                     + (f" ({', '.join(changed)})" if changed and action != Action.CREATE else ''))

    orphans = [n for n in state.existing() if n not in ordered]
    for name in teardown_order(state, orphans):
        node_state = state.get_node(name)
        plan.changes.append(PlannedChange(
            node=name,
            kind=node_state.kind,
            action=Action.DELETE,
            attributes=dict(node_state.attributes),
            deposed=len(node_state.deposed),
        ))
        logger.debug(f"[{name}] planned delete (no longer present)")

    return plan


def _fmt(value: Any) -> str:
    if value is UNKNOWN:
        return str(UNKNOWN)
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, (list, dict)) and contains_unknown(value):
        return str(UNKNOWN)
    return repr(value)


def format_plan(plan: StackPlan, state: StackState,
                sensitive_attributes: Iterable[str] = ()) -> list[str]:
    """Human-readable plan lines."""
    sensitive = set(sensitive_attributes)
    symbols = {
        Action.CREATE: '+',
        Action.UPDATE: '~',
        Action.REPLACE: '-/+',
        Action.DELETE: '-',
        Action.NOOP: ' ',
    }
    lines: list[str] = []
    for change in plan:
        lines.append(f"  {symbols[change.action]:>3} {change.node} ({change.kind}): {change.action}")
        if change.action in (Action.UPDATE, Action.REPLACE):
            prior = state.get_node(change.node).attributes
            for attr in change.changed:
                old = '(sensitive)' if attr in sensitive else _fmt(prior.get(attr))
                new = '(sensitive)' if attr in sensitive else _fmt(change.attributes.get(attr))
                lines.append(f"        {attr}: {old} -> {new}")
        elif change.action == Action.CREATE:
            for attr in change.changed:
                value = change.attributes.get(attr)
                if value is None:
                    continue
                shown = '(sensitive)' if attr in sensitive else _fmt(value)
                lines.append(f"        {attr} = {shown}")
        if change.deposed:
            lines.append(f"        {change.deposed} deposed object(s) to destroy")

    counts = plan.summary()
    lines.append("")
    lines.append(
        f"  Plan: {counts['create']} to create, {counts['update']} to update, "
        f"{counts['replace']} to replace, {counts['delete']} to delete."
    )
    return lines
