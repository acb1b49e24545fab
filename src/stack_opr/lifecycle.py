"""Per-node lifecycle policies.

A Lifecycle record governs how a node converges once it exists:

- create_before_destroy: replacement creates the new object before the old
  one is destroyed
- ignore_changes: attributes excluded from the update/replace decision
  after creation (the prior value is kept and re-sent)
- replace_on: attributes whose change cannot be applied in place
- preconditions: checks that must hold before the node is materialized

Policies are declared per node in stack.py; ignore sets can be widened per
run (driver settings, --ignore-changes).
"""

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Mapping, Optional

from errors import PreconditionError

logger = logging.getLogger(__name__)


class Action(str, Enum):
    """What the reconciler does with a node this run."""
    NOOP = 'no-op'
    CREATE = 'create'
    UPDATE = 'update'
    REPLACE = 'replace'
    DELETE = 'delete'

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Precondition:
    """An apply-time check over the configuration snapshot."""
    condition: Callable[[Any], bool]
    error_message: str


@dataclass(frozen=True)
class Lifecycle:
    """Lifecycle policy for one node."""
    create_before_destroy: bool = False
    ignore_changes: frozenset = frozenset()
    replace_on: frozenset = frozenset()
    preconditions: tuple[Precondition, ...] = ()

    def with_ignored(self, extra: Iterable[str]) -> 'Lifecycle':
        """Copy of this policy with additional ignored attributes."""
        extra = frozenset(extra)
        if not extra or extra <= self.ignore_changes:
            return self
        return dataclasses.replace(self, ignore_changes=self.ignore_changes | extra)


def check_preconditions(node: str, lifecycle: Lifecycle, snapshot: Any) -> None:
    """Evaluate every precondition of a node.

    Raises:
        PreconditionError: On the first violated condition
    """
    for precondition in lifecycle.preconditions:
        if not precondition.condition(snapshot):
            logger.error(f"[{node}] precondition failed: {precondition.error_message}")
            raise PreconditionError(node, precondition.error_message)


def apply_ignored(desired: Mapping[str, Any], prior: Optional[Mapping[str, Any]],
                  ignore: Iterable[str]) -> dict:
    """Carry prior values of ignored attributes into the desired attributes.

    Ignored attributes keep whatever was last applied, so an unrelated
    update re-sends the old value and state never records the drift.
    """
    result = dict(desired)
    if prior is None:
        return result
    for key in ignore:
        if key in prior:
            result[key] = prior[key]
        else:
            result.pop(key, None)
    return result


def changed_attributes(desired: Mapping[str, Any], prior: Mapping[str, Any],
                       ignore: Iterable[str] = ()) -> list[str]:
    """Names of attributes that differ between desired and prior, minus ignored ones."""
    ignore = set(ignore)
    keys = (set(desired) | set(prior)) - ignore
    return sorted(k for k in keys if desired.get(k) != prior.get(k))


def decide(lifecycle: Lifecycle, desired: Mapping[str, Any],
           prior: Optional[Mapping[str, Any]], force_replace: bool = False
           ) -> tuple[Action, list[str]]:
    """Decide the action for a present node.

    Args:
        lifecycle: The node's policy (ignore set already widened for this run)
        desired: Resolved desired attributes (may contain unknown values)
        prior: Last-applied attributes, or None if the node does not exist
        force_replace: Replace regardless of differences

    Returns:
        (action, changed attribute names)
    """
    if prior is None:
        return Action.CREATE, sorted(desired)

    if force_replace:
        return Action.REPLACE, changed_attributes(desired, prior, lifecycle.ignore_changes)

    changed = changed_attributes(desired, prior, lifecycle.ignore_changes)
    if not changed:
        return Action.NOOP, []
    if any(k in lifecycle.replace_on for k in changed):
        return Action.REPLACE, changed
    return Action.UPDATE, changed
