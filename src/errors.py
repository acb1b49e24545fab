"""Error taxonomy for stack evaluation and reconciliation.

Validation and build errors are raised before any provider call is made.
Precondition, provider and partial failures are raised during apply and
carry enough context (node, operation, resulting state) for a retry.
"""

from typing import Any, Optional


class StackError(Exception):
    """Base class for all stack engine errors."""


class ValidationError(StackError):
    """One or more inputs failed type or range validation.

    Attributes:
        errors: Every failure found, in input declaration order
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        count = len(self.errors)
        summary = '; '.join(self.errors)
        super().__init__(f"{count} invalid input{'s' if count != 1 else ''}: {summary}")


class BuildError(StackError):
    """The resource graph is structurally invalid."""


class DanglingReferenceError(BuildError):
    """A present node references a node that is absent or undeclared."""

    def __init__(self, node: str, target: str, attribute: str):
        self.node = node
        self.target = target
        self.attribute = attribute
        super().__init__(
            f"Node '{node}' references '{target}.{attribute}' but '{target}' is not present"
        )


class CycleError(StackError):
    """The dependency graph is not acyclic."""

    def __init__(self, nodes: list[str]):
        self.nodes = list(nodes)
        super().__init__(f"Dependency cycle detected between: {' -> '.join(self.nodes)}")


class PreconditionError(StackError):
    """An apply-time precondition blocked a node from being materialized.

    Attributes:
        node: Name of the blocked node
        condition: Human-readable description of the violated condition
        state: Stack state as left by the run (set by the reconciler)
    """

    def __init__(self, node: str, condition: str, state: Any = None):
        self.node = node
        self.condition = condition
        self.state = state
        super().__init__(f"Precondition failed for '{node}': {condition}")


class ProviderError(StackError):
    """A provider call failed.

    Attributes:
        kind: Resource kind the call was made for
        resource_id: Provider id (None for create)
        operation: create, update, destroy or describe
    """

    def __init__(self, message: str, kind: Optional[str] = None,
                 resource_id: Optional[str] = None, operation: Optional[str] = None):
        self.kind = kind
        self.resource_id = resource_id
        self.operation = operation
        self.message = message
        where = ' '.join(p for p in (operation, kind, resource_id) if p)
        super().__init__(f"{where}: {message}" if where else message)


class ProviderTimeout(ProviderError):
    """A provider call did not return within the configured timeout."""


class NotFound(ProviderError):
    """The provider has no resource with the requested id."""


class RequiresReplacement(ProviderError):
    """The provider cannot apply an update in place."""


class PartialFailure(StackError):
    """A run stopped after some nodes converged and others failed.

    Attributes:
        state: Stack state including every node that did succeed
        completed: Names of nodes applied (or confirmed unchanged) this run
        failed: Mapping of node name to the error that failed it
        skipped: Names of nodes not attempted because a dependency failed
    """

    def __init__(self, state: Any, completed: list[str],
                 failed: dict[str, Exception], skipped: list[str]):
        self.state = state
        self.completed = list(completed)
        self.failed = dict(failed)
        self.skipped = list(skipped)
        total = len(self.completed) + len(self.failed) + len(self.skipped)
        super().__init__(
            f"Run stopped after {len(self.completed)} of {total} nodes succeeded "
            f"(failed: {', '.join(self.failed) or 'none'}; "
            f"skipped: {', '.join(self.skipped) or 'none'})"
        )
