"""Output projection.

Each declared output reads one attribute of its owning node from the final
state. Outputs of nodes that are not present this run resolve to a declared
input fallback or to None, never to an error.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from stack_opr.resolver import OrderedPlan
from stack_opr.state import StackState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutputDeclaration:
    """A named stack output.

    Attributes:
        name: Output name
        node: Owning node name
        attribute: Node attribute to read (id, observed or applied)
        description: Human-readable description
        sensitive: Mask the value when displayed
        fallback_input: Input to read when the node is not present
        transform: Post-processing of the raw value, given the snapshot
    """
    name: str
    node: str
    attribute: str
    description: str = ''
    sensitive: bool = False
    fallback_input: Optional[str] = None
    transform: Optional[Callable[[Any, Any], Any]] = None


def project(state: StackState, plan: OrderedPlan,
            declarations: Iterable[OutputDeclaration]) -> dict[str, Any]:
    """Compute output values from final state.

    Args:
        state: Stack state after apply
        plan: The plan that was applied (for node presence and inputs)
        declarations: Declared outputs

    Returns:
        Mapping of output name to value (None when unavailable)
    """
    snapshot = plan.snapshot
    outputs: dict[str, Any] = {}
    for decl in declarations:
        value: Any = None
        node_state = state.find(decl.node)
        if decl.node in plan:
            if node_state is not None and node_state.exists:
                value = node_state.get(decl.attribute)
        elif decl.fallback_input is not None:
            value = snapshot.get(decl.fallback_input)

        if decl.transform is not None:
            try:
                value = decl.transform(value, snapshot)
            except (KeyError, TypeError, ValueError, IndexError) as e:
                logger.warning(f"Output '{decl.name}' could not be computed: {e}")
                value = None

        outputs[decl.name] = value
    return outputs


def display_outputs(outputs: dict[str, Any], declarations: Iterable[OutputDeclaration]) -> dict[str, Any]:
    """Copy of outputs with sensitive values masked."""
    sensitive = {d.name for d in declarations if d.sensitive}
    return {k: ('(sensitive)' if k in sensitive and v is not None else v)
            for k, v in outputs.items()}
