"""Resource graph for stack evaluation.

Turns a validated ConfigSnapshot and a list of NodeDeclarations into a
ResourceGraph: the present nodes, their attribute maps (literals and
References to other nodes' post-creation values) and their dependencies.
Absent nodes are recorded by name only; a reference into an absent node is
refused here, before any provider call.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Optional

from errors import BuildError, DanglingReferenceError
from stack_opr.lifecycle import Lifecycle
from variables import ConfigSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reference:
    """An attribute whose value is another node's post-creation attribute."""
    node: str
    attribute: str

    def __str__(self) -> str:
        return f"{self.node}.{self.attribute}"


@dataclass(frozen=True)
class Lookup:
    """Optional sub-record field that falls back to a default when omitted.

    Evaluated by the resolver; never reaches a provider payload.
    """
    source: Mapping[str, Any]
    key: str
    default: Any = None

    def evaluate(self) -> Any:
        value = self.source.get(self.key)
        return self.default if value is None else value


def _always(_snapshot: ConfigSnapshot) -> bool:
    return True


@dataclass(frozen=True)
class NodeDeclaration:
    """Declaration of one resource node.

    Attributes:
        name: Node name (unique within the stack, used in references and state)
        kind: Resource kind passed to the provider
        attributes: Builds the attribute map from the snapshot
        present: Presence predicate over the snapshot
        depends_on: Explicit ordering hints (node names)
        lifecycle: Lifecycle policy
        name_tag: Builds the node's Name tag; None for untagged kinds
    """
    name: str
    kind: str
    attributes: Callable[[ConfigSnapshot], dict]
    present: Callable[[ConfigSnapshot], bool] = _always
    depends_on: tuple[str, ...] = ()
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    name_tag: Optional[Callable[[ConfigSnapshot], str]] = None


@dataclass(frozen=True)
class ResourceNode:
    """A present node in the resource graph.

    Attributes:
        name: Node name
        kind: Resource kind
        attributes: Attribute map (literals, References, Lookups)
        depends_on: Names of nodes this one must follow
        lifecycle: Lifecycle policy
        index: Declaration position, used to break ordering ties
    """
    name: str
    kind: str
    attributes: Mapping[str, Any]
    depends_on: frozenset = frozenset()
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    index: int = 0

    @property
    def references(self) -> list[Reference]:
        return list(iter_references(self.attributes))

    def __repr__(self) -> str:
        return f"ResourceNode({self.name}, kind={self.kind}, depends_on={sorted(self.depends_on)})"


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference inside a (possibly nested) value."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_references(item)


def merge_tags(global_tags: Optional[Mapping[str, str]], name: str) -> dict:
    """Global tags first, then the node's Name tag (which wins on collision)."""
    tags = dict(global_tags or {})
    tags['Name'] = name
    return tags


class ResourceGraph:
    """Present resource nodes with their dependencies.

    Node order follows declaration order; absent node names are kept so
    callers can tell "absent" from "undeclared".
    """

    def __init__(self, snapshot: ConfigSnapshot, nodes: list[ResourceNode], absent: list[str]):
        self.snapshot = snapshot
        self._nodes: dict[str, ResourceNode] = {n.name: n for n in nodes}
        self._absent = tuple(absent)

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> list[ResourceNode]:
        return list(self._nodes.values())

    @property
    def absent(self) -> tuple[str, ...]:
        """Declared nodes whose presence predicate is false."""
        return self._absent

    def get_node(self, name: str) -> ResourceNode:
        """Get a present node by name.

        Raises:
            KeyError: If the node is absent or undeclared
        """
        return self._nodes[name]

    def dependents(self, name: str) -> list[ResourceNode]:
        """Nodes that directly depend on the named node."""
        return [n for n in self._nodes.values() if name in n.depends_on]


def build(snapshot: ConfigSnapshot, declarations: list[NodeDeclaration]) -> ResourceGraph:
    """Build the resource graph for a snapshot.

    Args:
        snapshot: Validated configuration
        declarations: Node declarations, in declaration order

    Returns:
        ResourceGraph of present nodes

    Raises:
        BuildError: On duplicate names or hints naming undeclared nodes
        DanglingReferenceError: If a present node references an absent node
    """
    present: dict[str, bool] = {}
    for decl in declarations:
        if decl.name in present:
            raise BuildError(f"Duplicate node name: '{decl.name}'")
        present[decl.name] = bool(decl.present(snapshot))

    nodes: list[ResourceNode] = []
    absent: list[str] = []
    for index, decl in enumerate(declarations):
        if not present[decl.name]:
            absent.append(decl.name)
            logger.debug(f"[{decl.name}] not present")
            continue

        attributes = dict(decl.attributes(snapshot))
        if decl.name_tag is not None:
            attributes['tags'] = merge_tags(snapshot.get('tags'), decl.name_tag(snapshot))

        deps: set[str] = set()
        for ref in iter_references(attributes):
            if not present.get(ref.node, False):
                raise DanglingReferenceError(decl.name, ref.node, ref.attribute)
            if ref.node == decl.name:
                raise BuildError(f"Node '{decl.name}' references itself ({ref})")
            deps.add(ref.node)

        for hint in decl.depends_on:
            if hint not in present:
                raise BuildError(f"Node '{decl.name}' depends on unknown node '{hint}'")
            if present[hint]:
                deps.add(hint)
            else:
                logger.debug(f"[{decl.name}] dropping ordering hint on absent node '{hint}'")

        nodes.append(ResourceNode(
            name=decl.name,
            kind=decl.kind,
            attributes=attributes,
            depends_on=frozenset(deps),
            lifecycle=decl.lifecycle,
            index=index,
        ))

    logger.debug(f"Built graph: {len(nodes)} present, {len(absent)} absent")
    return ResourceGraph(snapshot, nodes, absent)
