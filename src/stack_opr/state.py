"""Persisted stack state.

Tracks, per node, the provider id, the attributes last applied, the
attributes the provider reported back and the dependencies the node had
when it was applied. The reconciler writes state incrementally after each
successful provider call, so a crash mid-run leaves state consistent with
whatever actually changed.

State is persisted to <state_dir>/<stack>/state.json.
"""

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass
class NodeState:
    """Per-node persisted state.

    Attributes:
        name: Node name (matches ResourceNode.name)
        kind: Resource kind
        status: created, failed or tainted
        id: Provider id once created
        attributes: Attributes last applied (ignored attributes keep their
            original value)
        observed: Attributes the provider reported after the last call
        dependencies: Node names this node depended on when applied
        deposed: Replaced objects awaiting destruction ({id, attributes})
        created_at: Timestamp of creation
        updated_at: Timestamp of the last successful call
        error: Error message of the last failed call
    """
    name: str
    kind: str
    status: str = 'created'
    id: Optional[str] = None
    attributes: dict = field(default_factory=dict)
    observed: dict = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    deposed: list[dict] = field(default_factory=list)
    created_at: Optional[float] = None
    updated_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.id is not None

    def get(self, attribute: str) -> Any:
        """Post-creation attribute value: id, then observed, then applied."""
        if attribute == 'id':
            return self.id
        if attribute in self.observed:
            return self.observed[attribute]
        return self.attributes.get(attribute)

    def complete(self, resource_id: str, attributes: dict, observed: dict,
                 dependencies: list[str]) -> None:
        now = time.time()
        if self.id != resource_id or self.created_at is None:
            self.created_at = now
        self.status = 'created'
        self.id = resource_id
        self.attributes = dict(attributes)
        self.observed = dict(observed)
        self.dependencies = sorted(dependencies)
        self.updated_at = now
        self.error = None

    def mark_destroyed(self) -> None:
        """Forget the provider object (a replacement is created next)."""
        self.status = 'destroyed'
        self.id = None
        self.observed = {}
        self.updated_at = time.time()

    def fail(self, error: str) -> None:
        self.status = 'failed'
        self.error = error

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'name': self.name,
            'kind': self.kind,
            'status': self.status,
        }
        if self.id is not None:
            d['id'] = self.id
        d['attributes'] = self.attributes
        if self.observed:
            d['observed'] = self.observed
        if self.dependencies:
            d['dependencies'] = self.dependencies
        if self.deposed:
            d['deposed'] = self.deposed
        if self.created_at is not None:
            d['created_at'] = self.created_at
        if self.updated_at is not None:
            d['updated_at'] = self.updated_at
        if self.error is not None:
            d['error'] = self.error
        return d

    @classmethod
    def from_dict(cls, data: dict) -> 'NodeState':
        return cls(
            name=data['name'],
            kind=data.get('kind', data['name']),
            status=data.get('status', 'created'),
            id=data.get('id'),
            attributes=data.get('attributes', {}),
            observed=data.get('observed', {}),
            dependencies=data.get('dependencies', []),
            deposed=data.get('deposed', []),
            created_at=data.get('created_at'),
            updated_at=data.get('updated_at'),
            error=data.get('error'),
        )


class StackState:
    """All node states of one stack."""

    def __init__(self, stack_name: str, serial: int = 0):
        self.stack_name = stack_name
        self.serial = serial
        self._nodes: dict[str, NodeState] = {}
        self.started_at: Optional[float] = None
        self.completed_at: Optional[float] = None

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    @property
    def nodes(self) -> dict[str, NodeState]:
        return dict(self._nodes)

    def get_node(self, name: str) -> NodeState:
        """Get node state by name.

        Raises:
            KeyError: If the node has no state
        """
        return self._nodes[name]

    def find(self, name: str) -> Optional[NodeState]:
        return self._nodes.get(name)

    def ensure_node(self, name: str, kind: str) -> NodeState:
        """Return the node's state, registering it if needed."""
        if name not in self._nodes:
            self._nodes[name] = NodeState(name=name, kind=kind, status='pending')
        return self._nodes[name]

    def remove_node(self, name: str) -> None:
        self._nodes.pop(name, None)

    def existing(self) -> dict[str, NodeState]:
        """Nodes that exist at the provider (have an id or deposed objects)."""
        return {n: s for n, s in self._nodes.items() if s.exists or s.deposed}

    def to_mapping(self) -> dict[str, dict]:
        """node name -> {id, attributes} for every existing node."""
        return {
            name: {'id': s.id, 'attributes': dict(s.attributes)}
            for name, s in self._nodes.items() if s.exists
        }

    def start(self) -> None:
        self.started_at = time.time()

    def finish(self) -> None:
        self.completed_at = time.time()

    def to_dict(self) -> dict:
        return {
            'version': STATE_VERSION,
            'stack_name': self.stack_name,
            'serial': self.serial,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'nodes': {name: s.to_dict() for name, s in self._nodes.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'StackState':
        version = data.get('version', STATE_VERSION)
        if version != STATE_VERSION:
            raise ValueError(f"Unsupported state version: {version}")
        state = cls(data.get('stack_name', ''), serial=data.get('serial', 0))
        state.started_at = data.get('started_at')
        state.completed_at = data.get('completed_at')
        for name, node_data in data.get('nodes', {}).items():
            state._nodes[name] = NodeState.from_dict(node_data)
        return state


class StateStore:
    """JSON-file state store.

    load() returns an empty state when the file does not exist yet.
    save() writes atomically and bumps the serial.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self, stack_name: str) -> StackState:
        if not self.path.exists():
            logger.debug(f"No state at {self.path}, starting empty")
            return StackState(stack_name)

        with open(self.path, encoding='utf-8') as f:
            data = json.load(f)

        state = StackState.from_dict(data)
        if state.stack_name and state.stack_name != stack_name:
            raise ValueError(
                f"State at {self.path} belongs to stack '{state.stack_name}', not '{stack_name}'"
            )
        state.stack_name = stack_name
        logger.debug(f"Loaded state from {self.path} (serial {state.serial})")
        return state

    def save(self, state: StackState) -> Path:
        with self._lock:
            state.serial += 1
            data = state.to_dict()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix='.state-', suffix='.json', dir=self.path.parent)
            try:
                with os.fdopen(fd, 'w', encoding='utf-8') as f:
                    json.dump(data, f, indent=2, sort_keys=True)
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        logger.debug(f"Saved state to {self.path} (serial {state.serial})")
        return self.path
