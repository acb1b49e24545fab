"""In-memory provider.

Simulates the cloud API for local runs and tests: ids are deterministic,
observed attributes are synthesized per kind, and every call is recorded.
With a path, resources persist to a JSON file between runs.
"""

import copy
import hashlib
import json
import logging
import threading
from pathlib import Path
from typing import Optional

from errors import NotFound, ProviderError, RequiresReplacement

logger = logging.getLogger(__name__)

REGION = 'us-east-1'
ACCOUNT_ID = '123456789012'

ID_PREFIXES = {
    'SecurityGroup': 'sg',
    'KeyPair': 'key',
    'Instance': 'i',
    'Alarm': 'alarm',
}


class InMemoryProvider:
    """Provider backed by a dict (optionally persisted to JSON).

    Attributes:
        calls: Every call made, as (operation, kind, id, attributes)
        fail_on: (operation, kind) pairs that raise ProviderError
        replace_on: kind -> attributes the provider refuses to update in place
    """

    def __init__(self, path: Optional[Path] = None,
                 replace_on: Optional[dict[str, set]] = None):
        self.path = Path(path) if path else None
        self.replace_on = replace_on or {}
        self.fail_on: set[tuple[str, str]] = set()
        self.calls: list[tuple[str, str, Optional[str], Optional[dict]]] = []
        self._resources: dict[str, dict] = {}
        self._counter = 0
        self._lock = threading.Lock()
        if self.path and self.path.exists():
            self._load()

    @property
    def resources(self) -> dict[str, dict]:
        with self._lock:
            return copy.deepcopy(self._resources)

    def mutating_calls(self) -> list[tuple[str, str, Optional[str], Optional[dict]]]:
        """Recorded create/update/destroy calls (describe excluded)."""
        return [c for c in self.calls if c[0] != 'describe']

    def _load(self) -> None:
        with open(self.path, encoding='utf-8') as f:
            data = json.load(f)
        self._counter = data.get('counter', 0)
        self._resources = data.get('resources', {})
        logger.debug(f"Loaded {len(self._resources)} simulated resources from {self.path}")

    def _persist(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump({'counter': self._counter, 'resources': self._resources},
                      f, indent=2, sort_keys=True)

    def _check_fault(self, operation: str, kind: str, resource_id: Optional[str] = None) -> None:
        if (operation, kind) in self.fail_on:
            raise ProviderError('injected failure', kind=kind,
                                resource_id=resource_id, operation=operation)

    def _next_id(self, kind: str) -> str:
        self._counter += 1
        prefix = ID_PREFIXES.get(kind, 'res')
        return f"{prefix}-{self._counter:017x}"

    def _get(self, kind: str, resource_id: str, operation: str) -> dict:
        resource = self._resources.get(resource_id)
        if resource is None or resource['kind'] != kind:
            raise NotFound(f"no {kind} with id {resource_id}", kind=kind,
                           resource_id=resource_id, operation=operation)
        return resource

    def _observe(self, kind: str, resource_id: str, attributes: dict, seq: int) -> dict:
        """Synthesize what the provider reports back for a resource."""
        observed: dict = {}
        if kind == 'SecurityGroup':
            observed['arn'] = f"arn:aws:ec2:{REGION}:{ACCOUNT_ID}:security-group/{resource_id}"
            observed['owner_id'] = ACCOUNT_ID
        elif kind == 'KeyPair':
            digest = hashlib.md5(attributes.get('public_key', '').encode('utf-8')).hexdigest()
            observed['key_pair_id'] = resource_id
            observed['fingerprint'] = ':'.join(digest[i:i + 2] for i in range(0, 32, 2))
            observed['arn'] = f"arn:aws:ec2:{REGION}:{ACCOUNT_ID}:key-pair/{attributes.get('key_name')}"
        elif kind == 'Instance':
            private_ip = attributes.get('private_ip') or f"10.0.{seq // 250}.{seq % 250 + 4}"
            observed['arn'] = f"arn:aws:ec2:{REGION}:{ACCOUNT_ID}:instance/{resource_id}"
            observed['instance_state'] = 'running'
            observed['availability_zone'] = f"{REGION}a"
            observed['private_ip'] = private_ip
            observed['private_dns'] = f"ip-{private_ip.replace('.', '-')}.ec2.internal"
            if attributes.get('associate_public_ip_address'):
                public_ip = f"203.0.113.{seq % 250 + 4}"
                observed['public_ip'] = public_ip
                observed['public_dns'] = f"ec2-{public_ip.replace('.', '-')}.compute-1.amazonaws.com"
            observed['root_block_device'] = [
                {**dict(d), 'volume_id': f"vol-{seq:08x}{i:09x}"}
                for i, d in enumerate(attributes.get('root_block_device', []))
            ]
            observed['ebs_block_device'] = [
                {**dict(d), 'volume_id': f"vol-{seq:08x}{i + 1:09x}"}
                for i, d in enumerate(attributes.get('ebs_block_device', []))
            ]
        elif kind == 'Alarm':
            observed['arn'] = f"arn:aws:cloudwatch:{REGION}:{ACCOUNT_ID}:alarm:{attributes.get('alarm_name')}"
        return observed

    def create(self, kind: str, attributes: dict) -> tuple[str, dict]:
        with self._lock:
            self.calls.append(('create', kind, None, copy.deepcopy(attributes)))
            self._check_fault('create', kind)
            resource_id = self._next_id(kind)
            observed = self._observe(kind, resource_id, attributes, self._counter)
            self._resources[resource_id] = {
                'kind': kind,
                'seq': self._counter,
                'attributes': copy.deepcopy(attributes),
                'observed': observed,
            }
            self._persist()
        logger.debug(f"[memory] created {kind} {resource_id}")
        return resource_id, copy.deepcopy(observed)

    def update(self, kind: str, resource_id: str, attributes: dict) -> dict:
        with self._lock:
            self.calls.append(('update', kind, resource_id, copy.deepcopy(attributes)))
            self._check_fault('update', kind, resource_id)
            resource = self._get(kind, resource_id, 'update')
            immutable = self.replace_on.get(kind, set())
            changed = {k for k in set(attributes) | set(resource['attributes'])
                       if attributes.get(k) != resource['attributes'].get(k)}
            if changed & immutable:
                raise RequiresReplacement(
                    f"cannot change {', '.join(sorted(changed & immutable))} in place",
                    kind=kind, resource_id=resource_id, operation='update',
                )
            resource['attributes'] = copy.deepcopy(attributes)
            resource['observed'] = self._observe(kind, resource_id, attributes, resource['seq'])
            self._persist()
            observed = copy.deepcopy(resource['observed'])
        logger.debug(f"[memory] updated {kind} {resource_id}")
        return observed

    def describe(self, kind: str, resource_id: str) -> dict:
        with self._lock:
            self.calls.append(('describe', kind, resource_id, None))
            self._check_fault('describe', kind, resource_id)
            resource = self._get(kind, resource_id, 'describe')
            return copy.deepcopy(resource['observed'])

    def destroy(self, kind: str, resource_id: str) -> None:
        with self._lock:
            self.calls.append(('destroy', kind, resource_id, None))
            self._check_fault('destroy', kind, resource_id)
            self._get(kind, resource_id, 'destroy')
            del self._resources[resource_id]
            self._persist()
        logger.debug(f"[memory] destroyed {kind} {resource_id}")
