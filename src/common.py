"""Common utilities and types for stack evaluation."""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from errors import ProviderTimeout

logger = logging.getLogger(__name__)


@dataclass
class NodeResult:
    """Result of reconciling a single node."""
    name: str
    action: str
    success: bool
    message: str = ''
    duration: float = 0.0
    calls: list[str] = field(default_factory=list)


def freeze(value: Any) -> Any:
    """Return a read-only deep copy (dicts become mappingproxies, lists tuples)."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of freeze(): plain dicts and lists suitable for JSON."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [thaw(v) for v in value]
    return value


def prune_nulls(value: Any) -> Any:
    """Drop None-valued keys from mappings, recursively.

    Provider payloads treat null as "unset", so unset optional fields are
    omitted rather than sent as explicit nulls. List items are kept.
    """
    if isinstance(value, Mapping):
        return {k: prune_nulls(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [prune_nulls(v) for v in value]
    return value


def call_with_timeout(fn: Callable[..., Any], *args: Any, timeout: Optional[float] = None,
                      operation: str = '', kind: Optional[str] = None,
                      resource_id: Optional[str] = None) -> Any:
    """Run fn(*args) and give up after timeout seconds.

    A call that overruns is reported as ProviderTimeout; the worker thread is
    abandoned, not retried.
    """
    if not timeout:
        return fn(*args)

    start = time.time()
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='provider-call')
    try:
        future = pool.submit(fn, *args)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            logger.error(f"{operation} {kind or ''} timed out after {time.time() - start:.1f}s")
            raise ProviderTimeout(
                f"timed out after {timeout}s",
                kind=kind, resource_id=resource_id, operation=operation,
            ) from None
    finally:
        pool.shutdown(wait=False)
