"""Provider protocol.

The engine talks to infrastructure only through these four calls. Every
call may raise ProviderError (or a subclass); update may raise
RequiresReplacement when the change cannot be applied in place, and
describe raises NotFound for ids the provider does not know.
"""

from typing import Protocol, runtime_checkable


@runtime_checkable
class Provider(Protocol):
    """Create, update, describe and destroy resources of any kind."""

    def create(self, kind: str, attributes: dict) -> tuple[str, dict]:
        """Create a resource and return (id, observed attributes)."""

    def update(self, kind: str, resource_id: str, attributes: dict) -> dict:
        """Update a resource in place and return its observed attributes."""

    def describe(self, kind: str, resource_id: str) -> dict:
        """Return a resource's observed attributes."""

    def destroy(self, kind: str, resource_id: str) -> None:
        """Destroy a resource."""
