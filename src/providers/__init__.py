"""Provider backends for the stack reconciler."""

from providers.base import Provider
from providers.http import HttpProvider
from providers.memory import InMemoryProvider

__all__ = [
    'Provider',
    'HttpProvider',
    'InMemoryProvider',
    'create_provider',
]


def create_provider(settings) -> Provider:
    """Build the provider named in driver settings."""
    if settings.provider == 'http':
        return HttpProvider(
            endpoint=settings.endpoint,
            token=settings.token,
            verify_tls=settings.verify_tls,
            timeout=settings.timeout,
        )
    return InMemoryProvider(path=settings.memory_path)
