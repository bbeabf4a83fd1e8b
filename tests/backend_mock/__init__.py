"""In-memory backend for integration testing.

Provides a Backend implementation that keeps resources in a dict, so the
reconciler can be exercised end to end without any cloud connectivity.

Key Features:
- Backend-assigned fields (id, etag, uri, revision, email) added on write
- Call log for ordering and concurrency assertions
- Error injection per key and operation, optionally for N attempts only
- Optional per-call delay to simulate slow backend round-trips

Usage:
    from backend_mock import InMemoryBackend

    backend = InMemoryBackend()
    backend.inject_error("service/p/l/api", "create", retryable=True, times=1)

    result = await Reconciler(backend, config).reconcile(spec)

    assert backend.call_keys("create") == [...]
"""

from .backend import BackendCall, InjectedError, InMemoryBackend

__all__ = [
    "BackendCall",
    "InMemoryBackend",
    "InjectedError",
]
