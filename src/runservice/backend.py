"""Backend interface the reconciler applies nodes through.

The reconciler never talks to a cloud API directly. A backend maps each
node to whatever concrete API calls it needs and reports back the
observed payload, including backend-assigned fields (ids, generated
URIs, revision markers) that outputs are read from.

Backends are plain synchronous objects; the reconciler runs their calls
in an executor with a timeout.
"""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from typing import Any

from .dependency import ResourceNode

logger = logging.getLogger(__name__)


class BackendOperationError(Exception):
    """Raised when a create/update/delete call fails.

    Recoverable by retrying on a later pass. retryable marks transient
    failures (timeouts, throttling) that the reconciler may retry within
    the same pass.
    """

    def __init__(self, key: str, message: str, *, retryable: bool = False) -> None:
        self.key = key
        self.message = message
        self.retryable = retryable
        super().__init__(f"{key}: {message}")


class BackendLoadError(Exception):
    """Raised when a backend reference cannot be imported or constructed."""

    pass


class Backend(ABC):
    """Desired-state backend for resource nodes."""

    @abstractmethod
    def get(self, key: str) -> dict[str, Any] | None:
        """Return the observed payload for key, or None if it does not exist."""

    @abstractmethod
    def create(self, node: ResourceNode) -> dict[str, Any]:
        """Create the resource and return its observed payload.

        Raises:
            BackendOperationError: If the resource cannot be created.
        """

    @abstractmethod
    def update(self, node: ResourceNode, observed: dict[str, Any]) -> dict[str, Any]:
        """Bring an existing resource to node.payload and return its observed payload.

        Raises:
            BackendOperationError: If the resource cannot be updated.
        """

    @abstractmethod
    def delete(self, key: str, observed: dict[str, Any]) -> None:
        """Delete the resource stored under key.

        Raises:
            BackendOperationError: If the resource cannot be deleted.
        """


def load_backend(reference: str, **kwargs: Any) -> Backend:
    """Import and construct a backend from "package.module:attribute".

    The attribute may be a Backend subclass, a factory callable, or a
    ready-made Backend instance.

    Raises:
        BackendLoadError: If the reference cannot be resolved.
    """
    module_name, _, attribute = reference.partition(":")
    if not module_name or not attribute:
        raise BackendLoadError(f"Backend reference must be 'module:attribute': {reference}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise BackendLoadError(f"Cannot import backend module '{module_name}': {e}") from e

    try:
        target = getattr(module, attribute)
    except AttributeError as e:
        raise BackendLoadError(f"Module '{module_name}' has no attribute '{attribute}'") from e

    backend = target if isinstance(target, Backend) else target(**kwargs)
    if not isinstance(backend, Backend):
        raise BackendLoadError(
            f"'{reference}' produced {type(backend).__name__}, not a Backend"
        )

    logger.info("Loaded backend", extra={"backend": reference})
    return backend
