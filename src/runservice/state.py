"""Observed-state store.

Keeps the last observed payload of every node this tool manages, with
its kind and dependencies. The reconciler needs the stored dependencies
to order deletions of nodes that are no longer in the current graph.

File format (YAML):

```yaml
version: 1
resources:
  service/my-project/europe-west1/api:
    kind: service
    dependsOn: [service-account/my-project/api-sa]
    payload: {...}
```
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import MAX_STATE_FILE_SIZE_BYTES
from .dependency import NodeKind

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateStoreError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


@dataclass
class ObservedResource:
    """Last known backend state of one managed node."""

    key: str
    kind: NodeKind
    payload: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "dependsOn": list(self.depends_on),
            "payload": self.payload,
        }

    @classmethod
    def from_dict(cls, key: str, data: Mapping[str, Any]) -> ObservedResource:
        try:
            kind = NodeKind(data["kind"])
        except (KeyError, ValueError) as e:
            raise StateStoreError(f"Invalid kind for state entry '{key}': {e}") from e
        payload = data.get("payload") or {}
        depends_on = data.get("dependsOn") or []
        if not isinstance(payload, dict) or not isinstance(depends_on, list):
            raise StateStoreError(f"Malformed state entry '{key}'")
        return cls(key=key, kind=kind, payload=payload, depends_on=[str(d) for d in depends_on])


class StateStore:
    """YAML file holding the observed-state snapshot between passes."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, ObservedResource]:
        """Read the snapshot; a missing file is an empty snapshot.

        Raises:
            StateStoreError: If the file is unreadable or malformed.
        """
        if not self._path.exists():
            logger.info("No state file, starting empty", extra={"state_file": str(self._path)})
            return {}

        try:
            file_size = self._path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {self._path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                f"{self._path}"
            )

        try:
            raw = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e
        except yaml.YAMLError as e:
            raise StateStoreError(f"Invalid YAML in {self._path}: {e}") from e

        if raw is None:
            return {}
        if not isinstance(raw, dict) or not isinstance(raw.get("resources", {}), dict):
            raise StateStoreError(f"State file must contain a 'resources' mapping: {self._path}")

        version = raw.get("version", STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise StateStoreError(f"Unsupported state version {version} in {self._path}")

        resources = raw.get("resources") or {}
        return {
            str(key): ObservedResource.from_dict(str(key), entry or {})
            for key, entry in resources.items()
        }

    def save(self, snapshot: Mapping[str, ObservedResource]) -> None:
        """Write the snapshot atomically (write to temp file, then rename).

        Raises:
            StateStoreError: If the file cannot be written.
        """
        document = {
            "version": STATE_FORMAT_VERSION,
            "resources": {key: snapshot[key].to_dict() for key in sorted(snapshot)},
        }
        tmp_path = self._path.with_name(f".{self._path.name}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as e:
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e

        logger.info(
            "Saved state",
            extra={"state_file": str(self._path), "resource_count": len(snapshot)},
        )
