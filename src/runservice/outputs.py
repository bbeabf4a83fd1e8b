"""Read-only projection of backend-assigned identifiers after a pass."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from .dependency import NodeKind
from .state import ObservedResource


@dataclass(frozen=True)
class ServiceOutputs:
    """Identifiers other modules consume once a pass has succeeded."""

    service_id: str | None
    uri: str | None
    latest_revision: str | None
    service_account_email: str | None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "serviceId": self.service_id,
            "uri": self.uri,
            "latestRevision": self.latest_revision,
            "serviceAccountEmail": self.service_account_email,
        }


def extract_outputs(
    snapshot: Mapping[str, ObservedResource],
    service_key: str,
    identity_email: str | None = None,
) -> ServiceOutputs:
    """Project outputs from the observed snapshot.

    Args:
        snapshot: Observed state after the pass.
        service_key: Key of the primary service node.
        identity_email: Resolved identity address; falls back to the email
            the backend reported for a generated service account.
    """
    service = snapshot.get(service_key)
    payload = service.payload if service is not None else {}

    email = identity_email
    if email is None:
        for resource in snapshot.values():
            if resource.kind == NodeKind.SERVICE_ACCOUNT and resource.payload.get("email"):
                email = resource.payload["email"]
                break

    return ServiceOutputs(
        service_id=payload.get("id"),
        uri=payload.get("uri"),
        latest_revision=payload.get("latest_ready_revision"),
        service_account_email=email,
    )
