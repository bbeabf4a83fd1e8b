"""Expand a ResourceSpec into a resource graph.

Build steps:
1. One service node, always
2. One service-account node iff the spec creates its identity; the
   service depends on it
3. One IAM binding node per (role, principal) pair, each depending on the
   service. Bindings are additive single-member grants, so members added
   outside this tool are left alone
4. One secret-access node per unique (project, secret), depending on the
   identity node when present, otherwise on the service
5. One project-role node per role granted to a created identity
6. One domain-mapping node per custom domain, depending on the service
7. Drop nodes whose inclusion predicate is false, then validate the graph

Fan-out and secret collection are pure functions, testable without a graph.
"""

from __future__ import annotations

import logging

from .dependency import NodeKind, ResourceGraph, ResourceNode
from .models import ResourceSpec, parse_secret_reference, qualified_secret_name
from .naming import NameDerivationError, service_account_email, service_account_id
from .preconditions import PreconditionFailure, Violation, ViolationCode

logger = logging.getLogger(__name__)

SECRET_ACCESSOR_ROLE = "roles/secretmanager.secretAccessor"


def service_key(spec: ResourceSpec) -> str:
    return f"service/{spec.project_id}/{spec.location}/{spec.name}"


def service_resource_name(spec: ResourceSpec) -> str:
    """Fully qualified resource name of the run service."""
    return f"projects/{spec.project_id}/locations/{spec.location}/services/{spec.name}"


def service_account_key(project_id: str, account_id: str) -> str:
    return f"service-account/{project_id}/{account_id}"


def iam_binding_key(spec: ResourceSpec, role: str, principal: str) -> str:
    # IAM principals are case-insensitive; one principal is one node
    return (
        f"iam-binding/{spec.project_id}/{spec.location}/{spec.name}/{role}/{principal.lower()}"
    )


def secret_access_key(project_id: str, secret_id: str) -> str:
    return f"secret-access/{project_id}/{secret_id}"


def project_role_key(project_id: str, role: str, member: str) -> str:
    return f"project-role/{project_id}/{role}/{member.lower()}"


def domain_mapping_key(spec: ResourceSpec, domain: str) -> str:
    return f"domain-mapping/{spec.project_id}/{spec.location}/{domain.lower()}"


def flatten_iam_grants(grants: dict[str, list[str]]) -> list[tuple[str, str]]:
    """Flatten a role -> principals multimap into unique (role, principal) pairs.

    Order follows the input; repeated pairs are kept once. Principals compare
    case-insensitively and the first spelling wins.
    """
    pairs: list[tuple[str, str]] = []
    seen: set[tuple[str, str]] = set()
    for role, principals in grants.items():
        for principal in principals:
            if (role, principal.lower()) not in seen:
                seen.add((role, principal.lower()))
                pairs.append((role, principal))
    return pairs


def collect_secret_refs(spec: ResourceSpec) -> list[tuple[str, str]]:
    """Unique (project, secret) pairs referenced by env entries and volumes.

    Each reference resolves its owning project independently, so the same
    secret id in two projects yields two pairs while the same secret used by
    an env entry and a volume yields one.

    Raises:
        ValueError: If a reference is malformed.
    """
    references = [entry.secret for entry in spec.container.secret_env]
    references.extend(volume.secret for volume in spec.secret_volumes)

    pairs: list[tuple[str, str]] = []
    seen: set[tuple[str, str]] = set()
    for reference in references:
        pair = parse_secret_reference(reference, spec.project_id)
        if pair not in seen:
            seen.add(pair)
            pairs.append(pair)
    return pairs


def resolve_identity_email(spec: ResourceSpec) -> str | None:
    """Email of the identity the service runs as.

    Created identity in create mode, the supplied email in existing mode.
    """
    if spec.creates_identity:
        account_id = service_account_id(spec.name, spec.identity.account_id)
        return service_account_email(account_id, spec.project_id)
    return spec.identity.email or None


def _check_buildable(spec: ResourceSpec) -> None:
    """Node-level preconditions that the builder relies on."""
    violations: list[Violation] = []

    if spec.creates_identity:
        try:
            service_account_id(spec.name, spec.identity.account_id)
        except NameDerivationError as e:
            violations.append(Violation(ViolationCode.IDENTITY_NAME_INVALID, "identity", str(e)))
    elif not spec.identity.email:
        violations.append(
            Violation(
                ViolationCode.IDENTITY_EMAIL_REQUIRED,
                "identity.email",
                "access grants need an identity email",
            )
        )

    try:
        collect_secret_refs(spec)
    except ValueError as e:
        violations.append(Violation(ViolationCode.SECRET_REFERENCE_INVALID, "secrets", str(e)))

    if violations:
        raise PreconditionFailure(violations, source=service_key(spec))


def build_graph(spec: ResourceSpec) -> ResourceGraph:
    """Build the resource graph for one spec.

    Args:
        spec: A validated, fully defaulted spec.

    Returns:
        The pruned and validated graph.

    Raises:
        PreconditionFailure: If a node's desired state cannot be computed.
        GraphConsistencyFault: If the built graph is inconsistent.
    """
    _check_buildable(spec)

    graph = ResourceGraph()
    primary_key = service_key(spec)
    identity_email = resolve_identity_email(spec)
    member = f"serviceAccount:{identity_email}"

    # Identity node, kept only when the spec creates it
    account_id = (
        service_account_id(spec.name, spec.identity.account_id)
        if spec.creates_identity
        else spec.identity.account_id or ""
    )
    identity_key = service_account_key(spec.project_id, account_id)
    identity_node = ResourceNode(
        kind=NodeKind.SERVICE_ACCOUNT,
        key=identity_key,
        payload={
            "project": spec.project_id,
            "account_id": account_id,
            "display_name": spec.identity.display_name or f"Service account for {spec.name}",
        },
        included=spec.creates_identity,
    )

    graph.add_node(
        ResourceNode(
            kind=NodeKind.SERVICE,
            key=primary_key,
            payload=spec.to_service_payload(identity_email),
            depends_on=[identity_key],
        )
    )
    graph.add_node(identity_node)

    resource_name = service_resource_name(spec)
    for role, principal in flatten_iam_grants(spec.iam_grants):
        graph.add_node(
            ResourceNode(
                kind=NodeKind.IAM_BINDING,
                key=iam_binding_key(spec, role, principal),
                payload={"resource": resource_name, "role": role, "member": principal},
                depends_on=[primary_key],
            )
        )

    grant_parent = identity_key if spec.creates_identity else primary_key
    for project, secret_id in collect_secret_refs(spec):
        graph.add_node(
            ResourceNode(
                kind=NodeKind.SECRET_ACCESS,
                key=secret_access_key(project, secret_id),
                payload={
                    "secret": qualified_secret_name(project, secret_id),
                    "role": SECRET_ACCESSOR_ROLE,
                    "member": member,
                },
                depends_on=[grant_parent],
            )
        )

    for role in dict.fromkeys(spec.identity.project_roles):
        graph.add_node(
            ResourceNode(
                kind=NodeKind.PROJECT_ROLE,
                key=project_role_key(spec.project_id, role, member),
                payload={"project": spec.project_id, "role": role, "member": member},
                depends_on=[identity_key],
                included=spec.creates_identity,
            )
        )

    for domain in spec.domain_mappings:
        graph.add_node(
            ResourceNode(
                kind=NodeKind.DOMAIN_MAPPING,
                key=domain_mapping_key(spec, domain),
                payload={
                    "project": spec.project_id,
                    "location": spec.location,
                    "domain": domain,
                    "route_name": spec.name,
                },
                depends_on=[primary_key],
            )
        )

    graph.prune_excluded()
    graph.validate()

    logger.info(
        "Built resource graph",
        extra={
            "service": spec.name,
            "node_count": len(graph),
            "edge_count": len(graph.edges),
        },
    )
    return graph
