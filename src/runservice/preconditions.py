"""Cross-field validation of run service specs.

Every check runs against a fully defaulted ResourceSpec before any node
is built. Checks never short-circuit: one call reports every violation,
each with a fixed machine-readable code and the offending field path.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from .models import (
    EgressPolicy,
    IdentityMode,
    ProbeConfig,
    ResourceSpec,
    TrafficTargetType,
    parse_secret_reference,
)
from .naming import NameDerivationError, service_account_id, volume_name

logger = logging.getLogger(__name__)


class ViolationCode(str, Enum):
    """Machine-readable violation codes."""

    SCHEMA = "schema"
    SCALING_BOUNDS = "scaling_bounds"
    CONCURRENCY_INVALID = "concurrency_invalid"
    DUPLICATE_ENV_NAME = "duplicate_env_name"
    DUPLICATE_MOUNT_PATH = "duplicate_mount_path"
    VOLUME_NAME_COLLISION = "volume_name_collision"
    IDENTITY_EMAIL_REQUIRED = "identity_email_required"
    IDENTITY_CONFLICT = "identity_conflict"
    IDENTITY_NAME_INVALID = "identity_name_invalid"
    IDENTITY_ROLES_WITHOUT_IDENTITY = "identity_roles_without_identity"
    PROBE_MECHANISM = "probe_mechanism"
    PROBE_TIMEOUT = "probe_timeout"
    SECRET_REFERENCE_INVALID = "secret_reference_invalid"
    TRAFFIC_PERCENT = "traffic_percent"
    TRAFFIC_REVISION = "traffic_revision"
    EGRESS_WITHOUT_CONNECTOR = "egress_without_connector"
    DUPLICATE_DOMAIN = "duplicate_domain"


@dataclass(frozen=True)
class Violation:
    """A single failed invariant."""

    code: ViolationCode
    field: str
    message: str

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.field}: {self.message}"


class ValidationError(Exception):
    """Raised when a spec fails structural or cross-field validation.

    Always recoverable by correcting the input. Raised before any mutation.
    """

    def __init__(self, violations: list[Violation], source: str | None = None) -> None:
        self.violations = list(violations)
        self.source = source
        header = f"Validation failed for {source}" if source else "Validation failed"
        lines = "\n".join(f"  - {v}" for v in self.violations)
        super().__init__(f"{header}:\n{lines}")

    @property
    def codes(self) -> set[ViolationCode]:
        """Distinct codes of all violations."""
        return {v.code for v in self.violations}


class PreconditionFailure(ValidationError):
    """Raised when a node's desired state fails a check at graph-build time."""

    pass


# =============================================================================
# Individual checks
# =============================================================================


def check_scaling(spec: ResourceSpec) -> list[Violation]:
    """Instance bounds must be ordered and concurrency positive."""
    violations: list[Violation] = []
    scaling = spec.scaling
    if scaling.min_instance_count > scaling.max_instance_count:
        violations.append(
            Violation(
                ViolationCode.SCALING_BOUNDS,
                "scaling.minInstanceCount",
                f"minInstanceCount ({scaling.min_instance_count}) exceeds "
                f"maxInstanceCount ({scaling.max_instance_count})",
            )
        )
    if scaling.max_instance_request_concurrency <= 0:
        violations.append(
            Violation(
                ViolationCode.CONCURRENCY_INVALID,
                "scaling.maxInstanceRequestConcurrency",
                "must be greater than 0",
            )
        )
    return violations


def check_env_names(spec: ResourceSpec) -> list[Violation]:
    """Environment names are unique across plain and secret-backed entries."""
    violations: list[Violation] = []
    seen: dict[str, str] = {}
    entries = [(f"container.env[{i}]", e.name) for i, e in enumerate(spec.container.env)]
    entries.extend(
        (f"container.secretEnv[{i}]", e.name) for i, e in enumerate(spec.container.secret_env)
    )
    for path, name in entries:
        if name in seen:
            violations.append(
                Violation(
                    ViolationCode.DUPLICATE_ENV_NAME,
                    f"{path}.name",
                    f"environment variable '{name}' is already defined at {seen[name]}",
                )
            )
        else:
            seen[name] = path
    return violations


def check_mount_paths(spec: ResourceSpec) -> list[Violation]:
    """Two secret volumes cannot mount at the same directory."""
    violations: list[Violation] = []
    seen: dict[str, int] = {}
    for i, volume in enumerate(spec.secret_volumes):
        path = volume.normalized_mount_path
        if path in seen:
            violations.append(
                Violation(
                    ViolationCode.DUPLICATE_MOUNT_PATH,
                    f"secretVolumes[{i}].mountPath",
                    f"mount path '{path}' is already used by secretVolumes[{seen[path]}]",
                )
            )
        else:
            seen[path] = i
    return violations


def check_volume_names(spec: ResourceSpec) -> list[Violation]:
    """Distinct secret volumes must derive distinct volume names."""
    violations: list[Violation] = []
    seen: dict[str, int] = {}
    for i, volume in enumerate(spec.secret_volumes):
        try:
            _, secret_id = parse_secret_reference(volume.secret, spec.project_id)
            name = volume_name(secret_id, volume.normalized_mount_path)
        except ValueError:
            # Malformed references are reported by check_secret_references
            continue
        if name in seen and spec.secret_volumes[seen[name]].normalized_mount_path != (
            volume.normalized_mount_path
        ):
            violations.append(
                Violation(
                    ViolationCode.VOLUME_NAME_COLLISION,
                    f"secretVolumes[{i}]",
                    f"volume name '{name}' is already used by secretVolumes[{seen[name]}]",
                )
            )
        else:
            seen.setdefault(name, i)
    return violations


def check_identity(spec: ResourceSpec) -> list[Violation]:
    """Identity precedence: create and existing modes are mutually exclusive.

    A created identity never coexists with a supplied email; the spec must
    pick one so access grants have a single unambiguous grantee.
    """
    violations: list[Violation] = []
    identity = spec.identity

    if identity.mode == IdentityMode.EXISTING:
        if not identity.email:
            violations.append(
                Violation(
                    ViolationCode.IDENTITY_EMAIL_REQUIRED,
                    "identity.email",
                    "an email is required when identity.mode is 'existing'",
                )
            )
        if identity.project_roles:
            violations.append(
                Violation(
                    ViolationCode.IDENTITY_ROLES_WITHOUT_IDENTITY,
                    "identity.projectRoles",
                    "project roles are only granted to an identity created by this spec",
                )
            )
        return violations

    if identity.email:
        violations.append(
            Violation(
                ViolationCode.IDENTITY_CONFLICT,
                "identity.email",
                "identity.mode 'create' generates its own account; "
                "set mode to 'existing' to use this email",
            )
        )
    try:
        service_account_id(spec.name, identity.account_id)
    except NameDerivationError as e:
        field_path = "identity.accountId" if identity.account_id else "name"
        violations.append(Violation(ViolationCode.IDENTITY_NAME_INVALID, field_path, str(e)))
    return violations


def _check_probe(probe: ProbeConfig | None, path: str) -> list[Violation]:
    if probe is None:
        return []
    violations: list[Violation] = []
    mechanisms = probe.mechanisms
    if len(mechanisms) != 1:
        found = ", ".join(mechanisms) if mechanisms else "none"
        violations.append(
            Violation(
                ViolationCode.PROBE_MECHANISM,
                path,
                f"exactly one of httpGet, tcpSocket, grpc is required (found: {found})",
            )
        )
    if probe.timeout_seconds > probe.period_seconds:
        violations.append(
            Violation(
                ViolationCode.PROBE_TIMEOUT,
                f"{path}.timeoutSeconds",
                f"timeoutSeconds ({probe.timeout_seconds}) exceeds "
                f"periodSeconds ({probe.period_seconds})",
            )
        )
    return violations


def check_probes(spec: ResourceSpec) -> list[Violation]:
    """Probes declare one mechanism and a timeout within their period."""
    return _check_probe(
        spec.container.startup_probe, "container.startupProbe"
    ) + _check_probe(spec.container.liveness_probe, "container.livenessProbe")


def check_secret_references(spec: ResourceSpec) -> list[Violation]:
    """Secret references are bare ids or fully qualified names."""
    violations: list[Violation] = []
    references = [
        (f"container.secretEnv[{i}].secret", e.secret)
        for i, e in enumerate(spec.container.secret_env)
    ]
    references.extend(
        (f"secretVolumes[{i}].secret", v.secret) for i, v in enumerate(spec.secret_volumes)
    )
    for path, reference in references:
        try:
            parse_secret_reference(reference, spec.project_id)
        except ValueError as e:
            violations.append(Violation(ViolationCode.SECRET_REFERENCE_INVALID, path, str(e)))
    return violations


def check_traffic(spec: ResourceSpec) -> list[Violation]:
    """Traffic targets sum to 100 and revision targets name a revision."""
    if not spec.traffic:
        return []
    violations: list[Violation] = []
    total = sum(t.percent for t in spec.traffic)
    if total != 100:
        violations.append(
            Violation(
                ViolationCode.TRAFFIC_PERCENT,
                "traffic",
                f"traffic percentages sum to {total}, expected 100",
            )
        )
    for i, target in enumerate(spec.traffic):
        if target.type == TrafficTargetType.REVISION and not target.revision:
            violations.append(
                Violation(
                    ViolationCode.TRAFFIC_REVISION,
                    f"traffic[{i}].revision",
                    "REVISION traffic targets must name a revision",
                )
            )
    return violations


def check_network(spec: ResourceSpec) -> list[Violation]:
    """Routing all egress through a VPC requires a connector."""
    vpc = spec.vpc_access
    if vpc is not None and vpc.egress == EgressPolicy.ALL_TRAFFIC and not vpc.connector:
        return [
            Violation(
                ViolationCode.EGRESS_WITHOUT_CONNECTOR,
                "vpcAccess.connector",
                "egress ALL_TRAFFIC requires a VPC connector",
            )
        ]
    return []


def check_domains(spec: ResourceSpec) -> list[Violation]:
    """Each custom domain is mapped once."""
    violations: list[Violation] = []
    seen: set[str] = set()
    for i, domain in enumerate(spec.domain_mappings):
        normalized = domain.lower().rstrip(".")
        if normalized in seen:
            violations.append(
                Violation(
                    ViolationCode.DUPLICATE_DOMAIN,
                    f"domainMappings[{i}]",
                    f"domain '{domain}' is mapped more than once",
                )
            )
        seen.add(normalized)
    return violations


DEFAULT_CHECKS: tuple[Callable[[ResourceSpec], list[Violation]], ...] = (
    check_scaling,
    check_env_names,
    check_mount_paths,
    check_volume_names,
    check_identity,
    check_probes,
    check_secret_references,
    check_traffic,
    check_network,
    check_domains,
)


def validate_spec(
    spec: ResourceSpec,
    checks: Iterable[Callable[[ResourceSpec], list[Violation]]] = DEFAULT_CHECKS,
) -> list[Violation]:
    """Run every check and return all violations (empty when valid)."""
    violations: list[Violation] = []
    for check in checks:
        violations.extend(check(spec))

    if violations:
        logger.info(
            "Spec failed validation",
            extra={
                "service": spec.name,
                "violation_count": len(violations),
                "codes": sorted({v.code.value for v in violations}),
            },
        )
    return violations


def ensure_valid(spec: ResourceSpec, source: str | None = None) -> ResourceSpec:
    """Return spec unchanged, or raise ValidationError listing every violation."""
    violations = validate_spec(spec)
    if violations:
        raise ValidationError(violations, source=source)
    return spec
