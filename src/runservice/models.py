"""Pydantic models for run service configuration documents.

These models provide:
1. Type-safe YAML parsing with declared defaults
2. Range and enum validation at the boundary (fail fast, fail loudly)
3. Clean transformation to backend payloads

Cross-field invariants (scaling bounds, duplicate names, identity rules)
are checked by runservice.preconditions so that every violation is
reported at once.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from . import naming

SERVICE_NAME_PATTERN = r"^[a-z]([-a-z0-9]*[a-z0-9])?$"
SECRET_REFERENCE_PREFIX = "projects/"


class SpecModel(BaseModel):
    """Base for all spec models: camelCase aliases, snake_case attributes."""

    model_config = {"extra": "ignore", "populate_by_name": True}


# =============================================================================
# Enums
# =============================================================================


class IngressPolicy(str, Enum):
    """Which network sources may reach the service."""

    ALL = "INGRESS_TRAFFIC_ALL"
    INTERNAL_ONLY = "INGRESS_TRAFFIC_INTERNAL_ONLY"
    INTERNAL_LOAD_BALANCER = "INGRESS_TRAFFIC_INTERNAL_LOAD_BALANCER"


class EgressPolicy(str, Enum):
    """Which outbound traffic is routed through the VPC connector."""

    PRIVATE_RANGES_ONLY = "PRIVATE_RANGES_ONLY"
    ALL_TRAFFIC = "ALL_TRAFFIC"


class ExecutionEnvironment(str, Enum):
    """Sandbox generation for container instances."""

    GEN1 = "EXECUTION_ENVIRONMENT_GEN1"
    GEN2 = "EXECUTION_ENVIRONMENT_GEN2"


class IdentityMode(str, Enum):
    """Whether the service identity is generated or supplied."""

    CREATE = "create"  # Generate a dedicated service account
    EXISTING = "existing"  # Bring your own service account email


class TrafficTargetType(str, Enum):
    """Traffic allocation target."""

    LATEST = "LATEST"
    REVISION = "REVISION"


# =============================================================================
# Secret references
# =============================================================================


def parse_secret_reference(reference: str, default_project: str) -> tuple[str, str]:
    """Resolve a secret reference to its (project, secret) pair.

    A bare secret id belongs to default_project. A reference containing a
    path separator must be fully qualified as projects/{project}/secrets/{id}.

    Raises:
        ValueError: If the reference is neither form.
    """
    if "/" not in reference:
        if not reference:
            raise ValueError("secret reference must not be empty")
        return default_project, reference

    parts = reference.split("/")
    if len(parts) != 4 or parts[0] != "projects" or parts[2] != "secrets" or not all(parts):
        raise ValueError(
            f"secret reference '{reference}' must be a secret id or "
            "projects/{project}/secrets/{secret}"
        )
    return parts[1], parts[3]


def qualified_secret_name(project: str, secret: str) -> str:
    """Fully qualified secret resource name."""
    return f"{SECRET_REFERENCE_PREFIX}{project}/secrets/{secret}"


# =============================================================================
# Container
# =============================================================================


class EnvVar(SpecModel):
    """Plain environment variable."""

    name: Annotated[str, Field(min_length=1)]
    value: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {"name": self.name, "value": self.value}


class SecretEnvVar(SpecModel):
    """Environment variable backed by a secret version."""

    name: Annotated[str, Field(min_length=1)]
    secret: Annotated[str, Field(min_length=1)]
    version: Annotated[str, Field(min_length=1)] = "latest"

    def to_payload(self, default_project: str) -> dict[str, Any]:
        project, secret_id = parse_secret_reference(self.secret, default_project)
        return {
            "name": self.name,
            "value_source": {
                "secret_key_ref": {
                    "secret": qualified_secret_name(project, secret_id),
                    "version": self.version,
                }
            },
        }


class HttpGetAction(SpecModel):
    """HTTP probe mechanism."""

    path: str = "/"
    port: Annotated[int, Field(ge=1, le=65535)] | None = None


class TcpSocketAction(SpecModel):
    """TCP probe mechanism."""

    port: Annotated[int, Field(ge=1, le=65535)] | None = None


class GrpcAction(SpecModel):
    """gRPC health-check probe mechanism."""

    port: Annotated[int, Field(ge=1, le=65535)] | None = None
    service: str | None = None


class ProbeConfig(SpecModel):
    """Startup or liveness probe.

    Exactly one of http_get, tcp_socket and grpc must be set; that rule is
    checked by the precondition engine so it is reported with the rest.
    """

    initial_delay_seconds: int = Field(0, alias="initialDelaySeconds", ge=0, le=240)
    timeout_seconds: int = Field(1, alias="timeoutSeconds", ge=1, le=240)
    period_seconds: int = Field(10, alias="periodSeconds", ge=1, le=240)
    failure_threshold: int = Field(3, alias="failureThreshold", ge=1)
    http_get: HttpGetAction | None = Field(None, alias="httpGet")
    tcp_socket: TcpSocketAction | None = Field(None, alias="tcpSocket")
    grpc: GrpcAction | None = None

    @property
    def mechanisms(self) -> list[str]:
        """Names of the configured check mechanisms."""
        configured = {
            "httpGet": self.http_get,
            "tcpSocket": self.tcp_socket,
            "grpc": self.grpc,
        }
        return [name for name, action in configured.items() if action is not None]

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "initial_delay_seconds": self.initial_delay_seconds,
            "timeout_seconds": self.timeout_seconds,
            "period_seconds": self.period_seconds,
            "failure_threshold": self.failure_threshold,
        }
        if self.http_get is not None:
            payload["http_get"] = {"path": self.http_get.path, "port": self.http_get.port}
        if self.tcp_socket is not None:
            payload["tcp_socket"] = {"port": self.tcp_socket.port}
        if self.grpc is not None:
            payload["grpc"] = {"port": self.grpc.port, "service": self.grpc.service}
        return payload


class ResourcesConfig(SpecModel):
    """CPU/memory limits and CPU allocation flags."""

    cpu: str = "1"
    memory: str = "512Mi"
    cpu_idle: bool = Field(True, alias="cpuIdle")
    startup_cpu_boost: bool = Field(False, alias="startupCpuBoost")

    @field_validator("cpu")
    @classmethod
    def validate_cpu(cls, v: str) -> str:
        valid = {"1", "2", "4", "6", "8", "1000m", "2000m", "4000m", "6000m", "8000m"}
        if v not in valid and not (v.endswith("m") and v[:-1].isdigit()):
            raise ValueError(f"cpu must be a core count or millicores, got '{v}'")
        return v

    @field_validator("memory")
    @classmethod
    def validate_memory(cls, v: str) -> str:
        if not v[:-2].isdigit() or v[-2:] not in {"Mi", "Gi"}:
            raise ValueError("memory must be like '512Mi' or '2Gi'")
        return v


class ContainerConfig(SpecModel):
    """The single serving container."""

    image: Annotated[str, Field(min_length=1)]
    command: list[str] = Field(default_factory=list)
    args: list[str] = Field(default_factory=list)
    port: int = Field(8080, ge=1, le=65535)
    port_name: str = Field("http1", alias="portName")
    resources: ResourcesConfig = Field(default_factory=ResourcesConfig)
    env: list[EnvVar] = Field(default_factory=list)
    secret_env: list[SecretEnvVar] = Field(default_factory=list, alias="secretEnv")
    startup_probe: ProbeConfig | None = Field(None, alias="startupProbe")
    liveness_probe: ProbeConfig | None = Field(None, alias="livenessProbe")

    @field_validator("port_name")
    @classmethod
    def validate_port_name(cls, v: str) -> str:
        valid = {"http1", "h2c"}
        if v not in valid:
            raise ValueError(f"portName must be one of {sorted(valid)}")
        return v


# =============================================================================
# Scaling, networking, volumes
# =============================================================================


class ScalingConfig(SpecModel):
    """Instance count bounds and per-instance concurrency."""

    min_instance_count: int = Field(0, alias="minInstanceCount", ge=0, le=1000)
    max_instance_count: int = Field(100, alias="maxInstanceCount", ge=1, le=1000)
    # Range-checked in preconditions so zero reports as concurrency_invalid
    max_instance_request_concurrency: int = Field(
        80, alias="maxInstanceRequestConcurrency", le=1000
    )


class VpcAccessConfig(SpecModel):
    """Serverless VPC connector attachment."""

    connector: str | None = None
    egress: EgressPolicy = EgressPolicy.PRIVATE_RANGES_ONLY


class SecretVolume(SpecModel):
    """A secret mounted as files under mount_path.

    items maps a file name under the mount path to a secret version. An
    empty mapping mounts the latest version as a file named after the secret.
    """

    mount_path: Annotated[str, Field(min_length=2, alias="mountPath")]
    secret: Annotated[str, Field(min_length=1)]
    items: dict[str, str] = Field(default_factory=dict)

    @field_validator("mount_path")
    @classmethod
    def validate_mount_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("mountPath must be absolute")
        return v

    @property
    def normalized_mount_path(self) -> str:
        """Mount path without trailing separators ("/etc/x/" == "/etc/x")."""
        return self.mount_path.rstrip("/") or "/"


class TrafficTarget(SpecModel):
    """Share of traffic sent to a revision or to the latest one."""

    type: TrafficTargetType = TrafficTargetType.LATEST
    revision: str | None = None
    percent: int = Field(100, ge=0, le=100)
    tag: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "revision": self.revision,
            "percent": self.percent,
            "tag": self.tag,
        }


# =============================================================================
# Identity
# =============================================================================


class ServiceIdentityConfig(SpecModel):
    """Identity the service runs as.

    In create mode a dedicated service account is generated (account_id
    optional, derived from the service name). In existing mode email must
    name the account to use.
    """

    mode: IdentityMode = IdentityMode.CREATE
    account_id: str | None = Field(None, alias="accountId")
    email: str | None = None
    display_name: str | None = Field(None, alias="displayName")
    project_roles: list[str] = Field(default_factory=list, alias="projectRoles")


# =============================================================================
# Root spec
# =============================================================================


class ResourceSpec(SpecModel):
    """Configuration of one deployable run service."""

    name: Annotated[str, Field(min_length=1, max_length=49, pattern=SERVICE_NAME_PATTERN)]
    project_id: Annotated[str, Field(min_length=1, alias="projectId")]
    location: Annotated[str, Field(min_length=1)]
    description: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)

    container: ContainerConfig
    scaling: ScalingConfig = Field(default_factory=ScalingConfig)
    ingress: IngressPolicy = IngressPolicy.ALL
    vpc_access: VpcAccessConfig | None = Field(None, alias="vpcAccess")
    secret_volumes: list[SecretVolume] = Field(default_factory=list, alias="secretVolumes")
    execution_environment: ExecutionEnvironment = Field(
        ExecutionEnvironment.GEN2, alias="executionEnvironment"
    )
    timeout_seconds: int = Field(300, alias="timeoutSeconds", ge=1, le=3600)
    traffic: list[TrafficTarget] = Field(default_factory=list)

    identity: ServiceIdentityConfig = Field(default_factory=ServiceIdentityConfig)
    # role -> principals, flattened into one binding per pair
    iam_grants: dict[str, list[str]] = Field(default_factory=dict, alias="iamGrants")
    domain_mappings: list[str] = Field(default_factory=list, alias="domainMappings")

    @field_validator("iam_grants")
    @classmethod
    def validate_iam_grants(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        for role, principals in v.items():
            if not role:
                raise ValueError("iamGrants role must not be empty")
            if any(not principal for principal in principals):
                raise ValueError(f"iamGrants['{role}'] contains an empty principal")
        return v

    @property
    def creates_identity(self) -> bool:
        """True when this spec generates its own service account."""
        return self.identity.mode == IdentityMode.CREATE

    def to_service_payload(self, service_account_email: str | None) -> dict[str, Any]:
        """Desired state of the run service itself.

        Args:
            service_account_email: Identity the revisions run as, or None
                for the platform default.
        """
        container = self.container
        env = [e.to_payload() for e in container.env]
        env.extend(s.to_payload(self.project_id) for s in container.secret_env)

        volumes: list[dict[str, Any]] = []
        volume_mounts: list[dict[str, Any]] = []
        for volume in self.secret_volumes:
            project, secret_id = parse_secret_reference(volume.secret, self.project_id)
            name = naming.volume_name(secret_id, volume.normalized_mount_path)
            items = [
                {"path": path, "version": version}
                for path, version in sorted(volume.items.items())
            ]
            volumes.append(
                {
                    "name": name,
                    "secret": {
                        "secret": qualified_secret_name(project, secret_id),
                        "items": items,
                    },
                }
            )
            volume_mounts.append({"name": name, "mount_path": volume.normalized_mount_path})

        container_payload: dict[str, Any] = {
            "image": container.image,
            "command": list(container.command),
            "args": list(container.args),
            "ports": [{"name": container.port_name, "container_port": container.port}],
            "resources": {
                "limits": {"cpu": container.resources.cpu, "memory": container.resources.memory},
                "cpu_idle": container.resources.cpu_idle,
                "startup_cpu_boost": container.resources.startup_cpu_boost,
            },
            "env": env,
            "volume_mounts": volume_mounts,
        }
        if container.startup_probe is not None:
            container_payload["startup_probe"] = container.startup_probe.to_payload()
        if container.liveness_probe is not None:
            container_payload["liveness_probe"] = container.liveness_probe.to_payload()

        template: dict[str, Any] = {
            "service_account": service_account_email,
            "execution_environment": self.execution_environment.value,
            "timeout": f"{self.timeout_seconds}s",
            "max_instance_request_concurrency": self.scaling.max_instance_request_concurrency,
            "scaling": {
                "min_instance_count": self.scaling.min_instance_count,
                "max_instance_count": self.scaling.max_instance_count,
            },
            "containers": [container_payload],
            "volumes": volumes,
        }
        if self.vpc_access is not None:
            template["vpc_access"] = {
                "connector": self.vpc_access.connector,
                "egress": self.vpc_access.egress.value,
            }

        traffic = self.traffic or [TrafficTarget()]

        return {
            "name": self.name,
            "project": self.project_id,
            "location": self.location,
            "description": self.description,
            "labels": dict(self.labels),
            "ingress": self.ingress.value,
            "template": template,
            "traffic": [t.to_payload() for t in traffic],
        }
