"""Data models for cluster definitions and provisioning records."""

import re
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cluster_provisioner.exceptions import InvalidStatusTransition

SUPPORTED_CLOUD_PROVIDERS = ["vultr"]
SUPPORTED_GIT_PROVIDERS = ["github", "gitlab"]


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class ClusterStatus(str, Enum):
    """Lifecycle status of a cluster record."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PROVISIONED = "provisioned"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        """Position in the forward order; terminal states share the last rank."""
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self in (ClusterStatus.PROVISIONED, ClusterStatus.FAILED)


_STATUS_RANK = {
    ClusterStatus.PENDING: 0,
    ClusterStatus.IN_PROGRESS: 1,
    ClusterStatus.PROVISIONED: 2,
    ClusterStatus.FAILED: 2,
}


class ClusterDefinition(BaseModel):
    """Immutable input describing the cluster to provision."""

    model_config = ConfigDict(frozen=True)

    cloud_provider: str
    cluster_name: str
    domain_name: str
    git_provider: str = "github"
    git_owner: str = ""
    cluster_type: str = "mgmt"
    cloud_region: str = "ewr"
    node_type: str = "vc2-4c-8gb"
    node_count: int = Field(default=3, ge=1, le=50)
    install_console_pro: bool = True
    remove_atlantis: bool = False
    use_telemetry: bool = True

    @field_validator("cloud_provider")
    @classmethod
    def validate_cloud_provider(cls, v: str) -> str:
        """Validate the cloud provider is supported."""
        v = v.lower()
        if v not in SUPPORTED_CLOUD_PROVIDERS:
            raise ValueError(f"cloud_provider must be one of {SUPPORTED_CLOUD_PROVIDERS}, got '{v}'")
        return v

    @field_validator("git_provider")
    @classmethod
    def validate_git_provider(cls, v: str) -> str:
        """Validate the git provider is supported."""
        v = v.lower()
        if v not in SUPPORTED_GIT_PROVIDERS:
            raise ValueError(f"git_provider must be one of {SUPPORTED_GIT_PROVIDERS}, got '{v}'")
        return v

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, v: str) -> str:
        """Validate cluster name is a DNS label (RFC 1123)."""
        if not v:
            raise ValueError("cluster_name cannot be empty")
        if len(v) > 63:
            raise ValueError("cluster_name cannot exceed 63 characters")
        if not re.match(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", v):
            raise ValueError(
                f"cluster_name '{v}' must contain only lowercase alphanumeric characters "
                "and hyphens, and cannot start or end with a hyphen"
            )
        return v

    @field_validator("domain_name")
    @classmethod
    def validate_domain_name(cls, v: str) -> str:
        """Validate domain name has at least two labels."""
        v = v.lower().rstrip(".")
        pattern = re.compile(r"^([a-z0-9]([-a-z0-9]*[a-z0-9])?\.)+[a-z]{2,}$")
        if not pattern.match(v):
            raise ValueError(f"domain_name '{v}' is not a valid domain")
        return v

    @classmethod
    def load(cls, path: str) -> "ClusterDefinition":
        """Load a definition from a YAML file."""
        import yaml

        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)


class StateStoreCredentials(BaseModel):
    """Object storage credentials backing the terraform state."""

    id: str = ""
    name: str = ""
    hostname: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""


class ClusterRecord(BaseModel):
    """Durable provisioning record for one cluster, keyed by cluster name."""

    model_config = ConfigDict(validate_assignment=True)

    cluster_name: str
    cloud_provider: str
    git_provider: str = "github"
    git_owner: str = ""
    domain_name: str = ""
    cluster_type: str = "mgmt"
    cloud_region: str = ""
    use_telemetry: bool = True
    status: ClusterStatus = ClusterStatus.PENDING
    in_progress: bool = False
    last_error: str = ""
    creation_timestamp: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_stages: list[str] = Field(default_factory=list)
    state_store: StateStoreCredentials = Field(default_factory=StateStoreCredentials)
    kbot_public_key: str = ""
    cluster_id: str = ""

    @model_validator(mode="after")
    def check_in_progress_flag(self) -> "ClusterRecord":
        """The in_progress flag mirrors the in_progress status exactly."""
        expected = self.status == ClusterStatus.IN_PROGRESS
        if self.in_progress != expected:
            raise ValueError(
                f"in_progress={self.in_progress} is inconsistent with status '{self.status.value}'"
            )
        return self

    @classmethod
    def from_definition(cls, definition: ClusterDefinition) -> "ClusterRecord":
        """Create a pending record for a new definition."""
        return cls(
            cluster_name=definition.cluster_name,
            cloud_provider=definition.cloud_provider,
            git_provider=definition.git_provider,
            git_owner=definition.git_owner,
            domain_name=definition.domain_name,
            cluster_type=definition.cluster_type,
            cloud_region=definition.cloud_region,
            use_telemetry=definition.use_telemetry,
        )

    def transition(self, status: ClusterStatus, error: str = "") -> "ClusterRecord":
        """Return a copy moved to ``status``.

        Args:
            status: Target status
            error: Failure cause, recorded only for the failed status

        Returns:
            Updated copy of the record

        Raises:
            InvalidStatusTransition: If the move is backward or leaves a terminal state
        """
        status = ClusterStatus(status)
        if status == self.status and not status.is_terminal:
            return self.model_copy(update={"updated_at": utcnow()})
        if self.status.is_terminal or status.rank <= self.status.rank:
            raise InvalidStatusTransition(self.status.value, status.value)
        return self.model_copy(
            update={
                "status": status,
                "in_progress": status == ClusterStatus.IN_PROGRESS,
                "last_error": error if status == ClusterStatus.FAILED else "",
                "updated_at": utcnow(),
            }
        )


class ServiceEntry(BaseModel):
    """A platform service listed for a provisioned cluster."""

    name: str
    url: str
    default: bool = True
    description: str = ""
    image: str = ""
