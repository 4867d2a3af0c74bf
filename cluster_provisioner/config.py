"""Runtime settings and per-cluster provider configuration."""

import platform
from pathlib import Path

from pydantic import AliasChoices, BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from cluster_provisioner.exceptions import ConfigurationError
from cluster_provisioner.models.cluster import ClusterDefinition

DEFAULT_GITOPS_TEMPLATE_URL = "https://github.com/kubefirst/gitops-template.git"
DEFAULT_GITOPS_TEMPLATE_BRANCH = "main"
DEFAULT_ARGOCD_MANIFEST_URL = "github.com:kubefirst/manifests/argocd/cloud?ref=main"


class Settings(BaseSettings):
    """Process settings, auto-loaded from K1_* environment variables.

    Attributes:
        home_dir: Base directory holding per-cluster working trees.
        state_dir: Directory of the file-backed cluster record store.
        local_debug: When non-empty, open a local tunnel to the platform API.
        gitops_template_url: Git URL of the multi-platform GitOps template.
        gitops_template_branch: Branch of the GitOps template to clone.
        argocd_manifest_url: Kustomize target applied to install Argo CD.
        kubectl_version: kubectl release downloaded into the tools dir.
        terraform_version: terraform release downloaded into the tools dir.
        telemetry_write_key: Segment write key; empty disables telemetry.
        vultr_api_key: Vultr API key (VULTR_API_KEY).
        github_token: GitHub token (GITHUB_TOKEN).
        gitlab_token: GitLab token (GITLAB_TOKEN).
    """

    model_config = SettingsConfigDict(env_prefix="K1_", extra="ignore", populate_by_name=True)

    home_dir: Path = Field(default_factory=lambda: Path.home() / ".k1")
    state_dir: Path | None = None
    local_debug: str = ""
    gitops_template_url: str = DEFAULT_GITOPS_TEMPLATE_URL
    gitops_template_branch: str = DEFAULT_GITOPS_TEMPLATE_BRANCH
    argocd_manifest_url: str = DEFAULT_ARGOCD_MANIFEST_URL
    kubectl_version: str = "v1.28.5"
    terraform_version: str = "1.5.7"
    telemetry_write_key: str = ""

    cluster_ready_timeout: int = Field(default=600, ge=1)
    domain_liveness_timeout: int = Field(default=300, ge=1)
    argocd_ready_timeout: int = Field(default=300, ge=1)
    vault_ready_timeout: int = Field(default=600, ge=1)
    console_discovery_timeout: int = Field(default=1200, ge=1)
    console_ready_timeout: int = Field(default=120, ge=1)
    poll_interval: float = Field(default=5.0, gt=0)

    vultr_api_key: str = Field(
        default="", validation_alias=AliasChoices("VULTR_API_KEY", "K1_VULTR_API_KEY")
    )
    github_token: str = Field(
        default="", validation_alias=AliasChoices("GITHUB_TOKEN", "K1_GITHUB_TOKEN")
    )
    gitlab_token: str = Field(
        default="", validation_alias=AliasChoices("GITLAB_TOKEN", "K1_GITLAB_TOKEN")
    )

    @property
    def record_dir(self) -> Path:
        """Directory of the file-backed record store."""
        return self.state_dir or self.home_dir / "records"

    def git_token(self, git_provider: str) -> str:
        """Return the token for ``git_provider``.

        Raises:
            ConfigurationError: If no token is configured
        """
        token = self.github_token if git_provider == "github" else self.gitlab_token
        if not token:
            env_var = "GITHUB_TOKEN" if git_provider == "github" else "GITLAB_TOKEN"
            raise ConfigurationError(
                f"No {git_provider} token configured",
                f"Export {env_var} with a token that can create repositories for the git owner",
            )
        return token


def host_architecture() -> str:
    """Return the host architecture normalized to ``amd64`` or ``arm64``."""
    machine = platform.machine().lower()
    if machine in ("arm64", "aarch64"):
        return "arm64"
    return "amd64"


class ProviderConfig(BaseModel):
    """Filesystem layout and tool locations for one cluster run."""

    cluster_name: str
    cloud_provider: str
    git_provider: str
    k1_dir: Path
    architecture: str = "amd64"

    @property
    def tools_dir(self) -> Path:
        return self.k1_dir / "tools"

    @property
    def gitops_dir(self) -> Path:
        return self.k1_dir / "gitops"

    @property
    def metaphor_dir(self) -> Path:
        return self.k1_dir / "metaphor"

    @property
    def kubeconfig(self) -> Path:
        return self.k1_dir / "kubeconfig"

    @property
    def ssh_key_path(self) -> Path:
        return self.k1_dir / "kbot_ed25519"

    @property
    def kubectl_path(self) -> Path:
        return self.tools_dir / "kubectl"

    @property
    def terraform_path(self) -> Path:
        return self.tools_dir / "terraform"

    @property
    def ssl_backup_dir(self) -> Path:
        return self.k1_dir / "ssl"

    @property
    def git_terraform_dir(self) -> Path:
        return self.gitops_dir / "terraform" / self.git_provider

    @property
    def cloud_terraform_dir(self) -> Path:
        return self.gitops_dir / "terraform" / self.cloud_provider

    @property
    def vault_terraform_dir(self) -> Path:
        return self.gitops_dir / "terraform" / "vault"

    @property
    def users_terraform_dir(self) -> Path:
        return self.gitops_dir / "terraform" / "users"

    @classmethod
    def for_definition(
        cls, definition: ClusterDefinition, settings: Settings, architecture: str | None = None
    ) -> "ProviderConfig":
        """Build the layout rooted at ``<home_dir>/<cluster_name>``."""
        return cls(
            cluster_name=definition.cluster_name,
            cloud_provider=definition.cloud_provider,
            git_provider=definition.git_provider,
            k1_dir=settings.home_dir / definition.cluster_name,
            architecture=architecture or host_architecture(),
        )
