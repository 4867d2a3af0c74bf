"""Cloud provider integrations."""

from abc import ABC, abstractmethod
from pathlib import Path

from cluster_provisioner.models.cluster import ClusterDefinition, StateStoreCredentials

LIVENESS_RECORD_NAME = "kubefirst-liveness"
LIVENESS_RECORD_VALUE = "domain record propagated"


class CloudProvider(ABC):
    """Provider-specific operations used by the provisioning controller."""

    name: str = ""

    @abstractmethod
    def create_liveness_record(self, domain_name: str) -> str:
        """Publish a TXT record proving control of the domain.

        Returns:
            The fully qualified record name to resolve
        """

    @abstractmethod
    def create_state_store(self, definition: ClusterDefinition) -> StateStoreCredentials:
        """Create (or reuse) object storage for terraform state."""

    @abstractmethod
    def terraform_env(self, definition: ClusterDefinition, state_store: StateStoreCredentials) -> dict[str, str]:
        """Environment for terraform modules that need provider credentials."""

    @abstractmethod
    def write_kubeconfig(self, cluster_id: str, path: Path) -> Path:
        """Fetch the cluster's kubeconfig and write it to ``path``."""

    @abstractmethod
    def cluster_secrets(self, definition: ClusterDefinition) -> dict[tuple[str, str], dict[str, str]]:
        """Secrets to create in the new cluster, keyed by ``(namespace, name)``."""
