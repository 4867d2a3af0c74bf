"""Vultr cloud provider and the Vultr provisioning entry point."""

import base64
from pathlib import Path

import boto3
import requests
from botocore.exceptions import BotoCoreError, ClientError

from cluster_provisioner import readiness
from cluster_provisioner.config import Settings
from cluster_provisioner.controller import ClusterController
from cluster_provisioner.exceptions import ConfigurationError, ProviderAPIError
from cluster_provisioner.logging_config import get_logger
from cluster_provisioner.models.cluster import ClusterDefinition, StateStoreCredentials
from cluster_provisioner.pipeline import Stage, StageResult, run_pipeline
from cluster_provisioner.providers import (
    LIVENESS_RECORD_NAME,
    LIVENESS_RECORD_VALUE,
    CloudProvider,
)
from cluster_provisioner.store import ClusterRecordStore, FileRecordStore

logger = get_logger(__name__)

VULTR_API_URL = "https://api.vultr.com/v2"
OBJECT_STORAGE_ACTIVE = "active"
OBJECT_STORAGE_READY_TIMEOUT = 300

VULTR_STAGES = [
    Stage("download-tools", "download_tools"),
    Stage("domain-liveness", "domain_liveness_test"),
    Stage("state-store-credentials", "state_store_credentials"),
    Stage("git-init", "git_init"),
    Stage("initialize-bot", "initialize_bot"),
    Stage("repository-prep", "repository_prep"),
    Stage("git-terraform", "run_git_terraform"),
    Stage("repository-push", "repository_push"),
    Stage("create-cluster", "create_cluster"),
    Stage("wait-for-cluster", "wait_for_cluster_ready"),
    Stage("cluster-secrets-bootstrap", "cluster_secrets_bootstrap"),
    Stage("restore-tls-secrets", "restore_tls_secrets"),
    Stage("install-argocd", "install_argocd"),
    Stage("initialize-argocd", "initialize_argocd"),
    Stage("deploy-registry-application", "deploy_registry_application"),
    Stage("wait-for-vault", "wait_for_vault"),
    Stage("initialize-vault", "initialize_vault"),
    Stage("open-vault-tunnel", "open_vault_tunnel"),
    Stage("vault-terraform", "run_vault_terraform"),
    Stage("users-terraform", "run_users_terraform"),
    Stage("wait-for-console", "wait_for_console"),
]


class VultrClient:
    """Small wrapper over the Vultr v2 REST API."""

    def __init__(self, api_key: str, session: requests.Session | None = None, base_url: str = VULTR_API_URL):
        if not api_key:
            raise ConfigurationError("No Vultr API key configured", "Export VULTR_API_KEY")
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {api_key}"})

    def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=payload, timeout=30)
        except requests.RequestException as e:
            raise ProviderAPIError(f"Vultr API {method} {path} failed: {e}")
        if response.status_code >= 400:
            raise ProviderAPIError(
                f"Vultr API {method} {path} failed: HTTP {response.status_code}", response.text
            )
        return response.json() if response.content else {}

    def list_object_storage_clusters(self) -> list[dict]:
        return self._request("GET", "/object-storage/clusters").get("clusters", [])

    def list_object_storages(self) -> list[dict]:
        return self._request("GET", "/object-storage").get("object_storages", [])

    def get_object_storage(self, storage_id: str) -> dict:
        return self._request("GET", f"/object-storage/{storage_id}")["object_storage"]

    def create_object_storage(self, cluster_id: int, label: str) -> dict:
        return self._request(
            "POST", "/object-storage", {"cluster_id": cluster_id, "label": label}
        )["object_storage"]

    def create_dns_record(self, domain: str, name: str, record_type: str, data: str, ttl: int = 600) -> dict:
        return self._request(
            "POST",
            f"/domains/{domain}/records",
            {"name": name, "type": record_type, "data": data, "ttl": ttl},
        ).get("record", {})

    def list_dns_records(self, domain: str) -> list[dict]:
        return self._request("GET", f"/domains/{domain}/records").get("records", [])

    def get_kubeconfig(self, cluster_id: str) -> str:
        encoded = self._request("GET", f"/kubernetes/clusters/{cluster_id}/config")["kube_config"]
        return base64.b64decode(encoded).decode()


class VultrProvider(CloudProvider):
    """Vultr hooks for the provisioning controller."""

    name = "vultr"

    def __init__(self, client: VultrClient, api_key: str, poll_interval: float = 5.0):
        self.client = client
        self.api_key = api_key
        self.poll_interval = poll_interval

    def create_liveness_record(self, domain_name: str) -> str:
        existing = [
            r
            for r in self.client.list_dns_records(domain_name)
            if r.get("type") == "TXT" and r.get("name") == LIVENESS_RECORD_NAME
        ]
        if existing:
            logger.info(f"Liveness record already exists in {domain_name}")
        else:
            self.client.create_dns_record(domain_name, LIVENESS_RECORD_NAME, "TXT", LIVENESS_RECORD_VALUE)
            logger.info(f"Created liveness record in {domain_name}")
        return f"{LIVENESS_RECORD_NAME}.{domain_name}"

    def _object_storage_cluster(self, region: str) -> dict:
        clusters = self.client.list_object_storage_clusters()
        for cluster in clusters:
            if cluster.get("region") == region and cluster.get("deploy", "yes") == "yes":
                return cluster
        if not clusters:
            raise ProviderAPIError("Vultr reports no object storage clusters")
        logger.warning(f"No object storage in region {region}, using {clusters[0].get('region')}")
        return clusters[0]

    def create_state_store(self, definition: ClusterDefinition) -> StateStoreCredentials:
        """Create (or reuse) the object storage holding terraform state.

        The subscription is labeled after the cluster so reruns reuse it, and
        the state bucket is created inside it with the S3 API.

        Raises:
            ProviderAPIError: If the subscription or bucket cannot be created
        """
        label = f"k1-{definition.cluster_name}"
        storage = next((s for s in self.client.list_object_storages() if s.get("label") == label), None)
        if storage is None:
            cluster = self._object_storage_cluster(definition.cloud_region)
            storage = self.client.create_object_storage(cluster["id"], label)
            logger.info(f"Created object storage {label}")

        storage = readiness.wait_until(
            lambda: self._active_storage(storage["id"]),
            f"object storage {label} to become active",
            OBJECT_STORAGE_READY_TIMEOUT,
            self.poll_interval,
        )
        credentials = StateStoreCredentials(
            id=storage["id"],
            name=f"{label}-state-store",
            hostname=storage["s3_hostname"],
            access_key_id=storage["s3_access_key"],
            secret_access_key=storage["s3_secret_key"],
        )
        self._create_bucket(credentials)
        return credentials

    def _active_storage(self, storage_id: str) -> dict | None:
        storage = self.client.get_object_storage(storage_id)
        return storage if storage.get("status") == OBJECT_STORAGE_ACTIVE else None

    def _create_bucket(self, credentials: StateStoreCredentials) -> None:
        s3 = boto3.session.Session().client(
            "s3",
            endpoint_url=f"https://{credentials.hostname}",
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
        )
        try:
            s3.create_bucket(Bucket=credentials.name)
            logger.info(f"Created state store bucket {credentials.name}")
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                raise ProviderAPIError(f"Failed to create bucket {credentials.name}: {code or e}")
            logger.info(f"State store bucket {credentials.name} already exists")
        except BotoCoreError as e:
            raise ProviderAPIError(f"Failed to create bucket {credentials.name}: {e}")

    def terraform_env(self, definition: ClusterDefinition, state_store: StateStoreCredentials) -> dict[str, str]:
        return {
            "VULTR_API_KEY": self.api_key,
            "TF_VAR_vultr_api_key": self.api_key,
            "AWS_ACCESS_KEY_ID": state_store.access_key_id,
            "AWS_SECRET_ACCESS_KEY": state_store.secret_access_key,
            "TF_VAR_aws_access_key_id": state_store.access_key_id,
            "TF_VAR_aws_secret_access_key": state_store.secret_access_key,
        }

    def write_kubeconfig(self, cluster_id: str, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.client.get_kubeconfig(cluster_id))
        path.chmod(0o600)
        logger.info(f"Wrote kubeconfig for cluster {cluster_id} to {path}")
        return path

    def cluster_secrets(self, definition: ClusterDefinition) -> dict[tuple[str, str], dict[str, str]]:
        return {
            ("external-dns", "external-dns-secrets"): {"vultr-auth": self.api_key},
            ("kubefirst", "vultr-credentials"): {"api-key": self.api_key},
        }


def create_vultr_cluster(
    definition: ClusterDefinition,
    *,
    store: ClusterRecordStore | None = None,
    settings: Settings | None = None,
    controller: ClusterController | None = None,
) -> list[StageResult]:
    """Provision a Vultr cluster from ``definition`` to a terminal status.

    Args:
        definition: The cluster to provision
        store: Record store; defaults to the file store under the settings' state dir
        settings: Process settings; defaults to the environment
        controller: Prebuilt controller, mainly for tests

    Returns:
        The per-stage results of a successful run

    Raises:
        ProvisioningError: If any stage fails
    """
    if controller is None:
        settings = settings or Settings()
        store = store or FileRecordStore(settings.record_dir)
        session = requests.Session()
        provider = VultrProvider(
            VultrClient(settings.vultr_api_key), settings.vultr_api_key, settings.poll_interval
        )
        controller = ClusterController(definition, provider, store, settings, session=session)
    return run_pipeline(controller, VULTR_STAGES)
