"""Provisioning controller.

The controller owns the configuration, the provider and Kubernetes clients,
and one method per provisioning stage. It does not decide the stage order;
the pipeline runner does. Resources that must outlive a single stage, such as
the Vault port forward used by the terraform stages, are registered on the
controller's exit stack and released when the controller's ``with`` block
ends.
"""

from contextlib import ExitStack

import requests

from cluster_provisioner import argocd, gitops, readiness, tls, tools
from cluster_provisioner.config import ProviderConfig, Settings
from cluster_provisioner.dns import resolve_txt
from cluster_provisioner.exceptions import ProviderAPIError, ProvisionerError
from cluster_provisioner.kube import (
    KubeClients,
    create_namespace,
    create_secret,
    create_secret_object,
    read_secret_value,
)
from cluster_provisioner.logging_config import get_logger
from cluster_provisioner.models.cluster import ClusterDefinition, ClusterRecord, ClusterStatus
from cluster_provisioner.providers import LIVENESS_RECORD_VALUE, CloudProvider
from cluster_provisioner.secrets import (
    SSHKeyPair,
    bot_secret_manifest,
    generate_secure_password,
    generate_ssh_key_pair,
)
from cluster_provisioner.services import default_services
from cluster_provisioner.store import ClusterRecordStore
from cluster_provisioner.telemetry import METRIC_CLUSTER_INSTALL_COMPLETED, TelemetryClient
from cluster_provisioner.terraform import Terraform
from cluster_provisioner.tunnel import PortForward, open_port_forward
from cluster_provisioner.vault import (
    UNSEAL_SECRET_NAME,
    VAULT_NAMESPACE,
    VAULT_POD,
    VAULT_PORT,
    VaultClient,
)

logger = get_logger(__name__)

PLATFORM_NAMESPACE = "kubefirst"
CLUSTER_NAMESPACES = [
    "argo",
    "argocd",
    "atlantis",
    "chartmuseum",
    "external-dns",
    PLATFORM_NAMESPACE,
    VAULT_NAMESPACE,
]
CONSOLE_LABEL = ("app.kubernetes.io/instance", "kubefirst")
PLATFORM_API_SELECTOR = "app.kubernetes.io/name=kubefirst-api"
RECORD_SECRET_NAME = "cluster-record"


class ClusterController:
    """Runs the individual provisioning stages for one cluster definition."""

    def __init__(
        self,
        definition: ClusterDefinition,
        provider: CloudProvider,
        store: ClusterRecordStore,
        settings: Settings,
        provider_config: ProviderConfig | None = None,
        terraform: Terraform | None = None,
        telemetry: TelemetryClient | None = None,
        session: requests.Session | None = None,
        kube_factory=KubeClients.from_kubeconfig,
    ):
        self.definition = definition
        self.cluster_name = definition.cluster_name
        self.provider = provider
        self.store = store
        self.settings = settings
        self.provider_config = provider_config or ProviderConfig.for_definition(definition, settings)
        self.terraform = terraform or Terraform(self.provider_config.terraform_path)
        self.session = session or requests.Session()
        self.telemetry = telemetry or TelemetryClient(settings.telemetry_write_key, self.session)
        self._kube_factory = kube_factory
        self._kube: KubeClients | None = None
        self._resources = ExitStack()
        self.bot_keys: SSHKeyPair | None = None
        self.vault_tunnel: PortForward | None = None

    def __enter__(self) -> "ClusterController":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._resources.close()

    @property
    def kube(self) -> KubeClients:
        """Clients for the new cluster, built on first use after the kubeconfig exists."""
        if self._kube is None:
            self._kube = self._kube_factory(self.provider_config.kubeconfig)
        return self._kube

    @property
    def record(self) -> ClusterRecord:
        return self.store.get_cluster(self.cluster_name)

    @property
    def git_host(self) -> str:
        return f"{self.definition.git_provider}.com"

    @property
    def gitops_repo_url(self) -> str:
        return f"git@{self.git_host}:{self.definition.git_owner}/gitops.git"

    @property
    def metaphor_repo_url(self) -> str:
        return f"git@{self.git_host}:{self.definition.git_owner}/metaphor.git"

    @property
    def bot_email(self) -> str:
        return f"{gitops.BOT_NAME}@{self.definition.domain_name}"

    def init_record(self) -> ClusterRecord:
        """Insert a pending record for this definition unless one exists."""
        if self.store.has_cluster(self.cluster_name):
            return self.record
        return self.store.insert_cluster(ClusterRecord.from_definition(self.definition))

    def _terraform_env(self, **extra: str) -> dict[str, str]:
        record = self.record
        env = {
            **self.provider.terraform_env(self.definition, record.state_store),
            "TF_VAR_cluster_name": self.cluster_name,
            "TF_VAR_domain_name": self.definition.domain_name,
        }
        token = self.settings.git_token(self.definition.git_provider)
        if self.definition.git_provider == "github":
            env.update({"GITHUB_TOKEN": token, "GITHUB_OWNER": self.definition.git_owner})
        else:
            env.update({"GITLAB_TOKEN": token, "GITLAB_OWNER": self.definition.git_owner})
        if record.kbot_public_key:
            env["TF_VAR_kbot_ssh_public_key"] = record.kbot_public_key
        env.update(extra)
        return env

    def download_tools(self) -> None:
        tools.download_tools(
            self.provider_config.tools_dir,
            self.settings.kubectl_version,
            self.settings.terraform_version,
            self.provider_config.architecture,
            session=self.session,
        )

    def domain_liveness_test(self) -> None:
        """Publish a TXT record in the cluster domain and wait until it resolves."""
        fqdn = self.provider.create_liveness_record(self.definition.domain_name)
        readiness.wait_until(
            lambda: LIVENESS_RECORD_VALUE in resolve_txt(fqdn, self.session),
            f"TXT record {fqdn} to resolve",
            self.settings.domain_liveness_timeout,
            self.settings.poll_interval,
        )

    def state_store_credentials(self) -> None:
        credentials = self.provider.create_state_store(self.definition)
        self.store.update_cluster(self.cluster_name, state_store=credentials)

    def git_init(self) -> None:
        """Clone the GitOps template into the working directory."""
        gitops_dir = self.provider_config.gitops_dir
        if (gitops_dir / ".git").exists():
            logger.info(f"GitOps template already cloned at {gitops_dir}")
            return
        gitops_dir.parent.mkdir(parents=True, exist_ok=True)
        gitops.clone(
            self.settings.gitops_template_url, self.settings.gitops_template_branch, gitops_dir
        )

    def initialize_bot(self) -> None:
        """Create the bot's SSH key pair and record its public key."""
        self.bot_keys = generate_ssh_key_pair(comment=self.bot_email)
        self.bot_keys.write_private_key(self.provider_config.ssh_key_path)
        self.store.update_cluster(self.cluster_name, kbot_public_key=self.bot_keys.public_key)

    def repository_prep(self) -> None:
        """Materialize the cluster's GitOps tree and split out the metaphor repository."""
        config = self.provider_config
        definition = self.definition
        gitops.adjust_gitops_repo(
            config.gitops_dir,
            cloud_provider=definition.cloud_provider,
            git_provider=definition.git_provider,
            cluster_name=definition.cluster_name,
            cluster_type=definition.cluster_type,
            architecture=gitops.node_architecture(definition.cloud_provider, config.architecture),
            install_console_pro=definition.install_console_pro,
            remove_atlantis=definition.remove_atlantis,
        )
        state_store = self.record.state_store
        gitops.detokenize(
            config.gitops_dir,
            {
                "<CLUSTER_NAME>": definition.cluster_name,
                "<CLUSTER_TYPE>": definition.cluster_type,
                "<DOMAIN_NAME>": definition.domain_name,
                "<CLOUD_PROVIDER>": definition.cloud_provider,
                "<CLOUD_REGION>": definition.cloud_region,
                "<NODE_TYPE>": definition.node_type,
                "<NODE_COUNT>": str(definition.node_count),
                "<GIT_PROVIDER>": definition.git_provider,
                "<GIT_OWNER>": definition.git_owner,
                "<GITOPS_REPO_URL>": self.gitops_repo_url,
                "<METAPHOR_REPO_URL>": self.metaphor_repo_url,
                "<KUBEFIRST_STATE_STORE_BUCKET>": state_store.name,
                "<KUBEFIRST_STATE_STORE_BUCKET_HOSTNAME>": state_store.hostname,
            },
        )
        gitops.adjust_metaphor_repo(
            config.gitops_dir,
            config.metaphor_dir,
            definition.git_provider,
            self.metaphor_repo_url,
            self.bot_email,
        )
        gitops.init_repository(config.gitops_dir)
        gitops.commit_all(
            config.gitops_dir, "committing initial detokenized gitops-template repo content", self.bot_email
        )
        gitops.set_remote(config.gitops_dir, self.gitops_repo_url)

    def run_git_terraform(self) -> None:
        """Create the git provider repositories and bot access."""
        self.terraform.apply(self.provider_config.git_terraform_dir, self._terraform_env())

    def repository_push(self) -> None:
        key = self.provider_config.ssh_key_path
        gitops.push(self.provider_config.gitops_dir, key)
        gitops.push(self.provider_config.metaphor_dir, key)

    def create_cluster(self) -> None:
        """Apply the cloud terraform module and fetch the new cluster's kubeconfig."""
        directory = self.provider_config.cloud_terraform_dir
        env = self._terraform_env(
            TF_VAR_cluster_region=self.definition.cloud_region,
            TF_VAR_node_type=self.definition.node_type,
            TF_VAR_node_count=str(self.definition.node_count),
        )
        self.terraform.apply(directory, env)
        cluster_id = str(self.terraform.output(directory, "cluster_id", env))
        self.store.update_cluster(self.cluster_name, cluster_id=cluster_id)
        self.provider.write_kubeconfig(cluster_id, self.provider_config.kubeconfig)

    def wait_for_cluster_ready(self) -> None:
        readiness.wait_for_cluster_api(
            self.kube.core, self.settings.cluster_ready_timeout, self.settings.poll_interval
        )

    def cluster_secrets_bootstrap(self) -> None:
        """Create platform namespaces and the secrets the platform expects at install."""
        core = self.kube.core
        for namespace in CLUSTER_NAMESPACES:
            create_namespace(core, namespace)

        for (namespace, name), data in self.provider.cluster_secrets(self.definition).items():
            create_secret(core, namespace, name, data)

        state_store = self.record.state_store
        create_secret(
            core,
            "atlantis",
            "atlantis-state-store",
            {
                "AWS_ACCESS_KEY_ID": state_store.access_key_id,
                "AWS_SECRET_ACCESS_KEY": state_store.secret_access_key,
                "AWS_ENDPOINT": f"https://{state_store.hostname}",
            },
        )
        if self.bot_keys is not None:
            create_secret_object(
                core,
                PLATFORM_NAMESPACE,
                bot_secret_manifest(generate_secure_password(), self.bot_keys, PLATFORM_NAMESPACE),
            )

    def restore_tls_secrets(self) -> None:
        """Restore backed-up TLS secrets if any exist. Never fails the run."""
        logger.info("Checking for TLS secrets to restore")
        backups = tls.find_backups(self.provider_config.ssl_backup_dir)
        if not backups:
            logger.info("No files found in secrets directory, continuing")
            return
        logger.info(f"Found {len(backups)} TLS secrets to restore")
        try:
            tls.restore(self.kube.core, backups)
        except (ProvisionerError, OSError, ValueError) as e:
            logger.warning(f"TLS secret restore failed, continuing without it: {e}")

    def install_argocd(self) -> None:
        """Install Argo CD and wait for its server to roll out."""
        argocd.install(
            self.provider_config.kubectl_path,
            self.provider_config.kubeconfig,
            self.settings.argocd_manifest_url,
        )
        label_key, label_value = argocd.ARGOCD_SERVER_LABEL
        deployment = readiness.find_deployment(
            self.kube.apps,
            label_key,
            label_value,
            argocd.ARGOCD_NAMESPACE,
            self.settings.argocd_ready_timeout,
            self.settings.poll_interval,
        )
        readiness.wait_for_deployment_ready(
            self.kube.apps, deployment, self.settings.argocd_ready_timeout, self.settings.poll_interval
        )

    def initialize_argocd(self) -> None:
        """Copy the generated admin password where platform tooling reads it."""
        password = read_secret_value(
            self.kube.core, argocd.ARGOCD_NAMESPACE, argocd.ADMIN_SECRET_NAME, "password"
        )
        create_secret(
            self.kube.core,
            PLATFORM_NAMESPACE,
            "argocd-credentials",
            {"username": "admin", "password": password},
        )

    def deploy_registry_application(self) -> None:
        application = argocd.registry_application(self.cluster_name, self.gitops_repo_url)
        argocd.deploy_registry_application(self.kube.custom, application)

    def wait_for_vault(self) -> None:
        readiness.wait_for_pod_running(
            self.kube.core,
            VAULT_NAMESPACE,
            f"statefulset.kubernetes.io/pod-name={VAULT_POD}",
            self.settings.vault_ready_timeout,
            self.settings.poll_interval,
        )

    def initialize_vault(self) -> None:
        """Initialize and unseal Vault, keeping the unseal material in a cluster secret."""
        core = self.kube.core
        with open_port_forward(core, VAULT_POD, VAULT_NAMESPACE, 0, VAULT_PORT) as tunnel:
            client = VaultClient(f"http://{tunnel.local_address}", self.session)
            seal_status = readiness.wait_until(
                client.seal_status,
                "vault API to answer",
                self.settings.vault_ready_timeout,
                self.settings.poll_interval,
                retry_on=(ProviderAPIError,),
            )
            if seal_status.get("initialized"):
                logger.info("Vault already initialized")
                if seal_status.get("sealed"):
                    keys = read_secret_value(core, VAULT_NAMESPACE, UNSEAL_SECRET_NAME, "unseal-keys")
                    client.unseal(keys.split())
                return

            init = client.initialize()
            create_secret(
                core,
                VAULT_NAMESPACE,
                UNSEAL_SECRET_NAME,
                {"root-token": init["root_token"], "unseal-keys": "\n".join(init["keys"])},
            )
            client.unseal(init["keys"])

    def open_vault_tunnel(self) -> None:
        """Forward the local Vault port for the terraform stages that follow."""
        self.vault_tunnel = self._resources.enter_context(
            open_port_forward(self.kube.core, VAULT_POD, VAULT_NAMESPACE, VAULT_PORT, VAULT_PORT)
        )

    def _vault_env(self) -> dict[str, str]:
        token = read_secret_value(self.kube.core, VAULT_NAMESPACE, UNSEAL_SECRET_NAME, "root-token")
        return self._terraform_env(VAULT_ADDR=f"http://127.0.0.1:{VAULT_PORT}", VAULT_TOKEN=token)

    def run_vault_terraform(self) -> None:
        self.terraform.apply(self.provider_config.vault_terraform_dir, self._vault_env())

    def run_users_terraform(self) -> None:
        self.terraform.apply(self.provider_config.users_terraform_dir, self._vault_env())

    def wait_for_console(self) -> None:
        """Wait for the platform console deployment to appear and become ready."""
        logger.info("Deploying console and verifying cluster installation is complete")
        label_key, label_value = CONSOLE_LABEL
        deployment = readiness.find_deployment(
            self.kube.apps,
            label_key,
            label_value,
            PLATFORM_NAMESPACE,
            self.settings.console_discovery_timeout,
            self.settings.poll_interval,
        )
        readiness.wait_for_deployment_ready(
            self.kube.apps, deployment, self.settings.console_ready_timeout, self.settings.poll_interval
        )

    def open_debug_tunnel(self) -> None:
        """Forward the platform API locally when K1_LOCAL_DEBUG is set."""
        if not self.settings.local_debug:
            return
        try:
            self._resources.enter_context(
                open_port_forward(self.kube.core, PLATFORM_API_SELECTOR, PLATFORM_NAMESPACE, 8081, 8082)
            )
            logger.info("Port forward opened to platform API")
        except ProvisionerError as e:
            logger.warning(f"Could not open local debug port forward: {e.message}")

    def export_cluster_record(self) -> None:
        """Store the cluster record inside the new cluster."""
        create_secret(
            self.kube.core,
            PLATFORM_NAMESPACE,
            RECORD_SECRET_NAME,
            {"cluster-record.json": self.record.model_dump_json()},
        )

    def handle_error(self, message: str) -> None:
        """Record a stage failure. Store errors here are logged, never raised."""
        logger.error(f"Provisioning {self.cluster_name} failed: {message}")
        try:
            self.store.set_status(self.cluster_name, ClusterStatus.FAILED, error=message)
        except ProvisionerError as e:
            logger.error(f"Could not record failure for {self.cluster_name}: {e.message}")

    def transmit_completed(self, record: ClusterRecord) -> None:
        self.telemetry.transmit(METRIC_CLUSTER_INSTALL_COMPLETED, record)

    def add_default_services(self, record: ClusterRecord) -> None:
        self.store.add_services(
            self.cluster_name, default_services(record, remove_atlantis=self.definition.remove_atlantis)
        )
