"""Kubernetes API clients scoped to one cluster."""

import base64
from dataclasses import dataclass
from pathlib import Path

from kubernetes import client, config
from kubernetes.client.rest import ApiException

from cluster_provisioner.exceptions import KubernetesError
from cluster_provisioner.logging_config import get_logger

logger = get_logger(__name__)

HTTP_CONFLICT = 409


@dataclass
class KubeClients:
    """API clients bound to a single cluster's kubeconfig."""

    core: client.CoreV1Api
    apps: client.AppsV1Api
    custom: client.CustomObjectsApi

    @classmethod
    def from_kubeconfig(cls, kubeconfig: Path) -> "KubeClients":
        """Build clients from a kubeconfig file.

        Raises:
            KubernetesError: If the kubeconfig cannot be loaded
        """
        kubeconfig = Path(kubeconfig).expanduser()
        if not kubeconfig.exists():
            raise KubernetesError(
                f"Kubeconfig not found: {kubeconfig}",
                "The cluster must be created before its API can be used",
            )
        try:
            api_client = config.new_client_from_config(config_file=str(kubeconfig))
        except Exception as e:
            raise KubernetesError(f"Failed to load kubeconfig {kubeconfig}: {e}")
        return cls(
            core=client.CoreV1Api(api_client),
            apps=client.AppsV1Api(api_client),
            custom=client.CustomObjectsApi(api_client),
        )


def create_namespace(core: client.CoreV1Api, name: str) -> bool:
    """Create a namespace.

    Returns:
        True if created, False if it already existed

    Raises:
        KubernetesError: If the API rejects the request
    """
    body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name))
    try:
        core.create_namespace(body)
    except ApiException as e:
        if e.status == HTTP_CONFLICT:
            logger.debug(f"Namespace {name} already exists")
            return False
        raise KubernetesError(f"Failed to create namespace {name}: {e.reason}")
    logger.info(f"Created namespace {name}")
    return True


def create_secret(
    core: client.CoreV1Api,
    namespace: str,
    name: str,
    string_data: dict[str, str],
    labels: dict[str, str] | None = None,
) -> bool:
    """Create an Opaque secret.

    Returns:
        True if created, False if it already existed

    Raises:
        KubernetesError: If the API rejects the request
    """
    body = client.V1Secret(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        type="Opaque",
        string_data=string_data,
    )
    return create_secret_object(core, namespace, body)


def create_secret_object(core: client.CoreV1Api, namespace: str, body) -> bool:
    """Create a secret from a V1Secret or manifest dict, tolerating "already exists"."""
    name = body["metadata"]["name"] if isinstance(body, dict) else body.metadata.name
    try:
        core.create_namespaced_secret(namespace, body)
    except ApiException as e:
        if e.status == HTTP_CONFLICT:
            logger.debug(f"Secret {namespace}/{name} already exists")
            return False
        raise KubernetesError(f"Failed to create secret {namespace}/{name}: {e.reason}")
    logger.info(f"Created secret {namespace}/{name}")
    return True


def read_secret_value(core: client.CoreV1Api, namespace: str, name: str, key: str) -> str:
    """Return one decoded value of a secret.

    Raises:
        KubernetesError: If the secret or key does not exist
    """
    try:
        secret = core.read_namespaced_secret(name, namespace)
    except ApiException as e:
        raise KubernetesError(f"Failed to read secret {namespace}/{name}: {e.reason}")
    data = secret.data or {}
    if key not in data:
        raise KubernetesError(f"Secret {namespace}/{name} has no key '{key}'")
    return base64.b64decode(data[key]).decode("utf-8")
