"""Argo CD installation and registry application."""

from pathlib import Path

from kubernetes.client.rest import ApiException

from cluster_provisioner.exceptions import KubernetesError
from cluster_provisioner.kube import HTTP_CONFLICT
from cluster_provisioner.logging_config import get_logger
from cluster_provisioner.shell import run_command

logger = get_logger(__name__)

ARGOCD_NAMESPACE = "argocd"
ARGOCD_SERVER_LABEL = ("app.kubernetes.io/name", "argocd-server")
ADMIN_SECRET_NAME = "argocd-initial-admin-secret"
REGISTRY_APPLICATION_NAME = "registry"


def install(kubectl: Path | str, kubeconfig: Path, manifest_url: str) -> None:
    """Apply the Argo CD kustomization with kubectl.

    Raises:
        ExternalCommandError: If kubectl fails
    """
    logger.info(f"Installing Argo CD from {manifest_url}")
    run_command(
        [str(kubectl), "--kubeconfig", str(kubeconfig), "apply", "-k", manifest_url],
        timeout=600,
    )


def registry_application(
    cluster_name: str, gitops_repo_url: str, destination: str = "https://kubernetes.default.svc"
) -> dict:
    """Build the Application that syncs ``registry/<cluster>`` from the GitOps repository."""
    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {
            "name": REGISTRY_APPLICATION_NAME,
            "namespace": ARGOCD_NAMESPACE,
            "annotations": {"argocd.argoproj.io/sync-wave": "1"},
        },
        "spec": {
            "project": "default",
            "source": {
                "repoURL": gitops_repo_url,
                "path": f"registry/{cluster_name}",
                "targetRevision": "HEAD",
            },
            "destination": {"server": destination, "namespace": ARGOCD_NAMESPACE},
            "syncPolicy": {
                "automated": {"prune": True, "selfHeal": True},
                "syncOptions": ["CreateNamespace=true"],
            },
        },
    }


def deploy_registry_application(custom_api, application: dict) -> bool:
    """Create the registry Application.

    Returns:
        True if created, False if it already existed

    Raises:
        KubernetesError: If the API rejects the request
    """
    try:
        custom_api.create_namespaced_custom_object(
            group="argoproj.io",
            version="v1alpha1",
            namespace=ARGOCD_NAMESPACE,
            plural="applications",
            body=application,
        )
    except ApiException as e:
        if e.status == HTTP_CONFLICT:
            logger.info("Registry application already exists")
            return False
        raise KubernetesError(f"Failed to create registry application: {e.reason}")
    logger.info("Registry application created")
    return True
