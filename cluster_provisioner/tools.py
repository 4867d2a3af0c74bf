"""Download the CLI tools a provisioning run depends on."""

import io
import platform
import stat
import zipfile
from pathlib import Path

import requests

from cluster_provisioner.exceptions import ProviderAPIError
from cluster_provisioner.logging_config import get_logger

logger = get_logger(__name__)

KUBECTL_URL = "https://dl.k8s.io/release/{version}/bin/{os}/{arch}/kubectl"
TERRAFORM_URL = "https://releases.hashicorp.com/terraform/{version}/terraform_{version}_{os}_{arch}.zip"

DOWNLOAD_TIMEOUT = 300


def _fetch(url: str, session: requests.Session) -> bytes:
    try:
        response = session.get(url, timeout=DOWNLOAD_TIMEOUT)
    except requests.RequestException as e:
        raise ProviderAPIError(f"Failed to download {url}: {e}")
    if response.status_code != 200:
        raise ProviderAPIError(f"Failed to download {url}: HTTP {response.status_code}")
    return response.content


def _make_executable(path: Path) -> None:
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)


def download_kubectl(destination: Path, version: str, architecture: str, session: requests.Session) -> Path:
    url = KUBECTL_URL.format(version=version, os=platform.system().lower(), arch=architecture)
    logger.info(f"Downloading kubectl {version}")
    destination.write_bytes(_fetch(url, session))
    _make_executable(destination)
    return destination


def download_terraform(destination: Path, version: str, architecture: str, session: requests.Session) -> Path:
    url = TERRAFORM_URL.format(version=version, os=platform.system().lower(), arch=architecture)
    logger.info(f"Downloading terraform {version}")
    with zipfile.ZipFile(io.BytesIO(_fetch(url, session))) as archive:
        destination.write_bytes(archive.read("terraform"))
    _make_executable(destination)
    return destination


def download_tools(
    tools_dir: Path,
    kubectl_version: str,
    terraform_version: str,
    architecture: str,
    session: requests.Session | None = None,
) -> dict[str, Path]:
    """Ensure kubectl and terraform exist in ``tools_dir``.

    Tools already present are kept.

    Returns:
        Mapping of tool name to its path

    Raises:
        ProviderAPIError: If a download fails
    """
    session = session or requests.Session()
    tools_dir = Path(tools_dir)
    tools_dir.mkdir(parents=True, exist_ok=True)

    downloads = {
        "kubectl": (download_kubectl, kubectl_version),
        "terraform": (download_terraform, terraform_version),
    }
    paths = {}
    for name, (download, version) in downloads.items():
        path = tools_dir / name
        if path.exists():
            logger.debug(f"{name} already present at {path}")
        else:
            download(path, version, architecture, session)
        paths[name] = path
    return paths
