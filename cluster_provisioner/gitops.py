"""GitOps repository materialization and git operations.

The GitOps template carries one subtree per ``<cloud>-<git>`` platform plus
shared ``cluster-types``, ``ci`` and ``metaphor`` content. Materialization
keeps the selected platform, moves the cluster-type content under
``registry/<cluster>``, and splits the metaphor application into its own
repository with a fresh history.
"""

import os
import shutil
from pathlib import Path

from cluster_provisioner.exceptions import ConfigurationError
from cluster_provisioner.logging_config import get_logger
from cluster_provisioner.shell import run_command

logger = get_logger(__name__)

CLOUD_PROVIDERS = ["akamai", "aws", "civo", "digitalocean", "google", "k3d", "vultr"]
GIT_PROVIDERS = ["github", "gitlab"]
SUPPORTED_PLATFORMS = [f"{cloud}-{git}" for cloud in CLOUD_PROVIDERS for git in GIT_PROVIDERS]

# Providers whose nodes run on the operator's machine
LOCAL_PROVIDERS = {"k3d"}

BOT_NAME = "kbot"


def _ignore_vcs_and_state(directory: str, names: list[str]) -> set[str]:
    return {n for n in names if n.endswith(".git") or n.startswith(".terraform")}


def _copy(src: Path, dst: Path) -> None:
    if src.is_dir():
        shutil.copytree(src, dst, dirs_exist_ok=True, ignore=_ignore_vcs_and_state)
    else:
        dst.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src, dst)


def _remove(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
    elif path.exists():
        path.unlink()


def node_architecture(cloud_provider: str, host_architecture: str) -> str:
    """Architecture of the cluster's nodes: the host's for local clusters, amd64 otherwise."""
    if cloud_provider in LOCAL_PROVIDERS and host_architecture == "arm64":
        return "arm64"
    return "amd64"


def adjust_gitops_repo(
    gitops_dir: Path,
    cloud_provider: str,
    git_provider: str,
    cluster_name: str,
    cluster_type: str,
    architecture: str,
    install_console_pro: bool = True,
    remove_atlantis: bool = False,
) -> Path:
    """Reduce the multi-platform template in ``gitops_dir`` to one cluster's content.

    Args:
        gitops_dir: Cloned GitOps template
        cloud_provider: Cloud provider whose platform subtree is kept
        git_provider: Git provider whose platform subtree is kept
        cluster_name: Name of the registry directory to create
        cluster_type: Cluster type whose content populates the registry
        architecture: Node architecture (``amd64`` or ``arm64``)
        install_console_pro: Keep the console components
        remove_atlantis: Drop the atlantis application

    Returns:
        Path of the cluster registry directory
    """
    gitops_dir = Path(gitops_dir)
    platform = f"{cloud_provider}-{git_provider}"

    for other in SUPPORTED_PLATFORMS:
        if other != platform:
            _remove(gitops_dir / other)

    driver_content = gitops_dir / platform
    logger.debug(f"Populating gitops repository with {platform} content")
    _copy(driver_content, gitops_dir)
    _remove(driver_content)

    registry_dir = gitops_dir / "registry" / cluster_name
    cluster_content = gitops_dir / "cluster-types" / cluster_type
    logger.debug(f"Populating {registry_dir} with cluster type {cluster_type}")
    _copy(cluster_content, registry_dir)
    _remove(gitops_dir / "cluster-types")
    _remove(gitops_dir / "services")

    # Exactly one gitlab runner variant survives
    if git_provider == "gitlab":
        runner_dir = registry_dir / "components" / "gitlab-runner"
        unused = "application.yaml" if architecture == "arm64" else "application-arm.yaml"
        _remove(runner_dir / unused)

    if not install_console_pro:
        _remove(registry_dir / "components" / "kubefirst")
        _remove(registry_dir / "kubefirst.yaml")

    if remove_atlantis:
        _remove(registry_dir / "atlantis.yaml")

    return registry_dir


def detokenize(directory: Path, tokens: dict[str, str]) -> int:
    """Replace template tokens in every text file under ``directory``.

    Args:
        directory: Tree to rewrite in place
        tokens: Mapping of token (e.g. ``<CLUSTER_NAME>``) to value

    Returns:
        Number of files changed
    """
    changed = 0
    for root, dirs, files in os.walk(directory):
        dirs[:] = [d for d in dirs if d != ".git" and not d.startswith(".terraform")]
        for filename in files:
            path = Path(root) / filename
            try:
                content = path.read_text()
            except (UnicodeDecodeError, OSError):
                continue
            new_content = content
            for token, value in tokens.items():
                new_content = new_content.replace(token, value)
            if new_content != content:
                path.write_text(new_content)
                changed += 1
    logger.debug(f"Detokenized {changed} files under {directory}")
    return changed


def clone(url: str, branch: str, destination: Path) -> None:
    run_command(["git", "clone", "--depth", "1", "--branch", branch, url, str(destination)])


def init_repository(path: Path, branch: str = "main") -> None:
    """Start a fresh history in ``path`` on ``branch``."""
    _remove(Path(path) / ".git")
    run_command(["git", "init", "--initial-branch", branch], cwd=path)


def commit_all(path: Path, message: str, author_email: str) -> None:
    run_command(["git", "add", "--all"], cwd=path)
    run_command(
        [
            "git",
            "-c",
            f"user.name={BOT_NAME}",
            "-c",
            f"user.email={author_email}",
            "commit",
            "--message",
            message,
        ],
        cwd=path,
    )


def set_remote(path: Path, url: str, name: str = "origin") -> None:
    """Point remote ``name`` at ``url``, creating it if needed."""
    remotes = run_command(["git", "remote"], cwd=path).stdout.split()
    action = "set-url" if name in remotes else "add"
    run_command(["git", "remote", action, name, url], cwd=path)


def push(path: Path, ssh_key: Path, branch: str = "main", remote: str = "origin") -> None:
    """Push ``branch`` without forcing.

    Pushing an unchanged branch again is a no-op, and a diverged remote is
    rejected rather than overwritten.
    """
    env = {
        "GIT_SSH_COMMAND": f"ssh -i {ssh_key} -o IdentitiesOnly=yes -o StrictHostKeyChecking=accept-new"
    }
    run_command(["git", "push", remote, f"{branch}:{branch}"], cwd=path, env=env, timeout=600)
    logger.info(f"Pushed {path.name} to {remote}/{branch}")


def adjust_metaphor_repo(
    gitops_dir: Path,
    metaphor_dir: Path,
    git_provider: str,
    destination_url: str,
    author_email: str,
) -> None:
    """Split the metaphor application out of the GitOps tree into its own repository.

    Args:
        gitops_dir: Materialized GitOps tree holding ``metaphor`` and ``ci``
        metaphor_dir: Directory of the new metaphor repository
        git_provider: Selects the CI content to copy
        destination_url: Remote URL for ``origin``
        author_email: Commit author email

    Raises:
        ConfigurationError: If the template's metaphor content has no Dockerfile
    """
    gitops_dir = Path(gitops_dir)
    metaphor_dir = Path(metaphor_dir)
    metaphor_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
    init_repository(metaphor_dir)

    _copy(gitops_dir / "metaphor", metaphor_dir)

    ci_dir = gitops_dir / "ci"
    if git_provider == "github":
        _copy(ci_dir / ".github", metaphor_dir / ".github")
    elif git_provider == "gitlab":
        _copy(ci_dir / ".gitlab-ci.yml", metaphor_dir / ".gitlab-ci.yml")
    _copy(ci_dir / ".argo", metaphor_dir / ".argo")

    dockerfile = metaphor_dir / "Dockerfile"
    if not dockerfile.exists():
        logger.error(f"Metaphor content has no Dockerfile at {dockerfile}")
        raise ConfigurationError(
            "GitOps template is missing metaphor/Dockerfile", f"Check the template at {gitops_dir}"
        )
    _copy(dockerfile, metaphor_dir / "build" / "Dockerfile")

    _remove(ci_dir)
    _remove(gitops_dir / "metaphor")

    commit_all(metaphor_dir, "committing initial detokenized metaphor repo content", author_email)
    set_remote(metaphor_dir, destination_url)
