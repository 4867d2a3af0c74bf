"""Restore backed-up TLS secrets into a new cluster."""

from pathlib import Path

import yaml

from cluster_provisioner.kube import create_secret_object
from cluster_provisioner.logging_config import get_logger

logger = get_logger(__name__)


def find_backups(ssl_backup_dir: Path) -> list[Path]:
    """Return the secret manifests under ``<ssl_backup_dir>/secrets``, sorted by name."""
    secrets_dir = Path(ssl_backup_dir) / "secrets"
    if not secrets_dir.is_dir():
        logger.info(f"No TLS backup directory at {secrets_dir}")
        return []
    return sorted(p for p in secrets_dir.iterdir() if p.suffix in (".yaml", ".yml"))


def restore(core_api, backups: list[Path]) -> int:
    """Create each backed-up secret in its namespace.

    Returns:
        Number of secrets created
    """
    restored = 0
    for path in backups:
        try:
            with open(path) as f:
                manifest = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.warning(f"Skipping {path.name}: not valid YAML: {e}")
            continue
        if not isinstance(manifest, dict) or manifest.get("kind") != "Secret":
            logger.warning(f"Skipping {path.name}: not a Kubernetes Secret manifest")
            continue
        metadata = manifest.setdefault("metadata", {})
        # Server-populated fields from the backup would be rejected on create
        for field in ("resourceVersion", "uid", "creationTimestamp", "managedFields"):
            metadata.pop(field, None)
        namespace = metadata.get("namespace", "default")
        if create_secret_object(core_api, namespace, manifest):
            restored += 1
    logger.info(f"Restored {restored} of {len(backups)} TLS secrets")
    return restored
