"""Thin wrapper around the terraform CLI."""

import json
from pathlib import Path

from cluster_provisioner.exceptions import ExternalCommandError
from cluster_provisioner.logging_config import get_logger
from cluster_provisioner.shell import run_command

logger = get_logger(__name__)

APPLY_TIMEOUT = 3600


class Terraform:
    """Runs terraform in module directories with a fixed binary."""

    def __init__(self, binary: Path | str = "terraform"):
        self.binary = str(binary)

    def init(self, directory: Path, env: dict[str, str] | None = None) -> None:
        run_command([self.binary, "init", "-input=false", "-no-color"], cwd=directory, env=env)

    def apply(self, directory: Path, env: dict[str, str] | None = None) -> None:
        """Run ``terraform init`` and ``terraform apply`` in ``directory``.

        Raises:
            ExternalCommandError: If the module directory is missing or terraform fails
        """
        directory = Path(directory)
        if not directory.is_dir():
            raise ExternalCommandError(f"Terraform directory not found: {directory}")

        logger.info(f"Applying terraform in {directory}")
        self.init(directory, env)
        run_command(
            [self.binary, "apply", "-input=false", "-auto-approve", "-no-color"],
            cwd=directory,
            env=env,
            timeout=APPLY_TIMEOUT,
        )
        logger.info(f"Terraform apply complete in {directory}")

    def output(self, directory: Path, name: str, env: dict[str, str] | None = None):
        """Return one decoded output value of an applied module."""
        result = run_command(
            [self.binary, "output", "-json", name], cwd=Path(directory), env=env
        )
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError:
            raise ExternalCommandError(
                f"terraform output {name} returned invalid JSON", result.stdout[:200]
            )
