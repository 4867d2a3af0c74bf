"""Run external command line tools."""

import os
import subprocess
from pathlib import Path

from cluster_provisioner.exceptions import ExternalCommandError
from cluster_provisioner.logging_config import get_logger

logger = get_logger(__name__)


def run_command(
    command: list[str],
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
    timeout: int | None = None,
) -> subprocess.CompletedProcess:
    """Run a command and return the completed process.

    Args:
        command: Command and arguments
        cwd: Working directory
        env: Variables added to the current environment
        timeout: Seconds before the command is abandoned

    Returns:
        The completed process with captured stdout and stderr

    Raises:
        ExternalCommandError: If the command is missing, times out, or exits non-zero
    """
    full_env = {**os.environ, **(env or {})}
    logger.debug(f"Running: {' '.join(command)}" + (f" (in {cwd})" if cwd else ""))

    try:
        return subprocess.run(
            command,
            cwd=cwd,
            env=full_env,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        logger.error(f"{command[0]} not found")
        raise ExternalCommandError(
            f"{command[0]} is not installed or not in PATH",
            "Run the download-tools stage or install the tool manually",
            command=command,
        )
    except subprocess.TimeoutExpired:
        logger.error(f"{command[0]} timed out after {timeout} seconds")
        raise ExternalCommandError(
            f"{command[0]} timed out after {timeout} seconds", command=command
        )
    except subprocess.CalledProcessError as e:
        stderr = (e.stderr or "").strip()
        logger.error(f"{command[0]} failed with return code {e.returncode}: {stderr}")
        raise ExternalCommandError(
            f"{' '.join(command[:2])} failed: {stderr.splitlines()[-1] if stderr else e.returncode}",
            stderr or None,
            command=command,
        )
