"""Credentials for the automation bot (kbot).

The bot owns the SSH key used to push the GitOps and metaphor repositories and
a password shared with in-cluster tooling.
"""

import re
import secrets as secrets_module
import string
import subprocess
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from cluster_provisioner.exceptions import ExternalCommandError

_PUBLIC_KEY_PATTERN = re.compile(r"^ssh-ed25519 [A-Za-z0-9+/]+=*( \S+)?$")


@dataclass
class SSHKeyPair:
    """An ed25519 SSH key pair in OpenSSH format.

    Attributes:
        public_key: Public key line (``ssh-ed25519 AAAA... comment``)
        private_key: PEM-armored OpenSSH private key
        created_at: Timestamp when the key pair was generated
    """

    public_key: str
    private_key: str
    created_at: datetime

    def write_private_key(self, path: Path) -> Path:
        """Write the private key with owner-only permissions."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.private_key)
        path.chmod(0o600)
        path.with_suffix(".pub").write_text(self.public_key + "\n")
        return path

    def to_secret_data(self) -> dict[str, str]:
        """Return the key pair as secret string data."""
        return {"public_key": self.public_key, "private_key": self.private_key}


def is_valid_ssh_public_key(key: str) -> bool:
    """Validate an ed25519 public key line."""
    return bool(_PUBLIC_KEY_PATTERN.match(key.strip()))


def generate_ssh_key_pair(comment: str = "kbot") -> SSHKeyPair:
    """Generate a new ed25519 key pair with ssh-keygen.

    Returns:
        SSHKeyPair containing the public and private keys

    Raises:
        ExternalCommandError: If ssh-keygen is not installed or fails
        ValueError: If the generated public key does not match the expected format
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        key_path = Path(tmpdir) / "id_ed25519"
        try:
            subprocess.run(
                ["ssh-keygen", "-t", "ed25519", "-N", "", "-C", comment, "-f", str(key_path), "-q"],
                capture_output=True,
                text=True,
                check=True,
            )
        except FileNotFoundError:
            raise ExternalCommandError("ssh-keygen not found", "Install the OpenSSH client tools")
        except subprocess.CalledProcessError as e:
            raise ExternalCommandError(f"ssh-keygen failed: {e.stderr}")

        public_key = key_path.with_suffix(".pub").read_text().strip()
        private_key = key_path.read_text()

    if not is_valid_ssh_public_key(public_key):
        raise ValueError(f"Generated public key has invalid format: {public_key}")

    return SSHKeyPair(public_key=public_key, private_key=private_key, created_at=datetime.now())


def generate_secure_password(length: int = 32) -> str:
    """Generate a cryptographically secure random password.

    Args:
        length: Length of the password (default: 32)

    Returns:
        A secure random password string
    """
    alphabet = string.ascii_letters + string.digits + "!@#$%^&*()-_=+"
    return "".join(secrets_module.choice(alphabet) for _ in range(length))


def bot_secret_manifest(password: str, key_pair: SSHKeyPair, namespace: str) -> dict[str, Any]:
    """Build the secret holding the bot's credentials for in-cluster tooling."""
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "kbot-credentials", "namespace": namespace},
        "type": "Opaque",
        "stringData": {"password": password, **key_pair.to_secret_data()},
    }
