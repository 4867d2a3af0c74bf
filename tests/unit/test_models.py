"""Tests for definitions, records, and settings."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from cluster_provisioner.config import ProviderConfig, Settings
from cluster_provisioner.exceptions import InvalidStatusTransition
from cluster_provisioner.models.cluster import ClusterDefinition, ClusterRecord, ClusterStatus


def test_definition_defaults(definition):
    """Test the defaults of a minimal definition."""
    assert definition.cluster_type == "mgmt"
    assert definition.node_count == 3
    assert definition.install_console_pro is True
    assert definition.remove_atlantis is False


def test_definition_is_immutable(definition):
    """Test that a definition cannot be changed after creation."""
    with pytest.raises(ValidationError):
        definition.cluster_name = "other"


@pytest.mark.parametrize("name", ["", "-demo", "demo-", "Demo", "demo_1", "a" * 64])
def test_definition_rejects_bad_cluster_names(name):
    """Test that cluster names must be DNS labels."""
    with pytest.raises(ValidationError):
        ClusterDefinition(cloud_provider="vultr", cluster_name=name, domain_name="example.com")


def test_definition_rejects_unsupported_provider():
    """Test that only supported cloud providers are accepted."""
    with pytest.raises(ValidationError, match="cloud_provider"):
        ClusterDefinition(cloud_provider="aws", cluster_name="demo", domain_name="example.com")


def test_definition_normalizes_domain():
    """Test that domain names are lowercased and lose a trailing dot."""
    definition = ClusterDefinition(cloud_provider="Vultr", cluster_name="demo", domain_name="Demo.Example.COM.")

    assert definition.domain_name == "demo.example.com"
    assert definition.cloud_provider == "vultr"


def test_definition_load(tmp_path):
    """Test loading a definition from YAML."""
    path = tmp_path / "demo.yaml"
    path.write_text(
        "cloud_provider: vultr\n"
        "cluster_name: demo\n"
        "domain_name: demo.example.com\n"
        "git_provider: gitlab\n"
        "git_owner: demo-group\n"
        "remove_atlantis: true\n"
    )

    definition = ClusterDefinition.load(str(path))

    assert definition.git_provider == "gitlab"
    assert definition.remove_atlantis is True


def test_record_from_definition(definition):
    """Test that a new record starts pending and idle."""
    record = ClusterRecord.from_definition(definition)

    assert record.status == ClusterStatus.PENDING
    assert record.in_progress is False
    assert record.last_error == ""
    assert record.completed_stages == []
    assert record.creation_timestamp.tzinfo is not None


def test_record_rejects_inconsistent_in_progress():
    """Test that in_progress must mirror the status."""
    with pytest.raises(ValidationError, match="in_progress"):
        ClusterRecord(cluster_name="demo", cloud_provider="vultr", status=ClusterStatus.FAILED, in_progress=True)


def test_transition_forward(definition):
    """Test the forward path through every status."""
    record = ClusterRecord.from_definition(definition)

    running = record.transition(ClusterStatus.IN_PROGRESS)
    assert running.in_progress is True
    done = running.transition(ClusterStatus.PROVISIONED)
    assert done.in_progress is False
    assert done.last_error == ""
    assert record.status == ClusterStatus.PENDING


def test_transition_to_failed_keeps_error(definition):
    """Test that a failure records its cause."""
    record = ClusterRecord.from_definition(definition).transition(ClusterStatus.IN_PROGRESS)

    failed = record.transition(ClusterStatus.FAILED, "quota exceeded")

    assert failed.last_error == "quota exceeded"
    assert failed.in_progress is False


@pytest.mark.parametrize(
    "start,target",
    [
        (ClusterStatus.PROVISIONED, ClusterStatus.FAILED),
        (ClusterStatus.FAILED, ClusterStatus.PROVISIONED),
        (ClusterStatus.FAILED, ClusterStatus.IN_PROGRESS),
        (ClusterStatus.PROVISIONED, ClusterStatus.PENDING),
        (ClusterStatus.IN_PROGRESS, ClusterStatus.PENDING),
    ],
)
def test_transition_rejects_backward_moves(start, target):
    """Test that terminal statuses are final and status never moves backward."""
    record = ClusterRecord(
        cluster_name="demo",
        cloud_provider="vultr",
        status=start,
        in_progress=start == ClusterStatus.IN_PROGRESS,
    )

    with pytest.raises(InvalidStatusTransition):
        record.transition(target)


def test_settings_read_environment(monkeypatch, tmp_path):
    """Test that settings come from K1_ variables and provider token variables."""
    monkeypatch.setenv("K1_HOME_DIR", str(tmp_path))
    monkeypatch.setenv("K1_LOCAL_DEBUG", "true")
    monkeypatch.setenv("VULTR_API_KEY", "vultr-env")
    monkeypatch.setenv("GITHUB_TOKEN", "ghp_env")

    settings = Settings()

    assert settings.home_dir == tmp_path
    assert settings.local_debug == "true"
    assert settings.vultr_api_key == "vultr-env"
    assert settings.git_token("github") == "ghp_env"
    assert settings.record_dir == tmp_path / "records"


def test_provider_config_layout(definition, app_settings):
    """Test the per-cluster directory layout."""
    config = ProviderConfig.for_definition(definition, app_settings, architecture="arm64")

    assert config.k1_dir == app_settings.home_dir / "demo"
    assert config.architecture == "arm64"
    assert config.kubectl_path == config.k1_dir / "tools" / "kubectl"
    assert config.cloud_terraform_dir == config.k1_dir / "gitops" / "terraform" / "vultr"
    assert config.git_terraform_dir == config.k1_dir / "gitops" / "terraform" / "github"
    assert config.ssl_backup_dir == config.k1_dir / "ssl"
    assert isinstance(config.kubeconfig, Path)
