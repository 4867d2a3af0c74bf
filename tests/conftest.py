"""Pytest configuration and shared fixtures."""

from unittest.mock import MagicMock

import pytest
from hypothesis import Verbosity, settings

from cluster_provisioner.config import ProviderConfig, Settings
from cluster_provisioner.controller import ClusterController
from cluster_provisioner.models.cluster import ClusterDefinition, StateStoreCredentials
from cluster_provisioner.providers import CloudProvider
from cluster_provisioner.providers.vultr import VULTR_STAGES
from cluster_provisioner.store import InMemoryRecordStore

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


@pytest.fixture
def definition():
    """The demo Vultr cluster definition."""
    return ClusterDefinition(
        cloud_provider="vultr",
        cluster_name="demo",
        domain_name="demo.example.com",
        git_provider="github",
        git_owner="demo-org",
    )


@pytest.fixture
def app_settings(tmp_path):
    """Settings rooted in a temporary directory with fast polling."""
    return Settings(
        home_dir=tmp_path / "k1",
        state_dir=tmp_path / "records",
        telemetry_write_key="test-write-key",
        github_token="ghp_test",
        vultr_api_key="vultr-test",
        poll_interval=0.01,
        cluster_ready_timeout=1,
        console_discovery_timeout=1,
        console_ready_timeout=1,
    )


@pytest.fixture
def store():
    """An empty in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
def provider():
    """A cloud provider double."""
    provider = MagicMock(spec=CloudProvider)
    provider.name = "vultr"
    provider.create_liveness_record.return_value = "kubefirst-liveness.demo.example.com"
    provider.create_state_store.return_value = StateStoreCredentials(
        id="os-1", name="k1-demo-state-store", hostname="ewr1.vultrobjects.com"
    )
    provider.terraform_env.return_value = {"VULTR_API_KEY": "vultr-test"}
    provider.cluster_secrets.return_value = {}
    return provider


@pytest.fixture
def kube():
    """Kubernetes clients double."""
    return MagicMock()


@pytest.fixture
def controller(definition, provider, store, app_settings, kube, tmp_path):
    """A real controller whose external collaborators are mocks.

    Stage methods are left intact; tests that run the pipeline use
    ``stubbed_controller`` instead.
    """
    return ClusterController(
        definition,
        provider,
        store,
        app_settings,
        provider_config=ProviderConfig.for_definition(definition, app_settings, architecture="amd64"),
        terraform=MagicMock(),
        telemetry=MagicMock(),
        session=MagicMock(),
        kube_factory=lambda kubeconfig: kube,
    )


@pytest.fixture
def stubbed_controller(controller):
    """The controller with every stage method replaced by a mock.

    The terminal-phase methods (export, telemetry, services, error handling)
    keep their real implementations.
    """
    for stage in VULTR_STAGES:
        setattr(controller, stage.action, MagicMock(name=stage.action))
    return controller
