"""Property-based tests for pipeline fail-fast behavior.

For any failing stage k, stages 1..k-1 run once each in order, stage k runs
once, no later stage runs, and the record ends failed with the stage's cause.
"""

from unittest.mock import MagicMock

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from cluster_provisioner.config import ProviderConfig, Settings
from cluster_provisioner.controller import ClusterController
from cluster_provisioner.exceptions import ExternalCommandError, ProvisioningError
from cluster_provisioner.models.cluster import ClusterDefinition, ClusterStatus
from cluster_provisioner.pipeline import run_pipeline
from cluster_provisioner.providers import CloudProvider
from cluster_provisioner.providers.vultr import VULTR_STAGES
from cluster_provisioner.store import InMemoryRecordStore


def _controller(tmp_path, calls, failing_stage=None, cause="boom"):
    definition = ClusterDefinition(cloud_provider="vultr", cluster_name="demo", domain_name="demo.example.com")
    app_settings = Settings(home_dir=tmp_path, github_token="ghp_test")
    controller = ClusterController(
        definition,
        MagicMock(spec=CloudProvider),
        InMemoryRecordStore(),
        app_settings,
        provider_config=ProviderConfig.for_definition(definition, app_settings, architecture="amd64"),
        terraform=MagicMock(),
        telemetry=MagicMock(),
        session=MagicMock(),
        kube_factory=lambda kubeconfig: MagicMock(),
    )
    for stage in VULTR_STAGES:

        def action(name=stage.name):
            calls.append(name)
            if name == failing_stage:
                raise ExternalCommandError(cause)

        setattr(controller, stage.action, action)
    return controller


@settings(suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(
    failing=st.integers(min_value=0, max_value=len(VULTR_STAGES) - 1),
    cause=st.text(alphabet=st.characters(min_codepoint=33, max_codepoint=126), min_size=1, max_size=30),
)
def test_first_failure_stops_pipeline(tmp_path, failing, cause):
    """For any failing stage, later stages never run and the record is failed with its cause."""
    calls = []
    failing_stage = VULTR_STAGES[failing].name
    controller = _controller(tmp_path, calls, failing_stage, cause)

    with pytest.raises(ProvisioningError) as exc_info:
        run_pipeline(controller, VULTR_STAGES)

    assert calls == [stage.name for stage in VULTR_STAGES[: failing + 1]]
    assert exc_info.value.stage == failing_stage
    record = controller.store.get_cluster("demo")
    assert record.status == ClusterStatus.FAILED
    assert record.in_progress is False
    assert record.last_error == cause
    assert record.completed_stages == calls[:-1]
    controller.telemetry.transmit.assert_not_called()


@settings(suppress_health_check=[HealthCheck.function_scoped_fixture], max_examples=5)
@given(data=st.data())
def test_success_runs_every_stage_once(tmp_path, data):
    """A run with no failing stage invokes every stage exactly once and ends provisioned."""
    calls = []
    controller = _controller(tmp_path, calls)

    run_pipeline(controller, VULTR_STAGES)

    assert calls == [stage.name for stage in VULTR_STAGES]
    assert controller.store.get_cluster("demo").status == ClusterStatus.PROVISIONED
    assert controller.telemetry.transmit.call_count == 1
