"""Pipeline runner: drives a controller through an ordered list of stages.

The runner owns sequencing and the error policy. The first failing stage
stops the run, the controller records the failure, and the caller gets a
``ProvisioningError`` naming the stage. On success the terminal phase exports
the record, marks the cluster provisioned, sends one completion event, and
seeds the default service entries.
"""

from dataclasses import dataclass

from cluster_provisioner.exceptions import ProvisionerError, ProvisioningError
from cluster_provisioner.logging_config import get_logger
from cluster_provisioner.models.cluster import ClusterRecord, ClusterStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class Stage:
    """A named pipeline step bound to a controller method.

    Attributes:
        name: Stage name recorded in ``completed_stages``
        action: Name of the controller method that performs the stage
    """

    name: str
    action: str


@dataclass(frozen=True)
class StageResult:
    stage: str
    ok: bool
    error: str = ""


def _failure_message(error: Exception) -> str:
    if isinstance(error, ProvisionerError):
        return error.message
    return str(error) or type(error).__name__


def run_pipeline(controller, stages: list[Stage]) -> list[StageResult]:
    """Run ``stages`` in order against ``controller``.

    Args:
        controller: A ClusterController (or anything exposing the stage methods)
        stages: Ordered stages to run

    Returns:
        One successful StageResult per stage

    Raises:
        ProvisioningError: If a stage fails; the record is marked failed first and
            the error carries the results up to and including the failed stage
        ClusterLockedError: If another run holds the lease for this cluster
        InvalidStatusTransition: If the record is already terminal
    """
    store = controller.store
    name = controller.cluster_name
    controller.init_record()

    results: list[StageResult] = []
    with store.lease(name), controller:
        store.set_status(name, ClusterStatus.IN_PROGRESS)
        logger.info(f"Provisioning cluster {name} ({len(stages)} stages)")

        for stage in stages:
            logger.info(f"Stage {stage.name}: starting")
            try:
                getattr(controller, stage.action)()
                store.add_stage(name, stage.name)
            except Exception as e:
                message = _failure_message(e)
                logger.error(f"Stage {stage.name} failed: {message}")
                controller.handle_error(message)
                results.append(StageResult(stage=stage.name, ok=False, error=message))
                raise ProvisioningError(message, stage.name, results) from e
            results.append(StageResult(stage=stage.name, ok=True))
            logger.info(f"Stage {stage.name}: done")

        _finish(controller)
    return results


def _finish(controller) -> ClusterRecord:
    """Terminal phase, run only after every stage succeeded."""
    store = controller.store
    name = controller.cluster_name

    controller.open_debug_tunnel()

    try:
        controller.export_cluster_record()
    except Exception as e:
        logger.error(f"Error exporting cluster record for {name}: {_failure_message(e)}")

    record = store.set_status(name, ClusterStatus.PROVISIONED)
    logger.info(f"Cluster {name} provisioned")

    try:
        controller.transmit_completed(record)
    except Exception as e:
        logger.error(f"Error sending install completed event: {_failure_message(e)}")

    try:
        controller.add_default_services(record)
    except Exception as e:
        logger.error(f"Error adding default services for {name}: {_failure_message(e)}")

    return record
