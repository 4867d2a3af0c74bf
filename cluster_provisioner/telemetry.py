"""Usage telemetry sent to the Segment HTTP tracking API."""

import uuid

import requests

from cluster_provisioner.exceptions import ProviderAPIError
from cluster_provisioner.logging_config import get_logger
from cluster_provisioner.models.cluster import ClusterRecord

logger = get_logger(__name__)

SEGMENT_TRACK_URL = "https://api.segment.io/v1/track"

METRIC_CLUSTER_INSTALL_COMPLETED = "kubefirst.mgmt_cluster_install.completed"


class TelemetryClient:
    """Sends track events; a client without a write key sends nothing."""

    def __init__(
        self,
        write_key: str,
        session: requests.Session | None = None,
        endpoint: str = SEGMENT_TRACK_URL,
        timeout: int = 10,
    ):
        self.write_key = write_key
        self.session = session or requests.Session()
        self.endpoint = endpoint
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.write_key)

    def transmit(self, event: str, record: ClusterRecord, error_message: str = "") -> bool:
        """Send one event describing ``record``.

        Returns:
            True if an event was sent, False if telemetry is disabled

        Raises:
            ProviderAPIError: If the endpoint rejects the event
        """
        if not self.enabled or not record.use_telemetry:
            logger.debug(f"Telemetry disabled, not sending {event}")
            return False

        payload = {
            "anonymousId": str(uuid.uuid5(uuid.NAMESPACE_DNS, record.domain_name or record.cluster_name)),
            "event": event,
            "properties": {
                "cluster_name": record.cluster_name,
                "cloud_provider": record.cloud_provider,
                "git_provider": record.git_provider,
                "cluster_type": record.cluster_type,
                "error": error_message,
            },
        }
        try:
            response = self.session.post(
                self.endpoint, json=payload, auth=(self.write_key, ""), timeout=self.timeout
            )
        except requests.RequestException as e:
            raise ProviderAPIError(f"Failed to send telemetry event {event}: {e}")
        if response.status_code >= 400:
            raise ProviderAPIError(
                f"Telemetry endpoint rejected {event}: HTTP {response.status_code}", response.text
            )
        logger.debug(f"Sent telemetry event {event}")
        return True
