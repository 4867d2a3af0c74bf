"""Data models for cluster definitions and provisioning state."""

from cluster_provisioner.models.cluster import (
    ClusterDefinition,
    ClusterRecord,
    ClusterStatus,
    ServiceEntry,
    StateStoreCredentials,
)

__all__ = [
    "ClusterDefinition",
    "ClusterRecord",
    "ClusterStatus",
    "ServiceEntry",
    "StateStoreCredentials",
]
