"""Cluster provisioner: drives a cluster and its GitOps platform from definition to ready."""

__version__ = "0.1.0"
