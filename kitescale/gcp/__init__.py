"""Compute Engine side of kitescale: worker inventory and spot provisioning.

Environment Variables:
    GOOGLE_CLOUD_PROJECT: GCP project ID (used when not configured directly)
    GOOGLE_APPLICATION_CREDENTIALS: Path to service account key (optional)
"""

from kitescale.gcp.clients import ComputeClients
from kitescale.gcp.inventory import InstanceInventory, resolve_zones
from kitescale.gcp.provisioner import WORKER_TAG, InstanceProvisioner, NameCounter, build_request

__all__ = [
    "WORKER_TAG",
    "ComputeClients",
    "InstanceInventory",
    "InstanceProvisioner",
    "NameCounter",
    "build_request",
    "resolve_zones",
]
