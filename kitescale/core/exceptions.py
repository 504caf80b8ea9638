"""Exception hierarchy for kitescale.

All kitescale-specific exceptions inherit from KitescaleError. The control
loop keeps running on the recoverable ones (demand sampling, inventory,
transient provisioning) and stops on the rest.
"""

from __future__ import annotations


class KitescaleError(Exception):
    """Base exception for all kitescale errors."""


class ConfigurationError(KitescaleError):
    """Raised for invalid configuration or missing required settings."""


class DemandSamplingError(KitescaleError):
    """Raised when queue metrics cannot be fetched or decoded."""

    def __init__(self, queue: str, reason: str) -> None:
        self.queue = queue
        self.reason = reason
        super().__init__(f"Failed to sample queue '{queue}': {reason}")


class InventoryError(KitescaleError):
    """Raised when listing instances in a zone fails."""

    def __init__(self, zone: str, reason: str) -> None:
        self.zone = zone
        self.reason = reason
        super().__init__(f"Failed to list instances in {zone}: {reason}")


class ProvisioningError(KitescaleError):
    """Raised when a worker cannot be created."""

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Failed to provision {name}: {reason}")


class TransientProvisioningError(ProvisioningError):
    """Provisioning failed for a reason that may clear up (quota, capacity, timeouts)."""


class PermanentProvisioningError(ProvisioningError):
    """Provisioning failed for a reason retrying cannot fix (bad image, bad config)."""
