from kitescale.api.model import Decision, InstanceRecord, Metrics, ProvisioningRequest

__all__ = [
    "Decision",
    "InstanceRecord",
    "Metrics",
    "ProvisioningRequest",
]
