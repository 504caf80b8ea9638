"""kitescale - keep GCE spot workers in step with a Buildkite queue.

Example:

    import asyncio

    from kitescale import load_settings
    from kitescale.cli import run_autoscaler

    settings = load_settings()
    asyncio.run(run_autoscaler(settings))
"""

from kitescale.api.model import Decision, InstanceRecord, Metrics, ProvisioningRequest
from kitescale.config import Settings, load_settings
from kitescale.core.exceptions import (
    ConfigurationError,
    DemandSamplingError,
    InventoryError,
    KitescaleError,
    PermanentProvisioningError,
    ProvisioningError,
    TransientProvisioningError,
)
from kitescale.loop import ControlLoop, LoopTiming
from kitescale.reconciler import decide

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "ControlLoop",
    "Decision",
    "DemandSamplingError",
    "InstanceRecord",
    "InventoryError",
    "KitescaleError",
    "LoopTiming",
    "Metrics",
    "PermanentProvisioningError",
    "ProvisioningError",
    "ProvisioningRequest",
    "Settings",
    "TransientProvisioningError",
    "decide",
    "load_settings",
]
