"""Spot worker provisioning on Compute Engine.

Every worker is created from the same fixed policy: a spot VM with a
300 GB SSD boot disk, no automatic restart, deleted when preempted or
after at most 8 hours, and an idle-shutdown timeout in its metadata so an
unattended worker removes itself.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, Final

from google.api_core import exceptions as gexc  # type: ignore[reportMissingImports]
from loguru import logger

from kitescale.api.model import InstanceRecord, ProvisioningRequest
from kitescale.config import Settings
from kitescale.core.exceptions import (
    PermanentProvisioningError,
    ProvisioningError,
    TransientProvisioningError,
)
from kitescale.gcp.clients import ComputeClients
from kitescale.gcp.errors import CLOUD_CALL_ERRORS, classify_cloud_error

log = logger.bind(component="provisioner")

WORKER_TAG: Final = "buildkite-agent"
FIREWALL_TAGS: Final = ("ssh", "icmp")

BOOT_DISK_SIZE_GB: Final = 300
BOOT_DISK_TYPE: Final = "pd-ssd"
MAX_RUN_DURATION: Final = 8 * 3600
IDLE_SHUTDOWN_KEY: Final = "buildkite-idle-shutdown-time"
IDLE_SHUTDOWN_SECONDS: Final = 300
NETWORK_TIER: Final = "STANDARD"

WORKER_SCOPES: Final = (
    "https://www.googleapis.com/auth/logging.write",
    "https://www.googleapis.com/auth/monitoring.write",
    "https://www.googleapis.com/auth/compute",
    "https://www.googleapis.com/auth/devstorage.read_write",
)


class NameCounter:
    """Strictly increasing worker numbers seeded from wall-clock seconds.

    ``next()`` returns ``max(last + 1, now)``, so numbers keep growing even
    when the clock steps backwards.
    """

    __slots__ = ("_clock", "_last")

    def __init__(self, clock: Callable[[], float] = time.time, last: int = 0) -> None:
        self._clock = clock
        self._last = last

    @property
    def last(self) -> int:
        return self._last

    def next(self) -> int:
        self._last = max(self._last + 1, int(self._clock()))
        return self._last


def build_request(settings: Settings, name: str) -> ProvisioningRequest:
    zone = settings.zone
    return ProvisioningRequest(
        name=name,
        project=settings.project_id,
        zone=zone,
        region=settings.region,
        machine_type=settings.machine_type,
        source_image=f"projects/{settings.project_id}/global/images/{settings.image_name}",
        disk_size_gb=BOOT_DISK_SIZE_GB,
        disk_type=BOOT_DISK_TYPE,
        network=settings.network,
        subnetwork=settings.subnetwork,
        network_tier=NETWORK_TIER,
        service_account=settings.service_account,
        scopes=WORKER_SCOPES,
        max_run_duration=MAX_RUN_DURATION,
        metadata=((IDLE_SHUTDOWN_KEY, str(IDLE_SHUTDOWN_SECONDS)),),
        tags=(*FIREWALL_TAGS, WORKER_TAG),
    )


def _wrap(name: str, exc: BaseException) -> ProvisioningError:
    reason = str(exc) or type(exc).__name__
    match classify_cloud_error(exc):
        case "transient":
            return TransientProvisioningError(name, reason)
        case _:
            return PermanentProvisioningError(name, reason)


class InstanceProvisioner:
    """Creates one spot worker per call and waits until GCE reports it done."""

    def __init__(
        self,
        settings: Settings,
        clients: ComputeClients,
        counter: NameCounter | None = None,
    ) -> None:
        self._settings = settings
        self._clients = clients
        self._counter = counter or NameCounter()

    def next_name(self) -> str:
        return f"{self._settings.name_prefix}-{self._counter.next()}"

    async def provision(self) -> InstanceRecord:
        request = build_request(self._settings, self.next_name())
        bound = log.bind(instance=request.name, zone=request.zone)
        bound.info(
            "Starting {machine} from image {image}",
            machine=request.machine_type, image=request.source_image,
        )

        try:
            operation = await self._clients.run(
                self._clients.instances.insert,  # type: ignore[union-attr]
                request=request.to_insert_request(),
                timeout=self._settings.call_timeout,
                deadline=self._settings.call_timeout,
            )
        except CLOUD_CALL_ERRORS as e:
            raise _wrap(request.name, e) from e

        await self._wait(request, operation)
        bound.info("Worker is up")
        return InstanceRecord(
            name=request.name,
            tags=frozenset(request.tags),
            status="PROVISIONING",
            zone=request.zone,
        )

    async def _wait(self, request: ProvisioningRequest, operation: Any) -> None:
        """Block until the insert operation is terminal, raising on failure."""
        timeout = self._settings.operation_timeout
        try:
            await self._clients.run(operation.result, timeout=timeout, deadline=timeout + 5)
        except CLOUD_CALL_ERRORS as e:
            raise _wrap(request.name, e) from e

        error_code = getattr(operation, "error_code", None)
        if error_code:
            message = getattr(operation, "error_message", "") or "operation failed"
            raise _wrap(request.name, gexc.from_http_status(int(error_code), message))

        for warning in getattr(operation, "warnings", None) or ():
            log.bind(instance=request.name).warning(
                "Insert warning: {warning}",
                warning=getattr(warning, "message", warning),
            )
