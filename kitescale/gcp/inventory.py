"""Tag-based worker accounting across the zones of a region."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from typing import Any

from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from kitescale.api.model import InstanceRecord
from kitescale.core.exceptions import InventoryError
from kitescale.gcp.clients import ComputeClients
from kitescale.gcp.errors import CLOUD_CALL_ERRORS, classify_cloud_error

log = logger.bind(component="inventory")


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, CLOUD_CALL_ERRORS) and classify_cloud_error(exc) == "transient"


def _short_name(url: str) -> str:
    """Last path segment of a GCE resource URL."""
    return url.rstrip("/").rsplit("/", 1)[-1]


def to_record(instance: Any, zone: str) -> InstanceRecord:
    tags = getattr(instance, "tags", None)
    items = getattr(tags, "items", None) or ()
    reported_zone = getattr(instance, "zone", "") or zone
    return InstanceRecord(
        name=instance.name,
        tags=frozenset(items),
        status=getattr(instance, "status", ""),
        zone=_short_name(reported_zone),
    )


class InstanceInventory:
    """Counts live workers by tag, one zone at a time.

    Holds no state between calls: every count lists the zones afresh.
    """

    def __init__(
        self,
        clients: ComputeClients,
        *,
        call_timeout: float = 60.0,
        retry_attempts: int = 3,
        retry_wait: wait_base | None = None,
    ) -> None:
        self._clients = clients
        self._call_timeout = call_timeout
        self._retry_attempts = retry_attempts
        self._retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    def list_instances(self, zone: str) -> Iterator[InstanceRecord]:
        """Lazily iterate the instances in ``zone``; pages load as iteration proceeds."""
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        pager = self._clients.instances.list(  # type: ignore[union-attr]
            request=compute_v1.ListInstancesRequest(
                project=self._clients.project,
                zone=zone,
            ),
            timeout=self._call_timeout,
        )
        for instance in pager:
            yield to_record(instance, zone)

    def _count_zone_sync(self, zone: str, tag: str) -> int:
        count = 0
        for record in self.list_instances(zone):
            log.debug(
                "Instance {name} tags={tags} status={status}",
                name=record.name, tags=sorted(record.tags), status=record.status,
            )
            if tag in record.tags:
                count += 1
        return count

    async def _with_retry[T](self, zone: str, fn: Any, *args: object) -> T:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._retry_attempts),
                wait=self._retry_wait,
                retry=retry_if_exception(_is_transient),
                reraise=True,
            ):
                with attempt:
                    return await self._clients.run(fn, *args, deadline=self._call_timeout)
        except CLOUD_CALL_ERRORS as e:
            raise InventoryError(zone, str(e) or type(e).__name__) from e
        raise AssertionError("unreachable")

    async def count_zone(self, zone: str, tag: str) -> int:
        count: int = await self._with_retry(zone, self._count_zone_sync, zone, tag)
        log.debug("{zone}: {n} instances tagged {tag}", zone=zone, n=count, tag=tag)
        return count

    async def count_tagged(self, zones: Sequence[str], tag: str) -> int:
        """Sum the instances carrying ``tag`` over ``zones``, in order.

        Any zone that cannot be listed fails the whole count with
        InventoryError; counts from the other zones are discarded.
        """
        total = 0
        for zone in zones:
            total += await self.count_zone(zone, tag)
        return total

    async def snapshot(self, zones: Sequence[str]) -> list[InstanceRecord]:
        """Every instance in ``zones``, for diagnostics."""
        records: list[InstanceRecord] = []
        for zone in zones:
            found: list[InstanceRecord] = await self._with_retry(
                zone, lambda z: list(self.list_instances(z)), zone,
            )
            records.extend(found)
        return records

    async def zones_for_region(self, region: str) -> tuple[str, ...]:
        """Zone names of ``region`` as reported by the Regions API."""
        if self._clients.regions is None:
            raise InventoryError(region, "no regions client configured")

        def _get() -> Any:
            return self._clients.regions.get(  # type: ignore[union-attr]
                project=self._clients.project,
                region=region,
                timeout=self._call_timeout,
            )

        found = await self._with_retry(region, _get)
        zones = tuple(sorted(_short_name(z) for z in getattr(found, "zones", ())))
        if not zones:
            raise InventoryError(region, "region reports no zones")
        log.info("Region {region} has zones {zones}", region=region, zones=", ".join(zones))
        return zones


async def resolve_zones(
    inventory: InstanceInventory,
    region: str,
    provisioning_zone: str,
    configured: Sequence[str] = (),
) -> tuple[str, ...]:
    """Zones to count workers in: configured ones, or the region's.

    The zone new workers are created in is always part of the result.
    """
    zones = tuple(configured) or await inventory.zones_for_region(region)
    if provisioning_zone not in zones:
        log.warning(
            "Provisioning zone {zone} is not in the counted zones; adding it",
            zone=provisioning_zone,
        )
        zones = (*zones, provisioning_zone)
    return zones
