"""The reconciliation control loop.

One cycle samples the queue, decides, optionally starts a single worker,
then sleeps for as long as Buildkite asked. Cycles never overlap.

    SAMPLE -> (skip check) -> [COUNT] -> [PROVISION -> WAIT] -> SLEEP
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from loguru import logger

from kitescale.api.model import Decision, InstanceRecord, Metrics
from kitescale.core.exceptions import (
    DemandSamplingError,
    InventoryError,
    PermanentProvisioningError,
    TransientProvisioningError,
)
from kitescale.gcp.provisioner import WORKER_TAG
from kitescale.reconciler import decide

log = logger.bind(component="loop")


class DemandSampler(Protocol):
    async def sample(self) -> Metrics: ...


class SupplyCounter(Protocol):
    async def count_tagged(self, zones: Sequence[str], tag: str) -> int: ...


class Provisioner(Protocol):
    async def provision(self) -> InstanceRecord: ...


@dataclass(frozen=True, slots=True)
class LoopTiming:
    fallback_interval: float = 100.0
    backoff_max: float = 600.0


def backoff_delay(base: float, failures: int, cap: float) -> float:
    """Exponential delay after ``failures`` consecutive cloud failures."""
    if failures <= 0:
        return base
    return min(base * (2 ** (failures - 1)), cap)


def _describe(metrics: Metrics) -> str:
    return (
        f"scheduled={metrics.scheduled_jobs} running={metrics.running_jobs} "
        f"waiting={metrics.waiting_jobs} idle={metrics.idle_agents} "
        f"busy={metrics.busy_agents} total={metrics.total_agents} "
        f"poll={metrics.poll_interval:g}s"
    )


class ControlLoop:
    """Keeps the tagged worker count in step with queue demand.

    Demand sampling failures sleep ``fallback_interval`` and retry forever.
    Inventory failures and transient provisioning failures back off
    exponentially from the reported poll interval. Anything else (notably
    PermanentProvisioningError) propagates out of ``run``.
    """

    def __init__(
        self,
        sampler: DemandSampler,
        inventory: SupplyCounter,
        provisioner: Provisioner,
        *,
        zones: Sequence[str],
        ceiling: int,
        tag: str = WORKER_TAG,
        timing: LoopTiming | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._sampler = sampler
        self._inventory = inventory
        self._provisioner = provisioner
        self._zones = tuple(zones)
        self._ceiling = ceiling
        self._tag = tag
        self._timing = timing or LoopTiming()
        self._sleep = sleep
        self._cloud_failures = 0
        self.last_decision: Decision | None = None

    @property
    def cloud_failures(self) -> int:
        return self._cloud_failures

    async def _current_supply(self) -> int:
        return await self._inventory.count_tagged(self._zones, self._tag)

    async def run_once(self) -> float:
        """Run one cycle and return how long to sleep before the next."""
        try:
            metrics = await self._sampler.sample()
        except DemandSamplingError as e:
            log.warning(
                "Failed to get agent metrics: {err}; retrying in {delay:g}s",
                err=e, delay=self._timing.fallback_interval,
            )
            return self._timing.fallback_interval

        log.info("Metrics: {metrics}", metrics=_describe(metrics))

        try:
            decision = await decide(metrics, self._ceiling, self._current_supply)
            self.last_decision = decision
            if decision.provision:
                log.info(
                    "Not enough workers, need {desired}, have {supply}, starting one",
                    desired=decision.desired, supply=decision.supply,
                )
                worker = await self._provisioner.provision()
                log.info("Started {name} in {zone}", name=worker.name, zone=worker.zone)
        except (InventoryError, TransientProvisioningError) as e:
            self._cloud_failures += 1
            delay = backoff_delay(
                metrics.poll_interval, self._cloud_failures, self._timing.backoff_max,
            )
            log.warning(
                "Cloud call failed ({n} in a row): {err} [{metrics}]; retrying in {delay:g}s",
                n=self._cloud_failures, err=e, metrics=_describe(metrics), delay=delay,
            )
            return delay
        except PermanentProvisioningError as e:
            log.error(
                "Giving up, retrying cannot fix this: {err} [{metrics}]",
                err=e, metrics=_describe(metrics),
            )
            raise

        self._cloud_failures = 0
        return metrics.poll_interval

    async def run(self, max_cycles: int | None = None) -> None:
        """Cycle until cancelled, or for ``max_cycles`` cycles."""
        cycles = 0
        while max_cycles is None or cycles < max_cycles:
            delay = await self.run_once()
            cycles += 1
            await self._sleep(delay)
