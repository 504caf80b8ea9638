from __future__ import annotations

from collections.abc import Sequence

import pytest
import requests
from tenacity import wait_none

from kitescale.api.model import InstanceRecord, Metrics
from kitescale.core.exceptions import (
    DemandSamplingError,
    InventoryError,
    PermanentProvisioningError,
    TransientProvisioningError,
)
from kitescale.gcp.inventory import InstanceInventory
from kitescale.gcp.provisioner import WORKER_TAG, InstanceProvisioner, NameCounter
from kitescale.loop import ControlLoop, LoopTiming, backoff_delay
from tests.conftest import FakeInstancesClient, gce_instance, make_metrics

pytestmark = [pytest.mark.unit]

ZONES = ("us-west1-a", "us-west1-b", "us-west1-c")


class ScriptedSampler:
    """Returns queued metrics or raises queued errors, one per sample."""

    def __init__(self, *results: Metrics | BaseException) -> None:
        self._results = list(results)
        self.calls = 0

    async def sample(self) -> Metrics:
        self.calls += 1
        result = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(result, BaseException):
            raise result
        return result


class StubInventory:
    def __init__(self, *counts: int | BaseException) -> None:
        self._counts = list(counts)
        self.calls: list[tuple[tuple[str, ...], str]] = []

    async def count_tagged(self, zones: Sequence[str], tag: str) -> int:
        self.calls.append((tuple(zones), tag))
        result = self._counts.pop(0) if len(self._counts) > 1 else self._counts[0]
        if isinstance(result, BaseException):
            raise result
        return result


class StubProvisioner:
    def __init__(self, *errors: BaseException | None) -> None:
        self._errors = list(errors)
        self.started: list[InstanceRecord] = []

    async def provision(self) -> InstanceRecord:
        error = self._errors.pop(0) if self._errors else None
        if error is not None:
            raise error
        record = InstanceRecord(
            name=f"worker-{len(self.started) + 1}",
            tags=frozenset({WORKER_TAG}),
            status="PROVISIONING",
            zone="us-west1-b",
        )
        self.started.append(record)
        return record


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _loop(sampler, inventory, provisioner, *, ceiling: int = 4, sleep=None) -> ControlLoop:
    return ControlLoop(
        sampler,
        inventory,
        provisioner,
        zones=ZONES,
        ceiling=ceiling,
        timing=LoopTiming(fallback_interval=100.0, backoff_max=80.0),
        sleep=sleep or SleepRecorder(),
    )


class TestBackoffDelay:
    @pytest.mark.parametrize(
        ("failures", "expected"),
        [(0, 10.0), (1, 10.0), (2, 20.0), (3, 40.0), (4, 80.0), (5, 80.0), (12, 80.0)],
    )
    def test_doubles_up_to_cap(self, failures: int, expected: float) -> None:
        assert backoff_delay(10.0, failures, 80.0) == expected


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_provisions_one_worker_when_short(self) -> None:
        sampler = ScriptedSampler(make_metrics(running=3, total_agents=2, poll_interval=15.0))
        inventory = StubInventory(2)
        provisioner = StubProvisioner()
        loop = _loop(sampler, inventory, provisioner)

        delay = await loop.run_once()

        assert delay == 15.0
        assert len(provisioner.started) == 1
        assert inventory.calls == [(ZONES, WORKER_TAG)]
        assert loop.last_decision is not None and loop.last_decision.provision

    @pytest.mark.asyncio
    async def test_large_deficit_still_starts_one(self) -> None:
        provisioner = StubProvisioner()
        loop = _loop(
            ScriptedSampler(make_metrics(scheduled=20, total_agents=0)),
            StubInventory(0),
            provisioner,
            ceiling=50,
        )

        await loop.run_once()

        assert len(provisioner.started) == 1

    @pytest.mark.asyncio
    async def test_skip_does_not_count_or_provision(self) -> None:
        inventory = StubInventory(0)
        provisioner = StubProvisioner()
        loop = _loop(ScriptedSampler(make_metrics(running=2, total_agents=2)), inventory, provisioner)

        delay = await loop.run_once()

        assert delay == 10.0
        assert inventory.calls == []
        assert provisioner.started == []

    @pytest.mark.asyncio
    async def test_ceiling_blocks_provisioning(self) -> None:
        provisioner = StubProvisioner()
        loop = _loop(
            ScriptedSampler(make_metrics(running=6, total_agents=4)),
            StubInventory(4),
            provisioner,
        )

        await loop.run_once()

        assert provisioner.started == []
        assert loop.last_decision is not None
        assert loop.last_decision.reason == "ceiling reached"

    @pytest.mark.asyncio
    async def test_sampling_failure_uses_fallback_interval(self) -> None:
        inventory = StubInventory(0)
        loop = _loop(
            ScriptedSampler(DemandSamplingError("default", "HTTP 503: unavailable")),
            inventory,
            StubProvisioner(),
        )

        delay = await loop.run_once()

        assert delay == 100.0
        assert inventory.calls == []
        assert loop.cloud_failures == 0

    @pytest.mark.asyncio
    async def test_inventory_failure_backs_off(self) -> None:
        provisioner = StubProvisioner()
        loop = _loop(
            ScriptedSampler(make_metrics(running=3, total_agents=1)),
            StubInventory(InventoryError("us-west1-a", "denied")),
            provisioner,
        )

        delays = [await loop.run_once() for _ in range(5)]

        assert delays == [10.0, 20.0, 40.0, 80.0, 80.0]
        assert loop.cloud_failures == 5
        assert provisioner.started == []

    @pytest.mark.asyncio
    async def test_backoff_resets_after_success(self) -> None:
        loop = _loop(
            ScriptedSampler(make_metrics(running=3, total_agents=1)),
            StubInventory(
                InventoryError("us-west1-a", "denied"),
                InventoryError("us-west1-a", "denied"),
                1,
                InventoryError("us-west1-a", "denied"),
            ),
            StubProvisioner(),
        )

        delays = [await loop.run_once() for _ in range(4)]

        assert delays == [10.0, 20.0, 10.0, 10.0]

    @pytest.mark.asyncio
    async def test_transient_provisioning_failure_backs_off(self) -> None:
        provisioner = StubProvisioner(TransientProvisioningError("worker-1", "QUOTA_EXCEEDED"))
        loop = _loop(
            ScriptedSampler(make_metrics(running=3, total_agents=1)),
            StubInventory(1),
            provisioner,
        )

        first = await loop.run_once()
        assert loop.cloud_failures == 1
        second = await loop.run_once()

        assert first == 10.0
        assert second == 10.0
        assert loop.cloud_failures == 0
        assert len(provisioner.started) == 1

    @pytest.mark.asyncio
    async def test_permanent_provisioning_failure_propagates(self) -> None:
        loop = _loop(
            ScriptedSampler(make_metrics(running=3, total_agents=1)),
            StubInventory(1),
            StubProvisioner(PermanentProvisioningError("worker-1", "image not found")),
        )

        with pytest.raises(PermanentProvisioningError, match="image not found"):
            await loop.run_once()


class TestRun:
    @pytest.mark.asyncio
    async def test_sleeps_between_cycles(self) -> None:
        sleep = SleepRecorder()
        sampler = ScriptedSampler(
            make_metrics(running=1, total_agents=1, poll_interval=15.0),
            DemandSamplingError("default", "timeout"),
            make_metrics(running=1, total_agents=1, poll_interval=30.0),
        )
        loop = _loop(sampler, StubInventory(0), StubProvisioner(), sleep=sleep)

        await loop.run(max_cycles=3)

        assert sampler.calls == 3
        assert sleep.delays == [15.0, 100.0, 30.0]

    @pytest.mark.asyncio
    async def test_stops_on_permanent_failure(self) -> None:
        sleep = SleepRecorder()
        loop = _loop(
            ScriptedSampler(make_metrics(running=3, total_agents=1)),
            StubInventory(1),
            StubProvisioner(None, PermanentProvisioningError("worker-2", "bad machine type")),
            sleep=sleep,
        )

        with pytest.raises(PermanentProvisioningError):
            await loop.run(max_cycles=5)

        assert sleep.delays == [10.0]


class TestEndToEnd:
    """The real inventory and provisioner over a fake Compute Engine."""

    @pytest.mark.asyncio
    async def test_scales_up_by_one(self, settings, make_clients) -> None:
        fake = FakeInstancesClient(zones={
            "us-west1-a": [gce_instance("worker-1", "us-west1-a", WORKER_TAG)],
            "us-west1-b": [gce_instance("worker-2", "us-west1-b", WORKER_TAG)],
            "us-west1-c": [gce_instance("db", "us-west1-c", "ssh")],
        })
        clients = make_clients(fake)
        loop = ControlLoop(
            ScriptedSampler(make_metrics(scheduled=1, running=2, total_agents=2)),
            InstanceInventory(clients, retry_wait=wait_none()),
            InstanceProvisioner(settings, clients, NameCounter(clock=lambda: 1_700_000_000)),
            zones=ZONES,
            ceiling=settings.max_instances,
            sleep=SleepRecorder(),
        )

        await loop.run_once()

        assert fake.list_calls == list(ZONES)
        (request,) = fake.insert_requests
        instance = request.instance_resource
        assert request.zone == "us-west1-b"
        assert instance.name == "worker-1700000000"
        assert WORKER_TAG in instance.tags.items
        assert instance.disks[0].initialize_params.disk_size_gb == 300
        assert instance.scheduling.provisioning_model == "SPOT"

    @pytest.mark.asyncio
    async def test_enough_agents_makes_no_cloud_calls(self, settings, make_clients) -> None:
        fake = FakeInstancesClient()
        clients = make_clients(fake)
        loop = ControlLoop(
            ScriptedSampler(make_metrics(running=2, total_agents=3)),
            InstanceInventory(clients, retry_wait=wait_none()),
            InstanceProvisioner(settings, clients),
            zones=ZONES,
            ceiling=settings.max_instances,
            sleep=SleepRecorder(),
        )

        await loop.run_once()

        assert fake.list_calls == []
        assert fake.insert_requests == []

    @pytest.mark.asyncio
    async def test_at_ceiling_lists_but_never_inserts(self, settings, make_clients) -> None:
        fake = FakeInstancesClient(zones={
            "us-west1-a": [gce_instance(f"worker-{i}", "us-west1-a", WORKER_TAG) for i in range(3)],
            "us-west1-c": [gce_instance("worker-9", "us-west1-c", WORKER_TAG)],
        })
        clients = make_clients(fake)
        loop = ControlLoop(
            ScriptedSampler(make_metrics(scheduled=5, running=4, total_agents=4)),
            InstanceInventory(clients, retry_wait=wait_none()),
            InstanceProvisioner(settings, clients),
            zones=ZONES,
            ceiling=settings.max_instances,
            sleep=SleepRecorder(),
        )

        await loop.run(max_cycles=3)

        assert fake.insert_requests == []
        assert fake.list_calls == list(ZONES) * 3

    @pytest.mark.asyncio
    async def test_unreachable_compute_api_backs_off(self, settings, make_clients) -> None:
        fake = FakeInstancesClient(
            zones={"us-west1-a": [gce_instance("worker-1", "us-west1-a", WORKER_TAG)]},
            list_errors={
                "us-west1-a": [requests.exceptions.ConnectionError("Connection refused")] * 3,
            },
        )
        clients = make_clients(fake)
        loop = ControlLoop(
            ScriptedSampler(make_metrics(scheduled=1, running=2, total_agents=1)),
            InstanceInventory(clients, retry_wait=wait_none()),
            InstanceProvisioner(settings, clients, NameCounter(clock=lambda: 1_700_000_000)),
            zones=ZONES,
            ceiling=settings.max_instances,
            sleep=SleepRecorder(),
        )

        delay = await loop.run_once()

        assert delay == 10.0
        assert loop.cloud_failures == 1
        assert fake.insert_requests == []

        await loop.run_once()

        assert loop.cloud_failures == 0
        assert len(fake.insert_requests) == 1

    @pytest.mark.asyncio
    async def test_dropped_insert_connection_backs_off(self, settings, make_clients) -> None:
        fake = FakeInstancesClient(
            insert_error=requests.exceptions.ConnectionError("Connection aborted"),
        )
        clients = make_clients(fake)
        loop = ControlLoop(
            ScriptedSampler(make_metrics(scheduled=1, running=2, total_agents=1)),
            InstanceInventory(clients, retry_wait=wait_none()),
            InstanceProvisioner(settings, clients),
            zones=ZONES,
            ceiling=settings.max_instances,
            sleep=SleepRecorder(),
        )

        delays = [await loop.run_once() for _ in range(2)]

        assert delays == [10.0, 20.0]
        assert loop.cloud_failures == 2
