from __future__ import annotations

from collections.abc import Iterator
from types import SimpleNamespace
from typing import Any

import pytest

from kitescale.api.model import Metrics
from kitescale.config import Settings
from kitescale.gcp.clients import ComputeClients

ZONE_URL = "https://www.googleapis.com/compute/v1/projects/proj/zones/{zone}"


def make_metrics(
    scheduled: int = 0,
    running: int = 0,
    waiting: int = 0,
    total_agents: int = 0,
    poll_interval: float = 10.0,
) -> Metrics:
    return Metrics(
        org_slug="acme",
        queue="default",
        scheduled_jobs=scheduled,
        running_jobs=running,
        waiting_jobs=waiting,
        idle_agents=0,
        busy_agents=total_agents,
        total_agents=total_agents,
        poll_interval=poll_interval,
    )


def gce_instance(name: str, zone: str, *tags: str, status: str = "RUNNING") -> Any:
    return SimpleNamespace(
        name=name,
        tags=SimpleNamespace(items=list(tags)),
        status=status,
        zone=ZONE_URL.format(zone=zone),
    )


class FakeOperation:
    def __init__(
        self,
        error: BaseException | None = None,
        error_code: int = 0,
        error_message: str = "",
        warnings: tuple[Any, ...] = (),
    ) -> None:
        self._error = error
        self.error_code = error_code
        self.error_message = error_message
        self.warnings = list(warnings)
        self.result_timeouts: list[float | None] = []

    def result(self, timeout: float | None = None) -> None:
        self.result_timeouts.append(timeout)
        if self._error is not None:
            raise self._error


class FakePager:
    """Yields instances page by page, recording each page fetch like a GCE pager."""

    def __init__(
        self,
        zone: str,
        items: list[Any],
        page_size: int,
        fetches: list[tuple[str, int]],
        page_error: BaseException | None = None,
    ) -> None:
        self._zone = zone
        self._pages = [items[i:i + page_size] for i in range(0, len(items), page_size)] or [[]]
        self._fetches = fetches
        self._page_error = page_error

    def __iter__(self) -> Iterator[Any]:
        for index, page in enumerate(self._pages):
            if index > 0 and self._page_error is not None:
                raise self._page_error
            self._fetches.append((self._zone, index))
            yield from page


class FakeInstancesClient:
    """Stands in for compute_v1.InstancesClient."""

    def __init__(
        self,
        zones: dict[str, list[Any]] | None = None,
        list_errors: dict[str, list[BaseException]] | None = None,
        operation: FakeOperation | None = None,
        insert_error: BaseException | None = None,
        page_size: int = 500,
        page_errors: dict[str, BaseException] | None = None,
    ) -> None:
        self.zones = zones or {}
        self.list_errors = {k: list(v) for k, v in (list_errors or {}).items()}
        self.operation = operation or FakeOperation()
        self.insert_error = insert_error
        self.page_size = page_size
        self.page_errors = page_errors or {}
        self.list_calls: list[str] = []
        self.page_fetches: list[tuple[str, int]] = []
        self.insert_requests: list[Any] = []

    def list(self, request: Any, timeout: float | None = None) -> FakePager:
        self.list_calls.append(request.zone)
        errors = self.list_errors.get(request.zone)
        if errors:
            raise errors.pop(0)
        return FakePager(
            request.zone,
            self.zones.get(request.zone, []),
            self.page_size,
            self.page_fetches,
            self.page_errors.get(request.zone),
        )

    def insert(self, request: Any, timeout: float | None = None) -> FakeOperation:
        self.insert_requests.append(request)
        if self.insert_error is not None:
            raise self.insert_error
        return self.operation


class FakeRegionsClient:
    def __init__(self, zones: dict[str, list[str]]) -> None:
        self.zones = zones
        self.calls: list[str] = []

    def get(self, project: str, region: str, timeout: float | None = None) -> Any:
        self.calls.append(region)
        return SimpleNamespace(
            zones=[ZONE_URL.format(zone=z) for z in self.zones.get(region, [])],
        )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        agent_token="secret",
        queue="default",
        service_account="ci@proj.iam.gserviceaccount.com",
        project_id="proj",
        region="us-west1",
        zone_suffix="b",
        machine_type="c3-standard-4",
        image_name="buildkite-agent",
        max_instances=4,
    )


@pytest.fixture
def make_clients() -> Iterator[Any]:
    created: list[ComputeClients] = []

    def _make(
        instances: FakeInstancesClient | None = None,
        regions: FakeRegionsClient | None = None,
    ) -> ComputeClients:
        clients = ComputeClients(
            project="proj",
            instances_client=instances or FakeInstancesClient(),
            regions_client=regions,
        )
        created.append(clients)
        return clients

    yield _make
    for clients in created:
        clients.close()
