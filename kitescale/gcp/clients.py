"""Compute Engine client bundle.

The google-cloud-compute clients are synchronous; calls are dispatched to
a small dedicated thread pool and awaited in-line, so the control loop
stays a single sequential flow while every call can be abandoned at its
deadline.

An abandoned call keeps its thread until the client's own ``timeout=``
fires, so the pool is sized with headroom and warns once every thread is
taken.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

from loguru import logger

log = logger.bind(component="gcp")

DEFAULT_THREAD_POOL_SIZE = 8


class ComputeClients:
    """Instances and regions clients plus the thread pool that drives them."""

    def __init__(
        self,
        project: str,
        instances_client: object,
        regions_client: object | None = None,
        *,
        thread_pool_size: int = DEFAULT_THREAD_POOL_SIZE,
    ) -> None:
        self.project = project
        self.instances = instances_client
        self.regions = regions_client
        self._pool_size = thread_pool_size
        self._pool = ThreadPoolExecutor(
            max_workers=thread_pool_size, thread_name_prefix="gce-io",
        )
        self._busy = 0
        self._lock = threading.Lock()

    @classmethod
    def create(
        cls, project: str, thread_pool_size: int = DEFAULT_THREAD_POOL_SIZE,
    ) -> ComputeClients:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        log.info("Opening Compute Engine clients for project {project}", project=project)
        return cls(
            project=project,
            instances_client=compute_v1.InstancesClient(),
            regions_client=compute_v1.RegionsClient(),
            thread_pool_size=thread_pool_size,
        )

    @property
    def busy(self) -> int:
        """Submitted calls that have neither finished nor been cancelled."""
        with self._lock:
            return self._busy

    def _release(self, _: Future[object]) -> None:
        with self._lock:
            self._busy -= 1

    async def run[T](
        self, fn: Callable[..., T], *args: object, deadline: float, **kwargs: object,
    ) -> T:
        """Run a blocking client call off the loop, abandoning it after ``deadline`` seconds."""
        future = self._pool.submit(lambda: fn(*args, **kwargs))
        with self._lock:
            self._busy += 1
            busy = self._busy
        future.add_done_callback(self._release)

        if busy > self._pool_size:
            log.warning(
                "All {size} GCE I/O threads are busy ({busy} calls in flight); "
                "calls are queueing behind abandoned ones",
                size=self._pool_size, busy=busy,
            )

        async with asyncio.timeout(deadline):
            return await asyncio.wrap_future(future)

    def close(self) -> None:
        self._pool.shutdown(wait=False, cancel_futures=True)
        for client in (self.instances, self.regions):
            transport = getattr(client, "transport", None)
            if transport is not None and callable(getattr(transport, "close", None)):
                transport.close()
