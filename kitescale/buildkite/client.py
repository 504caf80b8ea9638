"""Buildkite agent metrics client.

Reads the per-queue job and agent counts the Buildkite agent API exposes
to autoscalers, and the poll interval Buildkite asks scalers to honour.
"""

from __future__ import annotations

from typing import Any, TypedDict

from loguru import logger

from kitescale.api.model import Metrics
from kitescale.core.exceptions import DemandSamplingError
from kitescale.infra.http import HttpClient, HttpError, TokenAuth

POLL_DURATION_HEADER = "Buildkite-Agent-Metrics-Poll-Duration"
MAX_POLL_INTERVAL = 600.0


class _JobCounts(TypedDict, total=False):
    scheduled: int
    running: int
    waiting: int


class _AgentCounts(TypedDict, total=False):
    idle: int
    busy: int
    total: int


class QueueMetricsResponse(TypedDict, total=False):
    organization: dict[str, Any]
    jobs: _JobCounts
    agents: _AgentCounts


def parse_poll_interval(
    headers: dict[str, str], default: float, maximum: float = MAX_POLL_INTERVAL,
) -> float:
    """Seconds Buildkite asks scalers to wait, within ``(0, maximum]``."""
    raw = next((v for k, v in headers.items() if k.lower() == POLL_DURATION_HEADER.lower()), None)
    if raw is None:
        return default
    try:
        seconds = float(raw.strip().removesuffix("s"))
    except ValueError:
        return default
    if not seconds > 0:
        return default
    return min(seconds, maximum)


def parse_metrics(
    queue: str, data: QueueMetricsResponse, poll_interval: float,
) -> Metrics:
    if not isinstance(data, dict):
        raise TypeError(f"expected a JSON object, got {type(data).__name__}")
    jobs = data.get("jobs") or {}
    agents = data.get("agents") or {}
    return Metrics(
        org_slug=str((data.get("organization") or {}).get("slug", "")),
        queue=queue,
        scheduled_jobs=int(jobs.get("scheduled", 0)),
        running_jobs=int(jobs.get("running", 0)),
        waiting_jobs=int(jobs.get("waiting", 0)),
        idle_agents=int(agents.get("idle", 0)),
        busy_agents=int(agents.get("busy", 0)),
        total_agents=int(agents.get("total", 0)),
        poll_interval=poll_interval,
    )


class BuildkiteMetricsClient:
    """Samples queue demand from the Buildkite agent API."""

    def __init__(
        self,
        agent_token: str,
        queue: str,
        *,
        endpoint: str = "https://agent.buildkite.com/v3",
        organization: str | None = None,
        default_poll_interval: float = 10.0,
        max_poll_interval: float = MAX_POLL_INTERVAL,
        timeout: float = 60.0,
    ) -> None:
        self._queue = queue
        self._organization = organization
        self._default_poll_interval = default_poll_interval
        self._max_poll_interval = max_poll_interval
        self._http = HttpClient(
            endpoint,
            TokenAuth(agent_token),
            timeout=timeout,
            default_headers={"User-Agent": "kitescale"},
        )
        self._log = logger.bind(component="buildkite", queue=queue)

    @property
    def queue(self) -> str:
        return self._queue

    async def sample(self) -> Metrics:
        try:
            resp = await self._http.get(
                "/metrics/queue",
                params={"name": self._queue},
                response_type=QueueMetricsResponse,
            )
            poll = parse_poll_interval(
                resp.headers, self._default_poll_interval, self._max_poll_interval,
            )
            metrics = parse_metrics(self._queue, resp.data, poll)
        except HttpError as e:
            raise DemandSamplingError(self._queue, str(e)) from e
        except (TypeError, ValueError, AttributeError) as e:
            raise DemandSamplingError(self._queue, f"malformed metrics response: {e}") from e

        if self._organization and metrics.org_slug and metrics.org_slug != self._organization:
            self._log.warning(
                "Metrics came from organization {got}, expected {want}",
                got=metrics.org_slug, want=self._organization,
            )
        return metrics

    async def close(self) -> None:
        await self._http.close()

    async def __aenter__(self) -> BuildkiteMetricsClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
