from __future__ import annotations

from collections.abc import Awaitable, Callable

from loguru import logger

from kitescale.api.model import Decision, Metrics

log = logger.bind(component="reconciler")

type SupplyFn = Callable[[], Awaitable[int]]


def should_provision(desired: int, supply: int, ceiling: int) -> bool:
    """Start a worker only when short of demand and below the ceiling."""
    return desired > supply and supply < ceiling


async def decide(metrics: Metrics, ceiling: int, current_supply: SupplyFn) -> Decision:
    """Choose between starting one worker and doing nothing this cycle.

    When Buildkite already reports at least as many agents as there are
    jobs, the cloud inventory is not consulted at all. Otherwise the live
    count of tagged workers decides, capped by ``ceiling``. Errors from
    ``current_supply`` propagate.
    """
    desired = metrics.desired_workers

    if desired <= metrics.total_agents:
        return Decision(
            action="skip",
            desired=desired,
            supply=None,
            reason=f"queue reports {metrics.total_agents} agents for {desired} jobs",
        )

    supply = await current_supply()

    if should_provision(desired, supply, ceiling):
        return Decision(
            action="provision",
            desired=desired,
            supply=supply,
            reason=f"need {desired}, have {supply}",
        )

    reason = "ceiling reached" if supply >= ceiling else "no deficit"
    log.debug(
        "Skipping: {reason} (desired={desired} supply={supply} ceiling={ceiling})",
        reason=reason, desired=desired, supply=supply, ceiling=ceiling,
    )
    return Decision(action="skip", desired=desired, supply=supply, reason=reason)
