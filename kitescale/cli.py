"""Command-line entry point.

    kitescale run --queue ci --project-id my-proj --service-account sa@... \\
        --agent-token $BUILDKITE_AGENT_TOKEN
    kitescale instances --project-id my-proj
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any

from loguru import logger

from kitescale.buildkite.client import BuildkiteMetricsClient
from kitescale.config import REQUIRED_FOR_RUN, Settings, load_settings
from kitescale.core.exceptions import ConfigurationError, KitescaleError
from kitescale.gcp.clients import ComputeClients
from kitescale.gcp.inventory import InstanceInventory, resolve_zones
from kitescale.gcp.provisioner import WORKER_TAG, InstanceProvisioner
from kitescale.loop import ControlLoop, LoopTiming
from kitescale.observability.logging import LogConfig, setup_logging

log = logger.bind(component="cli")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

# CLI flag -> Settings field
_FLAG_FIELDS = {
    "agent_token": "agent_token",
    "queue": "queue",
    "service_account": "service_account",
    "buildkite_project": "buildkite_project",
    "organization": "organization",
    "project_id": "project_id",
    "region": "region",
    "zone": "zone_suffix",
    "machine_type": "machine_type",
    "image_name": "image_name",
    "max_instances": "max_instances",
    "zones": "zones",
    "log_level": "log_level",
    "log_file": "log_file",
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=Path, default=None, help="Path to kitescale.toml")
    common.add_argument("--agent-token", default=None, help="Buildkite agent API token")
    common.add_argument("--queue", default=None, help="Queue to autoscale")
    common.add_argument("--service-account", default=None, help="Service account to run workers as")
    common.add_argument(
        "--buildkite-project", default=None,
        help="Buildkite project name (accepted for compatibility, not used as a filter)",
    )
    common.add_argument("--organization", default=None, help="Organization to filter metrics for")
    common.add_argument("--project-id", default=None, help="GCP project ID")
    common.add_argument("--region", default=None, help="GCP region")
    common.add_argument("--zone", default=None, help="Zone letter new workers start in")
    common.add_argument("--machine-type", default=None, help="GCP machine type")
    common.add_argument("--image-name", default=None, help="GCP boot image name")
    common.add_argument("--max-instances", type=int, default=None, help="Max workers to run")
    common.add_argument(
        "--zones", default=None,
        help="Comma-separated zones to count workers in (default: all zones of the region)",
    )
    common.add_argument(
        "--log-level", default=None,
        help="Console log level (TRACE, DEBUG, INFO, WARNING, ERROR, ...)",
    )
    common.add_argument("--log-file", default=None, help="Also log to this file")

    parser = argparse.ArgumentParser(
        prog="kitescale",
        description="Scale GCE spot workers to match a Buildkite queue",
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", parents=[common], help="Run the autoscaling loop")
    sub.add_parser("instances", parents=[common], help="List instances in the counted zones")
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {
        field: getattr(args, flag) for flag, field in _FLAG_FIELDS.items()
    }
    required = REQUIRED_FOR_RUN if args.command == "run" else ("project_id",)
    return load_settings(config_path=args.config, overrides=overrides, required=required)


async def run_autoscaler(settings: Settings) -> None:
    clients = ComputeClients.create(settings.project_id, settings.thread_pool_size)
    try:
        inventory = InstanceInventory(clients, call_timeout=settings.call_timeout)
        zones = await resolve_zones(inventory, settings.region, settings.zone, settings.zones)
        provisioner = InstanceProvisioner(settings, clients)

        async with BuildkiteMetricsClient(
            settings.agent_token,
            settings.queue,
            endpoint=settings.metrics_endpoint,
            organization=settings.organization,
            default_poll_interval=settings.default_poll_interval,
            max_poll_interval=settings.backoff_max,
            timeout=settings.call_timeout,
        ) as sampler:
            log.info(
                "Autoscaling queue {queue} (project {project}) into {zone} (max {n}), "
                "counting {zones}",
                queue=settings.queue, project=settings.buildkite_project, zone=settings.zone,
                n=settings.max_instances, zones=", ".join(zones),
            )
            loop = ControlLoop(
                sampler,
                inventory,
                provisioner,
                zones=zones,
                ceiling=settings.max_instances,
                timing=LoopTiming(
                    fallback_interval=settings.fallback_interval,
                    backoff_max=settings.backoff_max,
                ),
            )
            await loop.run()
    finally:
        clients.close()


async def print_instances(settings: Settings) -> None:
    clients = ComputeClients.create(settings.project_id, settings.thread_pool_size)
    try:
        inventory = InstanceInventory(clients, call_timeout=settings.call_timeout)
        zones = await resolve_zones(inventory, settings.region, settings.zone, settings.zones)
        records = await inventory.snapshot(zones)
    finally:
        clients.close()

    for record in records:
        marker = "*" if WORKER_TAG in record.tags else " "
        tags = ", ".join(sorted(record.tags))
        print(f"{marker} {record.zone:<16} {record.status:<12} {record.name} [{tags}]")
    workers = sum(1 for r in records if WORKER_TAG in r.tags)
    print(f"{workers} of {len(records)} instances tagged {WORKER_TAG}")


def cli(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = settings_from_args(args)
    except ConfigurationError as e:
        print(f"kitescale: {e}", file=sys.stderr)
        return EXIT_CONFIG

    try:
        setup_logging(LogConfig(level=settings.log_level.upper(), file=settings.log_file))  # type: ignore[arg-type]
    except (ValueError, OSError) as e:
        print(f"kitescale: cannot set up logging: {e}", file=sys.stderr)
        return EXIT_CONFIG

    match args.command:
        case "run":
            entry = run_autoscaler(settings)
        case _:
            entry = print_instances(settings)

    try:
        asyncio.run(entry)
    except KeyboardInterrupt:
        log.info("Interrupted, exiting")
        return EXIT_OK
    except KitescaleError as e:
        log.error("Fatal: {err}", err=e)
        return EXIT_FATAL
    return EXIT_OK


def main() -> None:
    sys.exit(cli())


if __name__ == "__main__":
    main()
