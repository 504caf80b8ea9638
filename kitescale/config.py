"""TOML-, environment- and flag-based settings.

Loads ``kitescale.toml`` (or an explicit path), fills gaps from the
environment, applies command-line overrides on top, and validates the
result into an immutable Settings instance. Settings are read once at
startup.
"""

from __future__ import annotations

import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from kitescale.core.exceptions import ConfigurationError
from kitescale.observability.logging import LOG_LEVELS

type RawConfig = dict[str, Any]

CONFIG_FILE_NAME = "kitescale.toml"
CONFIG_SECTION = "kitescale"

REQUIRED_FOR_RUN = ("agent_token", "queue", "service_account", "project_id")


@dataclass(frozen=True, slots=True)
class Settings:
    """Autoscaler configuration.

    Args:
        agent_token: Buildkite agent API token.
        queue: Buildkite queue to autoscale.
        service_account: Service account email the workers run as.
        buildkite_project: Buildkite project name. Accepted for compatibility
            with existing deployments; the queue metrics API is scoped by
            token and queue, so it does not filter anything.
        organization: Organization slug the metrics are expected to come from.
        project_id: GCP project ID.
        region: GCP region. Default: us-west1.
        zone_suffix: Zone letter within the region used for new workers.
        machine_type: Worker machine type. Default: c3-standard-4.
        image_name: Boot image name in the project's global images.
        max_instances: Ceiling on concurrently running workers.
        zones: Zones to count workers in. Empty derives them from the region.
        name_prefix: Worker names are ``{name_prefix}-{number}``.
        network: VPC network name.
        subnetwork: Optional subnetwork name within the region.
        metrics_endpoint: Base URL of the Buildkite agent API.
        fallback_interval: Seconds to sleep after a failed demand sample.
        default_poll_interval: Poll interval when the queue reports none.
        backoff_max: Cap in seconds for backoff after cloud failures.
        call_timeout: Deadline in seconds for each sampling or listing call.
        operation_timeout: Deadline in seconds for an insert operation.
        thread_pool_size: Threads for blocking Compute Engine calls.
        log_level: Console log level, one of loguru's levels (any case).
        log_file: Optional log file path.
    """

    agent_token: str = ""
    queue: str = ""
    service_account: str = ""
    project_id: str = ""
    buildkite_project: str = "ci"
    organization: str | None = None
    region: str = "us-west1"
    zone_suffix: str = "b"
    machine_type: str = "c3-standard-4"
    image_name: str = "buildkite-agent"
    max_instances: int = 4
    zones: tuple[str, ...] = ()
    name_prefix: str = "worker"
    network: str = "default"
    subnetwork: str | None = None
    metrics_endpoint: str = "https://agent.buildkite.com/v3"
    fallback_interval: float = 100.0
    default_poll_interval: float = 10.0
    backoff_max: float = 600.0
    call_timeout: float = 60.0
    operation_timeout: float = 600.0
    thread_pool_size: int = 8
    log_level: str = "INFO"
    log_file: str | None = None

    def __post_init__(self) -> None:
        if self.max_instances < 0:
            raise ConfigurationError(f"max_instances must be >= 0, got {self.max_instances}")
        if self.thread_pool_size < 1:
            raise ConfigurationError(f"thread_pool_size must be >= 1, got {self.thread_pool_size}")
        if str(self.log_level).upper() not in LOG_LEVELS:
            raise ConfigurationError(
                f"log_level must be one of {', '.join(LOG_LEVELS)}, got {self.log_level!r}"
            )
        if not self.zone_suffix:
            raise ConfigurationError("zone_suffix must not be empty")
        for name in (
            "fallback_interval", "default_poll_interval", "backoff_max",
            "call_timeout", "operation_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")

    @property
    def zone(self) -> str:
        """Zone new workers are created in."""
        return f"{self.region}-{self.zone_suffix}"

    def require(self, *names: str) -> None:
        """Raise ConfigurationError unless every named field is set."""
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    with path.open("rb") as f:
        data = tomllib.load(f)
    return dict(data.get(CONFIG_SECTION, {}))


def _from_env(environ: Mapping[str, str]) -> RawConfig:
    raw: RawConfig = {}
    if token := environ.get("BUILDKITE_AGENT_TOKEN"):
        raw["agent_token"] = token
    if project := environ.get("GOOGLE_CLOUD_PROJECT") or environ.get("GCLOUD_PROJECT"):
        raw["project_id"] = project
    return raw


def _coerce(raw: RawConfig) -> RawConfig:
    known = {f.name for f in fields(Settings)}
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown settings: {', '.join(sorted(unknown))}. "
            f"Valid: {', '.join(sorted(known))}"
        )
    result = dict(raw)
    match result.get("zones"):
        case str() as zones:
            result["zones"] = tuple(z.strip() for z in zones.split(",") if z.strip())
        case list() | tuple() as zones:
            result["zones"] = tuple(zones)
    return result


def load_settings(
    *,
    config_path: Path | None = None,
    overrides: RawConfig | None = None,
    environ: Mapping[str, str] | None = None,
    required: tuple[str, ...] = REQUIRED_FOR_RUN,
) -> Settings:
    """Build Settings from defaults, TOML file, environment and overrides.

    ``None`` values in ``overrides`` are ignored so unset CLI flags fall
    through to the lower layers.
    """
    path = config_path or Path.cwd() / CONFIG_FILE_NAME
    if config_path is not None and not config_path.is_file():
        raise ConfigurationError(f"Config file not found: {config_path}")

    try:
        file_cfg = _read_toml(path)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e

    env_cfg = _from_env(os.environ if environ is None else environ)
    flag_cfg = {k: v for k, v in (overrides or {}).items() if v is not None}

    merged = {**env_cfg, **file_cfg, **flag_cfg}
    merged = _coerce(merged)

    try:
        settings = Settings(**merged)
    except TypeError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
    settings.require(*required)
    return settings
