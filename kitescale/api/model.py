from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

type DecisionAction = Literal["skip", "provision"]


@dataclass(frozen=True, slots=True)
class Metrics:
    """Queue demand snapshot reported by Buildkite for one queue."""
    org_slug: str
    queue: str
    scheduled_jobs: int
    running_jobs: int
    waiting_jobs: int
    idle_agents: int
    busy_agents: int
    total_agents: int
    poll_interval: float

    @property
    def desired_workers(self) -> int:
        return self.running_jobs + self.scheduled_jobs + self.waiting_jobs


@dataclass(frozen=True, slots=True)
class InstanceRecord:
    """A Compute Engine instance as seen by one inventory listing."""
    name: str
    tags: frozenset[str]
    status: str
    zone: str


@dataclass(frozen=True, slots=True)
class Decision:
    action: DecisionAction
    desired: int
    supply: int | None
    reason: str

    @property
    def provision(self) -> bool:
        return self.action == "provision"


@dataclass(frozen=True, slots=True)
class ProvisioningRequest:
    """Everything needed to insert one spot worker."""
    name: str
    project: str
    zone: str
    region: str
    machine_type: str
    source_image: str
    disk_size_gb: int
    disk_type: str
    network: str
    subnetwork: str | None
    network_tier: str
    service_account: str
    scopes: tuple[str, ...]
    max_run_duration: int
    metadata: tuple[tuple[str, str], ...]
    tags: tuple[str, ...]

    def to_instance(self) -> Any:
        """Render as a ``compute_v1.Instance`` resource."""
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        disk = compute_v1.AttachedDisk(
            auto_delete=True,
            boot=True,
            type_="PERSISTENT",
            initialize_params=compute_v1.AttachedDiskInitializeParams(
                disk_size_gb=self.disk_size_gb,
                source_image=self.source_image,
                disk_type=f"zones/{self.zone}/diskTypes/{self.disk_type}",
            ),
        )

        network_interface = compute_v1.NetworkInterface(
            network=f"global/networks/{self.network}",
            stack_type="IPV4_ONLY",
            access_configs=[
                compute_v1.AccessConfig(
                    name="External NAT",
                    type_="ONE_TO_ONE_NAT",
                    network_tier=self.network_tier,
                ),
            ],
        )
        if self.subnetwork:
            network_interface.subnetwork = (
                f"projects/{self.project}/regions/{self.region}"
                f"/subnetworks/{self.subnetwork}"
            )

        scheduling = compute_v1.Scheduling(
            provisioning_model="SPOT",
            automatic_restart=False,
            instance_termination_action="DELETE",
            on_host_maintenance="TERMINATE",
            max_run_duration=compute_v1.Duration(seconds=self.max_run_duration),
        )

        return compute_v1.Instance(
            name=self.name,
            machine_type=f"zones/{self.zone}/machineTypes/{self.machine_type}",
            disks=[disk],
            network_interfaces=[network_interface],
            scheduling=scheduling,
            service_accounts=[
                compute_v1.ServiceAccount(
                    email=self.service_account,
                    scopes=list(self.scopes),
                ),
            ],
            metadata=compute_v1.Metadata(
                items=[compute_v1.Items(key=k, value=v) for k, v in self.metadata],
            ),
            tags=compute_v1.Tags(items=list(self.tags)),
        )

    def to_insert_request(self) -> Any:
        from google.cloud import compute_v1  # type: ignore[reportMissingImports]

        return compute_v1.InsertInstanceRequest(
            project=self.project,
            zone=self.zone,
            instance_resource=self.to_instance(),
        )
