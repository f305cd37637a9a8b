"""Orchestrator adapter interface.

The lifecycle manager drives deploys and teardowns exclusively through this
interface. Implementations mutate the external cluster and report outcomes;
they never persist anything themselves.

All operations may raise ``OrchestratorTransientError`` or
``OrchestratorPermanentError``. Deletes treat "not found" as success.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from hacklab.models import WorkloadKind, WorkloadState


@dataclass
class ProbeSpec:
    """HTTP probe against the container port."""

    path: str = "/"
    initial_delay_seconds: int = 10
    period_seconds: int = 5
    failure_threshold: int = 3


@dataclass
class WorkloadSpec:
    """Everything needed to deploy, expose and route one workload."""

    name: str
    namespace: str
    user_id: str
    kind: WorkloadKind
    image: str
    image_pull_policy: str = "IfNotPresent"
    container_port: int = 80
    env: dict[str, str] = field(default_factory=dict)
    requests: dict[str, str] = field(default_factory=dict)
    limits: dict[str, str] = field(default_factory=dict)
    readiness_probe: ProbeSpec | None = None
    liveness_probe: ProbeSpec | None = None
    # Long-lived websocket traffic (VNC) needs relaxed proxy timeouts.
    websocket: bool = False


class OrchestratorAdapter(ABC):
    """Control API for namespaces, workloads, exposures and routes."""

    @abstractmethod
    async def ensure_namespace(self, user_id: str) -> str:
        """Create the user's isolation domain if absent; returns its name."""

    @abstractmethod
    async def apply_isolation_policy(self, namespace: str, user_id: str) -> None:
        """Deny-all ingress and egress baseline for the namespace."""

    @abstractmethod
    async def apply_allow_rules(
        self,
        namespace: str,
        kind: WorkloadKind,
        selector_labels: dict[str, str],
    ) -> None:
        """Ingress from the routing controller and DNS egress for one kind."""

    @abstractmethod
    async def deploy_workload(self, spec: WorkloadSpec) -> str:
        """Create the workload without waiting for it; returns its name."""

    @abstractmethod
    async def create_exposure(self, spec: WorkloadSpec) -> str:
        """Create the internal endpoint in front of the workload."""

    @abstractmethod
    async def create_route(self, spec: WorkloadSpec, user_slug: str) -> str:
        """Create the external path route; returns the public URL."""

    @abstractmethod
    async def wait_ready(self, namespace: str, workload_name: str, timeout: float) -> None:
        """Block until the workload is running with all containers ready."""

    @abstractmethod
    async def delete_workloads(self, namespace: str, kind: WorkloadKind) -> int:
        """Delete every workload of ``kind``; returns how many were deleted."""

    @abstractmethod
    async def delete_exposures(self, namespace: str, kind: WorkloadKind) -> int: ...

    @abstractmethod
    async def delete_routes(self, namespace: str, kind: WorkloadKind) -> int: ...

    @abstractmethod
    async def delete_instance(self, namespace: str, workload_name: str) -> None:
        """Delete one workload's route, exposure and workload by name."""

    @abstractmethod
    async def wait_deleted(self, namespace: str, kind: WorkloadKind, timeout: float) -> None:
        """Block until no route of ``kind`` remains in the namespace."""

    @abstractmethod
    async def exec_in_workload(self, namespace: str, pod_name: str, command: list[str]) -> str:
        """Run a one-shot command in the workload and return its stdout."""

    @abstractmethod
    async def get_workload_state(self, namespace: str, workload_name: str) -> WorkloadState: ...

    @abstractmethod
    async def ping(self) -> bool:
        """True when the control API answers."""

    async def delete_kind(self, namespace: str, kind: WorkloadKind) -> None:
        """Routes first so traffic stops before the workload disappears."""
        await self.delete_routes(namespace, kind)
        await self.delete_exposures(namespace, kind)
        await self.delete_workloads(namespace, kind)

    async def close(self) -> None:  # noqa: B027
        """Release client resources."""
