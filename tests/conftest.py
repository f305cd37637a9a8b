"""Pytest configuration and fixtures for HackLab tests."""

from __future__ import annotations

import asyncio
import os
from typing import TYPE_CHECKING, Any
from unittest.mock import MagicMock

import pytest
from prometheus_client import CollectorRegistry

from hacklab.config.settings import LabSettings, Settings
from hacklab.errors import ExecError
from hacklab.flags import FlagVerificationGate
from hacklab.lifecycle import LabLifecycleManager
from hacklab.models import WorkloadKind, WorkloadState
from hacklab.naming import user_namespace
from hacklab.observability import MetricsCollector
from hacklab.orchestrator.base import OrchestratorAdapter, WorkloadSpec
from hacklab.reconciler import StatusReconciler
from hacklab.settings_provider import StaticSettingsProvider
from hacklab.store import MemoryRecordStore

if TYPE_CHECKING:
    from collections.abc import Generator


# Ensure we're using test configuration
os.environ.setdefault("HACKLAB_ENVIRONMENT", "development")


def _matches(kind: WorkloadKind, selector: WorkloadKind) -> bool:
    return kind.category == selector.category and (selector.name is None or kind.name == selector.name)


class FakeOrchestrator(OrchestratorAdapter):
    """In-memory cluster that records every call in order.

    ``fail_on`` maps an operation name to an exception raised the next time
    it is called. ``states`` overrides the reported workload state.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.namespaces: set[str] = set()
        self.workloads: dict[str, tuple[str, WorkloadKind]] = {}
        self.exposures: dict[str, tuple[str, WorkloadKind]] = {}
        self.routes: dict[str, tuple[str, WorkloadKind]] = {}
        self.states: dict[str, WorkloadState] = {}
        self.exec_output: dict[str, str] = {}
        self.fail_on: dict[str, Exception] = {}
        self.max_routes_per_kind: dict[tuple[str, str, str | None], int] = {}
        self.specs: dict[str, WorkloadSpec] = {}
        self.available = True

    async def _record(self, op: str, *args: Any) -> None:
        await asyncio.sleep(0)
        self.calls.append((op, args))
        error = self.fail_on.pop(op, None)
        if error is not None:
            raise error

    def ops(self) -> list[str]:
        return [op for op, _ in self.calls]

    async def ensure_namespace(self, user_id: str) -> str:
        await self._record("ensure_namespace", user_id)
        name = user_namespace(user_id)
        self.namespaces.add(name)
        return name

    async def apply_isolation_policy(self, namespace: str, user_id: str) -> None:
        await self._record("apply_isolation_policy", namespace, user_id)

    async def apply_allow_rules(self, namespace: str, kind: WorkloadKind, selector_labels: dict[str, str]) -> None:
        await self._record("apply_allow_rules", namespace, kind, selector_labels)

    async def deploy_workload(self, spec: WorkloadSpec) -> str:
        await self._record("deploy_workload", spec.namespace, spec.kind, spec.name)
        self.workloads[spec.name] = (spec.namespace, spec.kind)
        self.specs[spec.name] = spec
        return spec.name

    async def create_exposure(self, spec: WorkloadSpec) -> str:
        await self._record("create_exposure", spec.namespace, spec.kind, spec.name)
        self.exposures[spec.name] = (spec.namespace, spec.kind)
        return f"{spec.name}-svc"

    async def create_route(self, spec: WorkloadSpec, user_slug: str) -> str:
        await self._record("create_route", spec.namespace, spec.kind, spec.name)
        self.routes[spec.name] = (spec.namespace, spec.kind)
        key = (spec.namespace, spec.kind.category.value, spec.kind.name)
        live = sum(1 for ns, kind in self.routes.values() if ns == spec.namespace and kind == spec.kind)
        self.max_routes_per_kind[key] = max(self.max_routes_per_kind.get(key, 0), live)
        return f"http://localhost:8100/{user_slug}/{spec.kind.route_segment}/"

    async def wait_ready(self, namespace: str, workload_name: str, timeout: float) -> None:
        await self._record("wait_ready", namespace, workload_name)

    def _sweep(self, objects: dict[str, tuple[str, WorkloadKind]], namespace: str, kind: WorkloadKind) -> int:
        doomed = [n for n, (ns, k) in objects.items() if ns == namespace and _matches(k, kind)]
        for name in doomed:
            del objects[name]
        return len(doomed)

    async def delete_workloads(self, namespace: str, kind: WorkloadKind) -> int:
        await self._record("delete_workloads", namespace, kind)
        return self._sweep(self.workloads, namespace, kind)

    async def delete_exposures(self, namespace: str, kind: WorkloadKind) -> int:
        await self._record("delete_exposures", namespace, kind)
        return self._sweep(self.exposures, namespace, kind)

    async def delete_routes(self, namespace: str, kind: WorkloadKind) -> int:
        await self._record("delete_routes", namespace, kind)
        return self._sweep(self.routes, namespace, kind)

    async def delete_instance(self, namespace: str, workload_name: str) -> None:
        await self._record("delete_instance", namespace, workload_name)
        for objects in (self.routes, self.exposures, self.workloads):
            if objects.get(workload_name, (None,))[0] == namespace:
                del objects[workload_name]

    async def wait_deleted(self, namespace: str, kind: WorkloadKind, timeout: float) -> None:
        await self._record("wait_deleted", namespace, kind)
        assert not any(ns == namespace and _matches(k, kind) for ns, k in self.routes.values())

    async def exec_in_workload(self, namespace: str, pod_name: str, command: list[str]) -> str:
        await self._record("exec_in_workload", namespace, pod_name, command)
        if pod_name not in self.exec_output:
            raise ExecError(f"pod {pod_name} not found", phase="exec_in_workload")
        return self.exec_output[pod_name]

    async def get_workload_state(self, namespace: str, workload_name: str) -> WorkloadState:
        await self._record("get_workload_state", namespace, workload_name)
        if workload_name in self.states:
            return self.states[workload_name]
        if workload_name in self.workloads:
            return WorkloadState.RUNNING
        return WorkloadState.NOT_FOUND

    async def ping(self) -> bool:
        await self._record("ping")
        return self.available


@pytest.fixture(autouse=True)
def reset_settings() -> Generator[None, None, None]:
    """Reset settings cache before each test."""
    from hacklab.config.settings import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def lab_settings() -> LabSettings:
    """Lab settings with every wait collapsed to zero."""
    return LabSettings(
        route_propagation_settle_seconds=0,
        poll_interval_seconds=0.01,
        delete_poll_interval_seconds=0.01,
        ready_timeout_seconds=1,
        final_ready_timeout_seconds=1,
        delete_timeout_seconds=1,
    )


@pytest.fixture
def settings(lab_settings: LabSettings) -> Settings:
    return Settings(lab=lab_settings)


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector(namespace="hacklab_test", registry=CollectorRegistry())


@pytest.fixture
def store() -> MemoryRecordStore:
    return MemoryRecordStore()


@pytest.fixture
def orchestrator() -> FakeOrchestrator:
    return FakeOrchestrator()


@pytest.fixture
def reconciler(
    store: MemoryRecordStore,
    orchestrator: FakeOrchestrator,
    metrics: MetricsCollector,
) -> StatusReconciler:
    return StatusReconciler(store, orchestrator, metrics=metrics)


@pytest.fixture
def manager(
    store: MemoryRecordStore,
    orchestrator: FakeOrchestrator,
    lab_settings: LabSettings,
    reconciler: StatusReconciler,
    metrics: MetricsCollector,
) -> LabLifecycleManager:
    return LabLifecycleManager(
        store,
        orchestrator,
        StaticSettingsProvider(lab_settings),
        lab_settings,
        reconciler=reconciler,
        metrics=metrics,
    )


@pytest.fixture
def gate(
    store: MemoryRecordStore,
    orchestrator: FakeOrchestrator,
    metrics: MetricsCollector,
) -> FlagVerificationGate:
    return FlagVerificationGate(store, orchestrator, metrics=metrics)


@pytest.fixture
def mock_api_client() -> MagicMock:
    """Stand-in ApiClient; the typed API objects only store a reference to it."""
    return MagicMock()
