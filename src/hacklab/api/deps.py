"""Service wiring and request dependencies."""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request

from hacklab.config.settings import Settings
from hacklab.errors import AuthenticationError
from hacklab.flags import FlagVerificationGate
from hacklab.lifecycle import LabLifecycleManager
from hacklab.observability import MetricsCollector, get_metrics
from hacklab.orchestrator.base import OrchestratorAdapter
from hacklab.reconciler import StatusReconciler
from hacklab.settings_provider import StaticSettingsProvider, StoreSettingsProvider
from hacklab.store import RecordStore, create_record_store


@dataclass
class Services:
    """Process-wide collaborators, built once at startup."""

    settings: Settings
    store: RecordStore
    orchestrator: OrchestratorAdapter
    lifecycle: LabLifecycleManager
    reconciler: StatusReconciler
    flags: FlagVerificationGate
    metrics: MetricsCollector

    async def close(self) -> None:
        await self.orchestrator.close()
        await self.store.close()


def build_services(
    settings: Settings,
    *,
    store: RecordStore | None = None,
    orchestrator: OrchestratorAdapter | None = None,
    metrics: MetricsCollector | None = None,
) -> Services:
    """Wire the lifecycle core. Omitted collaborators come from configuration."""
    metrics = metrics or get_metrics()
    store = store or create_record_store(settings.database)
    if orchestrator is None:
        from hacklab.orchestrator.kubernetes import KubernetesAdapter

        orchestrator = KubernetesAdapter(settings, metrics=metrics)

    reconciler = StatusReconciler(store, orchestrator, metrics=metrics)
    lifecycle = LabLifecycleManager(
        store,
        orchestrator,
        StoreSettingsProvider(store, fallback=StaticSettingsProvider(settings.lab)),
        settings.lab,
        allow_rules_enabled=settings.kubernetes.network_policy_enabled,
        reconciler=reconciler,
        metrics=metrics,
    )
    flags = FlagVerificationGate(store, orchestrator, metrics=metrics)
    return Services(
        settings=settings,
        store=store,
        orchestrator=orchestrator,
        lifecycle=lifecycle,
        reconciler=reconciler,
        flags=flags,
        metrics=metrics,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_user(request: Request) -> str:
    """Resolve the user id set by the upstream auth proxy."""
    services: Services = request.app.state.services
    user_id = request.headers.get(services.settings.api.user_header, "").strip()
    if not user_id:
        raise AuthenticationError("authentication required", phase="authenticate")
    return user_id
