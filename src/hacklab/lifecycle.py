"""Lab lifecycle manager.

Owns every write to the active-lab and active-desktop records and drives
the orchestrator through the deploy ordering:

    ensure namespace -> isolation policy -> evict and sweep the kind
    -> wait for old routes to disappear -> deploy -> wait ready
    -> expose -> allow rules -> route -> wait ready again -> settle
    -> persist

A user holds at most one lab per lab type and at most one desktop overall.
Starts of the same kind for one user are serialized; everything else runs
concurrently.
"""

from __future__ import annotations

import asyncio
import secrets
import time
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from hacklab.config.settings import LabSettings
from hacklab.errors import (
    ConfigurationError,
    HackLabError,
    LifecycleError,
    NotFoundError,
    ValidationError,
    ensure_hacklab_error,
)
from hacklab.models import (
    ActiveLab,
    ActiveOSContainer,
    ActiveRecord,
    LabStatus,
    LabType,
    OSType,
    WorkloadKind,
    utcnow,
)
from hacklab.naming import PodNameAllocator, user_slug
from hacklab.observability import MetricsCollector, get_logger
from hacklab.orchestrator.base import OrchestratorAdapter, ProbeSpec, WorkloadSpec
from hacklab.reconciler import StatusReconciler
from hacklab.settings_provider import SettingsProvider
from hacklab.store.base import RecordStore, RecordType


log = get_logger(__name__)

LAB_REQUESTS = {"memory": "256Mi", "cpu": "250m"}
LAB_LIMITS = {"memory": "512Mi", "cpu": "500m"}
OS_REQUESTS = {"memory": "512Mi", "cpu": "500m"}
OS_LIMITS = {"memory": "2Gi", "cpu": "2000m"}
OS_READINESS_PROBE = ProbeSpec(path="/", initial_delay_seconds=10, period_seconds=5, failure_threshold=5)
OS_LIVENESS_PROBE = ProbeSpec(path="/", initial_delay_seconds=30, period_seconds=10, failure_threshold=3)
FLAG_HEX_BYTES = 16


@dataclass
class LabAccess:
    """What a caller needs to reach a freshly started lab."""

    pod_name: str
    namespace: str
    lab_type: LabType
    url: str
    status: LabStatus
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "pod_name": self.pod_name,
            "namespace": self.namespace,
            "lab_type": self.lab_type.value,
            "url": self.url,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class OSAccess:
    """What a caller needs to reach a freshly started desktop."""

    pod_name: str
    namespace: str
    os_type: OSType
    url: str
    vnc_url: str
    display_url: str
    status: LabStatus
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "pod_name": self.pod_name,
            "namespace": self.namespace,
            "os_type": self.os_type.value,
            "url": self.url,
            "vnc_url": self.vnc_url,
            "display_url": self.display_url,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass
class _Deployed:
    pod_name: str
    namespace: str
    url: str


class LabLifecycleManager:
    """Start, stop and list labs and desktops for users."""

    def __init__(
        self,
        store: RecordStore,
        orchestrator: OrchestratorAdapter,
        settings_provider: SettingsProvider,
        lab_settings: LabSettings,
        *,
        allow_rules_enabled: bool = False,
        reconciler: StatusReconciler | None = None,
        metrics: MetricsCollector | None = None,
        names: PodNameAllocator | None = None,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.settings_provider = settings_provider
        self.lab_settings = lab_settings
        self.allow_rules_enabled = allow_rules_enabled
        self.metrics = metrics
        self.reconciler = reconciler or StatusReconciler(store, orchestrator, metrics=metrics)
        self._names = names or PodNameAllocator()
        # Entries vanish once no start holds or waits on the lock.
        self._start_locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_user(user_id: str) -> str:
        if not user_id or not user_id.strip():
            raise ValidationError("user id is required", phase="validate")
        try:
            user_slug(user_id)
        except ValueError as e:
            raise ValidationError(str(e), phase="validate") from e
        return user_id

    @staticmethod
    def parse_lab_type(value: LabType | str) -> LabType:
        try:
            return LabType(value)
        except ValueError:
            allowed = ", ".join(t.value for t in LabType)
            msg = f"invalid lab type {value!r}; expected one of {allowed}"
            raise ValidationError(msg, phase="validate", details={"lab_type": str(value)}) from None

    @staticmethod
    def parse_os_type(value: OSType | str) -> OSType:
        try:
            return OSType(value)
        except ValueError:
            allowed = ", ".join(t.value for t in OSType)
            msg = f"invalid OS type {value!r}; expected one of {allowed}"
            raise ValidationError(msg, phase="validate", details={"os_type": str(value)}) from None

    def _image_for(self, images: dict[str, str], name: str) -> str:
        image = images.get(name)
        if not image:
            msg = f"no image configured for {name!r}"
            raise ConfigurationError(msg, phase="validate")
        return image

    def _start_lock(self, user_id: str, group: str) -> asyncio.Lock:
        key = (user_id, group)
        lock = self._start_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._start_locks[key] = lock
        return lock

    # ------------------------------------------------------------------
    # Labs
    # ------------------------------------------------------------------

    async def start_lab(self, user_id: str, lab_type: LabType | str) -> LabAccess:
        """Start a lab, replacing any running lab of the same type."""
        self._require_user(user_id)
        lab = self.parse_lab_type(lab_type)
        image = self._image_for(self.lab_settings.lab_images, lab.value)
        kind = WorkloadKind.for_lab(lab)

        async with self._start_lock(user_id, kind.label):
            pod_name = self._names.lab_pod(lab, user_id)
            started = time.monotonic()

            def build(namespace: str) -> WorkloadSpec:
                return WorkloadSpec(
                    name=pod_name,
                    namespace=namespace,
                    user_id=user_id,
                    kind=kind,
                    image=image,
                    image_pull_policy=self.lab_settings.lab_image_pull_policy,
                    env={
                        "VITE_MAIN_WEB_URL": self.lab_settings.main_web_url,
                        "FLAG_EASY": secrets.token_hex(FLAG_HEX_BYTES),
                        "FLAG_MEDIUM": secrets.token_hex(FLAG_HEX_BYTES),
                        "FLAG_HARD": secrets.token_hex(FLAG_HEX_BYTES),
                    },
                    requests=dict(LAB_REQUESTS),
                    limits=dict(LAB_LIMITS),
                )

            deployed = await self._deploy(
                user_id,
                kind=kind,
                evict_kind=kind,
                record_type=ActiveLab,
                build_spec=build,
            )

            now = utcnow()
            timeout = await self.settings_provider.lab_timeout_minutes()
            record = ActiveLab(
                pod_name=deployed.pod_name,
                namespace=deployed.namespace,
                user_id=user_id,
                lab_type=lab,
                status=LabStatus.RUNNING,
                url=deployed.url,
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(minutes=timeout),
            )
            await self.store.upsert(record)

        duration = time.monotonic() - started
        if self.metrics is not None:
            self.metrics.record_start(kind.category.value, lab.value, "success", duration)
        log.info(
            "lab_started",
            user_id=user_id,
            pod_name=record.pod_name,
            lab_type=lab.value,
            url=record.url,
            duration_seconds=round(duration, 2),
        )
        return LabAccess(
            pod_name=record.pod_name,
            namespace=record.namespace,
            lab_type=lab,
            url=deployed.url,
            status=record.status,
            created_at=record.created_at,
            expires_at=record.expires_at,
        )

    async def stop_lab(self, user_id: str, namespace: str | None, pod_name: str) -> None:
        """Stop one of the user's labs. Safe to call concurrently."""
        self._require_user(user_id)
        if not pod_name:
            raise ValidationError("pod name is required", phase="validate")
        record = await self._owned_record(ActiveLab, user_id, pod_name, namespace)
        await self._stop_record(record, reason="stopped")

    async def get_active_labs(self, user_id: str) -> list[ActiveLab]:
        """The user's labs, after pruning any whose workload has gone.

        Expired or failed labs are hidden here and torn down by the next full
        reconcile pass.
        """
        self._require_user(user_id)
        report = await self.reconciler.reconcile(ActiveLab, user_id=user_id, teardown=False)
        hidden = set(report.deferred)
        return [r for r in await self.store.get_by_user(ActiveLab, user_id) if r.pod_name not in hidden]

    # ------------------------------------------------------------------
    # Desktops
    # ------------------------------------------------------------------

    async def start_os(self, user_id: str, os_type: OSType | str) -> OSAccess:
        """Start a desktop, replacing whatever desktop the user already has."""
        self._require_user(user_id)
        os_name = self.parse_os_type(os_type)
        image = self._image_for(self.lab_settings.os_images, os_name.value)
        kind = WorkloadKind.for_os(os_name)
        every_os = WorkloadKind.for_os()
        slug = user_slug(user_id)

        async with self._start_lock(user_id, every_os.label):
            pod_name = self._names.os_pod(os_name, user_id)
            started = time.monotonic()

            def build(namespace: str) -> WorkloadSpec:
                return WorkloadSpec(
                    name=pod_name,
                    namespace=namespace,
                    user_id=user_id,
                    kind=kind,
                    image=image,
                    image_pull_policy=self.lab_settings.os_image_pull_policy,
                    env={
                        "USER_SLUG": slug,
                        "VNC_PASSWORD": self.lab_settings.vnc_password.get_secret_value(),
                        "USERNAME": self.lab_settings.os_username,
                    },
                    requests=dict(OS_REQUESTS),
                    limits=dict(OS_LIMITS),
                    readiness_probe=OS_READINESS_PROBE,
                    liveness_probe=OS_LIVENESS_PROBE,
                    websocket=True,
                )

            deployed = await self._deploy(
                user_id,
                kind=kind,
                evict_kind=every_os,
                record_type=ActiveOSContainer,
                build_spec=build,
            )

            now = utcnow()
            timeout = await self.settings_provider.os_timeout_minutes()
            record = ActiveOSContainer(
                pod_name=deployed.pod_name,
                namespace=deployed.namespace,
                user_id=user_id,
                os_type=os_name,
                status=LabStatus.RUNNING,
                url=deployed.url,
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(minutes=timeout),
            )
            await self.store.upsert(record)

        duration = time.monotonic() - started
        if self.metrics is not None:
            self.metrics.record_start(kind.category.value, os_name.value, "success", duration)
        log.info(
            "os_started",
            user_id=user_id,
            pod_name=record.pod_name,
            os_type=os_name.value,
            url=record.url,
            duration_seconds=round(duration, 2),
        )
        return self._os_access(record)

    async def stop_os(self, user_id: str, pod_name: str | None = None) -> int:
        """Stop one desktop, or all of the user's desktops when ``pod_name`` is None.

        Returns the number of records removed.
        """
        self._require_user(user_id)
        if pod_name:
            record = await self._owned_record(ActiveOSContainer, user_id, pod_name)
            return int(await self._stop_record(record, reason="stopped"))

        stopped = 0
        for record in await self.store.get_by_user(ActiveOSContainer, user_id):
            stopped += int(await self._stop_record(record, reason="stopped"))
        log.info("os_stopped_all", user_id=user_id, count=stopped)
        return stopped

    async def restart_os(self, user_id: str, pod_name: str, os_type: OSType | str) -> OSAccess:
        """Stop the given desktop and start a fresh one of ``os_type``."""
        self._require_user(user_id)
        os_name = self.parse_os_type(os_type)
        if not pod_name:
            raise ValidationError("pod name is required", phase="validate")
        await self.stop_os(user_id, pod_name)
        access = await self.start_os(user_id, os_name)
        log.info("os_restarted", user_id=user_id, old_pod=pod_name, new_pod=access.pod_name)
        return access

    async def get_active_os(self, user_id: str) -> list[ActiveOSContainer]:
        self._require_user(user_id)
        report = await self.reconciler.reconcile(ActiveOSContainer, user_id=user_id, teardown=False)
        hidden = set(report.deferred)
        return [r for r in await self.store.get_by_user(ActiveOSContainer, user_id) if r.pod_name not in hidden]

    def _os_access(self, record: ActiveOSContainer) -> OSAccess:
        password = self.lab_settings.vnc_password.get_secret_value()
        return OSAccess(
            pod_name=record.pod_name,
            namespace=record.namespace,
            os_type=record.os_type,
            url=record.url or "",
            vnc_url=record.vnc_url(password) or "",
            display_url=record.display_url(password) or "",
            status=record.status,
            created_at=record.created_at,
            expires_at=record.expires_at,
        )

    # ------------------------------------------------------------------
    # Shared deploy / teardown
    # ------------------------------------------------------------------

    async def _owned_record(
        self,
        record_type: RecordType,
        user_id: str,
        pod_name: str,
        namespace: str | None = None,
    ) -> ActiveRecord:
        record = await self.store.get(record_type, pod_name)
        if record is None or record.user_id != user_id or (namespace and record.namespace != namespace):
            raise NotFoundError(
                f"no active workload named {pod_name!r}",
                phase="lookup",
                details={"pod_name": pod_name},
            )
        return record

    async def _stop_record(self, record: ActiveRecord, *, reason: str) -> bool:
        """Delete the record's own objects, then the record itself."""
        kind = record.kind
        try:
            await self.orchestrator.delete_instance(record.namespace, record.pod_name)
        except HackLabError as e:
            raise LifecycleError(
                f"stop {record.pod_name} failed: {e.message}",
                phase="delete_objects",
                cause=e,
            ) from e
        removed = await self.store.delete(type(record), record.pod_name)
        if removed and self.metrics is not None:
            self.metrics.record_stop(kind.category.value, kind.name or "", reason)
        log.info(
            "workload_stopped",
            user_id=record.user_id,
            pod_name=record.pod_name,
            kind=kind.label,
            reason=reason,
            record_removed=removed,
        )
        return removed

    async def _teardown_quietly(self, namespace: str, kind: WorkloadKind) -> None:
        try:
            await self.orchestrator.delete_kind(namespace, kind)
        except HackLabError as e:
            log.warning(
                "failed_start_cleanup_incomplete",
                namespace=namespace,
                kind=kind.label,
                error=e.message,
            )

    async def _deploy(
        self,
        user_id: str,
        *,
        kind: WorkloadKind,
        evict_kind: WorkloadKind,
        record_type: RecordType,
        build_spec,
    ) -> _Deployed:
        orch = self.orchestrator
        settings = self.lab_settings
        namespace: str | None = None
        step = "ensure_namespace"
        try:
            namespace = await orch.ensure_namespace(user_id)

            step = "apply_isolation_policy"
            await orch.apply_isolation_policy(namespace, user_id)

            step = "evict"
            for record in await self.store.get_by_user(record_type, user_id):
                if evict_kind.name is None or record.kind == evict_kind:
                    await self._stop_record(record, reason="evicted")

            step = "cleanup"
            await orch.delete_kind(namespace, evict_kind)

            step = "wait_deleted"
            await orch.wait_deleted(namespace, evict_kind, settings.delete_timeout_seconds)

            step = "deploy_workload"
            spec = build_spec(namespace)
            await orch.deploy_workload(spec)

            step = "wait_ready"
            await orch.wait_ready(namespace, spec.name, settings.ready_timeout_seconds)

            step = "create_exposure"
            await orch.create_exposure(spec)

            if self.allow_rules_enabled:
                step = "apply_allow_rules"
                await orch.apply_allow_rules(namespace, kind, kind.selector())

            step = "create_route"
            url = await orch.create_route(spec, user_slug(user_id))

            step = "wait_ready_final"
            await orch.wait_ready(namespace, spec.name, settings.final_ready_timeout_seconds)

            if settings.route_propagation_settle_seconds > 0:
                await asyncio.sleep(settings.route_propagation_settle_seconds)
        except Exception as exc:
            error = ensure_hacklab_error(exc, phase=step)
            if namespace is not None:
                await self._teardown_quietly(namespace, kind)
            if self.metrics is not None:
                self.metrics.record_start(kind.category.value, kind.name or "", "failure")
            log.error(
                "start_failed",
                user_id=user_id,
                kind=kind.label,
                step=step,
                error=error.message,
                retryable=error.retryable,
            )
            raise LifecycleError(
                f"starting {kind.label} failed at {step}: {error.message}",
                phase=step,
                cause=error,
            ) from exc

        return _Deployed(pod_name=spec.name, namespace=namespace, url=url)
