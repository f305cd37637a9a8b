"""Status sync between the record store and the orchestrator.

Workloads can die without going through the lifecycle manager (OOM kill,
node eviction, someone running ``kubectl delete``). A reconcile pass asks
the orchestrator about each tracked record once and drops the records whose
workload is no longer running. Expired and failed records are torn down as
well, one instance at a time, so a lab started while the pass runs is never
swept along with them.

Inline passes (``teardown=False``) run on the request path. They never delete
cluster objects; records that need a teardown are reported as ``deferred``
and left for the next full pass.

Per-record failures are logged and skipped; the next pass picks them up.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from hacklab.models import ActiveLab, ActiveOSContainer, WorkloadState, utcnow
from hacklab.observability import MetricsCollector, get_logger
from hacklab.orchestrator.base import OrchestratorAdapter
from hacklab.store.base import RecordStore, RecordType


log = get_logger(__name__)

RECORD_TYPES: tuple[RecordType, ...] = (ActiveLab, ActiveOSContainer)


@dataclass
class ReconcileReport:
    """Outcome of one pass over one record type."""

    record_type: str
    checked: int = 0
    pruned: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_type": self.record_type,
            "checked": self.checked,
            "pruned": list(self.pruned),
            "expired": list(self.expired),
            "deferred": list(self.deferred),
            "errors": dict(self.errors),
        }


def _category(record_type: RecordType) -> str:
    return "os" if record_type is ActiveOSContainer else "lab"


class StatusReconciler:
    def __init__(
        self,
        store: RecordStore,
        orchestrator: OrchestratorAdapter,
        *,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.metrics = metrics
        self._clock = clock

    async def reconcile(
        self,
        record_type: RecordType,
        user_id: str | None = None,
        *,
        teardown: bool = True,
    ) -> ReconcileReport:
        """Prune records of ``record_type`` (optionally one user's) that are stale."""
        if user_id is None:
            records = await self.store.get_all(record_type)
        else:
            records = await self.store.get_by_user(record_type, user_id)

        report = ReconcileReport(record_type=_category(record_type))
        now = self._clock()
        for record in records:
            report.checked += 1
            try:
                if record.is_expired(now):
                    if not teardown:
                        report.deferred.append(record.pod_name)
                        continue
                    await self.orchestrator.delete_instance(record.namespace, record.pod_name)
                    await self.store.delete(record_type, record.pod_name)
                    report.expired.append(record.pod_name)
                    self._count(record_type, "expired")
                    log.info(
                        "record_expired",
                        pod_name=record.pod_name,
                        user_id=record.user_id,
                        expires_at=record.expires_at.isoformat() if record.expires_at else None,
                    )
                    continue

                state = await self.orchestrator.get_workload_state(record.namespace, record.pod_name)
                if state is WorkloadState.RUNNING:
                    continue
                if state is WorkloadState.FAILED:
                    if not teardown:
                        report.deferred.append(record.pod_name)
                        continue
                    await self.orchestrator.delete_instance(record.namespace, record.pod_name)
                await self.store.delete(record_type, record.pod_name)
                report.pruned.append(record.pod_name)
                self._count(record_type, state.value)
                log.info(
                    "stale_record_pruned",
                    pod_name=record.pod_name,
                    user_id=record.user_id,
                    state=state.value,
                )
            except Exception as exc:  # noqa: BLE001
                report.errors[record.pod_name] = str(exc) or type(exc).__name__
                log.warning(
                    "reconcile_record_failed",
                    pod_name=record.pod_name,
                    user_id=record.user_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )

        if report.pruned or report.expired or report.errors:
            log.info("reconcile_completed", **report.to_dict())
        return report

    async def reconcile_all(self) -> list[ReconcileReport]:
        return [await self.reconcile(record_type) for record_type in RECORD_TYPES]

    async def run_forever(self, interval: float, stop: asyncio.Event | None = None) -> None:
        """Reconcile every ``interval`` seconds until ``stop`` is set or cancelled."""
        stop = stop or asyncio.Event()
        log.info("reconciler_started", interval_seconds=interval)
        while not stop.is_set():
            try:
                await self.reconcile_all()
            except Exception:  # noqa: BLE001
                log.exception("reconcile_pass_failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except TimeoutError:
                continue
        log.info("reconciler_stopped")

    def _count(self, record_type: RecordType, reason: str) -> None:
        if self.metrics is not None:
            self.metrics.record_pruned(_category(record_type), reason)
