"""Orchestrator adapters."""

from hacklab.orchestrator.base import OrchestratorAdapter, ProbeSpec, WorkloadSpec
from hacklab.orchestrator.kubernetes import KubernetesAdapter


__all__ = [
    "KubernetesAdapter",
    "OrchestratorAdapter",
    "ProbeSpec",
    "WorkloadSpec",
]
