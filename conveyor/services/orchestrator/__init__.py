"""Container orchestrator interface and its Kubernetes implementation."""

from conveyor.services.orchestrator.base import (
    ClaimSpec,
    ClaimStatus,
    IngressSpec,
    NetworkServiceSpec,
    Orchestrator,
    VolumeMount,
    WorkloadSpec,
    WorkloadStatus,
)

__all__ = [
    "ClaimSpec",
    "ClaimStatus",
    "IngressSpec",
    "NetworkServiceSpec",
    "Orchestrator",
    "VolumeMount",
    "WorkloadSpec",
    "WorkloadStatus",
]
