"""Data models for kube-migrate."""

from .cluster import (  # noqa: F401
    ExecResult,
    InstanceRef,
    PodInfo,
    SecretInfo,
    ServiceInfo,
    StorageBinding,
    TopologyStatus,
    WorkloadInfo,
)
from .enums import (  # noqa: F401
    AdminErrorKind,
    FailureKind,
    MigrateAction,
    MigrationPhase,
    WorkloadTopology,
)
from .migration import BackupArtifact, MigrationAttempt, PhaseRecord  # noqa: F401

__all__ = [
    # Cluster models
    "ExecResult",
    "InstanceRef",
    "PodInfo",
    "SecretInfo",
    "ServiceInfo",
    "StorageBinding",
    "TopologyStatus",
    "WorkloadInfo",
    # Enums
    "AdminErrorKind",
    "FailureKind",
    "MigrateAction",
    "MigrationPhase",
    "WorkloadTopology",
    # Migration models
    "BackupArtifact",
    "MigrationAttempt",
    "PhaseRecord",
]
