"""Cluster resource models as seen through the Cluster Client."""

from typing import Any

from pydantic import BaseModel, Field


class KubeModel(BaseModel):
    """Base model with common kube-migrate settings."""

    def model_dump(self, **kwargs) -> dict[str, Any]:
        """Convert to dict with exclude_none by default."""
        kwargs.setdefault("exclude_none", True)
        return super().model_dump(**kwargs)


class InstanceRef(KubeModel):
    """A single database instance reachable through kubectl exec."""

    namespace: str
    pod: str
    container: str | None = None

    def __str__(self) -> str:
        return f"{self.namespace}/{self.pod}"


class WorkloadInfo(KubeModel):
    """Workload object (Deployment or StatefulSet)."""

    kind: str
    name: str
    namespace: str
    replicas: int = 0
    ready_replicas: int = 0
    image: str | None = None
    container: str | None = None
    selector: dict[str, str] = Field(default_factory=dict)
    claim_names: list[str] = Field(default_factory=list)


class PodInfo(KubeModel):
    """Pod object with readiness condition."""

    name: str
    namespace: str
    phase: str | None = None
    ready: bool = False
    labels: dict[str, str] = Field(default_factory=dict)


class StorageBinding(KubeModel):
    """Relation between a workload and its durable volume (PVC + bound PV)."""

    claim_name: str
    namespace: str
    volume_name: str | None = None
    capacity: str | None = None
    access_modes: list[str] = Field(default_factory=list)
    storage_class: str | None = None
    phase: str | None = None
    owner: str | None = None


class ServiceInfo(KubeModel):
    """Service object exposing the database."""

    name: str
    namespace: str
    cluster_ip: str | None = None
    ports: list[int] = Field(default_factory=list)

    @property
    def headless(self) -> bool:
        return self.cluster_ip == "None"


class SecretInfo(KubeModel):
    """Secret metadata. Values are never read into the controller."""

    name: str
    namespace: str
    keys: list[str] = Field(default_factory=list)


class ExecResult(KubeModel):
    """Outcome of a command executed inside a pod."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class TopologyStatus(KubeModel):
    """Snapshot of everything the controller knows about the logical database."""

    topology: str
    namespace: str
    legacy_workload: WorkloadInfo | None = None
    managed_workload: WorkloadInfo | None = None
    pods: list[PodInfo] = Field(default_factory=list)
    storage_bindings: list[StorageBinding] = Field(default_factory=list)
    services: list[ServiceInfo] = Field(default_factory=list)
    credentials_secret: SecretInfo | None = None
    legacy_volume_present: bool = False
