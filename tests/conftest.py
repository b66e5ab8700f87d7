"""Shared pytest fixtures for kube-migrate tests."""

import json
from pathlib import Path
from typing import Any

import pytest
import yaml

from kube_migrate.core.cluster import ClusterClient
from kube_migrate.core.config_loader import MigrationConfig
from kube_migrate.core.exceptions import BackupError, ClusterCommandError
from kube_migrate.core.settings import TimeoutSettings
from kube_migrate.models.cluster import (
    ExecResult,
    InstanceRef,
    PodInfo,
    SecretInfo,
    ServiceInfo,
    StorageBinding,
    WorkloadInfo,
)
from kube_migrate.models.enums import AdminErrorKind
from kube_migrate.services.migration import MigrationService
from kube_migrate.utils import selector_from_labels

NAMESPACE = "chat-app"
LEGACY_POD = "mongodb-deployment-7d9f8-abcde"
MANAGED_POD = "mongodb-0"

MUTATING_OPERATIONS = {"scale", "delete", "apply"}


class FakeCluster(ClusterClient):
    """In-memory cluster recording every call in order."""

    def __init__(self, namespace: str = NAMESPACE, timeouts: TimeoutSettings | None = None):
        super().__init__(namespace, timeouts)
        self.workloads: dict[tuple[str, str], WorkloadInfo] = {}
        self.pods: dict[str, PodInfo] = {}
        self.claims: dict[str, StorageBinding] = {}
        self.volumes: set[str] = set()
        self.services: dict[str, ServiceInfo] = {}
        self.secrets: dict[str, SecretInfo] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.managed_becomes_ready = True
        self.legacy_pods_terminate = True
        self.fail_delete: set[tuple[str, str]] = set()
        self.reachable = True

    # -- seeding helpers -------------------------------------------------
    def add_legacy(self, replicas: int = 1, ready: bool = True) -> None:
        self.workloads[("deployment", "mongodb-deployment")] = WorkloadInfo(
            kind="deployment",
            name="mongodb-deployment",
            namespace=self.namespace,
            replicas=replicas,
            ready_replicas=replicas if ready else 0,
            image="mongo:latest",
            container="chatapp-mongodb",
            selector={"app": "mongodb-deployment"},
            claim_names=["mongodb-pvc"],
        )
        if replicas:
            self.pods[LEGACY_POD] = PodInfo(
                name=LEGACY_POD,
                namespace=self.namespace,
                phase="Running",
                ready=ready,
                labels={"app": "mongodb-deployment"},
            )
        self.claims["mongodb-pvc"] = StorageBinding(
            claim_name="mongodb-pvc",
            namespace=self.namespace,
            volume_name="mongodb-pv",
            capacity="1Gi",
            access_modes=["ReadWriteOnce"],
            phase="Bound",
        )
        self.volumes.add("mongodb-pv")

    def add_credentials(self, keys: tuple[str, ...] = ("password", "username")) -> None:
        self.secrets["mongodb-credentials"] = SecretInfo(
            name="mongodb-credentials", namespace=self.namespace, keys=list(keys)
        )

    def add_managed(self) -> None:
        self.workloads[("statefulset", "mongodb")] = WorkloadInfo(
            kind="statefulset",
            name="mongodb",
            namespace=self.namespace,
            replicas=1,
            ready_replicas=1,
            image="mongo:7.0",
            container="mongodb",
            selector={"app": "mongodb"},
            claim_names=["mongodb-storage"],
        )
        self.pods[MANAGED_POD] = PodInfo(
            name=MANAGED_POD, namespace=self.namespace, phase="Running", ready=True,
            labels={"app": "mongodb"},
        )

    # -- introspection ---------------------------------------------------
    @property
    def mutations(self) -> list[tuple[str, tuple[Any, ...]]]:
        return [call for call in self.calls if call[0] in MUTATING_OPERATIONS]

    def index_of(self, operation: str, *args: Any) -> int:
        for index, call in enumerate(self.calls):
            if call[0] == operation and call[1][: len(args)] == args:
                return index
        return -1

    @staticmethod
    def _matches(labels: dict[str, str], selector: str) -> bool:
        wanted = dict(part.split("=", 1) for part in selector.split(",") if part)
        return all(labels.get(key) == value for key, value in wanted.items())

    # -- ClusterClient ---------------------------------------------------
    async def get_workload(self, kind: str, name: str) -> WorkloadInfo | None:
        self.calls.append(("get_workload", (kind, name)))
        if not self.reachable:
            raise ClusterCommandError("Unable to connect to the server")
        return self.workloads.get((kind, name))

    async def list_pods(self, selector: str) -> list[PodInfo]:
        self.calls.append(("list_pods", (selector,)))
        return [pod for pod in self.pods.values() if self._matches(pod.labels, selector)]

    async def get_pod(self, name: str) -> PodInfo | None:
        self.calls.append(("get_pod", (name,)))
        return self.pods.get(name)

    async def get_storage_binding(self, claim: str) -> StorageBinding | None:
        self.calls.append(("get_storage_binding", (claim,)))
        return self.claims.get(claim)

    async def list_storage_bindings(self, selector: str | None = None) -> list[StorageBinding]:
        self.calls.append(("list_storage_bindings", (selector,)))
        return list(self.claims.values())

    async def get_service(self, name: str) -> ServiceInfo | None:
        return self.services.get(name)

    async def get_secret(self, name: str) -> SecretInfo | None:
        return self.secrets.get(name)

    async def scale(self, kind: str, name: str, replicas: int) -> None:
        self.calls.append(("scale", (kind, name, replicas)))
        workload = self.workloads[(kind, name)]
        workload.replicas = replicas
        if replicas == 0 and self.legacy_pods_terminate:
            for pod_name, pod in list(self.pods.items()):
                if self._matches(pod.labels, selector_from_labels(workload.selector)):
                    del self.pods[pod_name]

    async def delete(self, kind: str, name: str) -> bool:
        self.calls.append(("delete", (kind, name)))
        if (kind, name) in self.fail_delete:
            raise ClusterCommandError(f"Failed to delete {kind}/{name}: forbidden")
        if kind == "pvc":
            return self.claims.pop(name, None) is not None
        if kind == "pv":
            existed = name in self.volumes
            self.volumes.discard(name)
            return existed
        return self.workloads.pop((kind, name), None) is not None

    async def apply(self, manifests: list[dict[str, Any]]) -> list[str]:
        self.calls.append(("apply", (tuple(doc["kind"] for doc in manifests),)))
        applied = []
        for doc in manifests:
            name = doc["metadata"]["name"]
            if doc["kind"] == "Service":
                self.services[name] = ServiceInfo(
                    name=name,
                    namespace=self.namespace,
                    cluster_ip=doc["spec"].get("clusterIP", "10.0.0.10"),
                    ports=[port["port"] for port in doc["spec"]["ports"]],
                )
            elif doc["kind"] == "StatefulSet":
                spec = doc["spec"]
                # Pods stay in CreateContainerConfigError without their credentials
                ready = self.managed_becomes_ready and "mongodb-credentials" in self.secrets
                template = spec["volumeClaimTemplates"][0]["metadata"]["name"]
                self.workloads[("statefulset", name)] = WorkloadInfo(
                    kind="statefulset",
                    name=name,
                    namespace=self.namespace,
                    replicas=spec["replicas"],
                    selector=spec["selector"]["matchLabels"],
                    container=spec["template"]["spec"]["containers"][0]["name"],
                    image=spec["template"]["spec"]["containers"][0]["image"],
                    claim_names=[template],
                )
                self.pods[f"{name}-0"] = PodInfo(
                    name=f"{name}-0",
                    namespace=self.namespace,
                    phase="Running" if ready else "Pending",
                    ready=ready,
                    labels=spec["template"]["metadata"]["labels"],
                )
                self.claims[f"{template}-{name}-0"] = StorageBinding(
                    claim_name=f"{template}-{name}-0",
                    namespace=self.namespace,
                    volume_name="pvc-1234",
                    capacity="1Gi",
                    phase="Bound",
                    owner=name,
                )
            applied.append(f"{doc['kind'].lower()}/{name}")
        return applied

    async def export(self, kind: str, name: str) -> str | None:
        self.calls.append(("export", (kind, name)))
        exists = (
            (kind == "pvc" and name in self.claims)
            or (kind == "pv" and name in self.volumes)
            or (kind, name) in self.workloads
        )
        if not exists:
            return None
        return yaml.safe_dump({"kind": kind, "metadata": {"name": name}})

    async def exec(self, pod, command, container=None, stdin_path=None, stdout_path=None, timeout=None):
        self.calls.append(("exec", (pod, tuple(command))))
        return ExecResult(returncode=0)

    async def cluster_reachable(self) -> bool:
        return self.reachable


class FakeAdminChannel:
    """MongoDB stand-in keeping records per pod; dumps are JSON files."""

    def __init__(self, cluster: FakeCluster):
        self.cluster = cluster
        self.records: dict[str, list[dict[str, Any]]] = {}
        self.count_error: BackupError | None = None
        self.dump_error: BackupError | None = None
        self.restore_error: BackupError | None = None
        self.ping_failures = 0
        self.ping_error_kind = AdminErrorKind.UNREACHABLE
        self.calls: list[tuple[str, str]] = []

    def _require_pod(self, instance: InstanceRef, operation: str) -> None:
        pod = self.cluster.pods.get(instance.pod)
        if pod is None or not pod.ready:
            raise BackupError(
                f"{operation} failed on {instance}: pods \"{instance.pod}\" not found",
                AdminErrorKind.UNREACHABLE,
            )

    async def ping(self, instance: InstanceRef) -> None:
        self.calls.append(("ping", instance.pod))
        if self.ping_failures:
            self.ping_failures -= 1
            raise BackupError("ping failed: connection refused", self.ping_error_kind)
        self._require_pod(instance, "ping")

    async def count_user_databases(self, instance: InstanceRef) -> int:
        self.calls.append(("count", instance.pod))
        if self.count_error:
            raise self.count_error
        self._require_pod(instance, "list databases")
        return 1 if self.records.get(instance.pod) else 0

    async def dump(self, instance: InstanceRef, destination: Path, timeout: int | None = None) -> None:
        self.calls.append(("dump", instance.pod))
        self.cluster.calls.append(("dump", (instance.pod,)))
        if self.dump_error:
            destination.write_bytes(b"partial")
            raise self.dump_error
        self._require_pod(instance, "dump")
        destination.write_text(json.dumps(self.records.get(instance.pod, [])))

    async def restore(self, instance: InstanceRef, source: Path, timeout: int | None = None) -> None:
        self.calls.append(("restore", instance.pod))
        self.cluster.calls.append(("restore", (instance.pod,)))
        if self.restore_error:
            raise self.restore_error
        self._require_pod(instance, "restore")
        self.records[instance.pod] = json.loads(source.read_text())


@pytest.fixture
def timeouts() -> TimeoutSettings:
    """Timeouts short enough that no test sleeps noticeably."""
    return TimeoutSettings(
        kubectl_timeout=5,
        backup_timeout=5,
        termination_timeout=0.05,
        ready_timeout=0.05,
        poll_interval=0.01,
        probe_attempts=3,
        probe_backoff=0.0,
        probe_backoff_max=0.0,
        admin_max_retries=2,
        admin_retry_backoff=0.0,
    )


@pytest.fixture
def config(tmp_path: Path, timeouts: TimeoutSettings) -> MigrationConfig:
    """Configuration matching the reference deployment, writing into tmp_path."""
    return MigrationConfig(
        namespace=NAMESPACE,
        backup_dir=str(tmp_path / "backups"),
        timeouts=timeouts,
    )


@pytest.fixture
def cluster(timeouts: TimeoutSettings) -> FakeCluster:
    """Empty namespace holding only the credentials Secret."""
    cluster = FakeCluster(timeouts=timeouts)
    cluster.add_credentials()
    return cluster


@pytest.fixture
def admin(cluster: FakeCluster) -> FakeAdminChannel:
    return FakeAdminChannel(cluster)


@pytest.fixture
def service(config: MigrationConfig, cluster: FakeCluster, admin: FakeAdminChannel) -> MigrationService:
    return MigrationService(config, cluster=cluster, admin=admin)


@pytest.fixture
def chat_records() -> list[dict[str, Any]]:
    return [
        {"_id": 1, "sender": "alice", "text": "hello"},
        {"_id": 2, "sender": "bob", "text": "hi alice"},
        {"_id": 3, "sender": "alice", "text": "moving to a statefulset"},
    ]
