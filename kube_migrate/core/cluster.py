"""Cluster Client boundary.

All control-plane access goes through ``ClusterClient``. The production
implementation drives the ``kubectl`` binary; tests substitute an in-memory
cluster. Read operations return ``None`` (or an empty list) for objects that
do not exist; only genuine command failures raise.
"""

import asyncio
import json
import shutil
import subprocess
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog
import yaml

from ..models.cluster import (
    ExecResult,
    PodInfo,
    SecretInfo,
    ServiceInfo,
    StorageBinding,
    WorkloadInfo,
)
from .config_loader import KubectlConfig
from .exceptions import ClusterCommandError, ClusterTimeoutError, ConfigurationError
from .settings import TimeoutSettings

logger = structlog.get_logger()

CLUSTER_SCOPED_KINDS = {"pv", "persistentvolume", "persistentvolumes", "namespace"}

# Metadata the API server owns; stripped from exported definitions so they can be re-applied
SERVER_OWNED_METADATA = (
    "uid",
    "resourceVersion",
    "generation",
    "creationTimestamp",
    "managedFields",
    "selfLink",
)


class ClusterClient(ABC):
    """Imperative access to workload and storage objects in one namespace."""

    def __init__(self, namespace: str, timeouts: TimeoutSettings | None = None):
        self.namespace = namespace
        self.timeouts = timeouts or TimeoutSettings()
        self.logger = logger.bind(component="cluster_client", namespace=namespace)

    @abstractmethod
    async def get_workload(self, kind: str, name: str) -> WorkloadInfo | None:
        """Fetch a Deployment or StatefulSet."""

    @abstractmethod
    async def list_pods(self, selector: str) -> list[PodInfo]:
        """List pods matching a label selector."""

    @abstractmethod
    async def get_pod(self, name: str) -> PodInfo | None:
        """Fetch a single pod."""

    @abstractmethod
    async def get_storage_binding(self, claim: str) -> StorageBinding | None:
        """Fetch a PersistentVolumeClaim and the volume it binds."""

    @abstractmethod
    async def list_storage_bindings(self, selector: str | None = None) -> list[StorageBinding]:
        """List PersistentVolumeClaims, optionally filtered by label selector."""

    @abstractmethod
    async def get_service(self, name: str) -> ServiceInfo | None:
        """Fetch a Service."""

    @abstractmethod
    async def get_secret(self, name: str) -> SecretInfo | None:
        """Fetch Secret metadata (key names only)."""

    @abstractmethod
    async def scale(self, kind: str, name: str, replicas: int) -> None:
        """Set the desired replica count of a workload."""

    @abstractmethod
    async def delete(self, kind: str, name: str) -> bool:
        """Delete an object. Returns False when it did not exist."""

    @abstractmethod
    async def apply(self, manifests: list[dict[str, Any]]) -> list[str]:
        """Create or update objects from manifests. Returns applied object names."""

    @abstractmethod
    async def export(self, kind: str, name: str) -> str | None:
        """Return a re-appliable YAML definition of an object."""

    @abstractmethod
    async def exec(
        self,
        pod: str,
        command: list[str],
        container: str | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
        timeout: int | None = None,
    ) -> ExecResult:
        """Run a command inside a pod.

        With ``stdout_path`` the command's standard output is streamed into
        that local file instead of being captured; with ``stdin_path`` the
        file is streamed to the command's standard input.
        """

    @abstractmethod
    async def cluster_reachable(self) -> bool:
        """Return True when the control plane answers."""

    async def wait_for_pods_deleted(
        self, selector: str, timeout: float | None = None, interval: float | None = None
    ) -> None:
        """Poll until no pod matches ``selector``.

        Raises:
            ClusterTimeoutError: If pods are still present after ``timeout`` seconds
        """
        timeout = self.timeouts.termination_timeout if timeout is None else timeout
        interval = self.timeouts.poll_interval if interval is None else interval
        deadline = time.monotonic() + timeout

        while True:
            pods = await self.list_pods(selector)
            if not pods:
                self.logger.info("Pods terminated", selector=selector)
                return
            if time.monotonic() >= deadline:
                raise ClusterTimeoutError(
                    f"Pods matching '{selector}' still present after {timeout}s: "
                    f"{', '.join(pod.name for pod in pods)}"
                )
            self.logger.debug("Waiting for pods to terminate", remaining=len(pods))
            await asyncio.sleep(interval)

    async def wait_for_pod_ready(
        self, name: str, timeout: float | None = None, interval: float | None = None
    ) -> PodInfo:
        """Poll until pod ``name`` exists and reports the Ready condition.

        Raises:
            ClusterTimeoutError: If the pod is not ready after ``timeout`` seconds
        """
        timeout = self.timeouts.ready_timeout if timeout is None else timeout
        interval = self.timeouts.poll_interval if interval is None else interval
        deadline = time.monotonic() + timeout

        while True:
            pod = await self.get_pod(name)
            if pod is not None and pod.ready:
                self.logger.info("Pod ready", pod=name)
                return pod
            if time.monotonic() >= deadline:
                phase = pod.phase if pod else "NotFound"
                raise ClusterTimeoutError(
                    f"Pod '{name}' not ready after {timeout}s (phase: {phase})"
                )
            await asyncio.sleep(interval)


class KubectlClient(ClusterClient):
    """ClusterClient backed by the kubectl binary."""

    def __init__(
        self,
        namespace: str,
        kubectl: KubectlConfig | None = None,
        timeouts: TimeoutSettings | None = None,
    ):
        super().__init__(namespace, timeouts)
        self.kubectl = kubectl or KubectlConfig()
        self._kubectl_bin = shutil.which(self.kubectl.binary) or self.kubectl.binary

    def _build_command(self, args: list[str], namespaced: bool = True) -> list[str]:
        cmd = [self._kubectl_bin]
        if self.kubectl.kubeconfig:
            cmd.extend(["--kubeconfig", self.kubectl.kubeconfig])
        if self.kubectl.context:
            cmd.extend(["--context", self.kubectl.context])
        if namespaced:
            cmd.extend(["--namespace", self.namespace])
        return cmd + args

    async def _run_kubectl(
        self,
        args: list[str],
        namespaced: bool = True,
        timeout: int | None = None,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Safely execute a kubectl command and capture its text output."""
        cmd = self._build_command(args, namespaced)
        timeout = timeout or self.timeouts.kubectl_timeout
        self.logger.debug("exec_kubectl", cmd=cmd, timeout=timeout)
        try:
            return await asyncio.to_thread(
                subprocess.run,  # nosec B603
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"kubectl binary '{self.kubectl.binary}' is not installed or not in PATH"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise ClusterTimeoutError(
                f"kubectl {' '.join(args[:2])} timed out after {timeout} seconds"
            ) from e

    @staticmethod
    def _is_not_found(result: subprocess.CompletedProcess[str]) -> bool:
        return result.returncode != 0 and (
            "NotFound" in result.stderr or "not found" in result.stderr
        )

    async def _get_json(self, kind: str, name: str | None = None, selector: str | None = None):
        args = ["get", kind]
        if name:
            args.append(name)
        if selector:
            args.extend(["--selector", selector])
        args.extend(["--output", "json"])

        result = await self._run_kubectl(args, namespaced=kind not in CLUSTER_SCOPED_KINDS)
        if self._is_not_found(result):
            return None
        if result.returncode != 0:
            error_message = result.stderr.strip() or "unknown error"
            self.logger.error("kubectl get failed", kind=kind, name=name, error=error_message)
            raise ClusterCommandError(f"kubectl get {kind} {name or ''} failed: {error_message}")
        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise ClusterCommandError(f"kubectl returned invalid JSON for {kind}: {e}") from e

    async def get_workload(self, kind: str, name: str) -> WorkloadInfo | None:
        payload = await self._get_json(kind, name)
        return parse_workload(payload) if payload else None

    async def list_pods(self, selector: str) -> list[PodInfo]:
        payload = await self._get_json("pods", selector=selector)
        if not payload:
            return []
        return [parse_pod(item) for item in payload.get("items", [])]

    async def get_pod(self, name: str) -> PodInfo | None:
        payload = await self._get_json("pod", name)
        return parse_pod(payload) if payload else None

    async def get_storage_binding(self, claim: str) -> StorageBinding | None:
        payload = await self._get_json("pvc", claim)
        return parse_storage_binding(payload) if payload else None

    async def list_storage_bindings(self, selector: str | None = None) -> list[StorageBinding]:
        payload = await self._get_json("pvc", selector=selector)
        if not payload:
            return []
        return [parse_storage_binding(item) for item in payload.get("items", [])]

    async def get_service(self, name: str) -> ServiceInfo | None:
        payload = await self._get_json("service", name)
        if not payload:
            return None
        spec = payload.get("spec", {})
        return ServiceInfo(
            name=payload["metadata"]["name"],
            namespace=payload["metadata"].get("namespace", self.namespace),
            cluster_ip=spec.get("clusterIP"),
            ports=[port["port"] for port in spec.get("ports", []) if "port" in port],
        )

    async def get_secret(self, name: str) -> SecretInfo | None:
        payload = await self._get_json("secret", name)
        if not payload:
            return None
        return SecretInfo(
            name=payload["metadata"]["name"],
            namespace=payload["metadata"].get("namespace", self.namespace),
            keys=sorted(payload.get("data", {}) or {}),
        )

    async def scale(self, kind: str, name: str, replicas: int) -> None:
        result = await self._run_kubectl(["scale", f"{kind}/{name}", f"--replicas={replicas}"])
        if result.returncode != 0:
            raise ClusterCommandError(
                f"Failed to scale {kind}/{name} to {replicas}: {result.stderr.strip()}"
            )
        self.logger.info("Workload scaled", kind=kind, name=name, replicas=replicas)

    async def delete(self, kind: str, name: str) -> bool:
        result = await self._run_kubectl(
            [
                "delete",
                kind,
                name,
                "--ignore-not-found",
                f"--timeout={self.timeouts.kubectl_timeout}s",
            ],
            namespaced=kind not in CLUSTER_SCOPED_KINDS,
            # kubectl enforces --timeout itself; leave headroom for the API round trip
            timeout=self.timeouts.kubectl_timeout + 15,
        )
        if result.returncode != 0:
            raise ClusterCommandError(f"Failed to delete {kind}/{name}: {result.stderr.strip()}")
        deleted = bool(result.stdout.strip())
        self.logger.info("Delete issued", kind=kind, name=name, existed=deleted)
        return deleted

    async def apply(self, manifests: list[dict[str, Any]]) -> list[str]:
        document = yaml.safe_dump_all(manifests, default_flow_style=False, sort_keys=False)
        result = await self._run_kubectl(
            ["apply", "--filename", "-", "--output", "name"], input_text=document
        )
        if result.returncode != 0:
            raise ClusterCommandError(f"kubectl apply failed: {result.stderr.strip()}")
        applied = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        self.logger.info("Manifests applied", objects=applied)
        return applied

    async def export(self, kind: str, name: str) -> str | None:
        payload = await self._get_json(kind, name)
        if not payload:
            return None
        return yaml.safe_dump(strip_server_fields(payload), default_flow_style=False, sort_keys=False)

    async def exec(
        self,
        pod: str,
        command: list[str],
        container: str | None = None,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
        timeout: int | None = None,
    ) -> ExecResult:
        args = ["exec"]
        if stdin_path is not None:
            args.append("--stdin")
        args.append(pod)
        if container:
            args.extend(["--container", container])
        args.append("--")
        args.extend(command)

        if stdin_path is None and stdout_path is None:
            result = await self._run_kubectl(args, timeout=timeout)
            return ExecResult(
                returncode=result.returncode, stdout=result.stdout, stderr=result.stderr
            )

        return await asyncio.to_thread(
            self._exec_streaming, args, stdin_path, stdout_path, timeout
        )

    def _exec_streaming(
        self,
        args: list[str],
        stdin_path: Path | None,
        stdout_path: Path | None,
        timeout: int | None,
    ) -> ExecResult:
        """Run kubectl exec with binary stdin/stdout redirected to local files."""
        cmd = self._build_command(args)
        timeout = timeout or self.timeouts.backup_timeout
        self.logger.debug("exec_kubectl_streaming", cmd=cmd, stdin=stdin_path, stdout=stdout_path)

        stdin_handle = open(stdin_path, "rb") if stdin_path else None
        stdout_handle = open(stdout_path, "wb") if stdout_path else None
        try:
            result = subprocess.run(  # nosec B603
                cmd,
                stdin=stdin_handle,
                stdout=stdout_handle if stdout_handle else subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=False,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(
                f"kubectl binary '{self.kubectl.binary}' is not installed or not in PATH"
            ) from e
        except subprocess.TimeoutExpired as e:
            raise ClusterTimeoutError(f"kubectl exec timed out after {timeout} seconds") from e
        finally:
            if stdin_handle:
                stdin_handle.close()
            if stdout_handle:
                stdout_handle.close()

        stdout = result.stdout.decode("utf-8", "replace") if result.stdout else ""
        return ExecResult(
            returncode=result.returncode,
            stdout=stdout,
            stderr=(result.stderr or b"").decode("utf-8", "replace"),
        )

    async def cluster_reachable(self) -> bool:
        try:
            result = await self._run_kubectl(["cluster-info"], namespaced=False, timeout=15)
        except ClusterTimeoutError:
            return False
        return result.returncode == 0


def parse_workload(payload: dict[str, Any]) -> WorkloadInfo:
    """Build WorkloadInfo from a Deployment or StatefulSet JSON object."""
    metadata = payload.get("metadata", {})
    spec = payload.get("spec", {})
    status = payload.get("status", {})
    pod_spec = spec.get("template", {}).get("spec", {})
    containers = pod_spec.get("containers", [])

    claim_names = [
        volume["persistentVolumeClaim"]["claimName"]
        for volume in pod_spec.get("volumes", [])
        if "persistentVolumeClaim" in volume
    ]
    claim_names.extend(
        template.get("metadata", {}).get("name", "")
        for template in spec.get("volumeClaimTemplates", [])
    )

    return WorkloadInfo(
        kind=payload.get("kind", "").lower(),
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", ""),
        replicas=spec.get("replicas", 0) or 0,
        ready_replicas=status.get("readyReplicas", 0) or 0,
        image=containers[0].get("image") if containers else None,
        container=containers[0].get("name") if containers else None,
        selector=spec.get("selector", {}).get("matchLabels", {}) or {},
        claim_names=[name for name in claim_names if name],
    )


def parse_pod(payload: dict[str, Any]) -> PodInfo:
    """Build PodInfo from a Pod JSON object."""
    metadata = payload.get("metadata", {})
    status = payload.get("status", {})
    ready = any(
        condition.get("type") == "Ready" and condition.get("status") == "True"
        for condition in status.get("conditions", [])
    )
    return PodInfo(
        name=metadata.get("name", ""),
        namespace=metadata.get("namespace", ""),
        phase=status.get("phase"),
        ready=ready and metadata.get("deletionTimestamp") is None,
        labels=metadata.get("labels", {}) or {},
    )


def parse_storage_binding(payload: dict[str, Any]) -> StorageBinding:
    """Build StorageBinding from a PersistentVolumeClaim JSON object."""
    metadata = payload.get("metadata", {})
    spec = payload.get("spec", {})
    status = payload.get("status", {})
    owners = metadata.get("ownerReferences", [])
    return StorageBinding(
        claim_name=metadata.get("name", ""),
        namespace=metadata.get("namespace", ""),
        volume_name=spec.get("volumeName") or None,
        capacity=(status.get("capacity") or {}).get("storage")
        or spec.get("resources", {}).get("requests", {}).get("storage"),
        access_modes=spec.get("accessModes", []) or [],
        storage_class=spec.get("storageClassName"),
        phase=status.get("phase"),
        owner=owners[0].get("name") if owners else None,
    )


def strip_server_fields(payload: dict[str, Any]) -> dict[str, Any]:
    """Remove status and server-managed metadata so a definition can be re-applied."""
    cleaned = {key: value for key, value in payload.items() if key != "status"}
    metadata = dict(cleaned.get("metadata", {}))
    for field in SERVER_OWNED_METADATA:
        metadata.pop(field, None)
    annotations = dict(metadata.get("annotations", {}) or {})
    annotations.pop("kubectl.kubernetes.io/last-applied-configuration", None)
    if annotations:
        metadata["annotations"] = annotations
    else:
        metadata.pop("annotations", None)
    cleaned["metadata"] = metadata

    # A PV bound to the old claim uid never binds the recreated claim
    claim_ref = (cleaned.get("spec") or {}).get("claimRef")
    if payload.get("kind") == "PersistentVolume" and claim_ref:
        spec = dict(cleaned["spec"])
        spec["claimRef"] = {
            key: value
            for key, value in claim_ref.items()
            if key not in ("uid", "resourceVersion")
        }
        cleaned["spec"] = spec
    return cleaned
