"""Tests for the kubectl-backed cluster client."""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from kube_migrate.core.cluster import (
    KubectlClient,
    parse_pod,
    parse_storage_binding,
    parse_workload,
    strip_server_fields,
)
from kube_migrate.core.config_loader import KubectlConfig
from kube_migrate.core.exceptions import (
    ClusterCommandError,
    ClusterTimeoutError,
    ConfigurationError,
)

from .conftest import FakeCluster

DEPLOYMENT_JSON = {
    "kind": "Deployment",
    "metadata": {"name": "mongodb-deployment", "namespace": "chat-app"},
    "spec": {
        "replicas": 1,
        "selector": {"matchLabels": {"app": "mongodb-deployment"}},
        "template": {
            "spec": {
                "containers": [{"name": "chatapp-mongodb", "image": "mongo:latest"}],
                "volumes": [
                    {"name": "data", "persistentVolumeClaim": {"claimName": "mongodb-pvc"}},
                    {"name": "tmp", "emptyDir": {}},
                ],
            }
        },
    },
    "status": {"readyReplicas": 1},
}


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> MagicMock:
    result = MagicMock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


@pytest.fixture
def client(timeouts) -> KubectlClient:
    with patch("kube_migrate.core.cluster.shutil.which", return_value="/usr/bin/kubectl"):
        return KubectlClient(
            "chat-app", KubectlConfig(context="staging", kubeconfig="/tmp/kubeconfig"), timeouts
        )


class TestParsing:
    """JSON to model conversion."""

    def test_parse_workload(self):
        workload = parse_workload(DEPLOYMENT_JSON)

        assert workload.kind == "deployment"
        assert workload.name == "mongodb-deployment"
        assert workload.replicas == 1
        assert workload.ready_replicas == 1
        assert workload.container == "chatapp-mongodb"
        assert workload.selector == {"app": "mongodb-deployment"}
        assert workload.claim_names == ["mongodb-pvc"]

    def test_parse_statefulset_claim_templates(self):
        payload = {
            "kind": "StatefulSet",
            "metadata": {"name": "mongodb"},
            "spec": {"replicas": 1, "volumeClaimTemplates": [{"metadata": {"name": "mongodb-storage"}}]},
            "status": {},
        }

        workload = parse_workload(payload)

        assert workload.kind == "statefulset"
        assert workload.ready_replicas == 0
        assert workload.claim_names == ["mongodb-storage"]

    def test_terminating_pod_is_not_ready(self):
        payload = {
            "metadata": {"name": "p", "deletionTimestamp": "2024-01-01T00:00:00Z"},
            "status": {"phase": "Running", "conditions": [{"type": "Ready", "status": "True"}]},
        }

        assert parse_pod(payload).ready is False

    def test_ready_pod(self):
        payload = {
            "metadata": {"name": "p", "labels": {"app": "mongodb"}},
            "status": {"phase": "Running", "conditions": [{"type": "Ready", "status": "True"}]},
        }

        pod = parse_pod(payload)

        assert pod.ready is True
        assert pod.labels == {"app": "mongodb"}

    def test_parse_storage_binding(self):
        payload = {
            "metadata": {
                "name": "mongodb-storage-mongodb-0",
                "ownerReferences": [{"name": "mongodb"}],
            },
            "spec": {"volumeName": "pvc-123", "accessModes": ["ReadWriteOnce"]},
            "status": {"phase": "Bound", "capacity": {"storage": "1Gi"}},
        }

        binding = parse_storage_binding(payload)

        assert binding.volume_name == "pvc-123"
        assert binding.capacity == "1Gi"
        assert binding.owner == "mongodb"

    def test_strip_server_fields(self):
        payload = {
            "kind": "PersistentVolumeClaim",
            "metadata": {
                "name": "mongodb-pvc",
                "uid": "abc",
                "resourceVersion": "12",
                "annotations": {"kubectl.kubernetes.io/last-applied-configuration": "{}"},
            },
            "spec": {"volumeName": "mongodb-pv"},
            "status": {"phase": "Bound"},
        }

        cleaned = strip_server_fields(payload)

        assert "status" not in cleaned
        assert cleaned["metadata"] == {"name": "mongodb-pvc"}
        assert cleaned["spec"] == {"volumeName": "mongodb-pv"}
        assert payload["metadata"]["uid"] == "abc"

    def test_strip_server_fields_releases_volume_claim_ref(self):
        payload = {
            "kind": "PersistentVolume",
            "metadata": {"name": "mongodb-pv", "uid": "pv-uid"},
            "spec": {
                "capacity": {"storage": "1Gi"},
                "persistentVolumeReclaimPolicy": "Retain",
                "claimRef": {
                    "kind": "PersistentVolumeClaim",
                    "namespace": "chat-app",
                    "name": "mongodb-pvc",
                    "uid": "old-uid",
                    "resourceVersion": "42",
                },
            },
            "status": {"phase": "Bound"},
        }

        cleaned = strip_server_fields(payload)

        assert cleaned["spec"]["claimRef"] == {
            "kind": "PersistentVolumeClaim",
            "namespace": "chat-app",
            "name": "mongodb-pvc",
        }
        assert cleaned["spec"]["persistentVolumeReclaimPolicy"] == "Retain"
        assert payload["spec"]["claimRef"]["uid"] == "old-uid"


class TestKubectlClient:
    """Command construction and error mapping."""

    @pytest.mark.asyncio
    async def test_get_workload_builds_namespaced_command(self, client):
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.return_value = completed(stdout=json.dumps(DEPLOYMENT_JSON))

            workload = await client.get_workload("deployment", "mongodb-deployment")

        assert workload.name == "mongodb-deployment"
        cmd = mock_run.call_args[0][0]
        assert cmd == [
            "/usr/bin/kubectl",
            "--kubeconfig",
            "/tmp/kubeconfig",
            "--context",
            "staging",
            "--namespace",
            "chat-app",
            "get",
            "deployment",
            "mongodb-deployment",
            "--output",
            "json",
        ]

    @pytest.mark.asyncio
    async def test_missing_object_returns_none(self, client):
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.return_value = completed(
                1, stderr='Error from server (NotFound): deployments.apps "x" not found'
            )

            assert await client.get_workload("deployment", "x") is None

    @pytest.mark.asyncio
    async def test_command_failure_raises(self, client):
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.return_value = completed(1, stderr="Unable to connect to the server")

            with pytest.raises(ClusterCommandError, match="Unable to connect"):
                await client.get_workload("deployment", "mongodb-deployment")

    @pytest.mark.asyncio
    async def test_timeout_raises_cluster_timeout(self, client):
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.side_effect = subprocess.TimeoutExpired(cmd="kubectl", timeout=5)

            with pytest.raises(ClusterTimeoutError):
                await client.get_pod("mongodb-0")

    @pytest.mark.asyncio
    async def test_missing_binary_is_configuration_error(self, client):
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.side_effect = FileNotFoundError("kubectl")

            with pytest.raises(ConfigurationError, match="not installed"):
                await client.get_pod("mongodb-0")

    @pytest.mark.asyncio
    async def test_persistent_volume_is_cluster_scoped(self, client):
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.return_value = completed(stdout="pv/mongodb-pv\n")

            deleted = await client.delete("pv", "mongodb-pv")

        assert deleted is True
        cmd = mock_run.call_args[0][0]
        assert "--namespace" not in cmd
        assert "--ignore-not-found" in cmd

    @pytest.mark.asyncio
    async def test_delete_missing_object_reports_false(self, client):
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.return_value = completed(stdout="")

            assert await client.delete("pvc", "mongodb-pvc") is False

    @pytest.mark.asyncio
    async def test_scale(self, client):
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.return_value = completed()

            await client.scale("deployment", "mongodb-deployment", 0)

        cmd = mock_run.call_args[0][0]
        assert cmd[-3:] == ["scale", "deployment/mongodb-deployment", "--replicas=0"]

    @pytest.mark.asyncio
    async def test_scale_failure_raises(self, client):
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.return_value = completed(1, stderr="forbidden")

            with pytest.raises(ClusterCommandError, match="forbidden"):
                await client.scale("deployment", "mongodb-deployment", 0)

    @pytest.mark.asyncio
    async def test_apply_sends_yaml_on_stdin(self, client):
        manifests = [{"apiVersion": "v1", "kind": "Service", "metadata": {"name": "mongodb-service"}}]
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.return_value = completed(stdout="service/mongodb-service\n")

            applied = await client.apply(manifests)

        assert applied == ["service/mongodb-service"]
        assert "name: mongodb-service" in mock_run.call_args.kwargs["input"]

    @pytest.mark.asyncio
    async def test_export_strips_server_fields(self, client):
        payload = dict(DEPLOYMENT_JSON, metadata={"name": "mongodb-deployment", "uid": "abc"})
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.return_value = completed(stdout=json.dumps(payload))

            exported = await client.export("deployment", "mongodb-deployment")

        assert "uid" not in exported
        assert "readyReplicas" not in exported
        assert "name: mongodb-deployment" in exported

    @pytest.mark.asyncio
    async def test_exec_streams_stdout_to_file(self, client, tmp_path):
        destination = tmp_path / "dump.archive.gz"
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.return_value = completed(stdout=None, stderr=b"")

            result = await client.exec(
                "mongodb-0", ["sh", "-c", "mongodump --archive"], container="mongodb",
                stdout_path=destination,
            )

        assert result.ok
        cmd = mock_run.call_args[0][0]
        assert cmd[-8:] == [
            "exec", "mongodb-0", "--container", "mongodb", "--", "sh", "-c", "mongodump --archive"
        ]
        assert mock_run.call_args.kwargs["stdout"] is not None
        assert destination.exists()

    @pytest.mark.asyncio
    async def test_exec_with_stdin_adds_flag(self, client, tmp_path):
        source = tmp_path / "dump.archive.gz"
        source.write_bytes(b"archive")
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.return_value = completed(stdout=b"", stderr=b"")

            await client.exec("mongodb-0", ["mongorestore"], stdin_path=source)

        cmd = mock_run.call_args[0][0]
        assert cmd[cmd.index("exec") + 1] == "--stdin"

    @pytest.mark.asyncio
    async def test_cluster_reachable(self, client):
        with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
            mock_run.return_value = completed(1, stderr="connection refused")

            assert await client.cluster_reachable() is False


class TestWaits:
    """Polling helpers shared by every client."""

    @pytest.mark.asyncio
    async def test_wait_for_pod_ready_times_out(self, timeouts):
        cluster = FakeCluster(timeouts=timeouts)

        with pytest.raises(ClusterTimeoutError, match="NotFound"):
            await cluster.wait_for_pod_ready("mongodb-0")

    @pytest.mark.asyncio
    async def test_wait_for_pods_deleted_returns_when_gone(self, timeouts):
        cluster = FakeCluster(timeouts=timeouts)

        await cluster.wait_for_pods_deleted("app=mongodb-deployment")

    @pytest.mark.asyncio
    async def test_wait_for_pods_deleted_times_out(self, timeouts):
        cluster = FakeCluster(timeouts=timeouts)
        cluster.add_legacy()

        with pytest.raises(ClusterTimeoutError, match="still present"):
            await cluster.wait_for_pods_deleted("app=mongodb-deployment")


@pytest.mark.asyncio
async def test_get_storage_binding(client):
    payload = {
        "metadata": {"name": "mongodb-pvc", "namespace": "chat-app"},
        "spec": {"volumeName": "mongodb-pv", "resources": {"requests": {"storage": "1Gi"}}},
        "status": {"phase": "Bound"},
    }
    with patch("kube_migrate.core.cluster.subprocess.run") as mock_run:
        mock_run.return_value = completed(stdout=json.dumps(payload))

        binding = await client.get_storage_binding("mongodb-pvc")

    assert binding.volume_name == "mongodb-pv"
    assert binding.capacity == "1Gi"
    assert binding.phase == "Bound"
