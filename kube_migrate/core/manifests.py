"""Managed topology manifests.

Renders the StatefulSet, headless Service and client Service that replace the
legacy Deployment, or loads an operator-supplied manifest file instead.
Credentials are referenced through ``secretKeyRef`` only.
"""

from pathlib import Path
from typing import Any

import structlog
import yaml

from .config_loader import MigrationConfig
from .exceptions import ConfigurationError

logger = structlog.get_logger()

DATA_MOUNT_PATH = "/data/db"


def build_managed_manifests(config: MigrationConfig) -> list[dict[str, Any]]:
    """Return the manifests of the managed topology.

    When ``managed.manifest_path`` is configured the file is loaded as-is and
    must contain a StatefulSet named ``managed.statefulset``.
    """
    if config.managed.manifest_path:
        return load_manifest_file(Path(config.managed.manifest_path), config)

    return [
        _headless_service(config),
        _client_service(config),
        _statefulset(config),
    ]


def load_manifest_file(path: Path, config: MigrationConfig) -> list[dict[str, Any]]:
    """Load a multi-document YAML manifest file."""
    if not path.exists():
        raise ConfigurationError(f"Managed manifest file not found: {path}")
    try:
        documents = [doc for doc in yaml.safe_load_all(path.read_text()) if doc]
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse manifest file {path}: {e}") from e

    statefulsets = [
        doc
        for doc in documents
        if doc.get("kind") == "StatefulSet"
        and doc.get("metadata", {}).get("name") == config.managed.statefulset
    ]
    if not statefulsets:
        raise ConfigurationError(
            f"Manifest file {path} does not define StatefulSet '{config.managed.statefulset}'"
        )

    for doc in documents:
        doc.setdefault("metadata", {}).setdefault("namespace", config.namespace)
    logger.debug("Loaded managed manifests", path=str(path), documents=len(documents))
    return documents


def _headless_service(config: MigrationConfig) -> dict[str, Any]:
    managed = config.managed
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": managed.headless_service,
            "namespace": config.namespace,
            "labels": dict(managed.labels),
        },
        "spec": {
            "clusterIP": "None",
            "selector": dict(managed.labels),
            "ports": [{"name": "mongodb", "port": config.database.port}],
        },
    }


def _client_service(config: MigrationConfig) -> dict[str, Any]:
    managed = config.managed
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": managed.service,
            "namespace": config.namespace,
            "labels": dict(managed.labels),
        },
        "spec": {
            "type": "ClusterIP",
            "selector": dict(managed.labels),
            "ports": [
                {
                    "name": "mongodb",
                    "port": config.database.port,
                    "targetPort": config.database.port,
                }
            ],
        },
    }


def _credential_env(config: MigrationConfig) -> list[dict[str, Any]]:
    database = config.database
    return [
        {
            "name": env_name,
            "valueFrom": {
                "secretKeyRef": {"name": database.credentials_secret, "key": secret_key}
            },
        }
        for env_name, secret_key in (
            (database.username_env, database.username_key),
            (database.password_env, database.password_key),
        )
    ]


def _statefulset(config: MigrationConfig) -> dict[str, Any]:
    managed = config.managed
    database = config.database
    ping = [
        database.shell,
        "--quiet",
        "--eval",
        "db.adminCommand('ping')",
    ]

    claim_spec: dict[str, Any] = {
        "accessModes": ["ReadWriteOnce"],
        "resources": {"requests": {"storage": managed.storage_size}},
    }
    if managed.storage_class:
        claim_spec["storageClassName"] = managed.storage_class

    return {
        "apiVersion": "apps/v1",
        "kind": "StatefulSet",
        "metadata": {
            "name": managed.statefulset,
            "namespace": config.namespace,
            "labels": dict(managed.labels),
        },
        "spec": {
            "serviceName": managed.headless_service,
            "replicas": managed.replicas,
            "selector": {"matchLabels": dict(managed.labels)},
            "template": {
                "metadata": {"labels": dict(managed.labels)},
                "spec": {
                    "containers": [
                        {
                            "name": managed.container,
                            "image": managed.image,
                            "ports": [{"name": "mongodb", "containerPort": database.port}],
                            "env": _credential_env(config),
                            "volumeMounts": [
                                {"name": managed.claim_template, "mountPath": DATA_MOUNT_PATH}
                            ],
                            "readinessProbe": {
                                "exec": {"command": ping},
                                "initialDelaySeconds": 5,
                                "periodSeconds": 10,
                            },
                            "livenessProbe": {
                                "exec": {"command": ping},
                                "initialDelaySeconds": 30,
                                "periodSeconds": 20,
                            },
                        }
                    ]
                },
            },
            "volumeClaimTemplates": [
                {"metadata": {"name": managed.claim_template}, "spec": claim_spec}
            ],
        },
    }
