"""Core exceptions for kube-migrate operations."""

from ..models.enums import AdminErrorKind


class KubeMigrateError(Exception):
    """Base exception for kube-migrate operations."""


class ConfigurationError(KubeMigrateError):
    """Configuration, credentials or tooling are unusable. Never retried."""


class ClusterCommandError(KubeMigrateError):
    """kubectl command execution failed."""


class ClusterTimeoutError(ClusterCommandError):
    """A bounded wait against the cluster ran out of time."""


class TransientInfraError(KubeMigrateError):
    """Database instance stayed unreachable after bounded retries."""


class DataIntegrityRiskError(KubeMigrateError):
    """Backup failed on a source that may hold data."""


class PostCutoverDegradationError(KubeMigrateError):
    """A step failed after the legacy instance had already been stopped."""


class BackupError(KubeMigrateError):
    """Administrative data channel command failed."""

    def __init__(self, message: str, kind: AdminErrorKind = AdminErrorKind.DATA_ERROR):
        super().__init__(message)
        self.kind = kind
