"""Enum definitions for kube-migrate."""

from enum import Enum


class WorkloadTopology(Enum):
    """Deployment shape of the logical database."""

    LEGACY = "legacy"
    MANAGED = "managed"
    ABSENT = "absent"


class MigrationPhase(Enum):
    """States of the migration state machine."""

    START = "start"
    BACKING_UP = "backing_up"
    PROVISIONING = "provisioning"
    RESTORING = "restoring"
    VERIFYING = "verifying"
    CLEANING = "cleaning"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MigrationPhase.DONE, MigrationPhase.FAILED)


class FailureKind(Enum):
    """Why a migration attempt ended in the failed state."""

    TRANSIENT_INFRA = "transient_infra"
    CONFIGURATION = "configuration"
    DATA_INTEGRITY_RISK = "data_integrity_risk"
    POST_CUTOVER_DEGRADATION = "post_cutover_degradation"
    ABORTED = "aborted"


class AdminErrorKind(Enum):
    """Classification of administrative data channel failures."""

    UNREACHABLE = "unreachable"
    AUTH_FAILURE = "auth_failure"
    DATA_ERROR = "data_error"


class MigrateAction(Enum):
    """Subcommands of the kube-migrate CLI."""

    MIGRATE = "migrate"
    STATUS = "status"
    ROLLBACK_HINT = "rollback-hint"
