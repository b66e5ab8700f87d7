"""Operator guidance: connection endpoints and manual recovery steps."""

from pathlib import Path

from ...models.cluster import TopologyStatus
from ...models.enums import FailureKind, MigrationPhase
from ...models.migration import MigrationAttempt
from ..config_loader import MigrationConfig


def _kubectl(config: MigrationConfig, args: str) -> str:
    return f"kubectl -n {config.namespace} {args}"


def connection_endpoints(config: MigrationConfig) -> list[str]:
    """Credential-free connection strings of the managed topology."""
    managed = config.managed
    database = config.database
    domain = f"{config.namespace}.svc.cluster.local"
    endpoints = [f"mongodb://{managed.service}.{domain}:{database.port}/{database.database}"]
    endpoints.extend(
        f"mongodb://{managed.statefulset}-{ordinal}.{managed.headless_service}.{domain}:"
        f"{database.port}/{database.database}"
        for ordinal in range(managed.replicas)
    )
    return endpoints


def port_forward_hint(config: MigrationConfig) -> str:
    port = config.database.port
    return _kubectl(config, f"port-forward pod/{config.managed.statefulset}-0 {port}:{port}")


def _restore_command(config: MigrationConfig, archive: Path) -> str:
    database = config.database
    pod = f"{config.managed.statefulset}-0"
    return _kubectl(
        config,
        f"exec -i {pod} -c {config.managed.container} -- sh -c "
        f"'mongorestore --archive --gzip --drop "
        f'--username "${database.username_env}" --password "${database.password_env}" '
        f"--authenticationDatabase {database.auth_database}' < {archive}",
    )


def _legacy_rescale_steps(config: MigrationConfig, retained: list[Path]) -> list[str]:
    legacy = config.legacy
    steps = []
    storage = [path for path in retained if path.name.startswith(("pv-", "pvc-"))]
    if storage:
        # The volume must exist before its claim can bind
        for path in sorted(storage, key=lambda p: not p.name.startswith("pv-")):
            steps.append(f"Recreate legacy storage: kubectl apply -f {path}")
    steps.append(
        "Re-scale the legacy instance: "
        + _kubectl(config, f"scale deployment/{legacy.deployment} --replicas=1")
    )
    return steps


def failure_guidance(config: MigrationConfig, attempt: MigrationAttempt) -> list[str]:
    """Manual recovery steps for a failed attempt."""
    managed = config.managed
    kind = attempt.failure_kind
    guidance: list[str] = []

    if kind in (FailureKind.DATA_INTEGRITY_RISK, FailureKind.ABORTED):
        guidance.append("Legacy deployment and its storage were not modified.")
        if kind == FailureKind.DATA_INTEGRITY_RISK:
            guidance.append(
                "Inspect the database health, then re-run migrate once a backup succeeds."
            )
    elif kind == FailureKind.CONFIGURATION:
        guidance.append("Fix the configuration or credentials, then re-run migrate.")
        if not attempt.cutover_started:
            guidance.append("Legacy deployment and its storage were not modified.")
    elif kind == FailureKind.TRANSIENT_INFRA:
        guidance.append("The cluster or database was unreachable; re-run migrate when it recovers.")
    elif kind == FailureKind.POST_CUTOVER_DEGRADATION:
        guidance.append(
            f"The legacy deployment '{config.legacy.deployment}' is stopped (0 replicas) "
            "but was not deleted; no automatic rollback was attempted."
        )
        guidance.append(
            "Inspect the new instance: "
            + _kubectl(config, f"describe pod {managed.statefulset}-0")
        )
        if attempt.backup is not None:
            guidance.append(f"Database backup retained at {attempt.backup.path}")
            guidance.append(
                "Restore it once the new instance is ready: "
                + _restore_command(config, attempt.backup.path)
            )
        guidance.append("Or roll back to the legacy topology:")
        guidance.append(
            "Remove the managed workload: "
            + _kubectl(config, f"delete statefulset/{managed.statefulset}")
        )
        guidance.extend(_legacy_rescale_steps(config, attempt.retained_definitions))

    if attempt.failed_phase == MigrationPhase.VERIFYING:
        guidance.append(
            "Verification failed; the legacy deployment was kept so its definition can be reused."
        )
    return guidance


def rollback_hint(
    config: MigrationConfig, status: TopologyStatus, backups: list[Path], retained: list[Path]
) -> list[str]:
    """Recovery steps derived from what currently exists in the cluster."""
    legacy = status.legacy_workload
    managed = status.managed_workload
    hints: list[str] = []

    if legacy is None and managed is None:
        hints.append("No legacy or managed workload exists; nothing to roll back.")
    elif legacy is not None and managed is None:
        if legacy.replicas == 0:
            hints.append("Legacy deployment exists but is scaled to zero.")
            hints.extend(_legacy_rescale_steps(config, retained))
        else:
            hints.append("Legacy topology is active; no rollback needed.")
    elif legacy is not None and managed is not None:
        hints.append(
            "Both topologies exist: the migration stopped between cutover and cleanup."
        )
        if managed.ready_replicas > 0:
            hints.append(
                "The managed instance is ready. To finish the migration re-run restore if "
                "needed, then delete the legacy deployment: "
                + _kubectl(config, f"delete deployment/{legacy.name}")
            )
        hints.append(
            "To roll back instead, delete the managed workload: "
            + _kubectl(config, f"delete statefulset/{managed.name}")
        )
        hints.extend(_legacy_rescale_steps(config, retained))
    else:
        hints.append(
            "Migration completed; the legacy deployment definition is no longer in the cluster."
        )
        if retained:
            hints.append("Retained legacy definitions:")
            hints.extend(f"  {path}" for path in retained)

    if backups:
        hints.append(f"Most recent database backup: {backups[0]}")
        if managed is not None:
            hints.append("Restore it with: " + _restore_command(config, backups[0]))
    return hints
