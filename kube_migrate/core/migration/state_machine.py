"""Migration state machine: Legacy Deployment to Managed StatefulSet.

Phases run strictly in sequence, each awaited to completion before the next
one starts::

    start -> backing_up -> provisioning -> restoring -> verifying -> cleaning -> done
                                                                  \\-> failed

The only irreversible step (scaling the legacy Deployment down and deleting
its claim) happens in ``provisioning`` and only after a backup attempt has
completed. The legacy Deployment itself is deleted in ``cleaning``, which runs
only after ``verifying`` succeeded.
"""

from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

import structlog

from ...models.cluster import WorkloadInfo
from ...models.enums import FailureKind, MigrationPhase, WorkloadTopology
from ...models.migration import MigrationAttempt, PhaseRecord
from ..backup import BackupAgent
from ..cluster import ClusterClient
from ..config_loader import MigrationConfig
from ..exceptions import (
    ClusterCommandError,
    ConfigurationError,
    DataIntegrityRiskError,
    KubeMigrateError,
    PostCutoverDegradationError,
    TransientInfraError,
)
from ..manifests import build_managed_manifests
from .inspector import TopologyInspector
from .recovery import connection_endpoints, failure_guidance
from .verification import Verifier

logger = structlog.get_logger()

TransitionCallback = Callable[[MigrationAttempt, PhaseRecord], None]


class PhaseFailure(KubeMigrateError):
    """A phase ended the attempt."""

    def __init__(self, kind: FailureKind, message: str):
        super().__init__(message)
        self.kind = kind


class MigrationStateMachine:
    """Drives one MigrationAttempt against one logical database.

    Not safe for concurrent use; callers run at most one attempt per
    database at a time.
    """

    def __init__(
        self,
        config: MigrationConfig,
        cluster: ClusterClient,
        inspector: TopologyInspector,
        backup_agent: BackupAgent,
        verifier: Verifier,
        on_transition: TransitionCallback | None = None,
    ):
        self.config = config
        self.cluster = cluster
        self.inspector = inspector
        self.backup_agent = backup_agent
        self.verifier = verifier
        self.on_transition = on_transition
        self.attempt = MigrationAttempt()
        self._abort_requested = False
        self.logger = logger.bind(component="migration_state_machine")

    def request_abort(self) -> None:
        """Ask the machine to stop at the next safe phase boundary."""
        self._abort_requested = True
        if self.attempt.cutover_started:
            self.logger.warning(
                "Abort requested after cutover; continuing to a stable managed state"
            )
        else:
            self.logger.warning("Abort requested; stopping before the next phase")

    def _transition(self, phase: MigrationPhase, message: str = "") -> None:
        record = PhaseRecord(phase=phase, message=message)
        self.attempt.phase = phase
        self.attempt.history.append(record)
        self.logger.info("Phase transition", phase=phase.value, detail=message or None)
        if self.on_transition:
            self.on_transition(self.attempt, record)

    def _warn(self, message: str) -> None:
        self.attempt.warnings.append(message)
        self.logger.warning(message)

    def _checkpoint(self) -> None:
        """Honour a pending abort while the legacy topology is still intact."""
        if not self._abort_requested:
            return
        if self.attempt.cutover_started:
            self.logger.warning("Abort deferred: cutover already in progress")
            return
        raise PhaseFailure(
            FailureKind.ABORTED, "Migration aborted by operator before cutover"
        )

    async def run(self, dry_run: bool = False) -> MigrationAttempt:
        """Execute one migration attempt and return its final state."""
        self.attempt = MigrationAttempt(dry_run=dry_run)
        self._transition(MigrationPhase.START)

        try:
            topology = await self._inspect()
            self.attempt.topology = topology

            if topology == WorkloadTopology.MANAGED:
                self.attempt.already_migrated = True
                self.attempt.endpoints = connection_endpoints(self.config)
                self._transition(MigrationPhase.DONE, "already migrated")
                return self.attempt

            if dry_run:
                self.attempt.guidance = self._plan(topology)
                self._transition(MigrationPhase.DONE, "dry run, no changes made")
                return self.attempt

            legacy: WorkloadInfo | None = None
            self._checkpoint()
            if topology == WorkloadTopology.LEGACY:
                legacy = await self.inspector.legacy_workload()
                if legacy is None:
                    raise PhaseFailure(
                        FailureKind.TRANSIENT_INFRA,
                        "Legacy deployment disappeared during inspection",
                    )
                self._transition(MigrationPhase.BACKING_UP)
                await self._backing_up(legacy)

            self._checkpoint()
            self._transition(MigrationPhase.PROVISIONING)
            await self._provisioning(legacy)

            self._checkpoint()
            self._transition(MigrationPhase.RESTORING)
            await self._restoring()

            self._checkpoint()
            self._transition(MigrationPhase.VERIFYING)
            await self._verifying()

            self._checkpoint()
            self._transition(MigrationPhase.CLEANING)
            await self._cleaning(legacy)

            self.attempt.endpoints = connection_endpoints(self.config)
            self._transition(MigrationPhase.DONE, "migration completed")

        except PhaseFailure as e:
            self._fail(e.kind, str(e))
        except PostCutoverDegradationError as e:
            self._fail(FailureKind.POST_CUTOVER_DEGRADATION, str(e))
        except Exception as e:
            self.logger.exception("Unexpected error during migration", phase=self.attempt.phase.value)
            self._fail(self._failure_kind(e), f"Unexpected error: {e}")

        return self.attempt

    def _fail(self, kind: FailureKind, message: str) -> None:
        attempt = self.attempt
        attempt.failed_phase = attempt.phase
        attempt.failure_kind = kind
        attempt.last_error = message
        if kind == FailureKind.POST_CUTOVER_DEGRADATION and attempt.backup and not attempt.restored:
            # Data now only lives in the local archive
            attempt.data_loss_risk = True
        attempt.guidance = failure_guidance(self.config, attempt)
        self.logger.error(
            "Migration failed",
            phase=self.attempt.failed_phase.value,
            failure_kind=kind.value,
            error=message,
        )
        self._transition(MigrationPhase.FAILED, message)

    def _failure_kind(self, error: Exception | None = None) -> FailureKind:
        """Anything failing once the legacy instance was stopped degrades the cutover."""
        if self.attempt.cutover_started:
            return FailureKind.POST_CUTOVER_DEGRADATION
        if isinstance(error, ConfigurationError):
            return FailureKind.CONFIGURATION
        return FailureKind.TRANSIENT_INFRA

    async def _inspect(self) -> WorkloadTopology:
        try:
            return await self.inspector.inspect()
        except KubeMigrateError as e:
            raise PhaseFailure(self._failure_kind(e), f"Topology inspection failed: {e}") from e

    def _plan(self, topology: WorkloadTopology) -> list[str]:
        legacy = self.config.legacy
        managed = self.config.managed
        steps = []
        if topology == WorkloadTopology.LEGACY:
            steps.append(f"Back up the database in deployment/{legacy.deployment}")
        steps.append(
            f"Check secret/{self.config.database.credentials_secret} holds the credential keys"
        )
        if topology == WorkloadTopology.LEGACY:
            steps.append(f"Save definitions of deployment/{legacy.deployment} and pvc/{legacy.claim}")
            steps.append(f"Scale deployment/{legacy.deployment} to 0 replicas")
            volume = f" and pv/{legacy.volume}" if legacy.volume else ""
            steps.append(f"Delete pvc/{legacy.claim}{volume}")
        steps.append(
            f"Apply statefulset/{managed.statefulset}, service/{managed.service}, "
            f"service/{managed.headless_service}"
        )
        steps.append(f"Wait for pod/{managed.statefulset}-0 to become ready")
        if topology == WorkloadTopology.LEGACY:
            steps.append("Restore the backup into the new pod")
        steps.append("Verify the new pod answers ping")
        if topology == WorkloadTopology.LEGACY:
            steps.append(f"Delete deployment/{legacy.deployment}")
        return steps

    async def _backing_up(self, legacy: WorkloadInfo) -> None:
        try:
            instance = await self.inspector.legacy_instance(legacy)
        except KubeMigrateError as e:
            raise PhaseFailure(self._failure_kind(e), f"Cannot locate legacy pod: {e}") from e

        try:
            if instance is None:
                raise TransientInfraError(
                    f"deployment/{legacy.name} has no ready pod to back up"
                )
            artifact = await self.backup_agent.backup(instance, label=legacy.name)
        except ConfigurationError as e:
            raise PhaseFailure(FailureKind.CONFIGURATION, str(e)) from e
        except DataIntegrityRiskError as e:
            raise PhaseFailure(FailureKind.DATA_INTEGRITY_RISK, str(e)) from e
        except TransientInfraError as e:
            if self.config.require_backup:
                raise PhaseFailure(FailureKind.TRANSIENT_INFRA, str(e)) from e
            self.attempt.backup_attempted = True
            self.attempt.data_loss_risk = True
            self._warn(f"Backup skipped, source unreachable: {e}")
            return
        except ClusterCommandError as e:
            raise PhaseFailure(FailureKind.TRANSIENT_INFRA, f"Backup failed: {e}") from e
        except KubeMigrateError as e:
            raise PhaseFailure(FailureKind.DATA_INTEGRITY_RISK, f"Backup failed: {e}") from e

        self.attempt.backup_attempted = True
        self.attempt.backup = artifact
        if artifact is None:
            self._warn("Legacy database is empty; continuing without a backup")

    def _retain_definition(self, kind: str, name: str, content: str) -> Path:
        directory = Path(self.config.backup_dir) / "retained"
        directory.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
        path = directory / f"{kind}-{name}-{timestamp}.yaml"
        path.write_text(content, encoding="utf-8")
        return path

    async def _retain_legacy_definitions(self) -> None:
        legacy = self.config.legacy
        targets = [("deployment", legacy.deployment), ("pvc", legacy.claim)]
        if legacy.volume:
            targets.append(("pv", legacy.volume))

        for kind, name in targets:
            content = await self.cluster.export(kind, name)
            if content is None:
                continue
            path = self._retain_definition(kind, name, content)
            self.attempt.retained_definitions.append(path)
            self.logger.info("Legacy definition retained", kind=kind, name=name, path=str(path))

    async def _check_credentials_secret(self) -> None:
        """The managed pods cannot start without the credentials Secret."""
        database = self.config.database
        secret = await self.cluster.get_secret(database.credentials_secret)
        if secret is None:
            raise ConfigurationError(
                f"Credentials secret '{database.credentials_secret}' not found in namespace "
                f"{self.config.namespace}"
            )
        required = (database.username_key, database.password_key)
        missing = [key for key in required if key not in secret.keys]
        if missing:
            raise ConfigurationError(
                f"Credentials secret '{database.credentials_secret}' lacks keys: {', '.join(missing)}"
            )

    async def _provisioning(self, legacy: WorkloadInfo | None) -> None:
        if legacy is not None and not self.attempt.backup_attempted:
            raise PhaseFailure(
                FailureKind.DATA_INTEGRITY_RISK,
                "Refusing to release legacy storage before a backup attempt",
            )

        try:
            await self._check_credentials_secret()
            manifests = build_managed_manifests(self.config)
            if legacy is not None:
                await self._retain_legacy_definitions()
        except OSError as e:
            raise PhaseFailure(
                FailureKind.CONFIGURATION, f"Cannot write retained definitions: {e}"
            ) from e
        except KubeMigrateError as e:
            raise PhaseFailure(self._failure_kind(e), f"Provisioning preparation failed: {e}") from e

        if legacy is not None:
            await self._cutover(legacy)

        managed_pod = self.inspector.managed_instance().pod
        try:
            await self.cluster.apply(manifests)
            await self.cluster.wait_for_pod_ready(
                managed_pod,
                timeout=self.config.timeouts.ready_timeout,
                interval=self.config.timeouts.poll_interval,
            )
        except KubeMigrateError as e:
            raise PhaseFailure(
                self._failure_kind(e), f"Managed topology did not become ready: {e}"
            ) from e

    async def _cutover(self, legacy: WorkloadInfo) -> None:
        """Stop the legacy instance and release its storage binding."""
        legacy_config = self.config.legacy
        selector = self.inspector.legacy_selector(legacy)
        self.attempt.rollback_eligible = False
        try:
            await self.cluster.scale("deployment", legacy.name, 0)
            await self.cluster.wait_for_pods_deleted(
                selector,
                timeout=self.config.timeouts.termination_timeout,
                interval=self.config.timeouts.poll_interval,
            )
            await self.cluster.delete("pvc", legacy_config.claim)
            if legacy_config.volume:
                await self.cluster.delete("pv", legacy_config.volume)
        except KubeMigrateError as e:
            raise PostCutoverDegradationError(f"Legacy teardown failed: {e}") from e

    async def _restoring(self) -> None:
        artifact = self.attempt.backup
        if artifact is None:
            self.logger.info("Nothing to restore")
            return

        try:
            self.attempt.restored = await self.backup_agent.restore(
                self.inspector.managed_instance(), artifact
            )
        except KubeMigrateError as e:
            self.attempt.data_loss_risk = True
            self._warn(
                f"Restore failed, new instance may be empty; backup kept at {artifact.path}: {e}"
            )

    async def _verifying(self) -> None:
        instance = self.inspector.managed_instance()
        timeouts = self.config.timeouts
        ready = await self.verifier.probe(instance, timeouts.probe_attempts, timeouts.probe_backoff)
        if not ready:
            raise PhaseFailure(
                self._failure_kind(),
                f"{instance} did not answer ping after {timeouts.probe_attempts} attempts",
            )

    async def _cleaning(self, legacy: WorkloadInfo | None) -> None:
        history = self.attempt.history
        previous = history[-2].phase if len(history) > 1 else None
        if previous != MigrationPhase.VERIFYING:
            raise PhaseFailure(
                FailureKind.POST_CUTOVER_DEGRADATION, "Cleaning requires a successful verification"
            )

        if legacy is not None:
            legacy_config = self.config.legacy
            targets = [("deployment", legacy.name), ("pvc", legacy_config.claim)]
            if legacy_config.volume:
                targets.append(("pv", legacy_config.volume))
            for kind, name in targets:
                try:
                    await self.cluster.delete(kind, name)
                except KubeMigrateError as e:
                    self._warn(f"Cleanup of {kind}/{name} failed: {e}")

        artifact = self.attempt.backup
        if artifact is None:
            return
        if self.config.keep_backup or not self.attempt.restored:
            self.logger.info("Backup retained", path=str(artifact.path))
            return
        removed, message = self.backup_agent.cleanup(artifact)
        if not removed:
            self._warn(message)
