"""Service layer wiring configuration to the migration components."""

from pathlib import Path

import structlog

from ..core.admin import MongoAdminChannel
from ..core.backup import BackupAgent
from ..core.cluster import ClusterClient, KubectlClient
from ..core.config_loader import MigrationConfig
from ..core.exceptions import ClusterCommandError
from ..core.migration.inspector import TopologyInspector
from ..core.migration.recovery import rollback_hint
from ..core.migration.state_machine import MigrationStateMachine, TransitionCallback
from ..core.migration.verification import Verifier
from ..models.cluster import TopologyStatus
from ..models.migration import MigrationAttempt

logger = structlog.get_logger()


class MigrationService:
    """Entry point for the migrate, status and rollback-hint operations."""

    def __init__(
        self,
        config: MigrationConfig,
        cluster: ClusterClient | None = None,
        admin: MongoAdminChannel | None = None,
    ):
        self.config = config
        self.cluster = cluster or KubectlClient(config.namespace, config.kubectl, config.timeouts)
        self.admin = admin or MongoAdminChannel(self.cluster, config.database)
        self.inspector = TopologyInspector(self.cluster, config)
        self.backup_agent = BackupAgent(self.admin, config.backup_dir, config.timeouts)
        self.verifier = Verifier(self.admin, backoff_max=config.timeouts.probe_backoff_max)
        self.logger = logger.bind(component="migration_service")

    def build_state_machine(
        self, on_transition: TransitionCallback | None = None
    ) -> MigrationStateMachine:
        return MigrationStateMachine(
            self.config,
            self.cluster,
            self.inspector,
            self.backup_agent,
            self.verifier,
            on_transition=on_transition,
        )

    async def migrate(
        self,
        dry_run: bool = False,
        on_transition: TransitionCallback | None = None,
        machine: MigrationStateMachine | None = None,
    ) -> MigrationAttempt:
        """Run one migration attempt."""
        machine = machine or self.build_state_machine(on_transition)
        self.logger.info(
            "Starting migration",
            namespace=self.config.namespace,
            legacy=self.config.legacy.deployment,
            managed=self.config.managed.statefulset,
            dry_run=dry_run,
        )
        attempt = await machine.run(dry_run=dry_run)
        self.logger.info(
            "Migration finished",
            phase=attempt.phase.value,
            already_migrated=attempt.already_migrated,
            warnings=len(attempt.warnings),
        )
        return attempt

    async def status(self) -> TopologyStatus:
        """Read-only snapshot of the current topology."""
        if not await self.cluster.cluster_reachable():
            raise ClusterCommandError("Cannot connect to Kubernetes cluster")
        return await self.inspector.describe()

    def _local_files(self, directory: Path, pattern: str) -> list[Path]:
        if not directory.is_dir():
            return []
        return sorted(directory.glob(pattern), key=lambda path: path.stat().st_mtime, reverse=True)

    def retained_definitions(self) -> list[Path]:
        """Newest retained definition per legacy object."""
        latest: dict[str, Path] = {}
        for path in self._local_files(Path(self.config.backup_dir) / "retained", "*.yaml"):
            key = path.name.rsplit("-", 1)[0]
            latest.setdefault(key, path)
        return list(latest.values())

    def backups(self) -> list[Path]:
        return self._local_files(Path(self.config.backup_dir), "backup_*.archive.gz")

    async def rollback_hint(self) -> list[str]:
        """Manual recovery steps for whatever state the cluster is in now."""
        status = await self.status()
        return rollback_hint(self.config, status, self.backups(), self.retained_definitions())
