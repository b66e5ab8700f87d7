"""Backup and restore of database contents across a topology cutover."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

import structlog

from ..models.cluster import InstanceRef
from ..models.enums import AdminErrorKind
from ..models.migration import BackupArtifact
from ..utils import file_checksum, format_size
from .admin import MongoAdminChannel
from .exceptions import (
    BackupError,
    ConfigurationError,
    DataIntegrityRiskError,
    TransientInfraError,
)
from .settings import TimeoutSettings

logger = structlog.get_logger()

T = TypeVar("T")


class BackupAgent:
    """Takes and restores checksummed dumps through the admin data channel.

    Both operations are safe on an empty or freshly created instance: backing
    up an instance without user databases yields no artifact, and restoring
    no artifact is a no-op.
    """

    def __init__(
        self,
        admin: MongoAdminChannel,
        backup_dir: Path | str,
        timeouts: TimeoutSettings | None = None,
    ):
        self.admin = admin
        self.backup_dir = Path(backup_dir)
        self.timeouts = timeouts or TimeoutSettings()
        self.logger = logger.bind(component="backup_agent")

    async def _with_retries(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Retry ``call`` while the instance is unreachable.

        Raises:
            TransientInfraError: Still unreachable after ``admin_max_retries`` retries
            BackupError: Any other classified failure, re-raised unchanged
        """
        attempts = self.timeouts.admin_max_retries + 1
        delay = self.timeouts.admin_retry_backoff
        attempt = 1
        while True:
            try:
                return await call()
            except BackupError as e:
                if e.kind != AdminErrorKind.UNREACHABLE:
                    raise
                if attempt >= attempts:
                    raise TransientInfraError(
                        f"{operation}: instance unreachable after {attempts} attempts: {e}"
                    ) from e
                self.logger.warning(
                    "Instance unreachable, retrying",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=attempts,
                    retry_in=delay,
                )
                await asyncio.sleep(delay)
                delay *= 2
                attempt += 1

    async def backup(self, instance: InstanceRef, label: str) -> BackupArtifact | None:
        """Dump ``instance`` into a local archive.

        Returns:
            The artifact, or None when the instance holds no user databases

        Raises:
            TransientInfraError: Instance unreachable after retries
            ConfigurationError: Authentication rejected or tooling missing
            DataIntegrityRiskError: Dump failed on a non-empty instance
        """
        try:
            databases = await self._with_retries(
                "inspect", lambda: self.admin.count_user_databases(instance)
            )
        except BackupError as e:
            raise self._escalate(e, "Backup") from e

        if databases == 0:
            self.logger.info("Source holds no user databases, no backup needed", instance=str(instance))
            return None

        self.backup_dir.mkdir(parents=True, exist_ok=True)
        timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
        destination = self.backup_dir / f"backup_{label}_{timestamp}.archive.gz"

        self.logger.info(
            "Creating database backup",
            instance=str(instance),
            destination=str(destination),
            databases=databases,
        )

        try:
            await self._with_retries(
                "dump",
                lambda: self.admin.dump(instance, destination, timeout=self.timeouts.backup_timeout),
            )
        except (BackupError, TransientInfraError) as e:
            destination.unlink(missing_ok=True)
            if isinstance(e, TransientInfraError):
                raise DataIntegrityRiskError(
                    f"Backup of {instance} lost contact with a non-empty source: {e}"
                ) from e
            raise self._escalate(e, "Backup") from e

        size = destination.stat().st_size if destination.exists() else 0
        if size == 0:
            destination.unlink(missing_ok=True)
            raise DataIntegrityRiskError(
                f"Backup of {instance} produced an empty archive although "
                f"{databases} database(s) exist"
            )

        artifact = BackupArtifact(
            path=destination,
            checksum=await asyncio.to_thread(file_checksum, destination),
            size=size,
            size_human=format_size(size),
            source=instance,
            databases=databases,
        )

        self.logger.info(
            "Database backup created successfully",
            backup=str(destination),
            size=artifact.size_human,
            checksum=artifact.checksum,
        )
        return artifact

    async def restore(self, instance: InstanceRef, artifact: BackupArtifact | None) -> bool:
        """Load ``artifact`` into ``instance``.

        Returns:
            True if data was restored, False when there was nothing to restore

        Raises:
            BackupError: Archive missing, corrupted, or rejected by the instance
            TransientInfraError: Instance unreachable after retries
            ConfigurationError: Authentication rejected or tooling missing
        """
        if artifact is None:
            self.logger.info("No backup artifact, restore skipped", instance=str(instance))
            return False

        if not artifact.path.exists():
            raise BackupError(
                f"Backup archive {artifact.path} no longer exists", AdminErrorKind.DATA_ERROR
            )

        checksum = await asyncio.to_thread(file_checksum, artifact.path)
        if checksum != artifact.checksum:
            raise BackupError(
                f"Backup archive {artifact.path} checksum mismatch "
                f"(expected {artifact.checksum}, got {checksum})",
                AdminErrorKind.DATA_ERROR,
            )

        self.logger.info(
            "Restoring database from backup",
            backup=str(artifact.path),
            target=str(instance),
            size=artifact.size_human,
        )
        await self._with_retries(
            "restore",
            lambda: self.admin.restore(
                instance, artifact.path, timeout=self.timeouts.backup_timeout
            ),
        )
        self.logger.info("Database restored", target=str(instance))
        return True

    def cleanup(self, artifact: BackupArtifact | None) -> tuple[bool, str]:
        """Delete a local backup archive after a verified migration."""
        if artifact is None:
            return True, "No backup file to clean up"
        try:
            artifact.path.unlink(missing_ok=True)
        except OSError as e:
            return False, f"Failed to remove backup {artifact.path}: {e}"
        return True, f"Removed backup {artifact.path}"

    @staticmethod
    def _escalate(error: BackupError, operation: str) -> Exception:
        """Translate a classified admin failure into the migration taxonomy."""
        if error.kind == AdminErrorKind.AUTH_FAILURE:
            return ConfigurationError(f"{operation} rejected credentials: {error}")
        return DataIntegrityRiskError(f"{operation} failed: {error}")
