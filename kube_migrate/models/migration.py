"""Migration attempt and backup artifact models."""

from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field

from .cluster import InstanceRef, KubeModel
from .enums import FailureKind, MigrationPhase, WorkloadTopology


class BackupArtifact(KubeModel):
    """Checksummed database dump produced by the backup agent."""

    path: Path = Field(description="Local path of the gzip archive")
    checksum: str = Field(description="sha256 hex digest of the archive")
    size: int = Field(description="Archive size in bytes")
    size_human: str = Field(description="Human-readable archive size")
    source: InstanceRef = Field(description="Instance the dump was taken from")
    databases: int = Field(default=0, description="User databases present at dump time")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PhaseRecord(BaseModel):
    """One transition of the state machine."""

    phase: MigrationPhase
    entered_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    message: str = ""


class MigrationAttempt(BaseModel):
    """State of a single migration run. Lives for one process only."""

    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    phase: MigrationPhase = MigrationPhase.START
    topology: WorkloadTopology | None = None
    last_error: str | None = None
    failure_kind: FailureKind | None = None
    failed_phase: MigrationPhase | None = None
    rollback_eligible: bool = True
    data_loss_risk: bool = False
    backup_attempted: bool = False
    backup: BackupArtifact | None = None
    restored: bool = False
    already_migrated: bool = False
    dry_run: bool = False
    history: list[PhaseRecord] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    endpoints: list[str] = Field(default_factory=list)
    retained_definitions: list[Path] = Field(default_factory=list)
    guidance: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.phase == MigrationPhase.DONE

    @property
    def cutover_started(self) -> bool:
        """True once the legacy instance may have been stopped."""
        return not self.rollback_eligible
