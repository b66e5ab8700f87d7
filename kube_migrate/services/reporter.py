"""Human-readable reporting on standard output."""

import json
import sys
from typing import TextIO

from ..core.config_loader import MigrationConfig
from ..core.error_response import create_failure_response
from ..core.migration.recovery import port_forward_hint
from ..models.cluster import TopologyStatus
from ..models.enums import MigrationPhase
from ..models.migration import MigrationAttempt, PhaseRecord

RED = "\033[0;31m"
GREEN = "\033[0;32m"
YELLOW = "\033[1;33m"
BLUE = "\033[0;34m"
RESET = "\033[0m"

PHASE_LABELS = {
    MigrationPhase.START: "Inspecting current topology",
    MigrationPhase.BACKING_UP: "Backing up legacy database",
    MigrationPhase.PROVISIONING: "Provisioning managed topology",
    MigrationPhase.RESTORING: "Restoring data into new instance",
    MigrationPhase.VERIFYING: "Verifying new instance",
    MigrationPhase.CLEANING: "Removing legacy resources",
    MigrationPhase.DONE: "Done",
    MigrationPhase.FAILED: "Failed",
}


class Reporter:
    """Prints phase transitions and final summaries for the operator."""

    def __init__(
        self,
        config: MigrationConfig,
        stream: TextIO | None = None,
        color: bool | None = None,
        as_json: bool = False,
    ):
        self.config = config
        self.stream = stream or sys.stdout
        self.color = self.stream.isatty() if color is None else color
        self.as_json = as_json

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{RESET}" if self.color else text

    def _line(self, text: str = "") -> None:
        print(text, file=self.stream)

    def info(self, message: str) -> None:
        self._line(f"{self._paint('[INFO]', BLUE)} {message}")

    def success(self, message: str) -> None:
        self._line(f"{self._paint('[SUCCESS]', GREEN)} {message}")

    def warning(self, message: str) -> None:
        self._line(f"{self._paint('[WARNING]', YELLOW)} {message}")

    def error(self, message: str) -> None:
        self._line(f"{self._paint('[ERROR]', RED)} {message}")

    def phase_transition(self, attempt: MigrationAttempt, record: PhaseRecord) -> None:
        """Callback for the state machine; silent in JSON mode."""
        if self.as_json or record.phase.is_terminal:
            return
        label = PHASE_LABELS[record.phase]
        suffix = f" ({record.message})" if record.message else ""
        self.info(f"[{record.phase.value}] {label}...{suffix}")

    def migration_result(self, attempt: MigrationAttempt) -> None:
        if self.as_json:
            self._json_result(attempt)
            return

        for warning in attempt.warnings:
            self.warning(warning)

        if attempt.succeeded:
            self._success_summary(attempt)
        else:
            self._failure_summary(attempt)

    def _json_result(self, attempt: MigrationAttempt) -> None:
        if attempt.succeeded:
            payload = {
                "success": True,
                "already_migrated": attempt.already_migrated,
                "dry_run": attempt.dry_run,
                "topology": attempt.topology.value if attempt.topology else None,
                "phases": [record.phase.value for record in attempt.history],
                "warnings": attempt.warnings,
                "data_loss_risk": attempt.data_loss_risk,
                "endpoints": attempt.endpoints,
                "plan": attempt.guidance if attempt.dry_run else [],
                "backup_path": str(attempt.backup.path) if attempt.backup else None,
            }
        else:
            payload = create_failure_response(attempt)
        self._line(json.dumps(payload, indent=2, default=str))

    def _success_summary(self, attempt: MigrationAttempt) -> None:
        managed = self.config.managed
        if attempt.already_migrated:
            self.success(
                f"Already migrated: statefulset/{managed.statefulset} exists in "
                f"namespace {self.config.namespace}"
            )
        elif attempt.dry_run:
            self.info(f"Dry run for topology '{attempt.topology.value}', planned steps:")
            for number, step in enumerate(attempt.guidance, start=1):
                self._line(f"  {number}. {step}")
            return
        else:
            self.success("Migration completed successfully")
            self.info(f"Database now runs as statefulset/{managed.statefulset} with per-replica storage")
            if attempt.data_loss_risk:
                self.warning("The migrated instance may not contain all legacy data; see warnings above")

        if attempt.backup is not None and attempt.backup.path.exists():
            self.info(f"Backup retained at {attempt.backup.path} ({attempt.backup.size_human})")

        if attempt.endpoints:
            self.info("Connection endpoints (credentials from secret "
                      f"'{self.config.database.credentials_secret}'):")
            for endpoint in attempt.endpoints:
                self._line(f"  - {endpoint}")
            self.info(f"Local access: {port_forward_hint(self.config)}")

    def _failure_summary(self, attempt: MigrationAttempt) -> None:
        phase = attempt.failed_phase.value if attempt.failed_phase else "unknown"
        kind = attempt.failure_kind.value if attempt.failure_kind else "unknown"
        self.error(f"Migration failed during phase '{phase}' ({kind})")
        self.error(f"Cause: {attempt.last_error}")
        if attempt.data_loss_risk:
            self.warning("Data loss risk: YES, the database contents are not in a running instance")
        else:
            self.info("Data loss risk: no")
        if attempt.guidance:
            self.info("Recovery guidance:")
            for step in attempt.guidance:
                self._line(f"  - {step}")

    def status(self, status: TopologyStatus) -> None:
        if self.as_json:
            self._line(status.model_dump_json(indent=2))
            return

        self.info(f"Namespace: {status.namespace}")
        self.info(f"Topology: {status.topology}")
        for workload in (status.legacy_workload, status.managed_workload):
            if workload is None:
                continue
            self._line(
                f"  {workload.kind}/{workload.name}: {workload.ready_replicas}/{workload.replicas} "
                f"ready, image {workload.image or 'unknown'}"
            )
        for pod in status.pods:
            state = "ready" if pod.ready else "not ready"
            self._line(f"  pod/{pod.name}: {pod.phase or 'Unknown'}, {state}")
        for binding in status.storage_bindings:
            self._line(
                f"  pvc/{binding.claim_name}: {binding.phase or 'Unknown'}, "
                f"{binding.capacity or '?'}, volume {binding.volume_name or '-'}"
            )
        for service in status.services:
            kind = "headless" if service.headless else service.cluster_ip
            self._line(f"  service/{service.name}: {kind}, ports {service.ports}")
        if status.legacy_volume_present:
            self._line(f"  pv/{self.config.legacy.volume}: present")
        if status.credentials_secret is None:
            self.warning(
                f"Credentials secret '{self.config.database.credentials_secret}' not found; "
                "create it before migrating"
            )
        else:
            self._line(f"  secret/{status.credentials_secret.name}: keys {status.credentials_secret.keys}")

    def rollback_hint(self, hints: list[str]) -> None:
        if self.as_json:
            self._line(json.dumps({"hints": hints}, indent=2))
            return
        self.info("Manual recovery guidance:")
        for hint in hints:
            self._line(f"  - {hint}")
