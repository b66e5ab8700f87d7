"""RFC 7807 style failure summaries for machine-readable output."""

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field

from ..models.enums import FailureKind
from ..models.migration import MigrationAttempt


class ErrorDetail(BaseModel):
    """RFC 7807 compliant error detail structure.

    Required fields:
    - success: Always False for error responses
    - error: Human-readable error message

    Optional RFC 7807 fields:
    - type: URI reference that identifies the problem type
    - title: Short, human-readable summary of the problem type
    - detail: Human-readable explanation specific to this occurrence
    """

    success: bool = Field(default=False, description="Always False for errors")
    error: str = Field(description="Human-readable error message")
    type: str | None = Field(default=None, description="Problem type URI")
    title: str | None = Field(default=None, description="Problem type summary")
    detail: str | None = Field(default=None, description="Specific problem details")
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())


PROBLEM_TYPES: dict[FailureKind, dict[str, str]] = {
    FailureKind.TRANSIENT_INFRA: {
        "type": "/problems/transient-infra",
        "title": "Infrastructure Temporarily Unavailable",
    },
    FailureKind.CONFIGURATION: {
        "type": "/problems/configuration-error",
        "title": "Configuration Error",
    },
    FailureKind.DATA_INTEGRITY_RISK: {
        "type": "/problems/data-integrity-risk",
        "title": "Backup Failed On Non-Empty Source",
    },
    FailureKind.POST_CUTOVER_DEGRADATION: {
        "type": "/problems/post-cutover-degradation",
        "title": "Failure After Legacy Instance Was Stopped",
    },
    FailureKind.ABORTED: {
        "type": "/problems/aborted",
        "title": "Migration Aborted",
    },
}


def create_failure_response(attempt: MigrationAttempt) -> dict[str, Any]:
    """Build an RFC 7807 style dictionary describing a failed attempt."""
    problem = PROBLEM_TYPES.get(attempt.failure_kind, {}) if attempt.failure_kind else {}
    detail = ErrorDetail(
        error=attempt.last_error or "Migration failed",
        type=problem.get("type"),
        title=problem.get("title"),
        detail="; ".join(attempt.guidance) or None,
    )
    response = detail.model_dump(exclude_none=True)
    response.update(
        {
            "phase": attempt.failed_phase.value if attempt.failed_phase else None,
            "failure_kind": attempt.failure_kind.value if attempt.failure_kind else None,
            "data_loss_risk": attempt.data_loss_risk,
            "warnings": list(attempt.warnings),
        }
    )
    if attempt.backup is not None:
        response["backup_path"] = str(attempt.backup.path)
    return response
