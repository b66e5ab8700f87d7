"""Service layer for kube-migrate."""

from .migration import MigrationService  # noqa: F401
from .reporter import Reporter  # noqa: F401

__all__ = ["MigrationService", "Reporter"]
