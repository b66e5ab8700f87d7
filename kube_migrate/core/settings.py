"""Timeout settings configuration for kube-migrate operations.

Provides centralized timeout configuration using Pydantic BaseSettings
with environment variable support for operational tuning.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TimeoutSettings(BaseSettings):
    """Bounded waits used by the cluster client, backup agent and verifier."""

    kubectl_timeout: int = Field(
        60, alias="KUBECTL_TIMEOUT", description="Single kubectl command timeout in seconds"
    )

    backup_timeout: int = Field(
        600, alias="BACKUP_TIMEOUT", description="Dump and restore command timeout in seconds"
    )

    termination_timeout: float = Field(
        60, alias="TERMINATION_TIMEOUT", description="Wait for legacy pods to terminate"
    )

    ready_timeout: float = Field(
        300, alias="READY_TIMEOUT", description="Wait for the managed pod to become ready"
    )

    poll_interval: float = Field(
        2.0, alias="POLL_INTERVAL", description="Interval between cluster polls in seconds"
    )

    probe_attempts: int = Field(
        10, alias="PROBE_ATTEMPTS", description="Ping attempts before verification fails"
    )

    probe_backoff: float = Field(
        1.0, alias="PROBE_BACKOFF", description="Initial delay between ping attempts"
    )

    probe_backoff_max: float = Field(
        15.0, alias="PROBE_BACKOFF_MAX", description="Upper bound for the ping delay"
    )

    admin_max_retries: int = Field(
        3, alias="ADMIN_MAX_RETRIES", description="Retries for unreachable admin commands"
    )

    admin_retry_backoff: float = Field(
        2.0, alias="ADMIN_RETRY_BACKOFF", description="Initial delay between admin retries"
    )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)
