"""Administrative data channel to a running MongoDB instance.

Every command runs inside the database pod through ``kubectl exec`` and a
``sh -c`` wrapper. Credentials are referenced as container environment
variables and expanded by the pod's shell, so their values never reach this
process.
"""

import re
import shlex
from pathlib import Path

import structlog

from ..models.cluster import ExecResult, InstanceRef
from ..models.enums import AdminErrorKind
from .cluster import ClusterClient
from .config_loader import DatabaseConfig
from .exceptions import BackupError, ClusterTimeoutError, ConfigurationError

logger = structlog.get_logger()

_ENV_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "authenticationfailed",
    "requires authentication",
    "unauthorized",
    "auth error",
)

UNREACHABLE_MARKERS = (
    "econnrefused",
    "connection refused",
    "serverselectionerror",
    "server selection",
    "no reachable servers",
    "could not connect",
    "connection reset",
    "container not found",
    "is not running",
    "unable to upgrade connection",
    "error dialing backend",
)

# kubectl: Error from server (NotFound): pods "mongodb-0" not found
POD_NOT_FOUND = re.compile(r'pods? "[^"]+" not found')

MISSING_TOOL_MARKERS = (
    "executable file not found",
    "command not found",
)

# bash: "sh: line 1: mongosh: command not found", dash: "sh: 1: mongosh: not found"
SHELL_NOT_FOUND = re.compile(
    r"^(?:/bin/)?(?:ba|da)?sh: (?:line )?(?:\d+: )?\S+: (?:command )?not found\s*$", re.MULTILINE
)

# Databases MongoDB creates for itself; anything else counts as user data
SYSTEM_DATABASES = ("admin", "config", "local")


def classify_admin_error(result: ExecResult) -> AdminErrorKind:
    """Map a failed admin command onto the error taxonomy."""
    output = f"{result.stderr}\n{result.stdout}".lower()
    if any(marker in output for marker in AUTH_FAILURE_MARKERS):
        return AdminErrorKind.AUTH_FAILURE
    if any(marker in output for marker in UNREACHABLE_MARKERS) or POD_NOT_FOUND.search(output):
        return AdminErrorKind.UNREACHABLE
    return AdminErrorKind.DATA_ERROR


def is_missing_tool(result: ExecResult) -> bool:
    """True when the pod shell could not find a MongoDB binary."""
    output = f"{result.stderr}\n{result.stdout}".lower()
    return any(marker in output for marker in MISSING_TOOL_MARKERS) or bool(
        SHELL_NOT_FOUND.search(output)
    )


class MongoAdminChannel:
    """ping / dump / restore against a MongoDB pod."""

    def __init__(self, cluster: ClusterClient, database: DatabaseConfig):
        self.cluster = cluster
        self.database = database
        self.logger = logger.bind(component="admin_channel")
        for env_name in (database.username_env, database.password_env):
            if not _ENV_NAME.match(env_name):
                raise ConfigurationError(f"Invalid credential environment variable: {env_name!r}")

    def _auth_args(self) -> str:
        database = self.database
        return (
            f'--username "${database.username_env}" '
            f'--password "${database.password_env}" '
            f"--authenticationDatabase {shlex.quote(database.auth_database)}"
        )

    async def _run(
        self,
        instance: InstanceRef,
        script: str,
        operation: str,
        stdin_path: Path | None = None,
        stdout_path: Path | None = None,
        timeout: int | None = None,
        timeout_kind: AdminErrorKind = AdminErrorKind.UNREACHABLE,
    ) -> ExecResult:
        self.logger.debug("admin_command", operation=operation, instance=str(instance))
        try:
            result = await self.cluster.exec(
                instance.pod,
                ["sh", "-c", script],
                container=instance.container,
                stdin_path=stdin_path,
                stdout_path=stdout_path,
                timeout=timeout,
            )
        except ClusterTimeoutError as e:
            raise BackupError(f"{operation} timed out on {instance}: {e}", timeout_kind) from e

        if result.ok:
            return result

        if is_missing_tool(result):
            raise ConfigurationError(
                f"{operation} failed on {instance}: required MongoDB tooling missing "
                f"({result.stderr.strip()})"
            )
        kind = classify_admin_error(result)
        message = result.stderr.strip() or result.stdout.strip() or f"exit code {result.returncode}"
        raise BackupError(f"{operation} failed on {instance}: {message}", kind)

    async def ping(self, instance: InstanceRef) -> None:
        """Run the admin ping command. Raises BackupError when it fails."""
        script = (
            f"{self.database.shell} --quiet {self._auth_args()} "
            "--eval \"db.adminCommand('ping').ok\""
        )
        await self._run(instance, script, "ping", timeout=30)

    async def count_user_databases(self, instance: InstanceRef) -> int:
        """Number of non-system databases on the instance."""
        system = ", ".join(f"'{name}'" for name in SYSTEM_DATABASES)
        script = (
            f"{self.database.shell} --quiet {self._auth_args()} --eval "
            f"\"db.adminCommand({{listDatabases: 1, nameOnly: true}}).databases"
            f".filter(d => ![{system}].includes(d.name)).length\""
        )
        result = await self._run(instance, script, "list databases", timeout=60)
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines or not lines[-1].isdigit():
            raise BackupError(
                f"Unexpected database listing from {instance}: {result.stdout.strip()!r}",
                AdminErrorKind.DATA_ERROR,
            )
        return int(lines[-1])

    async def dump(self, instance: InstanceRef, destination: Path, timeout: int | None = None) -> None:
        """Stream a gzip archive of every database into ``destination``."""
        script = f"mongodump --quiet --archive --gzip {self._auth_args()}"
        await self._run(
            instance,
            script,
            "dump",
            stdout_path=destination,
            timeout=timeout,
            timeout_kind=AdminErrorKind.DATA_ERROR,
        )

    async def restore(self, instance: InstanceRef, source: Path, timeout: int | None = None) -> None:
        """Stream the archive at ``source`` into mongorestore, replacing existing collections."""
        script = f"mongorestore --quiet --archive --gzip --drop {self._auth_args()}"
        await self._run(
            instance,
            script,
            "restore",
            stdin_path=source,
            timeout=timeout,
            timeout_kind=AdminErrorKind.DATA_ERROR,
        )
