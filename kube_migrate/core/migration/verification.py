"""Post-cutover liveness verification."""

import asyncio

import structlog

from ...models.cluster import InstanceRef
from ...models.enums import AdminErrorKind
from ..admin import MongoAdminChannel
from ..exceptions import BackupError, ConfigurationError

logger = structlog.get_logger()


class Verifier:
    """Polls the admin ping of a freshly provisioned instance. No side effects."""

    def __init__(self, admin: MongoAdminChannel, backoff_max: float = 15.0):
        self.admin = admin
        self.backoff_max = backoff_max
        self.logger = logger.bind(component="verifier")

    async def probe(self, instance: InstanceRef, max_attempts: int, backoff: float) -> bool:
        """Return True on the first successful ping, False after ``max_attempts``.

        The delay between attempts starts at ``backoff`` and doubles up to
        ``backoff_max``. Rejected credentials end probing early since retrying
        cannot change the outcome.
        """
        delay = backoff
        for attempt in range(1, max_attempts + 1):
            try:
                await self.admin.ping(instance)
            except ConfigurationError as e:
                self.logger.error("Probe cannot run", instance=str(instance), error=str(e))
                return False
            except BackupError as e:
                if e.kind == AdminErrorKind.AUTH_FAILURE:
                    self.logger.error("Probe rejected credentials", instance=str(instance))
                    return False
                self.logger.info(
                    "Probe failed",
                    instance=str(instance),
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=str(e),
                )
            else:
                self.logger.info("Probe succeeded", instance=str(instance), attempt=attempt)
                return True

            if attempt < max_attempts:
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.backoff_max)

        return False
