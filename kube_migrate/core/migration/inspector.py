"""Topology inspection: which shape does the database currently have?"""

import structlog

from ...models.cluster import InstanceRef, TopologyStatus, WorkloadInfo
from ...models.enums import WorkloadTopology
from ...utils import selector_from_labels
from ..cluster import ClusterClient
from ..config_loader import MigrationConfig

logger = structlog.get_logger()


class TopologyInspector:
    """Derives the WorkloadTopology from object existence in the cluster.

    The result is re-derived on every call; nothing is cached between calls
    or persisted between runs. All methods are read-only.
    """

    def __init__(self, cluster: ClusterClient, config: MigrationConfig):
        self.cluster = cluster
        self.config = config
        self.logger = logger.bind(component="topology_inspector")

    async def legacy_workload(self) -> WorkloadInfo | None:
        return await self.cluster.get_workload("deployment", self.config.legacy.deployment)

    async def managed_workload(self) -> WorkloadInfo | None:
        return await self.cluster.get_workload("statefulset", self.config.managed.statefulset)

    async def inspect(self) -> WorkloadTopology:
        """Managed wins over Legacy; neither means Absent."""
        managed = await self.managed_workload()
        if managed is not None:
            topology = WorkloadTopology.MANAGED
        elif await self.legacy_workload() is not None:
            topology = WorkloadTopology.LEGACY
        else:
            topology = WorkloadTopology.ABSENT

        self.logger.info("Topology inspected", topology=topology.value)
        return topology

    def legacy_selector(self, workload: WorkloadInfo | None) -> str:
        """Label selector of the legacy pods."""
        if self.config.legacy.pod_selector:
            return self.config.legacy.pod_selector
        if workload is not None and workload.selector:
            return selector_from_labels(workload.selector)
        return f"app={self.config.legacy.deployment}"

    async def legacy_instance(self, workload: WorkloadInfo | None = None) -> InstanceRef | None:
        """A ready legacy pod to back up from, if any."""
        workload = workload or await self.legacy_workload()
        if workload is None:
            return None
        pods = await self.cluster.list_pods(self.legacy_selector(workload))
        ready = [pod for pod in pods if pod.ready]
        if not ready:
            self.logger.warning(
                "No ready legacy pod", deployment=workload.name, pods=len(pods)
            )
            return None
        return InstanceRef(
            namespace=self.config.namespace, pod=ready[0].name, container=workload.container
        )

    def managed_instance(self) -> InstanceRef:
        """First replica of the managed StatefulSet."""
        managed = self.config.managed
        return InstanceRef(
            namespace=self.config.namespace,
            pod=f"{managed.statefulset}-0",
            container=managed.container,
        )

    def managed_claim_prefix(self) -> str:
        managed = self.config.managed
        return f"{managed.claim_template}-{managed.statefulset}-"

    async def describe(self) -> TopologyStatus:
        """Full read-only snapshot used by the status and rollback-hint commands."""
        topology = await self.inspect()
        legacy = await self.legacy_workload()
        managed = await self.managed_workload()

        pods = []
        if legacy is not None:
            pods.extend(await self.cluster.list_pods(self.legacy_selector(legacy)))
        if managed is not None:
            managed_selector = selector_from_labels(managed.selector or self.config.managed.labels)
            known = {pod.name for pod in pods}
            pods.extend(
                pod for pod in await self.cluster.list_pods(managed_selector) if pod.name not in known
            )

        prefix = self.managed_claim_prefix()
        bindings = [
            binding
            for binding in await self.cluster.list_storage_bindings()
            if binding.claim_name == self.config.legacy.claim
            or binding.claim_name.startswith(prefix)
        ]

        services = []
        for name in (self.config.managed.service, self.config.managed.headless_service):
            service = await self.cluster.get_service(name)
            if service is not None:
                services.append(service)

        legacy_volume_present = False
        if self.config.legacy.volume:
            legacy_volume_present = await self.cluster.export("pv", self.config.legacy.volume) is not None

        return TopologyStatus(
            topology=topology.value,
            namespace=self.config.namespace,
            legacy_workload=legacy,
            managed_workload=managed,
            pods=pods,
            storage_bindings=bindings,
            services=services,
            credentials_secret=await self.cluster.get_secret(self.config.database.credentials_secret),
            legacy_volume_present=legacy_volume_present,
        )
