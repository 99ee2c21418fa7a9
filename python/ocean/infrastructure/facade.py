"""
ocean/infrastructure/facade.py

InfrastructureFacade: the entry point callers use. It resolves the
ProviderReconciler for a cluster's provider once per call and sequences the
reconciler steps into the public operations:

  - get_regions / get_zones
  - manage_cloud_basic_resource: connect => network => key pair
  - delete_cloud_basic_resource: connect => network teardown => key pair
  - manage_node_resource: security group => instances => load balancer
    (bare metal: pre-install only)
  - get_nodes_system_info
  - install / uninstall / handler_nodes (node work over SSH)

Every operation that takes a Cluster holds that cluster's lock for its whole
duration, so two passes never mutate the same registry concurrently.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional, Union

from ocean.infrastructure.alicloud import AliCloudReconciler
from ocean.infrastructure.aws import AwsReconciler
from ocean.infrastructure.baremetal import BareMetalAgent, BareMetalReconciler
from ocean.infrastructure.errors import InfrastructureError
from ocean.infrastructure.reconciler import ProviderReconciler
from ocean.models.cluster import Cluster, Provider
from ocean.models.resources import CloudResource, ResourceType
from ocean.models.settings import OceanSettings
from ocean.models.validator import validate_type

logger = logging.getLogger(__name__)

ReconcilerFactory = Callable[[OceanSettings], ProviderReconciler]

DEFAULT_FACTORIES: Dict[Provider, ReconcilerFactory] = {
    Provider.ALICLOUD: AliCloudReconciler,
    Provider.AWS: AwsReconciler,
    Provider.BAREMETAL: BareMetalReconciler,
}


class _ClusterLock:
    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class InfrastructureFacade:
    """
    Dispatches cluster operations to the reconciler registered for the
    cluster's provider.

    Args:
        settings: Injected into every reconciler and agent.
        factories: Provider => reconciler constructor. A fresh reconciler is
            built for every call, so SDK clients never leak between clusters.
        agent_factory: Builds the SSH agent used by install/uninstall/handler_nodes.
    """

    def __init__(
        self,
        settings: Optional[OceanSettings] = None,
        factories: Optional[Dict[Provider, ReconcilerFactory]] = None,
        agent_factory: Callable[[OceanSettings], BareMetalAgent] = BareMetalAgent,
    ) -> None:
        self.settings = settings or OceanSettings()
        self.factories = dict(DEFAULT_FACTORIES if factories is None else factories)
        self.agent_factory = agent_factory
        self._locks: Dict[str, _ClusterLock] = {}

    def reconciler(self, provider: Union[Provider, str]) -> ProviderReconciler:
        provider = validate_type(provider, Provider)
        factory = self.factories.get(provider)
        if factory is None:
            raise InfrastructureError(f"unsupported provider {provider.value}")
        return factory(self.settings)

    @asynccontextmanager
    async def _exclusive(self, cluster: Cluster) -> AsyncIterator[None]:
        """Hold the cluster lock; the last holder or waiter drops the entry."""
        entry = self._locks.setdefault(cluster.id, _ClusterLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if not entry.users:
                del self._locks[cluster.id]

    async def _connected(self, cluster: Cluster) -> ProviderReconciler:
        reconciler = self.reconciler(cluster.provider)
        await reconciler.connect(cluster)
        return reconciler

    # --------------------------
    # Catalog
    # --------------------------
    async def get_regions(
        self, provider: Union[Provider, str], access_id: str, access_key: str
    ) -> List[CloudResource]:
        return await self.reconciler(provider).get_regions(access_id, access_key)

    async def get_zones(self, cluster: Cluster) -> List[CloudResource]:
        async with self._exclusive(cluster):
            if not cluster.provider.is_cloud:
                return []
            reconciler = await self._connected(cluster)
            return await reconciler.get_zones(cluster)

    # --------------------------
    # Cloud resources
    # --------------------------
    async def manage_cloud_basic_resource(self, cluster: Cluster) -> None:
        async with self._exclusive(cluster):
            reconciler = await self._connected(cluster)
            if cluster.provider.is_cloud and not cluster.cloud_resources.get(
                ResourceType.AVAILABILITY_ZONES
            ):
                await reconciler.get_zones(cluster)
            await reconciler.create_network(cluster)
            await reconciler.import_key_pair(cluster)
            logger.info("basic resources of cluster %s converged", cluster.name)

    async def delete_cloud_basic_resource(self, cluster: Cluster) -> None:
        async with self._exclusive(cluster):
            reconciler = await self._connected(cluster)
            await reconciler.delete_network(cluster)
            await reconciler.delete_key_pair(cluster)
            logger.info("basic resources of cluster %s deleted", cluster.name)

    async def manage_node_resource(self, cluster: Cluster) -> None:
        async with self._exclusive(cluster):
            reconciler = await self._connected(cluster)
            await reconciler.manage_security_group(cluster)
            await reconciler.manage_instance(cluster)
            await reconciler.manage_slb(cluster)

    async def get_nodes_system_info(self, cluster: Cluster) -> None:
        async with self._exclusive(cluster):
            reconciler = await self._connected(cluster)
            await reconciler.get_nodes_system_info(cluster)

    # --------------------------
    # Node work
    # --------------------------
    async def install(self, cluster: Cluster) -> None:
        """
        Bootstrap Kubernetes on the cluster's nodes. For cloud clusters the
        security group allows SSH only for the duration of the install.
        """
        async with self._exclusive(cluster):
            reconciler = await self._connected(cluster)
            await reconciler.open_ssh(cluster)
            try:
                await self.agent_factory(self.settings).install(cluster)
            finally:
                await reconciler.close_ssh(cluster)
            logger.info("cluster %s installed", cluster.name)

    async def uninstall(self, cluster: Cluster) -> None:
        async with self._exclusive(cluster):
            await self.agent_factory(self.settings).uninstall(cluster)

    async def handler_nodes(self, cluster: Cluster) -> None:
        async with self._exclusive(cluster):
            await self.agent_factory(self.settings).handler_nodes(cluster)
