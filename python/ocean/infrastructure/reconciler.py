"""
ocean/infrastructure/reconciler.py

The ProviderReconciler contract every backend implements, and CloudReconciler,
which implements it once for all clouds on top of a CloudOps bundle. A concrete
cloud only opens its SDK clients in `_open` and binds them in `_bind`.

Reconcilers are created per facade call and hold the clients opened by
`connect`, so one instance is never shared between clusters.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from ocean.infrastructure.errors import InfrastructureError
from ocean.infrastructure.instances import InstanceLifecycleManager, nodes_with_errors
from ocean.infrastructure.load_balancer import LoadBalancerManager
from ocean.infrastructure.ops import (
    InstanceOps,
    LoadBalancerOps,
    ResourceOps,
    SecurityGroupOps,
    Slot,
)
from ocean.infrastructure.reconcile import NetworkProvisioner, reconcile_resources, teardown
from ocean.infrastructure.scripts import render_install_script
from ocean.infrastructure.security_group import SecurityGroupSync
from ocean.models.cluster import (
    Cluster,
    ClusterStatus,
    NodeGroup,
    NodeStatus,
    Provider,
)
from ocean.models.compute import ImageInfo, InstanceTypeInfo
from ocean.models.resources import CloudResource, ResourceType, TagKey
from ocean.models.settings import OceanSettings

logger = logging.getLogger(__name__)


class ProviderReconciler(ABC):
    """Operations the facade sequences; all of them mutate the given Cluster."""

    provider: Provider

    def __init__(self, settings: OceanSettings) -> None:
        self.settings = settings

    @abstractmethod
    async def connect(self, cluster: Cluster) -> None: ...

    @abstractmethod
    async def get_regions(self, access_id: str, access_key: str) -> List[CloudResource]: ...

    @abstractmethod
    async def get_zones(self, cluster: Cluster) -> List[CloudResource]: ...

    @abstractmethod
    async def create_network(self, cluster: Cluster) -> None: ...

    @abstractmethod
    async def import_key_pair(self, cluster: Cluster) -> None: ...

    @abstractmethod
    async def manage_security_group(self, cluster: Cluster) -> None: ...

    @abstractmethod
    async def manage_instance(self, cluster: Cluster) -> None: ...

    @abstractmethod
    async def manage_slb(self, cluster: Cluster) -> None: ...

    @abstractmethod
    async def delete_network(self, cluster: Cluster) -> None: ...

    @abstractmethod
    async def delete_key_pair(self, cluster: Cluster) -> None: ...

    @abstractmethod
    async def find_image(self, cluster: Cluster, node_group: NodeGroup) -> ImageInfo: ...

    @abstractmethod
    async def find_instance_type(
        self, cluster: Cluster, node_group: NodeGroup
    ) -> List[InstanceTypeInfo]: ...

    @abstractmethod
    async def get_nodes_system_info(self, cluster: Cluster) -> None: ...

    async def open_ssh(self, cluster: Cluster) -> None:
        return None

    async def close_ssh(self, cluster: Cluster) -> None:
        return None


class CloudOps:
    """Every SDK binding one cloud provides, plus its teardown order."""

    def __init__(
        self,
        *,
        vpc: ResourceOps,
        subnet: ResourceOps,
        eip: ResourceOps,
        nat_gateway: ResourceOps,
        route_table: ResourceOps,
        security_group: SecurityGroupOps,
        key_pair: ResourceOps,
        load_balancer: LoadBalancerOps,
        instances: InstanceOps,
        teardown_order: Sequence[ResourceOps],
        internet_gateway: Optional[ResourceOps] = None,
    ) -> None:
        self.vpc = vpc
        self.subnet = subnet
        self.eip = eip
        self.nat_gateway = nat_gateway
        self.route_table = route_table
        self.security_group = security_group
        self.key_pair = key_pair
        self.load_balancer = load_balancer
        self.instances = instances
        self.teardown_order = list(teardown_order)
        self.internet_gateway = internet_gateway


class CloudReconciler(ProviderReconciler):
    default_region: str = ""

    def __init__(self, settings: OceanSettings) -> None:
        super().__init__(settings)
        self._ops: Optional[CloudOps] = None

    # --------------------------
    # Provider bindings
    # --------------------------
    @abstractmethod
    async def _open(self, access_id: str, access_key: str, region: str) -> None:
        """Create SDK clients for `region`."""

    @abstractmethod
    def _bind(self, cluster: Cluster) -> CloudOps:
        """Bind the open clients to one cluster."""

    @abstractmethod
    async def _list_regions(self) -> List[CloudResource]: ...

    @abstractmethod
    async def _list_zones(self, region: str) -> List[str]: ...

    @property
    def ops(self) -> CloudOps:
        if self._ops is None:
            raise InfrastructureError(f"{self.provider.value} reconciler is not connected")
        return self._ops

    # --------------------------
    # ProviderReconciler
    # --------------------------
    async def connect(self, cluster: Cluster) -> None:
        region = cluster.region or self.default_region
        await self._open(cluster.access_id, cluster.access_key, region)
        self._ops = self._bind(cluster)

    async def get_regions(self, access_id: str, access_key: str) -> List[CloudResource]:
        await self._open(access_id, access_key, self.default_region)
        return await self._list_regions()

    async def get_zones(self, cluster: Cluster) -> List[CloudResource]:
        """Register the region's availability zones, replacing any stale list."""
        zone_ids = await self._list_zones(cluster.region or self.default_region)
        if not zone_ids:
            raise InfrastructureError("no availability zones found")
        registry = cluster.cloud_resources
        registry.clear(ResourceType.AVAILABILITY_ZONES)
        for zone in zone_ids:
            registry.add(
                CloudResource(
                    type=ResourceType.AVAILABILITY_ZONES,
                    ref_id=zone,
                    name=zone,
                    tags={TagKey.ZONE_ID: zone},
                )
            )
        return registry.get(ResourceType.AVAILABILITY_ZONES)

    async def create_network(self, cluster: Cluster) -> None:
        ops = self.ops
        await NetworkProvisioner(
            vpc=ops.vpc,
            subnet=ops.subnet,
            eip=ops.eip,
            nat_gateway=ops.nat_gateway,
            route_table=ops.route_table,
            internet_gateway=ops.internet_gateway,
        ).create_network(cluster)

    async def import_key_pair(self, cluster: Cluster) -> None:
        if not cluster.public_key:
            raise InfrastructureError("public key is required to import a key pair")
        slot = Slot(
            name=cluster.key_pair_name,
            tags={**cluster.tags(), TagKey.NAME: cluster.key_pair_name},
            value=cluster.public_key,
        )
        await reconcile_resources(
            cluster.cloud_resources,
            self.ops.key_pair,
            [slot],
            match=lambda live, s: live.name == s.name,
        )

    async def manage_security_group(self, cluster: Cluster) -> None:
        await SecurityGroupSync(self.ops.security_group).sync(cluster)

    async def manage_instance(self, cluster: Cluster) -> None:
        install_script = ""
        if cluster.status == ClusterStatus.STARTING and any(
            node.status == NodeStatus.NODE_CREATING and not node.instance_id
            for node in cluster.masters()
        ):
            install_script = await render_install_script(self.settings.shell_dir, cluster)
        await InstanceLifecycleManager(self.ops.instances).manage(cluster, install_script)
        failed = nodes_with_errors(cluster)
        if failed:
            logger.warning(
                "cluster %s: %d node(s) not provisioned: %s",
                cluster.name,
                len(failed),
                ", ".join(f"{node.name} ({node.error_message})" for node in failed),
            )

    async def manage_slb(self, cluster: Cluster) -> None:
        await LoadBalancerManager(
            self.ops.load_balancer, settle_seconds=self.settings.settle_seconds
        ).manage(cluster)

    async def delete_network(self, cluster: Cluster) -> None:
        await teardown(cluster.cloud_resources, self.ops.teardown_order)

    async def delete_key_pair(self, cluster: Cluster) -> None:
        await teardown(cluster.cloud_resources, [self.ops.key_pair])

    async def open_ssh(self, cluster: Cluster) -> None:
        await SecurityGroupSync(self.ops.security_group).open_ssh(cluster)

    async def close_ssh(self, cluster: Cluster) -> None:
        await SecurityGroupSync(self.ops.security_group).close_ssh(cluster)

    async def get_nodes_system_info(self, cluster: Cluster) -> None:
        """
        Resolve image, SSH user and instance types for every node group that
        still has NODE_FINDING nodes. The first matching instance type becomes
        the primary; the rest become the node's backup list.
        """
        for group in cluster.node_groups:
            members = cluster.nodes_in_group(group.id)
            if not any(node.status == NodeStatus.NODE_FINDING for node in members):
                continue

            image = await self.find_image(cluster, group)
            instance_types = await self.find_instance_type(cluster, group)
            if not instance_types:
                raise InfrastructureError(f"no instance type found for node group {group.name or group.id}")

            primary, backups = instance_types[0], instance_types[1:]
            if primary.memory_gib and group.memory != primary.memory_gib:
                group.memory = primary.memory_gib
            group.instance_type = primary.instance_type

            for node in members:
                node.user = image.user
                node.image_id = image.image_id
                node.system_disk_name = image.root_device_name
                node.instance_type = primary.instance_type
                node.backup_instance_ids = ",".join(t.instance_type for t in backups)
            logger.info(
                "node group %s resolved to %s with %d backups",
                group.name or group.id,
                primary.instance_type,
                len(backups),
            )
