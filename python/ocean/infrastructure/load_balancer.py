"""
ocean/infrastructure/load_balancer.py

Synchronizes the cluster load balancer (ManageSLB) with the public ingress
ports and the current master membership.

Every public port gets one backend group named by `ops.group_name(masters, port)`
and one TCP listener. A group whose name is no longer desired (port removed or,
where the provider hashes membership into the name, masters changed) is removed
together with its listeners, listeners first.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List

from ocean.infrastructure.ops import BackendGroup, Listener, LoadBalancerOps, Slot
from ocean.infrastructure.reconcile import reconcile_resources, require
from ocean.models.cluster import Cluster
from ocean.models.resources import CloudResource, ResourceType, TagKey

logger = logging.getLogger(__name__)


class LoadBalancerManager:
    def __init__(self, ops: LoadBalancerOps, *, settle_seconds: float = 5.0) -> None:
        self.ops = ops
        self.settle_seconds = settle_seconds

    async def ensure_load_balancer(self, cluster: Cluster) -> CloudResource:
        vpc = require(cluster.cloud_resources, ResourceType.VPC)
        slot = Slot(
            name=cluster.load_balancer_name,
            tags={**cluster.tags(), TagKey.NAME: cluster.load_balancer_name},
            associated_id=vpc.ref_id,
        )
        [lb] = await reconcile_resources(
            cluster.cloud_resources,
            self.ops,
            [slot],
            match=lambda live, s: live.name == s.name,
        )
        return lb

    async def manage(self, cluster: Cluster) -> CloudResource:
        lb = await self.ensure_load_balancer(cluster)
        masters = sorted(node.instance_id for node in cluster.masters() if node.instance_id)
        desired: Dict[str, int] = {
            self.ops.group_name(masters, port): port for port in cluster.public_ports()
        }

        groups = await self.ops.list_groups(lb)
        listeners = await self.ops.list_listeners(lb)

        for group in groups:
            if group.name in desired:
                continue
            removed = await self._remove_group(lb, group, listeners)
            listeners = [item for item in listeners if item not in removed]

        present = {group.name: group for group in groups if group.name in desired}
        listening_ports = {listener.port for listener in listeners}
        for name, port in desired.items():
            group = present.get(name)
            if group is None:
                group = await self.ops.create_group(lb, name, port, masters)
                logger.info("backend group %s for port %d created", name, port)
            if port not in listening_ports:
                await self.ops.create_listener(lb, group, port)
                listening_ports.add(port)
                logger.info("listener on port %d created", port)
        return lb

    async def _remove_group(
        self, lb: CloudResource, group: BackendGroup, listeners: List[Listener]
    ) -> List[Listener]:
        bound = [
            listener
            for listener in listeners
            if listener.group_id == group.group_id or listener.port == group.port
        ]
        for listener in bound:
            await self.ops.delete_listener(lb, listener)
            logger.info("listener on port %d deleted", listener.port)
        await asyncio.sleep(self.settle_seconds)
        await self.ops.delete_group(lb, group)
        logger.info("backend group %s deleted", group.name)
        await asyncio.sleep(self.settle_seconds)
        return bound
