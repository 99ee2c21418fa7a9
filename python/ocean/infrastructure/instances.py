"""
ocean/infrastructure/instances.py

Instance lifecycle for cloud node groups (ManageInstance):
  1) forget instance ids that vanished out of band;
  2) terminate instances of NODE_DELETING nodes;
  3) launch NODE_CREATING nodes, spreading them across private subnets and
     falling back across backup instance types when a zone has no inventory;
  4) wait for launches to run and backfill node addresses.

Capacity exhaustion and start timeouts are recorded on the node and never
abort the pass.
"""

from __future__ import annotations

import base64
import logging
from typing import Dict, List, Optional, Set

from ocean.infrastructure.errors import InfrastructureError
from ocean.infrastructure.ops import InstanceOps
from ocean.infrastructure.reconcile import require
from ocean.models.cluster import (
    Cluster,
    ClusterStatus,
    Node,
    NodeErrorType,
    NodeRole,
    NodeStatus,
)
from ocean.models.compute import InstanceSpec
from ocean.models.resources import ResourceType, TagKey

logger = logging.getLogger(__name__)

INSUFFICIENT_INVENTORY = "INSUFFICIENT INVENTORY"
START_TIMEOUT = "START TIMEOUT"


class InstanceLifecycleManager:
    def __init__(self, ops: InstanceOps) -> None:
        self.ops = ops

    async def manage(self, cluster: Cluster, install_script: str = "") -> None:
        """
        Converge compute instances to the node list.

        Args:
            cluster: The cluster; its nodes are updated in place.
            install_script: Shell script attached as user data to master nodes
                launched while the cluster is STARTING.

        Raises:
            MissingResourceError: VPC, security group or key pair is not registered.
            InfrastructureError: A provider call failed.
        """
        registry = cluster.cloud_resources
        vpc = require(registry, ResourceType.VPC)
        security_group = require(registry, ResourceType.SECURITY_GROUP)
        key_pair = require(registry, ResourceType.KEY_PAIR)

        live_ids = {inst.instance_id for inst in await self.ops.list_instances(vpc)}

        for node in cluster.nodes:
            if (
                node.instance_id
                and node.instance_id not in live_ids
                and node.status
                in (NodeStatus.NODE_RUNNING, NodeStatus.NODE_PENDING, NodeStatus.NODE_CREATING)
            ):
                logger.info("instance %s of node %s vanished", node.instance_id, node.name)
                node.instance_id = ""

        await self._terminate(cluster, live_ids)

        # Launched by an earlier pass that timed out before the instance started.
        created: Dict[str, Node] = {
            node.instance_id: node
            for node in cluster.nodes
            if node.status == NodeStatus.NODE_CREATING
            and node.instance_id
            and node.instance_id in live_ids
        }
        pending = [
            node
            for node in cluster.nodes
            if node.status == NodeStatus.NODE_CREATING
            and not node.instance_id
            and cluster.get_node_group(node.node_group_id) is not None
        ]
        for index, node in enumerate(pending):
            instance_id = await self._launch(
                cluster, node, index, security_group.ref_id, key_pair.name, install_script
            )
            if instance_id:
                created[instance_id] = node

        if created:
            await self._await_running(cluster, created)

    async def _terminate(self, cluster: Cluster, live_ids: Set[str]) -> None:
        doomed = [
            node
            for node in cluster.nodes
            if node.status == NodeStatus.NODE_DELETING
            and node.instance_id
            and node.instance_id in live_ids
        ]
        if not doomed:
            return
        instance_ids = [node.instance_id for node in doomed]
        await self.ops.terminate(instance_ids)
        await self.ops.wait_terminated(instance_ids)
        for node in doomed:
            logger.info("instance %s of node %s terminated", node.instance_id, node.name)
            node.instance_id = ""

    async def _pick_instance_type(self, node: Node, zone: str) -> Optional[str]:
        for candidate in [node.instance_type, *node.backup_instance_types]:
            if candidate and await self.ops.check_inventory(candidate, zone):
                return candidate
        return None

    async def _launch(
        self,
        cluster: Cluster,
        node: Node,
        index: int,
        security_group_id: str,
        key_pair_name: str,
        install_script: str,
    ) -> str:
        subnet = cluster.distribute_node_private_subnets(index)
        if subnet is None or subnet.zone is None:
            raise InfrastructureError("private subnet not found")
        zone = subnet.zone

        instance_type = await self._pick_instance_type(node, zone)
        if instance_type is None:
            logger.warning("no inventory for node %s in zone %s", node.name, zone)
            node.set_error(NodeErrorType.INFRASTRUCTURE_ERROR, INSUFFICIENT_INVENTORY)
            return ""
        node.instance_type = instance_type

        user_data = ""
        if cluster.status == ClusterStatus.STARTING and node.role == NodeRole.MASTER and install_script:
            user_data = base64.b64encode(install_script.encode("utf-8")).decode("ascii")

        name = node.name or f"{cluster.name}-{node.id[:8]}"
        spec = InstanceSpec(
            name=name,
            image_id=node.image_id,
            instance_type=instance_type,
            subnet_id=subnet.ref_id,
            zone=zone,
            security_group_id=security_group_id,
            key_pair_name=key_pair_name,
            system_disk_size=node.system_disk_size,
            system_disk_name=node.system_disk_name,
            user_data=user_data,
            tags={**cluster.tags(), TagKey.NAME: name, TagKey.ZONE_ID: zone},
        )
        instance = await self.ops.create_instance(spec)
        node.instance_id = instance.instance_id
        node.set_error(NodeErrorType.NONE, "")

        group = cluster.get_node_group(node.node_group_id)
        if group is not None:
            price = await self.ops.instance_price(instance_type, zone)
            group.node_price = max(group.node_price, price)
        logger.info("instance %s launched for node %s (%s)", instance.instance_id, name, instance_type)
        return instance.instance_id

    async def _await_running(self, cluster: Cluster, created: Dict[str, Node]) -> None:
        running = await self.ops.wait_running(list(created))
        for instance_id, node in created.items():
            instance = running.get(instance_id)
            if instance is None:
                logger.warning("instance %s of node %s did not start", instance_id, node.name)
                node.set_error(NodeErrorType.INFRASTRUCTURE_ERROR, START_TIMEOUT)
                continue
            node.ip = instance.private_ip
            node.user = node.user or self.ops.default_user
            node.status = NodeStatus.NODE_RUNNING
            node.set_error(NodeErrorType.NONE, "")


def nodes_with_errors(cluster: Cluster) -> List[Node]:
    return [node for node in cluster.nodes if node.error_message]
