"""
ocean/infrastructure/security_group.py

Keeps the cluster security group's ingress rules equal to
`Cluster.ingress_controller_rules`.

Rules are compared only by their canonical key `protocol-cidr-start/end`;
provider rule ids never take part in the diff.
"""

from __future__ import annotations

import logging
from typing import Dict, List

from ocean.infrastructure.ops import SecurityGroupOps, Slot
from ocean.infrastructure.reconcile import reconcile_resources, require
from ocean.models.cluster import Cluster, IngressRule
from ocean.models.resources import CloudResource, ResourceType, TagKey

logger = logging.getLogger(__name__)

SSH_RULE = IngressRule(protocol="tcp", ip_cidr="0.0.0.0/0", start_port=22, end_port=22)


def rule_key(rule: IngressRule) -> str:
    return f"{rule.protocol.upper()}-{rule.ip_cidr}-{rule.start_port}/{rule.end_port}"


def _by_key(rules: List[IngressRule]) -> Dict[str, IngressRule]:
    return {rule_key(rule): rule for rule in rules}


class SecurityGroupSync:
    def __init__(self, ops: SecurityGroupOps) -> None:
        self.ops = ops

    async def ensure_group(self, cluster: Cluster) -> CloudResource:
        vpc = require(cluster.cloud_resources, ResourceType.VPC)
        slot = Slot(
            name=cluster.security_group_name,
            tags={**cluster.tags(), TagKey.NAME: cluster.security_group_name},
            associated_id=vpc.ref_id,
        )
        [group] = await reconcile_resources(
            cluster.cloud_resources,
            self.ops,
            [slot],
            match=lambda live, s: live.name == s.name and live.associated_id == s.associated_id,
        )
        return group

    async def sync(self, cluster: Cluster) -> CloudResource:
        """
        Create or adopt the security group, then revoke live rules that are
        not desired and authorize desired rules that are not live.
        """
        group = await self.ensure_group(cluster)
        desired = _by_key(cluster.ingress_controller_rules)
        live = _by_key(await self.ops.list_rules(group))

        stale = [rule for key, rule in live.items() if key not in desired]
        if stale:
            await self.ops.revoke(group, stale)
            logger.info("revoked %d ingress rules from %s", len(stale), group.ref_id)

        missing = [rule for key, rule in desired.items() if key not in live]
        if missing:
            await self.ops.authorize(group, missing)
            logger.info("authorized %d ingress rules on %s", len(missing), group.ref_id)
        return group

    async def open_ssh(self, cluster: Cluster) -> None:
        """Temporarily allow SSH from anywhere (used while installing)."""
        group = require(cluster.cloud_resources, ResourceType.SECURITY_GROUP)
        if rule_key(SSH_RULE) not in _by_key(await self.ops.list_rules(group)):
            await self.ops.authorize(group, [SSH_RULE])

    async def close_ssh(self, cluster: Cluster) -> None:
        group = require(cluster.cloud_resources, ResourceType.SECURITY_GROUP)
        if rule_key(SSH_RULE) in _by_key(cluster.ingress_controller_rules):
            return
        if rule_key(SSH_RULE) in _by_key(await self.ops.list_rules(group)):
            await self.ops.revoke(group, [SSH_RULE])
