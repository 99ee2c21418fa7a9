"""
ocean/tests/conftest.py

In-memory provider bindings for driving the reconcilers without a cloud.
Each fake keeps its own "live" state and records every mutating call.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Set, Tuple

import pytest

from ocean.infrastructure.ops import (
    BackendGroup,
    InstanceOps,
    Listener,
    LoadBalancerOps,
    ResourceOps,
    SecurityGroupOps,
    Slot,
)
from ocean.infrastructure.reconciler import CloudOps
from ocean.infrastructure.security_group import rule_key
from ocean.models.cluster import (
    Cluster,
    IngressRule,
    Node,
    NodeGroup,
    NodeRole,
    NodeStatus,
    Provider,
)
from ocean.models.compute import Instance, InstanceSpec, InstanceState
from ocean.models.resources import (
    Access,
    CloudResource,
    ResourceRegistry,
    ResourceType,
    TagKey,
    Tags,
)
from ocean.models.settings import OceanSettings
from ocean.utils.poll import poll_until


class FakeResourceOps(ResourceOps):
    def __init__(self, resource_type: ResourceType, prefix: str, wait_attempts: int = 3) -> None:
        self.resource_type = resource_type
        self.prefix = prefix
        self.live: Dict[str, CloudResource] = {}
        self.created: List[Slot] = []
        self.deleted: List[str] = []
        self.tagged: List[str] = []
        self.attached: List[Tuple[str, str]] = []
        self.never_available = False
        self.wait_attempts = wait_attempts
        self.probes = 0

    def seed(self, **fields: object) -> CloudResource:
        """Put a resource at the provider that the registry does not know about."""
        resource = CloudResource(type=self.resource_type, **fields)
        self.live[resource.ref_id] = resource
        return resource

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        return [res.model_copy(deep=True) for res in self.live.values()]

    async def create(self, slot: Slot) -> CloudResource:
        self.created.append(slot)
        resource = CloudResource(
            type=self.resource_type,
            ref_id=f"{self.prefix}-{len(self.created)}",
            name=slot.name,
            value=slot.value,
            associated_id=slot.associated_id,
            tags=dict(slot.tags),
        )
        self.live[resource.ref_id] = resource.model_copy(deep=True)
        return resource

    async def tag(self, resource: CloudResource, tags: Tags) -> None:
        self.tagged.append(resource.ref_id)
        if resource.ref_id in self.live:
            self.live[resource.ref_id].tags = dict(tags)

    async def delete(self, resource: CloudResource) -> None:
        self.deleted.append(resource.ref_id)
        self.live.pop(resource.ref_id, None)

    async def wait_available(self, resource: CloudResource) -> None:
        async def probe() -> Optional[bool]:
            self.probes += 1
            return None if self.never_available else True

        await poll_until(
            probe,
            interval=0,
            max_attempts=self.wait_attempts,
            timeout_message=f"{self.resource_type.value.lower()} not available",
        )

    async def attach(self, resource: CloudResource, slot: Slot) -> None:
        self.attached.append((resource.ref_id, slot.value))


class FakeSecurityGroupOps(SecurityGroupOps, FakeResourceOps):
    def __init__(self) -> None:
        FakeResourceOps.__init__(self, ResourceType.SECURITY_GROUP, "sg")
        self.rules: List[IngressRule] = []
        self.authorized: List[IngressRule] = []
        self.revoked: List[IngressRule] = []

    async def list_rules(self, group: CloudResource) -> List[IngressRule]:
        return list(self.rules)

    async def authorize(self, group: CloudResource, rules: List[IngressRule]) -> None:
        self.authorized.extend(rules)
        self.rules.extend(rules)

    async def revoke(self, group: CloudResource, rules: List[IngressRule]) -> None:
        self.revoked.extend(rules)
        keys = {rule_key(rule) for rule in rules}
        self.rules = [rule for rule in self.rules if rule_key(rule) not in keys]


class FakeLoadBalancerOps(LoadBalancerOps, FakeResourceOps):
    def __init__(self) -> None:
        FakeResourceOps.__init__(self, ResourceType.LOAD_BALANCER, "lb")
        self.groups: Dict[str, BackendGroup] = {}
        self.members: Dict[str, List[str]] = {}
        self.listeners: List[Listener] = []
        self.events: List[str] = []

    def group_name(self, master_instance_ids: List[str], port: int) -> str:
        return f"{'+'.join(master_instance_ids)}-{port}"

    async def list_groups(self, lb: CloudResource) -> List[BackendGroup]:
        return list(self.groups.values())

    async def list_listeners(self, lb: CloudResource) -> List[Listener]:
        return list(self.listeners)

    async def create_group(
        self, lb: CloudResource, name: str, port: int, instance_ids: List[str]
    ) -> BackendGroup:
        group = BackendGroup(group_id=f"grp-{len(self.events)}", name=name, port=port)
        self.groups[group.group_id] = group
        self.members[group.group_id] = list(instance_ids)
        self.events.append(f"create-group:{name}")
        return group

    async def create_listener(
        self, lb: CloudResource, group: BackendGroup, port: int
    ) -> Listener:
        listener = Listener(listener_id=f"lsn-{port}", port=port, group_id=group.group_id)
        self.listeners.append(listener)
        self.events.append(f"create-listener:{port}")
        return listener

    async def delete_listener(self, lb: CloudResource, listener: Listener) -> None:
        self.listeners = [item for item in self.listeners if item != listener]
        self.events.append(f"delete-listener:{listener.port}")

    async def delete_group(self, lb: CloudResource, group: BackendGroup) -> None:
        self.groups.pop(group.group_id, None)
        self.events.append(f"delete-group:{group.name}")


class FakeInstanceOps(InstanceOps):
    default_user = "ubuntu"

    def __init__(self) -> None:
        self.instances: Dict[str, Instance] = {}
        self.inventory: Set[Tuple[str, str]] = set()
        self.stuck: Set[str] = set()
        self.launched: List[InstanceSpec] = []
        self.terminated: List[str] = []
        self.prices: Dict[str, float] = {}

    def seed(self, instance_id: str) -> None:
        self.instances[instance_id] = Instance(instance_id=instance_id, state=InstanceState.RUNNING)

    async def list_instances(self, vpc: CloudResource) -> List[Instance]:
        return list(self.instances.values())

    async def check_inventory(self, instance_type: str, zone: str) -> bool:
        return (instance_type, zone) in self.inventory

    async def create_instance(self, spec: InstanceSpec) -> Instance:
        self.launched.append(spec)
        instance = Instance(
            instance_id=f"i-{len(self.launched)}",
            state=InstanceState.PENDING,
            private_ip=f"10.0.0.{len(self.launched) + 10}",
            zone=spec.zone,
            instance_type=spec.instance_type,
            name=spec.name,
        )
        self.instances[instance.instance_id] = instance
        return instance

    async def terminate(self, instance_ids: List[str]) -> None:
        self.terminated.extend(instance_ids)
        for instance_id in instance_ids:
            self.instances.pop(instance_id, None)

    async def wait_terminated(self, instance_ids: List[str]) -> None:
        return None

    async def wait_running(self, instance_ids: List[str]) -> Dict[str, Instance]:
        running = {}
        for instance_id in instance_ids:
            instance = self.instances[instance_id]
            if instance.name in self.stuck:
                continue
            instance.state = InstanceState.RUNNING
            running[instance_id] = instance
        return running

    async def instance_price(self, instance_type: str, zone: str) -> float:
        return self.prices.get(instance_type, 0.0)


class FakeNetwork:
    """One fake binding per network resource type, wired like a provider bundle."""

    def __init__(self) -> None:
        self.vpc = FakeResourceOps(ResourceType.VPC, "vpc")
        self.subnet = FakeResourceOps(ResourceType.SUBNET, "subnet")
        self.eip = FakeResourceOps(ResourceType.ELASTIC_IP, "eip")
        self.nat_gateway = FakeResourceOps(ResourceType.NAT_GATEWAY, "nat")
        self.route_table = FakeResourceOps(ResourceType.ROUTE_TABLE, "rt")
        self.internet_gateway = FakeResourceOps(ResourceType.INTERNET_GATEWAY, "igw")
        self.key_pair = FakeResourceOps(ResourceType.KEY_PAIR, "kp")
        self.security_group = FakeSecurityGroupOps()
        self.load_balancer = FakeLoadBalancerOps()
        self.instances = FakeInstanceOps()

    def cloud_ops(self, with_internet_gateway: bool = False) -> CloudOps:
        return CloudOps(
            vpc=self.vpc,
            subnet=self.subnet,
            eip=self.eip,
            nat_gateway=self.nat_gateway,
            route_table=self.route_table,
            security_group=self.security_group,
            key_pair=self.key_pair,
            load_balancer=self.load_balancer,
            instances=self.instances,
            teardown_order=[
                self.load_balancer,
                self.security_group,
                self.nat_gateway,
                self.eip,
                self.route_table,
                self.subnet,
                self.internet_gateway,
                self.vpc,
            ],
            internet_gateway=self.internet_gateway if with_internet_gateway else None,
        )


def add_zones(cluster: Cluster, zones: List[str]) -> None:
    for zone in zones:
        cluster.cloud_resources.add(
            CloudResource(
                type=ResourceType.AVAILABILITY_ZONES,
                ref_id=zone,
                name=zone,
                tags={TagKey.ZONE_ID: zone},
            )
        )


def register_compute_prerequisites(cluster: Cluster, zones: List[str]) -> None:
    """VPC, security group, key pair and one private subnet per zone."""
    registry = cluster.cloud_resources
    registry.add(CloudResource(type=ResourceType.VPC, ref_id="vpc-1", value=cluster.vpc_cidr))
    registry.add(CloudResource(type=ResourceType.SECURITY_GROUP, ref_id="sg-1", associated_id="vpc-1"))
    registry.add(CloudResource(type=ResourceType.KEY_PAIR, ref_id="kp-1", name=cluster.key_pair_name))
    for index, zone in enumerate(zones):
        registry.add(
            CloudResource(
                type=ResourceType.SUBNET,
                ref_id=f"subnet-{zone}",
                value=f"10.0.{index}.0/24",
                associated_id="vpc-1",
                tags={TagKey.ZONE_ID: zone, TagKey.ACCESS: Access.PRIVATE.value},
            )
        )


@pytest.fixture
def settings() -> OceanSettings:
    return OceanSettings(timeout_count=3, timeout_seconds=0, settle_seconds=0)


@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def aws_cluster() -> Cluster:
    cluster = Cluster(name="demo", provider=Provider.AWS, region="us-east-1", public_key="ssh-ed25519 AAAA")
    add_zones(cluster, ["zone-a", "zone-b"])
    return cluster


@pytest.fixture
def node_group() -> NodeGroup:
    return NodeGroup(name="workers", cpu=2, memory=8)


def make_node(
    group: NodeGroup,
    *,
    name: str,
    status: NodeStatus = NodeStatus.NODE_CREATING,
    role: NodeRole = NodeRole.WORKER,
    **fields: object,
) -> Node:
    return Node(name=name, node_group_id=group.id, status=status, role=role, **fields)
