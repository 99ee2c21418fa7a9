"""
ocean/infrastructure/reconcile.py

The one reconciliation algorithm every provider shares, and the network
pipeline built from it.

For each resource type a step runs three phases:
  1) list the live resources from the provider;
  2) prune registry entries that are no longer live, and adopt live resources
     that fit an unfilled slot;
  3) create whatever is still missing, wait for it, and register it.

Steps only ever read resources registered by earlier steps, so they run strictly
in order: VPC, subnets, internet gateway, EIPs, NAT gateways, route tables.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional, Sequence

from ocean.infrastructure.errors import (
    InfrastructureError,
    MissingResourceError,
    ResourceTimeoutError,
)
from ocean.infrastructure.ops import ResourceOps, Slot
from ocean.models.cluster import Cluster
from ocean.models.resources import (
    Access,
    CloudResource,
    ResourcePredicate,
    ResourceRegistry,
    ResourceType,
    TagKey,
    in_zone,
    with_access,
)
from ocean.utils.cidr import generate_subnet
from ocean.utils.poll import PollTimeoutError

logger = logging.getLogger(__name__)

SlotMatcher = Callable[[CloudResource, Slot], bool]
SlotPreparer = Callable[[Slot, List[CloudResource]], Slot]


def _slot_predicates(slot: Slot) -> List[ResourcePredicate]:
    predicates: List[ResourcePredicate] = []
    if slot.zone is not None:
        predicates.append(in_zone(slot.zone))
    if slot.access is not None:
        predicates.append(with_access(slot.access))
    return predicates


async def reconcile_resources(
    registry: ResourceRegistry,
    ops: ResourceOps,
    slots: Sequence[Slot],
    *,
    match: Optional[SlotMatcher] = None,
    prepare: Optional[SlotPreparer] = None,
) -> List[CloudResource]:
    """
    Converge one resource type so that every slot is filled exactly once.

    A slot with a zone is filled by a registered resource carrying the same
    zone (and access) tags; a slot without a zone is filled by any registered
    resource of the type.

    Args:
        registry: The cluster registry; mutated in place.
        ops: Provider bindings for the resource type.
        slots: The desired resources.
        match: Overrides `ops.adoptable` when deciding whether a live,
            unregistered resource may fill a slot.
        prepare: Called right before a create to finish the slot (e.g. to
            allocate a CIDR); receives the live list of this pass.

    Returns:
        The registered resource for each slot, in slot order.

    Raises:
        ResourceTimeoutError: A created resource never became available.
        InfrastructureError: Any provider call failed.
    """
    resource_type = ops.resource_type
    matcher = match or ops.adoptable

    live = await ops.list(registry)
    for orphan in registry.prune(resource_type, (res.ref_id for res in live)):
        logger.info("%s %s is gone at the provider, pruned", resource_type.value, orphan.ref_id)

    filled: List[CloudResource] = []
    for slot in slots:
        resource = registry.find(resource_type, *_slot_predicates(slot))

        if resource is None:
            resource = await _adopt(registry, ops, live, slot, matcher)

        if resource is None:
            if prepare is not None:
                slot = prepare(slot, live)
            resource = await ops.create(slot)
            try:
                await ops.wait_available(resource)
            except PollTimeoutError as exc:
                raise ResourceTimeoutError(str(exc)) from exc
            registry.add(resource)
            logger.info("%s %s (%s) created", resource_type.value, slot.name, resource.ref_id)

        await ops.attach(resource, slot)
        filled.append(resource)
    return filled


async def _adopt(
    registry: ResourceRegistry,
    ops: ResourceOps,
    live: List[CloudResource],
    slot: Slot,
    matcher: SlotMatcher,
) -> Optional[CloudResource]:
    for candidate in live:
        if registry.get_by_ref_id(ops.resource_type, candidate.ref_id) is not None:
            continue
        if not matcher(candidate, slot):
            continue
        tags = {**candidate.tags, **slot.tags}
        if tags != candidate.tags:
            await ops.tag(candidate, tags)
        adopted = candidate.model_copy(
            update={
                "name": slot.name,
                "tags": tags,
                "associated_id": candidate.associated_id or slot.associated_id,
            }
        )
        registry.add(adopted)
        logger.info(
            "%s %s already exists, adopted as %s",
            ops.resource_type.value,
            candidate.ref_id,
            slot.name,
        )
        return adopted
    return None


def require(registry: ResourceRegistry, resource_type: ResourceType) -> CloudResource:
    """Return the registered singleton of `resource_type` or fail the step."""
    resource = registry.get_single(resource_type)
    if resource is None:
        raise MissingResourceError(f"{resource_type.value.lower().replace('_', ' ')} not found")
    return resource


def _unclaimed(live: CloudResource, slot: Slot) -> bool:
    """Live resources tagged for another cluster are never adopted."""
    owner = live.tags.get(TagKey.CLUSTER)
    return owner is None or owner == slot.tags.get(TagKey.CLUSTER)


def _free_eip(live: CloudResource, slot: Slot) -> bool:
    if live.associated_id or not _unclaimed(live, slot):
        return False
    return live.zone is None or live.zone == slot.zone


class NetworkProvisioner:
    """
    Ordered network pipeline over one provider's resource bindings.

    Creates, per availability zone, one private subnet, one EIP, one NAT
    gateway bound to that EIP and one private route table whose default route
    points at the NAT gateway.
    """

    def __init__(
        self,
        *,
        vpc: ResourceOps,
        subnet: ResourceOps,
        eip: ResourceOps,
        nat_gateway: ResourceOps,
        route_table: ResourceOps,
        internet_gateway: Optional[ResourceOps] = None,
    ) -> None:
        self.vpc = vpc
        self.subnet = subnet
        self.eip = eip
        self.nat_gateway = nat_gateway
        self.route_table = route_table
        self.internet_gateway = internet_gateway

    async def create_network(self, cluster: Cluster) -> None:
        zones = cluster.zones()
        if not zones:
            raise MissingResourceError("availability zones not found")

        await self.create_vpc(cluster)
        await self.create_subnets(cluster, zones)
        if self.internet_gateway is not None:
            await self.create_internet_gateway(cluster)
        await self.create_eips(cluster, zones)
        await self.create_nat_gateways(cluster, zones)
        await self.create_route_tables(cluster, zones)

    async def create_vpc(self, cluster: Cluster) -> CloudResource:
        slot = Slot(
            name=cluster.vpc_name,
            tags={**cluster.tags(), TagKey.NAME: cluster.vpc_name},
            value=cluster.vpc_cidr,
        )
        [vpc] = await reconcile_resources(
            cluster.cloud_resources,
            self.vpc,
            [slot],
            match=lambda live, s: live.value == s.value and _unclaimed(live, s),
        )
        return vpc

    async def create_subnets(self, cluster: Cluster, zones: List[str]) -> List[CloudResource]:
        registry = cluster.cloud_resources
        vpc = require(registry, ResourceType.VPC)
        slots = [
            Slot(
                name=cluster.subnet_name(zone),
                tags={
                    **cluster.tags(),
                    TagKey.NAME: cluster.subnet_name(zone),
                    TagKey.ZONE_ID: zone,
                    TagKey.ACCESS: Access.PRIVATE.value,
                },
                associated_id=vpc.ref_id,
            )
            for zone in zones
        ]
        allocated: List[str] = []

        def allocate_cidr(slot: Slot, live: List[CloudResource]) -> Slot:
            known = [res.value for res in registry.get(ResourceType.SUBNET)]
            known += [res.value for res in live]
            try:
                cidr = generate_subnet(cluster.vpc_cidr, known + allocated)
            except ValueError as exc:
                raise InfrastructureError(str(exc)) from exc
            allocated.append(cidr)
            return slot.model_copy(update={"value": cidr})

        return await reconcile_resources(registry, self.subnet, slots, prepare=allocate_cidr)

    async def create_internet_gateway(self, cluster: Cluster) -> CloudResource:
        assert self.internet_gateway is not None
        vpc = require(cluster.cloud_resources, ResourceType.VPC)
        slot = Slot(
            name=cluster.internet_gateway_name,
            tags={**cluster.tags(), TagKey.NAME: cluster.internet_gateway_name},
            associated_id=vpc.ref_id,
        )
        [igw] = await reconcile_resources(
            cluster.cloud_resources,
            self.internet_gateway,
            [slot],
            match=lambda live, s: live.associated_id == s.associated_id,
        )
        return igw

    async def create_eips(self, cluster: Cluster, zones: List[str]) -> List[CloudResource]:
        slots = [
            Slot(
                name=cluster.eip_name(zone),
                tags={**cluster.tags(), TagKey.NAME: cluster.eip_name(zone), TagKey.ZONE_ID: zone},
            )
            for zone in zones
        ]
        return await reconcile_resources(
            cluster.cloud_resources, self.eip, slots, match=_free_eip
        )

    async def create_nat_gateways(self, cluster: Cluster, zones: List[str]) -> List[CloudResource]:
        registry = cluster.cloud_resources
        slots = []
        for zone in zones:
            subnet = registry.find(ResourceType.SUBNET, in_zone(zone), with_access(Access.PRIVATE))
            if subnet is None:
                raise MissingResourceError(f"private subnet for zone {zone} not found")
            eip = registry.find(ResourceType.ELASTIC_IP, in_zone(zone))
            if eip is None:
                raise MissingResourceError(f"elastic ip for zone {zone} not found")
            slots.append(
                Slot(
                    name=cluster.nat_gateway_name(zone),
                    tags={
                        **cluster.tags(),
                        TagKey.NAME: cluster.nat_gateway_name(zone),
                        TagKey.ZONE_ID: zone,
                        TagKey.ACCESS: Access.PRIVATE.value,
                    },
                    value=eip.ref_id,
                    associated_id=subnet.ref_id,
                )
            )

        nat_gateways = await reconcile_resources(
            registry,
            self.nat_gateway,
            slots,
            match=lambda live, s: live.associated_id == s.associated_id,
        )
        for nat in nat_gateways:
            eip = registry.get_by_ref_id(ResourceType.ELASTIC_IP, nat.value)
            if eip is not None and not eip.associated_id:
                eip.associated_id = nat.ref_id
        return nat_gateways

    async def create_route_tables(self, cluster: Cluster, zones: List[str]) -> List[CloudResource]:
        registry = cluster.cloud_resources
        slots = []
        for zone in zones:
            subnet = registry.find(ResourceType.SUBNET, in_zone(zone), with_access(Access.PRIVATE))
            nat = registry.find(ResourceType.NAT_GATEWAY, in_zone(zone))
            if subnet is None or nat is None:
                raise MissingResourceError(f"subnet or nat gateway for zone {zone} not found")
            slots.append(
                Slot(
                    name=cluster.route_table_name(zone),
                    tags={
                        **cluster.tags(),
                        TagKey.NAME: cluster.route_table_name(zone),
                        TagKey.ZONE_ID: zone,
                        TagKey.ACCESS: Access.PRIVATE.value,
                    },
                    value=nat.ref_id,
                    associated_id=subnet.ref_id,
                )
            )
        return await reconcile_resources(
            registry,
            self.route_table,
            slots,
            match=lambda live, s: live.zone == s.zone,
        )


async def teardown(registry: ResourceRegistry, steps: Sequence[ResourceOps]) -> None:
    """
    Delete every registered resource in `steps` order.

    Resources already gone at the provider are only dropped from the registry.
    Each type is fully removed from the registry once its step finishes.
    """
    for ops in steps:
        registered = registry.get(ops.resource_type)
        if not registered:
            continue
        live_ids = {res.ref_id for res in await ops.list(registry)}
        for resource in registered:
            if resource.ref_id in live_ids:
                await ops.delete(resource)
                logger.info("%s %s deleted", ops.resource_type.value, resource.ref_id)
            registry.remove(ops.resource_type, resource.ref_id)


__all__ = [
    "NetworkProvisioner",
    "reconcile_resources",
    "require",
    "teardown",
]
