"""
ocean/infrastructure/alicloud.py

AliCloud bindings for the generic reconcilers, over the Tea OpenAPI SDKs:
VPC (VPC, vSwitch, EIP, NAT gateway, route table), ECS (security group,
key pair, instances, images, instance types, regions, zones) and SLB.

Requests are built from PascalCase parameter maps with `Model().from_map` and
sent through the clients' `*_async` methods; responses are read back with
`body.to_map()`. A TeaException with code `DryRunOperation` counts as success.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from typing_extensions import TypeVar

from alibabacloud_ecs20140526 import models as ecs_models
from alibabacloud_ecs20140526.client import Client as EcsClient
from alibabacloud_slb20140515 import models as slb_models
from alibabacloud_slb20140515.client import Client as SlbClient
from alibabacloud_tea_openapi import models as open_api_models
from alibabacloud_vpc20160428 import models as vpc_models
from alibabacloud_vpc20160428.client import Client as VpcClient
from Tea.exceptions import TeaException

from ocean.infrastructure.catalog import (
    ARCH_TO_CPU_ARCHITECTURE,
    ARCH_TO_IMAGE_ARCH,
    GPU_SPEC_TO_CLOUD_SPEC,
    alicloud_instance_type_candidates,
)
from ocean.infrastructure.errors import InfrastructureError
from ocean.infrastructure.ops import (
    BackendGroup,
    InstanceOps,
    Listener,
    LoadBalancerOps,
    ResourceOps,
    SecurityGroupOps,
    Slot,
)
from ocean.infrastructure.reconciler import CloudOps, CloudReconciler
from ocean.models.cluster import Cluster, IngressRule, NodeGroup, Provider
from ocean.models.compute import (
    ImageInfo,
    Instance,
    InstanceSpec,
    InstanceState,
    InstanceTypeInfo,
)
from ocean.models.resources import (
    CloudResource,
    ResourceRegistry,
    ResourceType,
    TagKey,
    Tags,
    decode_tags,
    encode_tags,
)
from ocean.models.settings import OceanSettings
from ocean.utils.poll import PollTimeoutError, poll_until

logger = logging.getLogger(__name__)

T = TypeVar("T")

PAGE_SIZE = 50

_STATES = {
    "Pending": InstanceState.PENDING,
    "Starting": InstanceState.PENDING,
    "Running": InstanceState.RUNNING,
    "Stopping": InstanceState.STOPPING,
    "Stopped": InstanceState.STOPPED,
}


def _action_method(action: str) -> str:
    """`DescribeVSwitches` -> `describe_vswitches_async`, the SDK's own spelling."""
    return re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", action).lower() + "_async"


def _dig(data: Dict[str, Any], *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _items(data: Dict[str, Any], *path: str) -> List[Dict[str, Any]]:
    return _dig(data, *path) or []


def _tags(raw: Dict[str, Any]) -> Tags:
    return decode_tags(_items(raw, "Tags", "Tag"))


class AliApi:
    """One product client (VPC, ECS or SLB) bound to a region."""

    def __init__(self, client: Any, models: Any, region: str, settings: OceanSettings) -> None:
        self.client = client
        self.models = models
        self.region = region
        self.settings = settings

    async def call(self, action: str, **params: Any) -> Dict[str, Any]:
        request = getattr(self.models, f"{action}Request")().from_map(params)
        method = getattr(self.client, _action_method(action))
        try:
            resp = await method(request)
        except TeaException as exc:
            if exc.code == "DryRunOperation":
                return {}
            raise InfrastructureError(f"failed to {action}: {exc.message}") from exc
        return resp.body.to_map() if resp.body is not None else {}

    async def paginate(self, action: str, path: Sequence[str], **params: Any) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page = 1
        while True:
            body = await self.call(action, PageNumber=page, PageSize=PAGE_SIZE, **params)
            batch = _items(body, *path)
            items.extend(batch)
            if not batch or len(items) >= int(body.get("TotalCount", 0) or 0):
                return items
            page += 1

    async def tag(self, resource_type: str, resource_ids: List[str], tags: Tags) -> None:
        await self.call(
            "TagResources",
            RegionId=self.region,
            ResourceType=resource_type,
            ResourceId=resource_ids,
            Tag=encode_tags(tags),
        )

    async def wait(
        self,
        probe: Callable[[], Awaitable[Optional[T]]],
        message: str,
        attempts: Optional[int] = None,
    ) -> T:
        return await poll_until(
            probe,
            interval=self.settings.timeout_seconds,
            max_attempts=attempts or self.settings.timeout_count,
            timeout_message=message,
        )


class _AliOps(ResourceOps):
    tag_type: str = ""

    def __init__(self, api: AliApi, cluster: Cluster) -> None:
        self.api = api
        self.cluster = cluster

    @property
    def region(self) -> str:
        return self.api.region

    @staticmethod
    def _vpc_id(registry: ResourceRegistry) -> str:
        vpc = registry.get_single(ResourceType.VPC)
        return vpc.ref_id if vpc else ""

    async def tag(self, resource: CloudResource, tags: Tags) -> None:
        await self.api.tag(self.tag_type, [resource.ref_id], tags)

    async def _created(self, slot: Slot, ref_id: str, value: str = "") -> CloudResource:
        await self.api.tag(self.tag_type, [ref_id], slot.tags)
        return CloudResource(
            type=self.resource_type,
            ref_id=ref_id,
            name=slot.name,
            value=value or slot.value,
            associated_id=slot.associated_id,
            tags=slot.tags,
        )

    async def _wait_status(
        self, fetch: Callable[[], Awaitable[Optional[Dict[str, Any]]]], status: str, message: str
    ) -> None:
        async def probe() -> Optional[bool]:
            item = await fetch()
            return True if item is not None and item.get("Status") == status else None

        await self.api.wait(probe, message)


class AliVpcOps(_AliOps):
    resource_type = ResourceType.VPC
    tag_type = "VPC"

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpcs = await self.api.paginate(
            "DescribeVpcs", ("Vpcs", "Vpc"), RegionId=self.region
        )
        return [
            CloudResource(
                type=self.resource_type,
                ref_id=vpc["VpcId"],
                name=vpc.get("VpcName", ""),
                value=vpc.get("CidrBlock", ""),
                tags=_tags(vpc),
            )
            for vpc in vpcs
            if not vpc.get("IsDefault")
        ]

    async def create(self, slot: Slot) -> CloudResource:
        body = await self.api.call(
            "CreateVpc", RegionId=self.region, CidrBlock=slot.value, VpcName=slot.name
        )
        return await self._created(slot, body["VpcId"])

    async def wait_available(self, resource: CloudResource) -> None:
        async def fetch() -> Optional[Dict[str, Any]]:
            body = await self.api.call("DescribeVpcs", RegionId=self.region, VpcId=resource.ref_id)
            vpcs = _items(body, "Vpcs", "Vpc")
            return vpcs[0] if vpcs else None

        await self._wait_status(fetch, "Available", "vpc not available")

    async def delete(self, resource: CloudResource) -> None:
        await self.api.call("DeleteVpc", RegionId=self.region, VpcId=resource.ref_id)


class AliSubnetOps(_AliOps):
    resource_type = ResourceType.SUBNET
    tag_type = "VSWITCH"

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpc_id = self._vpc_id(registry)
        if not vpc_id:
            return []
        switches = await self.api.paginate(
            "DescribeVSwitches", ("VSwitches", "VSwitch"), RegionId=self.region, VpcId=vpc_id
        )
        resources = []
        for vsw in switches:
            tags = _tags(vsw)
            tags.setdefault(TagKey.ZONE_ID, vsw.get("ZoneId", ""))
            resources.append(
                CloudResource(
                    type=self.resource_type,
                    ref_id=vsw["VSwitchId"],
                    name=vsw.get("VSwitchName", ""),
                    value=vsw.get("CidrBlock", ""),
                    associated_id=vsw.get("VpcId", vpc_id),
                    tags=tags,
                )
            )
        return resources

    async def create(self, slot: Slot) -> CloudResource:
        body = await self.api.call(
            "CreateVSwitch",
            RegionId=self.region,
            ZoneId=slot.zone,
            CidrBlock=slot.value,
            VpcId=slot.associated_id,
            VSwitchName=slot.name,
        )
        return await self._created(slot, body["VSwitchId"])

    async def wait_available(self, resource: CloudResource) -> None:
        async def fetch() -> Optional[Dict[str, Any]]:
            body = await self.api.call(
                "DescribeVSwitches", RegionId=self.region, VSwitchId=resource.ref_id
            )
            switches = _items(body, "VSwitches", "VSwitch")
            return switches[0] if switches else None

        await self._wait_status(fetch, "Available", "subnet not available")

    async def delete(self, resource: CloudResource) -> None:
        await self.api.call("DeleteVSwitch", RegionId=self.region, VSwitchId=resource.ref_id)


class AliEipOps(_AliOps):
    resource_type = ResourceType.ELASTIC_IP
    tag_type = "EIP"

    async def _describe(self, allocation_id: str) -> Optional[Dict[str, Any]]:
        body = await self.api.call(
            "DescribeEipAddresses", RegionId=self.region, AllocationId=allocation_id
        )
        eips = _items(body, "EipAddresses", "EipAddress")
        return eips[0] if eips else None

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        eips = await self.api.paginate(
            "DescribeEipAddresses",
            ("EipAddresses", "EipAddress"),
            RegionId=self.region,
        )
        return [
            CloudResource(
                type=self.resource_type,
                ref_id=eip["AllocationId"],
                name=eip.get("Name", ""),
                value=eip.get("IpAddress", ""),
                associated_id=eip.get("InstanceId", ""),
                tags=_tags(eip),
            )
            for eip in eips
        ]

    async def create(self, slot: Slot) -> CloudResource:
        body = await self.api.call(
            "AllocateEipAddress",
            RegionId=self.region,
            Bandwidth="5",
            InternetChargeType="PayByTraffic",
        )
        return await self._created(slot, body["AllocationId"], body.get("EipAddress", ""))

    async def wait_available(self, resource: CloudResource) -> None:
        await self._wait_status(
            lambda: self._describe(resource.ref_id), "Available", "elastic ip not available"
        )

    async def delete(self, resource: CloudResource) -> None:
        current = await self._describe(resource.ref_id)
        if current is not None and current.get("InstanceId"):
            await self.api.call(
                "UnassociateEipAddress",
                RegionId=self.region,
                AllocationId=resource.ref_id,
                InstanceId=current["InstanceId"],
                InstanceType="Nat",
                Force=True,
            )
            await self._wait_status(
                lambda: self._describe(resource.ref_id), "Available", "elastic ip not released"
            )
        await self.api.call("ReleaseEipAddress", RegionId=self.region, AllocationId=resource.ref_id)


class AliNatGatewayOps(_AliOps):
    """
    Enhanced NAT gateway in the zone's vSwitch. `attach` binds the zone EIP
    and adds the SNAT entry for the vSwitch once the binding has settled.
    """

    resource_type = ResourceType.NAT_GATEWAY
    tag_type = "NATGATEWAY"

    async def _describe(self, nat_id: str) -> Optional[Dict[str, Any]]:
        body = await self.api.call(
            "DescribeNatGateways", RegionId=self.region, NatGatewayId=nat_id
        )
        gateways = _items(body, "NatGateways", "NatGateway")
        return gateways[0] if gateways else None

    @staticmethod
    def _eips(nat: Dict[str, Any]) -> List[str]:
        return [ip.get("AllocationId", "") for ip in _items(nat, "IpLists", "IpList")]

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpc_id = self._vpc_id(registry)
        if not vpc_id:
            return []
        gateways = await self.api.paginate(
            "DescribeNatGateways",
            ("NatGateways", "NatGateway"),
            RegionId=self.region,
            VpcId=vpc_id,
            NetworkType="internet",
        )
        resources = []
        for nat in gateways:
            subnet_id = _dig(nat, "NatGatewayPrivateInfo", "VswitchId") or ""
            tags = _tags(nat)
            subnet = registry.get_by_ref_id(ResourceType.SUBNET, subnet_id)
            if subnet is not None and subnet.zone:
                tags.setdefault(TagKey.ZONE_ID, subnet.zone)
            eips = self._eips(nat)
            resources.append(
                CloudResource(
                    type=self.resource_type,
                    ref_id=nat["NatGatewayId"],
                    name=nat.get("Name", ""),
                    value=eips[0] if eips else "",
                    associated_id=subnet_id,
                    tags=tags,
                )
            )
        return resources

    async def create(self, slot: Slot) -> CloudResource:
        body = await self.api.call(
            "CreateNatGateway",
            RegionId=self.region,
            VpcId=self._vpc_id(self.cluster.cloud_resources),
            VSwitchId=slot.associated_id,
            NatType="Enhanced",
            NetworkType="internet",
            Name=slot.name,
            InternetChargeType="PayByLcu",
        )
        return await self._created(slot, body["NatGatewayId"])

    async def wait_available(self, resource: CloudResource) -> None:
        await self._wait_status(
            lambda: self._describe(resource.ref_id), "Available", "nat gateway not available"
        )

    async def attach(self, resource: CloudResource, slot: Slot) -> None:
        nat = await self._describe(resource.ref_id)
        if nat is None:
            raise InfrastructureError(f"nat gateway {resource.ref_id} not found")

        if slot.value not in self._eips(nat):
            await self.api.call(
                "AssociateEipAddress",
                RegionId=self.region,
                AllocationId=slot.value,
                InstanceId=resource.ref_id,
                InstanceType="Nat",
            )
            logger.info("elastic ip %s bound to nat gateway %s", slot.value, resource.ref_id)
            await asyncio.sleep(self.api.settings.settle_seconds)

        snat_tables = _items(nat, "SnatTableIds", "SnatTableId")
        if not snat_tables:
            raise InfrastructureError(f"nat gateway {resource.ref_id} has no snat table")
        entries = await self.api.call(
            "DescribeSnatTableEntries",
            RegionId=self.region,
            SnatTableId=snat_tables[0],
            SourceVSwitchId=slot.associated_id,
        )
        if not _items(entries, "SnatTableEntries", "SnatTableEntry"):
            eip = self.cluster.cloud_resources.get_by_ref_id(ResourceType.ELASTIC_IP, slot.value)
            if eip is None or not eip.value:
                raise InfrastructureError(f"elastic ip {slot.value} not found")
            await self.api.call(
                "CreateSnatEntry",
                RegionId=self.region,
                SnatTableId=snat_tables[0],
                SourceVSwitchId=slot.associated_id,
                SnatIp=eip.value,
            )
            logger.info("snat entry for %s via %s created", slot.associated_id, eip.value)
        resource.value = slot.value

    async def delete(self, resource: CloudResource) -> None:
        await self.api.call(
            "DeleteNatGateway", RegionId=self.region, NatGatewayId=resource.ref_id, Force=True
        )

        async def probe() -> Optional[bool]:
            return True if await self._describe(resource.ref_id) is None else None

        await self.api.wait(probe, "nat gateway not deleted")


class AliRouteTableOps(_AliOps):
    resource_type = ResourceType.ROUTE_TABLE
    tag_type = "ROUTETABLE"

    async def _describe(self, table_id: str) -> Optional[Dict[str, Any]]:
        body = await self.api.call(
            "DescribeRouteTableList", RegionId=self.region, RouteTableId=table_id
        )
        tables = _items(body, "RouterTableList", "RouterTableListType")
        return tables[0] if tables else None

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpc_id = self._vpc_id(registry)
        if not vpc_id:
            return []
        tables = await self.api.paginate(
            "DescribeRouteTableList",
            ("RouterTableList", "RouterTableListType"),
            RegionId=self.region,
            VpcId=vpc_id,
        )
        resources = []
        for table in tables:
            if table.get("RouteTableType") == "System":
                continue
            switches = _items(table, "VSwitchIds", "VSwitchId")
            resources.append(
                CloudResource(
                    type=self.resource_type,
                    ref_id=table["RouteTableId"],
                    name=table.get("RouteTableName", ""),
                    associated_id=switches[0] if switches else "",
                    tags=_tags(table),
                )
            )
        return resources

    async def create(self, slot: Slot) -> CloudResource:
        body = await self.api.call(
            "CreateRouteTable",
            RegionId=self.region,
            VpcId=self._vpc_id(self.cluster.cloud_resources),
            RouteTableName=slot.name,
        )
        return await self._created(slot, body["RouteTableId"])

    async def wait_available(self, resource: CloudResource) -> None:
        await self._wait_status(
            lambda: self._describe(resource.ref_id), "Available", "route table not available"
        )

    async def attach(self, resource: CloudResource, slot: Slot) -> None:
        """Default route through the zone's NAT gateway, then bind the vSwitch."""
        routes = await self.api.call(
            "DescribeRouteEntryList",
            RegionId=self.region,
            RouteTableId=resource.ref_id,
            DestinationCidrBlock="0.0.0.0/0",
        )
        hops = [
            hop.get("NextHopId", "")
            for entry in _items(routes, "RouteEntrys", "RouteEntry")
            for hop in _items(entry, "NextHops", "NextHop")
        ]
        if slot.value not in hops:
            await self.api.call(
                "CreateRouteEntry",
                RegionId=self.region,
                RouteTableId=resource.ref_id,
                DestinationCidrBlock="0.0.0.0/0",
                NextHopType="NatGateway",
                NextHopId=slot.value,
            )
            logger.info("default route of %s points at %s", resource.ref_id, slot.value)

        table = await self._describe(resource.ref_id)
        switches = _items(table or {}, "VSwitchIds", "VSwitchId")
        if slot.associated_id not in switches:
            await self.api.call(
                "AssociateRouteTable",
                RegionId=self.region,
                RouteTableId=resource.ref_id,
                VSwitchId=slot.associated_id,
            )
        resource.value = slot.value
        resource.associated_id = slot.associated_id

    async def delete(self, resource: CloudResource) -> None:
        table = await self._describe(resource.ref_id)
        for vswitch_id in _items(table or {}, "VSwitchIds", "VSwitchId"):
            await self.api.call(
                "UnassociateRouteTable",
                RegionId=self.region,
                RouteTableId=resource.ref_id,
                VSwitchId=vswitch_id,
            )
        await self.api.call("DeleteRouteTable", RegionId=self.region, RouteTableId=resource.ref_id)


class AliSecurityGroupOps(_AliOps, SecurityGroupOps):
    resource_type = ResourceType.SECURITY_GROUP
    tag_type = "securitygroup"

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpc_id = self._vpc_id(registry)
        if not vpc_id:
            return []
        groups = await self.api.paginate(
            "DescribeSecurityGroups",
            ("SecurityGroups", "SecurityGroup"),
            RegionId=self.region,
            VpcId=vpc_id,
        )
        return [
            CloudResource(
                type=self.resource_type,
                ref_id=group["SecurityGroupId"],
                name=group.get("SecurityGroupName", ""),
                associated_id=group.get("VpcId", vpc_id),
                tags=_tags(group),
            )
            for group in groups
        ]

    async def create(self, slot: Slot) -> CloudResource:
        body = await self.api.call(
            "CreateSecurityGroup",
            RegionId=self.region,
            VpcId=slot.associated_id,
            SecurityGroupName=slot.name,
            Description=slot.name,
        )
        return await self._created(slot, body["SecurityGroupId"])

    async def delete(self, resource: CloudResource) -> None:
        await self.api.call(
            "DeleteSecurityGroup", RegionId=self.region, SecurityGroupId=resource.ref_id
        )

    async def list_rules(self, group: CloudResource) -> List[IngressRule]:
        body = await self.api.call(
            "DescribeSecurityGroupAttribute",
            RegionId=self.region,
            SecurityGroupId=group.ref_id,
            Direction="ingress",
        )
        rules = []
        for perm in _items(body, "Permissions", "Permission"):
            start, _, end = (perm.get("PortRange") or "-1/-1").partition("/")
            rules.append(
                IngressRule(
                    protocol=perm.get("IpProtocol", "tcp").lower(),
                    ip_cidr=perm.get("SourceCidrIp", ""),
                    start_port=int(start),
                    end_port=int(end or start),
                )
            )
        return rules

    @staticmethod
    def _permissions(rules: List[IngressRule]) -> List[Dict[str, str]]:
        return [
            {
                "IpProtocol": rule.protocol.upper(),
                "PortRange": f"{rule.start_port}/{rule.end_port}",
                "SourceCidrIp": rule.ip_cidr,
            }
            for rule in rules
        ]

    async def authorize(self, group: CloudResource, rules: List[IngressRule]) -> None:
        await self.api.call(
            "AuthorizeSecurityGroup",
            RegionId=self.region,
            SecurityGroupId=group.ref_id,
            Permissions=self._permissions(rules),
        )

    async def revoke(self, group: CloudResource, rules: List[IngressRule]) -> None:
        await self.api.call(
            "RevokeSecurityGroup",
            RegionId=self.region,
            SecurityGroupId=group.ref_id,
            Permissions=self._permissions(rules),
        )


class AliKeyPairOps(_AliOps):
    """ECS key pairs are addressed by name, so ref_id is the key pair name."""

    resource_type = ResourceType.KEY_PAIR
    tag_type = "keypair"

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        pairs = await self.api.paginate(
            "DescribeKeyPairs",
            ("KeyPairs", "KeyPair"),
            RegionId=self.region,
            KeyPairName=self.cluster.key_pair_name,
        )
        return [
            CloudResource(
                type=self.resource_type,
                ref_id=pair["KeyPairName"],
                name=pair["KeyPairName"],
                value=pair.get("KeyPairFingerPrint", ""),
                tags=_tags(pair),
            )
            for pair in pairs
        ]

    async def create(self, slot: Slot) -> CloudResource:
        body = await self.api.call(
            "ImportKeyPair",
            RegionId=self.region,
            KeyPairName=slot.name,
            PublicKeyBody=slot.value,
        )
        return await self._created(
            slot, body.get("KeyPairName", slot.name), body.get("KeyPairFingerPrint", "")
        )

    async def delete(self, resource: CloudResource) -> None:
        await self.api.call(
            "DeleteKeyPairs", RegionId=self.region, KeyPairNames=json.dumps([resource.ref_id])
        )


class AliLoadBalancerOps(_AliOps, LoadBalancerOps):
    """
    Classic SLB. vServer group names are an md5 of the sorted master instance
    ids plus the port, so a membership change replaces the group.
    """

    resource_type = ResourceType.LOAD_BALANCER
    tag_type = "instance"

    def group_name(self, master_instance_ids: List[str], port: int) -> str:
        digest = hashlib.md5(",".join(master_instance_ids).encode("utf-8")).hexdigest()
        return f"{digest}-{port}"

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpc_id = self._vpc_id(registry)
        if not vpc_id:
            return []
        balancers = await self.api.paginate(
            "DescribeLoadBalancers",
            ("LoadBalancers", "LoadBalancer"),
            RegionId=self.region,
            VpcId=vpc_id,
            LoadBalancerName=self.cluster.load_balancer_name,
        )
        return [
            CloudResource(
                type=self.resource_type,
                ref_id=lb["LoadBalancerId"],
                name=lb.get("LoadBalancerName", ""),
                value=lb.get("Address", ""),
                associated_id=lb.get("VpcId", vpc_id),
                tags=_tags(lb),
            )
            for lb in balancers
        ]

    async def create(self, slot: Slot) -> CloudResource:
        body = await self.api.call(
            "CreateLoadBalancer",
            RegionId=self.region,
            VpcId=slot.associated_id,
            LoadBalancerName=slot.name,
            PayType="PayOnDemand",
            AddressType="internet",
            InternetChargeType="paybytraffic",
            InstanceChargeType="PayByCLCU",
        )
        return await self._created(slot, body["LoadBalancerId"], body.get("Address", ""))

    async def wait_available(self, resource: CloudResource) -> None:
        async def probe() -> Optional[bool]:
            body = await self.api.call(
                "DescribeLoadBalancers", RegionId=self.region, LoadBalancerId=resource.ref_id
            )
            balancers = _items(body, "LoadBalancers", "LoadBalancer")
            active = balancers and balancers[0].get("LoadBalancerStatus") == "active"
            return True if active else None

        await self.api.wait(probe, "load balancer not available")

    async def delete(self, resource: CloudResource) -> None:
        await self.api.call(
            "DeleteLoadBalancer", RegionId=self.region, LoadBalancerId=resource.ref_id
        )

    async def list_groups(self, lb: CloudResource) -> List[BackendGroup]:
        body = await self.api.call(
            "DescribeVServerGroups", RegionId=self.region, LoadBalancerId=lb.ref_id
        )
        groups = []
        for group in _items(body, "VServerGroups", "VServerGroup"):
            name = group.get("VServerGroupName", "")
            _, _, port = name.rpartition("-")
            groups.append(
                BackendGroup(
                    group_id=group["VServerGroupId"],
                    name=name,
                    port=int(port) if port.isdigit() else 0,
                )
            )
        return groups

    async def list_listeners(self, lb: CloudResource) -> List[Listener]:
        body = await self.api.call(
            "DescribeLoadBalancerListeners",
            RegionId=self.region,
            LoadBalancerId=[lb.ref_id],
            ListenerProtocol="tcp",
        )
        return [
            Listener(
                listener_id=str(listener["ListenerPort"]),
                port=int(listener["ListenerPort"]),
                group_id=listener.get("VServerGroupId", ""),
            )
            for listener in _items(body, "Listeners")
        ]

    async def create_group(
        self, lb: CloudResource, name: str, port: int, instance_ids: List[str]
    ) -> BackendGroup:
        servers = [
            {"ServerId": instance_id, "Port": port, "Weight": 100, "Type": "ecs"}
            for instance_id in instance_ids
        ]
        body = await self.api.call(
            "CreateVServerGroup",
            RegionId=self.region,
            LoadBalancerId=lb.ref_id,
            VServerGroupName=name,
            BackendServers=json.dumps(servers),
        )
        return BackendGroup(group_id=body["VServerGroupId"], name=name, port=port)

    async def create_listener(self, lb: CloudResource, group: BackendGroup, port: int) -> Listener:
        await self.api.call(
            "CreateLoadBalancerTCPListener",
            RegionId=self.region,
            LoadBalancerId=lb.ref_id,
            ListenerPort=port,
            BackendServerPort=port,
            Bandwidth=-1,
            VServerGroupId=group.group_id,
        )
        await self.api.call(
            "StartLoadBalancerListener",
            RegionId=self.region,
            LoadBalancerId=lb.ref_id,
            ListenerPort=port,
            ListenerProtocol="tcp",
        )
        return Listener(listener_id=str(port), port=port, group_id=group.group_id)

    async def delete_listener(self, lb: CloudResource, listener: Listener) -> None:
        await self.api.call(
            "DeleteLoadBalancerListener",
            RegionId=self.region,
            LoadBalancerId=lb.ref_id,
            ListenerPort=listener.port,
            ListenerProtocol="tcp",
        )

    async def delete_group(self, lb: CloudResource, group: BackendGroup) -> None:
        await self.api.call(
            "DeleteVServerGroup", RegionId=self.region, VServerGroupId=group.group_id
        )


def _instance(raw: Dict[str, Any]) -> Instance:
    ips = _items(raw, "VpcAttributes", "PrivateIpAddress", "IpAddress")
    return Instance(
        instance_id=raw["InstanceId"],
        state=_STATES.get(raw.get("Status", ""), InstanceState.UNKNOWN),
        private_ip=ips[0] if ips else "",
        zone=raw.get("ZoneId", ""),
        instance_type=raw.get("InstanceType", ""),
        image_id=raw.get("ImageId", ""),
        name=raw.get("InstanceName", ""),
    )


class AliInstanceOps(InstanceOps):
    default_user = "root"

    def __init__(self, api: AliApi) -> None:
        self.api = api

    @property
    def region(self) -> str:
        return self.api.region

    async def _describe(self, instance_ids: List[str]) -> Dict[str, Instance]:
        found = await self.api.paginate(
            "DescribeInstances",
            ("Instances", "Instance"),
            RegionId=self.region,
            InstanceIds=json.dumps(instance_ids),
        )
        return {inst.instance_id: inst for inst in map(_instance, found)}

    async def list_instances(self, vpc: CloudResource) -> List[Instance]:
        found = await self.api.paginate(
            "DescribeInstances", ("Instances", "Instance"), RegionId=self.region, VpcId=vpc.ref_id
        )
        return [_instance(raw) for raw in found]

    async def check_inventory(self, instance_type: str, zone: str) -> bool:
        """True only when DescribeAvailableResource reports the type Available in the zone."""
        try:
            body = await self.api.call(
                "DescribeAvailableResource",
                RegionId=self.region,
                ZoneId=zone,
                DestinationResource="InstanceType",
                InstanceType=instance_type,
                InstanceChargeType="PostPaid",
            )
        except InfrastructureError as exc:
            logger.warning("inventory check for %s in %s failed: %s", instance_type, zone, exc)
            return False
        for available_zone in _items(body, "AvailableZones", "AvailableZone"):
            for resource in _items(available_zone, "AvailableResources", "AvailableResource"):
                for supported in _items(resource, "SupportedResources", "SupportedResource"):
                    if supported.get("Value") == instance_type and supported.get("Status") == "Available":
                        return True
        return False

    async def create_instance(self, spec: InstanceSpec) -> Instance:
        params: Dict[str, Any] = {
            "RegionId": self.region,
            "ZoneId": spec.zone,
            "ImageId": spec.image_id,
            "InstanceType": spec.instance_type,
            "SecurityGroupId": spec.security_group_id,
            "VSwitchId": spec.subnet_id,
            "InstanceName": spec.name,
            "HostName": spec.name,
            "KeyPairName": spec.key_pair_name,
            "InstanceChargeType": "PostPaid",
            "InternetMaxBandwidthOut": 0,
            "Amount": 1,
            "Tag": encode_tags(spec.tags),
        }
        if spec.system_disk_size:
            params["SystemDisk"] = {"Size": str(spec.system_disk_size), "Category": "cloud_essd"}
        if spec.user_data:
            params["UserData"] = spec.user_data
        body = await self.api.call("RunInstances", **params)
        instance_ids = _items(body, "InstanceIdSets", "InstanceIdSet")
        if not instance_ids:
            raise InfrastructureError(f"failed to run instance {spec.name}")
        return Instance(
            instance_id=instance_ids[0],
            state=InstanceState.PENDING,
            zone=spec.zone,
            instance_type=spec.instance_type,
            image_id=spec.image_id,
            name=spec.name,
        )

    async def terminate(self, instance_ids: List[str]) -> None:
        await self.api.call(
            "DeleteInstances", RegionId=self.region, InstanceId=instance_ids, Force=True
        )

    async def wait_terminated(self, instance_ids: List[str]) -> None:
        async def probe() -> Optional[bool]:
            return True if not await self._describe(instance_ids) else None

        await self.api.wait(
            probe,
            "instances not terminated",
            self.api.settings.timeout_count * len(instance_ids),
        )

    async def wait_running(self, instance_ids: List[str]) -> Dict[str, Instance]:
        """Poll until every instance runs, starting any that came up Stopped."""

        async def probe() -> Optional[Dict[str, Instance]]:
            found = await self._describe(instance_ids)
            stopped = [k for k, v in found.items() if v.state == InstanceState.STOPPED]
            if stopped:
                await self.api.call("StartInstances", RegionId=self.region, InstanceId=stopped)
            running = {k: v for k, v in found.items() if v.state == InstanceState.RUNNING}
            return running if len(running) == len(instance_ids) else None

        try:
            return await self.api.wait(
                probe,
                "instances not running",
                self.api.settings.timeout_count * len(instance_ids),
            )
        except PollTimeoutError:
            found = await self._describe(instance_ids)
            return {k: v for k, v in found.items() if v.state == InstanceState.RUNNING}

    async def instance_price(self, instance_type: str, zone: str) -> float:
        try:
            body = await self.api.call(
                "DescribePrice",
                RegionId=self.region,
                ResourceType="instance",
                InstanceType=instance_type,
                ZoneId=zone,
                PriceUnit="Hour",
            )
        except InfrastructureError as exc:
            logger.warning("price lookup for %s failed: %s", instance_type, exc)
            return 0.0
        return float(_dig(body, "PriceInfo", "Price", "TradePrice") or 0.0)


class AliCloudReconciler(CloudReconciler):
    provider = Provider.ALICLOUD

    def __init__(self, settings: OceanSettings) -> None:
        super().__init__(settings)
        self.default_region = settings.alicloud_default_region
        self._vpc: Optional[AliApi] = None
        self._ecs: Optional[AliApi] = None
        self._slb: Optional[AliApi] = None

    def _api(self, api: Optional[AliApi]) -> AliApi:
        if api is None:
            raise InfrastructureError("alicloud reconciler is not connected")
        return api

    @property
    def ecs(self) -> AliApi:
        return self._api(self._ecs)

    async def _open(self, access_id: str, access_key: str, region: str) -> None:
        def config(product: str) -> open_api_models.Config:
            return open_api_models.Config(
                access_key_id=access_id,
                access_key_secret=access_key,
                region_id=region,
                endpoint=f"{product}.{region}.aliyuncs.com",
            )

        try:
            self._vpc = AliApi(VpcClient(config("vpc")), vpc_models, region, self.settings)
            self._ecs = AliApi(EcsClient(config("ecs")), ecs_models, region, self.settings)
            self._slb = AliApi(SlbClient(config("slb")), slb_models, region, self.settings)
        except TeaException as exc:
            raise InfrastructureError(f"failed to create alicloud clients: {exc.message}") from exc

    def _bind(self, cluster: Cluster) -> CloudOps:
        vpc_api, ecs_api, slb_api = self._api(self._vpc), self.ecs, self._api(self._slb)
        vpc = AliVpcOps(vpc_api, cluster)
        subnet = AliSubnetOps(vpc_api, cluster)
        eip = AliEipOps(vpc_api, cluster)
        nat = AliNatGatewayOps(vpc_api, cluster)
        route_table = AliRouteTableOps(vpc_api, cluster)
        security_group = AliSecurityGroupOps(ecs_api, cluster)
        load_balancer = AliLoadBalancerOps(slb_api, cluster)
        return CloudOps(
            vpc=vpc,
            subnet=subnet,
            eip=eip,
            nat_gateway=nat,
            route_table=route_table,
            security_group=security_group,
            key_pair=AliKeyPairOps(ecs_api, cluster),
            load_balancer=load_balancer,
            instances=AliInstanceOps(ecs_api),
            teardown_order=[load_balancer, security_group, eip, nat, route_table, subnet, vpc],
        )

    async def _list_regions(self) -> List[CloudResource]:
        body = await self.ecs.call(
            "DescribeRegions",
            AcceptLanguage="zh-CN",
            InstanceChargeType="PostPaid",
            ResourceType="instance",
        )
        return [
            CloudResource(
                type=ResourceType.REGION,
                ref_id=region["RegionId"],
                name=region.get("LocalName", region["RegionId"]),
                value=region.get("RegionEndpoint", ""),
            )
            for region in _items(body, "Regions", "Region")
            if region.get("Status") == "available"
        ]

    async def _list_zones(self, region: str) -> List[str]:
        body = await self.ecs.call(
            "DescribeZones",
            RegionId=region,
            AcceptLanguage="en-US",
            InstanceChargeType="PostPaid",
            SpotStrategy="NoSpot",
        )
        return [zone["ZoneId"] for zone in _items(body, "Zones", "Zone")]

    async def find_image(self, cluster: Cluster, node_group: NodeGroup) -> ImageInfo:
        arch = ARCH_TO_IMAGE_ARCH.get(node_group.arch, "") or "x86_64"
        images = await self.ecs.paginate(
            "DescribeImages",
            ("Images", "Image"),
            RegionId=self.ecs.region,
            Status="Available",
            OSType="linux",
            ImageOwnerAlias="system",
            Architecture=arch,
            ActionType="CreateEcs",
        )
        for image in images:
            if (image.get("Platform") or "").lower() == "ubuntu":
                return ImageInfo(image_id=image["ImageId"], name=image.get("ImageName", ""), user="root")
        raise InfrastructureError(f"no ubuntu image found for {arch}")

    async def find_instance_type(
        self, cluster: Cluster, node_group: NodeGroup
    ) -> List[InstanceTypeInfo]:
        candidates = alicloud_instance_type_candidates(node_group.type, node_group.cpu)
        if not candidates:
            return []
        params: Dict[str, Any] = {
            "InstanceTypes": candidates,
            "MinimumCpuCoreCount": node_group.cpu,
            "MaximumCpuCoreCount": node_group.cpu,
            "MaxResults": 10,
        }
        cpu_arch = ARCH_TO_CPU_ARCHITECTURE.get(node_group.arch, "")
        if cpu_arch:
            params["CpuArchitecture"] = cpu_arch
        if node_group.gpu > 0:
            params["GPUAmount"] = node_group.gpu
            gpu_spec = GPU_SPEC_TO_CLOUD_SPEC.get(node_group.gpu_spec, "")
            if gpu_spec:
                params["GPUSpec"] = gpu_spec

        found: Dict[str, Dict[str, Any]] = {}
        next_token = ""
        while True:
            if next_token:
                params["NextToken"] = next_token
            body = await self.ecs.call("DescribeInstanceTypes", **params)
            for item in _items(body, "InstanceTypes", "InstanceType"):
                found[item["InstanceTypeId"]] = item
            next_token = body.get("NextToken") or ""
            if not next_token:
                break

        result = []
        for name in candidates:
            item = found.get(name)
            if item is None:
                continue
            if node_group.gpu > 0 and int(item.get("GPUAmount") or 0) != node_group.gpu:
                continue
            result.append(
                InstanceTypeInfo(
                    instance_type=name,
                    cpu=int(item.get("CpuCoreCount") or node_group.cpu),
                    memory_gib=int(float(item.get("MemorySize") or 0)),
                    gpu=int(item.get("GPUAmount") or 0),
                    arch=node_group.arch,
                )
            )
        return result
