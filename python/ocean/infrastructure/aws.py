"""
ocean/infrastructure/aws.py

AWS bindings for the generic reconcilers: EC2 for the network, security group,
key pair and instances, ELBv2 (network load balancer) for the SLB.

boto3 clients are synchronous; every call runs through `asyncio.to_thread`.
Botocore ClientErrors are re-raised as InfrastructureError.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional
from typing_extensions import TypeVar

import boto3
from botocore.exceptions import ClientError

from ocean.infrastructure.catalog import (
    ARCH_TO_IMAGE_ARCH,
    aws_determine_username,
    aws_instance_type_candidates,
    gpu_model,
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

UBUNTU_IMAGE_NAME = "ubuntu/images/hvm-ssd-gp3/ubuntu-noble-24.04-*-server-*"
LIVE_INSTANCE_STATES = ["pending", "running", "shutting-down", "stopping", "stopped"]

_STATES = {
    "pending": InstanceState.PENDING,
    "running": InstanceState.RUNNING,
    "stopping": InstanceState.STOPPING,
    "stopped": InstanceState.STOPPED,
    "shutting-down": InstanceState.SHUTTING_DOWN,
    "terminated": InstanceState.TERMINATED,
}


class AwsSession:
    """EC2 and ELBv2 clients of one region plus the poll settings."""

    def __init__(self, ec2: Any, elbv2: Any, settings: OceanSettings) -> None:
        self.ec2 = ec2
        self.elbv2 = elbv2
        self.settings = settings

    async def call(self, client: Any, operation: str, **kwargs: Any) -> Dict[str, Any]:
        method = getattr(client, operation)
        try:
            return await asyncio.to_thread(method, **kwargs)
        except ClientError as exc:
            raise InfrastructureError(f"failed to {operation.replace('_', ' ')}: {exc}") from exc

    async def paginate(
        self, client: Any, operation: str, key: str, **kwargs: Any
    ) -> List[Dict[str, Any]]:
        def collect() -> List[Dict[str, Any]]:
            items: List[Dict[str, Any]] = []
            for page in client.get_paginator(operation).paginate(**kwargs):
                items.extend(page.get(key, []))
            return items

        try:
            return await asyncio.to_thread(collect)
        except ClientError as exc:
            raise InfrastructureError(f"failed to {operation.replace('_', ' ')}: {exc}") from exc

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


def _tag_spec(resource_type: str, tags: Tags) -> List[Dict[str, Any]]:
    return [{"ResourceType": resource_type, "Tags": encode_tags(tags)}]


def _resource(
    resource_type: ResourceType,
    ref_id: str,
    raw_tags: Optional[List[Dict[str, str]]],
    *,
    value: str = "",
    associated_id: str = "",
) -> CloudResource:
    tags = decode_tags(raw_tags)
    return CloudResource(
        type=resource_type,
        ref_id=ref_id,
        name=tags.get(TagKey.NAME, ""),
        value=value,
        associated_id=associated_id,
        tags=tags,
    )


class _Ec2Ops(ResourceOps):
    def __init__(self, session: AwsSession, cluster: Cluster) -> None:
        self.session = session
        self.cluster = cluster

    @property
    def ec2(self) -> Any:
        return self.session.ec2

    @staticmethod
    def _vpc_id(registry: ResourceRegistry) -> str:
        vpc = registry.get_single(ResourceType.VPC)
        return vpc.ref_id if vpc else ""

    async def tag(self, resource: CloudResource, tags: Tags) -> None:
        await self.session.call(
            self.ec2, "create_tags", Resources=[resource.ref_id], Tags=encode_tags(tags)
        )


class AwsVpcOps(_Ec2Ops):
    resource_type = ResourceType.VPC

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpcs = await self.session.paginate(self.ec2, "describe_vpcs", "Vpcs")
        return [
            _resource(self.resource_type, vpc["VpcId"], vpc.get("Tags"), value=vpc["CidrBlock"])
            for vpc in vpcs
            if not vpc.get("IsDefault")
        ]

    async def create(self, slot: Slot) -> CloudResource:
        resp = await self.session.call(
            self.ec2,
            "create_vpc",
            CidrBlock=slot.value,
            TagSpecifications=_tag_spec("vpc", slot.tags),
        )
        vpc = resp["Vpc"]
        return CloudResource(
            type=self.resource_type, ref_id=vpc["VpcId"], name=slot.name, value=slot.value, tags=slot.tags
        )

    async def wait_available(self, resource: CloudResource) -> None:
        async def probe() -> Optional[bool]:
            resp = await self.session.call(self.ec2, "describe_vpcs", VpcIds=[resource.ref_id])
            vpcs = resp.get("Vpcs", [])
            return True if vpcs and vpcs[0].get("State") == "available" else None

        await self.session.wait(probe, "vpc not available")
        await self.session.call(
            self.ec2, "modify_vpc_attribute", VpcId=resource.ref_id, EnableDnsSupport={"Value": True}
        )

    async def delete(self, resource: CloudResource) -> None:
        await self.session.call(self.ec2, "delete_vpc", VpcId=resource.ref_id)


class AwsSubnetOps(_Ec2Ops):
    resource_type = ResourceType.SUBNET

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpc_id = self._vpc_id(registry)
        if not vpc_id:
            return []
        subnets = await self.session.paginate(
            self.ec2,
            "describe_subnets",
            "Subnets",
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}],
        )
        resources = []
        for subnet in subnets:
            res = _resource(
                self.resource_type,
                subnet["SubnetId"],
                subnet.get("Tags"),
                value=subnet["CidrBlock"],
                associated_id=subnet["VpcId"],
            )
            res.tags.setdefault(TagKey.ZONE_ID, subnet["AvailabilityZone"])
            resources.append(res)
        return resources

    async def create(self, slot: Slot) -> CloudResource:
        resp = await self.session.call(
            self.ec2,
            "create_subnet",
            VpcId=slot.associated_id,
            CidrBlock=slot.value,
            AvailabilityZone=slot.zone,
            TagSpecifications=_tag_spec("subnet", slot.tags),
        )
        subnet = resp["Subnet"]
        return CloudResource(
            type=self.resource_type,
            ref_id=subnet["SubnetId"],
            name=slot.name,
            value=slot.value,
            associated_id=slot.associated_id,
            tags=slot.tags,
        )

    async def wait_available(self, resource: CloudResource) -> None:
        async def probe() -> Optional[bool]:
            resp = await self.session.call(self.ec2, "describe_subnets", SubnetIds=[resource.ref_id])
            subnets = resp.get("Subnets", [])
            return True if subnets and subnets[0].get("State") == "available" else None

        await self.session.wait(probe, "subnet not available")

    async def delete(self, resource: CloudResource) -> None:
        await self.session.call(self.ec2, "delete_subnet", SubnetId=resource.ref_id)


class AwsInternetGatewayOps(_Ec2Ops):
    resource_type = ResourceType.INTERNET_GATEWAY

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpc_id = self._vpc_id(registry)
        if not vpc_id:
            return []
        gateways = await self.session.paginate(
            self.ec2,
            "describe_internet_gateways",
            "InternetGateways",
            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}],
        )
        return [
            _resource(
                self.resource_type,
                igw["InternetGatewayId"],
                igw.get("Tags"),
                associated_id=vpc_id,
            )
            for igw in gateways
        ]

    async def create(self, slot: Slot) -> CloudResource:
        resp = await self.session.call(
            self.ec2,
            "create_internet_gateway",
            TagSpecifications=_tag_spec("internet-gateway", slot.tags),
        )
        igw = resp["InternetGateway"]
        return CloudResource(
            type=self.resource_type,
            ref_id=igw["InternetGatewayId"],
            name=slot.name,
            associated_id=slot.associated_id,
            tags=slot.tags,
        )

    async def attach(self, resource: CloudResource, slot: Slot) -> None:
        resp = await self.session.call(
            self.ec2, "describe_internet_gateways", InternetGatewayIds=[resource.ref_id]
        )
        attached = {
            att["VpcId"]
            for igw in resp.get("InternetGateways", [])
            for att in igw.get("Attachments", [])
        }
        if slot.associated_id not in attached:
            await self.session.call(
                self.ec2,
                "attach_internet_gateway",
                InternetGatewayId=resource.ref_id,
                VpcId=slot.associated_id,
            )
            logger.info("internet gateway %s attached to %s", resource.ref_id, slot.associated_id)

    async def delete(self, resource: CloudResource) -> None:
        if resource.associated_id:
            await self.session.call(
                self.ec2,
                "detach_internet_gateway",
                InternetGatewayId=resource.ref_id,
                VpcId=resource.associated_id,
            )
        await self.session.call(
            self.ec2, "delete_internet_gateway", InternetGatewayId=resource.ref_id
        )


class AwsEipOps(_Ec2Ops):
    resource_type = ResourceType.ELASTIC_IP

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        resp = await self.session.call(
            self.ec2, "describe_addresses", Filters=[{"Name": "domain", "Values": ["vpc"]}]
        )
        return [
            _resource(
                self.resource_type,
                address["AllocationId"],
                address.get("Tags"),
                value=address.get("PublicIp", ""),
                associated_id=address.get("AssociationId", ""),
            )
            for address in resp.get("Addresses", [])
        ]

    async def create(self, slot: Slot) -> CloudResource:
        resp = await self.session.call(
            self.ec2,
            "allocate_address",
            Domain="vpc",
            TagSpecifications=_tag_spec("elastic-ip", slot.tags),
        )
        return CloudResource(
            type=self.resource_type,
            ref_id=resp["AllocationId"],
            name=slot.name,
            value=resp.get("PublicIp", ""),
            tags=slot.tags,
        )

    async def delete(self, resource: CloudResource) -> None:
        await self.session.call(self.ec2, "release_address", AllocationId=resource.ref_id)


class AwsNatGatewayOps(_Ec2Ops):
    resource_type = ResourceType.NAT_GATEWAY

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpc_id = self._vpc_id(registry)
        if not vpc_id:
            return []
        gateways = await self.session.paginate(
            self.ec2,
            "describe_nat_gateways",
            "NatGateways",
            Filters=[
                {"Name": "vpc-id", "Values": [vpc_id]},
                {"Name": "state", "Values": ["pending", "available"]},
            ],
        )
        resources = []
        for nat in gateways:
            addresses = nat.get("NatGatewayAddresses", [])
            res = _resource(
                self.resource_type,
                nat["NatGatewayId"],
                nat.get("Tags"),
                value=addresses[0].get("AllocationId", "") if addresses else "",
                associated_id=nat["SubnetId"],
            )
            subnet = registry.get_by_ref_id(ResourceType.SUBNET, nat["SubnetId"])
            if subnet is not None and subnet.zone:
                res.tags.setdefault(TagKey.ZONE_ID, subnet.zone)
            resources.append(res)
        return resources

    async def create(self, slot: Slot) -> CloudResource:
        resp = await self.session.call(
            self.ec2,
            "create_nat_gateway",
            SubnetId=slot.associated_id,
            AllocationId=slot.value,
            ConnectivityType="public",
            TagSpecifications=_tag_spec("natgateway", slot.tags),
        )
        nat = resp["NatGateway"]
        return CloudResource(
            type=self.resource_type,
            ref_id=nat["NatGatewayId"],
            name=slot.name,
            value=slot.value,
            associated_id=slot.associated_id,
            tags=slot.tags,
        )

    async def _state(self, nat_id: str) -> str:
        resp = await self.session.call(self.ec2, "describe_nat_gateways", NatGatewayIds=[nat_id])
        gateways = resp.get("NatGateways", [])
        return gateways[0].get("State", "") if gateways else "deleted"

    async def wait_available(self, resource: CloudResource) -> None:
        async def probe() -> Optional[bool]:
            state = await self._state(resource.ref_id)
            if state == "failed":
                raise InfrastructureError(f"nat gateway {resource.ref_id} failed to start")
            return True if state == "available" else None

        await self.session.wait(probe, "nat gateway not available")

    async def delete(self, resource: CloudResource) -> None:
        await self.session.call(self.ec2, "delete_nat_gateway", NatGatewayId=resource.ref_id)

        async def probe() -> Optional[bool]:
            return True if await self._state(resource.ref_id) == "deleted" else None

        # The EIP cannot be released while the gateway is still deleting.
        await self.session.wait(probe, "nat gateway not deleted")


class AwsRouteTableOps(_Ec2Ops):
    resource_type = ResourceType.ROUTE_TABLE

    @staticmethod
    def _to_resource(table: Dict[str, Any]) -> CloudResource:
        subnet_id = next(
            (assoc["SubnetId"] for assoc in table.get("Associations", []) if assoc.get("SubnetId")),
            "",
        )
        nat_id = next(
            (
                route["NatGatewayId"]
                for route in table.get("Routes", [])
                if route.get("DestinationCidrBlock") == "0.0.0.0/0" and route.get("NatGatewayId")
            ),
            "",
        )
        return _resource(
            ResourceType.ROUTE_TABLE,
            table["RouteTableId"],
            table.get("Tags"),
            value=nat_id,
            associated_id=subnet_id,
        )

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpc_id = self._vpc_id(registry)
        if not vpc_id:
            return []
        tables = await self.session.paginate(
            self.ec2,
            "describe_route_tables",
            "RouteTables",
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}],
        )
        return [
            self._to_resource(table)
            for table in tables
            if not any(assoc.get("Main") for assoc in table.get("Associations", []))
        ]

    async def create(self, slot: Slot) -> CloudResource:
        vpc_id = self._vpc_id(self.cluster.cloud_resources)
        resp = await self.session.call(
            self.ec2,
            "create_route_table",
            VpcId=vpc_id,
            TagSpecifications=_tag_spec("route-table", slot.tags),
        )
        table = resp["RouteTable"]
        return CloudResource(
            type=self.resource_type,
            ref_id=table["RouteTableId"],
            name=slot.name,
            tags=slot.tags,
        )

    async def attach(self, resource: CloudResource, slot: Slot) -> None:
        """Point the default route at the zone's NAT gateway and bind the subnet."""
        resp = await self.session.call(
            self.ec2, "describe_route_tables", RouteTableIds=[resource.ref_id]
        )
        tables = resp.get("RouteTables", [])
        if not tables:
            raise InfrastructureError(f"route table {resource.ref_id} not found")
        current = self._to_resource(tables[0])

        if current.value != slot.value:
            has_default = any(
                route.get("DestinationCidrBlock") == "0.0.0.0/0"
                for route in tables[0].get("Routes", [])
            )
            await self.session.call(
                self.ec2,
                "replace_route" if has_default else "create_route",
                RouteTableId=resource.ref_id,
                DestinationCidrBlock="0.0.0.0/0",
                NatGatewayId=slot.value,
            )
        if current.associated_id != slot.associated_id:
            await self.session.call(
                self.ec2,
                "associate_route_table",
                RouteTableId=resource.ref_id,
                SubnetId=slot.associated_id,
            )
        resource.value = slot.value
        resource.associated_id = slot.associated_id

    async def delete(self, resource: CloudResource) -> None:
        resp = await self.session.call(
            self.ec2, "describe_route_tables", RouteTableIds=[resource.ref_id]
        )
        for table in resp.get("RouteTables", []):
            for assoc in table.get("Associations", []):
                if not assoc.get("Main"):
                    await self.session.call(
                        self.ec2,
                        "disassociate_route_table",
                        AssociationId=assoc["RouteTableAssociationId"],
                    )
        await self.session.call(self.ec2, "delete_route_table", RouteTableId=resource.ref_id)


class AwsSecurityGroupOps(_Ec2Ops, SecurityGroupOps):
    resource_type = ResourceType.SECURITY_GROUP

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpc_id = self._vpc_id(registry)
        if not vpc_id:
            return []
        groups = await self.session.paginate(
            self.ec2,
            "describe_security_groups",
            "SecurityGroups",
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}],
        )
        resources = []
        for group in groups:
            if group["GroupName"] == "default":
                continue
            res = _resource(
                self.resource_type, group["GroupId"], group.get("Tags"), associated_id=group["VpcId"]
            )
            res.name = group["GroupName"]
            resources.append(res)
        return resources

    async def create(self, slot: Slot) -> CloudResource:
        resp = await self.session.call(
            self.ec2,
            "create_security_group",
            GroupName=slot.name,
            Description=slot.name,
            VpcId=slot.associated_id,
            TagSpecifications=_tag_spec("security-group", slot.tags),
        )
        return CloudResource(
            type=self.resource_type,
            ref_id=resp["GroupId"],
            name=slot.name,
            associated_id=slot.associated_id,
            tags=slot.tags,
        )

    async def delete(self, resource: CloudResource) -> None:
        await self.session.call(self.ec2, "delete_security_group", GroupId=resource.ref_id)

    async def list_rules(self, group: CloudResource) -> List[IngressRule]:
        resp = await self.session.call(
            self.ec2, "describe_security_groups", GroupIds=[group.ref_id]
        )
        rules = []
        for sg in resp.get("SecurityGroups", []):
            for perm in sg.get("IpPermissions", []):
                for ip_range in perm.get("IpRanges", []):
                    rules.append(
                        IngressRule(
                            protocol=perm["IpProtocol"],
                            ip_cidr=ip_range["CidrIp"],
                            start_port=perm.get("FromPort", -1),
                            end_port=perm.get("ToPort", -1),
                        )
                    )
        return rules

    @staticmethod
    def _permissions(rules: List[IngressRule]) -> List[Dict[str, Any]]:
        return [
            {
                "IpProtocol": rule.protocol,
                "FromPort": rule.start_port,
                "ToPort": rule.end_port,
                "IpRanges": [{"CidrIp": rule.ip_cidr}],
            }
            for rule in rules
        ]

    async def authorize(self, group: CloudResource, rules: List[IngressRule]) -> None:
        await self.session.call(
            self.ec2,
            "authorize_security_group_ingress",
            GroupId=group.ref_id,
            IpPermissions=self._permissions(rules),
        )

    async def revoke(self, group: CloudResource, rules: List[IngressRule]) -> None:
        await self.session.call(
            self.ec2,
            "revoke_security_group_ingress",
            GroupId=group.ref_id,
            IpPermissions=self._permissions(rules),
        )


class AwsKeyPairOps(_Ec2Ops):
    resource_type = ResourceType.KEY_PAIR

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        resp = await self.session.call(
            self.ec2,
            "describe_key_pairs",
            Filters=[{"Name": "key-name", "Values": [self.cluster.key_pair_name]}],
        )
        resources = []
        for pair in resp.get("KeyPairs", []):
            res = _resource(self.resource_type, pair["KeyPairId"], pair.get("Tags"))
            res.name = pair["KeyName"]
            resources.append(res)
        return resources

    async def create(self, slot: Slot) -> CloudResource:
        resp = await self.session.call(
            self.ec2,
            "import_key_pair",
            KeyName=slot.name,
            PublicKeyMaterial=slot.value.encode("utf-8"),
            TagSpecifications=_tag_spec("key-pair", slot.tags),
        )
        return CloudResource(
            type=self.resource_type, ref_id=resp["KeyPairId"], name=slot.name, tags=slot.tags
        )

    async def delete(self, resource: CloudResource) -> None:
        await self.session.call(self.ec2, "delete_key_pair", KeyPairId=resource.ref_id)


def _name_prefix(cluster_name: str) -> str:
    return re.sub(r"[^A-Za-z0-9-]", "-", cluster_name)[:16].strip("-") or "ocean"


class AwsLoadBalancerOps(_Ec2Ops, LoadBalancerOps):
    """
    A network load balancer in the private subnets. Target group names carry
    a digest of the master membership and fit the 32-character limit.
    """

    resource_type = ResourceType.LOAD_BALANCER

    @property
    def elbv2(self) -> Any:
        return self.session.elbv2

    def group_name(self, master_instance_ids: List[str], port: int) -> str:
        digest = hashlib.md5(",".join(master_instance_ids).encode("utf-8")).hexdigest()[:6]
        return f"{_name_prefix(self.cluster.name)}-{digest}-{port}"

    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        vpc_id = self._vpc_id(registry)
        if not vpc_id:
            return []
        balancers = await self.session.paginate(
            self.elbv2, "describe_load_balancers", "LoadBalancers"
        )
        mine = [lb for lb in balancers if lb.get("VpcId") == vpc_id]
        if not mine:
            return []
        resp = await self.session.call(
            self.elbv2, "describe_tags", ResourceArns=[lb["LoadBalancerArn"] for lb in mine]
        )
        tags_by_arn = {
            desc["ResourceArn"]: desc.get("Tags", []) for desc in resp.get("TagDescriptions", [])
        }
        resources = []
        for lb in mine:
            res = _resource(
                self.resource_type,
                lb["LoadBalancerArn"],
                tags_by_arn.get(lb["LoadBalancerArn"]),
                value=lb.get("DNSName", ""),
                associated_id=vpc_id,
            )
            res.name = lb["LoadBalancerName"]
            resources.append(res)
        return resources

    async def create(self, slot: Slot) -> CloudResource:
        subnet_ids = [subnet.ref_id for subnet in self.cluster.private_subnets()]
        if not subnet_ids:
            raise InfrastructureError("private subnet not found")
        resp = await self.session.call(
            self.elbv2,
            "create_load_balancer",
            Name=slot.name,
            Subnets=subnet_ids,
            Scheme="internet-facing",
            Type="network",
            Tags=encode_tags(slot.tags),
        )
        lb = resp["LoadBalancers"][0]
        return CloudResource(
            type=self.resource_type,
            ref_id=lb["LoadBalancerArn"],
            name=slot.name,
            value=lb.get("DNSName", ""),
            associated_id=slot.associated_id,
            tags=slot.tags,
        )

    async def wait_available(self, resource: CloudResource) -> None:
        async def probe() -> Optional[bool]:
            resp = await self.session.call(
                self.elbv2, "describe_load_balancers", LoadBalancerArns=[resource.ref_id]
            )
            balancers = resp.get("LoadBalancers", [])
            state = balancers[0].get("State", {}).get("Code") if balancers else None
            if state == "failed":
                raise InfrastructureError(f"load balancer {resource.ref_id} failed to provision")
            return True if state == "active" else None

        await self.session.wait(probe, "load balancer not available")

    async def tag(self, resource: CloudResource, tags: Tags) -> None:
        await self.session.call(
            self.elbv2, "add_tags", ResourceArns=[resource.ref_id], Tags=encode_tags(tags)
        )

    async def delete(self, resource: CloudResource) -> None:
        """Target groups outlive their load balancer, so they go too."""
        for listener in await self.list_listeners(resource):
            await self.delete_listener(resource, listener)
        await asyncio.sleep(self.session.settings.settle_seconds)
        for group in await self.list_groups(resource):
            await self.delete_group(resource, group)
        await self.session.call(
            self.elbv2, "delete_load_balancer", LoadBalancerArn=resource.ref_id
        )

    async def list_groups(self, lb: CloudResource) -> List[BackendGroup]:
        prefix = f"{_name_prefix(self.cluster.name)}-"
        groups = await self.session.paginate(self.elbv2, "describe_target_groups", "TargetGroups")
        return [
            BackendGroup(group_id=tg["TargetGroupArn"], name=tg["TargetGroupName"], port=tg["Port"])
            for tg in groups
            if tg.get("VpcId") == lb.associated_id and tg["TargetGroupName"].startswith(prefix)
        ]

    async def list_listeners(self, lb: CloudResource) -> List[Listener]:
        listeners = await self.session.paginate(
            self.elbv2, "describe_listeners", "Listeners", LoadBalancerArn=lb.ref_id
        )
        result = []
        for listener in listeners:
            actions = listener.get("DefaultActions", [])
            result.append(
                Listener(
                    listener_id=listener["ListenerArn"],
                    port=listener["Port"],
                    group_id=actions[0].get("TargetGroupArn", "") if actions else "",
                )
            )
        return result

    async def create_group(
        self, lb: CloudResource, name: str, port: int, instance_ids: List[str]
    ) -> BackendGroup:
        resp = await self.session.call(
            self.elbv2,
            "create_target_group",
            Name=name,
            Protocol="TCP",
            Port=port,
            VpcId=lb.associated_id,
            TargetType="instance",
            Tags=encode_tags(self.cluster.tags()),
        )
        arn = resp["TargetGroups"][0]["TargetGroupArn"]
        if instance_ids:
            await self.session.call(
                self.elbv2,
                "register_targets",
                TargetGroupArn=arn,
                Targets=[{"Id": instance_id, "Port": port} for instance_id in instance_ids],
            )
        return BackendGroup(group_id=arn, name=name, port=port)

    async def create_listener(self, lb: CloudResource, group: BackendGroup, port: int) -> Listener:
        resp = await self.session.call(
            self.elbv2,
            "create_listener",
            LoadBalancerArn=lb.ref_id,
            Protocol="TCP",
            Port=port,
            DefaultActions=[{"Type": "forward", "TargetGroupArn": group.group_id}],
        )
        listener = resp["Listeners"][0]
        return Listener(listener_id=listener["ListenerArn"], port=port, group_id=group.group_id)

    async def delete_listener(self, lb: CloudResource, listener: Listener) -> None:
        await self.session.call(self.elbv2, "delete_listener", ListenerArn=listener.listener_id)

    async def delete_group(self, lb: CloudResource, group: BackendGroup) -> None:
        await self.session.call(self.elbv2, "delete_target_group", TargetGroupArn=group.group_id)


def _instance(raw: Dict[str, Any]) -> Instance:
    tags = decode_tags(raw.get("Tags"))
    return Instance(
        instance_id=raw["InstanceId"],
        state=_STATES.get(raw.get("State", {}).get("Name", ""), InstanceState.UNKNOWN),
        private_ip=raw.get("PrivateIpAddress", ""),
        zone=raw.get("Placement", {}).get("AvailabilityZone", ""),
        instance_type=raw.get("InstanceType", ""),
        image_id=raw.get("ImageId", ""),
        name=tags.get(TagKey.NAME, ""),
    )


class AwsInstanceOps(InstanceOps):
    default_user = "ubuntu"

    def __init__(self, session: AwsSession) -> None:
        self.session = session

    @property
    def ec2(self) -> Any:
        return self.session.ec2

    async def _describe(self, filters: List[Dict[str, Any]]) -> Dict[str, Instance]:
        reservations = await self.session.paginate(
            self.ec2, "describe_instances", "Reservations", Filters=filters
        )
        instances = (_instance(raw) for res in reservations for raw in res.get("Instances", []))
        return {inst.instance_id: inst for inst in instances}

    async def list_instances(self, vpc: CloudResource) -> List[Instance]:
        found = await self._describe(
            [
                {"Name": "vpc-id", "Values": [vpc.ref_id]},
                {"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES},
            ]
        )
        return list(found.values())

    async def check_inventory(self, instance_type: str, zone: str) -> bool:
        try:
            resp = await self.session.call(
                self.ec2,
                "describe_instance_type_offerings",
                LocationType="availability-zone",
                Filters=[
                    {"Name": "instance-type", "Values": [instance_type]},
                    {"Name": "location", "Values": [zone]},
                ],
            )
        except InfrastructureError as exc:
            logger.warning("inventory check for %s in %s failed: %s", instance_type, zone, exc)
            return False
        return bool(resp.get("InstanceTypeOfferings"))

    async def create_instance(self, spec: InstanceSpec) -> Instance:
        request: Dict[str, Any] = {
            "ImageId": spec.image_id,
            "InstanceType": spec.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "KeyName": spec.key_pair_name,
            "SubnetId": spec.subnet_id,
            "SecurityGroupIds": [spec.security_group_id],
            "TagSpecifications": _tag_spec("instance", spec.tags),
        }
        if spec.user_data:
            # boto3 base64-encodes UserData itself.
            request["UserData"] = base64.b64decode(spec.user_data).decode("utf-8")
        if spec.system_disk_name and spec.system_disk_size:
            request["BlockDeviceMappings"] = [
                {
                    "DeviceName": spec.system_disk_name,
                    "Ebs": {
                        "VolumeSize": spec.system_disk_size,
                        "VolumeType": "gp3",
                        "DeleteOnTermination": True,
                    },
                }
            ]
        resp = await self.session.call(self.ec2, "run_instances", **request)
        return _instance(resp["Instances"][0])

    async def terminate(self, instance_ids: List[str]) -> None:
        await self.session.call(self.ec2, "terminate_instances", InstanceIds=instance_ids)

    async def wait_terminated(self, instance_ids: List[str]) -> None:
        async def probe() -> Optional[bool]:
            found = await self._describe([{"Name": "instance-id", "Values": instance_ids}])
            done = all(
                inst.state == InstanceState.TERMINATED for inst in found.values()
            )
            return True if done else None

        await self.session.wait(
            probe,
            "instances not terminated",
            self.session.settings.instance_wait_attempts(len(instance_ids)),
        )

    async def wait_running(self, instance_ids: List[str]) -> Dict[str, Instance]:
        filters = [{"Name": "instance-id", "Values": instance_ids}]

        async def probe() -> Optional[Dict[str, Instance]]:
            found = await self._describe(filters)
            running = {k: v for k, v in found.items() if v.state == InstanceState.RUNNING}
            return running if len(running) == len(instance_ids) else None

        try:
            return await self.session.wait(
                probe,
                "instances not running",
                self.session.settings.instance_wait_attempts(len(instance_ids)),
            )
        except PollTimeoutError:
            found = await self._describe(filters)
            return {k: v for k, v in found.items() if v.state == InstanceState.RUNNING}


class AwsReconciler(CloudReconciler):
    provider = Provider.AWS

    def __init__(self, settings: OceanSettings) -> None:
        super().__init__(settings)
        self.default_region = settings.aws_default_region
        self._session: Optional[AwsSession] = None

    @property
    def session(self) -> AwsSession:
        if self._session is None:
            raise InfrastructureError("aws reconciler is not connected")
        return self._session

    async def _open(self, access_id: str, access_key: str, region: str) -> None:
        def build() -> AwsSession:
            boto_session = boto3.Session(
                aws_access_key_id=access_id or None,
                aws_secret_access_key=access_key or None,
                region_name=region,
            )
            return AwsSession(
                boto_session.client("ec2"), boto_session.client("elbv2"), self.settings
            )

        self._session = await asyncio.to_thread(build)

    def _bind(self, cluster: Cluster) -> CloudOps:
        session = self.session
        vpc = AwsVpcOps(session, cluster)
        subnet = AwsSubnetOps(session, cluster)
        igw = AwsInternetGatewayOps(session, cluster)
        eip = AwsEipOps(session, cluster)
        nat = AwsNatGatewayOps(session, cluster)
        route_table = AwsRouteTableOps(session, cluster)
        security_group = AwsSecurityGroupOps(session, cluster)
        load_balancer = AwsLoadBalancerOps(session, cluster)
        return CloudOps(
            vpc=vpc,
            subnet=subnet,
            eip=eip,
            nat_gateway=nat,
            route_table=route_table,
            internet_gateway=igw,
            security_group=security_group,
            key_pair=AwsKeyPairOps(session, cluster),
            load_balancer=load_balancer,
            instances=AwsInstanceOps(session),
            teardown_order=[
                load_balancer, security_group, nat, eip, route_table, subnet, igw, vpc,
            ],
        )

    async def _list_regions(self) -> List[CloudResource]:
        resp = await self.session.call(self.session.ec2, "describe_regions")
        return [
            CloudResource(
                type=ResourceType.REGION,
                ref_id=region["RegionName"],
                name=region["RegionName"],
                value=region.get("Endpoint", ""),
            )
            for region in resp.get("Regions", [])
        ]

    async def _list_zones(self, region: str) -> List[str]:
        resp = await self.session.call(
            self.session.ec2,
            "describe_availability_zones",
            Filters=[
                {"Name": "region-name", "Values": [region]},
                {"Name": "state", "Values": ["available"]},
            ],
        )
        return sorted(zone["ZoneName"] for zone in resp.get("AvailabilityZones", []))

    async def find_image(self, cluster: Cluster, node_group: NodeGroup) -> ImageInfo:
        arch = ARCH_TO_IMAGE_ARCH.get(node_group.arch, "") or "x86_64"
        images = await self.session.paginate(
            self.session.ec2,
            "describe_images",
            "Images",
            Owners=["amazon"],
            Filters=[
                {"Name": "name", "Values": [UBUNTU_IMAGE_NAME]},
                {"Name": "architecture", "Values": [arch]},
                {"Name": "state", "Values": ["available"]},
            ],
        )
        if not images:
            raise InfrastructureError(f"no ubuntu image found for {arch}")
        image = max(images, key=lambda img: img.get("CreationDate", ""))
        return ImageInfo(
            image_id=image["ImageId"],
            name=image.get("Name", ""),
            user=aws_determine_username(image.get("Name", ""), image.get("Description", "")),
            root_device_name=image.get("RootDeviceName", ""),
        )

    async def find_instance_type(
        self, cluster: Cluster, node_group: NodeGroup
    ) -> List[InstanceTypeInfo]:
        candidates = aws_instance_type_candidates(node_group.type, node_group.cpu)
        if not candidates:
            return []
        filters = [
            {"Name": "vcpu-info.default-vcpus", "Values": [str(node_group.cpu)]},
            {"Name": "supported-virtualization-type", "Values": ["hvm"]},
        ]
        arch = ARCH_TO_IMAGE_ARCH.get(node_group.arch, "")
        if arch:
            filters.append({"Name": "processor-info.supported-architecture", "Values": [arch]})
        offered = await self.session.paginate(
            self.session.ec2, "describe_instance_types", "InstanceTypes", Filters=filters
        )
        by_name = {item["InstanceType"]: item for item in offered}

        model = gpu_model(node_group.gpu_spec)
        found = []
        for name in candidates:
            item = by_name.get(name)
            if item is None:
                continue
            gpus = item.get("GpuInfo", {}).get("Gpus", [])
            gpu_count = sum(gpu.get("Count", 0) for gpu in gpus)
            if node_group.gpu > 0:
                if gpu_count != node_group.gpu:
                    continue
                if model and not any(model in gpu.get("Name", "") for gpu in gpus):
                    continue
            found.append(
                InstanceTypeInfo(
                    instance_type=name,
                    cpu=item.get("VCpuInfo", {}).get("DefaultVCpus", node_group.cpu),
                    memory_gib=item.get("MemoryInfo", {}).get("SizeInMiB", 0) // 1024,
                    gpu=gpu_count,
                    arch=node_group.arch,
                )
            )
        return found
