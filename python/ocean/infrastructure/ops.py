"""
ocean/infrastructure/ops.py

Capability interfaces a cloud provider implements so the generic reconcilers can
drive it. Each interface covers one resource type and contains only SDK bindings;
all list/prune/adopt/create/wait control flow lives in reconcile.py and friends.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from ocean.models.cluster import IngressRule
from ocean.models.compute import Instance, InstanceSpec
from ocean.models.resources import (
    Access,
    CloudResource,
    ResourceRegistry,
    ResourceType,
    TagKey,
    Tags,
)


class Slot(BaseModel):
    """
    One desired resource: what the reconciler wants to exist.

    Attributes:
        name: Name the resource is created or adopted under.
        tags: Full tag set to apply.
        value: Type-specific input (VPC or subnet CIDR, EIP ref_id for a NAT
            gateway, NAT ref_id for a route table).
        associated_id: ref_id of the parent resource (VPC for subnets, subnet
            for NAT gateways and route tables).
    """

    name: str
    tags: Dict[TagKey, str] = Field(default_factory=dict)
    value: str = ""
    associated_id: str = ""

    @property
    def zone(self) -> Optional[str]:
        return self.tags.get(TagKey.ZONE_ID)

    @property
    def access(self) -> Optional[Access]:
        raw = self.tags.get(TagKey.ACCESS)
        return Access(raw) if raw else None


class ResourceOps(ABC):
    """SDK bindings for one resource type of one provider."""

    resource_type: ResourceType

    @abstractmethod
    async def list(self, registry: ResourceRegistry) -> List[CloudResource]:
        """All live resources of this type in scope (paginated by the provider)."""

    @abstractmethod
    async def create(self, slot: Slot) -> CloudResource:
        """Create the resource described by `slot`, tagged with `slot.tags`."""

    @abstractmethod
    async def tag(self, resource: CloudResource, tags: Tags) -> None:
        """Write `tags` onto an existing provider resource."""

    @abstractmethod
    async def delete(self, resource: CloudResource) -> None:
        """Delete the resource, detaching whatever the provider requires first."""

    async def wait_available(self, resource: CloudResource) -> None:
        """Block until a freshly created resource is usable. Default: immediate."""
        return None

    def adoptable(self, live: CloudResource, slot: Slot) -> bool:
        """Whether an unregistered live resource can fill `slot`."""
        if slot.zone is not None and live.zone != slot.zone:
            return False
        if slot.associated_id and live.associated_id and live.associated_id != slot.associated_id:
            return False
        if slot.value and live.value and live.value != slot.value:
            return False
        return True

    async def attach(self, resource: CloudResource, slot: Slot) -> None:
        """Idempotent wiring run for every filled slot (associations, routes)."""
        return None


class SecurityGroupOps(ResourceOps):
    resource_type = ResourceType.SECURITY_GROUP

    @abstractmethod
    async def list_rules(self, group: CloudResource) -> List[IngressRule]: ...

    @abstractmethod
    async def authorize(self, group: CloudResource, rules: List[IngressRule]) -> None: ...

    @abstractmethod
    async def revoke(self, group: CloudResource, rules: List[IngressRule]) -> None: ...


class BackendGroup(BaseModel):
    """A target group (AWS) or vserver group (AliCloud) bound to one port."""

    group_id: str
    name: str
    port: int


class Listener(BaseModel):
    listener_id: str
    port: int
    group_id: str = ""


class LoadBalancerOps(ResourceOps):
    resource_type = ResourceType.LOAD_BALANCER

    @abstractmethod
    def group_name(self, master_instance_ids: List[str], port: int) -> str:
        """Deterministic backend group name for a membership and port."""

    @abstractmethod
    async def list_groups(self, lb: CloudResource) -> List[BackendGroup]: ...

    @abstractmethod
    async def list_listeners(self, lb: CloudResource) -> List[Listener]: ...

    @abstractmethod
    async def create_group(
        self, lb: CloudResource, name: str, port: int, instance_ids: List[str]
    ) -> BackendGroup: ...

    @abstractmethod
    async def create_listener(
        self, lb: CloudResource, group: BackendGroup, port: int
    ) -> Listener: ...

    @abstractmethod
    async def delete_listener(self, lb: CloudResource, listener: Listener) -> None: ...

    @abstractmethod
    async def delete_group(self, lb: CloudResource, group: BackendGroup) -> None: ...


class InstanceOps(ABC):
    """Compute bindings used by the instance lifecycle manager."""

    default_user: str = "root"

    @abstractmethod
    async def list_instances(self, vpc: CloudResource) -> List[Instance]:
        """Live (not terminated) instances in the VPC."""

    @abstractmethod
    async def check_inventory(self, instance_type: str, zone: str) -> bool:
        """Whether `instance_type` can currently be launched in `zone`."""

    @abstractmethod
    async def create_instance(self, spec: InstanceSpec) -> Instance: ...

    @abstractmethod
    async def terminate(self, instance_ids: List[str]) -> None: ...

    @abstractmethod
    async def wait_terminated(self, instance_ids: List[str]) -> None: ...

    @abstractmethod
    async def wait_running(self, instance_ids: List[str]) -> Dict[str, Instance]:
        """
        Wait for the instances to run. Returns only the instances confirmed
        Running; missing ids are start timeouts.
        """

    async def instance_price(self, instance_type: str, zone: str) -> float:
        return 0.0


__all__ = [
    "BackendGroup",
    "InstanceOps",
    "Listener",
    "LoadBalancerOps",
    "ResourceOps",
    "SecurityGroupOps",
    "Slot",
]
