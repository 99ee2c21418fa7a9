"""
ocean/models/resources.py

The resource registry: a tag-annotated catalog of provider resources owned by
a Cluster. Reconcilers read and mutate it; it is the only record of what the
engine believes exists at the provider.

Tags are a typed attribute set keyed by `TagKey`. They are encoded into the
provider's native key/value list on write and decoded back on read, and are
queried through the predicate helpers below.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field


class ResourceType(str, Enum):
    REGION = "REGION"
    AVAILABILITY_ZONES = "AVAILABILITY_ZONES"
    VPC = "VPC"
    SUBNET = "SUBNET"
    ELASTIC_IP = "ELASTIC_IP"
    NAT_GATEWAY = "NAT_GATEWAY"
    ROUTE_TABLE = "ROUTE_TABLE"
    SECURITY_GROUP = "SECURITY_GROUP"
    LOAD_BALANCER = "LOAD_BALANCER"
    KEY_PAIR = "KEY_PAIR"
    INTERNET_GATEWAY = "INTERNET_GATEWAY"


SINGLETON_TYPES = frozenset(
    {
        ResourceType.VPC,
        ResourceType.SECURITY_GROUP,
        ResourceType.LOAD_BALANCER,
    }
)


class Access(str, Enum):
    PUBLIC = "PUBLIC"
    PRIVATE = "PRIVATE"


class TagKey(str, Enum):
    """Typed tag keys. The value is the key string written to the provider."""

    NAME = "Name"
    CLUSTER = "ocean-cluster"
    ZONE_ID = "ocean-zone-id"
    ACCESS = "ocean-access"


Tags = Dict[TagKey, str]


def encode_tags(tags: Tags) -> List[Dict[str, str]]:
    """Encode a typed tag set into the provider key/value list format."""
    return [{"Key": key.value, "Value": value} for key, value in tags.items()]


def decode_tags(pairs: Optional[Iterable[Dict[str, str]]]) -> Tags:
    """
    Decode a provider key/value tag list into a typed tag set.

    Keys that are not `TagKey` values are ignored.
    """
    known = {key.value: key for key in TagKey}
    decoded: Tags = {}
    for pair in pairs or []:
        key = known.get(pair.get("Key", ""))
        if key is not None:
            decoded[key] = pair.get("Value", "") or ""
    return decoded


class CloudResource(BaseModel):
    """
    One provider resource as recorded in the registry.

    Attributes:
        id: Local identifier.
        type: The resource type.
        ref_id: Provider-assigned identifier.
        name: Human-readable name (usually the NAME tag).
        value: Type-specific payload: CIDR for VPCs and subnets, public IP for
            EIPs, DNS name for load balancers, bound EIP ref_id for NAT gateways.
        associated_id: ref_id of the resource this one is attached to.
        tags: Typed tag set.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: ResourceType
    ref_id: str
    name: str = ""
    value: str = ""
    associated_id: str = ""
    tags: Tags = Field(default_factory=dict)

    @property
    def zone(self) -> Optional[str]:
        return self.tags.get(TagKey.ZONE_ID)

    @property
    def access(self) -> Optional[str]:
        return self.tags.get(TagKey.ACCESS)


ResourcePredicate = Callable[[CloudResource], bool]


def tagged(key: TagKey, value: str) -> ResourcePredicate:
    return lambda res: res.tags.get(key) == value


def named(name: str) -> ResourcePredicate:
    return lambda res: res.name == name or res.tags.get(TagKey.NAME) == name


def in_zone(zone: str) -> ResourcePredicate:
    return tagged(TagKey.ZONE_ID, zone)


def with_access(access: Access) -> ResourcePredicate:
    return tagged(TagKey.ACCESS, access.value)


class ResourceRegistry(BaseModel):
    """
    Ordered collection of CloudResources keyed by (type, ref_id).

    The registry belongs to exactly one Cluster and is handed explicitly to every
    reconciliation step; it performs no locking of its own.
    """

    resources: List[CloudResource] = Field(default_factory=list)

    def get(self, resource_type: ResourceType) -> List[CloudResource]:
        return [res for res in self.resources if res.type == resource_type]

    def get_single(self, resource_type: ResourceType) -> Optional[CloudResource]:
        found = self.get(resource_type)
        return found[0] if found else None

    def get_by_ref_id(
        self, resource_type: ResourceType, ref_id: str
    ) -> Optional[CloudResource]:
        for res in self.resources:
            if res.type == resource_type and res.ref_id == ref_id:
                return res
        return None

    def filter(
        self, resource_type: ResourceType, *predicates: ResourcePredicate
    ) -> List[CloudResource]:
        return [
            res
            for res in self.get(resource_type)
            if all(predicate(res) for predicate in predicates)
        ]

    def find(
        self, resource_type: ResourceType, *predicates: ResourcePredicate
    ) -> Optional[CloudResource]:
        found = self.filter(resource_type, *predicates)
        return found[0] if found else None

    def add(self, resource: CloudResource) -> CloudResource:
        """
        Register a resource. An existing entry with the same (type, ref_id) is
        replaced in place so the registry never holds duplicates.

        Raises:
            ValueError: If a second resource is added for a singleton type.
        """
        for index, res in enumerate(self.resources):
            if res.type == resource.type and res.ref_id == resource.ref_id:
                self.resources[index] = resource
                return resource
        if resource.type in SINGLETON_TYPES and self.get(resource.type):
            raise ValueError(f"{resource.type.value} is already registered")
        self.resources.append(resource)
        return resource

    def remove(self, resource_type: ResourceType, ref_id: str) -> None:
        self.resources = [
            res
            for res in self.resources
            if not (res.type == resource_type and res.ref_id == ref_id)
        ]

    def clear(self, resource_type: ResourceType) -> None:
        self.resources = [res for res in self.resources if res.type != resource_type]

    def prune(
        self, resource_type: ResourceType, live_ref_ids: Iterable[str]
    ) -> List[CloudResource]:
        """
        Drop every registered resource of `resource_type` whose ref_id is not
        in `live_ref_ids`.

        Returns:
            The orphans that were removed.
        """
        live = set(live_ref_ids)
        orphans = [res for res in self.get(resource_type) if res.ref_id not in live]
        for orphan in orphans:
            self.remove(resource_type, orphan.ref_id)
        return orphans


__all__ = [
    "Access",
    "CloudResource",
    "ResourcePredicate",
    "ResourceRegistry",
    "ResourceType",
    "SINGLETON_TYPES",
    "TagKey",
    "Tags",
    "decode_tags",
    "encode_tags",
    "in_zone",
    "named",
    "tagged",
    "with_access",
]
