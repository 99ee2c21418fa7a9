"""
ocean/models/cluster.py

The Cluster aggregate and its node/node-group/ingress-rule members.

A Cluster owns its ResourceRegistry (`cloud_resources`). Every reconciliation
pass receives one Cluster and mutates it in place; nothing else holds a
reference to it while the pass runs.
"""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ocean.models.resources import (
    Access,
    CloudResource,
    ResourceRegistry,
    ResourceType,
    TagKey,
    Tags,
    with_access,
)


class Provider(str, Enum):
    ALICLOUD = "alicloud"
    AWS = "aws"
    BAREMETAL = "baremetal"

    @property
    def is_cloud(self) -> bool:
        return self in (Provider.ALICLOUD, Provider.AWS)


class ClusterStatus(str, Enum):
    UNSPECIFIED = "UNSPECIFIED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    DELETED = "DELETED"


class NodeRole(str, Enum):
    MASTER = "MASTER"
    WORKER = "WORKER"


class NodeStatus(str, Enum):
    UNSPECIFIED = "UNSPECIFIED"
    NODE_FINDING = "NODE_FINDING"
    NODE_PENDING = "NODE_PENDING"
    NODE_CREATING = "NODE_CREATING"
    NODE_RUNNING = "NODE_RUNNING"
    NODE_DELETING = "NODE_DELETING"


class NodeGroupType(str, Enum):
    NORMAL = "NORMAL"
    HIGH_COMPUTATION = "HIGH_COMPUTATION"
    HIGH_MEMORY = "HIGH_MEMORY"
    LARGE_HARD_DISK = "LARGE_HARD_DISK"
    LOAD_DISK = "LOAD_DISK"
    GPU_ACCELERATED = "GPU_ACCELERATED"


class NodeArch(str, Enum):
    UNSPECIFIED = "UNSPECIFIED"
    AMD64 = "AMD64"
    ARM64 = "ARM64"


class GpuSpec(str, Enum):
    UNSPECIFIED = "UNSPECIFIED"
    NVIDIA_A10 = "NVIDIA_A10"
    NVIDIA_V100 = "NVIDIA_V100"
    NVIDIA_T4 = "NVIDIA_T4"
    NVIDIA_P100 = "NVIDIA_P100"
    NVIDIA_P4 = "NVIDIA_P4"


class NodeErrorType(str, Enum):
    NONE = "NONE"
    INFRASTRUCTURE_ERROR = "INFRASTRUCTURE_ERROR"
    CLUSTER_ERROR = "CLUSTER_ERROR"


class IngressRule(BaseModel):
    """
    One ingress rule on the cluster security group.

    Attributes:
        protocol: e.g. "tcp", "udp".
        ip_cidr: Source CIDR.
        start_port: First port of the range (inclusive).
        end_port: Last port of the range (inclusive).
        access: PUBLIC rules are also exposed through the load balancer.
    """

    protocol: str = "tcp"
    ip_cidr: str = "0.0.0.0/0"
    start_port: int = Field(ge=-1, le=65535)
    end_port: int = Field(ge=-1, le=65535)
    access: Access = Access.PRIVATE

    @model_validator(mode="after")
    def check_port_range(self) -> "IngressRule":
        if self.end_port < self.start_port:
            raise ValueError("end_port must not be lower than start_port")
        return self

    def ports(self) -> List[int]:
        return list(range(self.start_port, self.end_port + 1))


class NodeGroup(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    type: NodeGroupType = NodeGroupType.NORMAL
    os: str = ""
    arch: NodeArch = NodeArch.AMD64
    cpu: int = 0
    memory: int = 0
    gpu: int = 0
    gpu_spec: GpuSpec = GpuSpec.UNSPECIFIED
    instance_type: str = ""
    node_price: float = 0.0
    min_size: int = 0
    max_size: int = 0
    target_size: int = 0


class Node(BaseModel):
    """
    A single cluster member. `error_type`/`error_message` record per-node
    failures that do not abort the reconciliation pass.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    node_group_id: str = ""
    role: NodeRole = NodeRole.WORKER
    status: NodeStatus = NodeStatus.UNSPECIFIED
    instance_id: str = ""
    ip: str = ""
    user: str = ""
    image_id: str = ""
    instance_type: str = ""
    backup_instance_ids: str = ""
    system_disk_size: int = 0
    system_disk_name: str = ""
    error_type: NodeErrorType = NodeErrorType.NONE
    error_message: str = ""

    @property
    def backup_instance_types(self) -> List[str]:
        return [t.strip() for t in self.backup_instance_ids.split(",") if t.strip()]

    def set_error(self, error_type: NodeErrorType, message: str) -> None:
        self.error_type = error_type
        self.error_message = message


class Cluster(BaseModel):
    """
    The aggregate root handed to every infrastructure operation.

    Resource names are derived from `name`, so two passes over the same cluster
    always look for the same provider resources.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    provider: Provider
    region: str = ""
    vpc_cidr: str = "10.0.0.0/16"
    public_key: str = ""
    private_key: str = ""
    access_id: str = ""
    access_key: str = ""
    status: ClusterStatus = ClusterStatus.UNSPECIFIED
    username: str = "root"
    node_start_ip: str = ""
    node_end_ip: str = ""
    image_repo: str = ""
    kubernetes_version: str = ""
    ingress_controller_rules: List[IngressRule] = Field(default_factory=list)
    node_groups: List[NodeGroup] = Field(default_factory=list)
    nodes: List[Node] = Field(default_factory=list)
    cloud_resources: ResourceRegistry = Field(default_factory=ResourceRegistry)

    @field_validator("name")
    @classmethod
    def validate_name(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("name must be a non-empty string")
        return val

    # --------------------------
    # Resource naming and tags
    # --------------------------
    def tags(self) -> Tags:
        return {TagKey.CLUSTER: self.name}

    @property
    def vpc_name(self) -> str:
        return f"{self.name}-vpc"

    def subnet_name(self, zone: str) -> str:
        return f"{self.name}-private-subnet-{zone}"

    def eip_name(self, zone: str) -> str:
        return f"{self.name}-eip-{zone}"

    def nat_gateway_name(self, zone: str) -> str:
        return f"{self.name}-nat-gateway-{zone}"

    def route_table_name(self, zone: str) -> str:
        return f"{self.name}-private-rt-{zone}"

    @property
    def internet_gateway_name(self) -> str:
        return f"{self.name}-igw"

    @property
    def security_group_name(self) -> str:
        return f"{self.name}-sg"

    @property
    def key_pair_name(self) -> str:
        return f"{self.name}-keypair"

    @property
    def load_balancer_name(self) -> str:
        return f"{self.name}-slb"

    # --------------------------
    # Lookups
    # --------------------------
    def zones(self) -> List[str]:
        return [
            zone.ref_id
            for zone in self.cloud_resources.get(ResourceType.AVAILABILITY_ZONES)
        ]

    def get_node_group(self, node_group_id: str) -> Optional[NodeGroup]:
        for group in self.node_groups:
            if group.id == node_group_id:
                return group
        return None

    def get_node_by_ip(self, ip: str) -> Optional[Node]:
        for node in self.nodes:
            if node.ip == ip:
                return node
        return None

    def nodes_in_group(self, node_group_id: str) -> List[Node]:
        return [node for node in self.nodes if node.node_group_id == node_group_id]

    def masters(self) -> List[Node]:
        return [node for node in self.nodes if node.role == NodeRole.MASTER]

    def private_subnets(self) -> List[CloudResource]:
        subnets = self.cloud_resources.filter(
            ResourceType.SUBNET, with_access(Access.PRIVATE)
        )
        return sorted(subnets, key=lambda res: (res.zone or "", res.ref_id))

    def distribute_node_private_subnets(self, index: int) -> Optional[CloudResource]:
        """Spread nodes round-robin across the private subnets, ordered by zone."""
        subnets = self.private_subnets()
        if not subnets:
            return None
        return subnets[index % len(subnets)]

    def public_ports(self) -> List[int]:
        ports = {
            port
            for rule in self.ingress_controller_rules
            if rule.access == Access.PUBLIC
            for port in rule.ports()
        }
        return sorted(ports)

    def group_summary(self) -> Dict[str, int]:
        return {group.id: len(self.nodes_in_group(group.id)) for group in self.node_groups}


__all__ = [
    "Cluster",
    "ClusterStatus",
    "GpuSpec",
    "IngressRule",
    "Node",
    "NodeArch",
    "NodeErrorType",
    "NodeGroup",
    "NodeGroupType",
    "NodeRole",
    "NodeStatus",
    "Provider",
]
