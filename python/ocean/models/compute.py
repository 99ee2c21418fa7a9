"""
ocean/models/compute.py

Provider-neutral views of compute objects: live instances, instance create
requests, image and instance-type catalog entries, and bare-metal probe output.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict

from pydantic import BaseModel, Field, field_validator

from ocean.models.cluster import NodeArch
from ocean.models.resources import TagKey


class InstanceState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    TERMINATED = "TERMINATED"
    UNKNOWN = "UNKNOWN"


class Instance(BaseModel):
    instance_id: str
    state: InstanceState = InstanceState.UNKNOWN
    private_ip: str = ""
    zone: str = ""
    instance_type: str = ""
    image_id: str = ""
    name: str = ""


class InstanceSpec(BaseModel):
    """
    Everything a provider needs to launch one instance for one node.

    `user_data` is already base64-encoded when set.
    """

    name: str
    image_id: str
    instance_type: str
    subnet_id: str
    zone: str
    security_group_id: str
    key_pair_name: str
    system_disk_size: int = 0
    system_disk_name: str = ""
    user_data: str = ""
    tags: Dict[TagKey, str] = Field(default_factory=dict)


class ImageInfo(BaseModel):
    image_id: str
    name: str = ""
    user: str = "root"
    root_device_name: str = ""


class InstanceTypeInfo(BaseModel):
    instance_type: str
    cpu: int = 0
    memory_gib: int = 0
    gpu: int = 0
    arch: NodeArch = NodeArch.UNSPECIFIED


class SystemInfo(BaseModel):
    """
    JSON document printed by `systeminfo.sh` on a bare-metal host.

    The script prints every field as a string; numeric fields are coerced.
    """

    id: str = ""
    os: str = ""
    arch: str = ""
    mem: int = 0
    cpu: int = 0
    gpu: int = 0
    gpu_info: str = ""
    disk: int = 0
    ip: str = ""

    @field_validator("mem", "cpu", "gpu", "disk", mode="before")
    @classmethod
    def coerce_int(cls, val: object) -> int:
        if val is None or val == "":
            return 0
        return int(float(str(val).strip()))

    def group_key(self) -> str:
        return "-".join(
            [self.os, self.arch, str(self.mem), str(self.cpu), str(self.gpu), self.gpu_info]
        )


__all__ = [
    "ImageInfo",
    "Instance",
    "InstanceSpec",
    "InstanceState",
    "InstanceTypeInfo",
    "SystemInfo",
]
