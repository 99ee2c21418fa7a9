"""
ocean/infrastructure/catalog.py

Static lookup tables for picking images and instance types: instance sizes
by CPU count, instance families by node-group type, architecture and GPU
spelling per provider, and SSH user detection from AMI metadata.
"""

from __future__ import annotations

from typing import Callable, Dict, List

from ocean.models.cluster import GpuSpec, NodeArch, NodeGroupType


# Architecture spelling in image/instance-type filters (AWS, AliCloud images).
ARCH_TO_IMAGE_ARCH: Dict[NodeArch, str] = {
    NodeArch.UNSPECIFIED: "",
    NodeArch.AMD64: "x86_64",
    NodeArch.ARM64: "arm64",
}

# AliCloud DescribeInstanceTypes CpuArchitecture.
ARCH_TO_CPU_ARCHITECTURE: Dict[NodeArch, str] = {
    NodeArch.UNSPECIFIED: "",
    NodeArch.AMD64: "X86",
    NodeArch.ARM64: "ARM",
}

# `uname -m` output on bare metal.
BARE_METAL_ARCH: Dict[str, NodeArch] = {
    "x86_64": NodeArch.AMD64,
    "aarch64": NodeArch.ARM64,
    "arm": NodeArch.ARM64,
    "arm64": NodeArch.ARM64,
}

# Directory names of per-arch binaries inside the resource bundle.
BARE_METAL_ARCH_DIR: Dict[str, str] = {
    "x86_64": "amd64",
    "aarch64": "arm64",
}

BARE_METAL_GPU_SPEC: Dict[str, GpuSpec] = {
    "nvidia-a10": GpuSpec.NVIDIA_A10,
    "nvidia-v100": GpuSpec.NVIDIA_V100,
    "nvidia-t4": GpuSpec.NVIDIA_T4,
    "nvidia-p100": GpuSpec.NVIDIA_P100,
    "nvidia-p4": GpuSpec.NVIDIA_P4,
}

GPU_SPEC_TO_CLOUD_SPEC: Dict[GpuSpec, str] = {
    GpuSpec.UNSPECIFIED: "",
    GpuSpec.NVIDIA_A10: "NVIDIA A10",
    GpuSpec.NVIDIA_P100: "NVIDIA P100",
    GpuSpec.NVIDIA_P4: "NVIDIA P4",
    GpuSpec.NVIDIA_V100: "NVIDIA V100",
    GpuSpec.NVIDIA_T4: "NVIDIA T4",
}


def bare_metal_arch(raw: str) -> NodeArch:
    return BARE_METAL_ARCH.get(raw.strip().lower(), NodeArch.UNSPECIFIED)


def bare_metal_gpu_spec(raw: str) -> GpuSpec:
    return BARE_METAL_GPU_SPEC.get(raw.strip().lower(), GpuSpec.UNSPECIFIED)


def _instance_size(cpu: int, single_core: str) -> str:
    if cpu <= 1:
        return single_core
    if cpu <= 2:
        return "large"
    if cpu <= 4:
        return "xlarge"
    rounded = -(-cpu // 4) * 4
    return f"{rounded // 4}xlarge"


def aws_instance_size(cpu: int) -> str:
    """1 vCPU -> medium, 2 -> large, up to 4 -> xlarge, then `{n}xlarge` per 4 vCPUs."""
    return _instance_size(cpu, "medium")


def alicloud_instance_size(cpu: int) -> str:
    """Same ladder as AWS except a single core maps to `small`."""
    return _instance_size(cpu, "small")


# https://aws.amazon.com/ec2/instance-types/
AWS_FAMILIES: Dict[NodeGroupType, List[str]] = {
    NodeGroupType.NORMAL: [
        "m4", "m5a", "m5zn", "m5n", "m5", "m6a", "m6in", "m6i", "m6g",
        "m7a", "m7i-flex", "m7i", "m7g", "m8g",
    ],
    NodeGroupType.HIGH_COMPUTATION: [
        "c8g", "c7g", "c7gn", "c7i", "c7i-flex", "c7a", "c6g", "c6gn",
        "c6i", "c6in", "c6a", "c5", "c5n", "c5a", "c4",
    ],
    NodeGroupType.HIGH_MEMORY: [
        "r4", "r5a", "r5n", "r5", "r6a", "r6in", "r6i", "r6g",
        "r7a", "r7iz", "r7i", "r7g", "r8g",
    ],
    NodeGroupType.LARGE_HARD_DISK: ["h1", "d2", "d3en", "d3"],
    NodeGroupType.LOAD_DISK: [
        "i3en", "i3", "i4i", "is4gen", "im4gn", "i4g", "i7ie", "i8g",
    ],
    NodeGroupType.GPU_ACCELERATED: [
        "g3s", "g4ad", "g4dn", "g5", "g5g", "g6", "g6e", "p2", "p3", "p4", "p5",
    ],
}

# https://help.aliyun.com/zh/ecs/user-guide/overview-of-instance-families
ALICLOUD_FAMILIES: Dict[NodeGroupType, List[str]] = {
    NodeGroupType.NORMAL: [
        "ecs.g8i", "ecs.g7", "ecs.g6e", "ecs.g6", "ecs.g8a", "ecs.g8ae",
        "ecs.g7a", "ecs.g6a", "ecs.g8y",
    ],
    NodeGroupType.HIGH_COMPUTATION: [
        "ecs.c8i", "ecs.c7", "ecs.c6e", "ecs.c6", "ecs.c8a", "ecs.c8ae",
        "ecs.c7a", "ecs.c6a", "ecs.c8y",
    ],
    NodeGroupType.HIGH_MEMORY: [
        "ecs.r8i", "ecs.r7p", "ecs.r7", "ecs.r6e", "ecs.r6", "ecs.r8a",
        "ecs.r8ae", "ecs.r7a", "ecs.r6a", "ecs.r8y",
    ],
    NodeGroupType.LARGE_HARD_DISK: [
        "ecs.d3s", "ecs.d3c", "ecs.d2c", "ecs.d2s", "ecs.d1ne",
    ],
    NodeGroupType.LOAD_DISK: [
        "ecs.i2", "ecs.i2g", "ecs.i2ne", "ecs.i2gne", "ecs.i3g", "ecs.i3",
        "ecs.i4", "ecs.i4r", "ecs.i4g", "ecs.i4p",
    ],
    NodeGroupType.GPU_ACCELERATED: [
        "ecs.gn8v", "ecs.gn8is", "ecs.gn7e", "ecs.gn7i", "ecs.gn7s",
        "ecs.gn7", "ecs.gn7r", "ecs.gn6i", "ecs.gn6e", "ecs.gn6v",
    ],
}


def _candidates(
    families: Dict[NodeGroupType, List[str]],
    size: Callable[[int], str],
    group_type: NodeGroupType,
    cpu: int,
) -> List[str]:
    return [f"{family}.{size(cpu)}" for family in families.get(group_type, [])]


def aws_instance_type_candidates(group_type: NodeGroupType, cpu: int) -> List[str]:
    return _candidates(AWS_FAMILIES, aws_instance_size, group_type, cpu)


def alicloud_instance_type_candidates(group_type: NodeGroupType, cpu: int) -> List[str]:
    return _candidates(ALICLOUD_FAMILIES, alicloud_instance_size, group_type, cpu)


def gpu_model(spec: GpuSpec) -> str:
    """`NVIDIA_T4` -> `T4`; empty for UNSPECIFIED."""
    if spec == GpuSpec.UNSPECIFIED:
        return ""
    return spec.value.split("_")[-1]


_AMI_USERS = [
    (("amazon linux",), "ec2-user"),
    (("ubuntu",), "ubuntu"),
    (("centos",), "centos"),
    (("debian",), "admin"),
    (("rhel", "red hat"), "ec2-user"),
    (("suse",), "ec2-user"),
    (("fedora",), "fedora"),
    (("bitnami",), "bitnami"),
]


def aws_determine_username(ami_name: str, ami_description: str) -> str:
    """Default SSH user of an AMI, judged from its name and description."""
    text = f"{ami_name} {ami_description}".lower()
    for needles, user in _AMI_USERS:
        if any(needle in text for needle in needles):
            return user
    return "ec2-user"
