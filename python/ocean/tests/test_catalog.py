import pytest

from ocean.infrastructure.catalog import (
    alicloud_instance_size,
    alicloud_instance_type_candidates,
    aws_determine_username,
    aws_instance_size,
    aws_instance_type_candidates,
    bare_metal_arch,
    bare_metal_gpu_spec,
    gpu_model,
)
from ocean.models.cluster import GpuSpec, NodeArch, NodeGroupType


@pytest.mark.parametrize(
    "cpu, aws, ali",
    [
        (1, "medium", "small"),
        (2, "large", "large"),
        (3, "xlarge", "xlarge"),
        (4, "xlarge", "xlarge"),
        (8, "2xlarge", "2xlarge"),
        (10, "3xlarge", "3xlarge"),
        (16, "4xlarge", "4xlarge"),
    ],
)
def test_instance_size(cpu, aws, ali):
    assert aws_instance_size(cpu) == aws
    assert alicloud_instance_size(cpu) == ali


def test_candidates_follow_family_order():
    aws = aws_instance_type_candidates(NodeGroupType.NORMAL, 2)
    assert aws[:3] == ["m4.large", "m5a.large", "m5zn.large"]

    ali = alicloud_instance_type_candidates(NodeGroupType.HIGH_MEMORY, 1)
    assert ali[0] == "ecs.r8i.small"
    assert all(name.endswith(".small") for name in ali)


@pytest.mark.parametrize(
    "name, description, user",
    [
        ("ubuntu/images/hvm-ssd-gp3/ubuntu-noble-24.04-amd64-server-20240801", "", "ubuntu"),
        ("al2023-ami-2023.5", "Amazon Linux 2023 AMI", "ec2-user"),
        ("debian-12-amd64", "Debian 12", "admin"),
        ("CentOS-Stream-9", "", "centos"),
        ("RHEL-9.4.0_HVM", "Provided by Red Hat, Inc.", "ec2-user"),
        ("Fedora-Cloud-Base-40", "", "fedora"),
        ("bitnami-wordpress", "", "bitnami"),
        ("custom-image", "", "ec2-user"),
    ],
)
def test_ami_user(name, description, user):
    assert aws_determine_username(name, description) == user


def test_bare_metal_lookups():
    assert bare_metal_arch("x86_64\n") == NodeArch.AMD64
    assert bare_metal_arch("aarch64") == NodeArch.ARM64
    assert bare_metal_arch("riscv64") == NodeArch.UNSPECIFIED
    assert bare_metal_gpu_spec("NVIDIA-T4") == GpuSpec.NVIDIA_T4
    assert bare_metal_gpu_spec("") == GpuSpec.UNSPECIFIED
    assert gpu_model(GpuSpec.NVIDIA_A10) == "A10"
    assert gpu_model(GpuSpec.UNSPECIFIED) == ""
