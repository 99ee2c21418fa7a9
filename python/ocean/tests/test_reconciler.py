from typing import List

import pytest

from conftest import FakeNetwork, make_node, register_compute_prerequisites
from ocean.infrastructure.errors import InfrastructureError
from ocean.infrastructure.reconciler import CloudOps, CloudReconciler
from ocean.infrastructure.scripts import CLOUD_INSTALL_SHELL
from ocean.models.cluster import ClusterStatus, NodeGroup, NodeRole, NodeStatus, Provider
from ocean.models.compute import ImageInfo, InstanceTypeInfo
from ocean.models.resources import CloudResource, ResourceType


class FakeCloudReconciler(CloudReconciler):
    provider = Provider.AWS

    def __init__(self, settings, network: FakeNetwork) -> None:
        super().__init__(settings)
        self.network = network
        self.default_region = "region-1"
        self.opened: List[tuple] = []
        self.zones = ["zone-a", "zone-b"]
        self.instance_types = [
            InstanceTypeInfo(instance_type="m5.large", cpu=2, memory_gib=8),
            InstanceTypeInfo(instance_type="m6i.large", cpu=2, memory_gib=8),
            InstanceTypeInfo(instance_type="m7i.large", cpu=2, memory_gib=8),
        ]

    async def _open(self, access_id, access_key, region):
        self.opened.append((access_id, access_key, region))

    def _bind(self, cluster) -> CloudOps:
        return self.network.cloud_ops(with_internet_gateway=True)

    async def _list_regions(self):
        return [CloudResource(type=ResourceType.REGION, ref_id="region-1", name="Region One")]

    async def _list_zones(self, region):
        return list(self.zones)

    async def find_image(self, cluster, node_group):
        return ImageInfo(image_id="ami-1", user="ubuntu", root_device_name="/dev/sda1")

    async def find_instance_type(self, cluster, node_group):
        return list(self.instance_types)


@pytest.fixture
def reconciler(settings, network):
    return FakeCloudReconciler(settings, network)


async def test_ops_require_connect(reconciler, aws_cluster):
    with pytest.raises(InfrastructureError):
        await reconciler.create_network(aws_cluster)


async def test_get_regions_uses_default_region(reconciler):
    regions = await reconciler.get_regions("id", "key")

    assert reconciler.opened == [("id", "key", "region-1")]
    assert [region.ref_id for region in regions] == ["region-1"]


async def test_get_zones_replaces_stale_list(reconciler, aws_cluster):
    reconciler.zones = ["zone-c"]

    zones = await reconciler.get_zones(aws_cluster)

    assert [zone.ref_id for zone in zones] == ["zone-c"]
    assert aws_cluster.zones() == ["zone-c"]


async def test_get_zones_empty_is_fatal(reconciler, aws_cluster):
    reconciler.zones = []

    with pytest.raises(InfrastructureError):
        await reconciler.get_zones(aws_cluster)


async def test_network_and_key_pair_lifecycle(reconciler, aws_cluster, network):
    await reconciler.connect(aws_cluster)
    await reconciler.create_network(aws_cluster)
    await reconciler.import_key_pair(aws_cluster)
    await reconciler.import_key_pair(aws_cluster)

    key_pair = aws_cluster.cloud_resources.get_single(ResourceType.KEY_PAIR)
    assert key_pair.name == "demo-keypair"
    assert key_pair.value == "ssh-ed25519 AAAA"
    assert len(network.key_pair.created) == 1
    assert aws_cluster.cloud_resources.get_single(ResourceType.INTERNET_GATEWAY) is not None

    await reconciler.delete_network(aws_cluster)
    await reconciler.delete_key_pair(aws_cluster)

    assert {res.type for res in aws_cluster.cloud_resources.resources} == {
        ResourceType.AVAILABILITY_ZONES
    }
    assert network.key_pair.live == {}


async def test_import_key_pair_needs_public_key(reconciler, aws_cluster):
    aws_cluster.public_key = ""
    await reconciler.connect(aws_cluster)

    with pytest.raises(InfrastructureError):
        await reconciler.import_key_pair(aws_cluster)


async def test_nodes_system_info_backfills_finding_groups(reconciler, aws_cluster):
    finding = NodeGroup(name="finding", cpu=2, memory=4)
    settled = NodeGroup(name="settled", cpu=4, memory=16, instance_type="c5.xlarge")
    aws_cluster.node_groups = [finding, settled]
    aws_cluster.nodes = [
        make_node(finding, name="a", status=NodeStatus.NODE_FINDING),
        make_node(finding, name="b", status=NodeStatus.NODE_CREATING),
        make_node(settled, name="c", status=NodeStatus.NODE_RUNNING, instance_type="c5.xlarge"),
    ]
    await reconciler.connect(aws_cluster)

    await reconciler.get_nodes_system_info(aws_cluster)

    assert finding.instance_type == "m5.large"
    assert finding.memory == 8
    for node in aws_cluster.nodes[:2]:
        assert node.instance_type == "m5.large"
        assert node.backup_instance_ids == "m6i.large,m7i.large"
        assert node.image_id == "ami-1"
        assert node.user == "ubuntu"
        assert node.system_disk_name == "/dev/sda1"
    assert aws_cluster.nodes[2].image_id == ""
    assert settled.instance_type == "c5.xlarge"


async def test_nodes_system_info_without_types(reconciler, aws_cluster):
    group = NodeGroup(name="gpu", cpu=64, gpu=8)
    aws_cluster.node_groups = [group]
    aws_cluster.nodes = [make_node(group, name="a", status=NodeStatus.NODE_FINDING)]
    reconciler.instance_types = []

    with pytest.raises(InfrastructureError):
        await reconciler.get_nodes_system_info(aws_cluster)


async def test_manage_instance_renders_script_for_starting_master(
    reconciler, aws_cluster, node_group, network, tmp_path, settings
):
    (tmp_path / CLOUD_INSTALL_SHELL).write_text("#!/bin/bash\necho '${cluster_json}'\n")
    reconciler.settings = settings.model_copy(update={"shell_dir": str(tmp_path)})
    register_compute_prerequisites(aws_cluster, ["zone-a", "zone-b"])
    aws_cluster.status = ClusterStatus.STARTING
    aws_cluster.node_groups = [node_group]
    aws_cluster.nodes = [
        make_node(node_group, name="m1", role=NodeRole.MASTER, instance_type="m5.large")
    ]
    network.instances.inventory = {("m5.large", "zone-a")}
    await reconciler.connect(aws_cluster)

    await reconciler.manage_instance(aws_cluster)

    assert network.instances.launched[0].user_data
    assert aws_cluster.nodes[0].status == NodeStatus.NODE_RUNNING
