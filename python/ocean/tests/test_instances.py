import base64

import pytest

from conftest import make_node, register_compute_prerequisites
from ocean.infrastructure.errors import MissingResourceError
from ocean.infrastructure.instances import (
    INSUFFICIENT_INVENTORY,
    START_TIMEOUT,
    InstanceLifecycleManager,
    nodes_with_errors,
)
from ocean.models.cluster import ClusterStatus, NodeErrorType, NodeRole, NodeStatus

ZONES = ["zone-a", "zone-b"]


@pytest.fixture
def cluster(aws_cluster, node_group):
    register_compute_prerequisites(aws_cluster, ZONES)
    aws_cluster.node_groups.append(node_group)
    return aws_cluster


async def test_primary_type_available(cluster, node_group, network):
    ops = network.instances
    ops.inventory = {("m5.large", "zone-a"), ("m5.large", "zone-b")}
    cluster.nodes = [
        make_node(node_group, name="w1", instance_type="m5.large", image_id="ami-1"),
        make_node(node_group, name="w2", instance_type="m5.large", image_id="ami-1"),
    ]

    await InstanceLifecycleManager(ops).manage(cluster)

    assert [spec.zone for spec in ops.launched] == ["zone-a", "zone-b"]
    assert [spec.subnet_id for spec in ops.launched] == ["subnet-zone-a", "subnet-zone-b"]
    assert all(spec.security_group_id == "sg-1" for spec in ops.launched)
    assert all(spec.key_pair_name == "demo-keypair" for spec in ops.launched)
    for node in cluster.nodes:
        assert node.status == NodeStatus.NODE_RUNNING
        assert node.instance_id.startswith("i-")
        assert node.ip.startswith("10.0.0.")
        assert node.user == "ubuntu"
    assert nodes_with_errors(cluster) == []


async def test_capacity_falls_back_to_first_available_backup(cluster, node_group, network):
    ops = network.instances
    ops.inventory = {("m6i.large", "zone-a"), ("m7i.large", "zone-a")}
    node = make_node(
        node_group,
        name="w1",
        instance_type="m5.large",
        backup_instance_ids="m5a.large,m6i.large,m7i.large",
    )
    cluster.nodes = [node]

    await InstanceLifecycleManager(ops).manage(cluster)

    assert node.instance_type == "m6i.large"
    assert ops.launched[0].instance_type == "m6i.large"
    assert node.error_message == ""
    assert node.status == NodeStatus.NODE_RUNNING


async def test_insufficient_inventory_is_recorded(cluster, node_group, network):
    ops = network.instances
    ops.inventory = {("m5.large", "zone-b")}
    starved = make_node(node_group, name="w1", instance_type="c5.large", backup_instance_ids="c6i.large")
    healthy = make_node(node_group, name="w2", instance_type="m5.large")
    cluster.nodes = [starved, healthy]

    await InstanceLifecycleManager(ops).manage(cluster)

    assert starved.error_type == NodeErrorType.INFRASTRUCTURE_ERROR
    assert starved.error_message == INSUFFICIENT_INVENTORY
    assert starved.instance_id == ""
    assert starved.status == NodeStatus.NODE_CREATING
    assert healthy.status == NodeStatus.NODE_RUNNING
    assert [spec.name for spec in ops.launched] == ["w2"]


async def test_start_timeout_is_recorded(cluster, node_group, network):
    ops = network.instances
    ops.inventory = {("m5.large", "zone-a"), ("m5.large", "zone-b")}
    ops.stuck = {"w1"}
    slow = make_node(node_group, name="w1", instance_type="m5.large")
    fast = make_node(node_group, name="w2", instance_type="m5.large")
    cluster.nodes = [slow, fast]

    await InstanceLifecycleManager(ops).manage(cluster)

    assert slow.error_message == START_TIMEOUT
    assert slow.status == NodeStatus.NODE_CREATING
    assert slow.instance_id
    assert fast.status == NodeStatus.NODE_RUNNING
    assert fast.error_message == ""


async def test_timed_out_instance_is_resumed_on_next_pass(cluster, node_group, network):
    ops = network.instances
    ops.inventory = {("m5.large", "zone-a")}
    ops.stuck = {"w1"}
    node = make_node(node_group, name="w1", instance_type="m5.large")
    cluster.nodes = [node]
    manager = InstanceLifecycleManager(ops)

    await manager.manage(cluster)
    assert node.error_message == START_TIMEOUT

    ops.stuck = set()
    await manager.manage(cluster)

    assert node.status == NodeStatus.NODE_RUNNING
    assert node.instance_id == "i-1"
    assert node.ip == "10.0.0.11"
    assert node.error_type == NodeErrorType.NONE
    assert node.error_message == ""
    assert len(ops.launched) == 1


async def test_vanished_creating_instance_is_relaunched(cluster, node_group, network):
    ops = network.instances
    ops.inventory = {("m5.large", "zone-a")}
    node = make_node(node_group, name="w1", instance_type="m5.large", instance_id="i-lost")
    cluster.nodes = [node]

    await InstanceLifecycleManager(ops).manage(cluster)

    assert node.instance_id == "i-1"
    assert node.status == NodeStatus.NODE_RUNNING
    assert [spec.name for spec in ops.launched] == ["w1"]


async def test_deleting_nodes(cluster, node_group, network):
    ops = network.instances
    ops.seed("i-123")
    live = make_node(node_group, name="old", status=NodeStatus.NODE_DELETING, instance_id="i-123")
    gone = make_node(node_group, name="older", status=NodeStatus.NODE_DELETING, instance_id="i-999")
    cluster.nodes = [live, gone]

    await InstanceLifecycleManager(ops).manage(cluster)

    assert ops.terminated == ["i-123"]
    assert live.instance_id == ""
    assert gone.instance_id == "i-999"


async def test_vanished_instance_is_forgotten(cluster, node_group, network):
    ops = network.instances
    ops.seed("i-alive")
    vanished = make_node(node_group, name="a", status=NodeStatus.NODE_RUNNING, instance_id="i-lost")
    alive = make_node(node_group, name="b", status=NodeStatus.NODE_RUNNING, instance_id="i-alive")
    cluster.nodes = [vanished, alive]

    await InstanceLifecycleManager(ops).manage(cluster)

    assert vanished.instance_id == ""
    assert alive.instance_id == "i-alive"
    assert ops.launched == []


async def test_master_gets_install_script_while_starting(cluster, node_group, network):
    ops = network.instances
    ops.inventory = {("m5.large", "zone-a"), ("m5.large", "zone-b")}
    cluster.status = ClusterStatus.STARTING
    cluster.nodes = [
        make_node(node_group, name="m1", role=NodeRole.MASTER, instance_type="m5.large"),
        make_node(node_group, name="w1", instance_type="m5.large"),
    ]

    await InstanceLifecycleManager(ops).manage(cluster, install_script="#!/bin/bash\necho hi\n")

    master_spec, worker_spec = ops.launched
    assert base64.b64decode(master_spec.user_data).decode() == "#!/bin/bash\necho hi\n"
    assert worker_spec.user_data == ""


async def test_node_without_group_is_skipped(cluster, node_group, network):
    ops = network.instances
    ops.inventory = {("m5.large", "zone-a")}
    orphan = make_node(node_group, name="x", instance_type="m5.large")
    orphan.node_group_id = "unknown"
    cluster.nodes = [orphan]

    await InstanceLifecycleManager(ops).manage(cluster)

    assert ops.launched == []


async def test_group_price_is_recorded(cluster, node_group, network):
    ops = network.instances
    ops.inventory = {("m5.large", "zone-a")}
    ops.prices = {"m5.large": 0.42}
    cluster.nodes = [make_node(node_group, name="w1", instance_type="m5.large")]

    await InstanceLifecycleManager(ops).manage(cluster)

    assert node_group.node_price == pytest.approx(0.42)


async def test_prerequisites_required(aws_cluster, network):
    with pytest.raises(MissingResourceError):
        await InstanceLifecycleManager(network.instances).manage(aws_cluster)
