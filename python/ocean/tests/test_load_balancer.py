import pytest

from conftest import make_node
from ocean.infrastructure.load_balancer import LoadBalancerManager
from ocean.infrastructure.ops import BackendGroup, Listener
from ocean.models.cluster import IngressRule, NodeRole, NodeStatus
from ocean.models.resources import Access, CloudResource, ResourceType


@pytest.fixture
def cluster(aws_cluster, node_group):
    aws_cluster.cloud_resources.add(CloudResource(type=ResourceType.VPC, ref_id="vpc-1"))
    aws_cluster.node_groups.append(node_group)
    aws_cluster.nodes = [
        make_node(node_group, name="m2", role=NodeRole.MASTER, status=NodeStatus.NODE_RUNNING, instance_id="i-2"),
        make_node(node_group, name="m1", role=NodeRole.MASTER, status=NodeStatus.NODE_RUNNING, instance_id="i-1"),
        make_node(node_group, name="w1", status=NodeStatus.NODE_RUNNING, instance_id="i-9"),
    ]
    aws_cluster.ingress_controller_rules = [
        IngressRule(start_port=80, end_port=80, access=Access.PUBLIC),
        IngressRule(start_port=443, end_port=444, access=Access.PUBLIC),
        IngressRule(start_port=10250, end_port=10250, access=Access.PRIVATE),
    ]
    return aws_cluster


def manager(network):
    return LoadBalancerManager(network.load_balancer, settle_seconds=0)


async def test_one_group_and_listener_per_public_port(cluster, network):
    ops = network.load_balancer

    lb = await manager(network).manage(cluster)

    assert cluster.cloud_resources.get_single(ResourceType.LOAD_BALANCER) == lb
    assert sorted(group.port for group in ops.groups.values()) == [80, 443, 444]
    assert sorted(listener.port for listener in ops.listeners) == [80, 443, 444]
    assert all(members == ["i-1", "i-2"] for members in ops.members.values())


async def test_second_pass_changes_nothing(cluster, network):
    await manager(network).manage(cluster)
    events = list(network.load_balancer.events)

    await manager(network).manage(cluster)

    assert network.load_balancer.events == events
    assert len(network.load_balancer.created) == 1


async def test_removed_port_deletes_listener_before_group(cluster, network):
    ops = network.load_balancer
    await manager(network).manage(cluster)
    cluster.ingress_controller_rules = cluster.ingress_controller_rules[:1]
    ops.events.clear()

    await manager(network).manage(cluster)

    assert ops.events == [
        "delete-listener:443",
        "delete-group:i-1+i-2-443",
        "delete-listener:444",
        "delete-group:i-1+i-2-444",
    ]
    assert [listener.port for listener in ops.listeners] == [80]


async def test_membership_change_replaces_group(cluster, network):
    ops = network.load_balancer
    cluster.ingress_controller_rules = cluster.ingress_controller_rules[:1]
    await manager(network).manage(cluster)
    cluster.nodes[0].instance_id = "i-3"
    ops.events.clear()

    await manager(network).manage(cluster)

    assert ops.events == [
        "delete-listener:80",
        "delete-group:i-1+i-2-80",
        "create-group:i-1+i-3-80",
        "create-listener:80",
    ]
    [group] = ops.groups.values()
    assert ops.members[group.group_id] == ["i-1", "i-3"]


async def test_missing_listener_is_recreated(cluster, network):
    ops = network.load_balancer
    cluster.ingress_controller_rules = cluster.ingress_controller_rules[:1]
    ops.groups["grp-x"] = BackendGroup(group_id="grp-x", name="i-1+i-2-80", port=80)
    ops.listeners = [Listener(listener_id="l-old", port=8080, group_id="grp-gone")]

    await manager(network).manage(cluster)

    assert ops.events == ["create-listener:80"]
