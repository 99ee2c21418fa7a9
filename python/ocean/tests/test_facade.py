import asyncio
from typing import List

import pytest

from ocean.infrastructure.errors import InfrastructureError
from ocean.infrastructure.facade import InfrastructureFacade
from ocean.infrastructure.reconciler import ProviderReconciler
from ocean.models.cluster import Cluster, Provider
from ocean.models.resources import CloudResource, ResourceType


class RecordingReconciler(ProviderReconciler):
    """Logs every step; `slow` steps yield to the loop to expose interleaving."""

    def __init__(self, settings, log: List[str], provider: Provider, slow: bool = False) -> None:
        super().__init__(settings)
        self.log = log
        self.provider = provider
        self.slow = slow

    async def _step(self, name: str, cluster: Cluster) -> None:
        self.log.append(f"{cluster.name}:{name}:start")
        if self.slow:
            for _ in range(3):
                await asyncio.sleep(0)
        self.log.append(f"{cluster.name}:{name}:end")

    async def connect(self, cluster):
        await self._step("connect", cluster)

    async def get_regions(self, access_id, access_key):
        self.log.append(f"regions:{access_id}")
        return [CloudResource(type=ResourceType.REGION, ref_id="r-1")]

    async def get_zones(self, cluster):
        await self._step("zones", cluster)
        return []

    async def create_network(self, cluster):
        await self._step("network", cluster)

    async def import_key_pair(self, cluster):
        await self._step("key_pair", cluster)

    async def manage_security_group(self, cluster):
        await self._step("security_group", cluster)

    async def manage_instance(self, cluster):
        await self._step("instances", cluster)

    async def manage_slb(self, cluster):
        await self._step("slb", cluster)

    async def delete_network(self, cluster):
        await self._step("delete_network", cluster)

    async def delete_key_pair(self, cluster):
        await self._step("delete_key_pair", cluster)

    async def find_image(self, cluster, node_group):
        raise NotImplementedError

    async def find_instance_type(self, cluster, node_group):
        return []

    async def get_nodes_system_info(self, cluster):
        await self._step("system_info", cluster)

    async def open_ssh(self, cluster):
        await self._step("open_ssh", cluster)

    async def close_ssh(self, cluster):
        await self._step("close_ssh", cluster)


class RecordingAgent:
    def __init__(self, log: List[str], fail: bool = False) -> None:
        self.log = log
        self.fail = fail

    async def install(self, cluster):
        self.log.append(f"{cluster.name}:install")
        if self.fail:
            raise InfrastructureError("init failed")

    async def uninstall(self, cluster):
        self.log.append(f"{cluster.name}:uninstall")

    async def handler_nodes(self, cluster):
        self.log.append(f"{cluster.name}:handler_nodes")


def steps(log: List[str]) -> List[str]:
    return [entry.split(":")[1] for entry in log if not entry.endswith(":end")]


def facade(settings, log, *, slow=False, agent_fails=False):
    return InfrastructureFacade(
        settings,
        factories={
            provider: (lambda s, p=provider: RecordingReconciler(s, log, p, slow))
            for provider in Provider
        },
        agent_factory=lambda s: RecordingAgent(log, agent_fails),
    )


@pytest.fixture
def log() -> List[str]:
    return []


@pytest.fixture
def cluster() -> Cluster:
    return Cluster(name="demo", provider=Provider.ALICLOUD)


async def test_basic_resources_fetch_zones_when_missing(settings, log, cluster):
    await facade(settings, log).manage_cloud_basic_resource(cluster)

    assert steps(log) == ["connect", "zones", "network", "key_pair"]


async def test_basic_resources_reuse_registered_zones(settings, log, cluster):
    cluster.cloud_resources.add(CloudResource(type=ResourceType.AVAILABILITY_ZONES, ref_id="z-1"))

    await facade(settings, log).manage_cloud_basic_resource(cluster)

    assert steps(log) == ["connect", "network", "key_pair"]


async def test_delete_basic_resources(settings, log, cluster):
    await facade(settings, log).delete_cloud_basic_resource(cluster)

    assert steps(log) == ["connect", "delete_network", "delete_key_pair"]


async def test_node_resources_order(settings, log, cluster):
    await facade(settings, log).manage_node_resource(cluster)

    assert steps(log) == ["connect", "security_group", "instances", "slb"]


async def test_install_closes_ssh_on_failure(settings, log, cluster):
    with pytest.raises(InfrastructureError):
        await facade(settings, log, agent_fails=True).install(cluster)

    assert steps(log) == ["connect", "open_ssh", "install", "close_ssh"]


async def test_node_handling_goes_to_agent(settings, log, cluster):
    api = facade(settings, log)
    await api.uninstall(cluster)
    await api.handler_nodes(cluster)

    assert log == ["demo:uninstall", "demo:handler_nodes"]


async def test_get_zones_skips_bare_metal(settings, log):
    lab = Cluster(name="lab", provider=Provider.BAREMETAL)

    assert await facade(settings, log).get_zones(lab) == []
    assert log == []


async def test_get_regions_accepts_provider_name(settings, log):
    regions = await facade(settings, log).get_regions("aws", "AKIA", "secret")

    assert [region.ref_id for region in regions] == ["r-1"]
    assert log == ["regions:AKIA"]


async def test_unknown_provider(settings, log):
    api = InfrastructureFacade(settings, factories={})

    with pytest.raises(InfrastructureError):
        await api.get_regions(Provider.AWS, "id", "key")
    with pytest.raises(ValueError):
        api.reconciler("gcp")


async def test_default_factories_cover_every_provider(settings):
    api = InfrastructureFacade(settings)

    assert set(api.factories) == set(Provider)
    assert api.reconciler(Provider.BAREMETAL).provider == Provider.BAREMETAL


async def test_passes_on_one_cluster_are_serialized(settings, log, cluster):
    api = facade(settings, log, slow=True)

    await asyncio.gather(api.manage_node_resource(cluster), api.manage_node_resource(cluster))

    first_pass = log[: len(log) // 2]
    assert first_pass[-1] == "demo:slb:end"
    assert all(entry.startswith("demo:") for entry in log)
    assert steps(log) == ["connect", "security_group", "instances", "slb"] * 2


async def test_different_clusters_run_concurrently(settings, log, cluster):
    other = Cluster(name="other", provider=Provider.AWS)
    api = facade(settings, log, slow=True)

    await asyncio.gather(api.manage_node_resource(cluster), api.manage_node_resource(other))

    first_other = next(i for i, entry in enumerate(log) if entry.startswith("other:"))
    last_demo = max(i for i, entry in enumerate(log) if entry.startswith("demo:"))
    assert first_other < last_demo


async def test_cluster_locks_are_released_after_passes(settings, log, cluster):
    api = facade(settings, log, slow=True, agent_fails=True)

    await asyncio.gather(api.manage_node_resource(cluster), api.manage_node_resource(cluster))
    with pytest.raises(InfrastructureError):
        await api.install(cluster)

    assert api._locks == {}
