"""
ocean/infrastructure/baremetal.py

Node-level cluster work over SSH, shared by every provider:
  - discovery: probe an IP range with `systeminfo.sh` and group the answers
    into node groups (bare metal only);
  - install: ship resources and scripts, run node init and component install,
    then `clusterinstall.sh init` on the master and `join` everywhere else;
  - node handling: join pending nodes, reset and drop deleting nodes.

Scripts are copied to `~/<shell_dir>` on first use and run as
`sudo bash <script> args...`. Host keys are fetched trust-on-first-use once
per host and pinned for every later command.
"""

from __future__ import annotations

import asyncio
import logging
import os
import posixpath
import shlex
from typing import Dict, List, Optional

import aiofiles.os
import aiofiles.ospath

from ocean.infrastructure.catalog import bare_metal_arch, bare_metal_gpu_spec
from ocean.infrastructure.errors import InfrastructureError, MissingResourceError
from ocean.infrastructure.reconciler import ProviderReconciler
from ocean.infrastructure.scripts import (
    CLUSTER_CONTROLLER,
    CLUSTER_INIT_ACTION,
    CLUSTER_INSTALL_SHELL,
    CLUSTER_JOIN_ACTION,
    COMPONENT_SHELL,
    GET_CA_HASH,
    GET_TOKEN,
    INSTALL_SHELL,
    KUBEADM_CA_TOKEN_SHELL,
    NODE_INIT_SHELL,
    SYSTEM_INFO_SHELL,
    cluster_json,
    cluster_yaml,
)
from ocean.models.cluster import (
    Cluster,
    ClusterStatus,
    Node,
    NodeGroup,
    NodeGroupType,
    NodeRole,
    NodeStatus,
    Provider,
)
from ocean.models.compute import ImageInfo, InstanceTypeInfo, SystemInfo
from ocean.models.resources import CloudResource, ResourceType
from ocean.models.settings import OceanSettings
from ocean.models.ssh import SSHConfig
from ocean.models.validator import validate_json
from ocean.utils.async_command_runner import CommandError
from ocean.utils.cidr import range_ips
from ocean.utils.ssh import run_ssh_command, scp_upload, ssh_get_server_key

logger = logging.getLogger(__name__)

_RESET_STEPS = [
    ["kubeadm reset --force"],
    ["rm -rf $HOME/.kube", "rm -rf /etc/kubernetes", "rm -rf /etc/cni"],
    ["systemctl stop containerd", "systemctl disable containerd", "rm -rf /var/lib/containerd"],
    ["systemctl stop kubelet", "systemctl disable kubelet", "rm -rf /var/lib/kubelet"],
]

# sudo binds to a single command, so every link of a chain carries its own.
RESET_COMMANDS = [" && ".join(f"sudo {cmd}" for cmd in step) for step in _RESET_STEPS]


def _dir_name(path: str) -> str:
    return os.path.basename(os.path.normpath(path))


class BareMetalAgent:
    """Runs the node scripts for one cluster."""

    def __init__(self, settings: OceanSettings) -> None:
        self.settings = settings
        self._host_keys: Dict[str, List[str]] = {}
        self._homes: Dict[str, str] = {}

    # --------------------------
    # SSH plumbing
    # --------------------------
    async def ssh_config(self, cluster: Cluster, host: str, user: str) -> SSHConfig:
        """SSHConfig for `host`, fetching and caching its host keys on first contact."""
        if not cluster.private_key:
            raise InfrastructureError("private key is required for node access")
        config = SSHConfig(
            user=user or cluster.username,
            hostname=host,
            port=self.settings.ssh_port,
            private_key=cluster.private_key,
        )
        if host not in self._host_keys:
            self._host_keys[host] = await ssh_get_server_key(config)
        return config.model_copy(update={"host_keys": self._host_keys[host]})

    async def run(self, ssh: SSHConfig, command: str, *, retries: int = 3) -> str:
        return await run_ssh_command(ssh, ["sh", "-c", command], retries=retries)

    async def user_home(self, ssh: SSHConfig) -> str:
        if ssh.target not in self._homes:
            self._homes[ssh.target] = await self.run(ssh, "echo $HOME")
        return self._homes[ssh.target]

    async def exec_shell(self, ssh: SSHConfig, script: str, *args: str, retries: int = 3) -> str:
        """
        Run `script` from the local shell directory on the node with sudo,
        copying it into `~/<shell_dir>` first if it is not there yet.

        Returns:
            The script's stdout.

        Raises:
            CommandError: If the copy or the script fails.
        """
        home = await self.user_home(ssh)
        remote_dir = posixpath.join(home, _dir_name(self.settings.shell_dir))
        remote_script = posixpath.join(remote_dir, script)

        await run_ssh_command(ssh, ["mkdir", "-p", remote_dir], retries=retries)
        present = await self.run(
            ssh,
            f"test -f {shlex.quote(remote_script)} && echo yes || echo no",
            retries=retries,
        )
        if present != "yes":
            await scp_upload(
                ssh, os.path.join(self.settings.shell_dir, script), remote_script, retries=retries
            )
        return await run_ssh_command(
            ssh, ["sudo", "bash", remote_script, *args], retries=retries
        )

    async def migrate_resources(self, ssh: SSHConfig) -> None:
        """Ship the resource bundle into `~/<resource_dir>` unless it is already populated."""
        home = await self.user_home(ssh)
        remote = posixpath.join(home, _dir_name(self.settings.resource_dir))
        count = await self.run(ssh, f"ls {shlex.quote(remote)} 2>/dev/null | wc -l")
        if int(count.strip() or 0) > 0:
            return
        await scp_upload(ssh, self.settings.resource_dir, home)
        logger.info("resources copied to %s:%s", ssh.hostname, remote)

    # --------------------------
    # Discovery
    # --------------------------
    async def probe(self, cluster: Cluster, ip: str) -> Optional[SystemInfo]:
        """System info of one host, or None when it cannot be reached or parsed."""
        try:
            ssh = await self.ssh_config(cluster, ip, cluster.username)
            output = await self.exec_shell(ssh, SYSTEM_INFO_SHELL, retries=1)
            info = validate_json(output, SystemInfo)
        except (CommandError, ValueError) as exc:
            logger.warning("node %s did not answer the system probe: %s", ip, exc)
            return None
        return info.model_copy(update={"ip": ip})

    async def get_nodes_system_info(self, cluster: Cluster) -> None:
        """
        Probe every address of the cluster's IP range that is not yet a known
        node, plus known nodes still in NODE_FINDING, at most
        `discovery_concurrency` at a time. Answers are grouped into node groups
        by (os, arch, memory, cpu, gpu, gpu model); NODE_FINDING nodes that do
        not answer are dropped.
        """
        finding_nodes = [node for node in cluster.nodes if node.status == NodeStatus.NODE_FINDING]
        finding = {node.ip: node for node in finding_nodes if node.ip}
        known = {node.ip for node in cluster.nodes}
        targets = [ip for ip in range_ips(cluster.node_start_ip, cluster.node_end_ip) if ip not in known]
        targets += list(finding)

        semaphore = asyncio.Semaphore(self.settings.discovery_concurrency)

        async def bounded(ip: str) -> Optional[SystemInfo]:
            async with semaphore:
                return await self.probe(cluster, ip)

        results = await asyncio.gather(*(bounded(ip) for ip in targets))
        answers = {info.ip: info for info in results if info is not None}

        for node in finding_nodes:
            if node.ip not in answers:
                logger.warning("node %s (%s) dropped, no system info", node.name, node.ip)
                cluster.nodes.remove(node)

        groups: Dict[str, NodeGroup] = {}
        for ip in targets:
            info = answers.get(ip)
            if info is None:
                continue
            group = groups.get(info.group_key())
            if group is None:
                group = self._node_group(cluster, info)
                groups[info.group_key()] = group

            node = finding.get(ip)
            if node is None:
                node = Node(role=NodeRole.WORKER)
                cluster.nodes.append(node)
            node.status = NodeStatus.NODE_PENDING
            node.name = info.id or ip
            node.ip = ip
            node.user = cluster.username
            node.system_disk_size = info.disk
            node.node_group_id = group.id

        counts = cluster.group_summary()
        for group in groups.values():
            size = counts.get(group.id, 0)
            group.target_size = group.min_size = group.max_size = size
        logger.info("discovered %d nodes in %d groups", len(answers), len(groups))

    @staticmethod
    def _node_group(cluster: Cluster, info: SystemInfo) -> NodeGroup:
        arch = bare_metal_arch(info.arch)
        gpu_spec = bare_metal_gpu_spec(info.gpu_info)
        for group in cluster.node_groups:
            if (
                group.os == info.os
                and group.arch == arch
                and group.cpu == info.cpu
                and group.memory == info.mem
                and group.gpu == info.gpu
                and group.gpu_spec == gpu_spec
            ):
                return group
        group = NodeGroup(
            name=f"group-{info.arch}-{info.cpu}-{info.mem}",
            type=NodeGroupType.GPU_ACCELERATED if info.gpu > 0 else NodeGroupType.NORMAL,
            os=info.os,
            arch=arch,
            cpu=info.cpu,
            memory=info.mem,
            gpu=info.gpu,
            gpu_spec=gpu_spec,
        )
        cluster.node_groups.append(group)
        return group

    # --------------------------
    # Install
    # --------------------------
    def image_repo(self, cluster: Cluster) -> str:
        if cluster.image_repo:
            return cluster.image_repo
        if cluster.provider == Provider.ALICLOUD:
            return self.settings.alicloud_image_repo
        return self.settings.default_image_repo

    async def kubernetes_version(self, cluster: Cluster) -> str:
        """The cluster's version, else the newest one shipped in the resource bundle."""
        if cluster.kubernetes_version:
            return cluster.kubernetes_version
        versions_dir = os.path.join(self.settings.resource_dir, "arm64", "kubernetes")
        if not await aiofiles.ospath.isdir(versions_dir):
            return ""
        versions = sorted(await aiofiles.os.listdir(versions_dir))
        return versions[-1] if versions else ""

    async def master_ssh(self, cluster: Cluster) -> SSHConfig:
        masters = cluster.masters()
        if not masters:
            raise InfrastructureError("no master node found")
        master = masters[0]
        host = master.ip
        if cluster.provider.is_cloud:
            lb = cluster.cloud_resources.get_single(ResourceType.LOAD_BALANCER)
            if lb is None:
                raise MissingResourceError("load balancer not found")
            host = lb.value
        return await self.ssh_config(cluster, host, master.user)

    async def node_install_init(self, cluster: Cluster, ssh: SSHConfig, node: Node) -> None:
        await self.migrate_resources(ssh)
        await self.exec_shell(ssh, NODE_INIT_SHELL, node.name or node.ip)
        home = await self.user_home(ssh)
        await self.exec_shell(
            ssh,
            COMPONENT_SHELL,
            posixpath.join(home, _dir_name(self.settings.resource_dir)),
            self.image_repo(cluster),
            await self.kubernetes_version(cluster),
        )

    async def install(self, cluster: Cluster) -> None:
        """Bootstrap the first master, then join every other node in order."""
        ssh = await self.master_ssh(cluster)
        master = cluster.masters()[0]
        await self.node_install_init(cluster, ssh, master)
        await self.exec_shell(ssh, CLUSTER_INSTALL_SHELL, CLUSTER_INIT_ACTION, cluster_yaml(cluster))
        master.status = NodeStatus.NODE_RUNNING
        logger.info("cluster %s initialized on %s", cluster.name, ssh.hostname)

        for node in cluster.nodes:
            if node is master or node.status in (NodeStatus.NODE_RUNNING, NodeStatus.NODE_DELETING):
                continue
            await self.join_cluster(cluster, node)

    async def pre_install(self, cluster: Cluster) -> None:
        """Hand the serialized cluster to the master so it registers itself (STARTING only)."""
        if cluster.status != ClusterStatus.STARTING:
            return
        ssh = await self.master_ssh(cluster)
        await self.exec_shell(ssh, INSTALL_SHELL, cluster_json(cluster))

    async def join_cluster(self, cluster: Cluster, node: Node) -> None:
        """
        Prepare `node` and join it with a fresh token and CA hash from the
        master. Masters join with the `controller` flag.
        """
        master_ssh = await self.master_ssh(cluster)
        ca_hash = await self.exec_shell(master_ssh, KUBEADM_CA_TOKEN_SHELL, GET_CA_HASH)
        token = await self.exec_shell(master_ssh, KUBEADM_CA_TOKEN_SHELL, GET_TOKEN)

        ssh = await self.ssh_config(cluster, node.ip, node.user)
        await self.node_install_init(cluster, ssh, node)
        args = [CLUSTER_JOIN_ACTION, cluster_yaml(cluster), token, ca_hash]
        if node.role == NodeRole.MASTER:
            args.append(CLUSTER_CONTROLLER)
        await self.exec_shell(ssh, CLUSTER_INSTALL_SHELL, *args)
        node.status = NodeStatus.NODE_RUNNING
        logger.info("node %s (%s) joined cluster %s", node.name, node.ip, cluster.name)

    async def reset_node(self, cluster: Cluster, node: Node) -> None:
        ssh = await self.ssh_config(cluster, node.ip, node.user)
        for command in RESET_COMMANDS:
            await self.run(ssh, command)
        logger.info("node %s (%s) reset", node.name, node.ip)

    async def handler_nodes(self, cluster: Cluster) -> None:
        """Join NODE_PENDING/NODE_CREATING nodes; reset and drop NODE_DELETING nodes."""
        for node in list(cluster.nodes):
            if node.status in (NodeStatus.NODE_PENDING, NodeStatus.NODE_CREATING):
                await self.join_cluster(cluster, node)
            elif node.status == NodeStatus.NODE_DELETING:
                await self.reset_node(cluster, node)
                cluster.nodes.remove(node)

    async def uninstall(self, cluster: Cluster) -> None:
        for node in cluster.nodes:
            await self.reset_node(cluster, node)


class BareMetalReconciler(ProviderReconciler):
    """No cloud resources to manage; node work goes to the BareMetalAgent."""

    provider = Provider.BAREMETAL

    def __init__(self, settings: OceanSettings, agent: Optional[BareMetalAgent] = None) -> None:
        super().__init__(settings)
        self.agent = agent or BareMetalAgent(settings)

    async def connect(self, cluster: Cluster) -> None:
        return None

    async def get_regions(self, access_id: str, access_key: str) -> List[CloudResource]:
        return []

    async def get_zones(self, cluster: Cluster) -> List[CloudResource]:
        return []

    async def create_network(self, cluster: Cluster) -> None:
        return None

    async def import_key_pair(self, cluster: Cluster) -> None:
        return None

    async def manage_security_group(self, cluster: Cluster) -> None:
        return None

    async def manage_instance(self, cluster: Cluster) -> None:
        await self.agent.pre_install(cluster)

    async def manage_slb(self, cluster: Cluster) -> None:
        return None

    async def delete_network(self, cluster: Cluster) -> None:
        return None

    async def delete_key_pair(self, cluster: Cluster) -> None:
        return None

    async def find_image(self, cluster: Cluster, node_group: NodeGroup) -> ImageInfo:
        raise InfrastructureError("bare metal nodes have no image catalog")

    async def find_instance_type(
        self, cluster: Cluster, node_group: NodeGroup
    ) -> List[InstanceTypeInfo]:
        return []

    async def get_nodes_system_info(self, cluster: Cluster) -> None:
        await self.agent.get_nodes_system_info(cluster)
