"""
ocean/infrastructure/scripts.py

Names of the node shell scripts and helpers that serialize a Cluster for them.

The scripts themselves live in `OceanSettings.shell_dir` and are copied to
`~/<shell_dir>` on a node the first time they are needed.
"""

from __future__ import annotations

import os
import string

import aiofiles
import yaml

from ocean.models.cluster import Cluster

NODE_INIT_SHELL = "nodeinit.sh"
COMPONENT_SHELL = "component.sh"
SYSTEM_INFO_SHELL = "systeminfo.sh"
CLUSTER_INSTALL_SHELL = "clusterinstall.sh"
INSTALL_SHELL = "install.sh"
CLOUD_INSTALL_SHELL = "cloud-copilot-install.sh"
KUBEADM_CA_TOKEN_SHELL = "kubeadm-catoken.sh"

CLUSTER_INIT_ACTION = "init"
CLUSTER_JOIN_ACTION = "join"
CLUSTER_CONTROLLER = "controller"
GET_CA_HASH = "get-ca-hash"
GET_TOKEN = "get-token"


def cluster_json(cluster: Cluster) -> str:
    """Cluster as JSON without cloud credentials or the private key."""
    return cluster.model_dump_json(exclude={"access_key", "private_key"})


def cluster_yaml(cluster: Cluster) -> str:
    data = cluster.model_dump(mode="json", exclude={"access_key", "private_key"})
    return yaml.safe_dump(data, sort_keys=False)


async def render_install_script(shell_dir: str, cluster: Cluster) -> str:
    """
    Render `cloud-copilot-install.sh` with the cluster JSON substituted for
    `${cluster_json}`. The result is attached as user data to master instances
    so they register themselves on first boot.

    Raises:
        FileNotFoundError: If the template is missing from `shell_dir`.
    """
    path = os.path.join(shell_dir, CLOUD_INSTALL_SHELL)
    async with aiofiles.open(path, "r", encoding="utf-8") as fh:
        template = await fh.read()
    return string.Template(template).safe_substitute(cluster_json=cluster_json(cluster))
