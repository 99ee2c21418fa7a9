import json

import pytest
import yaml

from ocean.infrastructure.scripts import (
    CLOUD_INSTALL_SHELL,
    cluster_json,
    cluster_yaml,
    render_install_script,
)
from ocean.models.cluster import Cluster, Provider


@pytest.fixture
def cluster():
    return Cluster(
        name="demo",
        provider=Provider.AWS,
        access_id="AKIA",
        access_key="secret-key",
        private_key="-----BEGIN KEY-----",
    )


def test_serialized_cluster_has_no_secrets(cluster):
    as_json = json.loads(cluster_json(cluster))
    as_yaml = yaml.safe_load(cluster_yaml(cluster))

    for data in (as_json, as_yaml):
        assert data["name"] == "demo"
        assert data["access_id"] == "AKIA"
        assert "access_key" not in data
        assert "private_key" not in data


async def test_render_install_script(tmp_path, cluster):
    (tmp_path / CLOUD_INSTALL_SHELL).write_text(
        "#!/bin/bash\ncat > /tmp/cluster.json <<'EOF'\n${cluster_json}\nEOF\necho $HOME\n"
    )

    script = await render_install_script(str(tmp_path), cluster)

    assert '"name":"demo"' in script
    assert "secret-key" not in script
    assert "echo $HOME" in script


async def test_render_install_script_missing_template(tmp_path, cluster):
    with pytest.raises(FileNotFoundError):
        await render_install_script(str(tmp_path), cluster)
