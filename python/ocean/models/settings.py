# ocean/models/settings.py

from pydantic_settings import BaseSettings, SettingsConfigDict


class OceanSettings(BaseSettings):
    """
    Runtime knobs for the infrastructure engine.
    Every field maps to an environment variable prefixed with `OCEAN_`,
    e.g. `OCEAN_TIMEOUT_COUNT=20` or `OCEAN_SHELL_DIR=/opt/ocean/shell`.
    """

    model_config = SettingsConfigDict(env_prefix="OCEAN_")

    # Local directories shipped to bare-metal nodes
    resource_dir: str = "resource"
    shell_dir: str = "shell"

    # Bounded waits: timeout_count attempts spaced timeout_seconds apart
    timeout_count: int = 10
    timeout_seconds: float = 5.0
    instance_timeout_seconds: float = 300.0  # provider waiter budget per instance
    settle_seconds: float = 5.0

    discovery_concurrency: int = 10
    ssh_port: int = 22

    aws_default_region: str = "us-east-1"
    alicloud_default_region: str = "cn-hangzhou"

    default_image_repo: str = "registry.k8s.io"
    alicloud_image_repo: str = "registry.aliyuncs.com/google_containers"

    def instance_wait_attempts(self, count: int) -> int:
        """Poll budget for `count` instances reaching a state, per-instance timeout scaled."""
        if self.timeout_seconds <= 0:
            return max(1, self.timeout_count)
        budget = self.instance_timeout_seconds * max(1, count)
        return max(1, int(budget // self.timeout_seconds))
