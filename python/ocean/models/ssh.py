# ocean/models/ssh.py

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List


class SSHConfig(BaseModel):
    """
    SSH connection details for one cluster node.
    If host_keys is empty => no pinned keys => the agent fetches them TOFU first.
    """

    user: str
    hostname: str
    port: int = Field(default=22, ge=1, le=65535)
    private_key: str
    host_keys: Optional[List[str]] = None  # known_hosts lines for hostname

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("private_key must be a non-empty string")
        return val

    @field_validator("user", "hostname")
    @classmethod
    def validate_not_blank(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("user and hostname must be non-empty strings")
        return val

    @property
    def target(self) -> str:
        return f"{self.user}@{self.hostname}"
