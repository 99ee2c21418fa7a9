"""
ocean/utils/ssh.py

SSH and SCP against cluster nodes using the system `ssh`/`scp` binaries, with the
private key and pinned known_hosts written to ephemeral files in /dev/shm:
  - ssh_get_server_key: handshake with accept-new to fetch host keys (TOFU).
  - run_ssh_command: run a remote command with strict host-key checking.
  - scp_upload: copy a local file or directory to the node.
"""

from __future__ import annotations

import os
import shlex
import aiofiles
import aiofiles.ospath
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, List, Optional, Tuple

from ocean.models.ssh import SSHConfig
from ocean.utils.async_command_runner import run_command, CommandError
from ocean.utils.ephemeral_file import ephemeral_path


@asynccontextmanager
async def _ssh_options(
    ssh_config: SSHConfig, *, strict: bool = True
) -> AsyncGenerator[Tuple[List[str], str], None]:
    """
    Write the key (and pinned host keys in strict mode) to ephemeral files and
    yield the `-i`/`-o` options shared by ssh and scp, together with the
    known_hosts path (read back after an `accept-new` handshake).
    """
    async with ephemeral_path("ssh_known_hosts", prefix="sshkh-") as kh_path:
        async with ephemeral_path("ssh_idkey", prefix="sshpk-") as pk_path:
            async with aiofiles.open(pk_path, "wb") as fpk:
                await fpk.write(ssh_config.private_key.encode("utf-8"))
            os.chmod(pk_path, 0o600)

            if strict:
                async with aiofiles.open(kh_path, "w", encoding="utf-8") as fkh:
                    for line in ssh_config.host_keys or []:
                        await fkh.write(line + "\n")

            options = [
                "-i",
                pk_path,
                "-o",
                "BatchMode=yes",
                "-o",
                f"StrictHostKeyChecking={'yes' if strict else 'accept-new'}",
                "-o",
                f"UserKnownHostsFile={kh_path}",
                "-o",
                "GlobalKnownHostsFile=/dev/null",
                "-o",
                "ConnectTimeout=10",
            ]
            yield options, kh_path


async def ssh_get_server_key(
    cfg: SSHConfig,
    *,
    retries: int = 3,
    retry_delay: float = 1.0,
) -> List[str]:
    """
    Connect once with StrictHostKeyChecking=accept-new and return the host key
    lines the server presented.

    Raises:
      CommandError: if the handshake fails or no host keys were recorded.
    """
    async with _ssh_options(cfg, strict=False) as (options, kh_path):
        await run_command(
            ["ssh", "-p", str(cfg.port), *options, cfg.target, "exit", "0"],
            retries=retries,
            retry_delay=retry_delay,
        )

        lines: List[str] = []
        if await aiofiles.ospath.exists(kh_path):
            async with aiofiles.open(kh_path, "r", encoding="utf-8") as fkh:
                content = await fkh.readlines()
                lines = [ln.strip() for ln in content if ln.strip()]

        if not lines:
            raise CommandError(
                f"ssh_get_server_key found no host keys for {cfg.hostname}."
            )
        return lines


async def run_ssh_command(
    ssh_config: SSHConfig,
    remote_command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    successful_return_codes: Optional[List[int]] = None,
) -> str:
    """
    Run a command on the node with strict host-key checking.

    The tokens of `remote_command` are shell-quoted individually, so pass
    ["sh", "-c", "..."] when the remote side must expand variables or pipes.

    Args:
      ssh_config: Must carry host_keys.
      remote_command: The remote command tokens.
      sensitive: Hide command and output on error.
      env: Environment variables prefixed with `env` on the remote side.
      retries: Total attempts.
      retry_delay: Seconds between attempts.
      successful_return_codes: Exit codes treated as success. Defaults to [0].

    Returns:
      Stripped stdout of the remote command.

    Raises:
      CommandError: if host_keys is empty or the command fails.
    """
    if not ssh_config.host_keys:
        raise CommandError("run_ssh_command requires non-empty host_keys.")

    if env:
        remote_command = ["env"] + [f"{k}={v}" for k, v in env.items()] + remote_command
    cmd_str = " ".join(shlex.quote(x) for x in remote_command)

    async with _ssh_options(ssh_config) as (options, _):
        return await run_command(
            ["ssh", "-p", str(ssh_config.port), *options, ssh_config.target, cmd_str],
            sensitive=sensitive,
            retries=retries,
            retry_delay=retry_delay,
            successful_return_codes=successful_return_codes,
        )


async def scp_upload(
    ssh_config: SSHConfig,
    local_path: str,
    remote_path: str,
    *,
    retries: int = 3,
    retry_delay: float = 1.0,
) -> None:
    """
    Copy a local file or directory (recursively) to `remote_path` on the node.

    Raises:
      CommandError: if host_keys is empty, the local path is missing, or scp fails.
    """
    if not ssh_config.host_keys:
        raise CommandError("scp_upload requires non-empty host_keys.")
    if not await aiofiles.ospath.exists(local_path):
        raise CommandError(f"scp_upload source {local_path} does not exist.")

    recursive = ["-r"] if await aiofiles.ospath.isdir(local_path) else []
    async with _ssh_options(ssh_config) as (options, _):
        await run_command(
            [
                "scp",
                "-P",
                str(ssh_config.port),
                *recursive,
                *options,
                local_path,
                f"{ssh_config.target}:{remote_path}",
            ],
            retries=retries,
            retry_delay=retry_delay,
        )
