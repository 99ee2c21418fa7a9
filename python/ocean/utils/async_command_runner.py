"""
ocean/utils/async_command_runner.py

Runs local commands (ssh, scp, ...) in a subprocess with retries.

Usage example:
    from ocean.utils.async_command_runner import run_command, CommandError

    try:
        output = await run_command(["ssh", "-V"], retries=1)
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import os
import asyncio
from typing import Dict, List, Optional

from ocean.utils.async_retry import async_retry


class CommandError(Exception):
    """A local or remote command failed.

    Attributes:
        return_code (Optional[int]): The exit code, when the process ran at all.
    """

    def __init__(self, message: str, return_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.return_code = return_code


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
) -> str:
    """
    Execute a local command asynchronously and return its stdout.

    When `sensitive=True` the command line, stdout and stderr are left out of
    the raised error, since they may carry keys or cluster secrets.

    Args:
        command: The command and its arguments.
        sensitive: Hide command details in the raised error.
        env: Extra environment variables layered over the current environment.
        cwd: Working directory.
        input_data: Text passed to stdin.
        successful_return_codes: Exit codes treated as success. Defaults to [0].
        retries: Total attempts. Defaults to 3.
        retry_delay: Seconds between attempts. Defaults to 1.0.

    Returns:
        str: Stripped stdout.

    Raises:
        CommandError: If every attempt ends with an unexpected exit code.
    """
    ok_codes = successful_return_codes if successful_return_codes is not None else [0]

    @async_retry(retries=retries, delay=retry_delay, noisy=retries > 1, retry_on=(CommandError,))
    async def _run_once() -> str:
        proc_env = None
        if env:
            proc_env = os.environ.copy()
            proc_env.update(env)

        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=proc_env,
            cwd=cwd,
        )
        stdout_bytes, stderr_bytes = await proc.communicate(
            input=input_data.encode() if input_data else None
        )
        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = stderr_bytes.decode(errors="replace").strip()

        if proc.returncode not in ok_codes:
            detail = ""
            if not sensitive:
                detail = (
                    f"\nCommand: {' '.join(command)}"
                    f"\nStdout: {stdout_str}"
                    f"\nStderr: {stderr_str}"
                )
            raise CommandError(
                f"Command failed with return code {proc.returncode}.{detail}",
                proc.returncode,
            )
        return stdout_str

    return await _run_once()
