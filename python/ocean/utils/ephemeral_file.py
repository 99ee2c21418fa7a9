"""
ocean/utils/ephemeral_file.py

Async context manager yielding a path inside a throwaway directory in `/dev/shm`,
so SSH private keys and pinned known_hosts never touch persistent disk.
"""

import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator


@asynccontextmanager
async def ephemeral_path(
    file_name: str,
    *,
    prefix: str = "ocean-",
    parent_dir: str = "/dev/shm",
) -> AsyncGenerator[str, None]:
    """
    Yield `<tmpdir>/<file_name>` and remove the whole directory on exit.

    Args:
        file_name: Name of the file inside the ephemeral directory. The file is
            not created; the caller writes it.
        prefix: Prefix of the ephemeral directory name.
        parent_dir: Where the directory is created. Falls back to the system
            temp dir when it does not exist (e.g. macOS).

    Yields:
        str: The file path.
    """
    if not os.path.isdir(parent_dir):
        parent_dir = tempfile.gettempdir()
    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir, prefix=prefix)
    try:
        yield os.path.join(ephemeral_dir, file_name)
    finally:
        shutil.rmtree(ephemeral_dir, ignore_errors=True)
