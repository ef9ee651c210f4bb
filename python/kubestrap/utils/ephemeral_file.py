"""
kubestrap/utils/ephemeral_file.py

Async context managers for short-lived files in a memory-backed directory
(`/dev/shm` when available). Used for SSH private keys, pinned known_hosts and
Terraform variable files, so none of them outlive the command that needs them.
"""

import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import aiofiles


def _default_parent_dir() -> str:
    return "/dev/shm" if os.path.isdir("/dev/shm") else tempfile.gettempdir()


@asynccontextmanager
async def ephemeral_manager(
    single_file_name: str,
    *,
    prefix: str = "ephemeral-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Create a private ephemeral directory and yield the path of one file inside it.
    The file is not created; the caller writes it. Everything is removed on exit.

    Args:
        single_file_name: The ephemeral filename.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to place the ephemeral directory. Defaults to `/dev/shm`,
            falling back to the system temp dir on hosts without it.

    Yields:
        str: The ephemeral file path.
    """
    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir or _default_parent_dir(), prefix=prefix)
    try:
        yield os.path.join(ephemeral_dir, single_file_name)
    finally:
        shutil.rmtree(ephemeral_dir, ignore_errors=True)


@asynccontextmanager
async def ephemeral_secret_file(
    single_file_name: str,
    content: str,
    *,
    prefix: str = "ephemeral-",
    mode: int = 0o600,
) -> AsyncGenerator[str, None]:
    """
    Like ephemeral_manager, but writes `content` first and restricts permissions
    to `mode` (0600 by default, as ssh requires for identity files).
    """
    async with ephemeral_manager(single_file_name, prefix=prefix) as path:
        async with aiofiles.open(path, "w", encoding="utf-8") as fh:
            await fh.write(content)
        os.chmod(path, mode)
        yield path
