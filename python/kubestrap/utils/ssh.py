"""
kubestrap/utils/ssh.py

Provides high-level functions for SSH-related operations, leveraging ephemeral
known_hosts and private keys stored in /dev/shm. This includes:
  - ssh_get_server_key: minimal handshake to retrieve server host key (TOFU).
  - run_ssh_command: strict host-key-checking SSH (expects host_keys in SSHConfig).
  - scp_from_remote: strict host-key-checking copy of a remote file to local disk.

Remote commands are passed as argument lists and quoted token by token, so no
caller ever builds a shell string.
"""

from __future__ import annotations

import shlex
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, List, Optional, Tuple, Union

import aiofiles
import aiofiles.ospath

from kubestrap.models.ssh import SSHConfig
from kubestrap.utils.async_command_runner import run_command, CommandError
from kubestrap.utils.ephemeral_file import ephemeral_manager, ephemeral_secret_file


def _key_material(private_key: str) -> str:
    # OpenSSH refuses identity files without a trailing newline.
    return private_key if private_key.endswith("\n") else private_key + "\n"


def _ssh_options(pk_path: str, kh_path: str, strict: str) -> List[str]:
    return [
        "-i",
        pk_path,
        "-o",
        "BatchMode=yes",
        "-o",
        f"StrictHostKeyChecking={strict}",
        "-o",
        f"UserKnownHostsFile={kh_path}",
        "-o",
        "GlobalKnownHostsFile=/dev/null",
    ]


@asynccontextmanager
async def _strict_session(cfg: SSHConfig) -> AsyncGenerator[Tuple[str, str], None]:
    """Write the pinned known_hosts and the identity file; yield both paths."""
    if not cfg.host_keys:
        raise CommandError("strict SSH requires non-empty host_keys.")

    async with ephemeral_manager("ssh_known_hosts", prefix="sshkh-") as kh_path:
        async with aiofiles.open(kh_path, "w", encoding="utf-8") as fkh:
            for line in cfg.host_keys:
                await fkh.write(line + "\n")

        async with ephemeral_secret_file(
            "ssh_idkey", _key_material(cfg.private_key), prefix="sshpk-"
        ) as pk_path:
            yield pk_path, kh_path


async def ssh_get_server_key(
    cfg: SSHConfig,
    *,
    retries: int = 3,
    retry_delay: float = 1.0,
) -> List[str]:
    """
    Perform a minimal SSH handshake with StrictHostKeyChecking=accept-new
    to retrieve the server's host key lines (TOFU).

    Args:
      cfg: SSHConfig with user, hostname, port, private_key.
      retries: total attempts
      retry_delay: seconds between attempts

    Returns:
      A list of lines from ephemeral known_hosts (the server's keys).

    Raises:
      CommandError: if handshake fails or no host keys found
    """
    async with ephemeral_manager("ssh_known_hosts", prefix="sshkh-") as kh_path:
        async with ephemeral_secret_file(
            "ssh_idkey", _key_material(cfg.private_key), prefix="sshpk-"
        ) as pk_path:
            ssh_cmd = (
                ["ssh", "-p", str(cfg.port)]
                + _ssh_options(pk_path, kh_path, "accept-new")
                + [cfg.destination, "exit", "0"]
            )
            await run_command(ssh_cmd, retries=retries, retry_delay=retry_delay)

            lines: List[str] = []
            if await aiofiles.ospath.exists(kh_path):
                async with aiofiles.open(kh_path, "r", encoding="utf-8") as fkh:
                    content = await fkh.readlines()
                    lines = [ln.strip() for ln in content if ln.strip()]

            if not lines:
                raise CommandError(
                    "ssh_get_server_key found no lines; server key not retrieved."
                )
            return lines


async def run_ssh_command(
    ssh_config: SSHConfig,
    remote_command: List[str],
    *,
    sensitive: bool = True,
    input_data: Optional[Union[str, bytes]] = None,
    retries: int = 3,
    retry_delay: float = 1.0,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    Run an SSH command in strict host-key-checking mode, requiring host_keys in ssh_config.

    Args:
      ssh_config: Must have user, hostname, port, private_key, host_keys
      remote_command: The actual remote command tokens
      sensitive: If True, hides details on error
      input_data: optional data streamed to the remote command's stdin
      retries: total attempts
      retry_delay: seconds between attempts
      error_parser: short-message parser for stderr, see run_command

    Returns:
      captured stdout from the remote command

    Raises:
      CommandError: if host_keys empty or the command fails.
    """
    async with _strict_session(ssh_config) as (pk_path, kh_path):
        ssh_cmd = (
            ["ssh", "-p", str(ssh_config.port)]
            + _ssh_options(pk_path, kh_path, "yes")
            + [ssh_config.destination, " ".join(shlex.quote(x) for x in remote_command)]
        )
        return await run_command(
            ssh_cmd,
            sensitive=sensitive,
            input_data=input_data,
            retries=retries,
            retry_delay=retry_delay,
            error_parser=error_parser,
        )


async def scp_from_remote(
    ssh_config: SSHConfig,
    remote_path: str,
    local_path: str,
    *,
    retries: int = 3,
    retry_delay: float = 1.0,
) -> None:
    """
    Copy `remote_path` on the host to `local_path`, strict host-key checking.
    The remote file must be readable by the SSH user.
    """
    async with _strict_session(ssh_config) as (pk_path, kh_path):
        scp_cmd = (
            ["scp", "-q", "-P", str(ssh_config.port)]
            + _ssh_options(pk_path, kh_path, "yes")
            + [f"{ssh_config.destination}:{remote_path}", local_path]
        )
        await run_command(
            scp_cmd, sensitive=False, retries=retries, retry_delay=retry_delay
        )
