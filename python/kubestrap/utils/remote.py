"""
kubestrap/utils/remote.py

The remote-execution channel used by every stage after readiness:
  - RemoteExecutor: abstract "run argv on node X" / "copy file from node X"
  - SSHExecutor: OpenSSH implementation. Host keys are trusted on first use
    once per node and pinned for every later command of the run.

Stages always name the node they act on, so running a control-plane command
from a worker's join is an explicit call, not a context switch.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Union

from kubestrap.models.cluster import ProvisionedNode
from kubestrap.models.ssh import SSHConfig
from kubestrap.utils.ssh import run_ssh_command, scp_from_remote, ssh_get_server_key

logger = logging.getLogger(__name__)


class RemoteExecutor(ABC):
    """Runs commands on, and copies files from, a provisioned node."""

    @abstractmethod
    async def run(
        self,
        node: ProvisionedNode,
        command: List[str],
        *,
        input_data: Optional[Union[str, bytes]] = None,
        sensitive: bool = True,
        error_parser: Optional[Callable[[str], Optional[str]]] = None,
    ) -> str:
        """
        Run `command` on `node` and return its stripped stdout.

        Raises:
            CommandError: If the command exits non-zero or cannot be run.
        """

    @abstractmethod
    async def fetch(self, node: ProvisionedNode, remote_path: str, local_path: str) -> None:
        """
        Copy `remote_path` from `node` to `local_path` on this host.

        Raises:
            CommandError: If the copy fails.
        """


class SSHExecutor(RemoteExecutor):
    """
    RemoteExecutor over OpenSSH, addressing nodes by their external address.

    Args:
        user: Login user on every node.
        private_key: PEM/OpenSSH private key contents (never written outside
            ephemeral files).
        port: SSH port.
        retries: Total attempts per command. Bootstrap steps default to a
            single attempt; failures are surfaced, not retried.
        tofu_retries: Attempts for the first host-key handshake.
    """

    def __init__(
        self,
        user: str,
        private_key: str,
        *,
        port: int = 22,
        retries: int = 1,
        tofu_retries: int = 5,
    ) -> None:
        self.user = user
        self.private_key = private_key
        self.port = port
        self.retries = retries
        self.tofu_retries = tofu_retries
        self._configs: Dict[str, SSHConfig] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def ssh_config_for(self, node: ProvisionedNode) -> SSHConfig:
        """Return the pinned SSHConfig for `node`, doing TOFU on first use."""
        lock = self._locks.setdefault(node.name, asyncio.Lock())
        async with lock:
            cached = self._configs.get(node.name)
            if cached is not None and cached.hostname == node.external_address:
                return cached

            cfg = SSHConfig(
                user=self.user,
                hostname=node.external_address,
                port=self.port,
                private_key=self.private_key,
            )
            cfg.host_keys = await ssh_get_server_key(cfg, retries=self.tofu_retries)
            logger.info(
                "Pinned %d host key(s) for %s (%s)",
                len(cfg.host_keys),
                node.name,
                node.external_address,
            )
            self._configs[node.name] = cfg
            return cfg

    async def run(
        self,
        node: ProvisionedNode,
        command: List[str],
        *,
        input_data: Optional[Union[str, bytes]] = None,
        sensitive: bool = True,
        error_parser: Optional[Callable[[str], Optional[str]]] = None,
    ) -> str:
        cfg = await self.ssh_config_for(node)
        return await run_ssh_command(
            cfg,
            command,
            sensitive=sensitive,
            input_data=input_data,
            retries=self.retries,
            error_parser=error_parser,
        )

    async def fetch(self, node: ProvisionedNode, remote_path: str, local_path: str) -> None:
        cfg = await self.ssh_config_for(node)
        await scp_from_remote(cfg, remote_path, local_path, retries=self.retries)
