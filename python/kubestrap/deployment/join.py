"""
kubestrap/deployment/join.py

Joins workers to the control plane.

Control-plane side (explicitly run on the control-plane node):
  - pick its private address (first IPv4 inside the configured range)
  - mint a bootstrap token with `kubeadm token create`
  - read the cluster CA and compute the discovery hash locally
These are produced once per run, as a single shared task that every worker
awaits, so joining N workers mints one token rather than N.

Worker side:
  - `kubeadm join --token T <addr>:6443 --discovery-token-ca-cert-hash sha256:H`
  Re-joining an already joined node is left to kubeadm.

Each worker's join is independent: one failure never stops the others.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
from typing import Dict, List, Optional

from pydantic import SecretStr

from kubestrap.errors import JoinError
from kubestrap.models.cluster import ClusterJoinCredential, JoinTarget, ProvisionedNode
from kubestrap.utils.async_bounded import gather_bounded
from kubestrap.utils.async_command_runner import CommandError
from kubestrap.utils.pki import discovery_hash
from kubestrap.utils.remote import RemoteExecutor

logger = logging.getLogger(__name__)

CA_CERT_PATH = "/etc/kubernetes/pki/ca.crt"
TOKEN_RE = re.compile(r"\b([a-z0-9]{6}\.[a-z0-9]{16})\b")


def parse_token(output: str) -> str:
    """
    Extract the bootstrap token from `kubeadm token create` output.

    Raises:
        ValueError: If no token-shaped string is present.
    """
    match = TOKEN_RE.search(output)
    if match is None:
        raise ValueError("no bootstrap token found in kubeadm output")
    return match.group(1)


def first_address_in_range(addresses: List[str], cidr: str) -> Optional[str]:
    """First IPv4 address in `addresses` that falls inside `cidr`, or None."""
    network = ipaddress.ip_network(cidr, strict=False)
    for raw in addresses:
        try:
            addr = ipaddress.ip_address(raw)
        except ValueError:
            continue
        if addr.version == network.version and addr in network:
            return raw
    return None


class JoinCoordinator:
    """
    Produces the join target on the control-plane node and joins workers with it.

    Args:
        executor: Remote execution channel.
        control_plane: The control-plane node (target of every token/hash command).
        private_address_range: CIDR the control plane's join address must be in.
        api_server_port: Port workers join against.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        control_plane: ProvisionedNode,
        *,
        private_address_range: str = "10.0.0.0/8",
        api_server_port: int = 6443,
    ) -> None:
        self.executor = executor
        self.control_plane = control_plane
        self.private_address_range = private_address_range
        self.api_server_port = api_server_port
        self._target_task: Optional["asyncio.Task[JoinTarget]"] = None

    async def control_plane_address(self) -> str:
        output = await self.executor.run(
            self.control_plane, ["hostname", "-I"], sensitive=False
        )
        try:
            address = first_address_in_range(output.split(), self.private_address_range)
        except ValueError as exc:
            raise JoinError(
                f"invalid private address range: {exc}", node=self.control_plane.name
            ) from exc
        if address is None:
            raise JoinError(
                f"no address in {self.private_address_range} among {output.split()}",
                node=self.control_plane.name,
            )
        return address

    async def create_token(self) -> str:
        output = await self.executor.run(
            self.control_plane, ["sudo", "kubeadm", "token", "create"], sensitive=True
        )
        try:
            return parse_token(output)
        except ValueError as exc:
            raise JoinError(str(exc), node=self.control_plane.name) from exc

    async def ca_cert_hash(self) -> str:
        pem = await self.executor.run(
            self.control_plane, ["sudo", "cat", CA_CERT_PATH], sensitive=False
        )
        try:
            return discovery_hash(pem)
        except ValueError as exc:
            raise JoinError(
                f"{CA_CERT_PATH} is not a PEM certificate: {exc}",
                node=self.control_plane.name,
            ) from exc

    async def _produce_target(self) -> JoinTarget:
        try:
            address = await self.control_plane_address()
            token = await self.create_token()
            ca_hash = await self.ca_cert_hash()
        except CommandError as exc:
            raise JoinError(
                f"generating join credential failed: {exc}", node=self.control_plane.name
            ) from exc

        logger.info(
            "[%s] join credential ready (endpoint %s:%d)",
            self.control_plane.name,
            address,
            self.api_server_port,
        )
        return JoinTarget(
            control_plane_address=address,
            port=self.api_server_port,
            credential=ClusterJoinCredential(token=SecretStr(token), ca_cert_hash=ca_hash),
        )

    async def join_target(self) -> JoinTarget:
        """
        The run's join target. The first caller starts production; everyone
        (including later callers) awaits the same result or the same JoinError.
        """
        if self._target_task is None:
            self._target_task = asyncio.ensure_future(self._produce_target())
        return await asyncio.shield(self._target_task)

    @property
    def credential(self) -> Optional[ClusterJoinCredential]:
        task = self._target_task
        if task is None or not task.done() or task.cancelled() or task.exception():
            return None
        return task.result().credential

    async def join_worker(self, worker: ProvisionedNode) -> None:
        """
        Join one worker.

        Raises:
            JoinError: Naming the worker, if the credential is unavailable or
                kubeadm join fails.
        """
        try:
            target = await self.join_target()
        except JoinError as exc:
            raise JoinError(
                f"join credential unavailable: {exc}", node=worker.name
            ) from exc

        logger.info("[%s] joining %s", worker.name, target.endpoint)
        try:
            await self.executor.run(
                worker,
                [
                    "sudo",
                    "kubeadm",
                    "join",
                    "--token",
                    target.credential.token.get_secret_value(),
                    target.endpoint,
                    "--discovery-token-ca-cert-hash",
                    target.credential.discovery_hash,
                ],
                sensitive=True,
            )
        except CommandError as exc:
            raise JoinError(f"kubeadm join failed: {exc}", node=worker.name) from exc

    async def join_workers(
        self, workers: List[ProvisionedNode], *, limit: int = 8
    ) -> Dict[str, Optional[JoinError]]:
        """
        Join every worker concurrently. Every join is attempted regardless of
        the others' outcome.

        Returns:
            Worker name => None on success, or the JoinError it raised.
        """
        results = await gather_bounded(
            self.join_worker, workers, limit=limit, return_exceptions=True
        )
        outcome: Dict[str, Optional[JoinError]] = {}
        for worker, result in zip(workers, results):
            if isinstance(result, JoinError):
                logger.error("Join failed: %s", result)
                outcome[worker.name] = result
            elif isinstance(result, BaseException):
                raise result
            else:
                outcome[worker.name] = None
        return outcome
