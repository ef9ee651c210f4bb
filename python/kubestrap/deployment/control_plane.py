"""
kubestrap/deployment/control_plane.py

Brings the single control-plane node to a running, usable state:

  Probe ──ok──────────────────────────► Running
    └─fail─► Uninitialized ─► Init ───► Running
  Running ─► ExportCredentials ─► InstallOverlay

The probe is the only source of truth about cluster state; nothing is assumed
from earlier runs. Init runs at most once per run and is never retried: a
half-initialized control plane needs a human to clean up (`kubeadm reset`).
"""

from __future__ import annotations

import logging
from typing import List, Optional

import aiofiles
import aiohttp

from kubestrap.errors import InitializationError, ManifestApplyError
from kubestrap.models.cluster import ControlPlaneState, ProvisionedNode
from kubestrap.models.settings import ManifestSource
from kubestrap.utils.async_command_runner import CommandError
from kubestrap.utils.manifests import ManifestFetchError, fetch_manifests
from kubestrap.utils.remote import RemoteExecutor

logger = logging.getLogger(__name__)

ADMIN_CONF = "/etc/kubernetes/admin.conf"
USER_KUBECONFIG = ".kube/config"  # relative to the SSH user's home


class ControlPlaneInitializer:
    """
    Probe/Init/ExportCredentials/InstallOverlay on one control-plane node.

    Args:
        executor: Remote execution channel.
        node: The control-plane node.
        pod_network_cidr: Passed to `kubeadm init --pod-network-cidr`.
        manifests: Overlay manifests, applied in order.
        manifest_dir: Local directory the manifests are downloaded into.
        session: Optional aiohttp session for the downloads.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        node: ProvisionedNode,
        *,
        pod_network_cidr: str = "192.168.0.0/16",
        manifests: Optional[List[ManifestSource]] = None,
        manifest_dir: str = "manifests",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.executor = executor
        self.node = node
        self.pod_network_cidr = pod_network_cidr
        self.manifests = manifests or []
        self.manifest_dir = manifest_dir
        self.session = session
        self.state: Optional[ControlPlaneState] = None

    async def probe(self) -> ControlPlaneState:
        """Ask the local API server for its nodes; any failure means uninitialized."""
        try:
            await self.executor.run(
                self.node,
                ["sudo", "kubectl", "--kubeconfig", ADMIN_CONF, "get", "nodes"],
                sensitive=True,
            )
        except CommandError as exc:
            # Expected on a fresh node.
            logger.debug("[%s] cluster probe failed (%s)", self.node.name, exc)
            self.state = ControlPlaneState.uninitialized
        else:
            self.state = ControlPlaneState.running
        logger.info("[%s] control plane is %s", self.node.name, self.state.value)
        return self.state

    async def init(self) -> ControlPlaneState:
        """
        Run `kubeadm init` if, and only if, the probe found no cluster.

        Raises:
            InitializationError: If kubeadm init fails.
        """
        if self.state is None:
            await self.probe()
        if self.state == ControlPlaneState.running:
            return self.state

        logger.info(
            "[%s] initializing control plane (pod network %s)",
            self.node.name,
            self.pod_network_cidr,
        )
        try:
            await self.executor.run(
                self.node,
                [
                    "sudo",
                    "kubeadm",
                    "init",
                    "--pod-network-cidr",
                    self.pod_network_cidr,
                ],
                sensitive=False,
            )
        except CommandError as exc:
            raise InitializationError(
                f"kubeadm init failed; manual cleanup required: {exc}",
                node=self.node.name,
            ) from exc

        self.state = ControlPlaneState.running
        return self.state

    def _require_running(self, action: str) -> None:
        if self.state != ControlPlaneState.running:
            raise InitializationError(
                f"cannot {action}: control plane is not running", node=self.node.name
            )

    async def _remote_value(self, command: List[str]) -> str:
        value = (await self.executor.run(self.node, command, sensitive=False)).strip()
        if not value:
            raise CommandError(f"'{' '.join(command)}' printed nothing")
        return value

    async def export_credentials(self) -> str:
        """
        Install admin.conf as the SSH user's ~/.kube/config (owner = that user,
        mode 0600). Re-running rewrites the same bytes.

        Returns:
            str: The absolute path of the kubeconfig on the node.

        Raises:
            InitializationError: If any command fails.
        """
        self._require_running("export credentials")
        try:
            home = await self._remote_value(["printenv", "HOME"])
            uid = await self._remote_value(["id", "-u"])
            gid = await self._remote_value(["id", "-g"])
            kubeconfig = f"{home.rstrip('/')}/{USER_KUBECONFIG}"
            await self.executor.run(
                self.node, ["mkdir", "-p", f"{home.rstrip('/')}/.kube"], sensitive=False
            )
            await self.executor.run(
                self.node,
                ["sudo", "install", "-m", "0600", "-o", uid, "-g", gid, ADMIN_CONF, kubeconfig],
                sensitive=False,
            )
        except CommandError as exc:
            raise InitializationError(
                f"exporting admin credentials failed: {exc}", node=self.node.name
            ) from exc

        logger.info("[%s] admin kubeconfig installed at %s", self.node.name, kubeconfig)
        return kubeconfig

    async def install_overlay(self) -> List[str]:
        """
        Download the overlay manifests locally, then `kubectl apply -f -` each
        on the node, as the SSH user (requires export_credentials first).

        Returns:
            List[str]: Local paths of the applied manifests, in order.

        Raises:
            ManifestApplyError: If a download or an apply fails.
        """
        self._require_running("install the pod network overlay")
        try:
            paths = await fetch_manifests(
                self.manifests, self.manifest_dir, session=self.session
            )
        except ManifestFetchError as exc:
            raise ManifestApplyError(str(exc), node=self.node.name) from exc

        for path in paths:
            async with aiofiles.open(path, "r", encoding="utf-8") as fh:
                manifest = await fh.read()
            try:
                await self.executor.run(
                    self.node,
                    ["kubectl", "apply", "-f", "-"],
                    input_data=manifest,
                    sensitive=False,
                )
            except CommandError as exc:
                raise ManifestApplyError(
                    f"applying {path} failed: {exc}", node=self.node.name
                ) from exc
            logger.info("[%s] applied %s", self.node.name, path)
        return paths

    async def ensure_initialized(self) -> ControlPlaneState:
        """Probe, init if needed, export credentials, install the overlay."""
        await self.probe()
        state = await self.init()
        await self.export_credentials()
        await self.install_overlay()
        return state

    async def fetch_admin_kubeconfig(self, local_path: str) -> None:
        """Copy the exported ~/.kube/config from the node to `local_path`."""
        self._require_running("fetch the admin kubeconfig")
        try:
            await self.executor.fetch(self.node, USER_KUBECONFIG, local_path)
        except CommandError as exc:
            raise InitializationError(
                f"fetching kubeconfig failed: {exc}", node=self.node.name
            ) from exc
