"""
Host preparation applied to every node, whatever its role:

  1) register-repository: Kubernetes apt signing key + apt source
  2) upgrade-packages:    apt-get update && apt-get upgrade
  3) install-runtime:     container runtime package, service enabled and running
  4) install-tools:       pinned kubeadm/kubelet/kubectl, held at that version

Every command converges when already applied, so a re-run is harmless. There
is no automatic retry; the first failing step raises PreparationError naming
the node and the step.
"""

from __future__ import annotations

import logging
import os
from typing import Dict, List, Optional

from pydantic import BaseModel

from kubestrap.errors import PreparationError
from kubestrap.models.cluster import ProvisionedNode
from kubestrap.models.settings import BootstrapSettings
from kubestrap.utils.async_bounded import gather_bounded
from kubestrap.utils.async_command_runner import CommandError
from kubestrap.utils.remote import RemoteExecutor

logger = logging.getLogger(__name__)

APT_SOURCE_FILE = "/etc/apt/sources.list.d/kubernetes.list"

_APT = [
    "sudo",
    "env",
    "DEBIAN_FRONTEND=noninteractive",
    "apt-get",
    "-y",
    "-o",
    "Dpkg::Options::=--force-confdef",
    "-o",
    "Dpkg::Options::=--force-confold",
]


def _apt_lock_parser(stderr: str) -> Optional[str]:
    """Short message when apt/dpkg is locked (e.g. unattended-upgrades on first boot)."""
    low = stderr.lower()
    if "could not get lock" in low or "unable to acquire the dpkg frontend lock" in low:
        return (
            "apt/dpkg lock is held by another process; wait for it to finish "
            "and re-run preparation for this node."
        )
    return None


class RemoteCommand(BaseModel):
    """One argv to run on a node, with optional stdin."""

    argv: List[str]
    stdin: Optional[str] = None


class PreparationStep(BaseModel):
    name: str
    commands: List[RemoteCommand]


def preparation_steps(settings: BootstrapSettings) -> List[PreparationStep]:
    """The ordered host-setup steps for `settings`."""
    packages = settings.kubernetes_packages
    return [
        PreparationStep(
            name="register-repository",
            commands=[
                RemoteCommand(
                    argv=["sudo", "mkdir", "-p", os.path.dirname(settings.apt_keyring_path)]
                ),
                RemoteCommand(
                    argv=[
                        "sudo",
                        "curl",
                        "-fsSL",
                        "-o",
                        settings.apt_keyring_path,
                        settings.apt_key_url,
                    ]
                ),
                RemoteCommand(
                    argv=["sudo", "tee", APT_SOURCE_FILE],
                    stdin=settings.apt_source_line + "\n",
                ),
            ],
        ),
        PreparationStep(
            name="upgrade-packages",
            commands=[
                RemoteCommand(argv=["sudo", "apt-get", "update"]),
                RemoteCommand(argv=_APT + ["upgrade"]),
            ],
        ),
        PreparationStep(
            name="install-runtime",
            commands=[
                RemoteCommand(argv=_APT + ["install", settings.container_runtime_package]),
                RemoteCommand(
                    argv=[
                        "sudo",
                        "systemctl",
                        "enable",
                        "--now",
                        settings.container_runtime_service,
                    ]
                ),
            ],
        ),
        PreparationStep(
            name="install-tools",
            commands=[
                RemoteCommand(
                    argv=_APT
                    + [
                        "install",
                        "--allow-downgrades",
                        "--allow-change-held-packages",
                    ]
                    + settings.pinned_packages()
                ),
                RemoteCommand(argv=["sudo", "apt-mark", "hold"] + packages),
            ],
        ),
    ]


async def prepare_node(
    executor: RemoteExecutor, node: ProvisionedNode, steps: List[PreparationStep]
) -> None:
    """
    Run every step on `node`, in order.

    Raises:
        PreparationError: On the first failing command.
    """
    for step in steps:
        logger.info("[%s] %s", node.name, step.name)
        for cmd in step.commands:
            try:
                await executor.run(
                    node,
                    cmd.argv,
                    input_data=cmd.stdin,
                    sensitive=False,
                    error_parser=_apt_lock_parser,
                )
            except CommandError as exc:
                raise PreparationError(str(exc), node=node.name, step=step.name) from exc


async def prepare_nodes(
    executor: RemoteExecutor,
    nodes: List[ProvisionedNode],
    settings: BootstrapSettings,
) -> Dict[str, PreparationError]:
    """
    Prepare all nodes concurrently (bounded by settings.max_parallel).
    One node failing does not stop the others.

    Returns:
        Node name => PreparationError for every node that failed.
    """
    steps = preparation_steps(settings)

    async def _prepare(node: ProvisionedNode) -> None:
        await prepare_node(executor, node, steps)

    results = await gather_bounded(
        _prepare, nodes, limit=settings.max_parallel, return_exceptions=True
    )

    failures: Dict[str, PreparationError] = {}
    for node, result in zip(nodes, results):
        if isinstance(result, PreparationError):
            logger.error("Preparation failed: %s", result)
            failures[node.name] = result
        elif isinstance(result, BaseException):
            raise result
    return failures
