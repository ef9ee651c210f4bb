"""
Provides an idempotent kubeadm cluster bootstrap on freshly provisioned VMs.
Each stage receives the structured output of the previous one; nothing is
shared through ambient state.

  1) Provision one instance per NodeSpec => ProvisionedNodes (abort on failure)
  2) Wait for SSH on every node (abort on timeout)
  3) Group nodes by role => RoleGroup (exactly one control plane)
  4) Prepare every node concurrently (node-scoped failures; a failed control
     plane aborts)
  5) Probe/init the control plane, export credentials, install the overlay
     (abort on failure)
  6) Mint the join credential once on the control plane, join every prepared
     worker concurrently (node-scoped failures)

Re-running is convergent: provisioning and preparation are desired-state, and
init is guarded by the probe.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional

import aiohttp

from kubestrap.errors import ConfigurationError, JoinError
from kubestrap.models.cluster import (
    BootstrapResult,
    NodeFailure,
    NodeRole,
    NodeSpec,
)
from kubestrap.models.settings import BootstrapSettings
from kubestrap.deployment.control_plane import ControlPlaneInitializer
from kubestrap.deployment.join import JoinCoordinator
from kubestrap.deployment.prepare import prepare_nodes
from kubestrap.deployment.provision import NodeProvisioner
from kubestrap.deployment.readiness import wait_for_nodes
from kubestrap.deployment.registry import build_role_groups
from kubestrap.utils.remote import RemoteExecutor

logger = logging.getLogger(__name__)


def check_node_specs(specs: List[NodeSpec]) -> None:
    """
    Reject a node list that cannot form a cluster before any instance is created.

    Raises:
        ConfigurationError: Unless there is exactly one control-plane spec.
    """
    cps = [s.name for s in specs if s.role == NodeRole.control_plane]
    if len(cps) != 1:
        raise ConfigurationError(
            f"exactly one control-plane node is required, got {len(cps)}: {cps}"
        )


async def bootstrap_cluster(
    settings: BootstrapSettings,
    provisioner: NodeProvisioner,
    executor: RemoteExecutor,
    *,
    session: Optional[aiohttp.ClientSession] = None,
    kubeconfig_out: Optional[str] = None,
) -> BootstrapResult:
    """
    Run every stage in order and return the role groups, the join credential
    and any node-scoped failures.

    Args:
        settings: Bootstrap settings.
        provisioner: Creates/converges the instances.
        executor: Remote execution channel to the nodes.
        session: Optional aiohttp session used for manifest downloads.
        kubeconfig_out: If set, the admin kubeconfig is copied here at the end.

    Raises:
        ProvisioningError, ReadinessTimeout, ConfigurationError,
        PreparationError (control plane only), InitializationError,
        ManifestApplyError: run-aborting failures.
    """
    specs = list(settings.nodes)
    check_node_specs(specs)

    # 1) Provision
    logger.info("Provisioning %d node(s)", len(specs))
    nodes = await provisioner.provision(specs)

    # 2) Readiness
    await wait_for_nodes(
        nodes,
        port=settings.ssh_port,
        timeout=settings.readiness_timeout,
        interval=settings.readiness_interval,
        delay=settings.readiness_delay,
        limit=settings.max_parallel,
    )

    # 3) Role registry
    groups = build_role_groups(nodes)
    control_plane = groups.control_plane()
    result = BootstrapResult(role_groups=groups)

    # 4) Preparation
    prep_failures = await prepare_nodes(executor, groups.all_nodes(), settings)
    if control_plane.name in prep_failures:
        raise prep_failures[control_plane.name]
    result.failures.extend(
        NodeFailure(node=name, stage=err.stage, message=str(err))
        for name, err in prep_failures.items()
    )

    # 5) Control plane
    initializer = ControlPlaneInitializer(
        executor,
        control_plane,
        pod_network_cidr=settings.pod_network_cidr,
        manifests=settings.overlay_manifests,
        manifest_dir=os.path.expanduser(settings.manifest_dir),
        session=session,
    )
    await initializer.ensure_initialized()

    # 6) Join
    coordinator = JoinCoordinator(
        executor,
        control_plane,
        private_address_range=settings.private_address_range,
        api_server_port=settings.api_server_port,
    )
    ready_workers = [w for w in groups.workers if w.name not in prep_failures]
    try:
        await coordinator.join_target()
    except JoinError as exc:
        logger.error("Join credential unavailable: %s", exc)
        result.failures.append(
            NodeFailure(node=control_plane.name, stage=exc.stage, message=str(exc))
        )
        result.failures.extend(
            NodeFailure(
                node=w.name, stage="join", message="skipped: join credential unavailable"
            )
            for w in ready_workers
        )
    else:
        result.credential = coordinator.credential
        outcome = await coordinator.join_workers(
            ready_workers, limit=settings.max_parallel
        )
        for name, err in outcome.items():
            if err is None:
                result.joined.append(name)
            else:
                result.failures.append(
                    NodeFailure(node=name, stage=err.stage, message=str(err))
                )

    if kubeconfig_out:
        await initializer.fetch_admin_kubeconfig(os.path.expanduser(kubeconfig_out))

    logger.info(
        "Bootstrap finished: %d worker(s) joined, %d failure(s)",
        len(result.joined),
        len(result.failures),
    )
    return result


