"""
filename: kubestrap/deployment/provision.py

Node provisioning: one compute instance per NodeSpec, with desired-state
semantics (re-running converges instead of duplicating).

  - NodeProvisioner: abstract base; returns ProvisionedNodes in spec order.
  - TerraformGCPProvisioner: drives the bundled Terraform root for GCP, whose
    instances are keyed by name, then reads the addresses back from the state.
"""

from __future__ import annotations

import glob
import logging
import os
import shutil
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from kubestrap.errors import ProvisioningError
from kubestrap.models.cluster import NodeSpec, ProvisionedNode
from kubestrap.models.settings import BootstrapSettings
from kubestrap.models.terraform import InstanceOutput
from kubestrap.utils.async_command_runner import CommandError
from kubestrap.utils.terraform import (
    apply_terraform,
    get_output_from_state,
    init_terraform,
    read_terraform_state,
)

logger = logging.getLogger(__name__)

GCP_ROOT = os.path.join(
    os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
    "terraform",
    "roots",
    "providers",
    "gcp",
)


class NodeProvisioner(ABC):
    """Creates (or converges) one instance per NodeSpec."""

    @abstractmethod
    async def provision(self, specs: List[NodeSpec]) -> List[ProvisionedNode]:
        """
        Ensure an instance exists for every spec and return them in spec order.

        Raises:
            ProvisioningError: If any instance cannot be created or has no
                reachable address.
        """


class TerraformGCPProvisioner(NodeProvisioner):
    """
    GCP provisioner backed by Terraform.

    The bundled root is copied into `work_dir`, which also keeps the local
    Terraform state between runs so a re-run updates the same instances.

    Args:
        settings: Bootstrap settings (project, machine profile, SSH user/key).
        root_dir: Directory holding the Terraform root (*.tf files).
        work_dir: Terraform working directory; defaults to settings.work_dir.
    """

    def __init__(
        self,
        settings: BootstrapSettings,
        *,
        root_dir: str = GCP_ROOT,
        work_dir: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self.root_dir = root_dir
        self.work_dir = os.path.expanduser(work_dir or settings.work_dir)

    def terraform_variables(self, specs: List[NodeSpec]) -> Dict[str, Any]:
        s = self.settings
        credentials_file = (
            os.path.expanduser(s.gcp_service_account_file)
            if s.gcp_auth_kind == "serviceaccount" and s.gcp_service_account_file
            else None
        )
        return {
            "project": s.gcp_project,
            "zone": s.gcp_zone,
            "credentials_file": credentials_file,
            "scopes": s.gcp_scopes,
            "machine_type": s.machine_type,
            "source_image": s.source_image,
            "disk_size_gb": s.disk_size_gb,
            "preemptible": s.preemptible,
            "project_tag": s.project_tag,
            "nodes": {spec.name: spec.role.value for spec in specs},
            "ssh_user": s.ssh_user,
            "ssh_public_key": s.read_public_key(),
        }

    def _sync_root(self) -> None:
        """Copy the root's *.tf files into the working directory (overwriting)."""
        os.makedirs(self.work_dir, exist_ok=True)
        sources = glob.glob(os.path.join(self.root_dir, "*.tf"))
        if not sources:
            raise ProvisioningError(f"No Terraform files found in {self.root_dir}")
        for src in sources:
            shutil.copy2(src, os.path.join(self.work_dir, os.path.basename(src)))

    async def provision(self, specs: List[NodeSpec]) -> List[ProvisionedNode]:
        if not specs:
            return []

        self._sync_root()
        try:
            variables = self.terraform_variables(specs)
        except OSError as exc:
            raise ProvisioningError(f"Cannot read SSH public key: {exc}") from exc

        logger.info(
            "Applying Terraform in %s for %d instance(s)", self.work_dir, len(specs)
        )
        try:
            await init_terraform(self.work_dir)
            await apply_terraform(self.work_dir, variables=variables)
            state = await read_terraform_state(self.work_dir)
            instances = get_output_from_state(
                state, "instances", Dict[str, InstanceOutput]
            )
        except (CommandError, RuntimeError, KeyError, ValueError) as exc:
            raise ProvisioningError(f"Terraform provisioning failed: {exc}") from exc

        return [_to_provisioned_node(spec, instances) for spec in specs]


def _to_provisioned_node(
    spec: NodeSpec, instances: Dict[str, InstanceOutput]
) -> ProvisionedNode:
    inst = instances.get(spec.name)
    if inst is None:
        raise ProvisioningError("instance missing from provider output", node=spec.name)
    if not inst.external_ip:
        raise ProvisioningError("instance has no external address", node=spec.name)
    return ProvisionedNode(
        spec=spec,
        external_address=inst.external_ip,
        internal_address=inst.internal_ip,
        instance_id=inst.id,
    )
