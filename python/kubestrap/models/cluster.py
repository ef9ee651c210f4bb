"""
kubestrap/models/cluster.py

Pydantic models describing a cluster as it moves through the bootstrap stages:
 - NodeRole / NodeSpec: what we declare before provisioning
 - ProvisionedNode: what the provider gives back
 - RoleGroup: nodes grouped by role, threaded through every later stage
 - ClusterJoinCredential / JoinTarget: what a worker needs to join
 - ControlPlaneState, NodeFailure, BootstrapResult: run bookkeeping
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from kubestrap.errors import ConfigurationError


class NodeRole(str, Enum):
    control_plane = "control-plane"
    worker = "worker"


class NodeSpec(BaseModel):
    """A statically declared node.

    Attributes:
        name: Instance name, unique within the cluster.
        role: The role the node plays once bootstrapped.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    role: NodeRole

    @field_validator("name")
    @classmethod
    def validate_name(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("node name must be a non-empty string")
        return val


class ProvisionedNode(BaseModel):
    """A NodeSpec plus the addresses and id reported by the provider.

    Attributes:
        spec: The declared node.
        external_address: Address reachable from the orchestrating host.
        internal_address: VPC-internal address, if the provider reported one.
        instance_id: Provider-assigned instance id.
    """

    model_config = ConfigDict(frozen=True)

    spec: NodeSpec
    external_address: str
    internal_address: Optional[str] = None
    instance_id: Optional[str] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def role(self) -> NodeRole:
        return self.spec.role


class RoleGroup(BaseModel):
    """
    Nodes grouped by role. Built once by the role registry and read by
    every later stage. Lookups are total for both roles.
    """

    groups: Dict[NodeRole, List[ProvisionedNode]] = Field(default_factory=dict)

    def members(self, role: NodeRole) -> List[ProvisionedNode]:
        return list(self.groups.get(role, []))

    @property
    def workers(self) -> List[ProvisionedNode]:
        return self.members(NodeRole.worker)

    def all_nodes(self) -> List[ProvisionedNode]:
        return [node for role in NodeRole for node in self.members(role)]

    def control_plane(self) -> ProvisionedNode:
        """
        Return the single control-plane node.

        Raises:
            ConfigurationError: If the control-plane group does not have
                exactly one member.
        """
        cps = self.members(NodeRole.control_plane)
        if len(cps) != 1:
            raise ConfigurationError(
                f"expected exactly one control-plane node, found {len(cps)}"
            )
        return cps[0]

    def to_mapping(self, attribute: str = "external_address") -> Dict[str, List[str]]:
        """
        Role name => list of a node attribute (external_address by default,
        or e.g. "name"), one entry per declared role.
        """
        return {
            role.value: [str(getattr(node, attribute)) for node in self.members(role)]
            for role in NodeRole
        }


class ClusterJoinCredential(BaseModel):
    """
    Short-lived join secret minted on the control-plane node.

    Attributes:
        token: The kubeadm bootstrap token. Masked in repr and logs.
        ca_cert_hash: Hex SHA-256 of the cluster CA's DER public key.
    """

    model_config = ConfigDict(frozen=True)

    token: SecretStr
    ca_cert_hash: str

    @property
    def discovery_hash(self) -> str:
        return f"sha256:{self.ca_cert_hash}"


class JoinTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    control_plane_address: str
    port: int = Field(default=6443, ge=1, le=65535)
    credential: ClusterJoinCredential

    @property
    def endpoint(self) -> str:
        return f"{self.control_plane_address}:{self.port}"


class ControlPlaneState(str, Enum):
    uninitialized = "uninitialized"
    running = "running"


class NodeFailure(BaseModel):
    node: str
    stage: str
    message: str


class BootstrapResult(BaseModel):
    """
    What a bootstrap run hands back to its caller.

    Attributes:
        role_groups: The nodes grouped by role.
        credential: The join credential, if the join stage got that far.
        joined: Names of workers whose join command succeeded.
        failures: Node-scoped failures collected along the way.
    """

    role_groups: RoleGroup
    credential: Optional[ClusterJoinCredential] = None
    joined: List[str] = Field(default_factory=list)
    failures: List[NodeFailure] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failures


__all__ = [
    "NodeRole",
    "NodeSpec",
    "ProvisionedNode",
    "RoleGroup",
    "ClusterJoinCredential",
    "JoinTarget",
    "ControlPlaneState",
    "NodeFailure",
    "BootstrapResult",
]
