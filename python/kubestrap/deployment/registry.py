"""
kubestrap/deployment/registry.py

Groups provisioned nodes by role. Pure: no I/O, no process-wide state; the
returned RoleGroup is handed explicitly to every later stage.
"""

from __future__ import annotations

from typing import Dict, List

from kubestrap.errors import ConfigurationError
from kubestrap.models.cluster import NodeRole, ProvisionedNode, RoleGroup


def build_role_groups(nodes: List[ProvisionedNode]) -> RoleGroup:
    """
    Partition `nodes` by role, keeping input order within each role.
    Both roles are always present (possibly empty).

    Raises:
        ConfigurationError: If two nodes share a name.
    """
    seen: Dict[str, ProvisionedNode] = {}
    for node in nodes:
        if node.name in seen:
            raise ConfigurationError("duplicate node name", node=node.name)
        seen[node.name] = node

    groups: Dict[NodeRole, List[ProvisionedNode]] = {
        role: [node for node in nodes if node.role == role] for role in NodeRole
    }
    return RoleGroup(groups=groups)
