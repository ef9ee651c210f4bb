# kubestrap/models/settings.py

from __future__ import annotations

import ipaddress
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kubestrap.errors import ConfigurationError
from kubestrap.models.cluster import NodeRole, NodeSpec


class ManifestSource(BaseModel):
    """A manifest fetched at run time and applied on the control plane.

    Attributes:
        name: Local file name the manifest is saved under.
        url: Version-pinned URL to fetch it from.
    """

    name: str
    url: str


DEFAULT_MANIFESTS = [
    ManifestSource(
        name="calico-rbac-kdd.yaml",
        url="https://docs.projectcalico.org/v3.3/getting-started/kubernetes/installation/hosted/rbac-kdd.yaml",
    ),
    ManifestSource(
        name="calico.yaml",
        url="https://docs.projectcalico.org/v3.3/getting-started/kubernetes/installation/hosted/kubernetes-datastore/calico-networking/1.7/calico.yaml",
    ),
]

DEFAULT_NODES = [
    NodeSpec(name="k8s-master-1", role=NodeRole.control_plane),
    NodeSpec(name="k8s-worker-1", role=NodeRole.worker),
]


class BootstrapSettings(BaseSettings):
    """
    Settings for a bootstrap run. Every field maps to an environment variable
    prefixed with `KUBESTRAP_` (e.g. `KUBESTRAP_GCP_PROJECT`); list fields take
    JSON. Values from a YAML config file (see `load_settings`) take precedence.
    """

    model_config = SettingsConfigDict(
        env_prefix="KUBESTRAP_", env_nested_delimiter="__", extra="forbid"
    )

    # Provider
    gcp_project: str = ""
    gcp_zone: str = "us-central1-a"
    gcp_auth_kind: str = "serviceaccount"
    gcp_service_account_file: Optional[str] = None
    gcp_scopes: List[str] = Field(
        default_factory=lambda: ["https://www.googleapis.com/auth/compute"]
    )
    machine_type: str = "n1-standard-2"
    source_image: str = "projects/ubuntu-os-cloud/global/images/family/ubuntu-1804-lts"
    disk_size_gb: int = Field(default=10, ge=10)
    preemptible: bool = True
    project_tag: str = "k8s-test"
    nodes: List[NodeSpec] = Field(default_factory=lambda: list(DEFAULT_NODES))

    # SSH
    ssh_user: str = Field(default_factory=lambda: os.environ.get("USER", "ubuntu"))
    ssh_private_key_file: str = "~/.ssh/id_rsa"
    ssh_public_key_file: str = "~/.ssh/id_rsa.pub"
    ssh_port: int = Field(default=22, ge=1, le=65535)

    # Readiness
    readiness_delay: float = Field(default=1.0, ge=0)
    readiness_timeout: float = 90.0
    readiness_interval: float = Field(default=1.0, gt=0)

    # Cluster
    pod_network_cidr: str = "192.168.0.0/16"
    private_address_range: str = "10.0.0.0/8"
    api_server_port: int = Field(default=6443, ge=1, le=65535)
    kubernetes_version: str = "1.12.2-00"
    kubernetes_packages: List[str] = Field(
        default_factory=lambda: ["kubeadm", "kubelet", "kubectl"]
    )
    container_runtime_package: str = "docker.io"
    container_runtime_service: str = "docker"
    apt_key_url: str = "https://packages.cloud.google.com/apt/doc/apt-key.gpg"
    apt_keyring_path: str = "/usr/share/keyrings/kubernetes-archive-keyring.gpg"
    apt_repository: str = "deb http://apt.kubernetes.io/ kubernetes-xenial main"

    # Overlay
    overlay_manifests: List[ManifestSource] = Field(
        default_factory=lambda: list(DEFAULT_MANIFESTS)
    )
    manifest_dir: str = "~/.kubestrap/manifests"

    # Orchestration
    max_parallel: int = Field(default=8, ge=1)
    command_retries: int = Field(default=1, ge=1)
    work_dir: str = "~/.kubestrap/terraform"

    @field_validator("nodes")
    @classmethod
    def validate_unique_names(cls, val: List[NodeSpec]) -> List[NodeSpec]:
        names = [spec.name for spec in val]
        if len(names) != len(set(names)):
            raise ValueError("Duplicate node name(s) in 'nodes'.")
        return val

    @field_validator("pod_network_cidr", "private_address_range")
    @classmethod
    def validate_network(cls, val: str) -> str:
        try:
            ipaddress.ip_network(val, strict=False)
        except ValueError as exc:
            raise ValueError(f"'{val}' is not a valid CIDR range: {exc}") from exc
        return val

    @property
    def apt_source_line(self) -> str:
        """The repository line, pinned to our keyring when it has no options."""
        if self.apt_repository.startswith("deb ["):
            return self.apt_repository
        rest = self.apt_repository[len("deb ") :]
        return f"deb [signed-by={self.apt_keyring_path}] {rest}"

    def pinned_packages(self) -> List[str]:
        return [f"{pkg}={self.kubernetes_version}" for pkg in self.kubernetes_packages]

    def read_private_key(self) -> str:
        return Path(self.ssh_private_key_file).expanduser().read_text(encoding="utf-8")

    def read_public_key(self) -> str:
        return (
            Path(self.ssh_public_key_file)
            .expanduser()
            .read_text(encoding="utf-8")
            .strip()
        )


def load_settings(path: Optional[str] = None, **overrides: Any) -> BootstrapSettings:
    """
    Build BootstrapSettings from the environment, an optional YAML file and
    keyword overrides (in increasing precedence).

    Raises:
        ConfigurationError: If the file is unreadable or the values do not validate.
    """
    data: Dict[str, Any] = {}
    if path is not None:
        try:
            with open(os.path.expanduser(path), "r", encoding="utf-8") as fh:
                loaded = yaml.safe_load(fh) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Cannot read config file '{path}': {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"Config file '{path}' must contain a mapping.")
        data.update(loaded)
    data.update(overrides)

    try:
        return BootstrapSettings(**data)
    except ValidationError as ve:
        raise ConfigurationError(f"Invalid settings: {ve}") from ve
