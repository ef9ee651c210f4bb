"""
kubestrap/errors.py

Error taxonomy for a bootstrap run. Every error remembers the node and the
stage it happened in, so a failure can be re-targeted by a human or an outer
retry loop without digging through logs.

    BootstrapError
      ├── ProvisioningError     (stage "provision")
      ├── ReadinessTimeout      (stage "readiness")
      ├── ConfigurationError    (stage "configuration")
      ├── PreparationError      (stage "prepare")
      ├── InitializationError   (stage "control-plane-init")
      ├── ManifestApplyError    (stage "overlay")
      └── JoinError             (stage "join")
"""

from __future__ import annotations

from typing import Optional


class BootstrapError(Exception):
    """Base class for failures raised by a bootstrap stage.

    Attributes:
        node (Optional[str]): Name of the node the failure belongs to, if any.
        stage (str): Name of the stage that failed.
    """

    stage: str = "bootstrap"

    def __init__(self, message: str, node: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.node = node

    def __str__(self) -> str:
        where = f"{self.stage}@{self.node}" if self.node else self.stage
        return f"[{where}] {self.message}"


class ProvisioningError(BootstrapError):
    stage = "provision"


class ReadinessTimeout(BootstrapError):
    stage = "readiness"


class ConfigurationError(BootstrapError):
    stage = "configuration"


class PreparationError(BootstrapError):
    """A host-setup step failed on a node.

    Attributes:
        step (Optional[str]): The preparation step that failed.
    """

    stage = "prepare"

    def __init__(
        self, message: str, node: Optional[str] = None, step: Optional[str] = None
    ) -> None:
        super().__init__(message, node)
        self.step = step

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (step: {self.step})" if self.step else base


class InitializationError(BootstrapError):
    stage = "control-plane-init"


class ManifestApplyError(BootstrapError):
    stage = "overlay"


class JoinError(BootstrapError):
    stage = "join"


__all__ = [
    "BootstrapError",
    "ProvisioningError",
    "ReadinessTimeout",
    "ConfigurationError",
    "PreparationError",
    "InitializationError",
    "ManifestApplyError",
    "JoinError",
]
