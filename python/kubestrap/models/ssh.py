# kubestrap/models/ssh.py

from pydantic import BaseModel, Field, field_validator
from typing import Optional, List


class SSHConfig(BaseModel):
    """
    SSH configuration for connecting to a provisioned node.
    If host_keys is empty => no known keys => must do TOFU before strict mode.
    """

    user: str
    hostname: str
    port: int = Field(default=22, ge=1, le=65535)
    private_key: str
    host_keys: Optional[List[str]] = None  # If None/empty => no known keys

    @field_validator("private_key")
    @classmethod
    def validate_private_key(cls, val: str) -> str:
        if not val.strip():
            raise ValueError("private_key must be a non-empty string")
        return val

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.hostname}"
