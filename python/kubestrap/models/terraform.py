"""
kubestrap/models/terraform.py

Pydantic models for the parts of 'terraform show -json' we read back:
 - OutputValue
 - Values
 - TerraformState
 - InstanceOutput: one entry of the GCP root's "instances" output
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field


class OutputValue(BaseModel):
    """A Terraform output value as parsed from 'terraform show -json'.

    Attributes:
        sensitive: True if the output is marked sensitive.
        value: Arbitrary data from the Terraform output.
        type: Optional Terraform type hint (string, list, etc.).
    """

    sensitive: bool = False
    value: Any
    type: Union[str, List[Any], None] = None


class Values(BaseModel):
    """The 'values' block in a Terraform JSON state.

    Attributes:
        outputs: Mapping of output_name -> OutputValue.
        root_module: Resources and possibly child modules.
    """

    outputs: Dict[str, OutputValue] = Field(default_factory=dict)
    root_module: Dict[str, Any] = Field(default_factory=dict)


class TerraformState(BaseModel):
    """A Terraform JSON state at a high level.

    'values' is absent when the working directory has no state yet, which
    we treat the same as a state with no outputs.
    """

    format_version: str
    terraform_version: Optional[str] = None
    values: Values = Field(default_factory=Values)


class InstanceOutput(BaseModel):
    """One instance as exported by the bundled GCP root's 'instances' output."""

    name: str
    role: str
    id: Optional[str] = None
    external_ip: Optional[str] = None
    internal_ip: Optional[str] = None
