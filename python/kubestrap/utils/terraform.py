"""
kubestrap/utils/terraform.py

Implements the Terraform commands the provisioner needs (init, apply, show),
plus helpers for building command arrays. Variables are passed through an
ephemeral .auto.tfvars.json file so provider credentials and SSH keys never
land next to the state.

Exports:
    - init_terraform
    - apply_terraform
    - read_terraform_state
    - get_output_from_state
"""

from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional, Type, TypeVar

import aiofiles
from pydantic import TypeAdapter, ValidationError

from kubestrap.models.terraform import TerraformState
from kubestrap.utils.async_command_runner import run_command
from kubestrap.utils.ephemeral_file import ephemeral_manager

T = TypeVar("T")


def _quota_parser(stderr: str) -> Optional[str]:
    """Turn a GCP quota rejection into a short message; None for anything else."""
    low = stderr.lower()
    if "quota" in low and ("exceeded" in low or "quota_exceeded" in low):
        return (
            "GCP quota exceeded while creating instances. Request more quota "
            "or reduce the node count / machine type."
        )
    return None


def _make_base_command(action: str) -> List[str]:
    """Builds the initial Terraform command for `action`.

    Returns:
        e.g. ["terraform","apply","-no-color","-input=false","-auto-approve"].
    """
    base = ["terraform", action, "-no-color"]
    show_flags = ["-json"] if action == "show" else []
    input_flags = ["-input=false"] if action in ("init", "apply") else []
    apply_flags = ["-auto-approve"] if action == "apply" else []
    return base + show_flags + input_flags + apply_flags


@asynccontextmanager
async def maybe_tfvars(
    action: str, variables: Optional[Dict[str, Any]]
) -> AsyncGenerator[List[str], None]:
    """
    Yield ["-var-file", <ephemeral json>] for 'apply' with variables, else [].
    The file is removed as soon as the command finishes.
    """
    if action != "apply" or not variables:
        yield []
        return

    async with ephemeral_manager("kubestrap.auto.tfvars.json", prefix="tfvars-") as path:
        async with aiofiles.open(path, "w", encoding="utf-8") as fh:
            await fh.write(json.dumps(variables, indent=2))
        yield ["-var-file", path]


async def _terraform_command(
    action: str,
    terraform_dir: str,
    *,
    variables: Optional[Dict[str, Any]] = None,
    sensitive: bool = True,
    retries: int = 1,
) -> str:
    """
    Internal runner for 'terraform <action>' inside `terraform_dir`.

    Raises:
        ValueError: If terraform_dir does not exist.
        CommandError: If the command fails after all retries.
    """
    if not os.path.isdir(terraform_dir):
        raise ValueError(f"Terraform directory not found: {terraform_dir}")

    async with maybe_tfvars(action, variables) as tfvars_args:
        return await run_command(
            _make_base_command(action) + tfvars_args,
            sensitive=sensitive,
            cwd=terraform_dir,
            retries=retries,
            error_parser=_quota_parser,
        )


async def init_terraform(
    terraform_dir: str,
    sensitive: bool = True,
    retries: int = 3,
) -> None:
    """Run 'terraform init' (provider download is retried, it is network-bound)."""
    await _terraform_command(
        "init", terraform_dir, sensitive=sensitive, retries=retries
    )


async def apply_terraform(
    terraform_dir: str,
    variables: Optional[Dict[str, Any]] = None,
    sensitive: bool = True,
    retries: int = 1,
) -> None:
    """Run 'terraform apply -auto-approve' with `variables` in an ephemeral var-file.

    Apply converges the instances to the declared set, so re-running is safe.
    """
    await _terraform_command(
        "apply",
        terraform_dir,
        variables=variables,
        sensitive=sensitive,
        retries=retries,
    )


async def read_terraform_state(
    terraform_dir: str,
    sensitive: bool = True,
) -> TerraformState:
    """Run 'terraform show -json' and parse it.

    Raises:
        RuntimeError: If the output is empty or cannot be parsed.
    """
    output = await _terraform_command(
        "show", terraform_dir, sensitive=sensitive, retries=1
    )
    if not output:
        raise RuntimeError("Failed to retrieve terraform state (empty output).")
    try:
        return TerraformState.model_validate_json(output)
    except ValidationError as ve:
        raise RuntimeError(f"Unparseable terraform state: {ve}") from ve


def get_output_from_state(
    state: TerraformState, output_name: str, output_type: Type[T]
) -> T:
    """Retrieve a typed output from a TerraformState object.

    Raises:
        KeyError: If the output is missing.
        ValueError: If validation to output_type fails.
    """
    output_val = state.values.outputs.get(output_name)
    if output_val is None:
        raise KeyError(f"Output '{output_name}' not found in Terraform state.")
    try:
        return TypeAdapter(output_type).validate_python(output_val.value)
    except ValidationError as e:
        raise ValueError(
            f"Output '{output_name}' is not a valid {output_type}: {e}"
        ) from e
