#!/usr/bin/env python3
"""
kubestrap/cli/bootstrap.py

CLI for bootstrapping a kubeadm cluster on freshly provisioned GCP VMs.
Example usage:

    kubestrap up --config cluster.yaml --kubeconfig-out ~/.kube/kubestrap.conf
    kubestrap plan --config cluster.yaml

'up' provisions the nodes, prepares them, initializes the control plane and
joins the workers, then prints the role => external address map as JSON.
'plan' prints the resolved settings without touching any infrastructure.
"""

import argparse
import asyncio
import json
import logging
import sys

from kubestrap.deployment.bootstrap import bootstrap_cluster, check_node_specs
from kubestrap.deployment.provision import TerraformGCPProvisioner
from kubestrap.errors import ConfigurationError
from kubestrap.models.settings import load_settings
from kubestrap.utils.remote import SSHExecutor


async def _run_up(args: argparse.Namespace) -> None:
    """
    Handler for the 'up' subcommand:
      1) Load settings
      2) Run the bootstrap
      3) Print the address map, report failures
    """
    settings = load_settings(args.config)
    try:
        private_key = settings.read_private_key()
    except OSError as exc:
        raise ConfigurationError(f"Cannot read SSH private key: {exc}") from exc

    executor = SSHExecutor(
        settings.ssh_user,
        private_key,
        port=settings.ssh_port,
        retries=settings.command_retries,
    )
    provisioner = TerraformGCPProvisioner(settings)

    result = await bootstrap_cluster(
        settings, provisioner, executor, kubeconfig_out=args.kubeconfig_out
    )

    print(json.dumps(result.role_groups.to_mapping(), indent=2))
    if result.joined:
        print(f"Joined workers: {', '.join(result.joined)}")
    if args.kubeconfig_out:
        print(f"Admin kubeconfig written to {args.kubeconfig_out}")

    if not result.succeeded:
        for failure in result.failures:
            print(
                f"FAILED [{failure.stage}@{failure.node}] {failure.message}",
                file=sys.stderr,
            )
        sys.exit(1)


async def _run_plan(args: argparse.Namespace) -> None:
    """Handler for the 'plan' subcommand: validate and print the settings."""
    settings = load_settings(args.config)
    check_node_specs(list(settings.nodes))
    print(json.dumps(settings.model_dump(mode="json"), indent=2))


def main() -> None:
    """
    Entry point for the 'kubestrap' CLI.
    Subcommands:
      - up: provision and bootstrap the cluster
      - plan: print the resolved settings
    """
    parser = argparse.ArgumentParser(
        prog="kubestrap",
        description="Provision GCP VMs and bootstrap a kubeadm cluster on them.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO).",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    up_parser = subparsers.add_parser(
        "up", help="Provision the nodes and bootstrap the cluster."
    )
    up_parser.add_argument(
        "--config",
        default=None,
        help="YAML settings file (values override KUBESTRAP_* environment variables).",
    )
    up_parser.add_argument(
        "--kubeconfig-out",
        default=None,
        help="Local path to copy the admin kubeconfig to once the cluster is up.",
    )
    up_parser.set_defaults(func=_run_up)

    plan_parser = subparsers.add_parser(
        "plan", help="Print the resolved settings without touching infrastructure."
    )
    plan_parser.add_argument(
        "--config",
        default=None,
        help="YAML settings file (values override KUBESTRAP_* environment variables).",
    )
    plan_parser.set_defaults(func=_run_plan)

    args = parser.parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        asyncio.run(args.func(args))
    except Exception as exc:
        print(f"kubestrap error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
