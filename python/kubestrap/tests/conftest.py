"""
Shared fixtures: a scripted RemoteExecutor, a static NodeProvisioner, a local
TCP listener standing in for sshd, and a throwaway self-signed cluster CA.
"""

from __future__ import annotations

import asyncio
import datetime
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple, Union

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from kubestrap.deployment.provision import NodeProvisioner
from kubestrap.models.cluster import NodeRole, NodeSpec, ProvisionedNode
from kubestrap.models.settings import BootstrapSettings
from kubestrap.utils.remote import RemoteExecutor


@dataclass
class RecordedCall:
    node: str
    argv: List[str]
    input_data: Optional[Union[str, bytes]]
    sensitive: bool


class FakeExecutor(RemoteExecutor):
    """
    In-memory RemoteExecutor. Responses are scripted with `on(node, prefix,
    *results)`: a command matches when it starts with `prefix` and runs on
    `node` (None matches any node). Later rules win. With several results,
    each call consumes one until the last, which then repeats. A result that
    is an exception instance is raised; a callable is called with the
    RecordedCall and its return value used. Unmatched commands return "".

    `files` maps (node, path) to bytes for commands that read or write files
    on a node; see `install`.
    """

    def __init__(self) -> None:
        self.calls: List[RecordedCall] = []
        self.fetched: List[Tuple[str, str, str]] = []
        self.files: Dict[Tuple[str, str], bytes] = {}
        self.file_modes: Dict[Tuple[str, str], Tuple[str, str, str]] = {}
        self._rules: List[Tuple[Optional[str], Tuple[str, ...], List[Any]]] = []

    def on(self, node: Optional[str], prefix: List[str], *results: Any) -> None:
        self._rules.append((node, tuple(prefix), list(results)))

    def commands_on(self, node: str) -> List[List[str]]:
        return [c.argv for c in self.calls if c.node == node]

    def install(self, call: RecordedCall) -> str:
        """Emulate `[sudo] install -m MODE -o UID -g GID SRC DST` on the node."""
        argv = call.argv[1:] if call.argv[0] == "sudo" else call.argv
        opts = dict(zip(argv[1:-2:2], argv[2:-2:2]))
        src, dst = argv[-2], argv[-1]
        self.files[(call.node, dst)] = self.files[(call.node, src)]
        self.file_modes[(call.node, dst)] = (opts["-m"], opts["-o"], opts["-g"])
        return ""

    async def run(self, node, command, *, input_data=None, sensitive=True, error_parser=None):
        call = RecordedCall(node.name, list(command), input_data, sensitive)
        self.calls.append(call)
        await asyncio.sleep(0)
        for rule_node, prefix, results in reversed(self._rules):
            if rule_node is not None and rule_node != node.name:
                continue
            if tuple(command[: len(prefix)]) != prefix:
                continue
            result = results.pop(0) if len(results) > 1 else results[0]
            if isinstance(result, BaseException):
                raise result
            if callable(result):
                return result(call)
            return result
        return ""

    async def fetch(self, node, remote_path, local_path):
        self.fetched.append((node.name, remote_path, local_path))
        with open(local_path, "w", encoding="utf-8") as fh:
            fh.write(f"# kubeconfig from {node.name}\n")


class StaticProvisioner(NodeProvisioner):
    """Returns fixed addresses per node name and records every call."""

    def __init__(self, addresses: Dict[str, str]) -> None:
        self.addresses = addresses
        self.calls: List[List[NodeSpec]] = []

    async def provision(self, specs: List[NodeSpec]) -> List[ProvisionedNode]:
        self.calls.append(list(specs))
        return [
            ProvisionedNode(
                spec=spec,
                external_address=self.addresses[spec.name],
                instance_id=f"id-{spec.name}",
            )
            for spec in specs
        ]


def make_node(name: str, role: NodeRole, address: str = "127.0.0.1") -> ProvisionedNode:
    return ProvisionedNode(spec=NodeSpec(name=name, role=role), external_address=address)


@pytest.fixture
def node_factory():
    """Build a ProvisionedNode from (name, role, address)."""
    return make_node


@pytest.fixture
def provisioner_factory():
    """Build a StaticProvisioner from a name => address mapping."""
    return StaticProvisioner


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def control_plane() -> ProvisionedNode:
    return make_node("m1", NodeRole.control_plane, "35.0.0.1")


@pytest.fixture
def workers() -> List[ProvisionedNode]:
    return [
        make_node("w1", NodeRole.worker, "35.0.0.2"),
        make_node("w2", NodeRole.worker, "35.0.0.3"),
    ]


@pytest.fixture
def settings(tmp_path) -> BootstrapSettings:
    return BootstrapSettings(
        gcp_project="test-project",
        ssh_user="ubuntu",
        nodes=[
            NodeSpec(name="m1", role=NodeRole.control_plane),
            NodeSpec(name="w1", role=NodeRole.worker),
        ],
        overlay_manifests=[],
        manifest_dir=str(tmp_path / "manifests"),
        work_dir=str(tmp_path / "terraform"),
        readiness_delay=0.0,
        readiness_timeout=5.0,
        readiness_interval=0.05,
    )


@pytest.fixture
async def tcp_listener() -> AsyncGenerator[int, None]:
    """A local TCP server that accepts and immediately closes; yields its port."""

    async def _handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        writer.close()

    server = await asyncio.start_server(_handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        yield port
    finally:
        server.close()
        await server.wait_closed()


@pytest.fixture(scope="session")
def ca_pem() -> str:
    """PEM of a self-signed CA certificate, like /etc/kubernetes/pki/ca.crt."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "kubernetes")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
