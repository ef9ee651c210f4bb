"""End-to-end bootstrap runs against in-memory provisioner and executor."""

import pytest

from kubestrap.deployment.bootstrap import bootstrap_cluster, check_node_specs
from kubestrap.deployment.control_plane import ADMIN_CONF
from kubestrap.deployment.join import CA_CERT_PATH
from kubestrap.errors import ConfigurationError, PreparationError, ReadinessTimeout
from kubestrap.models.cluster import NodeRole, NodeSpec
from kubestrap.utils.async_command_runner import CommandError
from kubestrap.utils.pki import discovery_hash

TOKEN = "abcdef.0123456789abcdef"
PROBE = ["sudo", "kubectl", "--kubeconfig", ADMIN_CONF, "get", "nodes"]
INIT = ["sudo", "kubeadm", "init", "--pod-network-cidr", "192.168.0.0/16"]


def _script_cluster(executor, ca_pem, *, initialized=False):
    if initialized:
        executor.on("m1", PROBE, "m1 Ready master")
    else:
        executor.on("m1", PROBE, CommandError("connection refused", 1), "m1 Ready master")
    executor.on("m1", ["printenv", "HOME"], "/home/ubuntu")
    executor.on("m1", ["id", "-u"], "1000")
    executor.on("m1", ["id", "-g"], "1000")
    executor.on("m1", ["hostname", "-I"], "10.128.0.2 172.17.0.1")
    executor.on("m1", ["sudo", "kubeadm", "token", "create"], TOKEN)
    executor.on("m1", ["sudo", "cat", CA_CERT_PATH], ca_pem)


@pytest.fixture
def local_settings(settings, tcp_listener):
    return settings.model_copy(update={"ssh_port": tcp_listener})


@pytest.fixture
def provisioner(provisioner_factory):
    return provisioner_factory({"m1": "127.0.0.1", "w1": "127.0.0.1"})


async def test_fresh_cluster(executor, provisioner, local_settings, ca_pem):
    _script_cluster(executor, ca_pem)

    result = await bootstrap_cluster(local_settings, provisioner, executor)

    assert result.succeeded
    assert result.joined == ["w1"]
    assert result.role_groups.to_mapping("name") == {
        "control-plane": ["m1"],
        "worker": ["w1"],
    }
    assert result.role_groups.to_mapping() == {
        "control-plane": ["127.0.0.1"],
        "worker": ["127.0.0.1"],
    }
    assert result.credential is not None
    assert result.credential.ca_cert_hash == discovery_hash(ca_pem)

    m1 = executor.commands_on("m1")
    w1 = executor.commands_on("w1")
    assert m1.count(INIT) == 1
    assert m1.index(PROBE) < m1.index(INIT)
    assert w1[-1] == [
        "sudo", "kubeadm", "join", "--token", TOKEN, "10.128.0.2:6443",
        "--discovery-token-ca-cert-hash", f"sha256:{discovery_hash(ca_pem)}",
    ]
    # Workers never run control-plane commands.
    assert not any(argv[:3] == ["sudo", "kubeadm", "init"] for argv in w1)
    assert not any(argv[:3] == ["sudo", "kubeadm", "token"] for argv in w1)
    # Both nodes were prepared before anything cluster-related happened.
    assert ["sudo", "apt-mark", "hold", "kubeadm", "kubelet", "kubectl"] in w1


async def test_rerun_skips_init(executor, provisioner, local_settings, ca_pem):
    _script_cluster(executor, ca_pem, initialized=True)

    result = await bootstrap_cluster(local_settings, provisioner, executor)

    assert result.succeeded
    assert INIT not in executor.commands_on("m1")
    assert len(provisioner.calls) == 1


async def test_control_plane_preparation_failure_aborts(
    executor, provisioner, local_settings, ca_pem
):
    _script_cluster(executor, ca_pem)
    executor.on("m1", ["sudo", "apt-get", "update"], CommandError("mirror down", 100))

    with pytest.raises(PreparationError) as excinfo:
        await bootstrap_cluster(local_settings, provisioner, executor)

    assert excinfo.value.node == "m1"
    assert PROBE not in executor.commands_on("m1")


async def test_worker_preparation_failure_is_node_scoped(
    executor, provisioner, local_settings, ca_pem
):
    _script_cluster(executor, ca_pem)
    executor.on("w1", ["sudo", "apt-get", "update"], CommandError("mirror down", 100))

    result = await bootstrap_cluster(local_settings, provisioner, executor)

    assert not result.succeeded
    assert [(f.node, f.stage) for f in result.failures] == [("w1", "prepare")]
    assert result.joined == []
    assert not any(argv[:3] == ["sudo", "kubeadm", "join"] for argv in executor.commands_on("w1"))
    assert INIT in executor.commands_on("m1")


async def test_credential_failure_skips_workers(
    executor, provisioner, local_settings, ca_pem
):
    _script_cluster(executor, ca_pem)
    executor.on("m1", ["sudo", "kubeadm", "token"], CommandError("apiserver down", 1))

    result = await bootstrap_cluster(local_settings, provisioner, executor)

    assert result.credential is None
    assert [(f.node, f.stage) for f in result.failures] == [("m1", "join"), ("w1", "join")]
    assert "skipped" in result.failures[1].message


async def test_unreachable_node_aborts_before_any_command(
    executor, provisioner, settings, ca_pem
):
    closed = settings.model_copy(update={"readiness_timeout": 0})

    with pytest.raises(ReadinessTimeout):
        await bootstrap_cluster(closed, provisioner, executor)
    assert executor.calls == []


async def test_kubeconfig_is_fetched(executor, provisioner, local_settings, ca_pem, tmp_path):
    _script_cluster(executor, ca_pem)
    dest = tmp_path / "admin.conf"

    await bootstrap_cluster(local_settings, provisioner, executor, kubeconfig_out=str(dest))

    assert executor.fetched == [("m1", ".kube/config", str(dest))]


def test_node_list_needs_one_control_plane():
    check_node_specs([NodeSpec(name="m1", role=NodeRole.control_plane)])
    with pytest.raises(ConfigurationError):
        check_node_specs([NodeSpec(name="w1", role=NodeRole.worker)])
    with pytest.raises(ConfigurationError):
        check_node_specs(
            [
                NodeSpec(name="m1", role=NodeRole.control_plane),
                NodeSpec(name="m2", role=NodeRole.control_plane),
            ]
        )


async def test_no_control_plane_provisions_nothing(executor, provisioner, settings):
    only_workers = settings.model_copy(
        update={"nodes": [NodeSpec(name="w1", role=NodeRole.worker)]}
    )
    with pytest.raises(ConfigurationError):
        await bootstrap_cluster(only_workers, provisioner, executor)
    assert provisioner.calls == []


async def test_malformed_address_range_keeps_result(
    executor, provisioner, local_settings, ca_pem
):
    _script_cluster(executor, ca_pem)
    bad = local_settings.model_copy(update={"private_address_range": "10.0.0.0/33"})

    result = await bootstrap_cluster(bad, provisioner, executor)

    assert result.credential is None
    assert [(f.node, f.stage) for f in result.failures] == [("m1", "join"), ("w1", "join")]
    assert "invalid private address range" in result.failures[0].message
