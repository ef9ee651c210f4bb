"""Tests for waiting on TCP reachability."""

import asyncio
import socket

import pytest

from kubestrap.deployment import readiness
from kubestrap.deployment.readiness import wait_for_nodes, wait_for_port
from kubestrap.errors import ReadinessTimeout
from kubestrap.models.cluster import NodeRole


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def test_listening_port_returns(tcp_listener):
    await wait_for_port("127.0.0.1", tcp_listener, timeout=5, interval=0.05)


async def test_closed_port_times_out():
    port = _unused_port()
    with pytest.raises(ReadinessTimeout) as excinfo:
        await wait_for_port("127.0.0.1", port, timeout=0.3, interval=0.05, node="w9")
    assert excinfo.value.node == "w9"
    assert excinfo.value.stage == "readiness"


async def test_zero_timeout_fails_without_connecting(monkeypatch):
    attempts = []

    async def _never(*args, **kwargs):
        attempts.append(args)
        raise AssertionError("should not connect")

    monkeypatch.setattr(readiness.asyncio, "open_connection", _never)
    with pytest.raises(ReadinessTimeout):
        await wait_for_port("127.0.0.1", 22, timeout=0)
    assert attempts == []


async def test_port_opening_late_is_detected():
    port = _unused_port()

    async def _handle(reader, writer):
        writer.close()

    async def _open_later():
        await asyncio.sleep(0.2)
        return await asyncio.start_server(_handle, "127.0.0.1", port)

    opener = asyncio.ensure_future(_open_later())
    await wait_for_port("127.0.0.1", port, timeout=5, interval=0.05)
    server = await opener
    server.close()
    await server.wait_closed()


async def test_wait_for_nodes_reports_unreachable_node(tcp_listener, node_factory):
    closed = _unused_port()
    nodes = [
        node_factory("m1", NodeRole.control_plane, "127.0.0.1"),
    ]
    await wait_for_nodes(nodes, port=tcp_listener, timeout=5, interval=0.05)

    with pytest.raises(ReadinessTimeout) as excinfo:
        await wait_for_nodes(nodes, port=closed, timeout=0.3, interval=0.05)
    assert excinfo.value.node == "m1"
