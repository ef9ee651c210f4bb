"""
kubestrap/deployment/readiness.py

Waits for nodes to accept TCP connections (SSH by default) before anything
tries to configure them.

A timeout of zero or less fails immediately with ReadinessTimeout, without
attempting a connection.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import List, Optional

from kubestrap.errors import ReadinessTimeout
from kubestrap.models.cluster import ProvisionedNode
from kubestrap.utils.async_bounded import gather_bounded

logger = logging.getLogger(__name__)


async def wait_for_port(
    host: str,
    port: int,
    *,
    timeout: float,
    interval: float = 1.0,
    delay: float = 0.0,
    node: Optional[str] = None,
) -> None:
    """
    Block until `host:port` accepts a TCP connection.

    Args:
        host: Address to connect to.
        port: TCP port.
        timeout: Overall deadline in seconds, counted from the call.
        interval: Pause between failed attempts.
        delay: Pause before the first attempt (still inside the deadline).
        node: Node name, for error reporting.

    Raises:
        ReadinessTimeout: If no connection succeeded before the deadline.
    """
    label = node or host
    if timeout <= 0:
        raise ReadinessTimeout(
            f"{host}:{port} not checked (timeout {timeout}s)", node=label
        )

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    if delay > 0:
        await asyncio.sleep(min(delay, timeout))

    attempts = 0
    last_error: Optional[BaseException] = None
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            break
        attempts += 1
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=remaining
            )
        except (OSError, asyncio.TimeoutError) as exc:
            last_error = exc
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))
            continue

        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        logger.info("%s reachable on %s:%d after %d attempt(s)", label, host, port, attempts)
        return

    raise ReadinessTimeout(
        f"{host}:{port} unreachable after {timeout}s ({attempts} attempt(s); "
        f"last error: {last_error!r})",
        node=label,
    )


async def wait_for_nodes(
    nodes: List[ProvisionedNode],
    *,
    port: int = 22,
    timeout: float = 90.0,
    interval: float = 1.0,
    delay: float = 0.0,
    limit: int = 8,
) -> None:
    """
    Wait for every node's external address. All nodes are polled to completion;
    the first ReadinessTimeout (in node order) is then raised.
    """

    async def _wait(node: ProvisionedNode) -> None:
        await wait_for_port(
            node.external_address,
            port,
            timeout=timeout,
            interval=interval,
            delay=delay,
            node=node.name,
        )

    results = await gather_bounded(_wait, nodes, limit=limit, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result
