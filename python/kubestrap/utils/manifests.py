"""
kubestrap/utils/manifests.py

Downloads Kubernetes manifests from their pinned URLs into local files with a
single shared aiohttp session.
"""

from __future__ import annotations

import os
from typing import List, Optional

import aiofiles
import aiohttp

from kubestrap.models.settings import ManifestSource


class ManifestFetchError(Exception):
    """Raised when a manifest cannot be downloaded or written locally."""


async def fetch_manifest(
    session: aiohttp.ClientSession, source: ManifestSource, dest_dir: str
) -> str:
    """
    Download one manifest to `dest_dir/<source.name>`, overwriting any
    previous copy.

    Returns:
        str: The local file path.

    Raises:
        ManifestFetchError: On HTTP errors, network errors or an empty body.
    """
    dest = os.path.join(dest_dir, source.name)
    try:
        async with session.get(source.url) as resp:
            if resp.status != 200:
                raise ManifestFetchError(
                    f"GET {source.url} returned HTTP {resp.status}"
                )
            body = await resp.read()
    except aiohttp.ClientError as exc:
        raise ManifestFetchError(f"GET {source.url} failed: {exc}") from exc

    if not body.strip():
        raise ManifestFetchError(f"GET {source.url} returned an empty document")

    try:
        async with aiofiles.open(dest, "wb") as fh:
            await fh.write(body)
    except OSError as exc:
        raise ManifestFetchError(f"Cannot write {dest}: {exc}") from exc
    return dest


async def fetch_manifests(
    sources: List[ManifestSource],
    dest_dir: str,
    *,
    timeout: float = 60.0,
    session: Optional[aiohttp.ClientSession] = None,
) -> List[str]:
    """
    Download every manifest in order and return the local paths in the same order.
    A caller-provided session is used as-is and left open.
    """
    os.makedirs(dest_dir, exist_ok=True)

    if session is not None:
        return [await fetch_manifest(session, src, dest_dir) for src in sources]

    async with aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=timeout)
    ) as own_session:
        return [await fetch_manifest(own_session, src, dest_dir) for src in sources]
