"""
hetzner_k3s/deployment/artifacts.py

Downloads the two files every node needs before installing k3s: the static
k3s binary for the configured release and the get.k3s.io install script.
They are fetched once per run into an ephemeral directory and uploaded to
each node by the bootstrap.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict
from urllib.parse import quote

import aiofiles
import aiohttp

from hetzner_k3s.deployment.install_commands import INSTALL_SCRIPT_PATH, K3S_BINARY_PATH
from hetzner_k3s.models.ssh import Uploads
from hetzner_k3s.utils.async_retry import async_retry
from hetzner_k3s.utils.ephemeral_file import ephemeral_manager

INSTALL_SCRIPT_URL = "https://get.k3s.io"
K3S_RELEASE_URL = "https://github.com/k3s-io/k3s/releases/download/{version}/k3s"

_CHUNK_SIZE = 1 << 16


def k3s_binary_url(version: str) -> str:
    return K3S_RELEASE_URL.format(version=quote(version, safe=""))


@async_retry(retries=3, delay=2.0, noisy=True)
async def download_file(session: aiohttp.ClientSession, url: str, path: str) -> None:
    """Stream `url` into `path`, raising aiohttp.ClientResponseError on HTTP errors."""
    async with session.get(url) as resp:
        resp.raise_for_status()
        async with aiofiles.open(path, "wb") as f:
            async for chunk in resp.content.iter_chunked(_CHUNK_SIZE):
                await f.write(chunk)


@asynccontextmanager
async def staged_artifacts(version: str) -> AsyncGenerator[Uploads, None]:
    """
    Download the k3s binary and the install script, yielding the uploads map
    (local path -> remote path). The local copies are removed on exit.
    """
    async with ephemeral_manager(["k3s", "install_k3s.sh"]) as paths:
        print(f"Downloading k3s {version} and the install script...")
        timeout = aiohttp.ClientTimeout(total=600)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            await download_file(session, k3s_binary_url(version), paths["k3s"])
            await download_file(session, INSTALL_SCRIPT_URL, paths["install_k3s.sh"])
        print("...downloads complete.")

        uploads: Dict[str, str] = {
            paths["k3s"]: K3S_BINARY_PATH,
            paths["install_k3s.sh"]: INSTALL_SCRIPT_PATH,
        }
        yield uploads
