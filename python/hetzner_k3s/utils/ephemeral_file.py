"""
hetzner_k3s/utils/ephemeral_file.py

An async context manager that reserves paths for short-lived local files
(the downloaded k3s binary and install script) inside a private temporary
directory, and removes everything on exit.
"""

import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Dict, List, Optional


@asynccontextmanager
async def ephemeral_manager(
    file_names: List[str],
    *,
    prefix: str = "hetzner-k3s-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[Dict[str, str], None]:
    """
    Create a private directory and yield one path per requested file name.

    The files themselves are not created; callers write them. On exit the
    directory is removed together with whatever was written into it.

    Args:
        file_names: Bare file names (no separators), e.g. ["k3s", "install.sh"].
        prefix: Prefix for the temporary directory name.
        parent_dir: Where to create the directory. Defaults to the system temp dir.

    Yields:
        Dict of file name -> absolute path.

    Raises:
        ValueError: If no names are given or a name contains a path separator.
    """
    if not file_names:
        raise ValueError("ephemeral_manager needs at least one file name.")
    if any(os.sep in name or not name for name in file_names):
        raise ValueError(f"Invalid ephemeral file names: {file_names}")

    ephemeral_dir = tempfile.mkdtemp(dir=parent_dir, prefix=prefix)
    try:
        yield {name: os.path.join(ephemeral_dir, name) for name in file_names}
    finally:
        shutil.rmtree(ephemeral_dir, ignore_errors=True)
