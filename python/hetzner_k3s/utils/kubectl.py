"""
hetzner_k3s/utils/kubectl.py

Runs the local `kubectl` binary against the cluster, with KUBECONFIG bound to
the kubeconfig written during bootstrap.

Covers what the provisioner needs: applying manifests (inline or by URL),
secrets, and batched node label/taint commands.
"""

from __future__ import annotations

import base64
import shutil
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import yaml

from hetzner_k3s.utils.async_command_runner import run_command

CommandRunner = Callable[..., Awaitable[str]]


class KubectlNotFoundError(RuntimeError):
    """`kubectl` is not on PATH."""


def check_kubectl() -> str:
    """
    Return the path of the kubectl binary.

    Raises:
        KubectlNotFoundError: If kubectl cannot be found on PATH.
    """
    path = shutil.which("kubectl")
    if path is None:
        raise KubectlNotFoundError("Please ensure kubectl is installed and in your PATH.")
    return path


class Kubectl:
    """
    kubectl bound to one kubeconfig.

    Args:
        kubeconfig_path: Exported as KUBECONFIG for every call.
        runner: Replaces run_command (tests pass a recorder).
    """

    def __init__(self, kubeconfig_path: str, *, runner: Optional[CommandRunner] = None) -> None:
        self._kubeconfig_path = kubeconfig_path
        self._runner: CommandRunner = runner or run_command

    async def run(self, args: Sequence[str], *, input_data: Optional[str] = None) -> str:
        return await self._runner(
            ["kubectl", *args],
            env={"KUBECONFIG": self._kubeconfig_path},
            input_data=input_data,
            sensitive=False,
        )

    async def apply_manifest(self, manifest: str) -> str:
        """`kubectl apply -f -` with an inline YAML document (or stream)."""
        return await self.run(["apply", "-f", "-"], input_data=manifest)

    async def apply_url(self, url: str) -> str:
        return await self.run(["apply", "-f", url])

    async def apply_secret(self, name: str, namespace: str, data: Dict[str, str]) -> str:
        """Create or update an Opaque secret; values are base64-encoded here."""
        encoded = {
            k: base64.b64encode(v.encode("utf-8")).decode("utf-8") for k, v in data.items()
        }
        manifest = {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": name, "namespace": namespace},
            "type": "Opaque",
            "data": encoded,
        }
        return await self.apply_manifest(yaml.safe_dump(manifest, sort_keys=False))

    async def label_nodes(self, nodes: Sequence[str], labels: Dict[str, str]) -> str:
        """One `kubectl label --overwrite nodes` call for all `nodes`."""
        pairs: List[str] = [f"{k}={v}" for k, v in labels.items()]
        return await self.run(["label", "--overwrite", "nodes", *nodes, *pairs])

    async def taint_nodes(self, nodes: Sequence[str], taints: Dict[str, str]) -> str:
        """
        One `kubectl taint --overwrite nodes` call for all `nodes`. Taint values
        carry their effect, e.g. {'dedicated': 'gpu:NoSchedule'}.
        """
        pairs: List[str] = [f"{k}={v}" for k, v in taints.items()]
        return await self.run(["taint", "--overwrite", "nodes", *nodes, *pairs])
