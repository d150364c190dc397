"""
hetzner_k3s/deployment/state_sync.py

Post-bootstrap cluster state: the local kubeconfig and node labels/taints.
"""

from __future__ import annotations

import os
from itertools import groupby
from typing import List, Optional, Sequence, Tuple

import aiofiles

from hetzner_k3s.models.cluster import NodeDefinition, NodeRole, ServerInstance
from hetzner_k3s.utils.kubectl import Kubectl
from hetzner_k3s.utils.ssh import SSHConnector

REMOTE_KUBECONFIG_PATH = "/etc/rancher/k3s/k3s.yaml"
KUBECONFIG_MODE = 0o600


def owner_only_opener(path: str, flags: int) -> int:
    """`open` opener creating new files with KUBECONFIG_MODE instead of the umask default."""
    return os.open(path, flags, KUBECONFIG_MODE)


def rewrite_kubeconfig(raw: str, api_server_ip: str, cluster_name: str) -> str:
    """Point the k3s kubeconfig at the API address and rename 'default' to the cluster."""
    return raw.replace("127.0.0.1", api_server_ip).replace("default", cluster_name)


def node_groups(
    definitions: Sequence[NodeDefinition],
) -> List[Tuple[Optional[str], List[NodeDefinition]]]:
    """
    Masters as one group, then one group per worker pool, in definition order.
    The group key is None for masters and the pool name otherwise.
    """
    ordered = [d for d in definitions if d.role is NodeRole.MASTER] + [
        d for d in definitions if d.role is NodeRole.WORKER
    ]
    return [(key, list(group)) for key, group in groupby(ordered, key=lambda d: d.pool_name)]


class ClusterStateSync:
    def __init__(
        self,
        connector: SSHConnector,
        kubectl: Kubectl,
        *,
        cluster_name: str,
        kubeconfig_path: str,
    ) -> None:
        self._connector = connector
        self._kubectl = kubectl
        self._cluster_name = cluster_name
        self._kubeconfig_path = kubeconfig_path

    async def materialize_kubeconfig(
        self, first_master: ServerInstance, api_server_ip: str
    ) -> str:
        """
        Fetch the kubeconfig from the first master, rewrite it and save it with
        owner-only permissions.

        Returns:
            The local kubeconfig path.
        """
        raw = await self._connector.execute(
            first_master, f"cat {REMOTE_KUBECONFIG_PATH}", check=True
        )
        kubeconfig = rewrite_kubeconfig(raw, api_server_ip, self._cluster_name)

        directory = os.path.dirname(self._kubeconfig_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if os.path.exists(self._kubeconfig_path):
            os.chmod(self._kubeconfig_path, KUBECONFIG_MODE)
        async with aiofiles.open(
            self._kubeconfig_path, "w", encoding="utf-8", opener=owner_only_opener
        ) as f:
            await f.write(kubeconfig if kubeconfig.endswith("\n") else kubeconfig + "\n")
        print(f"Kubeconfig saved to {self._kubeconfig_path}.")
        return self._kubeconfig_path

    async def label_and_taint(self, definitions: Sequence[NodeDefinition]) -> None:
        """
        One label call and one taint call per group (masters, then each pool)
        that has labels or taints, naming all of the group's nodes at once.
        """
        for pool_name, group in node_groups(definitions):
            nodes = [d.server_name(self._cluster_name) for d in group]
            description = f"pool {pool_name}" if pool_name else "masters"
            labels = group[0].labels
            taints = group[0].taints
            if labels:
                print(f"Labeling nodes of {description}...")
                await self._kubectl.label_nodes(nodes, labels)
            if taints:
                print(f"Tainting nodes of {description}...")
                await self._kubectl.taint_nodes(nodes, taints)
