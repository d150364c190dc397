"""
hetzner_k3s/deployment/upgrade.py

Rolling k3s upgrades through the system-upgrade-controller: two Plan objects
(masters one at a time, then workers) are applied and the controller does
the rest. Progress is not polled here.
"""

from __future__ import annotations

from typing import Any, Dict, List

import yaml

from hetzner_k3s.models.config import K3S_VERSION_PATTERN
from hetzner_k3s.utils.config_file import update_k3s_version
from hetzner_k3s.utils.kubectl import Kubectl

UPGRADE_NAMESPACE = "system-upgrade"
UPGRADE_IMAGE = "rancher/k3s-upgrade"
MASTER_ROLE_LABEL = "node-role.kubernetes.io/master"


def worker_upgrade_concurrency(workers_count: int) -> int:
    """All workers but one at a time, and at least one."""
    return max(workers_count - 1, 1)


def _plan(
    name: str, version: str, concurrency: int, operator: str, extra_spec: Dict[str, Any]
) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "concurrency": concurrency,
        "version": version,
        "nodeSelector": {
            "matchExpressions": [
                {"key": MASTER_ROLE_LABEL, "operator": operator, "values": ["true"]}
            ]
        },
        "serviceAccountName": "system-upgrade",
    }
    spec.update(extra_spec)
    return {
        "apiVersion": "upgrade.cattle.io/v1",
        "kind": "Plan",
        "metadata": {
            "name": name,
            "namespace": UPGRADE_NAMESPACE,
            "labels": {"k3s-upgrade": name.rsplit("-", 1)[-1]},
        },
        "spec": spec,
    }


def upgrade_plans(new_version: str, workers_count: int) -> List[Dict[str, Any]]:
    """The server plan (masters, one at a time) and the agent plan (workers)."""
    if not K3S_VERSION_PATTERN.match(new_version):
        raise ValueError(f"Invalid k3s version: {new_version!r}")

    server = _plan(
        "k3s-server",
        new_version,
        1,
        "In",
        {
            "tolerations": [
                {
                    "key": "CriticalAddonsOnly",
                    "operator": "Equal",
                    "value": "true",
                    "effect": "NoExecute",
                }
            ],
            "cordon": True,
            "upgrade": {"image": UPGRADE_IMAGE},
        },
    )
    agent = _plan(
        "k3s-agent",
        new_version,
        worker_upgrade_concurrency(workers_count),
        "NotIn",
        {
            "prepare": {"image": UPGRADE_IMAGE, "args": ["prepare", "k3s-server"]},
            "cordon": True,
            "upgrade": {"image": UPGRADE_IMAGE},
        },
    )
    return [server, agent]


def render_upgrade_plans(new_version: str, workers_count: int) -> str:
    return yaml.safe_dump_all(
        upgrade_plans(new_version, workers_count), default_flow_style=False, sort_keys=False
    )


class UpgradeController:
    """
    Args:
        kubectl: Bound to the cluster's kubeconfig.
        config_path: Cluster file whose k3s_version is rewritten on success.
        workers_count: Configured number of workers across all pools.
    """

    def __init__(self, kubectl: Kubectl, *, config_path: str, workers_count: int) -> None:
        self._kubectl = kubectl
        self._config_path = config_path
        self._workers_count = workers_count

    async def upgrade(self, new_version: str) -> None:
        manifest = render_upgrade_plans(new_version, self._workers_count)
        print("Creating upgrade plans for controlplane and workers...")
        await self._kubectl.apply_manifest(manifest)
        await update_k3s_version(self._config_path, new_version)
        print(
            "Upgrade will now start. Run `watch kubectl get nodes` to see the nodes "
            "being upgraded. This should take a few minutes for a small cluster.\n"
            "The API server may be briefly unavailable during the upgrade of the "
            "controlplane."
        )
