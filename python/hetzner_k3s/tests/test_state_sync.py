"""
Tests for kubeconfig materialization and batched node labeling/tainting.
"""

from __future__ import annotations

import asyncio
import os
import stat
from pathlib import Path
from typing import List

from hetzner_k3s.deployment.provisioner import build_node_definitions
from hetzner_k3s.deployment.state_sync import (
    ClusterStateSync,
    owner_only_opener,
    rewrite_kubeconfig,
)
from hetzner_k3s.models.cluster import (
    ClusterResources,
    NodeDefinition,
    ResourceHandle,
    ResourceKind,
)
from hetzner_k3s.tests.fakes import (
    RAW_KUBECONFIG,
    FakeTransport,
    RecordingRunner,
    fast_connector,
    make_config,
    server,
)
from hetzner_k3s.utils.kubectl import Kubectl


def _sync(tmp_path: Path, runner: RecordingRunner) -> ClusterStateSync:
    path = str(tmp_path / "out" / "kubeconfig")
    return ClusterStateSync(
        fast_connector(FakeTransport()),
        Kubectl(path, runner=runner),
        cluster_name="prod",
        kubeconfig_path=path,
    )


def _definitions() -> List[NodeDefinition]:
    config = make_config(
        masters={
            "instance_type": "cpx21",
            "instance_count": 3,
            "labels": [{"key": "tier", "value": "control"}],
        },
        worker_node_pools=[
            {
                "name": "small",
                "instance_type": "cpx21",
                "instance_count": 2,
                "labels": {"tier": "small", "disk": "ssd"},
                "taints": [{"key": "dedicated", "value": "small:NoSchedule"}],
            },
            {"name": "big", "instance_type": "cpx51", "instance_count": 1},
        ],
    )
    resources = ClusterResources(
        network=ResourceHandle(kind=ResourceKind.NETWORK, id=1, name="prod"),
        firewall=ResourceHandle(kind=ResourceKind.FIREWALL, id=2, name="prod"),
        ssh_keys=[ResourceHandle(kind=ResourceKind.SSH_KEY, id=3, name="prod")],
    )
    return build_node_definitions(config, resources)


def test_rewrite_replaces_loopback_and_default() -> None:
    rewritten = rewrite_kubeconfig(RAW_KUBECONFIG, "203.0.113.9", "prod")

    assert "127.0.0.1" not in rewritten
    assert "default" not in rewritten
    assert rewritten.count("203.0.113.9") == RAW_KUBECONFIG.count("127.0.0.1")
    assert rewritten.count("prod") == RAW_KUBECONFIG.count("default")


def test_kubeconfig_is_written_owner_only(tmp_path: Path) -> None:
    sync = _sync(tmp_path, RecordingRunner())

    path = asyncio.run(
        sync.materialize_kubeconfig(server(1, "prod-cpx21-master1"), "203.0.113.9")
    )

    content = Path(path).read_text()
    assert "server: https://203.0.113.9:6443" in content
    assert "current-context: prod" in content
    assert "127.0.0.1" not in content
    mode = stat.S_IMODE(os.stat(path).st_mode)
    assert mode & (stat.S_IRWXG | stat.S_IRWXO) == 0


def test_new_files_are_created_owner_only(tmp_path: Path) -> None:
    path = str(tmp_path / "kubeconfig")
    old_umask = os.umask(0)
    try:
        os.close(owner_only_opener(path, os.O_WRONLY | os.O_CREAT))
    finally:
        os.umask(old_umask)

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


def test_existing_world_readable_kubeconfig_is_restricted(tmp_path: Path) -> None:
    path = tmp_path / "out" / "kubeconfig"
    path.parent.mkdir()
    path.write_text("stale\n")
    os.chmod(path, 0o644)

    asyncio.run(
        _sync(tmp_path, RecordingRunner()).materialize_kubeconfig(
            server(1, "prod-cpx21-master1"), "203.0.113.9"
        )
    )

    assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
    assert "stale" not in path.read_text()


def test_labels_and_taints_are_batched_per_group(tmp_path: Path) -> None:
    runner = RecordingRunner()
    sync = _sync(tmp_path, runner)

    asyncio.run(sync.label_and_taint(_definitions()))

    commands = [argv for argv, _ in runner.calls]
    assert commands == [
        [
            "kubectl",
            "label",
            "--overwrite",
            "nodes",
            "prod-cpx21-master1",
            "prod-cpx21-master2",
            "prod-cpx21-master3",
            "tier=control",
        ],
        [
            "kubectl",
            "label",
            "--overwrite",
            "nodes",
            "prod-cpx21-pool-small-worker1",
            "prod-cpx21-pool-small-worker2",
            "tier=small",
            "disk=ssd",
        ],
        [
            "kubectl",
            "taint",
            "--overwrite",
            "nodes",
            "prod-cpx21-pool-small-worker1",
            "prod-cpx21-pool-small-worker2",
            "dedicated=small:NoSchedule",
        ],
    ]
    kubeconfig = str(tmp_path / "out" / "kubeconfig")
    assert all(kwargs["env"] == {"KUBECONFIG": kubeconfig} for _, kwargs in runner.calls)


def test_groups_without_labels_or_taints_issue_no_calls(tmp_path: Path) -> None:
    runner = RecordingRunner()
    config = make_config()
    resources = ClusterResources(
        network=ResourceHandle(kind=ResourceKind.NETWORK, id=1, name="prod"),
        firewall=ResourceHandle(kind=ResourceKind.FIREWALL, id=2, name="prod"),
        ssh_keys=[],
    )

    asyncio.run(
        _sync(tmp_path, runner).label_and_taint(build_node_definitions(config, resources))
    )

    assert runner.calls == []
