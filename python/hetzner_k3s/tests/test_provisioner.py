"""
Tests for node definitions, server payloads and ServerProvisioner ordering.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List

import pytest
import yaml

from hetzner_k3s.cloud.resources import InfraResourceManager
from hetzner_k3s.cloud.servers import cloud_init_user_data, server_create_spec
from hetzner_k3s.deployment.provisioner import (
    ProvisioningError,
    ServerProvisioner,
    assign_jump_hosts,
    build_node_definitions,
    derive_jump_host,
)
from hetzner_k3s.models.cluster import (
    ClusterResources,
    NodeDefinition,
    ResourceHandle,
    ResourceKind,
)
from hetzner_k3s.models.config import ClusterConfig
from hetzner_k3s.tests.fakes import (
    FakeHetznerClient,
    FakeTransport,
    fast_connector,
    make_config,
    server,
)

POOLS: List[Dict[str, Any]] = [
    {"name": "small", "instance_type": "cpx21", "instance_count": 2},
    {"name": "big", "instance_type": "cpx51", "instance_count": 1, "location": "fsn1"},
]


def _resources(config: ClusterConfig) -> ClusterResources:
    identity = config.identity
    groups = {}
    if config.high_availability:
        groups = {
            name: ResourceHandle(kind=ResourceKind.PLACEMENT_GROUP, id=100 + i, name=name)
            for i, name in enumerate(
                [identity.placement_group_name()]
                + [identity.placement_group_name(p.name) for p in config.worker_node_pools]
            )
        }
    return ClusterResources(
        network=ResourceHandle(kind=ResourceKind.NETWORK, id=1, name="prod"),
        firewall=ResourceHandle(kind=ResourceKind.FIREWALL, id=2, name="prod"),
        ssh_keys=[ResourceHandle(kind=ResourceKind.SSH_KEY, id=3, name="prod")],
        placement_groups=groups,
    )


def _definitions(masters: int) -> List[NodeDefinition]:
    config = make_config(
        masters={"instance_type": "cpx21", "instance_count": masters},
        worker_node_pools=POOLS,
    )
    return build_node_definitions(config, _resources(config))


def _provisioner(
    client: FakeHetznerClient, transport: FakeTransport, high_availability: bool
) -> ServerProvisioner:
    resources = InfraResourceManager(client, make_config().identity)  # type: ignore[arg-type]
    return ServerProvisioner(
        resources, fast_connector(transport), high_availability=high_availability
    )


def test_definitions_are_masters_then_pools_in_order() -> None:
    definitions = _definitions(masters=3)

    assert [d.server_name("prod") for d in definitions] == [
        "prod-cpx21-master1",
        "prod-cpx21-master2",
        "prod-cpx21-master3",
        "prod-cpx21-pool-small-worker1",
        "prod-cpx21-pool-small-worker2",
        "prod-cpx51-pool-big-worker1",
    ]
    assert definitions[0].is_first_master
    assert not any(d.is_first_master for d in definitions[1:])
    assert definitions[-1].location == "fsn1"
    assert definitions[3].location == "nbg1"
    assert definitions[0].placement_group_id == 100
    assert definitions[-1].placement_group_id == 102


def test_single_master_definitions_have_no_placement_groups() -> None:
    assert all(d.placement_group_id is None for d in _definitions(masters=1))


def test_only_first_master_keeps_public_ipv4_in_ha_with_public_net() -> None:
    config = make_config(
        masters={"instance_type": "cpx21", "instance_count": 3},
        additional_server_settings={"public_net": {"enable_ipv6": False}},
    )

    definitions = build_node_definitions(config, _resources(config))

    masters = [d for d in definitions if d.role.value == "master"]
    assert masters[0].server_settings["public_net"]["enable_ipv4"] is True
    assert all(m.server_settings["public_net"]["enable_ipv4"] is False for m in masters[1:])
    assert masters[1].server_settings["public_net"]["enable_ipv6"] is False


def test_cloud_init_installs_marker_and_reboots() -> None:
    definition = _definitions(masters=1)[0].model_copy(
        update={
            "additional_packages": ["vim"],
            "post_create_commands": ["apt update"],
        }
    )

    user_data = cloud_init_user_data(definition)

    assert user_data.startswith("#cloud-config\n")
    body = yaml.safe_load(user_data)
    assert body["packages"] == ["fail2ban", "wireguard", "vim"]
    assert 'echo "@reboot echo true > /etc/ready" >> /etc/cron_bkp' in body["runcmd"]
    assert "apt update" in body["runcmd"]
    assert body["runcmd"][-1] == "shutdown -r now"


def test_cloud_init_does_not_add_a_second_reboot() -> None:
    definition = _definitions(masters=1)[0].model_copy(
        update={"post_create_commands": ["apt update", "reboot"]}
    )

    body = yaml.safe_load(cloud_init_user_data(definition))

    assert "shutdown -r now" not in body["runcmd"]
    assert body["runcmd"][-1] == "reboot"


def test_server_spec_carries_labels_and_references() -> None:
    definition = _definitions(masters=3)[4]

    spec = server_create_spec(definition, "prod")

    assert spec["labels"] == {"cluster": "prod", "role": "worker"}
    assert spec["firewalls"] == [{"firewall": 2}]
    assert spec["networks"] == [1]
    assert spec["ssh_keys"] == [3]
    assert spec["placement_group"] == 101
    assert spec["server_type"] == "cpx21"


def test_first_master_is_ready_before_any_other_server_is_created() -> None:
    events: List[str] = []
    client = FakeHetznerClient(events)
    transport = FakeTransport(events=events)
    definitions = _definitions(masters=3)

    instances = asyncio.run(_provisioner(client, transport, True).provision(definitions))

    first_ready = events.index(f"ready:{instances[0].public_ipv4}")
    other_creates = [
        i for i, e in enumerate(events) if e.startswith("create:") and not e.endswith("master1")
    ]
    assert len(other_creates) == len(definitions) - 1
    assert all(first_ready < i for i in other_creates)


def test_ha_routes_every_other_server_through_first_master() -> None:
    client = FakeHetznerClient()
    transport = FakeTransport()

    instances = asyncio.run(
        _provisioner(client, transport, True).provision(_definitions(masters=3))
    )

    first = instances[0]
    assert first.jump_host is None
    assert all(i.jump_host == first.public_ipv4 for i in instances[1:])


def test_single_master_has_no_jump_hosts() -> None:
    client = FakeHetznerClient()
    transport = FakeTransport()

    instances = asyncio.run(
        _provisioner(client, transport, False).provision(_definitions(masters=1))
    )

    assert all(i.jump_host is None for i in instances)


def test_fleet_size_matches_definitions() -> None:
    client = FakeHetznerClient()
    definitions = _definitions(masters=3)

    instances = asyncio.run(
        _provisioner(client, FakeTransport(), True).provision(definitions)
    )

    assert len(instances) == len(definitions)
    assert [i.name for i in instances] == [d.server_name("prod") for d in definitions]


def test_missing_instance_aborts_provisioning() -> None:
    client = FakeHetznerClient()
    client.empty_response.add("prod-cpx21-pool-small-worker2")

    with pytest.raises(ProvisioningError):
        asyncio.run(
            _provisioner(client, FakeTransport(), True).provision(_definitions(masters=3))
        )


def test_rejected_first_master_aborts_before_other_creates() -> None:
    client = FakeHetznerClient()
    client.reject.add("prod-cpx21-master1")

    with pytest.raises(ProvisioningError):
        asyncio.run(
            _provisioner(client, FakeTransport(), True).provision(_definitions(masters=3))
        )

    assert len(client.creates("servers")) == 1


def test_existing_servers_are_reused() -> None:
    client = FakeHetznerClient()
    definitions = _definitions(masters=1)
    asyncio.run(_provisioner(client, FakeTransport(), False).provision(definitions))

    asyncio.run(_provisioner(client, FakeTransport(), False).provision(definitions))

    assert len(client.creates("servers")) == len(definitions)


def test_node_without_public_ip_gets_jump_host_even_without_ha() -> None:
    first = server(1, "prod-cpx21-master1")
    private_only = server(2, "prod-cpx21-pool-small-worker1", public=False)

    assert derive_jump_host(private_only, first, high_availability=False) == "203.0.113.1"
    assert derive_jump_host(first, first, high_availability=True) is None


def test_assign_jump_hosts_on_reread_servers() -> None:
    masters = [server(1, "prod-cpx21-master1"), server(2, "prod-cpx21-master2")]
    workers = [server(3, "prod-cpx21-pool-small-worker1")]

    new_masters, new_workers = assign_jump_hosts(masters, workers, high_availability=True)

    assert new_masters[0].jump_host is None
    assert new_masters[1].jump_host == "203.0.113.1"
    assert new_workers[0].jump_host == "203.0.113.1"
    assert masters[1].jump_host is None
