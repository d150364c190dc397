"""
hetzner_k3s/deployment/cluster.py

The three cluster operations behind the CLI.

create_cluster:
  1) Ensure network, firewall, SSH keys and, for HA clusters, placement
     groups and the API load balancer.
  2) Provision every server (first master first) and wait for SSH.
  3) Re-read the cluster's servers, assign jump hosts, bootstrap k3s.
  4) Label/taint nodes and deploy the add-ons.

delete_cluster removes every resource create_cluster made; upgrade_cluster
hands a new version to the system-upgrade-controller.
"""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Tuple

from hetzner_k3s.cloud.client import AsyncHetznerClient
from hetzner_k3s.cloud.resources import (
    InfraResourceManager,
    firewall_spec,
    load_balancer_spec,
    placement_group_spec,
)
from hetzner_k3s.deployment.addons import deploy_addons
from hetzner_k3s.deployment.artifacts import staged_artifacts
from hetzner_k3s.deployment.bootstrap import BootstrapProtocol
from hetzner_k3s.deployment.provisioner import (
    ProvisioningError,
    ServerProvisioner,
    assign_jump_hosts,
    build_node_definitions,
)
from hetzner_k3s.deployment.state_sync import ClusterStateSync
from hetzner_k3s.deployment.upgrade import UpgradeController
from hetzner_k3s.models.cluster import (
    ClusterResources,
    ResourceHandle,
    ResourceKind,
    ServerInstance,
)
from hetzner_k3s.models.config import ClusterConfig
from hetzner_k3s.models.ssh import SSHSettings
from hetzner_k3s.utils.config_file import hetzner_settings
from hetzner_k3s.utils.kubectl import Kubectl, check_kubectl
from hetzner_k3s.utils.ssh import SSHConnector


def placement_group_names(config: ClusterConfig) -> List[str]:
    identity = config.identity
    return [identity.placement_group_name()] + [
        identity.placement_group_name(pool.name)
        for pool in config.worker_node_pools
        if pool.instance_count > 0
    ]


async def ensure_shared_resources(
    resources: InfraResourceManager, config: ClusterConfig
) -> ClusterResources:
    """Resolve everything servers reference, before any server is created."""
    identity = config.identity
    network = await resources.ensure_network(
        location=config.location, existing_network=config.existing_network
    )
    firewall = await resources.ensure(
        ResourceKind.FIREWALL,
        identity.firewall_name,
        firewall_spec(
            identity,
            ssh_networks=config.ssh_allowed_networks,
            api_networks=config.api_allowed_networks,
            high_availability=config.high_availability,
        ),
    )

    ssh_keys = [await resources.ensure_ssh_key(config.public_ssh_key_path)]
    for selector in config.default_ssh_key_labels:
        for key, value in selector.items():
            ssh_keys += await resources.find_ssh_keys_by_label(key, value)
    unique_keys = list({handle.id: handle for handle in ssh_keys}.values())

    placement_groups: Dict[str, ResourceHandle] = {}
    load_balancer: Optional[ResourceHandle] = None
    if config.high_availability:
        for name in placement_group_names(config):
            placement_groups[name] = await resources.ensure(
                ResourceKind.PLACEMENT_GROUP, name, placement_group_spec()
            )
        load_balancer = await resources.ensure(
            ResourceKind.LOAD_BALANCER,
            identity.load_balancer_name,
            load_balancer_spec(identity, network.id),
        )

    return ClusterResources(
        network=network,
        firewall=firewall,
        ssh_keys=unique_keys,
        placement_groups=placement_groups,
        load_balancer=load_balancer,
    )


async def resolve_api_server_ip(
    resources: InfraResourceManager,
    shared: ClusterResources,
    first_master: ServerInstance,
) -> str:
    """The load balancer's public IP for HA clusters, else the first master's."""
    if shared.load_balancer is None:
        if not first_master.public_ipv4:
            raise ProvisioningError(f"First master {first_master.name} has no public IPv4.")
        return first_master.public_ipv4

    ip = shared.load_balancer.public_ipv4
    if ip is None:
        refreshed = await resources.find(ResourceKind.LOAD_BALANCER, shared.load_balancer.name)
        ip = refreshed.public_ipv4 if refreshed else None
    if ip is None:
        raise ProvisioningError(
            f"Load balancer {shared.load_balancer.name} has no public IPv4 yet."
        )
    return ip


async def cluster_nodes(
    resources: InfraResourceManager, high_availability: bool
) -> Tuple[List[ServerInstance], List[ServerInstance]]:
    """Masters and workers of the cluster, sorted by name, with jump hosts."""
    servers = await resources.list_cluster_servers()
    masters = [s for s in servers if s.is_master]
    workers = [s for s in servers if s.is_worker]
    return assign_jump_hosts(masters, workers, high_availability)


def _ssh_connector(config: ClusterConfig) -> SSHConnector:
    return SSHConnector(
        SSHSettings(
            private_key_path=config.private_ssh_key_path,
            verify_host_key=config.verify_host_key,
        )
    )


async def create_cluster(config: ClusterConfig) -> None:
    check_kubectl()
    settings = hetzner_settings(config)
    connector = _ssh_connector(config)
    kubectl = Kubectl(config.kubeconfig_path)
    state_sync = ClusterStateSync(
        connector,
        kubectl,
        cluster_name=config.cluster_name,
        kubeconfig_path=config.kubeconfig_path,
    )

    async with AsyncHetznerClient(settings) as client:
        resources = InfraResourceManager(client, config.identity)
        shared = await ensure_shared_resources(resources, config)
        definitions = build_node_definitions(config, shared)

        provisioner = ServerProvisioner(
            resources, connector, high_availability=config.high_availability
        )
        await provisioner.provision(definitions)

        masters, workers = await cluster_nodes(resources, config.high_availability)
        api_server_ip = await resolve_api_server_ip(resources, shared, masters[0])

    authorized_keys = [
        (str(key.data["public_key"]), key.name)
        for key in shared.ssh_keys
        if key.data.get("public_key")
    ]
    async with staged_artifacts(config.k3s_version) as uploads:
        bootstrap = BootstrapProtocol(
            config,
            connector,
            state_sync,
            uploads=uploads,
            authorized_keys=authorized_keys,
        )
        await bootstrap.run(masters, workers, api_server_ip)

    await state_sync.label_and_taint(definitions)
    assert settings.token is not None, "Hetzner token unexpectedly None"
    await deploy_addons(
        kubectl, token=settings.token, network_name=config.identity.network_name
    )
    print(f"Cluster {config.cluster_name} is ready. Kubeconfig: {config.kubeconfig_path}")


async def teardown_cluster(resources: InfraResourceManager, config: ClusterConfig) -> None:
    """
    Delete the load balancer, firewall, network (unless it is an existing one),
    SSH key, placement groups and finally every server of the cluster.
    """
    identity = resources.identity
    await resources.delete(ResourceKind.LOAD_BALANCER, identity.load_balancer_name)
    await resources.delete_firewall()
    if config.existing_network is None:
        await resources.delete(ResourceKind.NETWORK, identity.network_name)
    await resources.delete(ResourceKind.SSH_KEY, identity.ssh_key_name)
    for name in placement_group_names(config):
        await resources.delete(ResourceKind.PLACEMENT_GROUP, name)

    servers = await resources.list_cluster_servers()
    await asyncio.gather(
        *[resources.delete(ResourceKind.SERVER, server.name) for server in servers]
    )


async def delete_cluster(config: ClusterConfig) -> None:
    async with AsyncHetznerClient(hetzner_settings(config)) as client:
        await teardown_cluster(InfraResourceManager(client, config.identity), config)
    print(f"Cluster {config.cluster_name} deleted.")


async def upgrade_cluster(config: ClusterConfig, new_version: str, config_path: str) -> None:
    check_kubectl()
    if new_version == config.k3s_version:
        print(f"k3s version is already {new_version}, nothing to do.")
        return
    controller = UpgradeController(
        Kubectl(config.kubeconfig_path),
        config_path=config_path,
        workers_count=config.workers_count,
    )
    await controller.upgrade(new_version)
