"""
hetzner_k3s/deployment/provisioner.py

Turns the cluster configuration into NodeDefinitions and NodeDefinitions into
running, SSH-ready servers.

Ordering:
  1) create the first master and wait until it is ready
  2) create every other server concurrently
  3) wait for all of them concurrently, through the first master when they
     need a jump host
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

from hetzner_k3s.cloud.resources import InfraResourceManager
from hetzner_k3s.cloud.servers import server_create_spec
from hetzner_k3s.models.cluster import (
    ClusterResources,
    NodeDefinition,
    NodeRole,
    ResourceKind,
    ServerInstance,
)
from hetzner_k3s.models.config import ClusterConfig
from hetzner_k3s.utils.async_retry import async_retry
from hetzner_k3s.utils.ssh import SSHConnector


class ProvisioningError(RuntimeError):
    """A server of the fleet could not be created."""


def _master_server_settings(
    config: ClusterConfig, index: int
) -> Dict[str, Any]:
    settings = dict(config.additional_server_settings)
    if "public_net" in settings:
        # Only the first master of an HA cluster keeps a public IPv4.
        enable_ipv4 = index == 0 or not config.high_availability
        settings["public_net"] = {**settings["public_net"], "enable_ipv4": enable_ipv4}
    return settings


def build_node_definitions(
    config: ClusterConfig, resources: ClusterResources
) -> List[NodeDefinition]:
    """Masters first (the first master at index 0), then each worker pool in order."""
    identity = config.identity
    common: Dict[str, Any] = dict(
        image=config.image,
        firewall_id=resources.firewall.id,
        network_id=resources.network.id,
        ssh_key_ids=resources.ssh_key_ids,
        additional_packages=config.additional_packages,
        post_create_commands=config.post_create_commands,
    )

    masters_group = resources.placement_groups.get(identity.placement_group_name())
    definitions = [
        NodeDefinition(
            role=NodeRole.MASTER,
            index=i,
            instance_type=config.masters.instance_type,
            location=config.location,
            placement_group_id=masters_group.id if masters_group else None,
            labels=config.masters.labels,
            taints=config.masters.taints,
            server_settings=_master_server_settings(config, i),
            **common,
        )
        for i in range(config.masters_count)
    ]

    for pool in config.worker_node_pools:
        pool_group = resources.placement_groups.get(identity.placement_group_name(pool.name))
        definitions += [
            NodeDefinition(
                role=NodeRole.WORKER,
                pool_name=pool.name,
                index=i,
                instance_type=pool.instance_type,
                location=pool.location or config.location,
                placement_group_id=pool_group.id if pool_group else None,
                labels=pool.labels,
                taints=pool.taints,
                server_settings=dict(config.additional_server_settings),
                **common,
            )
            for i in range(pool.instance_count)
        ]
    return definitions


def derive_jump_host(
    instance: ServerInstance, first_master: ServerInstance, high_availability: bool
) -> Optional[str]:
    """
    The first master's public IP when `instance` must be reached through it:
    every other node of an HA cluster, and any node without a public IPv4.
    """
    if instance.id == first_master.id:
        return None
    if high_availability or not instance.public_ipv4:
        return first_master.public_ipv4
    return None


def assign_jump_hosts(
    masters: Sequence[ServerInstance],
    workers: Sequence[ServerInstance],
    high_availability: bool,
) -> Tuple[List[ServerInstance], List[ServerInstance]]:
    """Return copies of `masters` and `workers` with jump hosts set; masters[0] is the first master."""
    if not masters:
        raise ValueError("A cluster needs at least one master.")
    first = masters[0]

    def _with_jump(instance: ServerInstance) -> ServerInstance:
        return instance.model_copy(
            update={"jump_host": derive_jump_host(instance, first, high_availability)}
        )

    return [_with_jump(m) for m in masters], [_with_jump(w) for w in workers]


class ServerProvisioner:
    """
    Creates the servers for a list of NodeDefinitions and waits until each
    can be reached over SSH.

    Args:
        resources: Used to create servers idempotently by name.
        connector: Used for the readiness wait.
        high_availability: More than one master; routes every other node
            through the first master.
    """

    def __init__(
        self,
        resources: InfraResourceManager,
        connector: SSHConnector,
        *,
        high_availability: bool,
        private_ip_attempts: int = 10,
        private_ip_delay: float = 1.0,
    ) -> None:
        self._resources = resources
        self._connector = connector
        self._high_availability = high_availability
        self._private_ip_attempts = private_ip_attempts
        self._private_ip_delay = private_ip_delay

    async def _with_private_ip(self, instance: ServerInstance) -> ServerInstance:
        @async_retry(retries=self._private_ip_attempts, delay=self._private_ip_delay)
        async def _refresh() -> ServerInstance:
            refreshed = await self._resources.refresh_server(instance)
            if not refreshed.private_ip:
                raise ProvisioningError(
                    f"Server {instance.name} is not attached to the private network yet."
                )
            return refreshed

        return await _refresh()

    async def _create(self, definition: NodeDefinition) -> ServerInstance:
        cluster_name = self._resources.identity.cluster_name
        handle = await self._resources.ensure(
            ResourceKind.SERVER,
            definition.server_name(cluster_name),
            server_create_spec(definition, cluster_name),
        )
        instance = ServerInstance.from_api(handle.data)
        if not instance.private_ip:
            instance = await self._with_private_ip(instance)
        return instance

    async def provision(self, definitions: Sequence[NodeDefinition]) -> List[ServerInstance]:
        """
        Create and wait for every server, first master first.

        Returns:
            One ServerInstance per definition, in the same order.

        Raises:
            ValueError: If definitions[0] is not the first master or names collide.
            ProvisioningError: If any server could not be created.
            SSHError: If a server never becomes reachable.
        """
        if not definitions or not definitions[0].is_first_master:
            raise ValueError("The first node definition must be the first master.")
        cluster_name = self._resources.identity.cluster_name
        names = [d.server_name(cluster_name) for d in definitions]
        if len(set(names)) != len(names):
            raise ValueError(f"Server names are not unique: {names}")

        try:
            first = await self._create(definitions[0])
        except Exception as exc:
            raise ProvisioningError(f"Could not create the first master: {exc}") from exc
        await self._connector.wait_ready(first)

        results = await asyncio.gather(
            *[self._create(d) for d in definitions[1:]], return_exceptions=True
        )
        others: List[ServerInstance] = []
        for definition, result in zip(definitions[1:], results):
            if not isinstance(result, ServerInstance):
                raise ProvisioningError(
                    f"Could not create server {definition.server_name(cluster_name)}: {result}"
                ) from (result if isinstance(result, BaseException) else None)
            others.append(
                result.model_copy(
                    update={
                        "jump_host": derive_jump_host(result, first, self._high_availability)
                    }
                )
            )

        await asyncio.gather(*[self._connector.wait_ready(i) for i in others])
        return [first] + others
