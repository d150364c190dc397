"""
hetzner_k3s/deployment/bootstrap.py

Installs k3s on provisioned, SSH-ready servers.

Phases:
  1) FIRST_MASTER_INIT: read (or generate) the join token, install the first
     master with --cluster-init, wait for it to settle, save the kubeconfig.
  2) JOIN: additional masters and workers concurrently, one task per node.
     Masters join the API endpoint (or the first master's private IP when
     some master has no public IPv4); workers join the first master's
     private IP.

The k3s binary and install script are uploaded before every install command.
Re-running against nodes that already run k3s re-applies the same install.
"""

from __future__ import annotations

import asyncio
import secrets
import shlex
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

from hetzner_k3s.deployment.install_commands import (
    NODE_TOKEN_PATH,
    InstallSettings,
    master_install_command,
    master_join_target,
    parse_node_token,
    select_flannel_interface,
    tls_sans,
    worker_install_command,
)
from hetzner_k3s.deployment.state_sync import ClusterStateSync
from hetzner_k3s.models.cluster import ServerInstance
from hetzner_k3s.models.config import ClusterConfig
from hetzner_k3s.models.ssh import Uploads
from hetzner_k3s.utils.ssh import SSHConnector

TOKEN_COMMAND = f"{{ TOKEN=$(< {NODE_TOKEN_PATH}); }} 2> /dev/null; echo $TOKEN"
CPU_VENDOR_COMMAND = "lscpu | grep Vendor"
AUTHORIZED_KEYS_PATH = "/root/.ssh/authorized_keys"


class BootstrapPhase(str, Enum):
    PENDING = "pending"
    FIRST_MASTER_INIT = "first_master_init"
    JOIN = "join"
    DONE = "done"


def generate_token() -> str:
    return secrets.token_hex(16)


def authorized_keys_command(keys: Sequence[Tuple[str, str]]) -> str:
    """
    Replace root's authorized_keys with `keys`, given as (public key, comment)
    pairs.
    """
    if not keys:
        raise ValueError("At least one public key is required.")
    lines = [shlex.quote(f"{key.strip()} {comment}") for key, comment in keys]
    first, rest = lines[0], lines[1:]
    command = f"mkdir -p /root/.ssh && echo {first} > {AUTHORIZED_KEYS_PATH}"
    command += "".join(f" && echo {line} >> {AUTHORIZED_KEYS_PATH}" for line in rest)
    return command


class BootstrapProtocol:
    """
    Args:
        config: Cluster configuration (version, flags, NIC table).
        connector: SSH access to the nodes.
        state_sync: Saves the kubeconfig after the first master settles.
        uploads: k3s binary and install script, local path -> remote path.
        authorized_keys: (public key, comment) pairs written to every node.
        settle_delay: Seconds to wait after the first master's install.
        token_factory: Generates the token for a fresh cluster.
    """

    def __init__(
        self,
        config: ClusterConfig,
        connector: SSHConnector,
        state_sync: ClusterStateSync,
        *,
        uploads: Uploads,
        authorized_keys: Sequence[Tuple[str, str]] = (),
        settle_delay: float = 10.0,
        token_factory: Callable[[], str] = generate_token,
    ) -> None:
        self._config = config
        self._connector = connector
        self._state_sync = state_sync
        self._uploads = uploads
        self._authorized_keys = list(authorized_keys)
        self._settle_delay = settle_delay
        self._token_factory = token_factory
        self._token: Optional[str] = None
        self.phase = BootstrapPhase.PENDING
        self.install_commands: List[str] = []

    async def cluster_token(self, first_master: ServerInstance) -> str:
        """The join token, read once per run from the first master or generated."""
        if self._token is None:
            raw = await self._connector.execute(first_master, TOKEN_COMMAND)
            self._token = parse_node_token(raw) or self._token_factory()
        return self._token

    async def flannel_interface(self, instance: ServerInstance) -> str:
        lscpu = await self._connector.execute(instance, CPU_VENDOR_COMMAND)
        return select_flannel_interface(
            lscpu,
            self._config.flannel_interfaces,
            self._config.default_flannel_interface,
        )

    async def _install(self, instance: ServerInstance, command: str, role: str) -> None:
        self.install_commands.append(command)
        print(f"Deploying k3s to {role} {instance.name}...")
        await self._connector.execute(
            instance, command, uploads=self._uploads, print_output=True, check=True
        )
        if self._authorized_keys:
            await self._connector.execute(
                instance, authorized_keys_command(self._authorized_keys), check=True
            )
        print(f"...k3s has been deployed to {role} {instance.name}.")

    async def _deploy_master(
        self,
        instance: ServerInstance,
        settings: InstallSettings,
        sans: List[str],
        join_ip: Optional[str],
    ) -> None:
        command = master_install_command(
            settings,
            flannel_interface=await self.flannel_interface(instance),
            has_public_ipv4=bool(instance.public_ipv4),
            tls_sans=sans,
            join_ip=join_ip,
        )
        await self._install(instance, command, "master")

    async def _deploy_worker(
        self, instance: ServerInstance, settings: InstallSettings, server_ip: str
    ) -> None:
        command = worker_install_command(
            settings,
            flannel_interface=await self.flannel_interface(instance),
            has_public_ipv4=bool(instance.public_ipv4),
            server_ip=server_ip,
        )
        await self._install(instance, command, "worker")

    async def run(
        self,
        masters: Sequence[ServerInstance],
        workers: Sequence[ServerInstance],
        api_server_ip: str,
    ) -> None:
        """
        Bootstrap the whole cluster. masters[0] is the first master.

        Raises:
            ValueError: If there is no master or an interpolated value is invalid.
            SSHError, CommandError: If a node cannot be reached or an install fails.
        """
        if not masters:
            raise ValueError("A cluster needs at least one master.")
        first = masters[0]
        if not first.private_ip:
            raise ValueError(f"First master {first.name} has no private IP.")

        self.phase = BootstrapPhase.FIRST_MASTER_INIT
        settings = InstallSettings.from_config(self._config, await self.cluster_token(first))
        sans = tls_sans(api_server_ip, masters)
        await self._deploy_master(first, settings, sans, join_ip=None)

        print(f"Waiting {self._settle_delay:g}s for the first master to settle...")
        await asyncio.sleep(self._settle_delay)
        await self._state_sync.materialize_kubeconfig(first, api_server_ip)

        self.phase = BootstrapPhase.JOIN
        join_ip = master_join_target(masters, api_server_ip) if len(masters) > 1 else None
        await asyncio.gather(
            *[self._deploy_master(m, settings, sans, join_ip) for m in masters[1:]],
            *[self._deploy_worker(w, settings, first.private_ip) for w in workers],
        )
        self.phase = BootstrapPhase.DONE
