"""
hetzner_k3s/cloud/resources.py

Idempotent create/delete of the cluster's named cloud resources.

`InfraResourceManager.ensure(kind, name, spec)` looks the name up first and
returns the existing resource untouched, so a failed `create-cluster` can be
re-run. `delete(kind, name)` treats a missing resource as already deleted.

The `*_spec` functions build the create payloads for each kind.
"""

from __future__ import annotations

import base64
import hashlib
from typing import Any, Dict, List, Optional, Tuple

import aiofiles
from cryptography.hazmat.primitives import serialization

from hetzner_k3s.cloud.client import AsyncHetznerClient, HetznerAPIError, HetznerNotFoundError
from hetzner_k3s.models.cluster import (
    ClusterIdentity,
    ResourceHandle,
    ResourceKind,
    ServerInstance,
)

PRIVATE_NETWORK_RANGE = "10.0.0.0/16"
ANYWHERE = ["0.0.0.0/0", "::/0"]
API_PORT = 6443

_NETWORK_ZONES = {"ash": "us-east", "hil": "us-west"}

_LABELS = {
    ResourceKind.SERVER: "server",
    ResourceKind.NETWORK: "private network",
    ResourceKind.FIREWALL: "firewall",
    ResourceKind.SSH_KEY: "SSH key",
    ResourceKind.PLACEMENT_GROUP: "placement group",
    ResourceKind.LOAD_BALANCER: "load balancer",
}


class ResourceCreateError(RuntimeError):
    """The provider rejected a create request. Carries the response payload."""

    def __init__(self, kind: ResourceKind, name: str, payload: Dict[str, Any]) -> None:
        super().__init__(
            f"Error creating {_LABELS[kind]} {name}. Response details: {payload}"
        )
        self.kind = kind
        self.name = name
        self.payload = payload


class ResourceNotFoundError(LookupError):
    """A resource that must already exist (e.g. an existing network) is missing."""


def network_zone(location: str) -> str:
    return _NETWORK_ZONES.get(location, "eu-central")


def network_spec(location: str) -> Dict[str, Any]:
    return {
        "ip_range": PRIVATE_NETWORK_RANGE,
        "subnets": [
            {
                "type": "cloud",
                "ip_range": PRIVATE_NETWORK_RANGE,
                "network_zone": network_zone(location),
            }
        ],
    }


def firewall_spec(
    identity: ClusterIdentity,
    *,
    ssh_networks: List[str],
    api_networks: List[str],
    high_availability: bool,
) -> Dict[str, Any]:
    """
    Inbound rules for every node. In HA clusters the API is reached through the
    load balancer over the private network, so 6443 is not opened publicly.
    """
    rules: List[Dict[str, Any]] = [
        {
            "description": "Allow port 22 (SSH)",
            "direction": "in",
            "protocol": "tcp",
            "port": "22",
            "source_ips": ssh_networks,
        },
        {
            "description": "Allow ICMP (ping)",
            "direction": "in",
            "protocol": "icmp",
            "source_ips": ANYWHERE,
        },
        {
            "description": "Allow all TCP traffic between nodes on the private network",
            "direction": "in",
            "protocol": "tcp",
            "port": "any",
            "source_ips": [PRIVATE_NETWORK_RANGE],
        },
        {
            "description": "Allow all UDP traffic between nodes on the private network",
            "direction": "in",
            "protocol": "udp",
            "port": "any",
            "source_ips": [PRIVATE_NETWORK_RANGE],
        },
    ]
    if not high_availability:
        rules.append(
            {
                "description": "Allow port 6443 (Kubernetes API server)",
                "direction": "in",
                "protocol": "tcp",
                "port": str(API_PORT),
                "source_ips": api_networks,
            }
        )
    rules += [
        {
            "description": f"Allow NodePort range ({protocol.upper()})",
            "direction": "in",
            "protocol": protocol,
            "port": "30000-32767",
            "source_ips": ANYWHERE,
        }
        for protocol in ("tcp", "udp")
    ]
    return {
        "rules": rules,
        "apply_to": [_label_selector_target(identity.label_selector)],
    }


def ssh_key_spec(public_key: str) -> Dict[str, Any]:
    return {"public_key": public_key.strip()}


def placement_group_spec() -> Dict[str, Any]:
    return {"type": "spread"}


def load_balancer_spec(identity: ClusterIdentity, network_id: int) -> Dict[str, Any]:
    return {
        "load_balancer_type": "lb11",
        "location": identity.location,
        "network": network_id,
        "public_interface": True,
        "algorithm": {"type": "round_robin"},
        "services": [
            {
                "protocol": "tcp",
                "listen_port": API_PORT,
                "destination_port": API_PORT,
                "proxyprotocol": False,
            }
        ],
        "targets": [
            {
                **_label_selector_target(f"{identity.label_selector},role=master"),
                "use_private_ip": True,
            }
        ],
    }


def _label_selector_target(selector: str) -> Dict[str, Any]:
    return {"type": "label_selector", "label_selector": {"selector": selector}}


def ssh_key_fingerprint(public_key: str) -> str:
    """MD5 fingerprint (colon separated) as reported by the Hetzner API."""
    key = serialization.load_ssh_public_key(public_key.strip().encode("utf-8"))
    openssh = key.public_bytes(
        serialization.Encoding.OpenSSH, serialization.PublicFormat.OpenSSH
    )
    digest = hashlib.md5(base64.b64decode(openssh.split()[1])).hexdigest()
    return ":".join(digest[i : i + 2] for i in range(0, len(digest), 2))


class InfraResourceManager:
    """
    Resolves and deletes the named resources of one cluster.

    Handles are cached per (kind, name) for the manager's lifetime; resolve
    everything before fanning out and treat handles as read-only afterwards.
    """

    def __init__(self, client: AsyncHetznerClient, identity: ClusterIdentity) -> None:
        self._client = client
        self._identity = identity
        self._cache: Dict[Tuple[ResourceKind, str], ResourceHandle] = {}

    @property
    def identity(self) -> ClusterIdentity:
        return self._identity

    async def find(self, kind: ResourceKind, name: str) -> Optional[ResourceHandle]:
        items = await self._client.list(kind.value, {"name": name})
        match = next((item for item in items if item.get("name") == name), None)
        return ResourceHandle.from_api(kind, match) if match else None

    async def ensure(
        self, kind: ResourceKind, name: str, spec: Dict[str, Any]
    ) -> ResourceHandle:
        """
        Return the resource called `name`, creating it from `spec` if missing.

        Raises:
            ResourceCreateError: If the provider rejects the create request.
        """
        key = (kind, name)
        if key in self._cache:
            return self._cache[key]

        existing = await self.find(kind, name)
        if existing is not None:
            print(f"{_LABELS[kind].capitalize()} {name} already exists, skipping.")
            self._cache[key] = existing
            return existing

        print(f"Creating {_LABELS[kind]} {name}...")
        try:
            js = await self._client.create(kind.value, {"name": name, **spec})
        except HetznerAPIError as exc:
            raise ResourceCreateError(kind, name, exc.payload) from exc

        created = js.get(kind.singular)
        if not isinstance(created, dict):
            raise ResourceCreateError(kind, name, js)

        handle = ResourceHandle.from_api(kind, created)
        print(f"...{_LABELS[kind]} {name} created.")
        self._cache[key] = handle
        return handle

    async def delete(self, kind: ResourceKind, name: str) -> bool:
        """
        Delete the resource called `name` if it exists.

        Returns:
            True if something was deleted, False if it was already gone.
        """
        self._cache.pop((kind, name), None)
        existing = await self.find(kind, name)
        if existing is None:
            print(f"{_LABELS[kind].capitalize()} {name} no longer exists, skipping.")
            return False

        print(f"Deleting {_LABELS[kind]} {name}...")
        try:
            await self._client.delete(kind.value, existing.id)
        except HetznerNotFoundError:
            return False
        print(f"...{_LABELS[kind]} {name} deleted.")
        return True

    async def ensure_network(
        self, *, location: str, existing_network: Optional[str] = None
    ) -> ResourceHandle:
        """Create the cluster network, or look up a user-managed one."""
        if existing_network is None:
            return await self.ensure(
                ResourceKind.NETWORK, self._identity.network_name, network_spec(location)
            )

        key = (ResourceKind.NETWORK, existing_network)
        if key not in self._cache:
            found = await self.find(ResourceKind.NETWORK, existing_network)
            if found is None:
                raise ResourceNotFoundError(
                    f"You have specified that you want to use the existing network "
                    f"named '{existing_network}' but this network doesn't exist."
                )
            self._cache[key] = found
        return self._cache[key]

    async def ensure_ssh_key(self, public_key_path: str) -> ResourceHandle:
        """
        Upload the cluster key, reusing any key with the same fingerprint (the
        API refuses duplicate fingerprints under a different name).
        """
        async with aiofiles.open(public_key_path, "r", encoding="utf-8") as f:
            public_key = (await f.read()).strip()

        fingerprint = ssh_key_fingerprint(public_key)
        matches = await self._client.list(
            ResourceKind.SSH_KEY.value, {"fingerprint": fingerprint}
        )
        if matches:
            handle = ResourceHandle.from_api(ResourceKind.SSH_KEY, matches[0])
            print(f"SSH key {handle.name} already exists, skipping.")
            self._cache[(ResourceKind.SSH_KEY, self._identity.ssh_key_name)] = handle
            return handle

        return await self.ensure(
            ResourceKind.SSH_KEY, self._identity.ssh_key_name, ssh_key_spec(public_key)
        )

    async def find_ssh_keys_by_label(self, key: str, value: str) -> List[ResourceHandle]:
        items = await self._client.list(
            ResourceKind.SSH_KEY.value, {"label_selector": f"{key}={value}"}
        )
        return [ResourceHandle.from_api(ResourceKind.SSH_KEY, item) for item in items]

    async def delete_firewall(self) -> bool:
        """Detach the firewall from its label-selected servers, then delete it."""
        name = self._identity.firewall_name
        existing = await self.find(ResourceKind.FIREWALL, name)
        if existing is not None and existing.data.get("applied_to"):
            await self._client.action(
                ResourceKind.FIREWALL.value,
                existing.id,
                "remove_from_resources",
                {"remove_from": [_label_selector_target(self._identity.label_selector)]},
            )
        return await self.delete(ResourceKind.FIREWALL, name)

    async def list_cluster_servers(self) -> List[ServerInstance]:
        """Every server labelled with this cluster, sorted by name."""
        items = await self._client.list(
            ResourceKind.SERVER.value, {"label_selector": self._identity.label_selector}
        )
        return sorted(
            (ServerInstance.from_api(item) for item in items), key=lambda s: s.name
        )

    async def refresh_server(self, instance: ServerInstance) -> ServerInstance:
        """Re-read a server, keeping its jump host."""
        payload = await self._client.get(ResourceKind.SERVER.value, instance.id)
        return ServerInstance.from_api(payload).model_copy(
            update={"jump_host": instance.jump_host}
        )
