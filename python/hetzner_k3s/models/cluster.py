"""
hetzner_k3s/models/cluster.py

Domain models shared by provisioning and bootstrap:
 - ClusterIdentity
 - ResourceKind / ResourceHandle
 - NodeRole / NodeDefinition
 - ServerInstance
 - ClusterResources
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


CLUSTER_NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")


class ClusterIdentity(BaseModel):
    """
    Names every cluster resource is derived from. Immutable for an operation.

    Attributes:
        cluster_name: Lowercase name, also the default network and SSH key name.
        location: Hetzner location of the masters (e.g. 'nbg1').
        network_name: Existing network to use, or the cluster name.
    """

    cluster_name: str
    location: str
    network_name: str

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, val: str) -> str:
        if not CLUSTER_NAME_PATTERN.match(val):
            raise ValueError(
                "cluster_name may only contain lowercase letters, digits and dashes"
            )
        return val

    @property
    def ssh_key_name(self) -> str:
        return self.cluster_name

    @property
    def firewall_name(self) -> str:
        return self.cluster_name

    @property
    def load_balancer_name(self) -> str:
        return f"{self.cluster_name}-api"

    def placement_group_name(self, pool_name: Optional[str] = None) -> str:
        return f"{self.cluster_name}-{pool_name or 'masters'}"

    @property
    def label_selector(self) -> str:
        return f"cluster={self.cluster_name}"

    class Config:
        frozen = True


class ResourceKind(str, Enum):
    """Hetzner API collections managed by the resource manager."""

    SERVER = "servers"
    NETWORK = "networks"
    FIREWALL = "firewalls"
    SSH_KEY = "ssh_keys"
    PLACEMENT_GROUP = "placement_groups"
    LOAD_BALANCER = "load_balancers"

    @property
    def singular(self) -> str:
        """Key holding the object in single-resource responses ('server', ...)."""
        return self.value[:-1]


class ResourceHandle(BaseModel):
    """
    A resolved cloud resource. `data` is the provider payload, kept for the
    few callers that need more than the id (LB address, SSH public keys).
    """

    kind: ResourceKind
    id: int
    name: str
    data: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_api(cls, kind: ResourceKind, payload: Dict[str, Any]) -> ResourceHandle:
        return cls(kind=kind, id=payload["id"], name=payload["name"], data=payload)

    @property
    def public_ipv4(self) -> Optional[str]:
        ipv4 = (self.data.get("public_net") or {}).get("ipv4") or {}
        ip = ipv4.get("ip")
        return str(ip) if ip else None


class NodeRole(str, Enum):
    MASTER = "master"
    WORKER = "worker"


class NodeDefinition(BaseModel):
    """
    Declarative description of exactly one server, built from configuration
    before any cloud call.

    `server_settings` carries provider-specific fields merged verbatim into the
    create request (e.g. `public_net`); everything else is typed.
    """

    role: NodeRole
    pool_name: Optional[str] = None
    index: int = Field(ge=0)
    instance_type: str
    location: str
    image: str
    firewall_id: int
    network_id: int
    ssh_key_ids: List[int]
    placement_group_id: Optional[int] = None
    additional_packages: List[str] = Field(default_factory=list)
    post_create_commands: List[str] = Field(default_factory=list)
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: Dict[str, str] = Field(default_factory=dict)
    server_settings: Dict[str, Any] = Field(default_factory=dict)

    @property
    def instance_id(self) -> str:
        if self.role is NodeRole.MASTER:
            return f"master{self.index + 1}"
        return f"pool-{self.pool_name}-worker{self.index + 1}"

    @property
    def is_first_master(self) -> bool:
        return self.role is NodeRole.MASTER and self.index == 0

    def server_name(self, cluster_name: str) -> str:
        return f"{cluster_name}-{self.instance_type}-{self.instance_id}"

    class Config:
        frozen = True


class ServerInstance(BaseModel):
    """
    A realized server. Only `jump_host` is assigned after creation: the public
    IP of the first master when SSH must be tunneled through it.
    """

    id: int
    name: str
    public_ipv4: Optional[str] = None
    private_ip: Optional[str] = None
    jump_host: Optional[str] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> ServerInstance:
        ipv4 = (payload.get("public_net") or {}).get("ipv4") or {}
        private_net = payload.get("private_net") or []
        return cls(
            id=payload["id"],
            name=payload["name"],
            public_ipv4=ipv4.get("ip"),
            private_ip=private_net[0].get("ip") if private_net else None,
        )

    @property
    def is_master(self) -> bool:
        return re.search(r"master\d+$", self.name) is not None

    @property
    def is_worker(self) -> bool:
        return re.search(r"worker\d+$", self.name) is not None


class ClusterResources(BaseModel):
    """
    Shared resources resolved before any server is created. Placement groups
    and the load balancer only exist for clusters with more than one master.
    """

    network: ResourceHandle
    firewall: ResourceHandle
    ssh_keys: List[ResourceHandle]
    placement_groups: Dict[str, ResourceHandle] = Field(default_factory=dict)
    load_balancer: Optional[ResourceHandle] = None

    @property
    def ssh_key_ids(self) -> List[int]:
        return [key.id for key in self.ssh_keys]
