"""
hetzner_k3s/models/config.py

Pydantic models for the cluster configuration file, plus HetznerSettings which
reads the API token from the environment (HCLOUD_TOKEN).
"""

from __future__ import annotations

import os
import re
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from hetzner_k3s.models.cluster import CLUSTER_NAME_PATTERN, ClusterIdentity


K3S_VERSION_PATTERN = re.compile(r"^v\d+\.\d+\.\d+(-[0-9A-Za-z.]+)?\+k3s\d+$")

# Component args end up inside a double-quoted INSTALL_K3S_EXEC and are split
# on whitespace by the install script.
UNSAFE_COMPONENT_ARG = re.compile(r"[\s\"`$\\]")


def check_component_args(name: str, args: List[str]) -> List[str]:
    for arg in args:
        if not arg or UNSAFE_COMPONENT_ARG.search(arg):
            raise ValueError(f"Refusing unsafe value in {name}: {arg!r}")
    return args


class HetznerSettings(BaseSettings):
    """
    Settings for the Hetzner Cloud API client. Fields map to environment
    variables prefixed with `HCLOUD_`, e.g. `HCLOUD_TOKEN`.
    """

    token: Optional[str] = None
    api_url: str = "https://api.hetzner.cloud/v1"
    request_timeout: float = 30.0

    model_config = SettingsConfigDict(env_prefix="HCLOUD_")


def _normalize_key_values(val: Any) -> Any:
    """Accept either a mapping or a list of {key, value} entries."""
    if val is None:
        return {}
    if isinstance(val, list):
        return {str(item["key"]): str(item["value"]) for item in val}
    return val


class MastersConfig(BaseModel):
    instance_type: str
    instance_count: int = Field(default=1, ge=1)
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: Dict[str, str] = Field(default_factory=dict)

    @field_validator("labels", "taints", mode="before")
    @classmethod
    def normalize_key_values(cls, val: Any) -> Any:
        return _normalize_key_values(val)


class WorkerNodePool(BaseModel):
    """One pool of identical workers; `location` defaults to the masters' location."""

    name: str
    instance_type: str
    instance_count: int = Field(default=1, ge=0)
    location: Optional[str] = None
    labels: Dict[str, str] = Field(default_factory=dict)
    taints: Dict[str, str] = Field(default_factory=dict)

    @field_validator("labels", "taints", mode="before")
    @classmethod
    def normalize_key_values(cls, val: Any) -> Any:
        return _normalize_key_values(val)

    @field_validator("name")
    @classmethod
    def validate_name(cls, val: str) -> str:
        if not CLUSTER_NAME_PATTERN.match(val):
            raise ValueError(
                f"worker pool name '{val}' may only contain lowercase letters, digits and dashes"
            )
        return val


class ClusterConfig(BaseModel):
    """
    The cluster file. Paths are expanded (`~`) on load.

    The extra argument lists are passed through verbatim to the matching k3s
    component flags (`--kube-apiserver-arg=...` etc).
    """

    hetzner_token: Optional[str] = None
    cluster_name: str
    kubeconfig_path: str
    k3s_version: str
    public_ssh_key_path: str
    private_ssh_key_path: str
    verify_host_key: bool = False
    location: str
    image: str = "ubuntu-20.04"
    additional_packages: List[str] = Field(default_factory=list)
    post_create_commands: List[str] = Field(default_factory=list)
    masters: MastersConfig
    worker_node_pools: List[WorkerNodePool] = Field(default_factory=list)
    ssh_allowed_networks: List[str] = Field(default_factory=lambda: ["0.0.0.0/0"])
    api_allowed_networks: List[str] = Field(default_factory=lambda: ["0.0.0.0/0"])
    schedule_workloads_on_masters: bool = False
    enable_encryption: bool = False
    existing_network: Optional[str] = None
    default_ssh_key_labels: List[Dict[str, str]] = Field(default_factory=list)
    additional_server_settings: Dict[str, Any] = Field(default_factory=dict)
    kube_api_server_args: List[str] = Field(default_factory=list)
    kube_scheduler_args: List[str] = Field(default_factory=list)
    kube_controller_manager_args: List[str] = Field(default_factory=list)
    kube_cloud_controller_manager_args: List[str] = Field(default_factory=list)
    kubelet_args: List[str] = Field(default_factory=list)
    kube_proxy_args: List[str] = Field(default_factory=list)
    flannel_interfaces: Dict[str, str] = Field(
        default_factory=lambda: {"Intel": "ens10"}
    )
    default_flannel_interface: str = "enp7s0"

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, val: str) -> str:
        if not CLUSTER_NAME_PATTERN.match(val):
            raise ValueError(
                "cluster_name may only contain lowercase letters, digits and dashes"
            )
        return val

    @field_validator("k3s_version")
    @classmethod
    def validate_k3s_version(cls, val: str) -> str:
        if not K3S_VERSION_PATTERN.match(val):
            raise ValueError(
                f"k3s_version '{val}' is not a k3s release tag (e.g. v1.24.3+k3s1)"
            )
        return val

    @field_validator(
        "kube_api_server_args",
        "kube_scheduler_args",
        "kube_controller_manager_args",
        "kube_cloud_controller_manager_args",
        "kubelet_args",
        "kube_proxy_args",
    )
    @classmethod
    def validate_component_args(cls, val: List[str], info: ValidationInfo) -> List[str]:
        return check_component_args(str(info.field_name), val)

    @field_validator(
        "kubeconfig_path", "public_ssh_key_path", "private_ssh_key_path"
    )
    @classmethod
    def expand_path(cls, val: str) -> str:
        return os.path.expanduser(val)

    @model_validator(mode="after")
    def check_unique_pools(self) -> ClusterConfig:
        names = [pool.name for pool in self.worker_node_pools]
        if len(names) != len(set(names)):
            raise ValueError("worker_node_pools names must be unique")
        return self

    @property
    def masters_count(self) -> int:
        return self.masters.instance_count

    @property
    def high_availability(self) -> bool:
        return self.masters.instance_count > 1

    @property
    def workers_count(self) -> int:
        return sum(pool.instance_count for pool in self.worker_node_pools)

    @property
    def identity(self) -> ClusterIdentity:
        return ClusterIdentity(
            cluster_name=self.cluster_name,
            location=self.location,
            network_name=self.existing_network or self.cluster_name,
        )
