"""
hetzner_k3s/deployment/install_commands.py

Pure builders for the k3s install command lines run on each node.

Every interpolated value is validated first: IPs through `ipaddress`, the
version, token and interface name by pattern, and pass-through component
arguments must not contain whitespace, double quotes, backquotes, `$` or
backslashes, since they are placed inside a double-quoted INSTALL_K3S_EXEC.
The environment values are additionally shell-quoted. Invalid input raises
ValueError instead of producing a command.

The only shell expansions in a rendered command are the fixed
`$(hostname ...)` lookups evaluated on the node itself.
"""

from __future__ import annotations

import ipaddress
import re
import shlex
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from hetzner_k3s.models.cluster import ServerInstance
from hetzner_k3s.models.config import (
    K3S_VERSION_PATTERN,
    ClusterConfig,
    check_component_args,
)

API_PORT = 6443
K3S_BINARY_PATH = "/usr/local/bin/k3s"
INSTALL_SCRIPT_PATH = "/root/install_k3s.sh"
NODE_TOKEN_PATH = "/var/lib/rancher/k3s/server/node-token"

# First release shipping the wireguard-native flannel backend.
WIREGUARD_NATIVE_VERSION: Tuple[int, int, int] = (1, 23, 6)

MASTER_TAINT = "CriticalAddonsOnly=true:NoExecute"

_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
_INTERFACE_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,15}$")
_VERSION_NUMBERS = re.compile(r"^v(\d+)\.(\d+)\.(\d+)")

_COMPONENT_FLAGS: Dict[str, str] = {
    "kube_api_server_args": "--kube-apiserver-arg",
    "kube_scheduler_args": "--kube-scheduler-arg",
    "kube_controller_manager_args": "--kube-controller-manager-arg",
    "kube_cloud_controller_manager_args": "--kube-cloud-controller-manager-arg",
    "kubelet_args": "--kubelet-arg",
    "kube_proxy_args": "--kube-proxy-arg",
}


class InstallSettings(BaseModel):
    """Cluster-wide inputs shared by every install command of a run."""

    k3s_version: str
    token: str
    enable_encryption: bool = False
    schedule_workloads_on_masters: bool = False
    kube_api_server_args: List[str] = Field(default_factory=list)
    kube_scheduler_args: List[str] = Field(default_factory=list)
    kube_controller_manager_args: List[str] = Field(default_factory=list)
    kube_cloud_controller_manager_args: List[str] = Field(default_factory=list)
    kubelet_args: List[str] = Field(default_factory=list)
    kube_proxy_args: List[str] = Field(default_factory=list)

    @classmethod
    def from_config(cls, config: ClusterConfig, token: str) -> InstallSettings:
        return cls(
            k3s_version=config.k3s_version,
            token=token,
            enable_encryption=config.enable_encryption,
            schedule_workloads_on_masters=config.schedule_workloads_on_masters,
            **{name: getattr(config, name) for name in _COMPONENT_FLAGS},
        )

    class Config:
        frozen = True


def parse_k3s_version(version: str) -> Tuple[int, int, int]:
    """'v1.23.6+k3s1' -> (1, 23, 6)."""
    if not K3S_VERSION_PATTERN.match(version):
        raise ValueError(f"Invalid k3s version: {version!r}")
    match = _VERSION_NUMBERS.match(version)
    assert match is not None
    major, minor, patch = (int(g) for g in match.groups())
    return major, minor, patch


def flannel_backend_flag(version: str, enabled: bool) -> Optional[str]:
    if not enabled:
        return None
    if parse_k3s_version(version) >= WIREGUARD_NATIVE_VERSION:
        return "--flannel-backend=wireguard-native"
    return "--flannel-backend=wireguard"


def parse_node_token(raw: str) -> Optional[str]:
    """
    The token is the last ':'-separated segment of the node-token file.
    Returns None when the file was missing or empty.
    """
    token = raw.strip().split(":")[-1]
    return token or None


def select_flannel_interface(
    lscpu_output: str, interfaces: Dict[str, str], default: str
) -> str:
    """Pick the private NIC name from the CPU vendor reported by lscpu."""
    for vendor, interface in interfaces.items():
        if vendor in lscpu_output:
            return interface
    return default


def master_join_target(masters: Sequence[ServerInstance], api_server_ip: str) -> str:
    """
    Where additional masters join. If any master has no public IPv4 only the
    private network is usable, so they join the first master's private IP.
    """
    if any(not m.public_ipv4 for m in masters):
        private_ip = masters[0].private_ip
        if not private_ip:
            raise ValueError(f"First master {masters[0].name} has no private IP.")
        return private_ip
    return api_server_ip


def tls_sans(api_server_ip: str, masters: Sequence[ServerInstance]) -> List[str]:
    sans = [api_server_ip]
    sans += [m.private_ip for m in masters if m.private_ip and m.private_ip not in sans]
    return sans


def _ip(value: str) -> str:
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        raise ValueError(f"Not an IP address: {value!r}") from None


def _token(value: str) -> str:
    if not _TOKEN_PATTERN.match(value):
        raise ValueError("Join token contains unexpected characters.")
    return value


def _interface(value: str) -> str:
    if not _INTERFACE_PATTERN.match(value):
        raise ValueError(f"Invalid network interface name: {value!r}")
    return value


def _component_args(settings: InstallSettings, names: Sequence[str]) -> List[str]:
    flags: List[str] = []
    for name in names:
        for arg in check_component_args(name, getattr(settings, name)):
            flags.append(f"{_COMPONENT_FLAGS[name]}={arg}")
    return flags


def _hostname_ip(column: int) -> str:
    return f"$(hostname -I | awk '{{print ${column}}}')"


def _address_flags(has_public_ipv4: bool, advertise: bool) -> List[str]:
    # `hostname -I` lists the public address first when there is one.
    private_ip = _hostname_ip(2 if has_public_ipv4 else 1)
    flags = [f"--advertise-address={private_ip}"] if advertise else []
    flags.append(f"--node-ip={private_ip}")
    if has_public_ipv4:
        flags.append(f"--node-external-ip={_hostname_ip(1)}")
    return flags


def _render(env: List[Tuple[str, str]], exec_flags: List[str], service: str) -> str:
    assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in env)
    return (
        f"chmod +x {K3S_BINARY_PATH} && chmod +x {INSTALL_SCRIPT_PATH} && "
        f'{assignments} INSTALL_K3S_EXEC="{" ".join(exec_flags)}" '
        f"sh {INSTALL_SCRIPT_PATH} && systemctl start {service}"
    )


def master_install_command(
    settings: InstallSettings,
    *,
    flannel_interface: str,
    has_public_ipv4: bool,
    tls_sans: Sequence[str],
    join_ip: Optional[str] = None,
) -> str:
    """
    Install command for a master. Without `join_ip` the node initializes the
    cluster (`--cluster-init`); with it the node joins `https://{join_ip}:6443`.
    """
    if not K3S_VERSION_PATTERN.match(settings.k3s_version):
        raise ValueError(f"Invalid k3s version: {settings.k3s_version!r}")

    flags = [
        "server",
        "--disable-cloud-controller",
        "--disable servicelb",
        "--disable traefik",
        "--disable local-storage",
        "--disable metrics-server",
        "--write-kubeconfig-mode=644",
        "--node-name=$(hostname -f)",
        "--cluster-cidr=10.244.0.0/16",
        "--etcd-expose-metrics=true",
    ]
    backend = flannel_backend_flag(settings.k3s_version, settings.enable_encryption)
    if backend:
        flags.append(backend)
    flags += [
        "--kube-controller-manager-arg=bind-address=0.0.0.0",
        "--kube-proxy-arg=metrics-bind-address=0.0.0.0",
        "--kube-scheduler-arg=bind-address=0.0.0.0",
    ]
    if not settings.schedule_workloads_on_masters:
        flags.append(f"--node-taint {MASTER_TAINT}")
    flags += _component_args(settings, list(_COMPONENT_FLAGS))
    flags.append("--kubelet-arg=cloud-provider=external")
    flags += _address_flags(has_public_ipv4, advertise=True)
    flags.append(f"--flannel-iface={_interface(flannel_interface)}")
    if join_ip is None:
        flags.append("--cluster-init")
    else:
        flags.append(f"--server https://{_ip(join_ip)}:{API_PORT}")
    flags += [f"--tls-san={_ip(san)}" for san in tls_sans]

    env = [
        ("INSTALL_K3S_SKIP_DOWNLOAD", "true"),
        ("INSTALL_K3S_VERSION", settings.k3s_version),
        ("K3S_TOKEN", _token(settings.token)),
    ]
    return _render(env, flags, "k3s.service")


def worker_install_command(
    settings: InstallSettings,
    *,
    flannel_interface: str,
    has_public_ipv4: bool,
    server_ip: str,
) -> str:
    """Install command for a worker joining `https://{server_ip}:6443`."""
    if not K3S_VERSION_PATTERN.match(settings.k3s_version):
        raise ValueError(f"Invalid k3s version: {settings.k3s_version!r}")

    flags = [
        "agent",
        "--node-name=$(hostname -f)",
        "--kubelet-arg=cloud-provider=external",
    ]
    flags += _component_args(settings, ["kubelet_args", "kube_proxy_args"])
    flags += _address_flags(has_public_ipv4, advertise=False)
    flags.append(f"--flannel-iface={_interface(flannel_interface)}")

    env = [
        ("INSTALL_K3S_SKIP_DOWNLOAD", "true"),
        ("INSTALL_K3S_VERSION", settings.k3s_version),
        ("K3S_TOKEN", _token(settings.token)),
        ("K3S_URL", f"https://{_ip(server_ip)}:{API_PORT}"),
    ]
    return _render(env, flags, "k3s-agent.service")
