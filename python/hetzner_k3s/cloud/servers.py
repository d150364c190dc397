"""
hetzner_k3s/cloud/servers.py

Create payloads for cluster servers: cloud-init user data and the request
body for POST /servers. Pure functions of a NodeDefinition.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List

import yaml

from hetzner_k3s.models.cluster import NodeDefinition

BASE_PACKAGES = ["fail2ban", "wireguard"]

_BASE_RUNCMD = [
    "crontab -l > /etc/cron_bkp",
    'echo "@reboot echo true > /etc/ready" >> /etc/cron_bkp',
    "crontab /etc/cron_bkp",
    "sed -i 's/[#]*PermitRootLogin yes/PermitRootLogin prohibit-password/g' /etc/ssh/sshd_config",
    "sed -i 's/[#]*PasswordAuthentication yes/PasswordAuthentication no/g' /etc/ssh/sshd_config",
    "systemctl restart sshd",
    "systemctl stop systemd-resolved",
    "systemctl disable systemd-resolved",
    "rm /etc/resolv.conf",
    "echo 'nameserver 1.1.1.1' > /etc/resolv.conf",
    "echo 'nameserver 1.0.0.1' >> /etc/resolv.conf",
]

# '@reboot' in a crontab line is not a reboot.
_REBOOTS = re.compile(r"(?<!@)\b(shutdown|reboot)\b")


def cloud_init_user_data(definition: NodeDefinition) -> str:
    """
    Cloud-config for a new server. The @reboot cron entry writes the readiness
    marker once the node has rebooted with its packages installed.
    """
    packages = BASE_PACKAGES + [
        p for p in definition.additional_packages if p not in BASE_PACKAGES
    ]
    runcmd: List[str] = _BASE_RUNCMD + list(definition.post_create_commands)
    if not any(_REBOOTS.search(cmd) for cmd in definition.post_create_commands):
        runcmd.append("shutdown -r now")

    body = yaml.safe_dump(
        {"packages": packages, "runcmd": runcmd},
        default_flow_style=False,
        sort_keys=False,
        width=1000,
    )
    return f"#cloud-config\n{body}"


def server_create_spec(definition: NodeDefinition, cluster_name: str) -> Dict[str, Any]:
    """
    Body for POST /servers, without the name.

    `server_settings` is merged last so it can override e.g. `public_net`.
    """
    spec: Dict[str, Any] = {
        "location": definition.location,
        "image": definition.image,
        "server_type": definition.instance_type,
        "firewalls": [{"firewall": definition.firewall_id}],
        "networks": [definition.network_id],
        "ssh_keys": list(definition.ssh_key_ids),
        "user_data": cloud_init_user_data(definition),
        "labels": {"cluster": cluster_name, "role": definition.role.value},
        "start_after_create": True,
    }
    if definition.placement_group_id is not None:
        spec["placement_group"] = definition.placement_group_id
    spec.update(definition.server_settings)
    return spec
