"""
hetzner_k3s/deployment/addons.py

Cluster add-ons applied after bootstrap: the Hetzner cloud controller
manager, the Hetzner CSI driver and the system-upgrade-controller used by
`upgrade-cluster`. The manifests themselves are applied by URL as-is.
"""

from __future__ import annotations

from hetzner_k3s.utils.kubectl import Kubectl

CLOUD_CONTROLLER_MANAGER_URL = (
    "https://github.com/hetznercloud/hcloud-cloud-controller-manager"
    "/releases/latest/download/ccm-networks.yaml"
)
CSI_DRIVER_URL = (
    "https://raw.githubusercontent.com/hetznercloud/csi-driver/master"
    "/deploy/kubernetes/hcloud-csi.yml"
)
SYSTEM_UPGRADE_CONTROLLER_URL = (
    "https://github.com/rancher/system-upgrade-controller"
    "/releases/download/v0.9.1/system-upgrade-controller.yaml"
)


async def deploy_cloud_controller_manager(
    kubectl: Kubectl, *, token: str, network_name: str
) -> None:
    print("Deploying Hetzner Cloud Controller Manager...")
    await kubectl.apply_secret(
        "hcloud", "kube-system", {"token": token, "network": network_name}
    )
    await kubectl.apply_url(CLOUD_CONTROLLER_MANAGER_URL)
    print("...Cloud Controller Manager deployed")


async def deploy_csi_driver(kubectl: Kubectl, *, token: str) -> None:
    print("Deploying Hetzner CSI Driver...")
    await kubectl.apply_secret("hcloud-csi", "kube-system", {"token": token})
    await kubectl.apply_url(CSI_DRIVER_URL)
    print("...CSI Driver deployed")


async def deploy_system_upgrade_controller(kubectl: Kubectl) -> None:
    print("Deploying k3s System Upgrade Controller...")
    await kubectl.apply_url(SYSTEM_UPGRADE_CONTROLLER_URL)
    print("...k3s System Upgrade Controller deployed")


async def deploy_addons(kubectl: Kubectl, *, token: str, network_name: str) -> None:
    await deploy_cloud_controller_manager(kubectl, token=token, network_name=network_name)
    await deploy_csi_driver(kubectl, token=token)
    await deploy_system_upgrade_controller(kubectl)
