"""Tunable settings for the provisioning flows."""
from dataclasses import dataclass

DEFAULT_K8S_VERSION = "1.29.1"
DEFAULT_POD_NETWORK_CIDR = "10.244.0.0/16"
FLANNEL_MANIFEST_URL = "https://github.com/flannel-io/flannel/releases/latest/download/kube-flannel.yml"


@dataclass(frozen=True)
class ProvisionOptions:
    """Knobs the CLI exposes; everything else about a flow is fixed."""

    pod_network_cidr: str = DEFAULT_POD_NETWORK_CIDR
    cni_manifest_url: str = FLANNEL_MANIFEST_URL
    minikube_driver: str = "docker"
    minikube_cpus: int = 2
    minikube_memory: str = "4g"
    verify_timeout: float = 300.0
    poll_interval: float = 10.0
    strict_verify: bool = False
