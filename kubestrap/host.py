"""Host detection and the per-OS-family package manager capabilities."""
import enum
import platform
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from kubestrap.config import DEFAULT_K8S_VERSION, ProvisionOptions
from kubestrap.errors import UnsupportedEnvironment
from kubestrap.utils import get_real_home, get_real_user, is_root

OS_RELEASE = Path("/etc/os-release")

VERSION_PATTERN = re.compile(r'^v?(\d+)\.(\d+)\.(\d+)$')

KUBE_PACKAGES = ("kubelet", "kubeadm", "kubectl")

ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


class OSFamily(enum.Enum):
    DEBIAN = "debian-family"
    RHEL = "rhel-family"
    UNSUPPORTED = "unsupported"


OS_IDS = {
    "ubuntu": OSFamily.DEBIAN,
    "debian": OSFamily.DEBIAN,
    "centos": OSFamily.RHEL,
    "rhel": OSFamily.RHEL,
    "fedora": OSFamily.RHEL,
    "rocky": OSFamily.RHEL,
    "almalinux": OSFamily.RHEL,
}


def parse_os_release(text: str) -> Dict[str, str]:
    """Parse the KEY=value lines of an os-release file."""
    fields = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or '=' not in line:
            continue
        key, _, value = line.partition('=')
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in '"\'':
            value = value[1:-1]
        fields[key.strip()] = value
    return fields


def read_os_release(path: Path = OS_RELEASE) -> Dict[str, str]:
    try:
        return parse_os_release(path.read_text())
    except FileNotFoundError:
        return {}


def detect_os_family(os_release: Dict[str, str]) -> OSFamily:
    """Map os-release identity to the family whose pipeline applies.

    ``ID`` wins; ``ID_LIKE`` is only consulted for derivatives we don't
    list by name (linuxmint, pop, ...).
    """
    os_id = os_release.get('ID', '').lower()
    if os_id in OS_IDS:
        return OS_IDS[os_id]
    for like in os_release.get('ID_LIKE', '').lower().split():
        if like in OS_IDS:
            return OS_IDS[like]
    return OSFamily.UNSUPPORTED


def normalize_version(version: str) -> str:
    """Return ``major.minor.patch`` without a leading ``v``."""
    match = VERSION_PATTERN.match(version.strip())
    if not match:
        raise ValueError(f"Kubernetes version must look like 1.29.1, got {version!r}")
    return '.'.join(match.groups())


def minor_version(version: str) -> str:
    """``1.29.1`` -> ``1.29``."""
    major, minor, _ = normalize_version(version).split('.')
    return f"{major}.{minor}"


def detect_arch(machine: Optional[str] = None) -> str:
    machine = (machine or platform.machine()).lower()
    if machine not in ARCHITECTURES:
        raise UnsupportedEnvironment(f"Unsupported architecture: {machine}")
    return ARCHITECTURES[machine]


@dataclass(frozen=True)
class PackageManager:
    """Capability table for one OS family."""

    family: OSFamily
    refresh: Tuple[str, ...]
    install: Tuple[str, ...]
    base_packages: Tuple[str, ...]
    minikube_packages: Tuple[str, ...]
    containerd_package: str
    repo_file: str
    repo_add: Tuple[str, ...] = ()
    install_pinned_flags: Tuple[str, ...] = ()
    hold: Tuple[str, ...] = ()
    service_enable: Tuple[str, ...] = ("systemctl", "enable", "--now")

    @property
    def repo_kind(self) -> str:
        return "deb" if self.family is OSFamily.DEBIAN else "rpm"

    def repo_url(self, k8s_version: str) -> str:
        return f"https://pkgs.k8s.io/core:/stable:/v{minor_version(k8s_version)}/{self.repo_kind}/"

    def pin(self, package: str, k8s_version: str) -> str:
        """Package spec that installs exactly ``k8s_version``."""
        if self.family is OSFamily.DEBIAN:
            return f"{package}={k8s_version}-*"
        return f"{package}-{k8s_version}"

    def installed_version(self, runner, package: str) -> Optional[str]:
        """Upstream version of an installed package, or None."""
        if self.family is OSFamily.DEBIAN:
            result = runner.query("dpkg-query", "-W", "-f=${Status}|${Version}", package)
            if result.exit_code != 0:
                return None
            status, _, version = result.stdout.strip().partition('|')
            if not status.split() or status.split()[-1] != "installed":
                return None
            # 1.29.1-1.1 -> 1.29.1
            return version.split('-')[0]
        result = runner.query("rpm", "-q", "--qf", "%{VERSION}", package)
        if result.exit_code != 0:
            return None
        return result.stdout.strip()


DEBIAN_PACKAGES = PackageManager(
    family=OSFamily.DEBIAN,
    refresh=("apt-get", "update"),
    install=("apt-get", "install", "-y"),
    base_packages=("apt-transport-https", "ca-certificates", "curl", "gpg"),
    minikube_packages=("apt-transport-https", "ca-certificates", "curl",
                       "software-properties-common"),
    containerd_package="containerd",
    repo_file="/etc/apt/sources.list.d/kubernetes.list",
    install_pinned_flags=("--allow-downgrades", "--allow-change-held-packages"),
    hold=("apt-mark", "hold"),
)

RHEL_PACKAGES = PackageManager(
    family=OSFamily.RHEL,
    refresh=("yum", "makecache"),
    install=("yum", "install", "-y"),
    base_packages=("curl", "yum-utils"),
    minikube_packages=("curl",),
    containerd_package="containerd.io",
    repo_file="/etc/yum.repos.d/kubernetes.repo",
    repo_add=("yum-config-manager", "--add-repo",
              "https://download.docker.com/linux/centos/docker-ce.repo"),
    install_pinned_flags=("--disableexcludes=kubernetes",),
)

PACKAGE_MANAGERS = {
    OSFamily.DEBIAN: DEBIAN_PACKAGES,
    OSFamily.RHEL: RHEL_PACKAGES,
}


@dataclass(frozen=True)
class HostContext:
    """What we know about the host; populated once, read-only afterwards."""

    os_id: str
    family: OSFamily
    is_root: bool
    invoking_user: str
    k8s_version: str
    arch: str = "amd64"
    options: ProvisionOptions = field(default_factory=ProvisionOptions)

    @property
    def k8s_minor(self) -> str:
        return minor_version(self.k8s_version)

    @property
    def package_manager(self) -> PackageManager:
        return PACKAGE_MANAGERS[self.family]

    @property
    def user_home(self) -> str:
        if not self.invoking_user:
            return "/root"
        home = get_real_home(self.invoking_user)
        # expanduser leaves ~name untouched when the user has no passwd entry
        if home.startswith("~"):
            raise UnsupportedEnvironment(f"Cannot find a home directory for user {self.invoking_user}")
        return home

    @property
    def cluster_user(self) -> Optional[str]:
        """User to run cluster-client commands as (None means root)."""
        return self.invoking_user or None


def detect_host(k8s_version: str = DEFAULT_K8S_VERSION,
                options: Optional[ProvisionOptions] = None,
                os_release: Path = OS_RELEASE) -> HostContext:
    """Build the HostContext, refusing unsupported hosts before any mutation."""
    fields = read_os_release(os_release)
    family = detect_os_family(fields)
    os_id = fields.get('ID', '')
    if family is OSFamily.UNSUPPORTED:
        raise UnsupportedEnvironment(
            f"Unsupported OS: {os_id or 'unknown'}. "
            "Supported: Ubuntu, Debian, CentOS, RHEL, Fedora, Rocky, AlmaLinux"
        )
    ctx = HostContext(
        os_id=os_id,
        family=family,
        is_root=is_root(),
        invoking_user=get_real_user(),
        k8s_version=normalize_version(k8s_version),
        arch=detect_arch(),
        options=options or ProvisionOptions(),
    )
    # resolve the home directory now so a bad SUDO_USER fails before any mutation
    ctx.user_home
    return ctx
