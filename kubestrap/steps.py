"""Provisioning workflow steps.

Two flows are defined here: ``kubeadm`` installs a full control plane on
the host, ``minikube`` runs a local cluster on top of Docker. Both are
built as a :class:`~kubestrap.pipeline.Pipeline` for the detected OS
family.
"""
import enum
import os
import re
import tempfile
import time
from typing import List, Optional

from kubestrap import guards
from kubestrap.errors import (
    PrivilegeError, StepExecutionError, UnsupportedEnvironment, VerificationError,
)
from kubestrap.host import KUBE_PACKAGES, HostContext, OSFamily
from kubestrap.pipeline import Pipeline, PipelineReport, Step
from kubestrap.runner import CommandRunner
from kubestrap.utils import log_action, log_info

KERNEL_MODULES = ("overlay", "br_netfilter")
MODULES_FILE = "/etc/modules-load.d/k8s.conf"

SYSCTL_FILE = "/etc/sysctl.d/k8s.conf"
SYSCTL_PARAMS = {
    "net.bridge.bridge-nf-call-iptables": 1,
    "net.bridge.bridge-nf-call-ip6tables": 1,
    "net.ipv4.ip_forward": 1,
}

CONTAINERD_CONFIG = "/etc/containerd/config.toml"
APT_KEYRING = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"
ADMIN_CONF = "/etc/kubernetes/admin.conf"
CONTROL_PLANE_TAINT = "node-role.kubernetes.io/control-plane"

DOCKER_INSTALL_URL = "https://get.docker.com"
KUBECTL_BIN = "/usr/local/bin/kubectl"
MINIKUBE_BIN = "/usr/local/bin/minikube"


class Flow(str, enum.Enum):
    KUBEADM = "kubeadm"
    MINIKUBE = "minikube"


# --- host preparation -------------------------------------------------------

def install_packages(field: str):
    """Action installing the package list named ``field`` of the capability table."""
    def action(ctx: HostContext, runner: CommandRunner) -> None:
        manager = ctx.package_manager
        packages = getattr(manager, field)
        log_action(f"Installing {', '.join(packages)}...")
        runner.run(*manager.refresh)
        runner.run(*manager.install, *packages)
    return action


def packages_present(field: str):
    def guard(ctx, runner) -> bool:
        return guards.packages_installed(getattr(ctx.package_manager, field))(ctx, runner)
    return guard


def disable_swap(ctx: HostContext, runner: CommandRunner) -> None:
    log_action("Turning swap off and commenting it out of /etc/fstab...")
    runner.run("swapoff", "-a")
    fstab = runner.read_file("/etc/fstab")
    if fstab is None:
        return
    lines = [f"#{line}" if guards.is_swap_entry(line) else line for line in fstab.splitlines()]
    updated = "\n".join(lines) + "\n"
    if updated != fstab:
        runner.write_file("/etc/fstab", updated)


def write_modules_file(ctx: HostContext, runner: CommandRunner) -> None:
    log_action(f"Writing {MODULES_FILE}...")
    runner.write_file(MODULES_FILE, "\n".join(KERNEL_MODULES) + "\n")


def load_kernel_modules(ctx: HostContext, runner: CommandRunner) -> None:
    for module in KERNEL_MODULES:
        log_action(f"Loading kernel module {module}...")
        runner.run("modprobe", module)


def render_sysctl() -> str:
    return "".join(f"{key} = {value}\n" for key, value in SYSCTL_PARAMS.items())


def apply_sysctl(ctx: HostContext, runner: CommandRunner) -> None:
    log_action(f"Writing {SYSCTL_FILE} and reloading sysctl...")
    runner.write_file(SYSCTL_FILE, render_sysctl())
    runner.run("sysctl", "--system")


# --- container runtime ------------------------------------------------------

def install_containerd(ctx: HostContext, runner: CommandRunner) -> None:
    manager = ctx.package_manager
    if manager.repo_add:
        log_action("Adding the Docker CE repository...")
        runner.run(*manager.repo_add)
    log_action("Installing containerd...")
    runner.run(*manager.install, manager.containerd_package)


def enable_systemd_cgroup(config: str) -> str:
    """Flip ``SystemdCgroup`` to true in a containerd config."""
    updated, count = re.subn(r'SystemdCgroup\s*=\s*(true|false)', 'SystemdCgroup = true', config)
    if count == 0:
        raise StepExecutionError("containerd default config has no SystemdCgroup setting")
    return updated


def configure_containerd(ctx: HostContext, runner: CommandRunner) -> None:
    log_action("Generating containerd config with SystemdCgroup enabled...")
    default = runner.run("containerd", "config", "default").stdout
    runner.write_file(CONTAINERD_CONFIG, enable_systemd_cgroup(default))
    runner.run("systemctl", "restart", "containerd")


def enable_service(service: str):
    def action(ctx: HostContext, runner: CommandRunner) -> None:
        log_action(f"Enabling {service}...")
        runner.run(*ctx.package_manager.service_enable, service)
    return action


# --- kubernetes packages ----------------------------------------------------

def render_kubernetes_repo(ctx: HostContext) -> str:
    manager = ctx.package_manager
    url = manager.repo_url(ctx.k8s_version)
    if ctx.family is OSFamily.DEBIAN:
        return f"deb [signed-by={APT_KEYRING}] {url} /\n"
    return (
        "[kubernetes]\n"
        "name=Kubernetes\n"
        f"baseurl={url}\n"
        "enabled=1\n"
        "gpgcheck=1\n"
        f"gpgkey={url}repodata/repomd.xml.key\n"
        f"exclude={' '.join(KUBE_PACKAGES)} cri-tools kubernetes-cni\n"
    )


def kubernetes_repo_present(ctx, runner) -> bool:
    manager = ctx.package_manager
    return guards.file_contains(manager.repo_file, manager.repo_url(ctx.k8s_version))(ctx, runner)


def add_kubernetes_repo(ctx: HostContext, runner: CommandRunner) -> None:
    manager = ctx.package_manager
    log_action(f"Adding Kubernetes v{ctx.k8s_minor} package repository...")
    if ctx.family is OSFamily.DEBIAN:
        runner.run("mkdir", "-p", "-m", "755", "/etc/apt/keyrings")
        with tempfile.TemporaryDirectory(prefix="kubestrap-") as workdir:
            key = os.path.join(workdir, "Release.key")
            runner.fetch(manager.repo_url(ctx.k8s_version) + "Release.key", key)
            runner.run("gpg", "--dearmor", "--yes", "-o", APT_KEYRING, key)
    runner.write_file(manager.repo_file, render_kubernetes_repo(ctx))


def kube_package_specs(ctx: HostContext) -> List[str]:
    return [ctx.package_manager.pin(package, ctx.k8s_version) for package in KUBE_PACKAGES]


def install_kube_packages(ctx: HostContext, runner: CommandRunner) -> None:
    manager = ctx.package_manager
    log_action(f"Installing {', '.join(KUBE_PACKAGES)} {ctx.k8s_version}...")
    runner.run(*manager.refresh)
    runner.run(*manager.install, *manager.install_pinned_flags, *kube_package_specs(ctx))
    if manager.hold:
        runner.run(*manager.hold, *KUBE_PACKAGES)


# --- control plane ----------------------------------------------------------

def admin_kubectl(*args: str) -> tuple:
    return ("kubectl", "--kubeconfig", ADMIN_CONF, *args)


def kubeadm_init(ctx: HostContext, runner: CommandRunner) -> None:
    log_action("Bootstrapping the control plane with kubeadm (this takes a few minutes)...")
    runner.run(
        "kubeadm", "init",
        f"--pod-network-cidr={ctx.options.pod_network_cidr}",
        f"--kubernetes-version=v{ctx.k8s_version}",
    )


def user_kubeconfig(ctx: HostContext) -> str:
    return f"{ctx.user_home}/.kube/config"


def user_kubeconfig_present(ctx, runner) -> bool:
    return runner.path_exists(user_kubeconfig(ctx))


def install_kubeconfig(ctx: HostContext, runner: CommandRunner) -> None:
    dest = user_kubeconfig(ctx)
    log_action(f"Installing kubeconfig at {dest}...")
    runner.run("mkdir", "-p", f"{ctx.user_home}/.kube")
    runner.run("cp", ADMIN_CONF, dest)
    if ctx.invoking_user:
        runner.run("chown", "-R", f"{ctx.invoking_user}:", f"{ctx.user_home}/.kube")


def apply_cni(ctx: HostContext, runner: CommandRunner) -> None:
    log_action("Applying the Flannel pod network manifest...")
    runner.run(*admin_kubectl("apply", "-f", ctx.options.cni_manifest_url))


def control_plane_untainted(ctx, runner) -> bool:
    result = runner.query(*admin_kubectl("get", "nodes", "-o", "jsonpath={.items[*].spec.taints[*].key}"))
    return result.ok and CONTROL_PLANE_TAINT not in result.stdout


def remove_control_plane_taint(ctx: HostContext, runner: CommandRunner) -> None:
    log_action("Allowing workloads on the control-plane node...")
    runner.run(*admin_kubectl("taint", "nodes", "--all", f"{CONTROL_PLANE_TAINT}-"))


# --- minikube ---------------------------------------------------------------

def install_docker(ctx: HostContext, runner: CommandRunner) -> None:
    log_action("Installing Docker with the convenience script...")
    with tempfile.TemporaryDirectory(prefix="kubestrap-") as workdir:
        script = os.path.join(workdir, "get-docker.sh")
        runner.fetch(DOCKER_INSTALL_URL, script)
        runner.run("sh", script)
    if ctx.invoking_user:
        runner.run("usermod", "-aG", "docker", ctx.invoking_user)
    runner.run(*ctx.package_manager.service_enable, "docker")


def kubectl_url(ctx: HostContext) -> str:
    return f"https://dl.k8s.io/release/v{ctx.k8s_version}/bin/linux/{ctx.arch}/kubectl"


def minikube_url(ctx: HostContext) -> str:
    return f"https://storage.googleapis.com/minikube/releases/latest/minikube-linux-{ctx.arch}"


def install_kubectl(ctx: HostContext, runner: CommandRunner) -> None:
    log_action(f"Downloading kubectl v{ctx.k8s_version}...")
    runner.fetch(kubectl_url(ctx), KUBECTL_BIN, mode=0o755)


def install_minikube(ctx: HostContext, runner: CommandRunner) -> None:
    log_action("Downloading minikube...")
    runner.fetch(minikube_url(ctx), MINIKUBE_BIN, mode=0o755)


def minikube_start_args(ctx: HostContext) -> List[str]:
    options = ctx.options
    args = [
        "start",
        f"--driver={options.minikube_driver}",
        f"--cpus={options.minikube_cpus}",
        f"--memory={options.minikube_memory}",
        f"--kubernetes-version=v{ctx.k8s_version}",
    ]
    # The docker driver refuses to run as root unless forced
    if not ctx.cluster_user:
        args.append("--force")
    return args


def start_minikube(ctx: HostContext, runner: CommandRunner) -> None:
    who = ctx.cluster_user or "root"
    log_action(f"Starting minikube as {who}...")
    runner.run("minikube", *minikube_start_args(ctx), user=ctx.cluster_user)


# --- verification -----------------------------------------------------------

def nodes_ready(output: str) -> bool:
    """Every row of ``kubectl get nodes --no-headers`` is Ready."""
    rows = [line.split() for line in output.splitlines() if line.strip()]
    return bool(rows) and all(len(row) > 1 and row[1] == "Ready" for row in rows)


def pods_running(output: str) -> bool:
    """Every row of ``kubectl get pods --no-headers`` is Running and ready, or Completed."""
    rows = [line.split() for line in output.splitlines() if line.strip()]
    if not rows:
        return False
    for row in rows:
        if len(row) < 3:
            return False
        ready, status = row[1], row[2]
        if status == "Completed":
            continue
        current, _, wanted = ready.partition('/')
        if status != "Running" or current != wanted:
            return False
    return True


def verify_cluster(kubeconfig: Optional[str] = None):
    """Build the verification action.

    With ``kubeconfig`` kubectl runs as root against that file, otherwise
    it runs as the invoking user with their own config.
    """
    def kubectl(*args: str) -> tuple:
        if kubeconfig:
            return ("kubectl", "--kubeconfig", kubeconfig, *args)
        return ("kubectl", *args)

    def action(ctx: HostContext, runner: CommandRunner) -> None:
        user = None if kubeconfig else ctx.cluster_user
        options = ctx.options
        deadline = time.monotonic() + options.verify_timeout
        while True:
            nodes = runner.query(*kubectl("get", "nodes", "--no-headers"), user=user)
            pods = runner.query(*kubectl("get", "pods", "-n", "kube-system", "--no-headers"), user=user)
            if nodes.ok and pods.ok and nodes_ready(nodes.stdout) and pods_running(pods.stdout):
                break
            if time.monotonic() >= deadline:
                raise VerificationError(
                    f"Cluster not ready after {options.verify_timeout:g}s:\n"
                    f"{nodes.stdout or nodes.stderr}{pods.stdout or pods.stderr}"
                )
            log_action("Waiting for the node and system pods to become ready...")
            time.sleep(options.poll_interval)

        log_info("Cluster is ready.")
        print(runner.output(*kubectl("get", "nodes"), user=user))
        print(runner.output(*kubectl("get", "pods", "-n", "kube-system"), user=user))
        print(runner.output(*kubectl("cluster-info"), user=user))

    return action


# --- pipelines --------------------------------------------------------------

def host_preparation_steps() -> List[Step]:
    return [
        Step("Install base packages", install_packages("base_packages"),
             packages_present("base_packages")),
        Step("Disable swap", disable_swap, guards.swap_disabled),
        Step("Configure kernel modules", write_modules_file,
             guards.file_contains(MODULES_FILE, *KERNEL_MODULES)),
        Step("Load kernel modules", load_kernel_modules, guards.module_loaded(*KERNEL_MODULES)),
        Step("Configure sysctl", apply_sysctl, guards.sysctl_applied(SYSCTL_FILE, SYSCTL_PARAMS)),
    ]


def kubeadm_steps() -> List[Step]:
    return host_preparation_steps() + [
        Step("Install containerd", install_containerd, guards.binary_present("containerd")),
        Step("Configure containerd", configure_containerd,
             guards.file_contains(CONTAINERD_CONFIG, "SystemdCgroup = true")),
        Step("Enable containerd", enable_service("containerd"), guards.service_enabled("containerd")),
        Step("Add Kubernetes repository", add_kubernetes_repo, kubernetes_repo_present),
        Step("Install kubelet, kubeadm and kubectl", install_kube_packages,
             guards.package_version_installed(KUBE_PACKAGES)),
        Step("Enable kubelet", enable_service("kubelet"), guards.service_enabled("kubelet")),
        Step("Initialize control plane", kubeadm_init, guards.path_exists(ADMIN_CONF)),
        Step("Install kubeconfig", install_kubeconfig, user_kubeconfig_present),
        Step("Install pod network", apply_cni,
             guards.command_succeeds(*admin_kubectl("get", "daemonset", "-n", "kube-flannel",
                                                    "kube-flannel-ds"))),
        Step("Remove control-plane taint", remove_control_plane_taint, control_plane_untainted),
        Step("Verify cluster", verify_cluster(ADMIN_CONF), gating=False),
    ]


def minikube_steps() -> List[Step]:
    return [
        Step("Install base packages", install_packages("minikube_packages"),
             packages_present("minikube_packages")),
        Step("Install Docker", install_docker, guards.binary_present("docker")),
        Step("Install kubectl", install_kubectl, guards.binary_present("kubectl")),
        Step("Install minikube", install_minikube, guards.binary_present("minikube")),
        Step("Start minikube", start_minikube,
             guards.command_succeeds("minikube", "status", as_cluster_user=True)),
        Step("Verify cluster", verify_cluster(), gating=False),
    ]


FLOW_STEPS = {
    Flow.KUBEADM: kubeadm_steps,
    Flow.MINIKUBE: minikube_steps,
}


def build_pipeline(flow: Flow, ctx: HostContext) -> Pipeline:
    """Select the pipeline for this flow on this host's OS family."""
    if ctx.family is OSFamily.UNSUPPORTED:
        raise UnsupportedEnvironment(f"Unsupported OS: {ctx.os_id or 'unknown'}")
    flow = Flow(flow)
    return Pipeline(f"{flow.value}-{ctx.family.value}", FLOW_STEPS[flow]())


def next_steps(flow: Flow, ctx: HostContext) -> List[str]:
    """Instructions printed after a successful run."""
    if Flow(flow) is Flow.KUBEADM:
        return [
            "To use kubectl as another regular user, run:",
            "  mkdir -p $HOME/.kube",
            f"  sudo cp -i {ADMIN_CONF} $HOME/.kube/config",
            "  sudo chown $(id -u):$(id -g) $HOME/.kube/config",
            "",
            "To confirm everything is working, run:",
            "  kubectl get nodes",
        ]
    lines = []
    if ctx.invoking_user:
        lines += [f"Log out and back in so {ctx.invoking_user} picks up the docker group.", ""]
    return lines + [
        "To confirm everything is working, run:",
        "  kubectl get nodes",
        "  kubectl cluster-info",
    ]


def provision_system(ctx: HostContext, flow: Flow = Flow.KUBEADM,
                     runner: Optional[CommandRunner] = None,
                     dry_run: bool = False) -> PipelineReport:
    """Main provisioning workflow: build the pipeline for the host and run it."""
    if not ctx.is_root:
        raise PrivilegeError("Provisioning requires root. Run with sudo.")
    pipeline = build_pipeline(flow, ctx)
    runner = runner or CommandRunner()
    log_info(f"Detected OS: {ctx.os_id} ({ctx.family.value})")
    log_info(f"Running {pipeline.name} pipeline for Kubernetes {ctx.k8s_version} "
             f"({len(pipeline)} steps)")
    return pipeline.run(ctx, runner, dry_run=dry_run)
