"""Tests for idempotence guards."""
import pytest

from kubestrap import guards
from fakes import SWAPS_HEADER


class TestSimpleGuards:
    """Tests for guards over binaries, paths and files."""

    def test_binary_present(self, fake_host, debian_ctx):
        guard = guards.binary_present("docker")
        assert guard(debian_ctx, fake_host) is False

        fake_host.binaries.add("docker")
        assert guard(debian_ctx, fake_host) is True

    def test_path_exists(self, fake_host, debian_ctx):
        guard = guards.path_exists("/etc/kubernetes/admin.conf")
        assert guard(debian_ctx, fake_host) is False

        fake_host.files["/etc/kubernetes/admin.conf"] = ""
        assert guard(debian_ctx, fake_host) is True

    def test_file_contains_requires_every_marker(self, fake_host, debian_ctx):
        guard = guards.file_contains("/etc/modules-load.d/k8s.conf", "overlay", "br_netfilter")
        assert guard(debian_ctx, fake_host) is False

        fake_host.files["/etc/modules-load.d/k8s.conf"] = "overlay\n"
        assert guard(debian_ctx, fake_host) is False

        fake_host.files["/etc/modules-load.d/k8s.conf"] = "overlay\nbr_netfilter\n"
        assert guard(debian_ctx, fake_host) is True

    def test_module_loaded(self, fake_host, debian_ctx):
        guard = guards.module_loaded("overlay", "br_netfilter")
        fake_host.modules.add("overlay")
        assert guard(debian_ctx, fake_host) is False

        fake_host.modules.add("br_netfilter")
        assert guard(debian_ctx, fake_host) is True


class TestPackageGuards:
    """Tests for package guards."""

    def test_packages_installed(self, fake_host, debian_ctx):
        guard = guards.packages_installed(["curl", "gpg"])
        fake_host.packages["curl"] = "8.5.0"
        assert guard(debian_ctx, fake_host) is False

        fake_host.packages["gpg"] = "2.4.4"
        assert guard(debian_ctx, fake_host) is True

    def test_package_version_installed_checks_exact_version(self, fake_host, debian_ctx):
        guard = guards.package_version_installed(["kubelet"])
        fake_host.packages["kubelet"] = "1.28.6"
        assert guard(debian_ctx, fake_host) is False

        fake_host.packages["kubelet"] = "1.29.1"
        assert guard(debian_ctx, fake_host) is True

    def test_package_version_installed_on_rhel(self, fake_host, rhel_ctx):
        guard = guards.package_version_installed(["kubeadm"])
        fake_host.packages["kubeadm"] = "1.29.1"

        assert guard(rhel_ctx, fake_host) is True


class TestSwapGuard:
    """Tests for swap detection."""

    def test_active_swap(self, fake_host, debian_ctx):
        assert guards.swap_disabled(debian_ctx, fake_host) is False

    def test_swap_off_but_still_in_fstab(self, fake_host, debian_ctx):
        fake_host.files["/proc/swaps"] = SWAPS_HEADER
        assert guards.swap_disabled(debian_ctx, fake_host) is False

    def test_swap_off_and_commented(self, fake_host, debian_ctx):
        fake_host.files["/proc/swaps"] = SWAPS_HEADER
        fake_host.files["/etc/fstab"] = "UUID=1234 / ext4 defaults 0 1\n#/swap.img none swap sw 0 0\n"
        assert guards.swap_disabled(debian_ctx, fake_host) is True

    @pytest.mark.parametrize("line,expected", [
        ("/swap.img none swap sw 0 0", True),
        ("  /dev/sda2   none   swap   defaults 0 0", True),
        ("#/swap.img none swap sw 0 0", False),
        ("UUID=1234 / ext4 defaults 0 1", False),
        ("", False),
    ])
    def test_is_swap_entry(self, line, expected):
        assert guards.is_swap_entry(line) is expected


class TestSysctlGuard:
    """Tests for sysctl detection."""

    PARAMS = {"net.ipv4.ip_forward": 1}

    def test_file_missing(self, fake_host, debian_ctx):
        fake_host.files["/proc/sys/net/ipv4/ip_forward"] = "1\n"
        assert guards.sysctl_applied("/etc/sysctl.d/k8s.conf", self.PARAMS)(debian_ctx, fake_host) is False

    def test_file_written_but_not_live(self, fake_host, debian_ctx):
        fake_host.files["/etc/sysctl.d/k8s.conf"] = "net.ipv4.ip_forward = 1\n"
        assert guards.sysctl_applied("/etc/sysctl.d/k8s.conf", self.PARAMS)(debian_ctx, fake_host) is False

    def test_applied(self, fake_host, debian_ctx):
        fake_host.files["/etc/sysctl.d/k8s.conf"] = "net.ipv4.ip_forward = 1\n"
        fake_host.files["/proc/sys/net/ipv4/ip_forward"] = "1\n"
        assert guards.sysctl_applied("/etc/sysctl.d/k8s.conf", self.PARAMS)(debian_ctx, fake_host) is True


class TestCommandGuards:
    """Tests for command-based guards and combinators."""

    def test_service_enabled(self, fake_host, debian_ctx):
        guard = guards.service_enabled("containerd")
        assert guard(debian_ctx, fake_host) is False

        fake_host.services.add("containerd")
        assert guard(debian_ctx, fake_host) is True

    def test_command_succeeds_as_cluster_user(self, fake_host):
        from fakes import make_context
        ctx = make_context(user="alice")
        fake_host.minikube_running = True

        assert guards.command_succeeds("minikube", "status", as_cluster_user=True)(ctx, fake_host) is True
        assert fake_host.executed[-1] == "su - alice -c 'minikube status'"

    def test_guards_do_not_mutate(self, fake_host, debian_ctx):
        guards.service_enabled("kubelet")(debian_ctx, fake_host)
        guards.packages_installed(["curl"])(debian_ctx, fake_host)

        assert fake_host.history == []

