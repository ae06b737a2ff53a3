"""Idempotence guards.

A guard is a callable ``(ctx, runner) -> bool`` that returns True when the
state a step would produce is already in place. Guards only use the
runner's read-only primitives, so they are safe to evaluate in dry-run
mode.
"""
from typing import Callable, Iterable

Guard = Callable[..., bool]


def binary_present(name: str) -> Guard:
    def guard(ctx, runner) -> bool:
        return runner.which(name)
    guard.__doc__ = f"{name} is on PATH"
    return guard


def path_exists(path: str) -> Guard:
    def guard(ctx, runner) -> bool:
        return runner.path_exists(path)
    guard.__doc__ = f"{path} exists"
    return guard


def file_contains(path: str, *markers: str) -> Guard:
    """True when ``path`` exists and contains every marker."""
    def guard(ctx, runner) -> bool:
        content = runner.read_file(path)
        if content is None:
            return False
        return all(marker in content for marker in markers)
    guard.__doc__ = f"{path} is configured"
    return guard


def packages_installed(packages: Iterable[str]) -> Guard:
    packages = tuple(packages)

    def guard(ctx, runner) -> bool:
        manager = ctx.package_manager
        return all(manager.installed_version(runner, pkg) is not None for pkg in packages)
    return guard


def package_version_installed(packages: Iterable[str]) -> Guard:
    """Every package is installed at exactly ``ctx.k8s_version``."""
    packages = tuple(packages)

    def guard(ctx, runner) -> bool:
        manager = ctx.package_manager
        return all(manager.installed_version(runner, pkg) == ctx.k8s_version for pkg in packages)
    return guard


def module_loaded(*modules: str) -> Guard:
    def guard(ctx, runner) -> bool:
        return all(runner.path_exists(f"/sys/module/{module}") for module in modules)
    return guard


def service_enabled(service: str) -> Guard:
    def guard(ctx, runner) -> bool:
        return (runner.succeeds("systemctl", "is-enabled", "--quiet", service)
                and runner.succeeds("systemctl", "is-active", "--quiet", service))
    return guard


def swap_disabled(ctx, runner) -> bool:
    """No active swap devices and no uncommented swap entries in fstab."""
    swaps = runner.read_file("/proc/swaps") or ""
    # First line of /proc/swaps is a header
    if len([line for line in swaps.splitlines() if line.strip()]) > 1:
        return False
    fstab = runner.read_file("/etc/fstab") or ""
    return not any(is_swap_entry(line) for line in fstab.splitlines())


def is_swap_entry(line: str) -> bool:
    stripped = line.strip()
    if not stripped or stripped.startswith('#'):
        return False
    fields = stripped.split()
    return len(fields) >= 3 and fields[2] == "swap"


def sysctl_applied(path: str, params: dict) -> Guard:
    """The sysctl drop-in exists and its values are live in /proc/sys."""
    def guard(ctx, runner) -> bool:
        if not file_contains(path, *params)(ctx, runner):
            return False
        for key, value in params.items():
            live = runner.read_file("/proc/sys/" + key.replace('.', '/'))
            if live is None or live.strip() != str(value):
                return False
        return True
    return guard


def command_succeeds(command: str, *args, as_cluster_user: bool = False) -> Guard:
    """The read-only command exits 0 (optionally run as the invoking user)."""
    def guard(ctx, runner) -> bool:
        user = ctx.cluster_user if as_cluster_user else None
        return runner.succeeds(command, *args, user=user)
    return guard

