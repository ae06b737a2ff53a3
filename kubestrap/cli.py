"""CLI interface for the provisioning tool."""
import typer

from . import host
from . import steps
from . import utils
from .config import DEFAULT_K8S_VERSION, DEFAULT_POD_NETWORK_CIDR, ProvisionOptions
from .errors import PrivilegeError, ProvisionError


app = typer.Typer(
    name="kubestrap",
    help="Provision a single-node Kubernetes cluster on this host.",
    add_completion=False,
)


def _version_callback(value: str) -> str:
    try:
        return host.normalize_version(value)
    except ValueError as e:
        raise typer.BadParameter(str(e))


@app.command()
def run(
    version: str = typer.Argument(
        DEFAULT_K8S_VERSION, envvar="KUBESTRAP_K8S_VERSION", callback=_version_callback,
        help="Kubernetes version to install (major.minor.patch)",
    ),
    flow: steps.Flow = typer.Option(
        steps.Flow.KUBEADM, "--flow", envvar="KUBESTRAP_FLOW", case_sensitive=False,
        help="kubeadm installs a full control plane, minikube a local cluster on Docker",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview changes without applying them"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose output"),
    strict_verify: bool = typer.Option(
        False, "--strict-verify", help="Exit non-zero when the final cluster check fails",
    ),
    verify_timeout: float = typer.Option(
        300.0, "--verify-timeout", envvar="KUBESTRAP_VERIFY_TIMEOUT", min=0,
        help="Seconds to wait for the node and system pods to become ready",
    ),
    pod_network_cidr: str = typer.Option(
        DEFAULT_POD_NETWORK_CIDR, "--pod-network-cidr", envvar="KUBESTRAP_POD_NETWORK_CIDR",
        help="Pod network CIDR passed to kubeadm init",
    ),
):
    """Install and bootstrap a single-node cluster."""
    utils.setup_logging(verbose)

    options = ProvisionOptions(
        pod_network_cidr=pod_network_cidr,
        verify_timeout=verify_timeout,
        strict_verify=strict_verify,
    )
    try:
        if not utils.is_root():
            raise PrivilegeError("Provisioning requires root. Run with sudo.")
        ctx = host.detect_host(version, options)
    except ProvisionError as e:
        typer.echo(f"❗ {e}")
        raise typer.Exit(e.exit_code)

    report = steps.provision_system(ctx, flow, dry_run=dry_run)

    if not report.succeeded:
        typer.echo(f"❗ Step '{report.failed_step}' failed: {report.error}")
        stderr = getattr(report.error, 'stderr', '')
        if stderr.strip():
            typer.echo(stderr.rstrip())
        raise typer.Exit(report.exit_code)

    if report.warnings:
        for warning in report.warnings:
            typer.echo(f"⚠️  {warning.step_name}: {warning.error}")
        if options.strict_verify:
            raise typer.Exit(1)

    if dry_run:
        typer.echo("✅ Dry run complete!")
        return

    typer.echo("✅ Installation completed successfully!")
    for line in steps.next_steps(flow, ctx):
        typer.echo(line)


@app.command()
def detect():
    """Show which OS family this host was detected as."""
    fields = host.read_os_release()
    family = host.detect_os_family(fields)
    typer.echo(f"OS: {fields.get('ID', 'unknown')}")
    typer.echo(f"Family: {family.value}")
    if family is host.OSFamily.UNSUPPORTED:
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
