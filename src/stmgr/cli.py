"""Command-line interface for the System Transparency manager."""

import functools
import logging
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .config import StmgrConfig, generate_default_config, load_config
from .errors import StmgrError
from .fileio import write_atomic
from .hostconfig import build_host_config, write_host_config
from .keygen import describe_certificate, issue_certificate, load_certificate, load_certificates
from .ospkg import create_package, package_info
from .sign import sign_package
from .verify import verify_package

console = Console()


def _setup_logging(verbose: bool) -> None:
    logger = logging.getLogger("stmgr")
    if not logger.handlers:
        logger.addHandler(RichHandler(console=Console(stderr=True), show_path=False))
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)


def reports_errors(func):
    """Print core failures as `ERROR: ...` and exit non-zero."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except (StmgrError, OSError) as e:
            click.echo(f"ERROR: {e}")
            sys.exit(1)

    return wrapper


def _progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    )


@click.group()
@click.version_option(version=__version__, prog_name="stmgr")
@click.option("--config", "-c", type=click.Path(exists=True), help="Configuration file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def main(ctx: click.Context, config: Optional[str], verbose: bool) -> None:
    """System Transparency manager.

    Create, sign and verify OS packages, issue signing certificates and
    provision host configurations.
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    _setup_logging(verbose)

    try:
        ctx.obj["config"] = load_config(Path(config)) if config else StmgrConfig()
    except StmgrError as e:
        click.echo(f"ERROR: {e}")
        sys.exit(1)


@main.group()
def ospkg() -> None:
    """Create, sign and inspect OS packages."""


@ospkg.command()
@click.option(
    "--out",
    "-o",
    default="",
    help="OS package output path. A directory or a file name; the archive (.zip) "
    "and descriptor (.json) share its base name.",
)
@click.option("--label", default=None, help="Short description of the boot configuration.")
@click.option("--url", default=None, help="URL of the OS package archive for network boot.")
@click.option("--kernel", "-k", default=None, help="Operating system kernel.")
@click.option("--initramfs", "-i", default=None, help="Operating system initramfs.")
@click.option("--cmdline", default="", help="Kernel command line.")
@click.pass_context
@reports_errors
def create(
    ctx: click.Context,
    out: str,
    label: Optional[str],
    url: Optional[str],
    kernel: Optional[str],
    initramfs: Optional[str],
    cmdline: str,
) -> None:
    """Create an OS package from kernel, initramfs and command line."""
    config: StmgrConfig = ctx.obj["config"]
    verbose: bool = ctx.obj["verbose"]

    with _progress() as progress:
        task = progress.add_task("Building OS package...", total=1)
        archive_path, descriptor_path = create_package(
            out=out,
            label=label,
            url=url,
            kernel=kernel,
            initramfs=initramfs,
            cmdline=cmdline,
            default_name=config.ospkg.default_name,
        )
        progress.update(task, completed=1)

    console.print(f"[bold green]✓[/bold green] OS package written to {archive_path} and {descriptor_path}")

    if verbose:
        _print_package(package_info(descriptor_path))


@ospkg.command()
@click.option("--key", "-k", required=True, help="Private key for signing.")
@click.option("--cert", "-c", required=True, help="Certificate corresponding to the private key.")
@click.option("--ospkg", "ospkg_path", required=True, help="OS package archive or descriptor file.")
@click.pass_context
@reports_errors
def sign(ctx: click.Context, key: str, cert: str, ospkg_path: str) -> None:
    """Sign an OS package with a private key."""
    descriptor_path = sign_package(key, cert, ospkg_path)
    console.print(f"[bold green]✓[/bold green] Signature added to {descriptor_path}")


@ospkg.command()
@click.option("--ospkg", "ospkg_path", required=True, help="OS package archive or descriptor file.")
@click.pass_context
@reports_errors
def show(ctx: click.Context, ospkg_path: str) -> None:
    """Show the contents of an OS package."""
    _print_package(package_info(ospkg_path))


@ospkg.command()
@click.option("--ospkg", "ospkg_path", required=True, help="OS package archive or descriptor file.")
@click.option(
    "--root-cert",
    "--rootCert",
    "root_certs",
    multiple=True,
    help="Trusted root certificate (repeatable). Defaults to the configured trust pool.",
)
@click.option("--threshold", "-t", type=int, default=None, help="Number of valid signatures required.")
@click.pass_context
@reports_errors
def verify(
    ctx: click.Context,
    ospkg_path: str,
    root_certs: tuple[str, ...],
    threshold: Optional[int],
) -> None:
    """Verify OS package signatures against trusted roots."""
    config: StmgrConfig = ctx.obj["config"]

    root_paths = list(root_certs) or config.trust.root_certs
    if not root_paths:
        raise StmgrError("no trusted root certificates given")
    if threshold is None:
        threshold = config.trust.threshold

    roots = load_certificates(root_paths)
    result = verify_package(ospkg_path, roots, threshold)

    table = Table(title="Verification Results")
    table.add_column("#", style="cyan")
    table.add_column("Signer", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Details")
    for check in result.checks:
        table.add_row(
            str(check.index),
            check.certificate.subject.rfc4514_string(),
            "✓ PASS" if check.valid else "✗ FAIL",
            check.details,
        )
    table.add_row(
        "",
        "Archive",
        "✓ PASS" if result.archive_valid else "✗ FAIL",
        result.archive_details,
    )
    console.print(table)

    if result.is_valid():
        console.print(
            f"[bold green]✓[/bold green] {result.valid_count} valid signatures, "
            f"threshold {result.threshold} met"
        )
        return

    if not result.threshold_met:
        raise StmgrError(
            f"only {result.valid_count} valid signatures, threshold is {result.threshold}"
        )
    raise StmgrError(f"archive verification failed: {result.archive_details}")


@main.group()
def keygen() -> None:
    """Generate keys and certificates."""


@keygen.command()
@click.option("--isCA", "--is-ca", "is_ca", is_flag=True, help="Generate self signed root certificate.")
@click.option(
    "--rootCert",
    "--root-cert",
    "root_cert",
    default=None,
    help="Root certificate in PEM format to sign the new certificate. Ignored with --isCA.",
)
@click.option(
    "--rootKey",
    "--root-key",
    "root_key",
    default=None,
    help="Root key in PEM format to sign the new certificate. Ignored with --isCA.",
)
@click.option("--validFrom", "--valid-from", "valid_from", default=None, help="RFC822 date. Defaults to now.")
@click.option(
    "--validUntil",
    "--valid-until",
    "valid_until",
    default=None,
    help="RFC822 date. Defaults to validFrom plus the configured validity (72h).",
)
@click.option("--certOut", "--cert-out", "cert_out", default=None, help="Output certificate file.")
@click.option("--keyOut", "--key-out", "key_out", default=None, help="Output key file.")
@click.pass_context
@reports_errors
def certificate(
    ctx: click.Context,
    is_ca: bool,
    root_cert: Optional[str],
    root_key: Optional[str],
    valid_from: Optional[str],
    valid_until: Optional[str],
    cert_out: Optional[str],
    key_out: Optional[str],
) -> None:
    """Generate an ED25519 key and certificate for signing OS packages."""
    config: StmgrConfig = ctx.obj["config"]
    verbose: bool = ctx.obj["verbose"]
    names = config.keygen

    if not cert_out:
        cert_out = names.root_cert_name if is_ca else names.cert_name
    if not key_out:
        key_out = names.root_key_name if is_ca else names.key_name

    cert_path, key_path = issue_certificate(
        is_ca=is_ca,
        root_cert=root_cert,
        root_key=root_key,
        valid_from=valid_from,
        valid_until=valid_until,
        cert_out=cert_out,
        key_out=key_out,
        validity=timedelta(hours=names.validity_hours),
    )

    console.print(f"[bold green]✓[/bold green] Certificate saved to {cert_path}, key saved to {key_path}")

    if verbose:
        info = describe_certificate(load_certificate(cert_path))
        table = Table(title="Certificate")
        table.add_column("Property", style="cyan")
        table.add_column("Value", style="green")
        for name, value in info.items():
            table.add_row(name.replace("_", " ").title(), value)
        console.print(table)


@main.group()
def provision() -> None:
    """Provision a node for System Transparency."""


@provision.command()
@click.option("--efi", is_flag=True, help="Store the host configuration in efivarfs.")
@click.option("--version", "hc_version", type=int, default=1, help="Host configuration version.")
@click.option("--addrMode", "--addr-mode", "addr_mode", default=None, help="network_mode (static or dhcp).")
@click.option("--hostIP", "--host-ip", "host_ip", default=None, help="host_ip in CIDR notation.")
@click.option("--gateway", default=None, help="gateway.")
@click.option("--dns", default=None, help="dns.")
@click.option("--interface", default=None, help="network_interface.")
@click.option("--urls", default=None, help="provisioning_urls, comma or space separated.")
@click.option("--id", "identity", default=None, help="identity.")
@click.option("--auth", default=None, help="authentication.")
@click.option("--out", "-o", default=None, help="Output file when not writing to efivarfs.")
@click.pass_context
@reports_errors
def hostconfig(
    ctx: click.Context,
    efi: bool,
    hc_version: int,
    addr_mode: Optional[str],
    host_ip: Optional[str],
    gateway: Optional[str],
    dns: Optional[str],
    interface: Optional[str],
    urls: Optional[str],
    identity: Optional[str],
    auth: Optional[str],
    out: Optional[str],
) -> None:
    """Create a host configuration."""
    config = build_host_config(
        version=hc_version,
        network_mode=addr_mode,
        host_ip=host_ip,
        gateway=gateway,
        dns=dns,
        network_interface=interface,
        urls=urls,
        identity=identity,
        authentication=auth,
    )
    written = write_host_config(config, efi=efi, path=out)
    console.print(f"[bold green]✓[/bold green] Host configuration written to {written}")


@main.command()
@click.option("--output", "-o", type=click.Path(), required=True, help="Output file path")
@click.option("--format", "fmt", type=click.Choice(["yaml", "json"]), default="yaml", help="Output format")
@reports_errors
def init_config(output: str, fmt: str) -> None:
    """Generate a default configuration file."""
    output_path = Path(output)
    write_atomic(output_path, generate_default_config(fmt).encode())

    console.print(f"[bold green]✓[/bold green] Configuration file created at {output_path}")


def _print_package(info: dict) -> None:
    table = Table(title="OS Package")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Archive", info["archive"])
    table.add_row("Descriptor", info["descriptor"])
    table.add_row("Label", info["label"])
    table.add_row("URL", info["url"] or "-")
    table.add_row("Cmdline", info["cmdline"] or "-")
    table.add_row("Kernel", f"{info['kernel']} ({info['kernel_hash']})")
    if info["initramfs"] is not None:
        table.add_row("Initramfs", f"{info['initramfs']} ({info['initramfs_hash']})")
    table.add_row("Cmdline Hash", info["cmdline_hash"])
    table.add_row("Archive Size", f"{info['archive_size']} bytes")
    table.add_row("Signatures", str(len(info["signers"])))
    console.print(table)

    for i, signer in enumerate(info["signers"]):
        signer_table = Table(title=f"Signature {i}")
        signer_table.add_column("Property", style="cyan")
        signer_table.add_column("Value", style="green")
        for name, value in signer.items():
            signer_table.add_row(name.replace("_", " ").title(), value)
        console.print(signer_table)


if __name__ == "__main__":
    main()
