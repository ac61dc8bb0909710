"""buildns CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

BANNER = """
 _           _ _     _
| |__  _   _(_) | __| |_ __  ___
| '_ \\| | | | | |/ _` | '_ \\/ __|
| |_) | |_| | | | (_| | | | \\__ \\
|_.__/ \\__,_|_|_|\\__,_|_| |_|___/
   Claim a name, ship it, get HTTPS
"""

CONFIG_SECTIONS = ("registry", "certificates", "propagation", "storage", "backends")

STATUS_COLORS = {
    "pending": "yellow",
    "active": "green",
    "active-no-ssl": "yellow",
    "upgrading": "cyan",
    "released": "dim",
}

CERT_COLORS = {
    "uninitiated": "dim",
    "pending": "yellow",
    "issuing": "cyan",
    "active": "green",
    "renewing": "cyan",
    "failed": "red",
}


def _configure_logging(log_level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
    )


def _apply_file_config(file_config: dict) -> None:
    """Export file settings as BUILDNS_ env vars; real env vars win.

    Keys may be flat (``front_door_target``) or nested under their section
    (``registry: {front_door_target: ...}``). Unknown keys are skipped.
    """
    from buildns.core.config import clear_config, known_settings

    known = known_settings()
    for key, value in file_config.items():
        if key not in known:
            section, _, rest = key.partition("_")
            if section not in CONFIG_SECTIONS or rest not in known:
                console.print(f"[yellow]Ignoring unknown config key:[/yellow] {key}")
                continue
            key = rest
        env_key = f"BUILDNS_{key.upper()}"
        if env_key in os.environ:
            continue
        if isinstance(value, list):
            os.environ[env_key] = json.dumps(value)
        elif isinstance(value, bool):
            os.environ[env_key] = str(value).lower()
        else:
            os.environ[env_key] = str(value)
    clear_config()


@click.group()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    help="Log level (default: warning, use --verbose for debug)",
)
@click.pass_context
def main(ctx: click.Context, config_file: str | None, verbose: bool, log_level: str):
    """buildns - free subdomains with DNS records and HTTPS.

    Examples:

        buildns domain claim myapp --tld build --owner me

        buildns domain connect myapp.build my-app.vercel.app --owner me

        buildns domain status myapp.build

        buildns worker

    Use 'buildns COMMAND --help' for more info on specific commands.
    """
    _configure_logging("debug" if verbose else log_level)

    file_config: dict = {}
    if config_file:
        from buildns.core.config import flatten_config, load_config_from_file

        try:
            file_config = flatten_config(load_config_from_file(config_file))
        except Exception as e:
            console.print(f"[red]Failed to load config: {e}[/red]")
            sys.exit(1)
        _apply_file_config(file_config)
        console.print(f"Loaded config from {config_file}", style="dim")

    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file
    ctx.obj["file_config"] = file_config


@main.command()
def version():
    """Show version information."""
    from buildns import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


# Config


@main.group()
def config():
    """View and export configuration settings.

    All settings can be configured via environment variables with the
    BUILDNS_ prefix. Use these commands to see current values.

    Examples:

        buildns config show            # Show all config settings

        buildns config export          # Export as env vars

        buildns config validate        # Validate current config
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option(
    "--section",
    "-s",
    help="Show only specific section (registry, certificates, propagation, storage, backends)",
)
def config_show(json_output: bool, section: str | None):
    """Show current configuration settings.

    Values come from environment variables, a config file or defaults.
    Tokens are masked.
    """
    from buildns.core.config import get_config

    display = get_config().to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        console.print(json.dumps(display, indent=2))
        return

    console.print("[bold]Current Configuration[/bold]\n")

    for section_name, settings in display.items():
        table = Table(title=section_name.title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in settings.items():
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str, f"BUILDNS_{key.upper()}")

        console.print(table)
        console.print()


@config.command("export")
@click.option(
    "--shell",
    type=click.Choice(["bash", "powershell", "cmd"]),
    default="bash",
    help="Shell format",
)
def config_export(shell: str):
    """Export current configuration as environment variables."""
    from buildns.core.config import get_config

    env_dict = get_config().to_env_dict()

    click.echo(f"# buildns configuration export ({shell})")
    for key, value in env_dict.items():
        if not value:
            continue
        if shell == "bash":
            click.echo(f"export {key}='{value}'")
        elif shell == "powershell":
            click.echo(f"$env:{key}='{value}'")
        elif shell == "cmd":
            click.echo(f"set {key}={value}")


@config.command("validate")
def config_validate():
    """Validate current configuration.

    Checks that values are consistent with each other and that the
    background worker has somewhere to send its work.
    """
    from buildns.core.config import clear_config, get_config
    from buildns.domains.validation import is_hostname

    clear_config()

    try:
        cfg = get_config()

        errors = []
        warnings = []

        registry = cfg.registry
        if not registry.allowed_tlds:
            errors.append("allowed_tlds is empty; nothing can be claimed")
        if not is_hostname(registry.front_door_target):
            errors.append(f"front_door_target ({registry.front_door_target}) is not a hostname")
        if registry.release_grace_period == 0:
            warnings.append("release_grace_period is 0; released names can be taken immediately")

        certs = cfg.certificates
        if certs.cert_base_delay > certs.cert_max_delay:
            errors.append(
                f"cert_base_delay ({certs.cert_base_delay}s) must not exceed "
                f"cert_max_delay ({certs.cert_max_delay}s)"
            )
        if certs.renewal_window_days >= certs.default_validity_days:
            errors.append(
                f"renewal_window_days ({certs.renewal_window_days}) must be shorter than "
                f"default_validity_days ({certs.default_validity_days})"
            )

        prop = cfg.propagation
        if prop.publish_base_delay > prop.publish_max_delay:
            errors.append(
                f"publish_base_delay ({prop.publish_base_delay}s) must not exceed "
                f"publish_max_delay ({prop.publish_max_delay}s)"
            )

        backends = cfg.backends
        if not backends.ca_url:
            warnings.append("ca_url is not set; certificates will stay pending")
        if not backends.dns_api_url:
            warnings.append("dns_api_url is not set; record sets are only logged")

        if errors:
            console.print("[red bold]Configuration Errors:[/red bold]")
            for error in errors:
                console.print(f"  [red]x[/red] {error}")
            console.print()

        if warnings:
            console.print("[yellow bold]Configuration Warnings:[/yellow bold]")
            for warning in warnings:
                console.print(f"  [yellow]![/yellow] {warning}")
            console.print()

        if not errors and not warnings:
            console.print("[green]OK - Configuration is valid[/green]")
        elif not errors:
            console.print("[green]OK - Configuration is valid (with warnings)[/green]")
        else:
            console.print("[red]ERROR - Configuration has errors[/red]")
            sys.exit(1)

    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


# Domains


def _build_manager(storage: str | None):
    from buildns.core.config import get_config
    from buildns.domains import DomainManager, DomainStore

    cfg = get_config()
    store = DomainStore(storage or cfg.storage.storage_path)
    return DomainManager.from_config(cfg, store=store)


async def _find(manager, fqdn: str):
    from buildns.core.exceptions import NotFound

    name, _, tld = fqdn.strip().lower().rstrip(".").partition(".")
    domain = await manager.lookup(name, tld)
    if domain is None:
        raise NotFound(f"Domain not found: {fqdn}")
    return domain


def _run(coro) -> None:
    """Run a domain command, printing buildns errors instead of tracebacks."""
    from buildns.core.exceptions import BuildnsError, format_error_for_user

    try:
        asyncio.run(coro)
    except BuildnsError as e:
        console.print(f"[red]Error:[/red] {format_error_for_user(e)}")
        sys.exit(1)


storage_option = click.option(
    "--storage", default=None, help="Path to storage file (default: BUILDNS_STORAGE_PATH)"
)
owner_option = click.option(
    "--owner", "-o", envvar="BUILDNS_OWNER", default=None, help="Acting principal"
)


@main.group()
def domain():
    """Claim and manage domains.

    Examples:

        buildns domain claim myapp --tld build --owner me

        buildns domain wildcard myapp.build --owner me

        buildns domain redirect myapp.build docs https://docs.example.com --status 302

        buildns domain upgrade myapp.build myproject.com --owner me

        buildns domain release myapp.build --owner me
    """
    pass


@domain.command("claim")
@click.argument("name")
@click.option("--tld", "-t", default="build", help="TLD to claim under (default: build)")
@click.option("--owner", "-o", envvar="BUILDNS_OWNER", required=True, help="Claiming principal")
@click.option("--wildcard", "-w", is_flag=True, help="Also enable *.<domain>")
@storage_option
def domain_claim(name: str, tld: str, owner: str, wildcard: bool, storage: str | None):
    """Claim a free subdomain.

    The domain resolves over HTTP right away; HTTPS follows once the
    certificate is issued by the worker.
    """
    _run(_domain_claim_async(name, tld, owner, wildcard, storage))


async def _domain_claim_async(
    name: str, tld: str, owner: str, wildcard: bool, storage: str | None
):
    from buildns.domains import ClaimOptions

    manager = _build_manager(storage)
    try:
        domain = await manager.claim(name, tld, owner, ClaimOptions(wildcard=wildcard))
        await manager.flush()
        certificate = await manager.get_certificate(domain.id)

        console.print(
            Panel(
                f"[green]Domain claimed![/green]\n\n"
                f"[bold]Domain:[/bold] [cyan]http://{domain.fqdn}[/cyan]\n"
                f"[bold]Owner:[/bold] {domain.owner}\n"
                f"[bold]Status:[/bold] {domain.status.value}\n"
                f"[bold]Certificate:[/bold] {certificate.state.value} "
                f"({', '.join(certificate.covered_hosts)})",
                title="Claim",
                border_style="green",
            )
        )
    finally:
        await manager.aclose()


@domain.command("connect")
@click.argument("fqdn")
@click.argument("target")
@click.option(
    "--type",
    "record_type",
    type=click.Choice(["CNAME", "A"], case_sensitive=False),
    default="CNAME",
    help="Record type (default: CNAME)",
)
@click.option("--label", default="@", help="Host label to point (default: @ for the apex)")
@owner_option
@storage_option
def domain_connect(
    fqdn: str,
    target: str,
    record_type: str,
    label: str,
    owner: str | None,
    storage: str | None,
):
    """Point a domain (or one of its labels) at a deployment.

    Examples:

        buildns domain connect myapp.build my-app.vercel.app

        buildns domain connect myapp.build 203.0.113.10 --type A --label api
    """
    _run(_domain_connect_async(fqdn, target, record_type, label, owner, storage))


async def _domain_connect_async(
    fqdn: str,
    target: str,
    record_type: str,
    label: str,
    owner: str | None,
    storage: str | None,
):
    manager = _build_manager(storage)
    try:
        domain = await _find(manager, fqdn)
        domain = await manager.connect(domain.id, target, record_type, label, owner=owner)
        await manager.flush()
        host = domain.host_for(label.strip().lower())
        console.print(f"[green]Connected:[/green] {host} -> {target} ({record_type.upper()})")
    finally:
        await manager.aclose()


@domain.command("wildcard")
@click.argument("fqdn")
@owner_option
@storage_option
def domain_wildcard(fqdn: str, owner: str | None, storage: str | None):
    """Enable *.<domain>. Running it again changes nothing."""
    _run(_domain_wildcard_async(fqdn, owner, storage))


async def _domain_wildcard_async(fqdn: str, owner: str | None, storage: str | None):
    manager = _build_manager(storage)
    try:
        domain = await _find(manager, fqdn)
        domain = await manager.enable_wildcard(domain.id, owner=owner)
        await manager.flush()
        console.print(f"[green]Wildcard enabled:[/green] *.{domain.fqdn}")
    finally:
        await manager.aclose()


@domain.command("redirect")
@click.argument("fqdn")
@click.argument("from_label")
@click.argument("to")
@click.option("--status", "status_code", type=int, default=301, help="301, 302, 307 or 308")
@owner_option
@storage_option
def domain_redirect(
    fqdn: str,
    from_label: str,
    to: str,
    status_code: int,
    owner: str | None,
    storage: str | None,
):
    """Forward a label of a domain to a URL.

    Example:

        buildns domain redirect myapp.build docs https://docs.example.com --status 302
    """
    _run(_domain_redirect_async(fqdn, from_label, to, status_code, owner, storage))


async def _domain_redirect_async(
    fqdn: str,
    from_label: str,
    to: str,
    status_code: int,
    owner: str | None,
    storage: str | None,
):
    manager = _build_manager(storage)
    try:
        domain = await _find(manager, fqdn)
        domain = await manager.redirect(domain.id, from_label, to, status_code, owner=owner)
        await manager.flush()
        host = domain.host_for(from_label.strip().lower())
        console.print(f"[green]Redirect set:[/green] {host} -> {to} ({status_code})")
    finally:
        await manager.aclose()


@domain.command("upgrade")
@click.argument("fqdn")
@click.argument("custom_domain")
@click.option("--migrate/--no-migrate", default=True, help="Copy DNS records (default: on)")
@owner_option
@storage_option
def domain_upgrade(
    fqdn: str,
    custom_domain: str,
    migrate: bool,
    owner: str | None,
    storage: str | None,
):
    """Move a claimed subdomain onto a domain you own.

    The original keeps working until the custom domain's certificate is
    issued, then becomes an alias of it.
    """
    _run(_domain_upgrade_async(fqdn, custom_domain, migrate, owner, storage))


async def _domain_upgrade_async(
    fqdn: str,
    custom_domain: str,
    migrate: bool,
    owner: str | None,
    storage: str | None,
):
    manager = _build_manager(storage)
    try:
        domain = await _find(manager, fqdn)
        domain = await manager.upgrade(domain.id, custom_domain, migrate=migrate, owner=owner)
        await manager.flush()
        info = await manager.get_domain_info(domain.id)

        content = (
            f"[cyan]Upgrade started[/cyan]\n\n"
            f"[bold]From:[/bold] {domain.fqdn} ({domain.status.value})\n"
            f"[bold]To:[/bold] {info.upgrade_target.fqdn if info.upgrade_target else custom_domain}\n"
            f"[bold]Records migrated:[/bold] {'Yes' if migrate else 'No (defaults installed)'}"
        )
        if info.dns_instructions:
            content += f"\n\n[yellow]DNS Setup Required:[/yellow]\n{info.dns_instructions}"

        console.print(Panel(content, title="Upgrade", border_style="cyan"))
    finally:
        await manager.aclose()


@domain.command("release")
@click.argument("fqdn")
@click.option("--owner", "-o", envvar="BUILDNS_OWNER", required=True, help="Releasing principal")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation")
@storage_option
def domain_release(fqdn: str, owner: str, yes: bool, storage: str | None):
    """Release a domain and drop its records and certificate."""
    if not yes and not click.confirm(f"Are you sure you want to release '{fqdn}'?"):
        console.print("[dim]Cancelled[/dim]")
        return

    _run(_domain_release_async(fqdn, owner, storage))


async def _domain_release_async(fqdn: str, owner: str, storage: str | None):
    manager = _build_manager(storage)
    try:
        domain = await _find(manager, fqdn)
        await manager.release(domain.id, owner)
        await manager.flush()
        console.print(f"[green]Domain released:[/green] {domain.fqdn}")
    finally:
        await manager.aclose()


@domain.command("list")
@owner_option
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@storage_option
def domain_list(owner: str | None, json_output: bool, storage: str | None):
    """List claimed domains."""
    _run(_domain_list_async(owner, json_output, storage))


async def _domain_list_async(owner: str | None, json_output: bool, storage: str | None):
    manager = _build_manager(storage)
    try:
        domains = await manager.list_domains(owner)

        if json_output:
            click.echo(json.dumps([d.to_dict() for d in domains], indent=2))
            return

        if not domains:
            console.print("[dim]No domains claimed[/dim]")
            return

        table = Table(title="Claimed Domains")
        table.add_column("Domain", style="cyan")
        table.add_column("Owner", style="dim")
        table.add_column("Status")
        table.add_column("Wildcard", justify="center")
        table.add_column("Created At")

        for domain in domains:
            color = STATUS_COLORS.get(domain.status.value, "white")
            table.add_row(
                domain.fqdn,
                domain.owner,
                f"[{color}]{domain.status.value}[/{color}]",
                "[green]Yes[/green]" if domain.wildcard_enabled else "No",
                domain.created_at.strftime("%Y-%m-%d %H:%M"),
            )

        console.print(table)
    finally:
        await manager.aclose()


@domain.command("status")
@click.argument("fqdn")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@storage_option
def domain_status(fqdn: str, json_output: bool, storage: str | None):
    """Show detailed status for a domain."""
    _run(_domain_status_async(fqdn, json_output, storage))


async def _domain_status_async(fqdn: str, json_output: bool, storage: str | None):
    manager = _build_manager(storage)
    try:
        domain = await _find(manager, fqdn)
        info = await manager.get_domain_info(domain.id)
        cert = info.certificate

        if json_output:
            data = {
                "domain": info.domain.to_dict(),
                "records": [r.to_dict() for r in info.records],
                "certificate": cert.to_dict() if cert else None,
            }
            click.echo(json.dumps(data, indent=2))
            return

        color = STATUS_COLORS.get(domain.status.value, "white")
        content = (
            f"[bold]Domain:[/bold] {domain.fqdn}\n"
            f"[bold]Status:[/bold] [{color}]{domain.status.value}[/{color}]\n"
            f"[bold]Owner:[/bold] {domain.owner}\n"
            f"[bold]Wildcard:[/bold] {'Yes' if domain.wildcard_enabled else 'No'}\n"
            f"[bold]Records:[/bold] {len(info.records)}"
        )

        if cert is not None:
            cert_color = CERT_COLORS.get(cert.state.value, "white")
            content += (
                f"\n[bold]Certificate:[/bold] [{cert_color}]{cert.state.value}[/{cert_color}]"
                f"\n[bold]Covers:[/bold] {', '.join(cert.covered_hosts)}"
            )
            if cert.expires_at:
                content += f"\n[bold]Expires:[/bold] {cert.expires_at.strftime('%Y-%m-%d %H:%M')}"
            if cert.last_error:
                content += (
                    f"\n[bold]Last Error:[/bold] [red]{cert.last_error}[/red] "
                    f"(attempt {cert.attempt_count})"
                )

        if info.upgrade_target:
            content += f"\n[bold]Upgrading To:[/bold] {info.upgrade_target.fqdn}"
        if info.alias_of:
            content += f"\n[bold]Alias Of:[/bold] {info.alias_of.fqdn}"
        if info.dns_instructions:
            content += f"\n\n[yellow]DNS Setup Required:[/yellow]\n{info.dns_instructions}"

        console.print(
            Panel(content, title=f"Domain Status: {domain.fqdn}", border_style=color)
        )
    finally:
        await manager.aclose()


@domain.command("records")
@click.argument("fqdn")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@storage_option
def domain_records(fqdn: str, json_output: bool, storage: str | None):
    """List a domain's DNS records."""
    _run(_domain_records_async(fqdn, json_output, storage))


async def _domain_records_async(fqdn: str, json_output: bool, storage: str | None):
    manager = _build_manager(storage)
    try:
        domain = await _find(manager, fqdn)
        records = await manager.list_records(domain.id)

        if json_output:
            click.echo(json.dumps([r.to_dict() for r in records], indent=2))
            return

        table = Table(title=f"DNS Records: {domain.fqdn}")
        table.add_column("Host", style="cyan")
        table.add_column("Type")
        table.add_column("Value", style="green")
        table.add_column("Redirect", style="dim")

        for record in records:
            redirect = ""
            if record.redirect:
                redirect = f"{record.redirect.status_code} -> {record.redirect.to}"
            table.add_row(
                domain.host_for(record.host_label),
                record.type.value,
                record.value,
                redirect,
            )

        console.print(table)
    finally:
        await manager.aclose()


@domain.command("verify")
@click.argument("fqdn")
@storage_option
def domain_verify(fqdn: str, storage: str | None):
    """Check that an upgrade's custom domain points at the front door."""
    _run(_domain_verify_async(fqdn, storage))


async def _domain_verify_async(fqdn: str, storage: str | None):
    manager = _build_manager(storage)
    try:
        domain = await _find(manager, fqdn)
        console.print(f"Verifying DNS records for [cyan]{domain.fqdn}[/cyan]...", style="yellow")
        result = await manager.verify_custom_domain(domain.id)

        if result.is_verified:
            console.print(
                Panel(
                    f"[green]DNS configured correctly![/green]\n\n"
                    f"[bold]Domain:[/bold] {result.domain}\n"
                    f"[bold]CNAME:[/bold] [green]Valid[/green] -> {result.cname_target}\n\n"
                    f"The certificate will be issued by the worker.",
                    title="Verification Successful",
                    border_style="green",
                )
            )
        else:
            console.print(
                Panel(
                    f"[yellow]Verification incomplete[/yellow]\n\n"
                    f"[bold]Domain:[/bold] {result.domain}\n"
                    f"[bold]CNAME:[/bold] [red]Invalid[/red]\n\n"
                    f"[red]Error:[/red] {result.error or 'Unknown error'}\n\n"
                    f"{manager.verifier.dns_instructions(result.domain)}",
                    title="Verification Status",
                    border_style="yellow",
                )
            )
            sys.exit(1)
    finally:
        await manager.aclose()


@domain.command("retry-cert")
@click.argument("fqdn")
@owner_option
@storage_option
def domain_retry_cert(fqdn: str, owner: str | None, storage: str | None):
    """Give a failed certificate a fresh round of attempts."""
    _run(_domain_retry_cert_async(fqdn, owner, storage))


async def _domain_retry_cert_async(fqdn: str, owner: str | None, storage: str | None):
    manager = _build_manager(storage)
    try:
        domain = await _find(manager, fqdn)
        cert = await manager.retry_certificate(domain.id, owner=owner)
        color = CERT_COLORS.get(cert.state.value, "white")
        console.print(
            f"[bold]Certificate for {domain.fqdn}:[/bold] [{color}]{cert.state.value}[/{color}]"
        )
    finally:
        await manager.aclose()


# Worker


@main.command()
@click.option("--interval", type=float, default=None, help="Seconds between passes (default: cert_poll_interval)")
@click.option("--metrics-port", type=int, default=None, help="Serve Prometheus metrics on this port")
@click.option("--once", is_flag=True, help="Run a single pass and exit")
@storage_option
def worker(interval: float | None, metrics_port: int | None, once: bool, storage: str | None):
    """Issue certificates, publish DNS and purge expired releases.

    Re-reads the storage file on every pass, so it picks up changes made by
    other buildns commands.
    """
    if metrics_port is not None:
        from prometheus_client import start_http_server

        start_http_server(metrics_port)
        console.print(f"Metrics on [cyan]http://0.0.0.0:{metrics_port}/metrics[/cyan]", style="dim")

    try:
        asyncio.run(_worker_async(interval, once, storage))
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker stopped[/yellow]")


async def _worker_async(interval: float | None, once: bool, storage: str | None):
    from buildns.core.config import get_config

    interval = interval or get_config().certificates.cert_poll_interval
    manager = _build_manager(storage)

    if manager.certificates.authority is None:
        console.print("[yellow]No certificate authority configured (BUILDNS_CA_URL)[/yellow]")

    if not once:
        console.print(BANNER, style="cyan")
        console.print(f"Worker running, pass every {interval:.0f}s. Press Ctrl+C to stop.")

    try:
        while True:
            attempts = await manager.tick(reload=True)
            if attempts:
                console.print(f"[dim]Certificate attempts this pass: {attempts}[/dim]")
            if once:
                break
            await asyncio.sleep(interval)
    finally:
        await manager.aclose()

    if once:
        console.print("[green]Worker pass complete[/green]")


if __name__ == "__main__":
    main()
