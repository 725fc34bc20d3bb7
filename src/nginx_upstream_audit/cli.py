"""
Click-based CLI for nginx-upstream-audit.

This module only ORCHESTRATES:
- Loads server profiles and probe settings
- Opens the connector (local or SSH)
- Invokes the pipeline
- Formats output
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler

from nginx_upstream_audit import __version__
from nginx_upstream_audit.actions.reporters import REPORTERS, PlainReporter
from nginx_upstream_audit.config import ConfigManager, ProbeSettings
from nginx_upstream_audit.connector import LocalConnector
from nginx_upstream_audit.connector.ssh import SSHConfig, SSHConnector
from nginx_upstream_audit.engine.bindings import load_assignments, parse_assignment
from nginx_upstream_audit.pipeline import collect_dump, load_remembered, plan_targets, run_upstream_audit

console = Console()
err_console = Console(stderr=True)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=verbose, rich_tracebacks=True)],
        force=True,
    )
    # paramiko logs every transport detail at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)


@click.group()
@click.version_option(version=__version__, prog_name="nginx-upstream-audit")
@click.option("--config", "-c", type=click.Path(), help="Path to config directory")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """nginx-upstream-audit: find every backend nginx talks to and probe it.

    Runs read-only checks on the local host, or on SERVER over SSH.
    """
    _setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["config_mgr"] = ConfigManager(Path(config) if config else None)


def _resolve_config(ctx: click.Context, server: str) -> SSHConfig:
    """Resolve server string to SSHConfig (profile name or host)."""
    cfg = ctx.obj["config_mgr"].get_profile(server)
    if cfg:
        return cfg
    return SSHConfig(host=server, user="root")


def _open_connector(ctx: click.Context, server: str | None) -> LocalConnector | SSHConnector:
    if not server:
        return LocalConnector()
    return SSHConnector(_resolve_config(ctx, server))


def _collect_overrides(vars_file: str | None, assignments: tuple[str, ...]) -> list[tuple[str, str]]:
    """Vars file first, then --var in order (later entries win)."""
    overrides: list[tuple[str, str]] = []
    if vars_file:
        try:
            overrides.extend(load_assignments(Path(vars_file)))
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--vars-file") from e
    for raw in assignments:
        try:
            overrides.append(parse_assignment(raw))
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--var") from e
    return overrides


def _settings(ctx: click.Context, **flags) -> ProbeSettings:
    """settings.yaml < env < CLI flags."""
    return ctx.obj["config_mgr"].load_settings().merged(**flags)


@main.command()
@click.argument("server", required=False)
@click.option("--dump", "dump_file", type=click.Path(exists=True, dir_okay=False), help="Use a saved nginx -T dump instead of collecting one")
@click.option("--vars-file", type=click.Path(exists=True, dir_okay=False), help="File of KEY=VALUE variable overrides")
@click.option("--var", "assignments", multiple=True, metavar="KEY=VALUE", help="Variable override (repeatable)")
@click.option("--save-cert-chain", is_flag=True, default=None, help="Keep presented certificate chains as PEM files")
@click.option("--auto-apply/--no-auto-apply", default=None, help="Reuse bindings remembered by the previous run")
@click.option("--positional/--no-positional", default=None, help="Guess values for leftover $1/$2 tokens")
@click.option("--workers", type=click.IntRange(1, 16), default=None, help="Concurrent probes (1-16)")
@click.option("--output-dir", "-o", type=click.Path(file_okay=False), default=None, help="Where the report and auto-vars go")
@click.option("--format", "fmt", type=click.Choice(sorted(REPORTERS)), default="rich", help="Console output format")
@click.pass_context
def probe(
    ctx: click.Context,
    server: str | None,
    dump_file: str | None,
    vars_file: str | None,
    assignments: tuple[str, ...],
    save_cert_chain: bool | None,
    auto_apply: bool | None,
    positional: bool | None,
    workers: int | None,
    output_dir: str | None,
    fmt: str,
) -> None:
    """Resolve every backend and probe it.

    Exits with code 1 if any target is DOWN.
    """
    overrides = _collect_overrides(vars_file, assignments)
    settings = _settings(
        ctx,
        save_cert_chain=save_cert_chain,
        auto_apply=auto_apply,
        positional=positional,
        workers=workers,
        output_dir=output_dir,
    )
    progress = console if fmt == "rich" else err_console

    try:
        with _open_connector(ctx, server) as ssh:
            collected = collect_dump(ssh, Path(dump_file) if dump_file else None)
            if collected.mode == "NONE":
                progress.print("[yellow]No nginx configuration could be collected.[/]")
            with progress.status("[bold blue]Probing upstreams...[/]"):
                audit = run_upstream_audit(
                    ssh,
                    collected.config_dump,
                    settings=settings,
                    overrides=overrides,
                    dump_source=collected.source,
                    nginx_version=collected.version,
                )
        PlainReporter(progress).write(audit, settings.output_path)
        exit_code = REPORTERS[fmt](console).report_results(audit)
    except Exception as e:
        logging.getLogger(__name__).debug("probe failed", exc_info=True)
        err_console.print(f"[bold red]Error:[/] {e}")
        sys.exit(1)
    sys.exit(exit_code)


@main.command()
@click.argument("server", required=False)
@click.option("--dump", "dump_file", type=click.Path(exists=True, dir_okay=False), help="Use a saved nginx -T dump instead of collecting one")
@click.option("--vars-file", type=click.Path(exists=True, dir_okay=False), help="File of KEY=VALUE variable overrides")
@click.option("--var", "assignments", multiple=True, metavar="KEY=VALUE", help="Variable override (repeatable)")
@click.option("--auto-apply/--no-auto-apply", default=None, help="Reuse bindings remembered by the previous run")
@click.option("--output-dir", "-o", type=click.Path(file_okay=False), default=None, help="Where the auto-vars of earlier runs live")
@click.option("--positional/--no-positional", default=None, help="Guess values for leftover $1/$2 tokens")
@click.option("--format", "fmt", type=click.Choice(sorted(REPORTERS)), default="rich", help="Console output format")
@click.pass_context
def extract(
    ctx: click.Context,
    server: str | None,
    dump_file: str | None,
    vars_file: str | None,
    assignments: tuple[str, ...],
    auto_apply: bool | None,
    positional: bool | None,
    output_dir: str | None,
    fmt: str,
) -> None:
    """Show candidates and how they resolve, without probing anything."""
    overrides = _collect_overrides(vars_file, assignments)
    settings = _settings(ctx, auto_apply=auto_apply, positional=positional, output_dir=output_dir)
    try:
        with _open_connector(ctx, server) as ssh:
            collected = collect_dump(ssh, Path(dump_file) if dump_file else None)
        _parsed, _store, plans = plan_targets(
            collected.config_dump,
            overrides=overrides,
            remembered=load_remembered(settings),
            allow_positional=settings.positional,
        )
        REPORTERS[fmt](console).report_plans(plans)
    except Exception as e:
        err_console.print(f"[bold red]Error:[/] {e}")
        sys.exit(1)


@main.group()
def config() -> None:
    """Manage server connection profiles."""


@config.command("add")
@click.argument("name")
@click.option("--host", "-h", required=True, help="Server hostname or IP")
@click.option("--user", "-u", default="root", help="SSH username")
@click.option("--port", "-p", default=22, help="SSH port")
@click.option("--password", "-pass", help="SSH password")
@click.option("--key", "-k", type=click.Path(), help="Path to SSH private key")
@click.option("--sudo/--no-sudo", default=True, help="Use sudo for commands")
@click.pass_context
def config_add(
    ctx: click.Context, name: str, host: str, user: str, port: int, password: str | None, key: str | None, sudo: bool
) -> None:
    """Add a new server profile."""
    cfg = SSHConfig(host=host, user=user, port=port, password=password, key_path=key, use_sudo=sudo)
    ctx.obj["config_mgr"].add_profile(name, cfg)
    console.print(f"[bold green]Added server profile:[/] {name}")


@config.command("list")
@click.pass_context
def config_list(ctx: click.Context) -> None:
    """List all server profiles."""
    profiles = ctx.obj["config_mgr"].list_profiles()
    if not profiles:
        console.print("[dim]No profiles configured yet.[/]")
        return
    for name, data in profiles.items():
        console.print(f"[bold green]{name}[/]: {data['user']}@{data['host']}:{data['port']}")


@config.command("remove")
@click.argument("name")
@click.pass_context
def config_remove(ctx: click.Context, name: str) -> None:
    """Remove a server profile."""
    if ctx.obj["config_mgr"].remove_profile(name):
        console.print(f"[bold green]Removed profile:[/] {name}")
    else:
        console.print(f"[bold red]Error:[/] Profile {name} not found.")
        sys.exit(1)


if __name__ == "__main__":
    main()
