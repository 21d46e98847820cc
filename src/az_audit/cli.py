"""Unified CLI for az-audit.

Provides four subcommands:
    az-audit eol            – scan subscriptions for resources on retiring services
    az-audit subscriptions  – list enabled subscriptions
    az-audit web            – run the JSON API (FastAPI + uvicorn)
    az-audit mcp            – run the MCP server (stdio or SSE transport)
"""

import logging

import click

from az_audit import __version__

_SEVERITY_COLOURS = {
    "Critical": "red",
    "High": "yellow",
    "Medium": "cyan",
    "Low": "green",
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s - %(message)s",
    )
    logging.getLogger("azure").setLevel(logging.WARNING)


@click.group()
@click.version_option(version=__version__, prog_name="az-audit")
def cli() -> None:
    """Azure governance audit."""


@cli.command()
@click.option(
    "--subscription",
    "-s",
    "subscriptions",
    multiple=True,
    help="Subscription ID to scan (repeatable). All enabled subscriptions if omitted.",
)
@click.option("--tenant", "tenant_id", default=None, help="Optional tenant ID.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the raw JSON result.")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose logging.",
)
def eol(subscriptions: tuple[str, ...], tenant_id: str | None, as_json: bool, verbose: bool) -> None:
    """Report resources that depend on retiring Azure services."""
    from az_audit.services.eol_reconciler import build_reconciler

    _configure_logging(verbose)

    result = build_reconciler().scan(list(subscriptions) or None, tenant_id=tenant_id)

    if as_json:
        click.echo(result.to_json())
        return

    for warning in result.warnings:
        click.echo(click.style(f"⚠ {warning}", fg="yellow"), err=True)
    if not result.available:
        click.echo("No EOL data available.")
        return

    click.echo(
        f"Scanned {len(result.subscriptions)} subscription(s) "
        f"using {result.source} EOL data."
    )
    if not result.findings:
        click.echo(click.style("No resources on retiring services found.", fg="green"))
        return

    click.echo(f"\n{'SEVERITY':<10} {'STATUS':<11} {'DEADLINE':<10} {'DAYS':>6} {'RES':>5}  COMPONENT")
    for finding in result.findings:
        severity = click.style(
            f"{finding.severity:<10}", fg=_SEVERITY_COLOURS.get(finding.severity), bold=True
        )
        click.echo(
            f"{severity} {finding.status:<11} {finding.deadline:%Y-%m-%d} "
            f"{finding.days_until_deadline:>6} {finding.affected_count:>5}  {finding.component}"
        )
        if verbose:
            for resource in finding.affected_resources:
                click.echo(f"    - {resource.resource_id}")
            click.echo(f"    {finding.action_required}")


@cli.command()
@click.option("--tenant", "tenant_id", default=None, help="Optional tenant ID.")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose logging.",
)
def subscriptions(tenant_id: str | None, verbose: bool) -> None:
    """List enabled subscriptions."""
    from az_audit import azure_api
    from az_audit.settings import settings

    _configure_logging(verbose)

    executor = azure_api.RetryExecutor(azure_api.RetryPolicy.from_settings(settings))
    try:
        subs = azure_api.list_subscriptions(
            tenant_id, executor=executor, timeout=settings.http_timeout
        )
    except Exception as exc:
        raise click.ClickException(f"Failed to list subscriptions: {exc}") from exc

    for sub in subs:
        click.echo(f"{sub['id']}  {sub['name']}")


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Host to bind to.")
@click.option("--port", default=5001, show_default=True, help="Port to listen on.")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose logging.",
)
def web(host: str, port: int, verbose: bool) -> None:
    """Run the JSON API."""
    import uvicorn

    from az_audit.app import _setup_logging, app

    log_level = "info" if verbose else "warning"
    _setup_logging(level=logging.DEBUG if verbose else logging.WARNING)

    url = f"http://{host}:{port}"
    click.echo(f"✦ az-audit API running at {click.style(url, fg='cyan', bold=True)}")
    click.echo("  Press Ctrl+C to stop.\n")
    uvicorn.run(app, host=host, port=port, log_level=log_level)


@cli.command()
@click.option(
    "--sse",
    is_flag=True,
    default=False,
    help="Use SSE transport instead of stdio.",
)
@click.option(
    "--port",
    default=8080,
    show_default=True,
    help="Port for SSE transport.",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    default=False,
    help="Enable verbose logging.",
)
def mcp(sse: bool, port: int, verbose: bool) -> None:
    """Run the MCP server."""
    from az_audit.mcp_server import mcp as mcp_server

    if verbose:
        logging.basicConfig(level=logging.INFO)
    else:
        logging.basicConfig(level=logging.WARNING)

    if sse:
        mcp_server.settings.port = port
        mcp_server.run(transport="sse")
    else:
        mcp_server.run(transport="stdio")
