"""modrewrite CLI - Command line interface."""

from __future__ import annotations

import asyncio
import logging
import platform
from typing import Any, NoReturn

import click
import structlog
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from modrewrite import __version__
from modrewrite.errors import MalformedURLError

console = Console()

BANNER = """
                   _                       _ _
  _ __ ___   ___  __| |  _ __ _____      _| (_) |_ ___
 | '_ ` _ \\ / _ \\/ _` | | '__/ _ \\ \\ /\\ / / | | __/ _ \\
 | | | | | | (_) | (_| | | | |  __/\\ V  V /| | | ||  __/
 |_| |_| |_|\\___/ \\__,_| |_|  \\___| \\_/\\_/ |_|_|\\__\\___|
            Rewrite, redirect and proxy HTTP requests
"""


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
    )


def _load_config(config_file: str | None, rules: tuple[str, ...], **overrides: Any):
    from modrewrite.core.config import RewriteConfig

    if config_file:
        config = RewriteConfig.from_file(config_file, **overrides)
    else:
        config = RewriteConfig(**{k: v for k, v in overrides.items() if v is not None})
    if rules:
        config = config.model_copy(update={"rules": [*config.rules, *rules]})
    return config


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error:[/red] {escape(message)}")
    raise SystemExit(1)


config_option = click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Path to YAML or TOML config file",
)
rule_option = click.option(
    "--rule",
    "-r",
    "rules",
    multiple=True,
    help="Rewrite rule, e.g. '^/old$ /new [R=302]' (can repeat, appended after file rules)",
)


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context):
    """modrewrite - mod_rewrite style rules for HTTP requests."""
    if ctx.invoked_subcommand is None:
        console.print(BANNER, style="cyan")
        click.echo(ctx.get_help())


@main.command()
@config_option
@rule_option
@click.option("--bind", "-b", help="Listen address (default: 0.0.0.0:8080)")
@click.option("--upstream", "-u", help="Origin for requests no rule answered")
@click.option("--static", "static_root", type=click.Path(file_okay=False), help="Serve files for requests no rule answered")
@click.option("--via", help="Proxy identity for the Via header (default: '1.1 <hostname>')")
@click.option("--metrics-path", help="Expose Prometheus metrics at this path")
@click.option(
    "--read-timeout",
    type=float,
    default=None,
    help="Upstream read timeout in seconds (default: None/indefinite)",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Log level (default: info)",
)
def serve(
    config_file: str | None,
    rules: tuple[str, ...],
    bind: str | None,
    upstream: str | None,
    static_root: str | None,
    via: str | None,
    metrics_path: str | None,
    read_timeout: float | None,
    log_level: str | None,
):
    """Run the rewrite server."""
    from modrewrite.rewrite.rules import compile_rules
    from modrewrite.server.main import run_server

    try:
        config = _load_config(
            config_file,
            rules,
            bind=bind,
            upstream=upstream,
            static_root=static_root,
            via=via,
            metrics_path=metrics_path,
            read_timeout=read_timeout,
            log_level=log_level.lower() if log_level else None,
        )
        compile_rules(config.rules)
    except (ValidationError, ValueError) as e:
        _fail(str(e))

    configure_logging(config.log_level)
    console.print(BANNER, style="cyan")
    console.print(f"Starting rewrite server on {config.bind}...", style="yellow")
    console.print(f"Rules: {len(config.rules)}", style="dim")
    if config.upstream:
        console.print(f"Upstream: {config.upstream}", style="dim")
    elif config.static_root:
        console.print(f"Static root: {config.static_root}", style="dim")
    else:
        console.print("No upstream or static root: unmatched requests get 404", style="dim")
    if config.metrics_path:
        console.print(f"Metrics: {config.metrics_path}", style="dim")

    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        console.print("\nShutting down...", style="yellow")


@main.command()
@config_option
@rule_option
def check(config_file: str | None, rules: tuple[str, ...]):
    """Compile rules and show how they were parsed."""
    from modrewrite.rewrite.rules import compile_rules

    try:
        config = _load_config(config_file, rules)
        compiled = compile_rules(config.rules)
    except (ValidationError, ValueError) as e:
        _fail(str(e))

    table = Table(title=f"{len(compiled)} rules")
    table.add_column("#", justify="right")
    table.add_column("Pattern")
    table.add_column("Replacement")
    table.add_column("Flags")

    for index, rule in enumerate(compiled):
        info = rule.to_dict()
        flags = []
        if info["nocase"]:
            flags.append("NC")
        if rule.last:
            flags.append("L")
        if rule.proxy:
            flags.append("P")
        if rule.redirect is not None:
            flags.append(f"R={rule.redirect}")
        if rule.forbidden:
            flags.append("F")
        if rule.gone:
            flags.append("G")
        if rule.content_type:
            flags.append(f"T={rule.content_type}")
        if info["host"]:
            flags.append(f"H={info['host']}")
        if rule.query_append:
            flags.append("QSA")
        pattern = f"!{rule.pattern.pattern}" if rule.inverted else rule.pattern.pattern
        table.add_row(str(index), escape(pattern), escape(rule.replacement), escape(",".join(flags)))

    console.print(table)


@main.command("try")
@click.argument("url")
@config_option
@rule_option
@click.option("--host", "-H", default="localhost", help="Host header (default: localhost)")
@click.option("--method", "-X", default="GET", help="HTTP method (default: GET)")
@click.option("--https", "encrypted", is_flag=True, help="Treat the request as arriving over TLS")
@click.option("--relative", is_flag=True, help="Send X-Use-Relative-Redirects")
def try_url(
    url: str,
    config_file: str | None,
    rules: tuple[str, ...],
    host: str,
    method: str,
    encrypted: bool,
    relative: bool,
):
    """Dry-run the rules against URL and print the outcome."""
    from modrewrite.rewrite.engine import Action, RewriteEngine, create_request_context

    try:
        config = _load_config(config_file, rules)
        engine = RewriteEngine.from_lines(config.rules)
    except (ValidationError, ValueError) as e:
        _fail(str(e))

    headers = {"X-Use-Relative-Redirects": "1"} if relative else {}
    context = create_request_context(url, method=method, host=host, headers=headers, encrypted=encrypted)
    try:
        result = engine.dispatch(context)
    except MalformedURLError as e:
        _fail(str(e))

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Action", result.action.value)
    table.add_row("URL", escape(result.url))
    if result.status is not None:
        table.add_row("Status", str(result.status))
    for key, value in result.headers.items():
        table.add_row(key, escape(value))
    if result.action is Action.PROXIED and result.rule is not None:
        from modrewrite.server.proxy import build_target

        try:
            table.add_row("Upstream", escape(str(build_target(result.rule, result.url))))
        except MalformedURLError as e:
            table.add_row("Upstream", f"[red]{escape(str(e))}[/red]")
    if result.rule is not None:
        table.add_row("Rule", escape(result.rule.source))
    if result.query:
        table.add_row("Query", escape(", ".join(f"{k}={v}" for k, v in result.query.items())))

    console.print(table)


@main.command()
def version():
    """Show version information."""
    console.print(BANNER, style="cyan")
    console.print(f"Version: {__version__}")
    console.print(f"Python: {platform.python_version()}")
    console.print(f"Platform: {platform.system()} {platform.release()}")


if __name__ == "__main__":
    main()
