"""
S3Proxy Terminal UI
===================
Rich terminal output for the installer and the proxy CLI: banner, status
tables, step messages and the post-install usage hints.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.theme import Theme

from s3proxy import __version__

# ── Theme ────────────────────────────────────────────────────────────────────

S3PROXY_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "bold red",
    "success": "bold green",
    "title": "bold bright_green",
    "subtitle": "dim",
    "state.running": "bold green",
    "state.stopped": "dim",
    "state.failed": "bold red",
    "state.transition": "bold yellow",
    "dim": "dim white",
})

console = Console(theme=S3PROXY_THEME)

# ── Banner ───────────────────────────────────────────────────────────────────

BANNER_SMALL = (
    f"[bold bright_green]⚡ S3Proxy[/] [dim]v{__version__}[/] "
    "[dim]|[/] [bold bright_cyan]Alluxio S3 path-rewriting proxy[/]"
)


def show_banner() -> None:
    """Display the S3Proxy banner."""
    console.print(BANNER_SMALL)


# ── Logging ──────────────────────────────────────────────────────────────────

def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Route ``logging`` through rich, plus an optional plain-text file."""
    handlers: List[logging.Handler] = [
        RichHandler(console=console, show_path=False, markup=False, rich_tracebacks=True),
    ]
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handlers.append(file_handler)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=handlers,
        force=True,
    )


# ── Status & Info ────────────────────────────────────────────────────────────

def _state_style(state: str) -> str:
    return {
        "running": "state.running",
        "stopped": "state.stopped",
        "failed": "state.failed",
    }.get(state, "state.transition")


def show_config_status(config: Dict[str, Any], title: str = "Proxy Configuration") -> None:
    """Display an effective ``ProxyConfig`` as a two-column table."""
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Listen", f"{config['listen_host']}:{config['listen_port']}")
    table.add_row("Upstream", f"{config['upstream_host']}:{config['upstream_port']}")
    table.add_row("Path prefix", config["path_prefix"])
    table.add_row(
        "Timeouts",
        f"connect {config['connect_timeout']:g}s · send {config['send_timeout']:g}s · "
        f"read {config['read_timeout']:g}s",
    )
    table.add_row("Max body", f"{config['max_body_bytes']:,} bytes")
    table.add_row("Drain grace", f"{config['drain_timeout']:g}s")
    table.add_row("Access log", config.get("log_path") or "[dim]disabled[/]")

    console.print(Panel(table, title=f"[title]{title}[/]", border_style="green"))


def show_proxy_status(status: Dict[str, Any]) -> None:
    """Display the controller's status dict."""
    state = status.get("state", "stopped")
    console.print(f"[{_state_style(state)}]● {state}[/] [dim]{status.get('listen', '')} → "
                  f"{status.get('upstream', '')}{status.get('path_prefix', '')}[/]")
    if "total_requests" in status:
        console.print(
            f"  [dim]Requests:[/] {status['total_requests']} | "
            f"[dim]In flight:[/] {status.get('inflight', 0)} | "
            f"[dim]Bytes:[/] {status.get('total_bytes', 0):,} | "
            f"[dim]Errors:[/] {status.get('errors', 0)}"
        )
    if status.get("error"):
        print_error(status["error"])


# ── Messages ─────────────────────────────────────────────────────────────────

def print_info(text: str) -> None:
    console.print(f"[info]ℹ {text}[/]")


def print_success(text: str) -> None:
    console.print(f"[success]✅ {text}[/]")


def print_warning(text: str) -> None:
    console.print(f"[warning]⚠️  {text}[/]")


def print_error(text: str) -> None:
    console.print(f"[error]❌ {text}[/]")


def print_step(text: str) -> None:
    console.print(f"  {text}")


def print_request(summary: str, failed: bool = False) -> None:
    """One proxied request, as printed by ``serve --verbose``."""
    console.print(f"  {summary}", style="error" if failed else "dim", markup=False, highlight=False)


def print_file(content: str, lexer: str = "nginx") -> None:
    """Print a rendered file with syntax highlighting."""
    console.print(Syntax(content, lexer, theme="monokai", line_numbers=False))


# ── Install hints ────────────────────────────────────────────────────────────

def show_install_complete(start_script: str, listen_port: int) -> None:
    """Explain how to start and smoke-test the installed proxy."""
    console.print(
        "\n  Start the Alluxio S3 proxy server as the same user that you start the Alluxio\n"
        "  daemon with. Run the start script:\n"
    )
    console.print(f"     [bold]{start_script}[/]\n")
    console.print("  Then, test the proxy with the \"curl\" command like this:\n")
    console.print(Syntax(
        "curl -i --output ./part_00000.snappy.parquet \\\n"
        "     -H \"Authorization: AWS4-HMAC-SHA256 Credential=<my_alluxio_user>/\" \\\n"
        f"     -X GET http://<alluxio-prod-worker>:{listen_port}/my_bucket/my_dataset/part_00000.snappy.parquet",
        "bash", theme="monokai", line_numbers=False,
    ))
    console.print()
