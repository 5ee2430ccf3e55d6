"""
S3Proxy CLI
===========
Command-line entry points: install the nginx deployment on a worker, or run
the native proxy in the foreground.
"""

from __future__ import annotations

import signal
import threading
import time
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv

from s3proxy import __version__
from s3proxy.config import CONFIG_FILE, LOGS_DIR, S3ProxySettings, ensure_dirs, load_config
from s3proxy.core.builder import ConfigBuilder, ProxyConfig, port_in_use
from s3proxy.core.errors import ProxyError
from s3proxy.core.installer import PackageInstaller, find_cli, install_home
from s3proxy.core.lifecycle import LifecycleController, RuntimeState
from s3proxy.core.templates import DeploymentLayout, render_nginx_conf, write_deployment
from s3proxy.ui import (
    console,
    print_error,
    print_file,
    print_info,
    print_request,
    print_step,
    print_success,
    print_warning,
    setup_logging,
    show_banner,
    show_config_status,
    show_install_complete,
    show_proxy_status,
)

load_dotenv()

# Historical installer exit status (`exit -1` in a shell)
EXIT_PRECONDITION = 255


def _timestamp() -> str:
    return time.strftime("%Y:%m:%d %H:%M:%S")


def _layout(settings: S3ProxySettings, home: Path) -> DeploymentLayout:
    inst = settings.install
    return DeploymentLayout(
        home=home,
        conf_name=inst.conf_name,
        start_script=inst.start_script,
        stop_script=inst.stop_script,
        temp_dir=inst.temp_dir,
        worker_connections=inst.worker_connections,
        nginx=inst.package,
    )


def _default_access_log(settings: S3ProxySettings) -> str:
    if settings.proxy.access_log:
        return settings.proxy.access_log
    if settings.install.alluxio_home:
        return str(Path(settings.install.alluxio_home) / "logs" / "s3_proxy.log")
    ensure_dirs()
    return str(LOGS_DIR / "s3_proxy.log")


# ── Main CLI ─────────────────────────────────────────────────────────────────

@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path),
              default=None, help=f"Config file (default: {CONFIG_FILE})")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(__version__, prog_name="s3proxy")
@click.pass_context
def main(ctx, config_path, verbose):
    """S3Proxy: Alluxio S3 path-rewriting proxy"""
    ctx.ensure_object(dict)
    try:
        settings = load_config(config_path)
    except ProxyError as e:
        print_error(e.reason)
        ctx.exit(EXIT_PRECONDITION)
    if verbose:
        settings.ui.verbose = True
    setup_logging(settings.ui.verbose)
    ctx.obj["settings"] = settings
    ctx.obj["config_path"] = config_path or CONFIG_FILE


@main.command()
@click.pass_context
def install(ctx):
    """Install and configure the nginx S3 proxy on this worker."""
    settings: S3ProxySettings = ctx.obj["settings"]
    inst = settings.install
    if settings.ui.show_banner:
        show_banner()
    console.print(f"\n  {_timestamp()} Installing and configuring Alluxio S3 proxy\n")

    try:
        # Port precondition first, before touching the host
        config = ConfigBuilder(port_probe=port_in_use).build(
            settings.proxy.to_options()
        )

        cli_path = find_cli(inst.cli_name, inst.alluxio_home, inst.search_dirs)
        home = install_home(cli_path)
        print_step(f"Found {inst.cli_name} CLI at {cli_path}")

        print_step(f"Installing {inst.package} package")
        message = PackageInstaller(package=inst.package).install()
        print_step(message)

        layout = _layout(settings, home)
        for path in write_deployment(config, layout):
            print_step(f"Created {path}")
    except ProxyError as e:
        print_error(f"{e.reason}. Exiting.")
        ctx.exit(EXIT_PRECONDITION)

    console.print(f"\n  {_timestamp()} Script complete")
    show_install_complete(str(layout.start_path), config.listen_port)


@main.command()
@click.option("--listen-port", type=int, default=None, help="Port to listen on")
@click.option("--upstream", default=None, help="Upstream host:port")
@click.option("--prefix", "path_prefix", default=None, help="Path prefix to inject")
@click.option("--access-log", default=None, help="Access log file ('' disables)")
@click.pass_context
def serve(ctx, listen_port, upstream, path_prefix, access_log):
    """Run the native proxy in the foreground until SIGINT/SIGTERM."""
    settings: S3ProxySettings = ctx.obj["settings"]
    proxy = settings.proxy
    if listen_port is not None:
        proxy.listen_port = listen_port
    if upstream:
        host, _, port = upstream.rpartition(":")
        proxy.upstream_host, proxy.upstream_port = host, port
    if path_prefix:
        proxy.path_prefix = path_prefix
    if access_log is None:
        access_log = _default_access_log(settings)

    setup_logging(settings.ui.verbose, proxy.error_log or None)
    try:
        config = ConfigBuilder().build(proxy.to_options(access_log=access_log))
        controller = LifecycleController(config)
        result = controller.start()
    except ProxyError as e:
        print_error(e.reason)
        ctx.exit(EXIT_PRECONDITION)

    print_success(result["message"])
    show_config_status(config.to_dict())
    if settings.ui.verbose:
        controller.runtime.on_request(
            lambda record: print_request(record.get_summary(), failed=bool(record.error))
        )
    _wait_for_signal(controller)


def _wait_for_signal(controller: LifecycleController, stop_event: Optional[threading.Event] = None) -> None:
    """Block until SIGINT/SIGTERM, then stop the proxy gracefully."""
    stop_event = stop_event or threading.Event()

    def _handler(signum, frame):
        print_info(f"Received {signal.Signals(signum).name}, draining in-flight requests…")
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)

    while not stop_event.wait(0.5):
        if controller.state == RuntimeState.FAILED:
            show_proxy_status(controller.status())
            break

    result = controller.stop()
    if result.get("drained", True):
        print_success(f"Proxy stopped. {result.get('total_requests', 0)} requests served.")
    else:
        print_warning(f"Proxy stopped with {result.get('inflight', 0)} request(s) cut off.")


@main.command()
@click.pass_context
def status(ctx):
    """Show whether something is listening on the proxy port."""
    settings: S3ProxySettings = ctx.obj["settings"]
    try:
        config = ConfigBuilder().build(settings.proxy.to_options())
    except ProxyError as e:
        print_error(e.reason)
        ctx.exit(EXIT_PRECONDITION)

    if port_in_use(config.listen_port, config.probe_host):
        print_success(f"Something is listening on {config.probe_host}:{config.listen_port}")
    else:
        print_info(f"Nothing is listening on {config.probe_host}:{config.listen_port}")
    upstream_up = port_in_use(config.upstream_port, config.upstream_host)
    (print_success if upstream_up else print_error)(
        f"Upstream {config.upstream_address} is {'reachable' if upstream_up else 'not reachable'}"
    )


@main.command()
@click.pass_context
def config(ctx):
    """Show the effective proxy configuration."""
    settings: S3ProxySettings = ctx.obj["settings"]
    try:
        cfg: ProxyConfig = ConfigBuilder().build(settings.proxy.to_options())
    except ProxyError as e:
        print_error(e.reason)
        ctx.exit(EXIT_PRECONDITION)
    show_config_status(cfg.to_dict())
    print_info(f"Config file: {ctx.obj['config_path']}")
    if settings.install.alluxio_home:
        print_info(f"Alluxio home: {settings.install.alluxio_home}")


@main.command()
@click.option("--home", type=click.Path(file_okay=False, path_type=Path), default=None,
              help="Installation home (default: configured alluxio_home)")
@click.pass_context
def render(ctx, home):
    """Print the nginx configuration install would write."""
    settings: S3ProxySettings = ctx.obj["settings"]
    home = home or Path(settings.install.alluxio_home or ".")
    try:
        cfg = ConfigBuilder().build(settings.proxy.to_options())
    except ProxyError as e:
        print_error(e.reason)
        ctx.exit(EXIT_PRECONDITION)
    print_file(render_nginx_conf(cfg, _layout(settings, home)))


if __name__ == "__main__":
    main()
