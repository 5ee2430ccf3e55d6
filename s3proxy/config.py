"""
S3Proxy Configuration Management
================================
Handles config loading, environment overrides, and platform-specific paths.

This is the only module that reads the process environment; everything below
it receives explicit values.
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from platformdirs import user_config_dir, user_data_dir

from s3proxy.core.builder import (
    DEFAULT_LISTEN_HOST,
    DEFAULT_LISTEN_PORT,
    DEFAULT_PATH_PREFIX,
    DEFAULT_UPSTREAM_HOST,
    DEFAULT_UPSTREAM_PORT,
    ProxyOptions,
)
from s3proxy.core.errors import ConfigError

APP_NAME = "s3proxy"

# ── paths ────────────────────────────────────────────────────────────────────

CONFIG_DIR = Path(user_config_dir(APP_NAME))
DATA_DIR = Path(user_data_dir(APP_NAME))
LOGS_DIR = DATA_DIR / "logs"
CONFIG_FILE = CONFIG_DIR / "config.yaml"


def ensure_dirs() -> None:
    """Create all required directories."""
    for d in (CONFIG_DIR, DATA_DIR, LOGS_DIR):
        d.mkdir(parents=True, exist_ok=True)


# ── default config ───────────────────────────────────────────────────────────

DEFAULT_CONFIG: Dict[str, Any] = {
    "proxy": {
        "listen_host": DEFAULT_LISTEN_HOST,
        "listen_port": DEFAULT_LISTEN_PORT,
        "upstream_host": DEFAULT_UPSTREAM_HOST,
        "upstream_port": DEFAULT_UPSTREAM_PORT,
        "path_prefix": DEFAULT_PATH_PREFIX,
        "connect_timeout": "300s",
        "send_timeout": "300s",
        "read_timeout": "300s",
        "max_body_size": "50m",
        "drain_timeout": None,
        "access_log": "",
        "error_log": "",
    },
    "install": {
        "alluxio_home": "",
        "cli_name": "alluxio",
        "search_dirs": ["/opt/alluxio/bin"],
        "package": "nginx",
        "temp_dir": "/tmp/alluxio-nginx",
        "conf_name": "alluxio-s3-proxy.conf",
        "start_script": "alluxio-start-s3-proxy.sh",
        "stop_script": "alluxio-stop-s3-proxy.sh",
        "worker_connections": 768,
    },
    "ui": {
        "show_banner": True,
        "verbose": False,
    },
}


@dataclass
class ProxySection:
    listen_host: str = DEFAULT_LISTEN_HOST
    listen_port: int = DEFAULT_LISTEN_PORT
    upstream_host: str = DEFAULT_UPSTREAM_HOST
    upstream_port: int = DEFAULT_UPSTREAM_PORT
    path_prefix: str = DEFAULT_PATH_PREFIX
    connect_timeout: Any = "300s"
    send_timeout: Any = "300s"
    read_timeout: Any = "300s"
    max_body_size: Any = "50m"
    drain_timeout: Any = None
    access_log: str = ""
    error_log: str = ""

    def to_options(self, access_log: Optional[str] = None) -> ProxyOptions:
        """Builder input for this section. ``access_log`` overrides the file setting."""
        return ProxyOptions(
            listen_host=self.listen_host,
            listen_port=self.listen_port,
            upstream_host=self.upstream_host,
            upstream_port=self.upstream_port,
            path_prefix=self.path_prefix,
            connect_timeout=self.connect_timeout,
            send_timeout=self.send_timeout,
            read_timeout=self.read_timeout,
            max_body_bytes=self.max_body_size,
            log_path=self.access_log if access_log is None else access_log,
            drain_timeout=self.drain_timeout,
        )


@dataclass
class InstallSection:
    alluxio_home: str = ""
    cli_name: str = "alluxio"
    search_dirs: List[str] = field(default_factory=lambda: list(DEFAULT_CONFIG["install"]["search_dirs"]))
    package: str = "nginx"
    temp_dir: str = "/tmp/alluxio-nginx"
    conf_name: str = "alluxio-s3-proxy.conf"
    start_script: str = "alluxio-start-s3-proxy.sh"
    stop_script: str = "alluxio-stop-s3-proxy.sh"
    worker_connections: int = 768


@dataclass
class UIConfig:
    show_banner: bool = True
    verbose: bool = False


@dataclass
class S3ProxySettings:
    proxy: ProxySection = field(default_factory=ProxySection)
    install: InstallSection = field(default_factory=InstallSection)
    ui: UIConfig = field(default_factory=UIConfig)


def load_config(
    path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> S3ProxySettings:
    """Load configuration from disk, env vars, and defaults."""
    path = Path(path) if path else CONFIG_FILE
    env = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}

    if path.exists():
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigError(f"{path} must contain a mapping, got {type(raw).__name__}")

    # Merge with defaults
    merged = _deep_merge(DEFAULT_CONFIG, raw)

    # Env-var overrides
    if env.get("S3PROXY_LISTEN_PORT"):
        merged["proxy"]["listen_port"] = env["S3PROXY_LISTEN_PORT"]
    if env.get("S3PROXY_UPSTREAM"):
        host, sep, port = env["S3PROXY_UPSTREAM"].rpartition(":")
        if not sep or not host:
            raise ConfigError(f"S3PROXY_UPSTREAM must be host:port, got {env['S3PROXY_UPSTREAM']!r}")
        merged["proxy"]["upstream_host"] = host
        merged["proxy"]["upstream_port"] = port
    if env.get("S3PROXY_PATH_PREFIX"):
        merged["proxy"]["path_prefix"] = env["S3PROXY_PATH_PREFIX"]
    if env.get("S3PROXY_ACCESS_LOG"):
        merged["proxy"]["access_log"] = env["S3PROXY_ACCESS_LOG"]
    if env.get("ALLUXIO_HOME") and not merged["install"]["alluxio_home"]:
        merged["install"]["alluxio_home"] = env["ALLUXIO_HOME"]

    try:
        cfg = S3ProxySettings(
            proxy=ProxySection(**merged.get("proxy", {})),
            install=InstallSection(**merged.get("install", {})),
            ui=UIConfig(**merged.get("ui", {})),
        )
    except TypeError as e:
        raise ConfigError(f"Unknown setting in {path}: {e}") from None
    return cfg


def save_config(cfg: S3ProxySettings, path: Optional[Path] = None) -> Path:
    """Persist current configuration to disk."""
    if path is None:
        ensure_dirs()
        path = CONFIG_FILE
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(asdict(cfg), f, default_flow_style=False, sort_keys=False)
    return path


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    result = {
        k: dict(v) if isinstance(v, dict) else list(v) if isinstance(v, list) else v
        for k, v in base.items()
    }
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result
