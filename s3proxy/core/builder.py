"""
S3Proxy Config Builder
======================
Turns loosely-typed options (CLI flags, YAML, env vars) into an immutable,
validated ``ProxyConfig``.

Durations and sizes accept the same notation as the nginx directives the
installer renders: ``300s``, ``500ms``, ``5m``, ``50m`` (bytes), ``1g``.
"""

from __future__ import annotations

import ipaddress
import re
import socket
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Optional, Union

from s3proxy.core.errors import ConfigError, PortInUse

DEFAULT_LISTEN_HOST = "0.0.0.0"
DEFAULT_LISTEN_PORT = 39998
DEFAULT_UPSTREAM_HOST = "127.0.0.1"
DEFAULT_UPSTREAM_PORT = 39999
DEFAULT_PATH_PREFIX = "/api/v1/s3"
DEFAULT_TIMEOUT = 300.0
DEFAULT_MAX_BODY_BYTES = 50 * 1024 * 1024

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([kmg])?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, None: 1}

# RFC 3986 pchar, one or more per segment
_SEGMENT = r"(?:[A-Za-z0-9\-._~!$&'()*+,;=:@]|%[0-9A-Fa-f]{2})+"
_PREFIX_RE = re.compile(rf"^(?:/{_SEGMENT})+$")

_LABEL_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")


# ── Value parsing ────────────────────────────────────────────────────────────

def parse_duration(value: Union[int, float, str], name: str = "duration") -> float:
    """Parse seconds from a number or an nginx-style duration string."""
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a duration, got {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        m = _DURATION_RE.match(value)
        if not m:
            raise ConfigError(f"{name} is not a valid duration: {value!r}")
        seconds = float(m.group(1)) * _DURATION_UNITS[m.group(2)]
    else:
        raise ConfigError(f"{name} must be a duration, got {value!r}")
    if seconds <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return seconds


def parse_size(value: Union[int, str], name: str = "size") -> int:
    """Parse a byte count from an int or a ``k``/``m``/``g`` suffixed string."""
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a byte size, got {value!r}")
    if isinstance(value, int):
        size = value
    elif isinstance(value, str):
        m = _SIZE_RE.match(value)
        if not m:
            raise ConfigError(f"{name} is not a valid size: {value!r}")
        unit = m.group(2).lower() if m.group(2) else None
        size = int(m.group(1)) * _SIZE_UNITS[unit]
    else:
        raise ConfigError(f"{name} must be a byte size, got {value!r}")
    if size <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return size


def is_valid_host(host: str) -> bool:
    """True for a DNS hostname, an IPv4 literal or an (optionally bracketed) IPv6 literal."""
    if not host:
        return False
    literal = host[1:-1] if host.startswith("[") and host.endswith("]") else host
    try:
        ipaddress.ip_address(literal)
        return True
    except ValueError:
        pass
    if literal != host or len(host) > 253:
        return False
    labels = host.rstrip(".").split(".")
    return all(_LABEL_RE.match(label) for label in labels)


def format_address(host: str, port: int) -> str:
    """``host:port`` with IPv6 literals bracketed."""
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def port_in_use(port: int, host: str = "127.0.0.1", timeout: float = 1.0) -> bool:
    """Probe a port with a TCP connect. A successful connect means it is bound."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


# ── Data Models ──────────────────────────────────────────────────────────────

@dataclass
class ProxyOptions:
    """Raw, unvalidated inputs for ``ConfigBuilder.build``."""
    listen_host: str = DEFAULT_LISTEN_HOST
    listen_port: Any = DEFAULT_LISTEN_PORT
    upstream_host: str = DEFAULT_UPSTREAM_HOST
    upstream_port: Any = DEFAULT_UPSTREAM_PORT
    path_prefix: str = DEFAULT_PATH_PREFIX
    connect_timeout: Any = DEFAULT_TIMEOUT
    send_timeout: Any = DEFAULT_TIMEOUT
    read_timeout: Any = DEFAULT_TIMEOUT
    max_body_bytes: Any = DEFAULT_MAX_BODY_BYTES
    log_path: Optional[str] = ""
    drain_timeout: Any = None


@dataclass(frozen=True)
class ProxyConfig:
    """Validated, immutable proxy configuration. Safe to share across threads."""
    listen_host: str
    listen_port: int
    upstream_host: str
    upstream_port: int
    path_prefix: str
    connect_timeout: float
    send_timeout: float
    read_timeout: float
    max_body_bytes: int
    log_path: str
    drain_timeout: float

    @property
    def upstream_address(self) -> str:
        return format_address(self.upstream_host, self.upstream_port)

    @property
    def probe_host(self) -> str:
        """Where to connect when checking whether the listen port is taken."""
        if self.listen_host in ("0.0.0.0", ""):
            return "127.0.0.1"
        if self.listen_host in ("::", "[::]"):
            return "::1"
        return self.listen_host.strip("[]")

    def rewrite(self, uri: str) -> str:
        """Prefix a request target. Plain concatenation, nothing is normalised."""
        return self.path_prefix + uri

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


# ── Builder ──────────────────────────────────────────────────────────────────

class ConfigBuilder:
    """
    Validates ``ProxyOptions`` into a ``ProxyConfig``.

    ``build`` is pure unless a ``port_probe`` is supplied, in which case it
    also rejects a listen port that something else already holds (``PortInUse``).
    """

    def __init__(self, port_probe: Optional[Callable[[int, str], bool]] = None):
        self.port_probe = port_probe

    def build(self, options: ProxyOptions) -> ProxyConfig:
        listen_port = self._port(options.listen_port, "listen_port", allow_zero=True)
        upstream_port = self._port(options.upstream_port, "upstream_port")
        if listen_port == upstream_port:
            raise ConfigError(
                f"listen_port and upstream_port must differ (both {listen_port})"
            )

        listen_host = str(options.listen_host or "")
        if not is_valid_host(listen_host):
            raise ConfigError(f"listen_host is not a valid address: {listen_host!r}")
        upstream_host = str(options.upstream_host or "")
        if not is_valid_host(upstream_host):
            raise ConfigError(f"upstream_host is not a valid address: {upstream_host!r}")

        prefix = options.path_prefix
        if not isinstance(prefix, str) or not prefix:
            raise ConfigError("path_prefix must be a non-empty string")
        if not prefix.startswith("/"):
            raise ConfigError(f"path_prefix must start with '/': {prefix!r}")
        if not _PREFIX_RE.match(prefix):
            raise ConfigError(f"path_prefix is not a well-formed absolute path: {prefix!r}")

        connect_timeout = parse_duration(options.connect_timeout, "connect_timeout")
        send_timeout = parse_duration(options.send_timeout, "send_timeout")
        read_timeout = parse_duration(options.read_timeout, "read_timeout")
        if options.drain_timeout is None:
            drain_timeout = connect_timeout + send_timeout + read_timeout
        else:
            drain_timeout = parse_duration(options.drain_timeout, "drain_timeout")

        config = ProxyConfig(
            listen_host=listen_host.strip("[]"),
            listen_port=listen_port,
            upstream_host=upstream_host.strip("[]"),
            upstream_port=upstream_port,
            path_prefix=prefix,
            connect_timeout=connect_timeout,
            send_timeout=send_timeout,
            read_timeout=read_timeout,
            max_body_bytes=parse_size(options.max_body_bytes, "max_body_bytes"),
            log_path=str(options.log_path or ""),
            drain_timeout=drain_timeout,
        )

        if self.port_probe and listen_port and self.port_probe(listen_port, config.probe_host):
            raise PortInUse(listen_port, config.probe_host)
        return config

    @staticmethod
    def _port(value: Any, name: str, allow_zero: bool = False) -> int:
        if isinstance(value, bool):
            raise ConfigError(f"{name} must be an integer, got {value!r}")
        try:
            port = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be an integer, got {value!r}") from None
        low = 0 if allow_zero else 1
        if not low <= port <= 65535:
            raise ConfigError(f"{name} out of range {low}..65535: {port}")
        return port


def build_config(options: Optional[ProxyOptions] = None, **overrides: Any) -> ProxyConfig:
    """Shortcut: build a config from defaults plus keyword overrides."""
    known = {f.name for f in fields(ProxyOptions)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ConfigError(f"Unknown option: {unknown[0]}")
    opts = replace(options or ProxyOptions(), **overrides)
    return ConfigBuilder().build(opts)
