"""
S3Proxy Errors
==============
Every failure the proxy or the installer can report.

Per-request errors carry the HTTP status returned to the client.
"""

from __future__ import annotations

from typing import List, Optional


class ProxyError(Exception):
    """Base class for all S3Proxy errors."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


# ── Configuration & lifecycle ────────────────────────────────────────────────

class ConfigError(ProxyError):
    """Invalid proxy options. Never retried; the caller must fix the input."""


class PortInUse(ProxyError):
    """The listen port is already bound by another process."""

    def __init__(self, port: int, host: str = "127.0.0.1"):
        super().__init__(f"Required port {port} is already in use on {host}")
        self.port = port
        self.host = host


class BindError(ProxyError):
    """Binding the listen socket failed."""

    def __init__(self, port: int, error: OSError):
        super().__init__(f"Cannot bind port {port}: {error}")
        self.port = port
        self.os_error = error


# ── Per-request ──────────────────────────────────────────────────────────────

class RequestError(ProxyError):
    status: int = 502


class BadRequest(RequestError):
    status = 400


class UpstreamUnreachable(RequestError):
    status = 502


class PayloadTooLarge(RequestError):
    status = 413

    def __init__(self, reason: str, pending: int = 0):
        super().__init__(reason)
        # upload bytes still unread on the client connection
        self.pending = pending


class GatewayTimeout(RequestError):
    status = 504


# ── Installer ────────────────────────────────────────────────────────────────

class CliNotFound(ProxyError):
    """The storage CLI could not be located."""


class InstallError(ProxyError):
    """Every install strategy failed.

    ``failures`` holds one ``(strategy, reason)`` pair per attempt, in the
    order they were tried.
    """

    def __init__(self, reason: str, failures: Optional[List[tuple]] = None):
        self.failures = failures or []
        if self.failures:
            detail = "; ".join(f"{name}: {why}" for name, why in self.failures)
            reason = f"{reason} ({detail})"
        super().__init__(reason)
