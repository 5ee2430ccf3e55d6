"""
S3Proxy Lifecycle
=================
Start/stop state machine around a ``ProxyRuntime``::

    stopped ──start──▶ starting ──bind ok──▶ running ──stop──▶ stopping ──drained──▶ stopped
                           └──bind error──▶ failed ──stop──▶ stopped

``start`` and ``stop`` are idempotent and serialised by one lock. ``status``
never takes the lock, so it can be called while a stop is draining.
"""

from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from s3proxy.core.builder import ProxyConfig, port_in_use
from s3proxy.core.errors import BindError, PortInUse
from s3proxy.core.proxy import ProxyRuntime

logger = logging.getLogger(__name__)


class RuntimeState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class LifecycleController:
    """
    Owns the proxy's ``RuntimeState`` and is its only writer.

    ``runtime_factory`` and ``port_probe`` are injectable so the state
    machine can be exercised without sockets.
    """

    def __init__(
        self,
        config: ProxyConfig,
        runtime_factory: Callable[[ProxyConfig], ProxyRuntime] = ProxyRuntime,
        port_probe: Callable[[int, str], bool] = port_in_use,
    ):
        self.config = config
        self._runtime_factory = runtime_factory
        self._port_probe = port_probe
        self._lock = threading.Lock()
        self._state = RuntimeState.STOPPED
        self._runtime: Optional[ProxyRuntime] = None
        self._start_time: float = 0
        self.last_error: str = ""
        self.bind_count = 0

    @property
    def state(self) -> RuntimeState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == RuntimeState.RUNNING

    @property
    def runtime(self) -> Optional[ProxyRuntime]:
        return self._runtime

    # ── Transitions ──────────────────────────────────────────────────────

    def start(self) -> Dict[str, Any]:
        """Start the proxy.

        Returns:
            Status dict with port and message. A second call while running
            returns the same shape without binding again.

        Raises:
            PortInUse: something already answers on the listen port.
            BindError: binding failed; the controller is left ``failed``.
        """
        with self._lock:
            if self._state == RuntimeState.RUNNING:
                result = self.status()
                result["message"] = f"Proxy already running on port {self._runtime.port}"
                return result

            port = self.config.listen_port
            host = self.config.probe_host
            if port and self._port_probe(port, host):
                self.last_error = f"Port {port} is already in use"
                raise PortInUse(port, host)

            self._state = RuntimeState.STARTING
            runtime = self._runtime_factory(self.config)
            runtime.on_crash = self._on_crash
            try:
                runtime.bind()
            except OSError as e:
                self._state = RuntimeState.FAILED
                self.last_error = str(e)
                logger.error(f"Cannot bind port {port}: {e}")
                raise BindError(port, e) from e

            self.bind_count += 1
            self._runtime = runtime
            runtime.serve()
            self._start_time = time.time()
            self.last_error = ""
            self._state = RuntimeState.RUNNING

            result = self.status()
            result["message"] = (
                f"S3 proxy listening on {self.config.listen_host}:{runtime.port} "
                f"→ http://{self.config.upstream_address}{self.config.path_prefix}"
            )
            return result

    def stop(self, grace: Optional[float] = None) -> Dict[str, Any]:
        """Stop the proxy, letting in-flight requests finish first.

        Args:
            grace: Seconds to wait for in-flight requests
                (default ``config.drain_timeout``).

        Returns:
            Status dict with request stats. Calling it while stopped is a
            no-op that still reports success.
        """
        with self._lock:
            if self._state == RuntimeState.STOPPED:
                return {"ok": True, "state": self._state.value, "message": "Proxy is not running"}

            if self._state == RuntimeState.FAILED:
                if self._runtime is not None:
                    self._runtime.shutdown(grace=0)
                self._runtime = None
                self._state = RuntimeState.STOPPED
                return {"ok": True, "state": self._state.value, "message": "Cleared failed proxy"}

            self._state = RuntimeState.STOPPING
            runtime = self._runtime
            drained = runtime.shutdown(grace)
            stats = runtime.get_stats()
            uptime = time.time() - self._start_time
            self._runtime = None
            self._state = RuntimeState.STOPPED

        stats["ok"] = True
        stats["state"] = RuntimeState.STOPPED.value
        stats["drained"] = drained
        stats["uptime_seconds"] = round(uptime, 1)
        stats["message"] = "Proxy stopped"
        return stats

    def status(self) -> Dict[str, Any]:
        """Current state plus runtime counters. Lock-free."""
        state = self._state
        runtime = self._runtime
        result: Dict[str, Any] = {
            "ok": state != RuntimeState.FAILED,
            "state": state.value,
            "listen": f"{self.config.listen_host}:{runtime.port if runtime else self.config.listen_port}",
            "upstream": self.config.upstream_address,
            "path_prefix": self.config.path_prefix,
        }
        if runtime is not None and state in (RuntimeState.RUNNING, RuntimeState.STOPPING):
            result.update(runtime.get_stats())
            result["uptime_seconds"] = round(time.time() - self._start_time, 1)
        if self.last_error:
            result["error"] = self.last_error
        return result

    def _on_crash(self, exc: BaseException) -> None:
        with self._lock:
            if self._state == RuntimeState.RUNNING:
                self._state = RuntimeState.FAILED
                self.last_error = f"Accept loop crashed: {exc}"
