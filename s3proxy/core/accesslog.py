"""
S3Proxy Access Log
==================
One line per proxied request, appended to a plain-text file. The line layout
follows the ``upstreamlog`` format the installer writes into nginx configs, so
both deployments produce logs that read the same way::

    [18/Oct/2026:09:12:44 +0000] 10.0.2.7 | http_host: worker:39998 | to: 127.0.0.1:39999: GET /b/k /api/v1/s3/b/k 200 upstream_response_time 0.004 request_time 0.005
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class RequestRecord:
    """A single proxied request. Lives only until it has been logged."""
    method: str
    original_uri: str
    rewritten_uri: str
    client_address: str
    host: str
    upstream_address: str
    timestamp: float = field(default_factory=time.time)
    status: int = 0
    upstream_time: Optional[float] = None
    total_time: float = 0.0
    request_bytes: int = 0
    response_bytes: int = 0
    error: str = ""

    def to_log_line(self) -> str:
        """Render the fixed-order access log line (no trailing newline)."""
        stamp = time.strftime("%d/%b/%Y:%H:%M:%S %z", time.localtime(self.timestamp))
        upstream_time = f"{self.upstream_time:.3f}" if self.upstream_time is not None else "-"
        return (
            f"[{stamp}] {self.client_address} | http_host: {self.host or '-'} | "
            f"to: {self.upstream_address}: {self.method} {self.original_uri} "
            f"{self.rewritten_uri} {self.status} "
            f"upstream_response_time {upstream_time} request_time {self.total_time:.3f}"
        )

    def get_summary(self) -> str:
        """One-line summary for the terminal."""
        error = f" ({self.error})" if self.error else ""
        return (f"{self.method} {self.original_uri} → {self.rewritten_uri} "
                f"{self.status} {self.total_time * 1000:.0f}ms{error}")


class AccessLog:
    """Append-only access log. Write failures are reported, never raised."""

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = threading.Lock()
        self.failures = 0

    def write(self, record: RequestRecord) -> bool:
        line = record.to_log_line() + "\n"
        with self._lock:
            try:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
                return True
            except OSError as e:
                self.failures += 1
                error = e
        logger.warning(f"Cannot write access log {self.path}: {error}")
        return False
