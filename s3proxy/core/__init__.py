"""
S3Proxy Core Module
"""

from s3proxy.core.builder import ConfigBuilder, ProxyConfig, ProxyOptions
from s3proxy.core.lifecycle import LifecycleController, RuntimeState
from s3proxy.core.proxy import ProxyRuntime

__all__ = [
    "ConfigBuilder",
    "ProxyConfig",
    "ProxyOptions",
    "LifecycleController",
    "RuntimeState",
    "ProxyRuntime",
]
