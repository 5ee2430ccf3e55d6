"""
S3Proxy Templates
=================
Renders the nginx deployment of the proxy: an nginx config equivalent to
``ProxyRuntime`` for the same ``ProxyConfig``, and start/stop scripts.
"""

from __future__ import annotations

import logging
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import List

from s3proxy.core.builder import ProxyConfig, format_address

logger = logging.getLogger(__name__)

LICENSE_HEADER = """\
#!/usr/bin/env bash
#
# The Alluxio Open Foundation licenses this work under the Apache License, version 2.0
# (the "License"). You may not use this work except in compliance with the License, which is
# available at www.apache.org/licenses/LICENSE-2.0
#
# This software is distributed on an "AS IS" basis, WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND,
# either express or implied, as more fully set forth in the License.
#
# See the NOTICE file distributed with this work for information regarding copyright ownership.
#
"""

NGINX_CONF = """\
worker_processes auto;
error_log {error_log} info;
pid {temp_dir}/nginx.pid;

events {{
  worker_connections {worker_connections};
}}

http {{
  log_format upstreamlog '[$time_local] $remote_addr | $remote_user | http_host: $http_host | $host to: $upstream_addr: $request $request_uri $status upstream_response_time $upstream_response_time msec $msec request_time $request_time | Proxy: "$proxy_host" "$upstream_addr"';
  access_log            {access_log} upstreamlog;
  client_body_temp_path {temp_dir} 1 2;
  proxy_temp_path       {temp_dir} 1 2;
  fastcgi_temp_path     {temp_dir} 1 2;
  scgi_temp_path        {temp_dir} 1 2;
  uwsgi_temp_path       {temp_dir} 1 2;

  server {{
    listen {listen};
    server_name  _;
    root         /usr/share/nginx/html;
    client_max_body_size {max_body};
    location  / {{
      proxy_connect_timeout {connect_timeout};
      proxy_send_timeout    {send_timeout};
      proxy_read_timeout    {read_timeout};

      proxy_pass http://{upstream}{path_prefix}$uri$is_args$args;
      proxy_set_header Host $host:$server_port;
    }}
  }}
}}
"""

START_SCRIPT = """
# First stop the old nginx process
{nginx} -s stop -c {conf} &>/dev/null

# Then, start the new nginx process
echo "  Starting Alluxio Nginx S3 proxy server"
{nginx} -c {conf} -e {error_log}

# end of script
"""

STOP_SCRIPT = """
# Stop the nginx process
echo "  Stopping Alluxio Nginx S3 proxy server"
{nginx} -s stop -c {conf}

# end of script
"""


def nginx_duration(seconds: float) -> str:
    """``300.0`` → ``300s``, ``0.5`` → ``500ms``."""
    if float(seconds).is_integer():
        return f"{int(seconds)}s"
    return f"{int(round(seconds * 1000))}ms"


def nginx_size(size: int) -> str:
    """``52428800`` → ``50m``; sizes that are not whole units stay in bytes."""
    for suffix, unit in (("g", 1024 ** 3), ("m", 1024 ** 2), ("k", 1024)):
        if size % unit == 0:
            return f"{size // unit}{suffix}"
    return str(size)


@dataclass
class DeploymentLayout:
    """Where the nginx deployment lives inside an installation home."""
    home: Path
    conf_name: str = "alluxio-s3-proxy.conf"
    start_script: str = "alluxio-start-s3-proxy.sh"
    stop_script: str = "alluxio-stop-s3-proxy.sh"
    temp_dir: str = "/tmp/alluxio-nginx"
    worker_connections: int = 768
    nginx: str = "nginx"

    @property
    def conf_path(self) -> Path:
        return self.home / "conf" / self.conf_name

    @property
    def start_path(self) -> Path:
        return self.home / "bin" / self.start_script

    @property
    def stop_path(self) -> Path:
        return self.home / "bin" / self.stop_script

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"


def render_nginx_conf(config: ProxyConfig, layout: DeploymentLayout) -> str:
    if config.listen_host in ("0.0.0.0", ""):
        listen = str(config.listen_port)
    else:
        listen = format_address(config.listen_host, config.listen_port)
    access_log = config.log_path or str(layout.logs_dir / "s3_proxy.log")
    return LICENSE_HEADER + NGINX_CONF.format(
        error_log=layout.logs_dir / "s3_proxy.out",
        temp_dir=layout.temp_dir,
        worker_connections=layout.worker_connections,
        access_log=access_log,
        listen=listen,
        max_body=nginx_size(config.max_body_bytes),
        connect_timeout=nginx_duration(config.connect_timeout),
        send_timeout=nginx_duration(config.send_timeout),
        read_timeout=nginx_duration(config.read_timeout),
        upstream=config.upstream_address,
        path_prefix=config.path_prefix,
    )


def render_start_script(layout: DeploymentLayout) -> str:
    return LICENSE_HEADER + START_SCRIPT.format(
        nginx=layout.nginx,
        conf=layout.conf_path,
        error_log=layout.logs_dir / "nginx-error.log",
    )


def render_stop_script(layout: DeploymentLayout) -> str:
    return LICENSE_HEADER + STOP_SCRIPT.format(nginx=layout.nginx, conf=layout.conf_path)


def write_deployment(config: ProxyConfig, layout: DeploymentLayout) -> List[Path]:
    """Write the nginx config and both scripts. Returns the paths written."""
    written = []
    for path, content, executable in (
        (layout.conf_path, render_nginx_conf(config, layout), False),
        (layout.start_path, render_start_script(layout), True),
        (layout.stop_path, render_stop_script(layout), True),
    ):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
        if executable:
            path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        logger.info(f"Wrote {path}")
        written.append(path)

    layout.logs_dir.mkdir(parents=True, exist_ok=True)
    Path(layout.temp_dir).mkdir(parents=True, exist_ok=True)
    return written
