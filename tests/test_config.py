"""Tests for S3Proxy configuration module."""

import pytest
import yaml

from s3proxy.config import (
    DEFAULT_CONFIG,
    ProxySection,
    S3ProxySettings,
    _deep_merge,
    load_config,
    save_config,
)
from s3proxy.core.builder import ConfigBuilder
from s3proxy.core.errors import ConfigError


def _write(path, data):
    path.write_text(yaml.safe_dump(data))
    return path


def test_default_config(tmp_path):
    """Missing file and empty env give the built-in defaults."""
    cfg = load_config(tmp_path / "missing.yaml", environ={})
    assert cfg.proxy.listen_port == 39998
    assert cfg.proxy.upstream_host == "127.0.0.1"
    assert cfg.proxy.upstream_port == 39999
    assert cfg.proxy.path_prefix == "/api/v1/s3"
    assert cfg.proxy.max_body_size == "50m"
    assert cfg.install.cli_name == "alluxio"
    assert cfg.install.search_dirs == ["/opt/alluxio/bin"]
    assert cfg.ui.show_banner is True


def test_deep_merge():
    """Test deep merge of config dictionaries."""
    base = {"a": {"b": 1, "c": 2}, "d": 3}
    override = {"a": {"b": 10}, "e": 5}
    result = _deep_merge(base, override)
    assert result["a"]["b"] == 10
    assert result["a"]["c"] == 2
    assert result["d"] == 3
    assert result["e"] == 5
    assert base["a"]["b"] == 1


def test_defaults_not_mutated(tmp_path):
    cfg = load_config(tmp_path / "missing.yaml", environ={"S3PROXY_LISTEN_PORT": "40000"})
    cfg.install.search_dirs.append("/usr/local/alluxio/bin")
    assert DEFAULT_CONFIG["proxy"]["listen_port"] == 39998
    assert DEFAULT_CONFIG["install"]["search_dirs"] == ["/opt/alluxio/bin"]


def test_yaml_overrides_defaults(tmp_path):
    path = _write(tmp_path / "config.yaml", {
        "proxy": {"listen_port": 40100, "read_timeout": "10s"},
        "install": {"alluxio_home": "/opt/alluxio"},
    })
    cfg = load_config(path, environ={})
    assert cfg.proxy.listen_port == 40100
    assert cfg.proxy.read_timeout == "10s"
    assert cfg.proxy.connect_timeout == "300s"
    assert cfg.install.alluxio_home == "/opt/alluxio"


def test_env_overrides(tmp_path):
    env = {
        "S3PROXY_LISTEN_PORT": "41000",
        "S3PROXY_UPSTREAM": "worker-1:40999",
        "S3PROXY_PATH_PREFIX": "/s3",
        "S3PROXY_ACCESS_LOG": "/var/log/s3.log",
        "ALLUXIO_HOME": "/opt/alluxio-2.9",
    }
    cfg = load_config(tmp_path / "missing.yaml", environ=env)
    assert cfg.proxy.listen_port == "41000"
    assert cfg.proxy.upstream_host == "worker-1"
    assert cfg.proxy.upstream_port == "40999"
    assert cfg.proxy.path_prefix == "/s3"
    assert cfg.proxy.access_log == "/var/log/s3.log"
    assert cfg.install.alluxio_home == "/opt/alluxio-2.9"


def test_file_home_wins_over_env(tmp_path):
    path = _write(tmp_path / "config.yaml", {"install": {"alluxio_home": "/srv/alluxio"}})
    cfg = load_config(path, environ={"ALLUXIO_HOME": "/opt/alluxio"})
    assert cfg.install.alluxio_home == "/srv/alluxio"


def test_bad_upstream_env(tmp_path):
    with pytest.raises(ConfigError, match="host:port"):
        load_config(tmp_path / "missing.yaml", environ={"S3PROXY_UPSTREAM": "39999"})


def test_unknown_key(tmp_path):
    path = _write(tmp_path / "config.yaml", {"proxy": {"listen_prot": 1}})
    with pytest.raises(ConfigError, match="Unknown setting"):
        load_config(path, environ={})


def test_non_mapping_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(path, environ={})


def test_section_builds_config():
    """String durations and sizes from YAML survive the builder."""
    section = ProxySection(read_timeout="500ms", max_body_size="1g", access_log="/tmp/a.log")
    config = ConfigBuilder().build(section.to_options())
    assert config.read_timeout == 0.5
    assert config.max_body_bytes == 1024 ** 3
    assert config.log_path == "/tmp/a.log"
    assert config.drain_timeout == 600.5


def test_access_log_argument_overrides_section():
    section = ProxySection(access_log="/tmp/a.log")
    assert section.to_options(access_log="").log_path == ""
    assert section.to_options().log_path == "/tmp/a.log"


def test_save_and_reload(tmp_path):
    cfg = S3ProxySettings()
    cfg.proxy.listen_port = 40200
    cfg.install.alluxio_home = "/opt/alluxio"
    path = save_config(cfg, tmp_path / "nested" / "config.yaml")
    loaded = load_config(path, environ={})
    assert loaded == cfg
