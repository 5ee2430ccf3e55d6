"""Tests for the s3proxy command line."""

import http.client
import threading

import pytest
import yaml
from click.testing import CliRunner

from s3proxy import __version__, cli
from s3proxy.core.builder import build_config
from s3proxy.core.lifecycle import LifecycleController, RuntimeState


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("S3PROXY_LISTEN_PORT", "S3PROXY_UPSTREAM", "S3PROXY_PATH_PREFIX",
                 "S3PROXY_ACCESS_LOG", "ALLUXIO_HOME"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    def _write(**sections):
        data = {"ui": {"show_banner": False}}
        for key, values in sections.items():
            data.setdefault(key, {}).update(values)
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(data))
        return str(path)
    return _write


def _invoke(*args):
    return CliRunner().invoke(cli.main, list(args))


def test_version():
    result = _invoke("--version")
    assert result.exit_code == 0
    assert __version__ in result.output


def test_config_command(config_file):
    result = _invoke("--config", config_file(proxy={"listen_port": 40500}), "config")
    assert result.exit_code == 0
    assert "40500" in result.output
    assert "/api/v1/s3" in result.output


def test_invalid_config_exits(config_file):
    result = _invoke("--config", config_file(proxy={"path_prefix": "api"}), "config")
    assert result.exit_code == cli.EXIT_PRECONDITION
    assert "path_prefix" in result.output


def test_unknown_setting_exits(config_file):
    result = _invoke("--config", config_file(proxy={"bogus": 1}), "config")
    assert result.exit_code == cli.EXIT_PRECONDITION


def test_render(config_file, tmp_path):
    result = _invoke("--config", config_file(), "render", "--home", str(tmp_path))
    assert result.exit_code == 0
    assert "proxy_set_header Host" in result.output
    assert "client_max_body_size 50m;" in result.output


def test_status(config_file, monkeypatch):
    monkeypatch.setattr(cli, "port_in_use", lambda port, host="127.0.0.1": port == 39998)
    result = _invoke("--config", config_file(), "status")
    assert result.exit_code == 0
    assert "Something is listening" in result.output
    assert "not reachable" in result.output


# ── install ──────────────────────────────────────────────────────────────────


class FakeInstaller:
    def __init__(self, package="nginx", **kwargs):
        self.package = package

    def install(self):
        return f"{self.package} already installed at /usr/sbin/{self.package}, skipping install"


def _alluxio_home(tmp_path):
    home = tmp_path / "alluxio"
    (home / "bin").mkdir(parents=True)
    cli_path = home / "bin" / "alluxio-test-cli"
    cli_path.write_text("#!/bin/sh\n")
    cli_path.chmod(0o755)
    return home


def _install_settings(tmp_path, home):
    return dict(install={
        "alluxio_home": str(home),
        "cli_name": "alluxio-test-cli",
        "search_dirs": [],
        "temp_dir": str(tmp_path / "nginx-tmp"),
    })


def test_install_port_busy(config_file, tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "port_in_use", lambda port, host="127.0.0.1": True)
    home = _alluxio_home(tmp_path)
    result = _invoke("--config", config_file(**_install_settings(tmp_path, home)), "install")
    assert result.exit_code == 255
    assert "Required port 39998 is already in use" in result.output
    assert not (home / "conf").exists()


def test_install_cli_missing(config_file, tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "port_in_use", lambda port, host="127.0.0.1": False)
    settings = _install_settings(tmp_path, tmp_path / "nowhere")
    result = _invoke("--config", config_file(**settings), "install")
    assert result.exit_code == 255
    assert "Unable to find the alluxio-test-cli CLI" in result.output


def test_install_success(config_file, tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "port_in_use", lambda port, host="127.0.0.1": False)
    monkeypatch.setattr(cli, "PackageInstaller", FakeInstaller)
    home = _alluxio_home(tmp_path)
    result = _invoke("--config", config_file(**_install_settings(tmp_path, home)), "install")
    assert result.exit_code == 0, result.output
    assert "Script complete" in result.output
    conf = home / "conf" / "alluxio-s3-proxy.conf"
    assert conf.is_file()
    assert "proxy_pass http://127.0.0.1:39999/api/v1/s3$uri$is_args$args;" in conf.read_text()
    assert (home / "bin" / "alluxio-start-s3-proxy.sh").is_file()
    assert (home / "logs").is_dir()


def test_install_package_failure(config_file, tmp_path, monkeypatch):
    from s3proxy.core.errors import InstallError

    class BrokenInstaller(FakeInstaller):
        def install(self):
            raise InstallError("Unable to find a package manager to install nginx")

    monkeypatch.setattr(cli, "port_in_use", lambda port, host="127.0.0.1": False)
    monkeypatch.setattr(cli, "PackageInstaller", BrokenInstaller)
    home = _alluxio_home(tmp_path)
    result = _invoke("--config", config_file(**_install_settings(tmp_path, home)), "install")
    assert result.exit_code == 255
    assert "package manager" in result.output
    assert not (home / "conf").exists()


# ── serve ────────────────────────────────────────────────────────────────────


def test_serve_starts_and_stops(config_file, upstream, monkeypatch):
    seen = {}

    def fake_wait(controller, stop_event=None):
        seen["state"] = controller.state
        seen["port"] = controller.runtime.port
        controller.stop(grace=1)

    monkeypatch.setattr(cli, "_wait_for_signal", fake_wait)
    result = _invoke(
        "--config", config_file(), "serve",
        "--listen-port", "0",
        "--upstream", f"127.0.0.1:{upstream.server_address[1]}",
        "--access-log", "",
    )
    assert result.exit_code == 0, result.output
    assert seen["state"] == RuntimeState.RUNNING
    assert seen["port"] > 0
    assert "S3 proxy listening" in result.output


def test_serve_port_busy(config_file, busy_port):
    result = _invoke(
        "--config", config_file(proxy={"listen_host": "127.0.0.1"}), "serve",
        "--listen-port", str(busy_port), "--access-log", "",
    )
    assert result.exit_code == 255
    assert "already in use" in result.output


def test_wait_for_signal_stops_controller(upstream, monkeypatch):
    monkeypatch.setattr(cli.signal, "signal", lambda *args: None)
    config = build_config(listen_host="127.0.0.1", listen_port=0, upstream_port=upstream.server_address[1])
    controller = LifecycleController(config)
    controller.start()
    event = threading.Event()
    event.set()
    cli._wait_for_signal(controller, event)
    assert controller.state == RuntimeState.STOPPED


def test_wait_for_signal_warns_when_cut_off(monkeypatch, capsys):
    class StuckController:
        state = RuntimeState.RUNNING

        def stop(self):
            return {"ok": True, "state": "stopped", "drained": False, "inflight": 2}

    monkeypatch.setattr(cli.signal, "signal", lambda *args: None)
    event = threading.Event()
    event.set()
    cli._wait_for_signal(StuckController(), event)
    out = capsys.readouterr().out
    assert "2 request(s) cut off" in out
    assert "requests served" not in out


def test_verbose_serve_prints_requests(config_file, upstream, monkeypatch):
    def fake_wait(controller, stop_event=None):
        done = threading.Event()
        controller.runtime.on_request(lambda record: done.set())
        conn = http.client.HTTPConnection("127.0.0.1", controller.runtime.port, timeout=10)
        try:
            conn.request("GET", "/b/k")
            conn.getresponse().read()
        finally:
            conn.close()
        assert done.wait(5)
        controller.stop(grace=1)

    monkeypatch.setattr(cli, "_wait_for_signal", fake_wait)
    result = _invoke(
        "--config", config_file(), "--verbose", "serve",
        "--listen-port", "0",
        "--upstream", f"127.0.0.1:{upstream.server_address[1]}",
        "--access-log", "",
    )
    assert result.exit_code == 0, result.output
    assert "GET /b/k → /api/v1/s3/b/k 200" in result.output
