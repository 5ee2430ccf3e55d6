"""
S3Proxy Installer
=================
Locates the Alluxio installation and makes sure the nginx engine is present.

Package installation is a list of strategies tried in a fixed order
(already installed → yum → apt → brew); the first one that succeeds wins and
every failure is collected into a single ``InstallError``.
"""

from __future__ import annotations

import logging
import platform
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from s3proxy.core.errors import CliNotFound, InstallError

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Result of a package-manager command."""
    command: List[str]
    stdout: str
    stderr: str
    return_code: int
    duration: float
    timestamp: float = field(default_factory=time.time)

    @property
    def success(self) -> bool:
        return self.return_code == 0


class CommandRunner:
    """Runs commands with a timeout and captured output. Never uses a shell."""

    def __init__(self, timeout: int = 600):
        self.timeout = timeout

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)

    def run(self, command: Sequence[str]) -> CommandResult:
        cmd = list(command)
        start = time.time()
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
            result = CommandResult(cmd, proc.stdout, proc.stderr, proc.returncode, time.time() - start)
        except subprocess.TimeoutExpired:
            result = CommandResult(cmd, "", f"Timed out after {self.timeout}s", -1, time.time() - start)
        except OSError as e:
            result = CommandResult(cmd, "", str(e), -1, time.time() - start)
        logger.debug(f"{' '.join(cmd)} → {result.return_code} ({result.duration:.1f}s)")
        return result


# ── CLI discovery ────────────────────────────────────────────────────────────

def find_cli(
    cli_name: str = "alluxio",
    alluxio_home: str = "",
    search_dirs: Sequence[str] = ("/opt/alluxio/bin",),
    which: Callable[[str], Optional[str]] = shutil.which,
) -> Path:
    """Locate the storage CLI: ``PATH`` first, then ``search_dirs``, then ``<home>/bin``."""
    found = which(cli_name)
    if found:
        logger.info(f"Found {cli_name} CLI in PATH: {found}")
        return Path(found)

    for d in search_dirs:
        candidate = Path(d) / cli_name
        if candidate.is_file():
            logger.info(f"Found {cli_name} CLI in {d}")
            return candidate

    if alluxio_home:
        candidate = Path(alluxio_home) / "bin" / cli_name
        if candidate.is_file():
            logger.info(f"Found {cli_name} CLI in {alluxio_home}/bin")
            return candidate

    places = ["PATH", *search_dirs]
    if alluxio_home:
        places.append(f"{alluxio_home}/bin")
    raise CliNotFound(f"Unable to find the {cli_name} CLI in {', '.join(places)}")


def install_home(cli_path: Path) -> Path:
    """The installation root is the parent of the CLI's ``bin`` directory."""
    return Path(cli_path).resolve().parent.parent


# ── Install strategies ───────────────────────────────────────────────────────

class InstallStrategy:
    """One way of getting a package onto the host."""

    name = "base"

    def __init__(self, runner: CommandRunner, package: str = "nginx"):
        self.runner = runner
        self.package = package

    def applicable(self) -> bool:
        raise NotImplementedError

    def install(self) -> str:
        """Install the package. Returns a message, raises ``InstallError``."""
        raise NotImplementedError


class AlreadyInstalled(InstallStrategy):
    name = "existing"

    def applicable(self) -> bool:
        return True

    def install(self) -> str:
        path = self.runner.which(self.package)
        if not path:
            raise InstallError(f"{self.package} is not on PATH")
        return f"{self.package} already installed at {path}, skipping install"


class YumStrategy(InstallStrategy):
    name = "yum"

    def applicable(self) -> bool:
        return self.runner.which("yum") is not None

    def install(self) -> str:
        listing = self.runner.run(["yum", "list", self.package])
        arch_name = f"{self.package}.{platform.machine() or 'x86_64'}"
        if arch_name not in listing.stdout:
            raise InstallError(f'package "{arch_name}" not available')
        result = self.runner.run(["yum", "-y", "install", self.package])
        if not result.success:
            raise InstallError(f"yum install failed: {result.stderr.strip() or result.return_code}")
        return f"Installed {self.package} with: yum -y install {self.package}"


class AptStrategy(InstallStrategy):
    name = "apt"

    def applicable(self) -> bool:
        return self.runner.which("apt") is not None or self.runner.which("apt-get") is not None

    def install(self) -> str:
        listing = self.runner.run(["apt", "list", self.package])
        if not any(line.startswith(self.package) for line in listing.stdout.splitlines()):
            raise InstallError(f'package "{self.package}" not found')
        result = self.runner.run(["apt-get", "-y", "install", self.package])
        if not result.success:
            raise InstallError(f"apt-get install failed: {result.stderr.strip() or result.return_code}")
        return f"Installed {self.package} with: apt-get -y install {self.package}"


class BrewStrategy(InstallStrategy):
    """Homebrew refuses to run as root, so this only tells the user what to run."""

    name = "brew"

    def applicable(self) -> bool:
        return platform.system() == "Darwin"

    def install(self) -> str:
        raise InstallError(
            f"cannot install as root; run 'brew install {self.package}' as your own user, then re-run"
        )


DEFAULT_STRATEGIES = (AlreadyInstalled, YumStrategy, AptStrategy, BrewStrategy)


class PackageInstaller:
    """Tries strategies in priority order; first success wins."""

    def __init__(
        self,
        package: str = "nginx",
        runner: Optional[CommandRunner] = None,
        strategies: Sequence[type] = DEFAULT_STRATEGIES,
    ):
        self.package = package
        self.runner = runner or CommandRunner()
        self.strategies: List[InstallStrategy] = [s(self.runner, package) for s in strategies]

    def install(self) -> str:
        failures = []
        for strategy in self.strategies:
            if not strategy.applicable():
                continue
            try:
                message = strategy.install()
            except InstallError as e:
                logger.debug(f"{strategy.name}: {e.reason}")
                failures.append((strategy.name, e.reason))
                continue
            if strategy.name != AlreadyInstalled.name and not self.runner.which(self.package):
                failures.append((strategy.name, f"{self.package} still not on PATH after install"))
                continue
            logger.info(message)
            return message

        tried = [name for name, _ in failures]
        if tried == [AlreadyInstalled.name]:
            raise InstallError(
                f"Unable to find a package manager to install {self.package} (tried yum, apt and brew)",
                failures,
            )
        raise InstallError(f"Package {self.package} could not be installed", failures)
