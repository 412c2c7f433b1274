"""
Consul installation routine executed on the target host

This module is uploaded as-is into the installation workspace and run with
the target's python3, so it only imports the standard library. It reads its
parameters from the environment (TMP_DIR, SERVICE_TYPE, CONSUL_VERSION and
optionally ARCH) and runs a fixed sequence of phases:

    verify environment -> detect architecture -> capture before hash ->
    ensure dependencies -> install binary -> write config and credentials ->
    write service definition -> capture after hash -> idle | restart

Re-running it with unchanged inputs leaves the service untouched: the
service is only restarted when the hash over the installed files changed.
"""

import hashlib
import logging
import os
import platform
import shutil
import subprocess
import sys
import tempfile
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

logger = logging.getLogger(__name__)

RELEASES_URL = "https://releases.hashicorp.com/consul"
SERVICE_TYPES = ("notify", "exec")
TLS_FILE_NAMES = ("consul-agent-ca.pem", "consul-agent-cert.pem", "consul-agent-key.pem")
CONFIG_FILE_NAME = "consul.hcl"
BINARY_NAME = "consul"
SERVICE_USER = "consul"

ARCHITECTURES = {
    "amd64": "amd64",
    "x86_64": "amd64",
    "arm64": "arm64",
    "aarch64": "arm64",
}

# Release archives name 32-bit ARM builds "armhfv6"
RELEASE_SUFFIXES = {
    "amd64": "amd64",
    "arm64": "arm64",
    "armv6": "armhfv6",
}

UNIT_TEMPLATE = """\
[Unit]
Description="HashiCorp Consul - A service mesh solution"
Documentation=https://www.consul.io/
Requires=network-online.target
After=network-online.target
ConditionFileNotEmpty={config_file}

[Service]
Type={service_type}
User={user}
Group={user}
ExecStart={binary} agent -config-dir={config_dir}
ExecReload={binary} reload
ExecStop={binary} leave
KillMode=process
Restart=on-failure
LimitNOFILE=65536

[Install]
WantedBy=multi-user.target
"""


class ReconcileError(Exception):
    """Fatal failure of the installation routine"""


class MissingServiceSupervisorError(ReconcileError):
    pass


class UnsupportedArchitectureError(ReconcileError):
    pass


class MissingDependencyError(ReconcileError):
    pass


class ChecksumMismatchError(ReconcileError):
    pass


@dataclass(frozen=True)
class ReconcileParams:
    """Read-only inputs handed over by the installer"""

    workspace: Path
    service_type: str
    version: str = ""
    arch: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ReconcileParams":
        env = os.environ if environ is None else environ

        workspace = env.get("TMP_DIR", "")
        if not workspace:
            raise ReconcileError("TMP_DIR is not set")

        service_type = env.get("SERVICE_TYPE", "exec")
        if service_type not in SERVICE_TYPES:
            raise ReconcileError(f"Unknown SERVICE_TYPE {service_type}")

        return cls(
            workspace=Path(workspace),
            service_type=service_type,
            version=env.get("CONSUL_VERSION", ""),
            arch=env.get("ARCH", ""),
        )

    @property
    def uploaded_binary(self) -> Path:
        return self.workspace / BINARY_NAME

    def has_uploaded_binary(self) -> bool:
        return self.uploaded_binary.is_file() and os.access(self.uploaded_binary, os.X_OK)


@dataclass(frozen=True)
class TargetLayout:
    """Where things are installed on the target"""

    bin_dir: Path = Path("/usr/local/bin")
    config_dir: Path = Path("/etc/consul.d")
    data_dir: Path = Path("/opt/consul")
    systemd_dir: Path = Path("/etc/systemd/system")
    supervisor_run_dir: Path = Path("/run/systemd")

    @property
    def binary(self) -> Path:
        return self.bin_dir / BINARY_NAME

    @property
    def config_file(self) -> Path:
        return self.config_dir / CONFIG_FILE_NAME

    @property
    def service_file(self) -> Path:
        return self.systemd_dir / "consul.service"

    def signature_files(self) -> List[Path]:
        files = [self.binary, self.config_file]
        files.extend(self.config_dir / name for name in TLS_FILE_NAMES)
        files.append(self.service_file)
        return files


@dataclass
class ReconcileState:
    """What the phases learned so far"""

    arch: str = ""
    before: str = ""
    after: str = ""
    binary_action: str = ""
    restarted: bool = False

    @property
    def changed(self) -> bool:
        return self.before != self.after


class SystemRunner:
    """Runs system commands for the phases"""

    def run(self, args: Sequence[str], check: bool = True) -> subprocess.CompletedProcess:
        logger.debug(f"Running {' '.join(args)}")
        try:
            proc = subprocess.run(list(args), capture_output=True, text=True)
        except OSError as e:
            raise ReconcileError(f"{args[0]} could not be started: {e}") from e

        if check and proc.returncode != 0:
            output = (proc.stderr or proc.stdout or "").strip()
            raise ReconcileError(f"{' '.join(args)} failed with status {proc.returncode}: {output}")
        return proc

    def which(self, name: str) -> Optional[str]:
        return shutil.which(name)


class PackageManager(ABC):
    """A system package manager that can install prerequisite tools"""

    command = ""

    def __init__(self, runner: SystemRunner):
        self.runner = runner

    def available(self) -> bool:
        return self.runner.which(self.command) is not None

    @abstractmethod
    def install(self, packages: Sequence[str]) -> None:
        pass


class AptGet(PackageManager):
    command = "apt-get"

    def install(self, packages: Sequence[str]) -> None:
        self.runner.run(["apt-get", "update", "-y"])
        self.runner.run(["apt-get", "install", "-y", *packages])


class Yum(PackageManager):
    command = "yum"

    def install(self, packages: Sequence[str]) -> None:
        self.runner.run(["yum", "install", "-y", *packages])


# Probed in this order, first available wins
PACKAGE_MANAGERS = (AptGet, Yum)


def detect_package_manager(runner: SystemRunner, candidates=PACKAGE_MANAGERS) -> Optional[PackageManager]:
    for candidate in candidates:
        manager = candidate(runner)
        if manager.available():
            logger.debug(f"Using package manager {manager.command}")
            return manager
    return None


def detect_architecture(machine: str) -> str:
    """
    Map a machine identifier (uname -m) to amd64, arm64 or armv6

    Raises:
        UnsupportedArchitectureError: Anything else
    """
    if machine in ARCHITECTURES:
        return ARCHITECTURES[machine]
    if machine.startswith("arm"):
        return "armv6"
    raise UnsupportedArchitectureError(f"Unsupported architecture {machine}")


def file_digest(path: Path) -> str:
    sha = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            sha.update(chunk)
    return sha.hexdigest()


def installed_signature(paths: Iterable[Path]) -> str:
    """Hash over the content of every existing file in paths"""
    sha = hashlib.sha256()
    for path in paths:
        if not path.is_file():
            continue
        sha.update(str(path).encode())
        sha.update(file_digest(path).encode())
    return sha.hexdigest()


def write_file(dest: Path, content: Union[str, bytes], mode: int) -> None:
    """Replace dest atomically with content"""
    data = content.encode() if isinstance(content, str) else content
    fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, dest)
    except OSError:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def install_file(src: Path, dest: Path, mode: int) -> None:
    write_file(dest, src.read_bytes(), mode)


def verify_checksum(archive: Path, name: str, sums: str) -> None:
    """
    Compare archive against its line in a SHA256SUMS listing

    Raises:
        ChecksumMismatchError: No entry for name, or digests differ
    """
    expected = None
    for line in sums.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1].lstrip("*") == name:
            expected = parts[0].lower()
            break

    if expected is None:
        raise ChecksumMismatchError(f"No published checksum for {name}")

    actual = file_digest(archive)
    if actual != expected:
        raise ChecksumMismatchError(f"Checksum mismatch for {name}: expected {expected}, got {actual}")


def extract_binary(archive: Path, dest: Path) -> None:
    try:
        with zipfile.ZipFile(archive) as zf:
            data = zf.read(BINARY_NAME)
    except (zipfile.BadZipFile, KeyError) as e:
        raise ReconcileError(f"Cannot unpack {BINARY_NAME} from {archive}: {e}") from e
    write_file(dest, data, 0o755)


def render_unit(service_type: str, layout: TargetLayout) -> str:
    return UNIT_TEMPLATE.format(
        config_file=layout.config_file,
        config_dir=layout.config_dir,
        binary=layout.binary,
        service_type=service_type,
        user=SERVICE_USER,
    )


class Reconciler:
    """Runs the installation phases in order against one target layout"""

    PREREQUISITES = ("curl",)

    def __init__(self, params: ReconcileParams, layout: Optional[TargetLayout] = None,
                 runner: Optional[SystemRunner] = None, package_managers=PACKAGE_MANAGERS):
        self.params = params
        self.layout = layout or TargetLayout()
        self.runner = runner or SystemRunner()
        self.package_managers = package_managers

    def phases(self):
        return [
            self.verify_environment,
            self.detect_architecture,
            self.capture_before_hash,
            self.ensure_dependencies,
            self.install_binary,
            self.write_config_and_credentials,
            self.write_service_definition,
            self.capture_after_hash,
            self.apply,
        ]

    def run(self) -> ReconcileState:
        state = ReconcileState()
        for phase in self.phases():
            logger.debug(f"Phase {phase.__name__}")
            try:
                phase(state)
            except OSError as e:
                raise ReconcileError(f"{phase.__name__} failed: {e}") from e
        return state

    def verify_environment(self, state: ReconcileState) -> None:
        if not self.layout.supervisor_run_dir.is_dir():
            raise MissingServiceSupervisorError(
                "Can not find systemd to use as a process supervisor for consul"
            )

    def detect_architecture(self, state: ReconcileState) -> None:
        state.arch = detect_architecture(self.params.arch or platform.machine())
        logger.debug(f"Architecture {state.arch}")

    def capture_before_hash(self, state: ReconcileState) -> None:
        state.before = installed_signature(self.layout.signature_files())

    def ensure_dependencies(self, state: ReconcileState) -> None:
        if self.params.has_uploaded_binary():
            return

        missing = [tool for tool in self.PREREQUISITES if self.runner.which(tool) is None]
        if not missing:
            return

        manager = detect_package_manager(self.runner, self.package_managers)
        if manager is None:
            raise MissingDependencyError(
                "Could not find apt-get or yum. Cannot install dependencies on this OS."
            )

        logger.info(f"Installing {', '.join(missing)} with {manager.command}")
        manager.install(missing)

    def installed_version(self) -> Optional[str]:
        binary = self.layout.binary
        if not (binary.is_file() and os.access(binary, os.X_OK)):
            return None

        try:
            proc = self.runner.run([str(binary), "version"], check=False)
        except ReconcileError as e:
            logger.warning(f"Installed binary is not usable, reinstalling: {e}")
            return None
        if proc.returncode != 0:
            return None
        for line in proc.stdout.splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == "Consul":
                return parts[1].lstrip("v")
        return None

    def install_binary(self, state: ReconcileState) -> None:
        params = self.params
        self.layout.bin_dir.mkdir(parents=True, exist_ok=True)

        if params.has_uploaded_binary():
            logger.info("Installing uploaded Consul binary")
            install_file(params.uploaded_binary, self.layout.binary, 0o755)
            state.binary_action = "uploaded"
            return

        if not params.version:
            raise ReconcileError("CONSUL_VERSION is not set and no binary was uploaded")

        if self.installed_version() == params.version:
            logger.info(
                f"Consul binary already installed in {self.layout.bin_dir}, "
                "skipping downloading and installing binary"
            )
            state.binary_action = "skipped"
            return

        self.download_and_install(state)
        state.binary_action = "downloaded"

    def download_and_install(self, state: ReconcileState) -> None:
        version = self.params.version
        name = f"consul_{version}_linux_{RELEASE_SUFFIXES[state.arch]}.zip"
        sums_name = f"consul_{version}_SHA256SUMS"
        archive = self.params.workspace / "consul.zip"
        sums = self.params.workspace / sums_name

        logger.info(f"Downloading and unpacking {name}")
        self.runner.run(["curl", "-o", str(archive), "-sfL", f"{RELEASES_URL}/{version}/{name}"])
        self.runner.run(["curl", "-o", str(sums), "-sfL", f"{RELEASES_URL}/{version}/{sums_name}"])

        verify_checksum(archive, name, sums.read_text())
        extract_binary(archive, self.layout.binary)

    def ensure_user(self) -> None:
        if self.runner.run(["id", SERVICE_USER], check=False).returncode == 0:
            logger.info(f"User {SERVICE_USER} already exists. Will not create again.")
            return

        logger.info(f"Creating user named {SERVICE_USER}")
        self.runner.run([
            "useradd", "--system", "--home", str(self.layout.config_dir),
            "--shell", "/bin/false", SERVICE_USER,
        ])

    def write_config_and_credentials(self, state: ReconcileState) -> None:
        workspace = self.params.workspace
        layout = self.layout

        rendered = workspace / CONFIG_FILE_NAME
        if not rendered.is_file():
            raise ReconcileError(f"{rendered} is missing from the workspace")

        self.ensure_user()
        layout.data_dir.mkdir(parents=True, exist_ok=True)
        layout.config_dir.mkdir(parents=True, exist_ok=True)

        install_file(rendered, layout.config_file, 0o640)
        for name in TLS_FILE_NAMES:
            source = workspace / name
            if source.is_file():
                install_file(source, layout.config_dir / name, 0o640)

        owner = f"{SERVICE_USER}:{SERVICE_USER}"
        self.runner.run(["chown", "--recursive", owner, str(layout.data_dir)])
        self.runner.run(["chown", "--recursive", owner, str(layout.config_dir)])

    def write_service_definition(self, state: ReconcileState) -> None:
        logger.info(f"Creating service file {self.layout.service_file}")
        self.layout.systemd_dir.mkdir(parents=True, exist_ok=True)
        write_file(self.layout.service_file, render_unit(self.params.service_type, self.layout), 0o644)

    def capture_after_hash(self, state: ReconcileState) -> None:
        state.after = installed_signature(self.layout.signature_files())

    def apply(self, state: ReconcileState) -> None:
        logger.info("Enabling consul unit")
        self.runner.run(["systemctl", "enable", str(self.layout.service_file)])
        self.runner.run(["systemctl", "daemon-reload"])

        if not state.changed:
            logger.info("No change detected so skipping service start")
            return

        logger.info("Starting consul")
        self.runner.run(["systemctl", "restart", "consul"])
        state.restarted = True


def main(environ: Optional[Dict[str, str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s", stream=sys.stdout)
    try:
        Reconciler(ReconcileParams.from_env(environ)).run()
    except ReconcileError as e:
        logger.error(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
