"""
Consul installer - sequences uploads and runs the reconciliation routine

One installation works against exactly one target:

1. validate the TLS flags (before anything touches the network)
2. resolve the version to install
3. open the operator for the target and a workspace on it
4. upload binary, TLS material, configuration and the routine, in that order
5. run the routine once
6. remove the workspace, whatever happened in 4 and 5
"""

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from . import reconcile
from .checkpoint import latest_version
from .consul_config import CA_FILE_NAME, CERT_FILE_NAME, KEY_FILE_NAME, ConsulConfiguration
from .errors import CommandError, RemoteExecutionError, VersionLookupError
from .models import Artifact, InstallOptions, Target, TLSFiles
from .operators import open_operator
from .tls import validate_tls_files
from .workspace import workspace

logger = logging.getLogger(__name__)

ROUTINE_NAME = "install.py"


def routine_source() -> str:
    """Source of the reconciliation routine uploaded to the target"""
    return Path(reconcile.__file__).read_text(encoding="utf-8")


def select_service_type(retry_join: List[str]) -> str:
    """notify when the agent joins a cluster, exec otherwise"""
    return "notify" if retry_join else "exec"


@dataclass
class InstallResult:
    """Outcome of a successful installation (or rendering)"""

    success: bool
    step: str
    message: str = ""
    config: str = ""
    version: str = ""
    service_type: str = ""
    workspace: str = ""
    output: str = ""


class ConsulInstaller:
    """Installs Consul on one target"""

    def __init__(self, options: InstallOptions, target: Optional[Target] = None,
                 operator_factory: Callable = open_operator,
                 version_lookup: Callable[[], str] = latest_version,
                 verify_tls: bool = True):
        """
        Initialize ConsulInstaller

        Args:
            options: What to install and how to configure it
            target: Where to install (default: 127.0.0.1 over SSH)
            operator_factory: Async context manager factory taking a Target
            version_lookup: Returns the latest released version
            verify_tls: Parse TLS files and match key against certificate
        """
        self.options = options
        self.target = target or Target()
        self.operator_factory = operator_factory
        self.version_lookup = version_lookup
        self.verify_tls = verify_tls

    def validate(self) -> Optional[TLSFiles]:
        return validate_tls_files(self.options, verify=self.verify_tls)

    def render_config(self) -> str:
        return ConsulConfiguration.from_options(self.options).render()

    def show(self) -> str:
        """Render the configuration without touching any target"""
        self.validate()
        return self.render_config()

    def service_type(self) -> str:
        return select_service_type(self.options.retry_join)

    def resolve_version(self) -> str:
        """
        Version to install

        Raises:
            VersionLookupError: Lookup failed and neither version nor binary was given
        """
        if self.options.version or self.options.binary:
            return self.options.version

        try:
            return self.version_lookup()
        except VersionLookupError:
            raise
        except Exception as e:
            raise VersionLookupError(
                "unable to get latest version number, define a version manually with the --version flag"
            ) from e

    def artifacts(self, ws: str, tls: Optional[TLSFiles], config: str) -> List[Artifact]:
        """Uploads in the order the routine expects them"""
        items = []

        if self.options.binary:
            items.append(Artifact(
                destination=f"{ws}/consul", mode=0o755,
                source=Path(self.options.binary).expanduser(), label="consul binary",
            ))

        if tls is not None:
            items.extend([
                Artifact(destination=f"{ws}/{CA_FILE_NAME}", mode=0o640,
                         source=tls.ca_file, label="consul ca file"),
                Artifact(destination=f"{ws}/{CERT_FILE_NAME}", mode=0o640,
                         source=tls.cert_file, label="consul cert file"),
                Artifact(destination=f"{ws}/{KEY_FILE_NAME}", mode=0o640,
                         source=tls.key_file, label="consul key file"),
            ])

        items.append(Artifact(destination=f"{ws}/consul.hcl", mode=0o640,
                              content=config, label="consul configuration"))
        items.append(Artifact(destination=f"{ws}/{ROUTINE_NAME}", mode=0o755,
                              content=routine_source(), label="install script"))
        return items

    def reconcile_command(self, ws: str, version: str) -> str:
        env = {
            "TMP_DIR": ws,
            "SERVICE_TYPE": self.service_type(),
            "CONSUL_VERSION": version,
        }
        assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items())
        script = shlex.quote(f"{ws}/{ROUTINE_NAME}")
        return (
            'if [ "$(id -u)" -eq 0 ]; then SUDO=; else SUDO=sudo; fi; '
            f"$SUDO env {assignments} python3 {script}"
        )

    async def install(self) -> InstallResult:
        """
        Run the whole installation

        Returns:
            InstallResult describing the finished run

        Raises:
            HashiUpError: First failure; the workspace is removed regardless
        """
        tls = self.validate()
        config = self.render_config()

        if self.options.show:
            return InstallResult(success=True, step="show", config=config)

        version = self.resolve_version()
        service_type = self.service_type()
        logger.info(f"Installing Consul {version or '(uploaded binary)'} on {self.target.address}")

        async with self.operator_factory(self.target) as op:
            async with workspace(op) as ws:
                for artifact in self.artifacts(ws, tls, config):
                    await op.upload_artifact(artifact)

                command = self.reconcile_command(ws, version)
                try:
                    result = await op.execute(command)
                except CommandError as e:
                    raise RemoteExecutionError(
                        f"install script in {ws}", e.exit_code, e.output
                    ) from e

        logger.info(f"Consul installed on {self.target.address}")
        return InstallResult(
            success=True,
            step="complete",
            message=f"Consul installed on {self.target.address}",
            config=config,
            version=version,
            service_type=service_type,
            workspace=ws,
            output=result.output,
        )
