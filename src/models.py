"""Data model shared by the installer, operators and CLI"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

DEFAULT_SSH_KEY = "~/.ssh/id_rsa"


@dataclass(frozen=True)
class Target:
    """Machine the installation runs against"""

    host: str = "127.0.0.1"
    user: str = "root"
    ssh_key: str = DEFAULT_SSH_KEY
    ssh_port: int = 22
    local: bool = False

    @property
    def key_path(self) -> Path:
        return Path(self.ssh_key).expanduser()

    @property
    def address(self) -> str:
        if self.local:
            return "local"
        return f"{self.user}@{self.host}:{self.ssh_port}"


@dataclass(frozen=True)
class Artifact:
    """
    A file to place on the target

    Exactly one of ``content`` or ``source`` is set: inline content is
    written as-is, ``source`` is read from the local filesystem.
    """

    destination: str
    mode: int
    content: Optional[Union[str, bytes]] = None
    source: Optional[Path] = None
    label: str = ""

    def __post_init__(self):
        if (self.content is None) == (self.source is None):
            raise ValueError("Artifact needs exactly one of content or source")

    @property
    def name(self) -> str:
        return self.label or Path(self.destination).name


@dataclass(frozen=True)
class TLSFiles:
    """Authority certificate, agent certificate and agent key"""

    ca_file: Path
    cert_file: Path
    key_file: Path


@dataclass
class InstallOptions:
    """Everything the user can set for one Consul installation"""

    datacenter: str = "dc1"
    bind: str = ""
    advertise: str = ""
    client: str = ""
    server: bool = False
    bootstrap_expect: int = 1
    retry_join: List[str] = field(default_factory=list)
    encrypt: str = ""
    ca_file: str = ""
    cert_file: str = ""
    key_file: str = ""
    enable_connect: bool = False
    enable_acl: bool = False
    agent_token: str = ""
    version: str = ""
    binary: str = ""
    show: bool = False

    @property
    def tls_flags(self) -> List[str]:
        return [self.ca_file, self.cert_file, self.key_file]

    @property
    def enable_tls(self) -> bool:
        return all(self.tls_flags)
