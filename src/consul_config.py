"""Rendering of the Consul agent configuration (consul.hcl)"""

import json
from dataclasses import dataclass, field
from typing import Any, List, Tuple

CONSUL_DATA_DIR = "/opt/consul"
CONSUL_CONFIG_DIR = "/etc/consul.d"
CA_FILE_NAME = "consul-agent-ca.pem"
CERT_FILE_NAME = "consul-agent-cert.pem"
KEY_FILE_NAME = "consul-agent-key.pem"

Entry = Tuple[str, Any]


def _hcl_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_hcl_value(v) for v in value) + "]"
    # JSON string escaping is valid HCL string escaping
    return json.dumps(str(value))


def _hcl_lines(entries: List[Entry], indent: int = 0) -> List[str]:
    pad = "  " * indent
    lines = []
    for key, value in entries:
        if isinstance(value, dict):
            lines.append(f"{pad}{key} {{")
            lines.extend(_hcl_lines(list(value.items()), indent + 1))
            lines.append(f"{pad}}}")
        else:
            lines.append(f"{pad}{key} = {_hcl_value(value)}")
    return lines


@dataclass
class ConsulConfiguration:
    """Agent configuration built from install options"""

    datacenter: str = "dc1"
    bind_addr: str = ""
    advertise_addr: str = ""
    client_addr: str = ""
    server: bool = False
    bootstrap_expect: int = 1
    retry_join: List[str] = field(default_factory=list)
    encrypt: str = ""
    enable_tls: bool = False
    enable_acl: bool = False
    agent_token: str = ""
    enable_connect: bool = False

    @classmethod
    def from_options(cls, options) -> "ConsulConfiguration":
        return cls(
            datacenter=options.datacenter,
            bind_addr=options.bind,
            advertise_addr=options.advertise,
            client_addr=options.client,
            server=options.server,
            bootstrap_expect=options.bootstrap_expect,
            retry_join=list(options.retry_join),
            encrypt=options.encrypt,
            enable_tls=options.enable_tls,
            enable_acl=options.enable_acl,
            agent_token=options.agent_token,
            enable_connect=options.enable_connect,
        )

    def entries(self) -> List[Entry]:
        entries: List[Entry] = [
            ("datacenter", self.datacenter),
            ("data_dir", CONSUL_DATA_DIR),
        ]

        if self.bind_addr:
            entries.append(("bind_addr", self.bind_addr))
        if self.advertise_addr:
            entries.append(("advertise_addr", self.advertise_addr))
        if self.client_addr:
            entries.append(("client_addr", self.client_addr))

        if self.server:
            entries.append(("ui", True))
            entries.append(("server", True))
            entries.append(("bootstrap_expect", self.bootstrap_expect))

        if self.retry_join:
            entries.append(("retry_join", list(self.retry_join)))

        if self.encrypt:
            entries.append(("encrypt", self.encrypt))

        if self.enable_tls:
            entries.extend([
                ("ca_file", f"{CONSUL_CONFIG_DIR}/{CA_FILE_NAME}"),
                ("cert_file", f"{CONSUL_CONFIG_DIR}/{CERT_FILE_NAME}"),
                ("key_file", f"{CONSUL_CONFIG_DIR}/{KEY_FILE_NAME}"),
                ("verify_incoming", True),
                ("verify_outgoing", True),
                ("verify_server_hostname", True),
                ("ports", {"https": 8501}),
            ])

        if self.enable_acl:
            acl = {
                "enabled": True,
                "default_policy": "deny",
                "enable_token_persistence": True,
            }
            if self.agent_token:
                acl["tokens"] = {"agent": self.agent_token}
            entries.append(("acl", acl))

        if self.enable_connect:
            entries.append(("connect", {"enabled": True}))

        return entries

    def render(self) -> str:
        return "\n".join(_hcl_lines(self.entries())) + "\n"

    def __str__(self) -> str:
        return self.render()
