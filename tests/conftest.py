"""Shared fixtures for tests"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from src.errors import UploadError
from src.operators import CommandOperator, CommandResult


class RecordingOperator(CommandOperator):
    """Operator that records every call instead of touching a machine"""

    def __init__(self, fail_upload_on=None, fail_command_on=None):
        self.calls = []
        self.fail_upload_on = fail_upload_on
        self.fail_command_on = fail_command_on
        self.closed = False

    async def run(self, command):
        self.calls.append(("run", command))
        if self.fail_command_on and self.fail_command_on in command:
            return CommandResult(exit_code=1, stdout="[ERROR] Unsupported architecture mips\n")
        return CommandResult(exit_code=0, stdout="[INFO] done\n")

    async def upload(self, content, destination, mode):
        self.calls.append(("upload", destination, mode))
        if self.fail_upload_on and destination.endswith(self.fail_upload_on):
            raise UploadError(destination, "No space left on device")

    async def close(self):
        self.closed = True

    @property
    def commands(self):
        return [call[1] for call in self.calls if call[0] == "run"]

    @property
    def uploads(self):
        return [call[1] for call in self.calls if call[0] == "upload"]


def make_operator_factory(op):
    """Build an open_operator replacement that always yields op"""
    targets = []

    @asynccontextmanager
    async def factory(target):
        targets.append(target)
        yield op

    factory.targets = targets
    return factory


@pytest.fixture
def recording_operator():
    return RecordingOperator()


@pytest.fixture
def operator_factory(recording_operator):
    return make_operator_factory(recording_operator)


def _name(common_name):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _certificate(subject_key, subject_cn, issuer_key, issuer_cn, is_ca):
    now = datetime.now(timezone.utc)
    return (
        x509.CertificateBuilder()
        .subject_name(_name(subject_cn))
        .issuer_name(_name(issuer_cn))
        .public_key(subject_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
        .sign(issuer_key, hashes.SHA256())
    )


def _key_pem(key):
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


@pytest.fixture
def tls_files(tmp_path):
    """CA, agent certificate and agent key written as PEM files"""
    ca_key = ec.generate_private_key(ec.SECP256R1())
    agent_key = ec.generate_private_key(ec.SECP256R1())
    ca_cert = _certificate(ca_key, "Consul Agent CA", ca_key, "Consul Agent CA", True)
    agent_cert = _certificate(agent_key, "server.dc1.consul", ca_key, "Consul Agent CA", False)

    tls_dir = tmp_path / "tls"
    tls_dir.mkdir()
    paths = {
        "ca_file": tls_dir / "consul-agent-ca.pem",
        "cert_file": tls_dir / "dc1-server-consul-0.pem",
        "key_file": tls_dir / "dc1-server-consul-0-key.pem",
        "other_key_file": tls_dir / "unrelated-key.pem",
    }
    paths["ca_file"].write_bytes(ca_cert.public_bytes(serialization.Encoding.PEM))
    paths["cert_file"].write_bytes(agent_cert.public_bytes(serialization.Encoding.PEM))
    paths["key_file"].write_bytes(_key_pem(agent_key))
    paths["other_key_file"].write_bytes(_key_pem(ec.generate_private_key(ec.SECP256R1())))
    return paths
