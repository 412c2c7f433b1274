"""Validation of the TLS material handed to the Consul agent"""

import logging
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .errors import ConfigurationError
from .models import InstallOptions, TLSFiles

logger = logging.getLogger(__name__)

_SPKI = dict(
    encoding=serialization.Encoding.PEM,
    format=serialization.PublicFormat.SubjectPublicKeyInfo,
)


def _read(path: Path, label: str) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise ConfigurationError(f"{label} {path} cannot be read: {e}") from e


def check_key_pair(files: TLSFiles) -> None:
    """
    Make sure the three PEM files parse and the agent key matches its certificate

    Raises:
        ConfigurationError: A file is unreadable, malformed or mismatched
    """
    try:
        x509.load_pem_x509_certificate(_read(files.ca_file, "ca-file"))
    except ValueError as e:
        raise ConfigurationError(f"ca-file {files.ca_file} is not a PEM certificate") from e

    try:
        cert = x509.load_pem_x509_certificate(_read(files.cert_file, "cert-file"))
    except ValueError as e:
        raise ConfigurationError(f"cert-file {files.cert_file} is not a PEM certificate") from e

    try:
        key = serialization.load_pem_private_key(_read(files.key_file, "key-file"), password=None)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(
            f"key-file {files.key_file} is not an unencrypted PEM private key"
        ) from e

    if cert.public_key().public_bytes(**_SPKI) != key.public_key().public_bytes(**_SPKI):
        raise ConfigurationError(
            f"key-file {files.key_file} does not match the certificate in {files.cert_file}"
        )


def validate_tls_files(options: InstallOptions, verify: bool = True) -> Optional[TLSFiles]:
    """
    Check the ca-file/cert-file/key-file combination

    Args:
        options: Install options carrying the three paths
        verify: Also parse the files and match key against certificate

    Returns:
        TLSFiles when all three are set, None when none is set

    Raises:
        ConfigurationError: Only some of the three are set, or verification failed
    """
    flags = options.tls_flags

    if not any(flags):
        return None

    if not all(flags):
        raise ConfigurationError(
            "ca-file, cert-file and key-file are all required when enabling tls, "
            "at least one of them is missing"
        )

    files = TLSFiles(
        ca_file=Path(options.ca_file).expanduser(),
        cert_file=Path(options.cert_file).expanduser(),
        key_file=Path(options.key_file).expanduser(),
    )

    if verify:
        check_key_pair(files)
        logger.debug(f"TLS material verified for {files.cert_file}")

    return files
