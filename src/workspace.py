"""Temporary workspace on the installation target"""

import logging
import secrets
import shlex
import string
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .errors import CommandError, HashiUpError
from .operators import CommandOperator

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "/tmp/consul-installation."
SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(length))


@asynccontextmanager
async def workspace(op: CommandOperator, prefix: str = DEFAULT_PREFIX) -> AsyncIterator[str]:
    """
    Create a uniquely named directory on the target and remove it afterwards

    The directory is removed exactly once, after the body returns, raises or
    is cancelled. A failing removal is logged and never replaces the error
    raised by the body.

    Args:
        op: Operator for the target
        prefix: Path prefix, completed with a random suffix

    Yields:
        Absolute path of the workspace
    """
    path = f"{prefix}{random_suffix()}"
    try:
        await op.execute(f"mkdir {shlex.quote(path)}")
    except CommandError as e:
        raise CommandError(
            e.command, e.exit_code, e.output,
            context=f"error received during creating temporary directory {path}",
        ) from e
    logger.info(f"Created workspace {path}")

    try:
        yield path
    finally:
        try:
            await op.execute(f"rm -rf {shlex.quote(path)}")
            logger.info(f"Removed workspace {path}")
        except HashiUpError as e:
            logger.warning(f"Could not remove workspace {path}: {e}")
