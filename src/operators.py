"""
Command operators

A CommandOperator runs shell commands and writes files on the installation
target. LocalOperator works against this machine, RemoteOperator against a
host reached over one authenticated SSH connection. Both expose the same
async interface so the installer never needs to know which one it holds.
"""

import asyncio
import logging
import os
import secrets
import tempfile
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import asyncssh

from .errors import CommandError, TargetConnectionError, UploadError
from .models import Artifact, Target

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of one command"""

    exit_code: Optional[int]
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr"""
        return self.stdout + self.stderr


def _as_bytes(content: Union[str, bytes]) -> bytes:
    if isinstance(content, str):
        return content.encode("utf-8")
    return content


class CommandOperator(ABC):
    """Runs commands and places files on an installation target"""

    @abstractmethod
    async def run(self, command: str) -> CommandResult:
        """Run a command and return its result whatever the exit status"""
        pass

    @abstractmethod
    async def upload(self, content: Union[str, bytes], destination: str, mode: int) -> None:
        """Atomically write content to destination with the given mode"""
        pass

    async def execute(self, command: str) -> CommandResult:
        """
        Run a command, raising on failure

        Args:
            command: Shell command line

        Returns:
            CommandResult of a zero-exit command

        Raises:
            CommandError: Command exited non-zero (carries the output)
        """
        logger.debug(f"Executing: {command}")
        result = await self.run(command)
        if not result.success:
            raise CommandError(command, result.exit_code, result.output)
        return result

    async def upload_file(self, local_path: Union[str, Path], destination: str, mode: int) -> None:
        """Atomically copy a local file to destination with the given mode"""
        try:
            content = Path(local_path).expanduser().read_bytes()
        except OSError as e:
            raise UploadError(destination, f"cannot read {local_path}: {e}") from e
        await self.upload(content, destination, mode)

    async def upload_artifact(self, artifact: Artifact) -> None:
        logger.info(f"Uploading {artifact.name} to {artifact.destination}")
        try:
            if artifact.source is not None:
                await self.upload_file(artifact.source, artifact.destination, artifact.mode)
            else:
                await self.upload(artifact.content, artifact.destination, artifact.mode)
        except UploadError as e:
            raise UploadError(artifact.destination, e.reason, label=artifact.name) from e

    async def close(self) -> None:
        """Release the execution session"""
        pass


class LocalOperator(CommandOperator):
    """Executes directly on this machine"""

    async def run(self, command: str) -> CommandResult:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        return CommandResult(
            exit_code=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    async def upload(self, content: Union[str, bytes], destination: str, mode: int) -> None:
        dest = Path(destination)
        data = _as_bytes(content)
        try:
            fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.")
        except OSError as e:
            raise UploadError(destination, str(e)) from e

        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.chmod(tmp_name, mode)
            os.replace(tmp_name, dest)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise UploadError(destination, str(e)) from e

        logger.debug(f"Wrote {len(data)} bytes to {destination} (mode {mode:o})")


class RemoteOperator(CommandOperator):
    """Executes over one established SSH connection"""

    def __init__(self, conn: "asyncssh.SSHClientConnection"):
        self._conn = conn
        self._sftp = None

    async def run(self, command: str) -> CommandResult:
        try:
            result = await self._conn.run(command, check=False)
        except (OSError, asyncssh.Error) as e:
            raise CommandError(command, None, str(e)) from e

        return CommandResult(
            exit_code=result.exit_status,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )

    async def _sftp_client(self):
        if self._sftp is None:
            self._sftp = await self._conn.start_sftp_client()
        return self._sftp

    async def upload(self, content: Union[str, bytes], destination: str, mode: int) -> None:
        data = _as_bytes(content)
        # Staged next to the destination so the rename stays on one filesystem
        staging = f"{destination}.{secrets.token_hex(4)}.tmp"

        try:
            sftp = await self._sftp_client()
        except (OSError, asyncssh.Error) as e:
            raise UploadError(destination, f"cannot open SFTP session: {e}") from e

        try:
            # Staged file carries the final mode from creation
            async with sftp.open(staging, "wb", attrs=asyncssh.SFTPAttrs(permissions=mode)) as f:
                await f.write(data)
            await sftp.chmod(staging, mode)
            await sftp.posix_rename(staging, destination)
        except (OSError, asyncssh.Error) as e:
            try:
                await sftp.remove(staging)
            except (OSError, asyncssh.Error):
                logger.debug(f"Staging file {staging} was not created")
            raise UploadError(destination, str(e)) from e

        logger.debug(f"Wrote {len(data)} bytes to {destination} (mode {mode:o})")

    async def close(self) -> None:
        if self._sftp is not None:
            self._sftp.exit()
            await self._sftp.wait_closed()
            self._sftp = None
        self._conn.close()
        await self._conn.wait_closed()


async def connect(target: Target) -> RemoteOperator:
    """
    Open the SSH session for a remote target

    Raises:
        TargetConnectionError: Key unreadable, dial or authentication failed
    """
    key_path = target.key_path
    logger.info(f"Connecting to {target.address}")

    try:
        conn = await asyncssh.connect(
            target.host,
            port=target.ssh_port,
            username=target.user,
            client_keys=[str(key_path)],
            known_hosts=None,
        )
    except (OSError, ValueError, asyncssh.Error) as e:
        # ValueError covers asyncssh.KeyImportError for unreadable keys
        raise TargetConnectionError(f"unable to connect to {target.address}: {e}") from e

    return RemoteOperator(conn)


@asynccontextmanager
async def open_operator(target: Target) -> AsyncIterator[CommandOperator]:
    """Yield the operator variant for target and close it afterwards"""
    if target.local:
        op = LocalOperator()
    else:
        op = await connect(target)

    try:
        yield op
    finally:
        try:
            await op.close()
        except (OSError, asyncssh.Error) as e:
            logger.warning(f"Could not close session to {target.address}: {e}")
