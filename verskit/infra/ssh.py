"""AsyncSSH-based transport for Vers VMs.

Vers VMs only accept SSH tunnelled through TLS on port 443, so the
connection is made through an ``openssl s_client`` proxy command rather
than a raw TCP socket.

Service class pattern - the VM, its host and its key file are bound when
the session is opened, not passed on every call.
"""

from __future__ import annotations

import base64
import binascii
import contextlib
import os
import posixpath
import shlex
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Self

import asyncssh
from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from verskit.exceptions import (
    CommandFailed,
    CommandTimeout,
    CredentialEraseError,
    CredentialWriteError,
    LocalReadError,
    TransportError,
    Unreachable,
    WriteFailed,
)
from verskit.infra.protocols import CommandResult
from verskit.model import SSHCredentials

READY_TOKEN = "ready"
DEFAULT_HOST_SUFFIX = "vm.vers.sh"


def vm_host(vm_id: str, suffix: str = DEFAULT_HOST_SUFFIX) -> str:
    return f"{vm_id}.{suffix}"


def tls_proxy_command(host: str, port: int = 443) -> list[str]:
    return [
        "openssl", "s_client",
        "-connect", f"{host}:{port}",
        "-servername", host,
        "-quiet",
    ]


def _preview(text: str, n: int) -> str:
    return text if len(text) <= n else text[:n] + "..."


# =============================================================================
# Ephemeral credentials
# =============================================================================


class EphemeralKey:
    """Private key written to a private per-session directory.

    The directory is created with mode 0700 and the key with 0600. Each
    instance owns its own directory, so concurrent sessions against
    different VMs (or the same VM) never share a path.
    """

    def __init__(self, vm_id: str, private_key: str) -> None:
        self.vm_id = vm_id
        self._directory: Path | None = None
        self._path: Path | None = None
        if private_key and not private_key.endswith("\n"):
            private_key += "\n"
        try:
            self._directory = Path(tempfile.mkdtemp(prefix="verskit-ssh-"))
            self._path = self._directory / f"vers-{vm_id[:12]}.pem"
            fd = os.open(self._path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(private_key)
        except OSError as e:
            if self._directory is not None:
                shutil.rmtree(self._directory, ignore_errors=True)
            self._directory = None
            self._path = None
            raise CredentialWriteError("open", vm_id, f"write SSH key: {e}") from e

    @property
    def path(self) -> Path:
        if self._path is None:
            raise RuntimeError("Key already erased")
        return self._path

    @property
    def erased(self) -> bool:
        return self._path is None

    def erase(self) -> None:
        """Overwrite the key with zeros, then remove it and its directory. Idempotent."""
        path, directory = self._path, self._directory
        if path is None or directory is None:
            return
        try:
            if path.exists():
                size = path.stat().st_size
                with path.open("r+b") as handle:
                    handle.write(b"\0" * size)
                    handle.flush()
                    os.fsync(handle.fileno())
                path.unlink()
            directory.rmdir()
        except OSError as e:
            raise CredentialEraseError("close", self.vm_id, f"erase SSH key: {e}") from e
        self._path = None
        self._directory = None


# =============================================================================
# Shell session (transport-independent behaviour)
# =============================================================================


class _NotReadyError(Exception):
    """Probe answered, but not with the ready token - retry."""


class ShellSession(ABC):
    """Everything a session does on top of a raw "run this shell command" primitive.

    Subclasses provide ``_exec`` (one command, optional stdin, bounded by a
    timeout) and ``_shutdown``. File transfer, reachability probing and
    error mapping are shared so every transport fails the same way.
    """

    vm_id: str
    host: str

    def __init__(self, vm_id: str, host: str) -> None:
        self.vm_id = vm_id
        self.host = host
        self._log = logger.bind(component="transport", vm_id=vm_id)

    @abstractmethod
    async def _exec(self, command: str, *, input: str | None, timeout: float) -> CommandResult:
        """Run a command. Raises CommandTimeout or TransportError, never CommandFailed."""

    @abstractmethod
    async def _shutdown(self) -> None:
        """Tear down the channel and erase credentials."""

    # -------------------------------------------------------------------------
    # Command Execution
    # -------------------------------------------------------------------------

    async def run(
        self,
        command: str,
        *,
        timeout: float,
        check: bool = True,
        input: str | None = None,
    ) -> CommandResult:
        self._log.debug("run: {cmd}", cmd=_preview(command, 100))
        result = await self._exec(command, input=input, timeout=timeout)
        self._log.debug("run: exit_status={code}", code=result.exit_status)
        if check and not result.ok:
            raise CommandFailed(
                self.vm_id, command, result.exit_status, result.stderr, result.stdout
            )
        return result

    # -------------------------------------------------------------------------
    # File Transfer
    # -------------------------------------------------------------------------

    async def write_file(self, destination: str, content: bytes, *, timeout: float = 120.0) -> None:
        """Write bytes to ``destination`` exactly, creating the parent directory.

        Content travels base64-encoded over stdin, so NUL bytes, quotes and
        invalid UTF-8 all survive and no payload ever hits the command line.
        """
        parent = posixpath.dirname(destination)
        if parent not in ("", ".", "/"):
            try:
                await self.run(f"mkdir -p {shlex.quote(parent)}", timeout=timeout)
            except (CommandFailed, CommandTimeout) as e:
                raise WriteFailed("write_file", self.vm_id, f"mkdir {parent}: {e.cause}") from e

        encoded = base64.b64encode(content).decode("ascii")
        self._log.debug(
            "write_file: {dest} ({n} bytes)", dest=destination, n=len(content)
        )
        try:
            await self.run(
                f"base64 -d > {shlex.quote(destination)}", timeout=timeout, input=encoded
            )
        except (CommandFailed, CommandTimeout) as e:
            raise WriteFailed("write_file", self.vm_id, f"write {destination}: {e.cause}") from e

    async def upload_file(
        self, local_path: str | Path, destination: str, *, timeout: float = 120.0
    ) -> None:
        try:
            content = Path(local_path).read_bytes()
        except OSError as e:
            raise LocalReadError(
                "upload_file", self.vm_id, f"read local file {local_path}: {e}"
            ) from e
        await self.write_file(destination, content, timeout=timeout)

    async def read_file(self, path: str, *, timeout: float = 120.0) -> bytes:
        result = await self.run(f"base64 < {shlex.quote(path)}", timeout=timeout)
        try:
            return base64.b64decode("".join(result.stdout.split()), validate=True)
        except binascii.Error as e:
            raise TransportError("read_file", self.vm_id, f"undecodable content: {e}") from e

    # -------------------------------------------------------------------------
    # Reachability
    # -------------------------------------------------------------------------

    async def wait_reachable(
        self,
        timeout: float,
        *,
        interval: float = 3.0,
        probe_timeout: float = 15.0,
    ) -> None:
        """Probe with ``echo ready`` every ``interval`` seconds until it answers.

        Raises:
            Unreachable: The bound elapsed; wraps the last probe error.
        """
        self._log.debug("Waiting for {host} to be reachable", host=self.host)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(timeout),
                wait=wait_fixed(interval),
                retry=retry_if_exception_type((TransportError, _NotReadyError)),
            ):
                with attempt:
                    result = await self.run(f"echo {READY_TOKEN}", timeout=probe_timeout)
                    if result.stdout.strip() != READY_TOKEN:
                        raise _NotReadyError(f"unexpected probe output: {result.stdout!r}")
        except RetryError as e:
            last = e.last_attempt.exception()
            cause = f"not reachable via SSH after {timeout:g}s"
            if last is not None:
                cause += f": {last}"
            raise Unreachable("wait_reachable", self.vm_id, cause) from last

        self._log.debug("{host} is reachable", host=self.host)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def close(self) -> None:
        await self._shutdown()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: type[BaseException] | None, *_: object) -> None:
        try:
            await self.close()
        except CredentialEraseError as e:
            if exc_type is None:
                raise
            self._log.error("Could not erase credentials while unwinding: {err}", err=e)


# =============================================================================
# SSH-over-TLS session
# =============================================================================


class SSHSession(ShellSession):
    """SSH session to a Vers VM, tunnelled through TLS via ``openssl s_client``.

    Example:
        >>> async with SSHSession.open("vm-123", creds) as session:
        ...     await session.wait_reachable(180)
        ...     await session.write_file("/tmp/a.sh", b"echo hi")
        ...     result = await session.run("sh /tmp/a.sh", timeout=60)
    """

    def __init__(
        self,
        vm_id: str,
        key: EphemeralKey,
        *,
        user: str = "root",
        host_suffix: str = DEFAULT_HOST_SUFFIX,
        tls_port: int = 443,
        connect_timeout: float = 30.0,
    ) -> None:
        super().__init__(vm_id, vm_host(vm_id, host_suffix))
        self._key = key
        self._user = user
        self._tls_port = tls_port
        self._connect_timeout = connect_timeout
        self._conn: asyncssh.SSHClientConnection | None = None

    @classmethod
    def open(
        cls,
        vm_id: str,
        credentials: SSHCredentials,
        *,
        user: str = "root",
        host_suffix: str = DEFAULT_HOST_SUFFIX,
        tls_port: int = 443,
        connect_timeout: float = 30.0,
    ) -> SSHSession:
        """Persist the key and bind a session to the VM. No network I/O happens here.

        Raises:
            CredentialWriteError: The ephemeral key store could not be created.
        """
        key = EphemeralKey(vm_id, credentials.private_key)
        return cls(
            vm_id,
            key,
            user=user,
            host_suffix=host_suffix,
            tls_port=tls_port,
            connect_timeout=connect_timeout,
        )

    @property
    def key_path(self) -> Path:
        return self._key.path

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    async def _connect(self) -> asyncssh.SSHClientConnection:
        if self._conn is not None:
            return self._conn
        self._log.debug("SSH: connecting to {host} via TLS tunnel", host=self.host)
        try:
            self._conn = await asyncssh.connect(
                self.host,
                username=self._user,
                client_keys=[str(self._key.path)],
                known_hosts=None,
                proxy_command=tls_proxy_command(self.host, self._tls_port),
                connect_timeout=self._connect_timeout,
                keepalive_interval=15,
                keepalive_count_max=4,
            )
        except asyncssh.KeyImportError as e:
            raise TransportError("connect", self.vm_id, f"unusable private key: {e}") from e
        except (asyncssh.Error, OSError, TimeoutError) as e:
            raise TransportError("connect", self.vm_id, f"SSH connect to {self.host}: {e}") from e
        return self._conn

    async def _drop(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        conn.abort()
        with contextlib.suppress(asyncssh.Error, OSError):
            await conn.wait_closed()

    async def _exec(self, command: str, *, input: str | None, timeout: float) -> CommandResult:
        conn = await self._connect()
        try:
            result = await conn.run(command, input=input, timeout=timeout, check=False)
        except asyncssh.TimeoutError as e:
            await self._drop()
            raise CommandTimeout(
                self.vm_id, command, timeout, str(e.stdout or ""), str(e.stderr or "")
            ) from e
        except (asyncssh.Error, OSError) as e:
            await self._drop()
            raise TransportError("run", self.vm_id, f"SSH exec failed: {e}") from e

        exit_status = result.exit_status if result.exit_status is not None else -1
        return CommandResult(exit_status, str(result.stdout or ""), str(result.stderr or ""))

    async def _shutdown(self) -> None:
        await self._drop()
        self._key.erase()
