"""Protocol definitions for the remote execution transport.

Provisioning and the pre-commit flush only ever talk to a VM through
``Session``. The tunnelling strategy lives behind ``SessionOpener``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Self, runtime_checkable

from verskit.model import SSHCredentials


@dataclass(frozen=True, slots=True)
class CommandResult:
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@runtime_checkable
class Session(Protocol):
    """An open execution channel to one VM plus its ephemeral credentials.

    Usage:
        async with opener(vm_id, credentials) as session:
            await session.wait_reachable(180)
            result = await session.run("uname -a", timeout=60)
    """

    vm_id: str
    host: str

    async def run(self, command: str, *, timeout: float, check: bool = True) -> CommandResult:
        """Run one shell command.

        Raises:
            CommandTimeout: The command did not finish in time (partial output attached).
            CommandFailed: Non-zero exit and ``check`` is set.
            TransportError: The channel could not be established.
        """
        ...

    async def write_file(self, destination: str, content: bytes, *, timeout: float = 120.0) -> None: ...

    async def upload_file(
        self, local_path: str | Path, destination: str, *, timeout: float = 120.0
    ) -> None: ...

    async def read_file(self, path: str, *, timeout: float = 120.0) -> bytes: ...

    async def wait_reachable(
        self, timeout: float, *, interval: float = 3.0, probe_timeout: float = 15.0
    ) -> None: ...

    async def close(self) -> None: ...

    async def __aenter__(self) -> Self: ...

    async def __aexit__(self, *exc: object) -> None: ...


type SessionOpener = Callable[[str, SSHCredentials], Session]
