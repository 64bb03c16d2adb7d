"""Provisioning: upload files and run commands on a VM, once per fingerprint.

A provisioning unit is the VM ID, an ordered list of files, an ordered
list of shell commands and a map of trigger values. Its fingerprint is a
hash over all four; any change to it means the whole unit is re-run from
the first file. There is no incremental re-provisioning: idempotence is
the script author's job.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from loguru import logger

from verskit.config import Vers
from verskit.exceptions import (
    CommandFailed,
    CommandStepFailed,
    CommandTimeout,
    ConfigurationError,
    FileStepFailed,
    TransportError,
)

if TYPE_CHECKING:
    from verskit.client import VersClient
    from verskit.infra.protocols import SessionOpener

COMMAND_PREVIEW = 80
OUTPUT_DIAGNOSTIC_LIMIT = 2000


def truncate(text: str, n: int) -> str:
    return text if len(text) <= n else text[:n] + "..."


# =============================================================================
# File specifications
# =============================================================================


@dataclass(frozen=True, slots=True)
class LocalFile:
    """Upload the bytes of a local file."""

    destination: str
    path: Path

    def identity(self) -> str:
        try:
            return "sha256:" + hashlib.sha256(self.path.read_bytes()).hexdigest()
        except OSError:
            # Unreadable sources still fingerprint deterministically; the
            # upload itself reports LocalReadError.
            return f"path:{self.path}"


@dataclass(frozen=True, slots=True)
class InlineContent:
    """Write literal bytes."""

    destination: str
    content: bytes = field(repr=False)

    def identity(self) -> str:
        return "sha256:" + hashlib.sha256(self.content).hexdigest()


type FileSpec = LocalFile | InlineContent


def file_spec(
    destination: str,
    *,
    source: str | Path | None = None,
    content: str | bytes | None = None,
    index: int = 1,
) -> FileSpec:
    """Build a FileSpec from a raw declaration.

    Exactly one of ``source``/``content`` must be set; empty strings count
    as unset.

    Raises:
        ConfigurationError: Neither or both are set, or the destination is empty.
    """
    has_source = source is not None and str(source) != ""
    has_content = content is not None and content not in ("", b"")
    where = f"file {index}"
    if not destination:
        raise ConfigurationError("validate", where, "'destination' is required")
    if has_source and has_content:
        raise ConfigurationError(
            "validate", where, "'source' and 'content' are mutually exclusive"
        )
    if has_source:
        return LocalFile(destination, Path(str(source)))
    if has_content:
        data = content.encode("utf-8") if isinstance(content, str) else content
        return InlineContent(destination, data)
    raise ConfigurationError(
        "validate", where, "either 'source' (local file path) or 'content' (inline string) is required"
    )


def parse_files(entries: Sequence[Mapping[str, Any]]) -> tuple[FileSpec, ...]:
    """Convert ``{destination, source?, content?}`` mappings, validating every entry."""
    return tuple(
        file_spec(
            entry.get("destination", ""),
            source=entry.get("source"),
            content=entry.get("content"),
            index=i,
        )
        for i, entry in enumerate(entries, 1)
    )


# =============================================================================
# Provisioning unit
# =============================================================================


@dataclass(frozen=True, slots=True)
class ProvisionSpec:
    vm_id: str
    files: tuple[FileSpec, ...] = ()
    commands: tuple[str, ...] = ()
    triggers: Mapping[str, str] = field(default_factory=dict)

    def fingerprint(self) -> str:
        return fingerprint(self)


def fingerprint(spec: ProvisionSpec) -> str:
    """Deterministic 16-hex-digit hash of a provisioning unit.

    File order and command order matter; trigger order does not.
    """
    content = json.dumps(
        {
            "vm_id": spec.vm_id,
            "files": [[f.destination, f.identity()] for f in spec.files],
            "commands": list(spec.commands),
            "triggers": sorted((str(k), str(v)) for k, v in spec.triggers.items()),
        },
        sort_keys=True,
    )
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class CommandOutput:
    position: int
    command: str
    stdout: str
    stderr: str = ""


@dataclass(frozen=True, slots=True)
class ProvisionResult:
    vm_id: str
    fingerprint: str
    outputs: tuple[CommandOutput, ...] = ()
    ran: bool = True


# =============================================================================
# Orchestrator
# =============================================================================


class Provisioner:
    """Applies provisioning units to VMs.

    Each call fetches fresh credentials, opens its own transport session
    and closes it (erasing the key) on every exit path. Steps run strictly
    in order: all files, then all commands, stopping at the first failure.
    Nothing completed before a failure is rolled back.
    """

    def __init__(
        self,
        client: VersClient,
        settings: Vers | None = None,
        *,
        opener: SessionOpener | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or getattr(client, "config", None) or Vers()
        self._opener = opener or self._settings.session_opener()

    async def provision(self, spec: ProvisionSpec) -> ProvisionResult:
        """Run every file and command of ``spec`` from the top.

        Raises:
            Unreachable: SSH never came up within the reachability bound.
            FileStepFailed: A file could not be read locally or written remotely.
            CommandStepFailed: A command failed; names its 1-based position.
        """
        vm_id = spec.vm_id
        log = logger.bind(component="provision", vm_id=vm_id)
        digest = spec.fingerprint()
        log.info("Provisioning VM {vm_id}", vm_id=vm_id)

        credentials = await self._client.get_ssh_key(vm_id)
        async with self._opener(vm_id, credentials) as session:
            log.debug("Waiting for VM to be reachable via SSH")
            await session.wait_reachable(
                self._settings.reachable_timeout,
                interval=self._settings.reachable_interval,
                probe_timeout=self._settings.probe_timeout,
            )

            for i, f in enumerate(spec.files, 1):
                try:
                    match f:
                        case LocalFile(destination=dest, path=path):
                            log.debug(
                                "Uploading file {i}: {src} -> {dest}", i=i, src=path, dest=dest
                            )
                            await session.upload_file(path, dest)
                        case InlineContent(destination=dest, content=content):
                            log.debug(
                                "Writing inline content to {dest} ({n} bytes)",
                                dest=dest, n=len(content),
                            )
                            await session.write_file(dest, content)
                except TransportError as e:
                    raise FileStepFailed(vm_id, i, f.destination, e) from e

            outputs: list[CommandOutput] = []
            total = len(spec.commands)
            for i, command in enumerate(spec.commands, 1):
                log.info(
                    "Running command {i}/{total}: {cmd}",
                    i=i, total=total, cmd=truncate(command, 100),
                )
                try:
                    result = await session.run(command, timeout=self._settings.command_timeout)
                except (CommandFailed, CommandTimeout) as e:
                    output = truncate(e.stdout + e.stderr, OUTPUT_DIAGNOSTIC_LIMIT)
                    raise CommandStepFailed(
                        vm_id, i, truncate(command, COMMAND_PREVIEW), output, e.cause
                    ) from e
                except TransportError as e:
                    raise CommandStepFailed(
                        vm_id, i, truncate(command, COMMAND_PREVIEW), "", e.cause
                    ) from e
                log.debug("Command {i} output: {out}", i=i, out=truncate(result.stdout, 500))
                outputs.append(CommandOutput(i, command, result.stdout, result.stderr))

        log.info("VM provisioning complete ({fp})", fp=digest)
        return ProvisionResult(vm_id, digest, tuple(outputs))

    async def apply(self, spec: ProvisionSpec, previous: str | None = None) -> ProvisionResult:
        """Provision only if the fingerprint differs from ``previous``.

        An unchanged fingerprint makes no remote call at all.
        """
        digest = spec.fingerprint()
        if previous is not None and previous == digest:
            logger.bind(component="provision", vm_id=spec.vm_id).debug(
                "Fingerprint {fp} unchanged, nothing to do", fp=digest
            )
            return ProvisionResult(spec.vm_id, digest, ran=False)
        return await self.provision(spec)
