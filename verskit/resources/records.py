"""Declarations (desired state) and records (persisted state) per resource."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from verskit.model import Origin, VMConfig


# =============================================================================
# Declarations
# =============================================================================


@dataclass(frozen=True, slots=True)
class VMDeclaration:
    vcpu_count: int = 1
    mem_size_mib: int = 2048
    fs_size_mib: int = 4096
    wait_boot: bool = True

    @property
    def config(self) -> VMConfig:
        return VMConfig(self.vcpu_count, self.mem_size_mib, self.fs_size_mib)


@dataclass(frozen=True, slots=True)
class ProvisionDeclaration:
    """Target VM plus raw ``{destination, source?, content?}`` file entries."""

    vm_id: str
    files: Sequence[Mapping[str, Any]] = ()
    commands: Sequence[str] = ()
    triggers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class CommitDeclaration:
    vm_id: str
    keep_paused: bool = False
    triggers: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RestoreDeclaration:
    commit_id: str


@dataclass(frozen=True, slots=True)
class BranchDeclaration:
    source_vm_id: str


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True, slots=True)
class VMRecord:
    """State of a VM-producing resource.

    ``ssh_private_key`` is sensitive and never shown in ``repr``.
    """

    id: str
    state: str = "unknown"
    created_at: str = ""
    ssh_host: str = ""
    ssh_private_key: str = field(default="", repr=False)
    origin: Origin | None = None


@dataclass(frozen=True, slots=True)
class ProvisionRecord:
    """``id`` is the fingerprint of the last applied provisioning unit."""

    id: str
    vm_id: str


@dataclass(frozen=True, slots=True)
class CommitRecord:
    id: str
    vm_id: str
    keep_paused: bool = False
    triggers: Mapping[str, str] = field(default_factory=dict)
