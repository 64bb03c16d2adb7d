"""Domain model: VMs, images, lineage edges and operation outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from verskit.types import VMConfigPayload, VMResponse

type VMState = Literal["booting", "running", "paused", "deleted"]

RUNNING: VMState = "running"


# =============================================================================
# Lineage edges
# =============================================================================


@dataclass(frozen=True, slots=True)
class Fresh:
    """VM created from scratch (root of a lineage tree)."""


@dataclass(frozen=True, slots=True)
class RestoredFrom:
    image_id: str


@dataclass(frozen=True, slots=True)
class BranchedFrom:
    vm_id: str


type Origin = Fresh | RestoredFrom | BranchedFrom


# =============================================================================
# Nodes
# =============================================================================


@dataclass(frozen=True, slots=True)
class VM:
    """A remote compute instance.

    ``origin`` is only known for VMs created through verskit; VMs read
    back from the API list carry ``None``.
    """

    id: str
    state: str = "unknown"
    created_at: str = ""
    origin: Origin | None = None

    @classmethod
    def from_response(cls, data: VMResponse, origin: Origin | None = None) -> VM:
        return cls(
            id=data["vm_id"],
            state=data.get("state", "unknown"),
            created_at=data.get("created_at", ""),
            origin=origin,
        )


@dataclass(frozen=True, slots=True)
class Image:
    """Immutable snapshot (commit) of a VM. Never mutated or deleted."""

    id: str
    source_vm_id: str
    keep_paused: bool = False


@dataclass(frozen=True, slots=True)
class VMConfig:
    vcpu_count: int = 1
    mem_size_mib: int = 2048
    fs_size_mib: int = 4096

    def to_payload(self) -> VMConfigPayload:
        return {
            "vcpu_count": self.vcpu_count,
            "mem_size_mib": self.mem_size_mib,
            "fs_size_mib": self.fs_size_mib,
        }


@dataclass(frozen=True, slots=True)
class SSHCredentials:
    port: int
    private_key: str = field(repr=False)


# =============================================================================
# Outcomes
# =============================================================================


@dataclass(frozen=True, slots=True)
class Advisory:
    """A failure in a best-effort step, downgraded so the operation still succeeds."""

    step: str
    target: str
    message: str

    def __str__(self) -> str:
        return f"{self.step} ({self.target}): {self.message}"


@dataclass(frozen=True, slots=True)
class Outcome[T]:
    """Successful result of an operation plus any advisory failures."""

    value: T
    advisories: tuple[Advisory, ...] = ()

    @property
    def clean(self) -> bool:
        return not self.advisories
