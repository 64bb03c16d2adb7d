"""Vers API payload types.

TypedDicts for API responses - no conversion needed.
"""

from __future__ import annotations

from typing import NotRequired, TypedDict


class VMResponse(TypedDict):
    """VM entry from GET /vms."""

    vm_id: str
    state: str
    created_at: str
    owner_id: NotRequired[str]


class NewVMResponse(TypedDict):
    """Returned by create, restore and (one shape of) branch."""

    vm_id: str


class BranchResponse(TypedDict, total=False):
    """Branch returns either ``{vm_id}`` or ``{vms: [{vm_id}]}``."""

    vm_id: str
    vms: list[NewVMResponse]


class CommitResponse(TypedDict):
    commit_id: str


class SSHKeyResponse(TypedDict):
    ssh_port: int
    ssh_private_key: str


class VMConfigPayload(TypedDict, total=False):
    vcpu_count: int
    mem_size_mib: int
    fs_size_mib: int
