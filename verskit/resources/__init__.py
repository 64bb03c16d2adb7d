"""Declared resources: one handler per declaration kind.

Each handler exposes ``create``, ``read``, ``update`` and ``delete`` over
immutable records; persisting those records is the caller's job.

Example:
    from verskit.resources import VMDeclaration, VMResource

    async with VersClient() as client:
        outcome = await VMResource(client).create(VMDeclaration(vcpu_count=2))
        record = outcome.value
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from verskit.resources.commit import CommitResource
from verskit.resources.provision import ProvisionResource
from verskit.resources.records import (
    BranchDeclaration,
    CommitDeclaration,
    CommitRecord,
    ProvisionDeclaration,
    ProvisionRecord,
    RestoreDeclaration,
    VMDeclaration,
    VMRecord,
)
from verskit.resources.vm import BranchResource, RestoreResource, VMResource

if TYPE_CHECKING:
    from verskit.client import VersClient
    from verskit.model import VM


async def list_vms(client: VersClient) -> tuple[VM, ...]:
    """Data source: every VM visible to the account."""
    return tuple(await client.list_vms())


__all__ = [
    "BranchDeclaration",
    "BranchResource",
    "CommitDeclaration",
    "CommitRecord",
    "CommitResource",
    "ProvisionDeclaration",
    "ProvisionRecord",
    "ProvisionResource",
    "RestoreDeclaration",
    "RestoreResource",
    "VMDeclaration",
    "VMRecord",
    "VMResource",
    "list_vms",
]
