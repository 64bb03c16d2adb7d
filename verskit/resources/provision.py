"""Provisioning as a declared resource, keyed by its fingerprint."""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from verskit.model import Outcome
from verskit.provision import Provisioner, ProvisionSpec, parse_files

from .records import ProvisionDeclaration, ProvisionRecord

if TYPE_CHECKING:
    from verskit.client import VersClient


def to_spec(declaration: ProvisionDeclaration) -> ProvisionSpec:
    """Validate and convert. Raises ConfigurationError on a bad file entry."""
    return ProvisionSpec(
        vm_id=declaration.vm_id,
        files=parse_files(declaration.files),
        commands=tuple(declaration.commands),
        triggers=dict(declaration.triggers),
    )


class ProvisionResource:
    def __init__(self, client: VersClient, provisioner: Provisioner | None = None) -> None:
        self._client = client
        self._provisioner = provisioner or Provisioner(client)
        self._log = logger.bind(component="resources", resource="provision")

    async def create(self, declaration: ProvisionDeclaration) -> Outcome[ProvisionRecord]:
        result = await self._provisioner.provision(to_spec(declaration))
        return Outcome(ProvisionRecord(result.fingerprint, declaration.vm_id))

    async def update(
        self, declaration: ProvisionDeclaration, record: ProvisionRecord
    ) -> Outcome[ProvisionRecord]:
        """Re-run everything from the top if the fingerprint moved, else do nothing."""
        spec = to_spec(declaration)
        result = await self._provisioner.apply(spec, previous=record.id)
        if not result.ran:
            return Outcome(record)
        self._log.info(
            "Re-provisioned VM {vm_id} ({old} -> {new})",
            vm_id=spec.vm_id, old=record.id, new=result.fingerprint,
        )
        return Outcome(ProvisionRecord(result.fingerprint, spec.vm_id))

    async def read(self, record: ProvisionRecord) -> ProvisionRecord | None:
        if await self._client.get_vm(record.vm_id) is None:
            return None
        return record

    async def delete(self, record: ProvisionRecord) -> None:
        # Provisioning cannot be undone remotely.
        self._log.debug("Dropping provision record {id}", id=record.id)
