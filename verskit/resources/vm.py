"""VM-producing resources: fresh VMs, restored VMs and branched VMs."""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

from loguru import logger

from verskit.exceptions import LifecycleError, ResourceGone, VersError
from verskit.infra.ssh import vm_host
from verskit.lineage import SnapshotCoordinator
from verskit.model import VM, Advisory, Fresh, Outcome
from verskit.wait import wait_for_running

from .records import BranchDeclaration, RestoreDeclaration, VMDeclaration, VMRecord

if TYPE_CHECKING:
    from verskit.client import VersClient


class _VMBacked:
    """Read/delete shared by every resource whose record is a VM."""

    kind = "vm"

    def __init__(self, client: VersClient) -> None:
        self._client = client
        self._log = logger.bind(component="resources", resource=self.kind)

    async def _with_key(self, vm: VM, advisories: list[Advisory]) -> Outcome[VMRecord]:
        record = VMRecord(
            id=vm.id,
            state=vm.state,
            created_at=vm.created_at,
            ssh_host=vm_host(vm.id, self._client.config.host_suffix),
            origin=vm.origin,
        )
        try:
            credentials = await self._client.get_ssh_key(vm.id)
        except VersError as e:
            self._log.warning("Failed to fetch SSH key for {vm_id}: {err}", vm_id=vm.id, err=e)
            advisories.append(Advisory("get_ssh_key", vm.id, str(e)))
        else:
            record = replace(record, ssh_private_key=credentials.private_key)
        return Outcome(record, tuple(advisories))

    async def read(self, record: VMRecord) -> VMRecord | None:
        """Refresh state; ``None`` means the VM is gone and the record should be dropped."""
        vm = await self._client.get_vm(record.id)
        if vm is None:
            self._log.info("VM {vm_id} no longer exists", vm_id=record.id)
            return None
        return replace(record, state=vm.state, created_at=vm.created_at or record.created_at)

    async def delete(self, record: VMRecord) -> None:
        self._log.info("Deleting VM {vm_id}", vm_id=record.id)
        try:
            await self._client.delete_vm(record.id)
        except ResourceGone:
            self._log.debug("VM {vm_id} already gone", vm_id=record.id)


class VMResource(_VMBacked):
    """A VM created from scratch."""

    kind = "vm"

    def __init__(self, client: VersClient, *, boot_timeout: float | None = None) -> None:
        super().__init__(client)
        self._boot_timeout = boot_timeout

    async def create(self, declaration: VMDeclaration) -> Outcome[VMRecord]:
        settings = self._client.config
        vm_id = await self._client.create_vm(declaration.config, wait_boot=declaration.wait_boot)
        self._log.info("Created VM {vm_id}", vm_id=vm_id)
        advisories: list[Advisory] = []
        vm: VM | None = None

        if declaration.wait_boot:
            try:
                vm = await wait_for_running(
                    self._client,
                    vm_id,
                    timeout=self._boot_timeout or settings.boot_timeout,
                    interval=settings.boot_interval,
                )
            except LifecycleError as e:
                self._log.warning("VM {vm_id} may not be fully booted: {err}", vm_id=vm_id, err=e)
                advisories.append(Advisory("wait_for_running", vm_id, str(e)))

        if vm is None:
            try:
                vm = await self._client.get_vm(vm_id)
            except VersError as e:
                self._log.warning("Failed to read VM state after creation: {err}", err=e)
                advisories.append(Advisory("read_state", vm_id, str(e)))

        vm = VM(vm_id, vm.state, vm.created_at, Fresh()) if vm else VM(vm_id, origin=Fresh())
        return await self._with_key(vm, advisories)

    async def update(self, declaration: VMDeclaration, record: VMRecord) -> Outcome[VMRecord]:
        """Sizing changes need a new VM; in place there is nothing to change."""
        return Outcome(record)


class RestoreResource(_VMBacked):
    """A VM restored from a commit."""

    kind = "restore"

    def __init__(self, client: VersClient, coordinator: SnapshotCoordinator | None = None) -> None:
        super().__init__(client)
        self._coordinator = coordinator or SnapshotCoordinator(client)

    async def create(self, declaration: RestoreDeclaration) -> Outcome[VMRecord]:
        outcome = await self._coordinator.restore(declaration.commit_id)
        return await self._with_key(outcome.value, list(outcome.advisories))

    async def update(self, declaration: RestoreDeclaration, record: VMRecord) -> Outcome[VMRecord]:
        return Outcome(record)


class BranchResource(_VMBacked):
    """A copy-on-write clone of a running VM."""

    kind = "branch"

    def __init__(self, client: VersClient, coordinator: SnapshotCoordinator | None = None) -> None:
        super().__init__(client)
        self._coordinator = coordinator or SnapshotCoordinator(client)

    async def create(self, declaration: BranchDeclaration) -> Outcome[VMRecord]:
        outcome = await self._coordinator.branch(declaration.source_vm_id)
        return await self._with_key(outcome.value, list(outcome.advisories))

    async def update(self, declaration: BranchDeclaration, record: VMRecord) -> Outcome[VMRecord]:
        return Outcome(record)
