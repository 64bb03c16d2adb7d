"""Commits as a declared resource. Images are never deleted remotely."""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from verskit.lineage import SnapshotCoordinator
from verskit.model import Outcome

from .records import CommitDeclaration, CommitRecord

if TYPE_CHECKING:
    from verskit.client import VersClient


class CommitResource:
    def __init__(self, client: VersClient, coordinator: SnapshotCoordinator | None = None) -> None:
        self._coordinator = coordinator or SnapshotCoordinator(client)
        self._log = logger.bind(component="resources", resource="commit")

    async def create(self, declaration: CommitDeclaration) -> Outcome[CommitRecord]:
        outcome = await self._coordinator.commit(
            declaration.vm_id, keep_paused=declaration.keep_paused
        )
        record = CommitRecord(
            outcome.value.id,
            declaration.vm_id,
            declaration.keep_paused,
            dict(declaration.triggers),
        )
        return Outcome(record, outcome.advisories)

    async def update(
        self, declaration: CommitDeclaration, record: CommitRecord
    ) -> Outcome[CommitRecord]:
        """Commit again when the target, the pause flag or any trigger changed.

        The previous image stays where it is.
        """
        unchanged = (
            declaration.vm_id == record.vm_id
            and declaration.keep_paused == record.keep_paused
            and dict(declaration.triggers) == dict(record.triggers)
        )
        if unchanged:
            return Outcome(record)
        self._log.info("Re-committing VM {vm_id} (triggers changed)", vm_id=declaration.vm_id)
        return await self.create(declaration)

    async def read(self, record: CommitRecord) -> CommitRecord:
        return record

    async def delete(self, record: CommitRecord) -> None:
        self._log.info(
            "Removing commit {id} from state; the image is kept remotely", id=record.id
        )
