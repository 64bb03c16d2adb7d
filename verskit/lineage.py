"""Snapshot lineage: commit VMs into images, restore and branch new VMs.

``SnapshotCoordinator`` performs the remote operations; ``LineageGraph``
records the resulting VM/image forest when one is attached.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING

from loguru import logger

from verskit.config import Vers
from verskit.exceptions import LifecycleError, LineageError, VersError
from verskit.model import (
    VM,
    Advisory,
    BranchedFrom,
    Image,
    Outcome,
    RestoredFrom,
)
from verskit.wait import wait_for_running

if TYPE_CHECKING:
    from verskit.client import VersClient
    from verskit.infra.protocols import SessionOpener
    from verskit.model import Origin

FLUSH_COMMAND = "sync"

type Node = VM | Image


# =============================================================================
# Lineage graph
# =============================================================================


class LineageGraph:
    """Append-only forest of VMs and images.

    Every node has at most one parent: an image points at its source VM, a
    restored VM at its image, a branched VM at its source VM. Parents may
    be unknown to the graph (VMs created elsewhere). Nodes are never
    removed, and an insert that would close a cycle is rejected.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self._children: dict[str, list[str]] = {}

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes.values())

    def get(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def add_vm(self, vm: VM) -> None:
        self._add(vm.id, vm, _origin_parent(vm.origin))

    def add_image(self, image: Image) -> None:
        self._add(image.id, image, image.source_vm_id)

    def _add(self, node_id: str, node: Node, parent: str | None) -> None:
        if node_id in self._nodes:
            raise LineageError("add", node_id, "identifier already recorded")
        if parent is not None and node_id in self.ancestry(parent, include_self=True):
            raise LineageError("add", node_id, f"parent {parent} descends from it")
        self._nodes[node_id] = node
        if parent is not None:
            self._children.setdefault(parent, []).append(node_id)

    def parent_of(self, node_id: str) -> str | None:
        match self._nodes.get(node_id):
            case Image(source_vm_id=source):
                return source
            case VM(origin=origin):
                return _origin_parent(origin)
            case _:
                return None

    def ancestry(self, node_id: str, *, include_self: bool = False) -> list[str]:
        """Identifiers from ``node_id``'s parent up to the root, nearest first."""
        chain = [node_id] if include_self else []
        current = self.parent_of(node_id)
        while current is not None:
            chain.append(current)
            current = self.parent_of(current)
        return chain

    def children_of(self, node_id: str) -> list[str]:
        return list(self._children.get(node_id, ()))


def _origin_parent(origin: Origin | None) -> str | None:
    match origin:
        case RestoredFrom(image_id=image_id):
            return image_id
        case BranchedFrom(vm_id=vm_id):
            return vm_id
        case _:
            return None


# =============================================================================
# Coordinator
# =============================================================================


class SnapshotCoordinator:
    """Commit, restore and branch, with best-effort side steps.

    Mandatory remote calls (commit, restore, branch) raise on failure.
    The pre-commit flush, the boot wait after restore and the state read
    after restore/branch never fail the operation; their failures come
    back as ``Advisory`` entries on the ``Outcome``.

    Example:
        >>> coordinator = SnapshotCoordinator(client, graph=LineageGraph())
        >>> image = (await coordinator.commit(vm_id, keep_paused=True)).value
        >>> worker = (await coordinator.restore(image.id)).value
    """

    def __init__(
        self,
        client: VersClient,
        settings: Vers | None = None,
        *,
        opener: SessionOpener | None = None,
        graph: LineageGraph | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or getattr(client, "config", None) or Vers()
        self._opener = opener or self._settings.session_opener()
        self.graph = graph

    async def flush(self, vm_id: str) -> Advisory | None:
        """Run ``sync`` on the VM so buffered writes reach disk before capture.

        Returns an Advisory instead of raising when the VM cannot be reached
        (a paused VM has nothing in flight).
        """
        log = logger.bind(component="lineage", vm_id=vm_id)
        log.debug("Flushing filesystem buffers before commit")
        try:
            credentials = await self._client.get_ssh_key(vm_id)
        except VersError as e:
            log.warning("Could not get SSH key for pre-commit sync (skipping): {err}", err=e)
            return Advisory("flush", vm_id, f"credential retrieval failed: {e}")
        try:
            async with self._opener(vm_id, credentials) as session:
                await session.run(FLUSH_COMMAND, timeout=self._settings.flush_timeout)
        except VersError as e:
            log.warning("Pre-commit sync failed (VM may not be SSH-reachable): {err}", err=e)
            return Advisory("flush", vm_id, str(e))
        return None

    async def commit(self, vm_id: str, keep_paused: bool = False) -> Outcome[Image]:
        """Flush, then snapshot. Every call yields a new image.

        Raises:
            ResourceGone: The VM no longer exists.
            VersAPIError: The commit call failed.
        """
        advisories: list[Advisory] = []
        if advisory := await self.flush(vm_id):
            advisories.append(advisory)

        commit_id = await self._client.commit_vm(vm_id, keep_paused=keep_paused)
        image = Image(commit_id, vm_id, keep_paused)
        logger.bind(component="lineage", vm_id=vm_id).info(
            "Committed VM {vm_id} as {commit_id}", vm_id=vm_id, commit_id=commit_id
        )
        self._record(image)
        return Outcome(image, tuple(advisories))

    async def restore(self, image_id: str) -> Outcome[VM]:
        """Create a VM from an image and wait (advisory) for it to run.

        Raises:
            VersAPIError: The restore call failed.
        """
        vm_id = await self._client.restore_vm(image_id)
        log = logger.bind(component="lineage", vm_id=vm_id)
        log.info("Restored VM {vm_id} from {image_id}", vm_id=vm_id, image_id=image_id)
        origin = RestoredFrom(image_id)
        advisories: list[Advisory] = []

        try:
            vm = await wait_for_running(
                self._client,
                vm_id,
                timeout=self._settings.boot_timeout,
                interval=self._settings.boot_interval,
            )
            vm = VM(vm.id, vm.state, vm.created_at, origin)
        except LifecycleError as e:
            log.warning("VM restored but may not be fully booted: {err}", err=e)
            advisories.append(Advisory("wait_for_running", vm_id, str(e)))
            vm, advisory = await self._describe(vm_id, origin)
            if advisory:
                advisories.append(advisory)

        self._record(vm)
        return Outcome(vm, tuple(advisories))

    async def branch(self, vm_id: str) -> Outcome[VM]:
        """Copy-on-write clone of a running VM.

        Raises:
            ResourceGone: The source VM no longer exists.
            VersAPIError: The branch call failed.
        """
        new_id = await self._client.branch_vm(vm_id)
        logger.bind(component="lineage", vm_id=new_id).info(
            "Branched VM {new_id} from {vm_id}", new_id=new_id, vm_id=vm_id
        )
        vm, advisory = await self._describe(new_id, BranchedFrom(vm_id))
        self._record(vm)
        return Outcome(vm, (advisory,) if advisory else ())

    async def _describe(self, vm_id: str, origin: Origin) -> tuple[VM, Advisory | None]:
        try:
            current = await self._client.get_vm(vm_id)
        except VersError as e:
            logger.bind(component="lineage", vm_id=vm_id).warning(
                "Failed to read VM state: {err}", err=e
            )
            return VM(vm_id, origin=origin), Advisory("read_state", vm_id, str(e))
        if current is None:
            return VM(vm_id, origin=origin), Advisory("read_state", vm_id, "VM not listed yet")
        return VM(current.id, current.state, current.created_at, origin), None

    def _record(self, node: Node) -> None:
        if self.graph is None:
            return
        if isinstance(node, Image):
            self.graph.add_image(node)
        else:
            self.graph.add_vm(node)
