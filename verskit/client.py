"""Async HTTP client for the Vers VM-lifecycle API (vers.sh).

Covers VM lifecycle (create, list, delete, branch, commit, restore,
state) and SSH key retrieval. Calls are plain request/response; nothing
here retries.
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from verskit.config import Vers
from verskit.exceptions import ResourceGone, VersAPIError
from verskit.infra.http import BearerAuth, HttpClient, HttpError
from verskit.model import VM, SSHCredentials, VMConfig

from .types import (
    BranchResponse,
    CommitResponse,
    NewVMResponse,
    SSHKeyResponse,
    VMResponse,
)


class VersClient:
    """Async client for the Vers API.

    Example:
        >>> async with VersClient(Vers(api_key="...")) as client:
        ...     vm_id = await client.create_vm(VMConfig(vcpu_count=2))
        ...     commit_id = await client.commit_vm(vm_id, keep_paused=True)
    """

    def __init__(self, config: Vers | None = None) -> None:
        self.config = config or Vers()
        self._http = HttpClient(
            self.config.base_url_resolved,
            BearerAuth(self.config.api_key_resolved),
            timeout=self.config.request_timeout,
        )
        self._log = logger.bind(component="client")

    async def __aenter__(self) -> VersClient:
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()

    async def _request(
        self,
        method: str,
        path: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        *,
        vm_id: str | None = None,
    ) -> Any:
        try:
            return await self._http.request(method, path, json=json, params=params)
        except HttpError as e:
            self._log.warning(
                "API error {method} {path}: {status}",
                method=method, path=path, status=e.status,
            )
            if e.status == 404 and vm_id is not None:
                raise ResourceGone(f"{method} {path}", vm_id, "VM no longer exists") from e
            raise VersAPIError(method, path, e.status, e.body) from e

    @staticmethod
    def _field(data: Any, key: str, method: str, path: str) -> str:
        value = data.get(key) if isinstance(data, dict) else None
        if not value:
            raise VersAPIError(method, path, 200, f"unexpected response: {data!r}")
        return str(value)

    # =========================================================================
    # VMs
    # =========================================================================

    async def list_vms(self) -> list[VM]:
        """All VMs owned by the authenticated user."""
        result: list[VMResponse] | None = await self._request("GET", "/vms")
        if result is not None and not isinstance(result, list):
            raise VersAPIError("GET", "/vms", 200, f"expected a JSON list, got {result!r}")
        for item in result or []:
            if not isinstance(item, dict) or not item.get("vm_id"):
                raise VersAPIError("GET", "/vms", 200, f"malformed VM entry: {item!r}")
        return [VM.from_response(item) for item in result or []]

    async def get_vm(self, vm_id: str) -> VM | None:
        """VM by ID, or None when it does not exist."""
        for vm in await self.list_vms():
            if vm.id == vm_id:
                return vm
        return None

    async def create_vm(self, config: VMConfig, wait_boot: bool = False) -> str:
        """Create a root VM and return its ID."""
        params = {"wait_boot": "true"} if wait_boot else None
        self._log.debug("Creating VM {cfg}", cfg=config)
        result: NewVMResponse = await self._request(
            "POST", "/vm/new_root", {"vm_config": config.to_payload()}, params
        )
        return self._field(result, "vm_id", "POST", "/vm/new_root")

    async def delete_vm(self, vm_id: str) -> None:
        await self._request("DELETE", f"/vm/{vm_id}", vm_id=vm_id)

    async def branch_vm(self, vm_id: str) -> str:
        """Copy-on-write clone of a running VM. Returns the new VM ID."""
        path = f"/vm/{vm_id}/branch"
        result: BranchResponse | None = await self._request("POST", path, vm_id=vm_id)
        if isinstance(result, dict):
            match result:
                case {"vms": [{"vm_id": str(new_id)}, *_]} if new_id:
                    return new_id
                case {"vm_id": str(new_id)} if new_id:
                    return new_id
        raise VersAPIError("POST", path, 200, f"unexpected branch response: {result!r}")

    async def commit_vm(self, vm_id: str, keep_paused: bool = False) -> str:
        """Snapshot a VM. Not idempotent: every call yields a new commit ID."""
        path = f"/vm/{vm_id}/commit"
        params = {"keep_paused": "true"} if keep_paused else None
        result: CommitResponse = await self._request("POST", path, None, params, vm_id=vm_id)
        return self._field(result, "commit_id", "POST", path)

    async def restore_vm(self, commit_id: str) -> str:
        """Create a new VM from a commit. Returns the new VM ID."""
        result: NewVMResponse = await self._request(
            "POST", "/vm/from_commit", {"commit_id": commit_id}
        )
        return self._field(result, "vm_id", "POST", "/vm/from_commit")

    async def update_vm_state(self, vm_id: str, state: str) -> None:
        """Pause or resume a VM (``state`` is "paused" or "running")."""
        await self._request("PATCH", f"/vm/{vm_id}/state", {"state": state}, vm_id=vm_id)

    # =========================================================================
    # Credentials
    # =========================================================================

    async def get_ssh_key(self, vm_id: str) -> SSHCredentials:
        path = f"/vm/{vm_id}/ssh_key"
        result: SSHKeyResponse = await self._request("GET", path, vm_id=vm_id)
        key = self._field(result, "ssh_private_key", "GET", path)
        return SSHCredentials(port=int(result.get("ssh_port") or 0), private_key=key)
