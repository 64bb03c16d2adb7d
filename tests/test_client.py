from __future__ import annotations

from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from verskit.client import VersClient
from verskit.config import Vers
from verskit.exceptions import ConfigurationError, ResourceGone, VersAPIError
from verskit.model import VMConfig

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]

TOKEN = "secret-token"


class VersStub:
    """Minimal Vers API: records every request, answers from ``vms``."""

    def __init__(self) -> None:
        self.requests: list[dict[str, Any]] = []
        self.vms: dict[str, dict[str, Any]] = {
            "vm-a": {"vm_id": "vm-a", "state": "running", "created_at": "2026-01-01T00:00:00Z"},
        }
        self.branch_shape = "single"
        self.fail_with: int | None = None

    def app(self) -> web.Application:
        app = web.Application(middlewares=[self._record])
        app.router.add_get("/api/v1/vms", self.list_vms)
        app.router.add_post("/api/v1/vm/new_root", self.new_root)
        app.router.add_post("/api/v1/vm/from_commit", self.from_commit)
        app.router.add_delete("/api/v1/vm/{vm_id}", self.delete)
        app.router.add_post("/api/v1/vm/{vm_id}/branch", self.branch)
        app.router.add_post("/api/v1/vm/{vm_id}/commit", self.commit)
        app.router.add_patch("/api/v1/vm/{vm_id}/state", self.state)
        app.router.add_get("/api/v1/vm/{vm_id}/ssh_key", self.ssh_key)
        return app

    @web.middleware
    async def _record(self, request: web.Request, handler):
        if request.headers.get("Authorization") != f"Bearer {TOKEN}":
            return web.Response(status=401, text="unauthorized")
        body = await request.json() if request.can_read_body else None
        self.requests.append(
            {"method": request.method, "path": request.path, "query": dict(request.query), "body": body}
        )
        if self.fail_with is not None:
            return web.Response(status=self.fail_with, text="boom")
        return await handler(request)

    def _vm(self, request: web.Request) -> dict[str, Any]:
        vm_id = request.match_info["vm_id"]
        if vm_id not in self.vms:
            raise web.HTTPNotFound(text="vm not found")
        return self.vms[vm_id]

    async def list_vms(self, _: web.Request) -> web.Response:
        return web.json_response(list(self.vms.values()))

    async def new_root(self, _: web.Request) -> web.Response:
        self.vms["vm-new"] = {"vm_id": "vm-new", "state": "booting", "created_at": ""}
        return web.json_response({"vm_id": "vm-new"})

    async def from_commit(self, _: web.Request) -> web.Response:
        return web.json_response({"vm_id": "vm-restored"})

    async def delete(self, request: web.Request) -> web.Response:
        vm = self._vm(request)
        del self.vms[vm["vm_id"]]
        return web.Response(status=200, body=b"")

    async def branch(self, request: web.Request) -> web.Response:
        self._vm(request)
        match self.branch_shape:
            case "single":
                return web.json_response({"vm_id": "vm-branch"})
            case "list":
                return web.json_response({"vms": [{"vm_id": "vm-branch-1"}]})
            case _:
                return web.json_response({"unexpected": True})

    async def commit(self, request: web.Request) -> web.Response:
        self._vm(request)
        return web.json_response({"commit_id": f"commit-{len(self.requests)}"})

    async def state(self, request: web.Request) -> web.Response:
        vm = self._vm(request)
        vm["state"] = (await request.json())["state"]
        return web.Response(status=200, body=b"")

    async def ssh_key(self, request: web.Request) -> web.Response:
        self._vm(request)
        return web.json_response({"ssh_port": 22, "ssh_private_key": "KEY"})


@pytest.fixture
def stub() -> VersStub:
    return VersStub()


@pytest.fixture
async def client(stub: VersStub):
    srv = TestServer(stub.app())
    await srv.start_server()
    settings = Vers(api_key=TOKEN, base_url=f"http://{srv.host}:{srv.port}/api/v1")
    async with VersClient(settings) as c:
        yield c
    await srv.close()


# ─── Configuration ───────────────────────────────────────────────────


def test_missing_api_key_is_configuration_error():
    with pytest.raises(ConfigurationError, match="VERS_API_KEY"):
        VersClient(Vers())


def test_api_key_from_environment(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("VERS_API_KEY", "from-env")
    monkeypatch.setenv("VERS_BASE_URL", "http://example.invalid")
    c = VersClient()
    assert c.config.api_key_resolved == "from-env"
    assert c.config.base_url_resolved == "http://example.invalid"


# ─── VMs ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_list_vms(client: VersClient):
    vms = await client.list_vms()
    assert [vm.id for vm in vms] == ["vm-a"]
    assert vms[0].state == "running"
    assert vms[0].created_at == "2026-01-01T00:00:00Z"


@pytest.mark.asyncio
async def test_get_vm_absent_is_none(client: VersClient):
    assert await client.get_vm("vm-zzz") is None
    assert (await client.get_vm("vm-a")).state == "running"


@pytest.mark.asyncio
async def test_create_vm_sends_config_and_wait_boot(client: VersClient, stub: VersStub):
    vm_id = await client.create_vm(VMConfig(vcpu_count=2, mem_size_mib=1024), wait_boot=True)
    assert vm_id == "vm-new"
    request = stub.requests[-1]
    assert request["path"] == "/api/v1/vm/new_root"
    assert request["query"] == {"wait_boot": "true"}
    assert request["body"] == {
        "vm_config": {"vcpu_count": 2, "mem_size_mib": 1024, "fs_size_mib": 4096}
    }


@pytest.mark.asyncio
async def test_create_vm_without_wait_boot_sends_no_query(client: VersClient, stub: VersStub):
    await client.create_vm(VMConfig())
    assert stub.requests[-1]["query"] == {}


@pytest.mark.asyncio
async def test_delete_vm(client: VersClient, stub: VersStub):
    await client.delete_vm("vm-a")
    assert "vm-a" not in stub.vms


@pytest.mark.asyncio
async def test_delete_missing_vm_is_resource_gone(client: VersClient):
    with pytest.raises(ResourceGone) as exc_info:
        await client.delete_vm("vm-zzz")
    assert exc_info.value.target == "vm-zzz"


@pytest.mark.asyncio
@pytest.mark.parametrize(("shape", "expected"), [("single", "vm-branch"), ("list", "vm-branch-1")])
async def test_branch_accepts_both_response_shapes(
    client: VersClient, stub: VersStub, shape: str, expected: str
):
    stub.branch_shape = shape
    assert await client.branch_vm("vm-a") == expected


@pytest.mark.asyncio
async def test_branch_unexpected_shape_is_api_error(client: VersClient, stub: VersStub):
    stub.branch_shape = "other"
    with pytest.raises(VersAPIError, match="unexpected branch response"):
        await client.branch_vm("vm-a")


@pytest.mark.asyncio
async def test_commit_keep_paused(client: VersClient, stub: VersStub):
    commit_id = await client.commit_vm("vm-a", keep_paused=True)
    assert commit_id.startswith("commit-")
    assert stub.requests[-1]["query"] == {"keep_paused": "true"}


@pytest.mark.asyncio
async def test_commit_twice_yields_distinct_ids(client: VersClient):
    first = await client.commit_vm("vm-a")
    second = await client.commit_vm("vm-a")
    assert first != second


@pytest.mark.asyncio
async def test_restore_sends_commit_id(client: VersClient, stub: VersStub):
    assert await client.restore_vm("commit-1") == "vm-restored"
    assert stub.requests[-1]["body"] == {"commit_id": "commit-1"}


@pytest.mark.asyncio
async def test_update_vm_state(client: VersClient, stub: VersStub):
    await client.update_vm_state("vm-a", "paused")
    assert stub.vms["vm-a"]["state"] == "paused"


# ─── Credentials ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_get_ssh_key(client: VersClient):
    creds = await client.get_ssh_key("vm-a")
    assert creds.port == 22
    assert creds.private_key == "KEY"
    assert "KEY" not in repr(creds)


@pytest.mark.asyncio
async def test_get_ssh_key_for_missing_vm_is_resource_gone(client: VersClient):
    with pytest.raises(ResourceGone):
        await client.get_ssh_key("vm-zzz")


# ─── Errors ──────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_server_error_is_api_error(client: VersClient, stub: VersStub):
    stub.fail_with = 500
    with pytest.raises(VersAPIError) as exc_info:
        await client.list_vms()
    assert exc_info.value.status == 500
    assert exc_info.value.path == "/vms"


@pytest.mark.asyncio
async def test_404_on_vm_scoped_route_only(client: VersClient, stub: VersStub):
    stub.fail_with = 404
    with pytest.raises(VersAPIError) as exc_info:
        await client.restore_vm("commit-x")
    assert not isinstance(exc_info.value, ResourceGone)
    with pytest.raises(ResourceGone):
        await client.commit_vm("vm-a")


@pytest.mark.asyncio
async def test_list_entry_without_vm_id_is_api_error(client: VersClient, stub: VersStub):
    stub.vms["broken"] = {"state": "running"}
    with pytest.raises(VersAPIError) as exc_info:
        await client.list_vms()
    assert exc_info.value.status == 200
    assert "malformed VM entry" in exc_info.value.cause
