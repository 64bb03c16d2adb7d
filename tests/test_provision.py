from __future__ import annotations

from pathlib import Path

import pytest

from tests.fakes import FakeOpener, FakeVersAPI, FakeSession
from verskit.exceptions import (
    CommandStepFailed,
    ConfigurationError,
    FileStepFailed,
    LocalReadError,
    ResourceGone,
    Unreachable,
)
from verskit.infra.protocols import CommandResult
from verskit.provision import (
    InlineContent,
    LocalFile,
    Provisioner,
    ProvisionSpec,
    file_spec,
    fingerprint,
    parse_files,
)

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


def spec(**overrides) -> ProvisionSpec:
    defaults = dict(
        vm_id="vm-1",
        files=(InlineContent("/tmp/a.sh", b"echo hi"),),
        commands=("chmod +x /tmp/a.sh", "/tmp/a.sh"),
        triggers={"version": "1", "env": "dev"},
    )
    return ProvisionSpec(**{**defaults, **overrides})


# ─── File specifications ─────────────────────────────────────────────


class TestFileSpec:
    def test_inline_content(self):
        assert file_spec("/tmp/a", content="hi") == InlineContent("/tmp/a", b"hi")

    def test_local_file(self, tmp_path: Path):
        assert file_spec("/tmp/a", source=tmp_path / "x") == LocalFile("/tmp/a", tmp_path / "x")

    def test_both_set_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="mutually exclusive"):
            file_spec("/tmp/a", source="x.sh", content="echo")

    def test_neither_set_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="required"):
            file_spec("/tmp/a")

    def test_empty_strings_count_as_unset(self):
        assert file_spec("/tmp/a", source="", content="x") == InlineContent("/tmp/a", b"x")
        with pytest.raises(ConfigurationError):
            file_spec("/tmp/a", source="", content="")

    def test_parse_files_names_the_bad_entry(self):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_files([
                {"destination": "/a", "content": "x"},
                {"destination": "/b", "source": "b.sh", "content": "y"},
            ])
        assert exc_info.value.target == "file 2"

    def test_content_not_in_repr(self):
        assert "secret" not in repr(InlineContent("/a", b"secret"))


# ─── Fingerprint ─────────────────────────────────────────────────────


class TestFingerprint:
    def test_shape(self):
        digest = fingerprint(spec())
        assert len(digest) == 16
        int(digest, 16)

    def test_deterministic(self):
        assert fingerprint(spec()) == fingerprint(spec())

    def test_trigger_order_does_not_matter(self):
        a = spec(triggers={"version": "1", "env": "dev"})
        b = spec(triggers={"env": "dev", "version": "1"})
        assert fingerprint(a) == fingerprint(b)

    @pytest.mark.parametrize(
        "change",
        [
            {"vm_id": "vm-2"},
            {"files": (InlineContent("/tmp/a.sh", b"echo bye"),)},
            {"files": (InlineContent("/tmp/b.sh", b"echo hi"),)},
            {"commands": ("chmod +x /tmp/a.sh", "/tmp/a.sh --verbose")},
            {"commands": ("/tmp/a.sh", "chmod +x /tmp/a.sh")},
            {"triggers": {"version": "2", "env": "dev"}},
            {"triggers": {"version": "1"}},
        ],
        ids=["vm", "content", "destination", "command", "command-order", "trigger", "trigger-removed"],
    )
    def test_any_change_moves_fingerprint(self, change):
        assert fingerprint(spec(**change)) != fingerprint(spec())

    def test_local_file_hashes_content(self, tmp_path: Path):
        source = tmp_path / "a.sh"
        source.write_text("echo hi")
        before = fingerprint(spec(files=(LocalFile("/tmp/a.sh", source),)))
        source.write_text("echo bye")
        after = fingerprint(spec(files=(LocalFile("/tmp/a.sh", source),)))
        assert before != after

    def test_unreadable_local_file_falls_back_to_path(self, tmp_path: Path):
        missing = LocalFile("/tmp/a.sh", tmp_path / "missing.sh")
        assert missing.identity() == f"path:{tmp_path / 'missing.sh'}"
        assert fingerprint(spec(files=(missing,))) == fingerprint(spec(files=(missing,)))


# ─── Provisioning runs ───────────────────────────────────────────────


def run_scripts(command: str, session: FakeSession) -> CommandResult:
    """Execute ``echo`` scripts written to the fake filesystem; fail on ``false``."""
    if command in session.files:
        lines = session.files[command].decode().splitlines()
        out = "".join(line.removeprefix("echo ").strip() + "\n" for line in lines)
        return CommandResult(0, out, "")
    if command.startswith("false"):
        return CommandResult(1, "some output", "it broke")
    return CommandResult(0, "", "")


@pytest.fixture
def provisioner(api: FakeVersAPI, opener: FakeOpener) -> Provisioner:
    opener.session_kwargs["handler"] = run_scripts
    return Provisioner(api, opener=opener)


class TestProvision:
    @pytest.mark.asyncio
    async def test_files_then_commands_in_order(
        self, provisioner: Provisioner, api: FakeVersAPI, opener: FakeOpener
    ):
        vm_id = api.spawn()
        result = await provisioner.provision(spec(vm_id=vm_id))

        assert result.fingerprint == fingerprint(spec(vm_id=vm_id))
        assert result.outputs[1].position == 2
        assert "hi" in result.outputs[1].stdout
        commands = opener.commands
        write = commands.index("base64 -d > /tmp/a.sh")
        assert write < commands.index("chmod +x /tmp/a.sh") < commands.index("/tmp/a.sh")
        assert opener.filesystems[vm_id]["/tmp/a.sh"] == b"echo hi"

    @pytest.mark.asyncio
    async def test_session_closed_and_fresh_credentials(
        self, provisioner: Provisioner, api: FakeVersAPI, opener: FakeOpener
    ):
        vm_id = api.spawn()
        await provisioner.provision(spec(vm_id=vm_id))
        await provisioner.provision(spec(vm_id=vm_id))
        assert api.count("get_ssh_key") == 2
        assert [s.closed for s in opener.sessions] == [True, True]

    @pytest.mark.asyncio
    async def test_stops_at_first_failed_command(
        self, provisioner: Provisioner, api: FakeVersAPI, opener: FakeOpener
    ):
        vm_id = api.spawn()
        with pytest.raises(CommandStepFailed) as exc_info:
            await provisioner.provision(
                spec(vm_id=vm_id, commands=("echo one", "false --step-two", "echo three"))
            )
        err = exc_info.value
        assert err.position == 2
        assert err.command == "false --step-two"
        assert "some output" in err.output
        assert "it broke" in err.cause
        assert "echo three" not in opener.commands
        assert opener.sessions[0].closed

    @pytest.mark.asyncio
    async def test_long_command_and_output_are_truncated(
        self, api: FakeVersAPI, opener: FakeOpener
    ):
        opener.session_kwargs["handler"] = lambda c, s: CommandResult(1, "x" * 5000, "")
        vm_id = api.spawn()
        with pytest.raises(CommandStepFailed) as exc_info:
            await Provisioner(api, opener=opener).provision(
                spec(vm_id=vm_id, files=(), commands=("true " + "a" * 200,))
            )
        assert len(exc_info.value.command) == 83
        assert len(exc_info.value.output) == 2003

    @pytest.mark.asyncio
    async def test_unreachable_is_fatal_and_runs_nothing(self, api: FakeVersAPI):
        opener = FakeOpener(unreachable_probes=None)
        vm_id = api.spawn()
        with pytest.raises(Unreachable):
            await Provisioner(api, opener=opener).provision(spec(vm_id=vm_id))
        assert set(opener.commands) == {"echo ready"}
        assert opener.sessions[0].closed

    @pytest.mark.asyncio
    async def test_missing_local_source_is_file_step_failure(
        self, provisioner: Provisioner, api: FakeVersAPI, opener: FakeOpener, tmp_path: Path
    ):
        vm_id = api.spawn()
        files = (
            InlineContent("/tmp/ok", b"ok"),
            LocalFile("/tmp/missing", tmp_path / "missing.sh"),
        )
        with pytest.raises(FileStepFailed) as exc_info:
            await provisioner.provision(spec(vm_id=vm_id, files=files))
        assert exc_info.value.index == 2
        assert exc_info.value.destination == "/tmp/missing"
        assert isinstance(exc_info.value.__cause__, LocalReadError)
        assert opener.filesystems[vm_id] == {"/tmp/ok": b"ok"}
        assert "chmod +x /tmp/a.sh" not in opener.commands

    @pytest.mark.asyncio
    async def test_gone_vm(self, provisioner: Provisioner, opener: FakeOpener):
        with pytest.raises(ResourceGone):
            await provisioner.provision(spec(vm_id="vm-ghost"))
        assert opener.sessions == []

    @pytest.mark.asyncio
    async def test_empty_unit_only_probes(
        self, provisioner: Provisioner, api: FakeVersAPI, opener: FakeOpener
    ):
        vm_id = api.spawn()
        result = await provisioner.provision(ProvisionSpec(vm_id))
        assert result.outputs == ()
        assert opener.commands == ["echo ready"]


class TestApply:
    @pytest.mark.asyncio
    async def test_unchanged_fingerprint_makes_no_remote_calls(
        self, provisioner: Provisioner, api: FakeVersAPI, opener: FakeOpener
    ):
        vm_id = api.spawn()
        first = await provisioner.apply(spec(vm_id=vm_id))
        calls, sessions = len(api.calls), len(opener.sessions)

        again = await provisioner.apply(spec(vm_id=vm_id), previous=first.fingerprint)

        assert not again.ran
        assert again.fingerprint == first.fingerprint
        assert len(api.calls) == calls
        assert len(opener.sessions) == sessions

    @pytest.mark.asyncio
    async def test_changed_trigger_reruns_everything(
        self, provisioner: Provisioner, api: FakeVersAPI, opener: FakeOpener
    ):
        vm_id = api.spawn()
        first = await provisioner.apply(spec(vm_id=vm_id))
        second = await provisioner.apply(
            spec(vm_id=vm_id, triggers={"version": "2", "env": "dev"}), previous=first.fingerprint
        )
        assert second.ran
        assert second.fingerprint != first.fingerprint
        assert opener.sessions[1].commands.count("chmod +x /tmp/a.sh") == 1
        assert "base64 -d > /tmp/a.sh" in opener.sessions[1].commands
