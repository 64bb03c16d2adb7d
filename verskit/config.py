"""TOML-based settings for the Vers API and the VM transport.

Loads ~/.verskit/config.toml (global) and verskit.toml (project),
merges them, and resolves the ``[vers]`` table into a ``Vers`` instance.
The API key and base URL fall back to VERS_API_KEY / VERS_BASE_URL.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Any

from verskit.exceptions import ConfigurationError

if TYPE_CHECKING:
    from verskit.infra.protocols import SessionOpener

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".verskit" / "config.toml"
PROJECT_CONFIG_NAME = "verskit.toml"
DEFAULT_BASE_URL = "https://api.vers.sh/api/v1"


@dataclass(frozen=True, slots=True)
class Vers:
    """Vers API and transport settings.

    Example:
        >>> from verskit import Vers
        >>> settings = Vers(api_key="...", reachable_timeout=300)

    Args:
        api_key: Bearer token. Falls back to VERS_API_KEY env var.
        base_url: API root. Falls back to VERS_BASE_URL, then the public endpoint.
        request_timeout: HTTP timeout in seconds. Create and commit are slow.
        ssh_user: Remote user for the execution channel.
        host_suffix: VM hostnames are ``{vm_id}.{host_suffix}``.
        tls_port: Port the TLS tunnel terminates on.
        connect_timeout: SSH handshake timeout.
        reachable_timeout: Bound on waiting for SSH before provisioning.
        reachable_interval: Delay between reachability probes.
        probe_timeout: Timeout of a single reachability probe.
        command_timeout: Timeout of each provisioning command.
        flush_timeout: Timeout of the pre-commit ``sync``.
        boot_timeout: Bound on waiting for a VM to report "running".
        boot_interval: Delay between VM state polls.
    """

    api_key: str | None = field(default=None, repr=False)
    base_url: str | None = None
    request_timeout: float = 300.0
    ssh_user: str = "root"
    host_suffix: str = "vm.vers.sh"
    tls_port: int = 443
    connect_timeout: float = 30.0
    reachable_timeout: float = 180.0
    reachable_interval: float = 3.0
    probe_timeout: float = 15.0
    command_timeout: float = 600.0
    flush_timeout: float = 120.0
    boot_timeout: float = 180.0
    boot_interval: float = 2.0

    @property
    def api_key_resolved(self) -> str:
        api_key = self.api_key or os.environ.get("VERS_API_KEY")
        if not api_key:
            raise ConfigurationError(
                "configure",
                "vers",
                "Missing API key. Set VERS_API_KEY environment variable or pass api_key to Vers()",
            )
        return api_key

    @property
    def base_url_resolved(self) -> str:
        return self.base_url or os.environ.get("VERS_BASE_URL") or DEFAULT_BASE_URL

    def session_opener(self) -> SessionOpener:
        """SessionOpener bound to these transport settings."""
        from verskit.infra.ssh import SSHSession

        return partial(
            SSHSession.open,
            user=self.ssh_user,
            host_suffix=self.host_suffix,
            tls_port=self.tls_port,
            connect_timeout=self.connect_timeout,
        )


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError("load_config", str(path), str(e)) from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("vers", {})
    return merged


def resolve_settings(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    **overrides: Any,
) -> Vers:
    """Build ``Vers`` from the merged config files, with keyword overrides on top."""
    config = load_config(project_dir=project_dir, global_path=global_path)
    raw = {**config["vers"], **overrides}

    known = {f.name for f in fields(Vers)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(
            "resolve_settings",
            "vers",
            f"Unknown setting(s): {', '.join(unknown)}. Valid: {', '.join(sorted(known))}",
        )
    return Vers(**raw)
