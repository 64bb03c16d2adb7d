from __future__ import annotations

import socket

import pytest

from tests.fakes import FakeOpener, FakeVersAPI, make_settings
from verskit.config import Vers


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture(autouse=True)
def _no_vers_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("VERS_API_KEY", raising=False)
    monkeypatch.delenv("VERS_BASE_URL", raising=False)


@pytest.fixture
def settings() -> Vers:
    return make_settings()


@pytest.fixture
def api(settings: Vers) -> FakeVersAPI:
    return FakeVersAPI(settings)


@pytest.fixture
def opener() -> FakeOpener:
    return FakeOpener()
