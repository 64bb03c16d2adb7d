from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import aiohttp
from loguru import logger

# ─── Errors ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class HttpError(Exception):
    status: int
    body: str

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.body}"


# ─── Auth ────────────────────────────────────────────────────────────


@runtime_checkable
class Auth(Protocol):
    def headers(self) -> dict[str, str]: ...


class BearerAuth:
    def __init__(self, token: str) -> None:
        self._token = token

    def headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    def __repr__(self) -> str:
        return "BearerAuth(token=***)"


# ─── Client ──────────────────────────────────────────────────────────


class HttpClient:
    """Thin JSON-over-HTTP client. One request per call, no retries."""

    def __init__(
        self,
        base_url: str,
        auth: Auth | None = None,
        *,
        timeout: float = 300,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._default_headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            **(default_headers or {}),
        }
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def _build_headers(self) -> dict[str, str]:
        headers = dict(self._default_headers)
        if self._auth:
            headers.update(self._auth.headers())
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        session = await self._ensure_session()
        self._log.debug("{method} {path}", method=method, path=path)

        try:
            async with session.request(
                method, self._url(path), headers=self._build_headers(), json=json, params=params
            ) as resp:
                return await self._parse(resp)
        except aiohttp.ClientResponseError as e:
            raise HttpError(status=e.status, body=e.message) from e
        except aiohttp.ClientError as e:
            raise HttpError(status=0, body=str(e)) from e
        except TimeoutError as e:
            raise HttpError(status=0, body=f"request timed out: {method} {path}") from e

    async def _parse(self, resp: aiohttp.ClientResponse) -> Any:
        if resp.status < 200 or resp.status >= 300:
            body = await resp.text()
            self._log.warning(
                "HTTP {status} from {url}: {body}",
                status=resp.status, url=str(resp.url), body=body[:500],
            )
            raise HttpError(status=resp.status, body=body)
        body = await resp.read()
        if not body:
            return None
        try:
            return await resp.json(content_type=None)
        except ValueError as e:
            raise HttpError(status=resp.status, body=f"invalid JSON body: {body[:200]!r}") from e

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def close(self) -> None:
        if self._session and not self._session.closed:
            self._log.debug("Closing HTTP session")
            await self._session.close()

    async def __aenter__(self) -> HttpClient:
        await self._ensure_session()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
