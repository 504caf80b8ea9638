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
        if self.status == 0:
            return f"HTTP request failed: {self.body}"
        return f"HTTP {self.status}: {self.body}"


# ─── Response ────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class Response[T]:
    status: int
    data: T
    headers: dict[str, str]


# ─── Auth ────────────────────────────────────────────────────────────


@runtime_checkable
class Auth(Protocol):
    def headers(self) -> dict[str, str]: ...


class TokenAuth:
    """Buildkite agent-token authentication (``Authorization: Token ...``)."""

    def __init__(self, token: str) -> None:
        self._token = token

    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Token {self._token}",
            "Accept": "application/json",
        }


# ─── Client ──────────────────────────────────────────────────────────


class HttpClient:
    def __init__(
        self,
        base_url: str,
        auth: Auth | None = None,
        *,
        timeout: float = 30,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._default_headers = default_headers or {}
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

    async def get[T](
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        response_type: type[T],
    ) -> Response[T]:
        _ = response_type
        session = await self._ensure_session()
        self._log.debug("GET {path}", path=path)

        try:
            async with session.get(
                self._url(path), headers=self._build_headers(), params=params,
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    self._log.warning(
                        "HTTP {status} from {url}: {body}",
                        status=resp.status, url=str(resp.url), body=body[:500],
                    )
                    raise HttpError(status=resp.status, body=body)
                data = await resp.json(content_type=None)
                return Response(status=resp.status, data=data, headers=dict(resp.headers))
        except aiohttp.ClientResponseError as e:
            raise HttpError(status=e.status, body=e.message) from e
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            raise HttpError(status=0, body=str(e) or type(e).__name__) from e

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
