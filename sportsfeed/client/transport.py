from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Protocol

import aiohttp

from sportsfeed.errors import TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportResponse:
    status: int
    body: str


class Transport(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        params: Mapping[str, str],
        headers: Mapping[str, str],
    ) -> TransportResponse:
        ...


class AiohttpTransport:
    """
    HTTP transport over a shared aiohttp.ClientSession (connection pooling).

    Holds no call state. Connection failures and timeouts come out as
    TransportError; every HTTP status, including 4xx/5xx, is returned as a
    TransportResponse for the executor to interpret.
    """

    def __init__(
        self,
        timeout_s: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._own_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._own_session = True
        return self._session

    async def close(self) -> None:
        if self._own_session and self._session and not self._session.closed:
            await self._session.close()

    async def request(
        self,
        method: str,
        url: str,
        params: Mapping[str, str],
        headers: Mapping[str, str],
    ) -> TransportResponse:
        session = await self._get_session()
        try:
            async with session.request(
                method, url, params=dict(params), headers=dict(headers)
            ) as resp:
                raw = await resp.read()
                return TransportResponse(status=resp.status, body=decode_body(raw, resp.charset))
        except asyncio.TimeoutError as exc:
            raise TransportError(f"timeout calling {url}") from exc
        except aiohttp.ClientError as exc:
            raise TransportError(f"{type(exc).__name__} calling {url}: {exc}") from exc


def decode_body(raw: bytes, charset: Optional[str] = None) -> str:
    """Response bytes as text. Undecodable bytes become U+FFFD rather than failing the call."""
    try:
        return raw.decode(charset or "utf-8", errors="replace")
    except LookupError:
        logger.warning("Unknown response charset %r; decoding as utf-8", charset)
        return raw.decode("utf-8", errors="replace")


def default_headers(credential_header: str, credential: str) -> Dict[str, str]:
    return {credential_header: credential, "Accept": "application/json"}
