"""
http.py – the one *aiohttp* session every source fetch goes through.

Retries, user-agent rotation and block detection live in ``PageFetcher``.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import aiohttp

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]

BASE_HEADERS = {
    "Accept-Language": "en-AE,en;q=0.9,ar;q=0.6",
    "Cache-Control": "no-cache",
}


class HttpClient:
    """Lazily opened ``ClientSession`` plus the headers sent on every request.

    ``timeout`` bounds a whole fetch including retries; the per-attempt limit
    comes from the fetch policy.
    """

    def __init__(self, *, timeout: float = 30.0, headers: Optional[Mapping[str, str]] = None) -> None:
        self.timeout = timeout
        self._headers: Dict[str, str] = {**BASE_HEADERS, **(headers or {})}
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def default_headers(self) -> Dict[str, str]:
        return dict(self._headers)

    async def session(self) -> aiohttp.ClientSession:
        # reopened transparently if a previous run closed it
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))
            logger.debug("Opened HTTP session (total timeout %.0fs)", self.timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
