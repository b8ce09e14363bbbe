"""
robots.txt compliance, cached once per origin.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Optional
from urllib.parse import urlsplit
from urllib.robotparser import RobotFileParser

import aiohttp

logger = logging.getLogger(__name__)


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


class RobotsCache:
    """Per-origin robots rules.

    A missing or unreadable robots.txt allows everything. Concurrent workers
    may populate the same origin twice; the parsed result is identical so the
    last write wins.
    """

    def __init__(self, timeout: float = 10.0) -> None:
        self._timeout = timeout
        self._rules: Dict[str, Optional[RobotFileParser]] = {}

    def __contains__(self, origin: str) -> bool:
        return origin in self._rules

    def __len__(self) -> int:
        return len(self._rules)

    async def _load(self, origin: str, session: aiohttp.ClientSession, user_agent: str) -> Optional[RobotFileParser]:
        url = f"{origin}/robots.txt"
        try:
            async with session.get(
                url,
                headers={"User-Agent": user_agent},
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as resp:
                if resp.status != 200:
                    logger.debug("No robots.txt at %s (HTTP %s)", url, resp.status)
                    return None
                body = await resp.text(errors="replace")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug("robots.txt fetch failed for %s: %s", origin, e)
            return None

        parser = RobotFileParser()
        parser.set_url(url)
        parser.parse(body.splitlines())
        return parser

    async def allowed(self, url: str, user_agent: str, session: aiohttp.ClientSession) -> bool:
        origin = origin_of(url)
        if origin not in self._rules:
            self._rules[origin] = await self._load(origin, session, user_agent)
        parser = self._rules[origin]
        if parser is None:
            return True
        return parser.can_fetch(user_agent, url)
