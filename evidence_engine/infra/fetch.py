"""
fetch.py – resilient page fetching.

One ``PageFetcher.fetch`` call is one logical fetch: robots check, optional
headless render, then up to ``max_attempts`` plain HTTP attempts with
exponential back-off. Every failure is encoded in the returned
``RawPayload``; nothing is raised to the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import aiohttp

from ..interfaces import NullRenderer, Renderer
from ..models import ErrorType, RawPayload
from .http import HttpClient, Sleep
from .robots import RobotsCache

logger = logging.getLogger(__name__)

USER_AGENTS: Tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0",
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/123.0.0.0 Safari/537.36",
)

# Lower-cased substrings that mark a bot wall or paywall instead of content.
BLOCK_MARKERS: Tuple[str, ...] = (
    "cf-browser-verification",
    "cf-challenge",
    "attention required! | cloudflare",
    "g-recaptcha",
    "h-captcha",
    "are you a robot",
    "verify you are human",
    "access denied",
    "request unsuccessful. incapsula",
    "please enable cookies",
    "subscribe to continue reading",
    "this content is for subscribers only",
    'class="paywall',
)

RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})
BLOCK_SCAN_CHARS = 20_000


@dataclass
class FetchPolicy:
    timeout_s: float = 15.0
    max_attempts: int = 3
    backoff_base_s: float = 1.0
    respect_robots: bool = True
    min_rendered_chars: int = 200
    user_agents: Sequence[str] = USER_AGENTS


@dataclass
class FetchState:
    """Process-local mutable state of the fetch layer, passed in explicitly."""
    robots: RobotsCache = field(default_factory=RobotsCache)
    ua_counter: int = 0

    def next_user_agent(self, pool: Sequence[str]) -> str:
        ua = pool[self.ua_counter % len(pool)]
        self.ua_counter += 1
        return ua


def detect_block(body: str) -> Optional[str]:
    """Return the first block/paywall marker found in *body*, if any."""
    head = body[:BLOCK_SCAN_CHARS].lower()
    for marker in BLOCK_MARKERS:
        if marker in head:
            return marker
    return None


def backoff_schedule(base: float, attempts: int) -> List[float]:
    """Delays slept between *attempts* tries: base·2^(k-1) for k = 1..attempts-1."""
    return [base * 2 ** (k - 1) for k in range(1, attempts)]


class PageFetcher:
    """Fetches pages for connectors under one retry/robots/identity policy."""

    def __init__(
        self,
        http: HttpClient,
        *,
        policy: Optional[FetchPolicy] = None,
        state: Optional[FetchState] = None,
        renderer: Optional[Renderer] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.http = http
        self.policy = policy or FetchPolicy()
        self.state = state or FetchState()
        self.renderer = renderer or NullRenderer()
        self._sleep = sleep

    # ---------------------------------------------- #
    # Public API
    async def fetch(self, url: str, *, render_js: bool = False) -> RawPayload:
        try:
            return await self._fetch(url, render_js)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Unexpected fetch failure for {url}: {e}")
            return RawPayload(url=url, status_code=0, error=str(e) or type(e).__name__,
                              error_type=ErrorType.UNKNOWN)

    # ---------------------------------------------- #
    # Internals
    async def _fetch(self, url: str, render_js: bool) -> RawPayload:
        session = await self.http.session()
        if self.policy.respect_robots:
            ua = self.policy.user_agents[0]
            if not await self.state.robots.allowed(url, ua, session):
                logger.info("robots.txt disallows %s", url)
                return RawPayload(url=url, status_code=0, error="Disallowed by robots.txt",
                                  error_type=ErrorType.ROBOTS_DISALLOWED)

        if render_js:
            rendered = await self._try_render(url)
            if rendered is not None:
                return rendered

        return await self._fetch_plain(url, session)

    async def _try_render(self, url: str) -> Optional[RawPayload]:
        started = time.monotonic()
        try:
            content = await self.renderer.render(url)
        except Exception as e:
            logger.debug("Renderer failed for %s, using plain fetch: %s", url, e)
            return None
        if not content or len(content.strip()) < self.policy.min_rendered_chars:
            logger.debug("Renderer returned too little content for %s, using plain fetch", url)
            return None

        elapsed = int((time.monotonic() - started) * 1000)
        marker = detect_block(content)
        if marker:
            return RawPayload(url=url, status_code=200, rendered=True, rendered_text=content,
                              error=f"Blocked: page contains '{marker}'", error_type=ErrorType.BLOCKED,
                              response_time_ms=elapsed, content_length=len(content))
        return RawPayload(url=url, status_code=200, raw_html=content, rendered_text=content,
                          rendered=True, response_time_ms=elapsed, content_length=len(content))

    async def _fetch_plain(self, url: str, session: aiohttp.ClientSession) -> RawPayload:
        policy = self.policy
        delays = backoff_schedule(policy.backoff_base_s, policy.max_attempts)
        last_error = "no attempts made"
        last_type = ErrorType.UNKNOWN
        started = time.monotonic()

        for attempt in range(1, policy.max_attempts + 1):
            headers = {
                **self.http.default_headers,
                "User-Agent": self.state.next_user_agent(policy.user_agents),
                "Accept": "text/html,application/xhtml+xml,application/json;q=0.9,*/*;q=0.8",
            }
            try:
                async with session.get(
                    url,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=policy.timeout_s),
                    allow_redirects=True,
                ) as resp:
                    status = resp.status
                    content_type = resp.headers.get("Content-Type", "")
                    body = await resp.text(errors="replace")
            except asyncio.TimeoutError:
                last_error, last_type = f"Timed out after {policy.timeout_s:g}s", ErrorType.TIMEOUT
            except aiohttp.ClientConnectorError as e:
                if isinstance(e.os_error, socket.gaierror):
                    last_error, last_type = f"DNS lookup failed: {e}", ErrorType.DNS
                else:
                    last_error, last_type = str(e), ErrorType.NETWORK
            except aiohttp.ClientError as e:
                last_error, last_type = str(e) or type(e).__name__, ErrorType.NETWORK
            else:
                elapsed = int((time.monotonic() - started) * 1000)
                if status in RETRYABLE_STATUSES:
                    last_error, last_type = f"HTTP {status}", ErrorType.HTTP_ERROR
                elif status >= 400:
                    logger.warning("HTTP %d for %s", status, url)
                    return RawPayload(url=url, status_code=status, error=f"HTTP {status}",
                                      error_type=ErrorType.HTTP_ERROR,
                                      response_time_ms=elapsed, content_length=len(body))
                else:
                    return self._build_payload(url, status, content_type, body, elapsed)

            if attempt < policy.max_attempts:
                delay = delays[attempt - 1]
                logger.warning(
                    "Fetch %s failed (attempt %d/%d – will retry in %.1fs): %s",
                    url, attempt, policy.max_attempts, delay, last_error,
                )
                await self._sleep(delay)

        logger.error("Fetch %s failed after %d attempts: %s", url, policy.max_attempts, last_error)
        return RawPayload(
            url=url,
            status_code=0,
            error=f"Failed after {policy.max_attempts} attempts: {last_error}",
            error_type=last_type,
            response_time_ms=int((time.monotonic() - started) * 1000),
        )

    @staticmethod
    def _build_payload(url: str, status: int, content_type: str, body: str, elapsed: int) -> RawPayload:
        marker = detect_block(body)
        if marker:
            logger.warning("Blocked response from %s (marker %r)", url, marker)
            return RawPayload(url=url, status_code=status, error=f"Blocked: page contains '{marker}'",
                              error_type=ErrorType.BLOCKED, response_time_ms=elapsed,
                              content_length=len(body))

        raw_json = None
        if "json" in content_type.lower():
            try:
                raw_json = json.loads(body)
            except ValueError:
                logger.debug("Declared JSON at %s did not parse", url)

        return RawPayload(
            url=url,
            status_code=status,
            raw_html=None if raw_json is not None else body,
            raw_json=raw_json,
            response_time_ms=elapsed,
            content_length=len(body),
        )
