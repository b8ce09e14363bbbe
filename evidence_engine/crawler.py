"""
Breadth-first, depth- and budget-limited crawler.

Pages are fetched strictly in queue order, one at a time, with a fixed delay
between fetches. Every fetch attempt counts toward the page budget and every
normalized URL is visited at most once.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Pattern, Sequence, Set, Tuple
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup

from .models import CrawlConfig, RawPayload

logger = logging.getLogger(__name__)

SKIP_HREF_PREFIXES = ("#", "mailto:", "tel:", "javascript:")

PageFetch = Callable[[str], Awaitable[RawPayload]]


def normalize_url(url: str) -> str:
    """``scheme://host/path`` with query, fragment and trailing slash removed."""
    parts = urlsplit(url)
    path = parts.path.rstrip("/")
    return f"{parts.scheme}://{parts.netloc.lower()}{path}"


def _compile(patterns: Sequence[str]) -> List[Pattern[str]]:
    compiled = []
    for p in patterns:
        try:
            compiled.append(re.compile(p, re.IGNORECASE))
        except re.error as e:
            logger.warning("Ignoring invalid crawl pattern %r: %s", p, e)
    return compiled


def discover_links(
    html: str,
    base_url: str,
    *,
    include_patterns: Sequence[str] = (),
    exclude_patterns: Sequence[str] = (),
) -> List[str]:
    """Same-host links in *html*, normalized, filtered and de-duplicated in document order."""
    base_host = urlsplit(base_url).hostname
    include = _compile(include_patterns)
    exclude = _compile(exclude_patterns)

    soup = BeautifulSoup(html, "html.parser")
    links: List[str] = []
    seen: Set[str] = set()
    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href or href.lower().startswith(SKIP_HREF_PREFIXES):
            continue
        absolute = urljoin(base_url, href)
        parts = urlsplit(absolute)
        if parts.scheme not in ("http", "https") or parts.hostname != base_host:
            continue

        url = normalize_url(absolute)
        if url in seen:
            continue
        if any(p.search(url) for p in exclude):
            continue
        if include and not any(p.search(url) for p in include):
            continue
        seen.add(url)
        links.append(url)
    return links


@dataclass
class CrawlResult:
    pages: List[RawPayload] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    visited: List[str] = field(default_factory=list)


class Crawler:
    """
    Example
    -------
    crawler = Crawler(CrawlConfig(max_depth=1, page_budget=3))
    result = await crawler.crawl("https://example.com", fetcher.fetch)
    """

    def __init__(self, config: Optional[CrawlConfig] = None, *, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep) -> None:
        self.config = config or CrawlConfig()
        self._sleep = sleep

    async def crawl(self, start_url: str, fetch: PageFetch) -> CrawlResult:
        cfg = self.config
        result = CrawlResult()
        visited: Set[str] = set()
        queued: Set[str] = {normalize_url(start_url)}
        queue: Deque[Tuple[str, int]] = deque([(start_url, 0)])
        fetched = 0

        while queue and fetched < cfg.page_budget:
            url, depth = queue.popleft()
            key = normalize_url(url)
            if key in visited:
                continue
            visited.add(key)

            if fetched > 0 and cfg.request_delay_s > 0:
                await self._sleep(cfg.request_delay_s)
            fetched += 1
            result.visited.append(url)

            logger.debug("Crawling %s (depth %d, page %d/%d)", url, depth, fetched, cfg.page_budget)
            payload = await fetch(url)
            if not payload.ok:
                result.errors.append({"url": url, "error": payload.error, "error_type": payload.error_type})
                continue
            result.pages.append(payload)

            if depth >= cfg.max_depth or not payload.raw_html:
                continue
            for link in discover_links(
                payload.raw_html,
                url,
                include_patterns=cfg.include_patterns,
                exclude_patterns=cfg.exclude_patterns,
            ):
                if link not in visited and link not in queued:
                    queued.add(link)
                    queue.append((link, depth + 1))

        logger.info(
            "Crawl of %s finished: %d page(s), %d error(s), %d left in queue",
            start_url, len(result.pages), len(result.errors), len(queue),
        )
        return result
