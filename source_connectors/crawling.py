"""
Multi-page connector: crawls from the source URL within its CrawlConfig and
runs structured extraction on every page reached.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from evidence_engine.crawler import Crawler
from evidence_engine.interfaces import PageBatch
from evidence_engine.models import ErrorType, RawPayload

from .dynamic import DynamicConnector

logger = logging.getLogger(__name__)


class CrawlingConnector(DynamicConnector):
    kind = "crawl"

    page_label = "page"

    def prompt_context(self, raw: RawPayload) -> List[str]:
        return [f"Page URL: {raw.url}"]

    async def fetch_pages(self) -> PageBatch:
        if self.context is None:
            return PageBatch(pages=[await self.fetch()])

        fetcher = self.context.fetcher
        render_js = self.config.render_js
        attempts: List[RawPayload] = []

        async def fetch(url: str) -> RawPayload:
            payload = await fetcher.fetch(url, render_js=render_js)
            attempts.append(payload)
            return payload

        crawler = Crawler(self.config.crawl)
        result = await crawler.crawl(self.config.source_url, fetch)

        if not result.pages:
            # surface the start page failure so the run records its classification
            first: Optional[RawPayload] = attempts[0] if attempts else None
            if first is None:
                first = RawPayload(url=self.config.source_url, error="No pages fetched", error_type=ErrorType.UNKNOWN)
            return PageBatch(pages=[first], errors=result.errors[1:])

        logger.info(f"{self.source_id}: crawled {len(result.pages)} page(s), {len(result.errors)} failed")
        return PageBatch(pages=result.pages, errors=result.errors)
