"""
Shared behaviour for source connectors.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence

from bs4 import BeautifulSoup

from evidence_engine.grading import assign_grade, compute_confidence
from evidence_engine.interfaces import Connector
from evidence_engine.models import ErrorType, ExtractedEvidence, NormalizedEvidence, RawPayload, utcnow

from .pricing import extract_prices

logger = logging.getLogger(__name__)

SNIPPET_CHARS = 500
_WS = re.compile(r"\s+")


def collapse(text: str) -> str:
    return _WS.sub(" ", text).strip()


def snippet(text: str, max_len: int = SNIPPET_CHARS) -> str:
    return collapse(text)[:max_len]


def html_to_text(html: str) -> str:
    """Visible text of *html* with scripts and styles removed."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return collapse(soup.get_text(" "))


class BaseSourceConnector(Connector):
    """Fetches ``config.source_url`` through the shared page fetcher.

    Subclasses implement ``extract``; the default ``normalize`` grades by
    source identity and reads the first price found in the evidence text.
    """

    default_unit: Optional[str] = "unit"
    default_tags: Sequence[str] = ()
    priced: bool = True

    async def fetch(self) -> RawPayload:
        if self.context is None:
            return RawPayload(
                url=self.config.source_url,
                error="No page fetcher configured",
                error_type=ErrorType.UNKNOWN,
            )
        return await self.context.fetcher.fetch(self.config.source_url, render_js=self.config.render_js)

    def tags_for(self, evidence: ExtractedEvidence) -> List[str]:
        return list(self.default_tags)

    async def normalize(self, evidence: ExtractedEvidence) -> NormalizedEvidence:
        grade = assign_grade(self.source_id)
        confidence = compute_confidence(grade, evidence.published_date, utcnow())

        value: Optional[float] = None
        unit = self.default_unit
        if self.priced:
            prices = extract_prices(evidence.raw_text)
            if prices:
                value, unit = prices[0]

        return NormalizedEvidence(
            metric=evidence.title,
            value=value,
            unit=unit,
            confidence=confidence,
            grade=grade,
            summary=snippet(evidence.raw_text),
            tags=self.tags_for(evidence),
        )
