"""
Rule-based connectors for the built-in UAE sources.

Every built-in source is a ``CatalogProfile`` row read by one
``CatalogConnector`` class: find repeated page sections whose CSS class
contains one of the profile's keywords, take their first heading as the
item title, and fall back to one whole-page item when nothing matches.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from evidence_engine.models import ConnectorConfig, EvidenceCategory, ExtractedEvidence, RawPayload

from .base import BaseSourceConnector, collapse, html_to_text, snippet
from .pricing import parse_report_date

logger = logging.getLogger(__name__)

HEADINGS = ["h1", "h2", "h3", "h4"]
MIN_PAGE_CHARS = 100


@dataclass(frozen=True)
class CatalogProfile:
    source_id: str
    source_name: str
    source_url: str
    category: EvidenceCategory
    geography: str
    title_prefix: str
    fallback_title: str
    section_tags: Tuple[str, ...]
    class_keywords: Tuple[str, ...]
    max_items: int
    default_unit: Optional[str]
    tags: Tuple[str, ...]
    priced: bool = True
    parse_dates: bool = False

    def to_config(self) -> ConnectorConfig:
        return ConnectorConfig(
            source_id=self.source_id,
            source_name=self.source_name,
            source_url=self.source_url,
            kind=CatalogConnector.kind,
            category=self.category,
            geography=self.geography,
        )


_SECTIONS = ("div", "article", "section")

PROFILES: Dict[str, CatalogProfile] = {p.source_id: p for p in (
    CatalogProfile(
        "rak-ceramics-uae", "RAK Ceramics UAE", "https://www.rakceramics.com/ae/",
        "material_cost", "UAE", "RAK Ceramics", "RAK Ceramics UAE - Product Catalog",
        _SECTIONS, ("product",), 20, "sqm", ("ceramics", "tiles", "flooring", "manufacturer"),
    ),
    CatalogProfile(
        "dera-interiors", "DERA Interiors", "https://www.derainteriors.com/",
        "fitout_rate", "Dubai", "DERA Interiors", "DERA Interiors - Fit-out Services",
        _SECTIONS, ("service", "project", "portfolio"), 15, "sqft", ("fitout", "interior-design", "contractor"),
    ),
    CatalogProfile(
        "dragon-mart-dubai", "Dragon Mart Dubai", "https://www.dragonmart.ae/",
        "material_cost", "Dubai", "Dragon Mart", "Dragon Mart Dubai - Building Materials",
        ("div", "li", "article"), ("product", "item", "listing"), 25, "unit",
        ("retailer", "building-materials", "wholesale"),
    ),
    CatalogProfile(
        "porcelanosa-uae", "Porcelanosa UAE", "https://www.porcelanosa.com/ae/",
        "material_cost", "UAE", "Porcelanosa", "Porcelanosa UAE - Premium Tiles & Surfaces",
        ("div", "article"), ("product",), 20, "sqm", ("tiles", "surfaces", "premium", "manufacturer"),
    ),
    CatalogProfile(
        "emaar-properties", "Emaar Properties", "https://www.emaar.com/en/",
        "competitor_project", "Dubai", "Emaar", "Emaar Properties - Development Portfolio",
        _SECTIONS, ("project", "property", "development", "community"), 15, "sqft",
        ("developer", "luxury", "dubai", "residential"),
    ),
    CatalogProfile(
        "damac-properties", "DAMAC Properties", "https://www.damacproperties.com/en/",
        "competitor_project", "Dubai", "DAMAC", "DAMAC Properties - Development Portfolio",
        _SECTIONS, ("project", "property", "development"), 15, "sqft",
        ("developer", "luxury", "dubai", "branded-residences"),
    ),
    CatalogProfile(
        "nakheel-properties", "Nakheel Properties", "https://www.nakheel.com/en/",
        "competitor_project", "Dubai", "Nakheel", "Nakheel Properties - Community Portfolio",
        _SECTIONS, ("project", "property", "community", "development"), 15, "sqft",
        ("developer", "master-plan", "dubai", "community"),
    ),
    CatalogProfile(
        "rics-market-reports", "RICS Market Reports", "https://www.rics.org/news-insights/market-surveys",
        "market_trend", "UAE", "RICS", "RICS Market Survey - UAE Construction",
        ("div", "article"), ("article", "report", "insight", "survey", "card"), 10, None,
        ("market-survey", "construction", "industry-report", "rics"), priced=False, parse_dates=True,
    ),
    CatalogProfile(
        "jll-mena-research", "JLL MENA Research", "https://www.jll.com/en/trends-and-insights/research",
        "market_trend", "UAE", "JLL", "JLL MENA - Real Estate Market Research",
        ("div", "article"), ("article", "research", "insight", "card", "report"), 10, None,
        ("market-research", "real-estate", "mena", "jll"), priced=False, parse_dates=True,
    ),
    CatalogProfile(
        "dubai-statistics-center", "Dubai Statistics Center", "https://www.dsc.gov.ae/en-us",
        "market_trend", "Dubai", "DSC", "Dubai Statistics Center - Economic Indicators",
        _SECTIONS, ("stat", "data", "report", "indicator", "publication"), 10, None,
        ("government", "statistics", "dubai", "economic-indicators"),
    ),
    CatalogProfile(
        "hafele-uae", "Hafele UAE", "https://www.hafele.ae/en/",
        "material_cost", "UAE", "Hafele", "Hafele UAE - Hardware & Fittings Catalog",
        ("div", "article"), ("product",), 20, "piece", ("hardware", "fittings", "joinery", "manufacturer"),
    ),
    CatalogProfile(
        "gems-building-materials", "GEMS Building Materials", "https://www.gemsbm.com/",
        "material_cost", "UAE", "GEMS", "GEMS Building Materials - Product Catalog",
        ("div", "article", "li"), ("product", "item", "category"), 20, "unit",
        ("building-materials", "supplier", "wholesale"),
    ),
)}


def builtin_configs() -> Dict[str, ConnectorConfig]:
    return {source_id: profile.to_config() for source_id, profile in PROFILES.items()}


def generic_profile(config: ConnectorConfig) -> CatalogProfile:
    """Profile for a configured catalog source without a built-in row."""
    return CatalogProfile(
        config.source_id, config.source_name, config.source_url,
        config.category, config.geography, config.source_name, f"{config.source_name} - Catalog",
        _SECTIONS, ("product", "item", "listing"), 20, "unit", (config.category,),
    )


class CatalogConnector(BaseSourceConnector):
    kind = "catalog"

    def __init__(self, config, context=None) -> None:
        super().__init__(config, context)
        self.profile = PROFILES.get(config.source_id) or generic_profile(config)
        self.default_unit = self.profile.default_unit
        self.default_tags = self.profile.tags
        self.priced = self.profile.priced
        self._class_re = re.compile("|".join(map(re.escape, self.profile.class_keywords)), re.IGNORECASE)

    def _class_matches(self, value) -> bool:
        if not value:
            return False
        classes = value if isinstance(value, str) else " ".join(value)
        return bool(self._class_re.search(classes))

    def _sections(self, soup: BeautifulSoup) -> List:
        tags = list(self.profile.section_tags)
        found = soup.find_all(tags, class_=self._class_matches)
        # keep innermost matches so wrappers do not duplicate their cards
        return [el for el in found if el.find(tags, class_=self._class_matches) is None]

    def _evidence(self, title: str, text: str, url: str, published=None) -> ExtractedEvidence:
        return ExtractedEvidence(
            title=title,
            raw_text=text,
            published_date=published,
            category=self.config.category,
            geography=self.config.geography,
            source_url=url,
        )

    async def extract(self, raw: RawPayload) -> List[ExtractedEvidence]:
        html = raw.raw_html or ""
        if not html:
            return []
        soup = BeautifulSoup(html, "html.parser")

        evidence: List[ExtractedEvidence] = []
        for section in self._sections(soup)[: self.profile.max_items]:
            heading = section.find(HEADINGS)
            title = collapse(heading.get_text(" ")) if heading else ""
            if not title:
                continue
            text = collapse(section.get_text(" "))
            published = parse_report_date(text) if self.profile.parse_dates else None
            evidence.append(self._evidence(f"{self.profile.title_prefix} - {title}", text, raw.url, published))

        if not evidence and len(html) > MIN_PAGE_CHARS:
            text = snippet(html_to_text(html))
            if text:
                evidence.append(self._evidence(self.profile.fallback_title, text, raw.url))

        logger.debug("%s: extracted %d item(s) from %s", self.source_id, len(evidence), raw.url)
        return evidence
