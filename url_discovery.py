"""
🧭 URL Discovery
================
Runs once before any virtual user starts. Reads the storefront homepage (and
optionally a few category pages) and turns its anchors into the shared seed
pools every shopper falls back on. When the live pages give nothing usable the
static seed lists are used instead, so the pools are never empty.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from load_config import LoadTestSettings
from page_parser import classify_link, harvest_search_terms, is_pagination_url, iter_anchors
from storefront_client import StorefrontClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeedData:
    """Shared, read-only URL and search-term pools."""
    products: Tuple[str, ...]
    categories: Tuple[str, ...]
    search_terms: Tuple[str, ...]
    live: bool = False  # True when at least one pool came from the live site


def _absolute(base_url: str, entry: str, suffix: str = "") -> str:
    if entry.startswith(("http://", "https://")):
        return entry
    if entry.startswith("/"):
        return base_url + entry
    return f"{base_url}/{entry}{suffix}"


def fallback_seed_data(settings: LoadTestSettings) -> SeedData:
    """The static seed set built from the configured product paths, category slugs and terms."""
    discovery = settings.url_discovery
    base_url = settings.base_url
    return SeedData(
        products=tuple(_absolute(base_url, path) for path in discovery.fallback_products),
        categories=tuple(_absolute(base_url, slug, ".html") for slug in discovery.fallback_categories),
        search_terms=tuple(discovery.fallback_search_terms),
    )


def _merge(target: List[str], items: Sequence[str]):
    for item in items:
        if item not in target:
            target.append(item)


class UrlDiscovery:
    """Harvests seed URLs from the live storefront."""

    def __init__(self, client: StorefrontClient, settings: LoadTestSettings):
        self.client = client
        self.settings = settings

    async def _harvest(self, url: str) -> Optional[Tuple[List[str], List[str], List[str]]]:
        """(products, categories, search terms) linked from one page, or None if it did not load."""
        response = await self.client.get(url, "discovery", check_name="discovery page status is 2xx/3xx")
        if not response.ok or not response.body:
            logger.info("Discovery fetch of %s gave status %s", url, response.status or response.error)
            return None

        discovery = self.settings.url_discovery
        products: List[str] = []
        categories: List[str] = []
        labelled: List[Tuple[str, str]] = []
        for anchor in iter_anchors(response.body, response.url or url, discovery.exclude_patterns):
            if is_pagination_url(anchor.url):
                continue
            kind = classify_link(anchor.url, anchor.text, anchor.css_class, discovery.category_indicators)
            _merge(categories if kind == "category" else products, [anchor.url])
            labelled.append((anchor.text, kind))
        return products, categories, harvest_search_terms(labelled)

    async def _validate(self, urls: List[str]) -> List[str]:
        """Drop URLs that do not answer 2xx/3xx. Only the first max_validations are probed."""
        discovery = self.settings.url_discovery
        budget = max(0, discovery.max_validations)
        semaphore = asyncio.Semaphore(max(1, discovery.validation_concurrency))

        async def probe(url: str) -> bool:
            async with semaphore:
                response = await self.client.get(url, "discovery", check_name="discovery validation status is 2xx/3xx")
                return response.ok

        probed = urls[:budget]
        results = await asyncio.gather(*(probe(url) for url in probed))
        kept = [url for url, ok in zip(probed, results) if ok]
        dropped = len(probed) - len(kept)
        if dropped:
            logger.info("URL validation dropped %d of %d URLs", dropped, len(probed))
        return kept + urls[budget:]

    async def discover(self, seed_url: Optional[str] = None) -> SeedData:
        """Harvest seed data from the live site, falling back to the static set."""
        discovery = self.settings.url_discovery
        fallback = fallback_seed_data(self.settings)
        if not discovery.enabled:
            logger.info("URL discovery disabled; using static seed data")
            return fallback

        harvested = await self._harvest(seed_url or self.settings.base_url + "/")
        if harvested is None:
            return fallback
        products, categories, terms = harvested

        if discovery.deep_crawl:
            for category_url in list(categories[:max(0, discovery.max_category_pages)]):
                extra = await self._harvest(category_url)
                if extra is None:
                    continue
                _merge(products, extra[0])
                _merge(categories, extra[1])
                _merge(terms, extra[2])

        if discovery.validate_urls:
            products = await self._validate(products)
            categories = await self._validate(categories)

        live = bool(products or categories)
        if not products:
            logger.info("Discovery found no product links; using static product seeds")
            products = list(fallback.products)
        if not categories:
            logger.info("Discovery found no category links; using static category seeds")
            categories = list(fallback.categories)

        return SeedData(
            products=tuple(products[:max(1, discovery.max_products)]),
            categories=tuple(categories[:max(1, discovery.max_categories)]),
            search_terms=tuple(terms) if terms else fallback.search_terms,
            live=live,
        )
