"""
🔎 Storefront Page Parsing
==========================
Turns a rendered storefront page into link candidates and a handful of
regex-extracted tokens (form key, product id, configurable options, cart line
ids). Nothing here raises on bad markup: a page that cannot be read simply
yields nothing.
"""

import json
import logging
import random
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

# Chance of keeping a link that matches none of the shopper's interests
UNINTERESTING_CATEGORY_KEEP_RATE = 0.4
UNINTERESTING_PRODUCT_KEEP_RATE = 0.3

_SKIPPED_SCHEMES = ("mailto:", "tel:", "javascript:", "data:", "#")
_STATIC_SUFFIXES = (
    ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp", ".css", ".js", ".pdf",
    ".zip", ".xml", ".txt", ".ico", ".woff", ".woff2",
)

_BREADCRUMB_MARKERS = ("breadcrumb",)
_PAGINATION_MARKERS = ("pagination", "pager", "pages-items", "toolbar-products")
_RELATED_MARKERS = ("related", "upsell", "up-sell", "crosssell", "cross-sell", "recommend")
_PAGE_PARAM_RE = re.compile(r"[?&](?:p|page)=\d+", re.IGNORECASE)


@dataclass
class ExtractedLinks:
    """Link candidates found on one page, by kind."""
    categories: List[str] = field(default_factory=list)
    products: List[str] = field(default_factory=list)
    related: List[str] = field(default_factory=list)
    pagination: List[str] = field(default_factory=list)
    breadcrumbs: List[str] = field(default_factory=list)
    interesting: Set[str] = field(default_factory=set)  # category/product links matching an interest

    def is_empty(self) -> bool:
        return not (self.categories or self.products or self.related or self.pagination or self.breadcrumbs)

    def total(self) -> int:
        return (len(self.categories) + len(self.products) + len(self.related)
                + len(self.pagination) + len(self.breadcrumbs))


@dataclass
class Anchor:
    url: str
    text: str
    css_class: str
    context: str  # class/id/aria-label text of the enclosing elements


# =============================================================================
# URL HELPERS
# =============================================================================

def normalize_url(href: Optional[str], base_url: str, exclude_patterns: Sequence[str] = ()) -> Optional[str]:
    """Make an anchor target absolute; None if it is off-origin, static or excluded."""
    if not href:
        return None
    href = href.strip()
    if not href or href.lower().startswith(_SKIPPED_SCHEMES):
        return None
    url, _ = urldefrag(urljoin(base_url, href))
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return None
    if parsed.netloc.lower() != urlparse(base_url).netloc.lower():
        return None
    path = parsed.path.lower()
    if path in ("", "/") and not parsed.query:
        return None
    if path.endswith(_STATIC_SUFFIXES):
        return None
    lowered = url.lower()
    if any(pattern.lower() in lowered for pattern in exclude_patterns):
        return None
    return url


def classify_link(url: str, text: str, css_class: str, category_indicators: Sequence[str]) -> str:
    """'category' when the path, anchor text or class carries a category indicator, else 'product'."""
    haystacks = (urlparse(url).path.lower(), text.lower(), css_class.lower())
    for indicator in category_indicators:
        indicator = indicator.lower()
        if any(indicator in hay for hay in haystacks):
            return "category"
    return "product"


def matches_interest(url: str, text: str, css_class: str, interests: Iterable[str]) -> bool:
    haystack = f"{url} {text} {css_class}".lower()
    return any(interest.lower() in haystack for interest in interests)


def is_pagination_url(url: str) -> bool:
    return bool(_PAGE_PARAM_RE.search(url))


def _append_unique(target: List[str], url: str):
    if url not in target:
        target.append(url)


# =============================================================================
# DOM EXTRACTION
# =============================================================================

def _ancestor_context(tag, depth: int = 8) -> str:
    parts = []
    for parent in tag.parents:
        if depth <= 0 or parent.name in (None, "[document]", "body", "html"):
            break
        classes = parent.get("class") or []
        parts.append(" ".join(classes) if isinstance(classes, list) else str(classes))
        parts.append(str(parent.get("id") or ""))
        parts.append(str(parent.get("aria-label") or ""))
        depth -= 1
    return " ".join(parts).lower()


def iter_anchors(html: str, base_url: str, exclude_patterns: Sequence[str] = ()) -> List[Anchor]:
    """All usable anchors on a page, normalised against the origin."""
    if not html:
        return []
    try:
        soup = BeautifulSoup(html, "html.parser")
        anchors = []
        for a in soup.find_all("a", href=True):
            url = normalize_url(a.get("href"), base_url, exclude_patterns)
            if not url:
                continue
            classes = a.get("class") or []
            anchors.append(Anchor(
                url=url,
                text=a.get_text(" ", strip=True),
                css_class=" ".join(classes) if isinstance(classes, list) else str(classes),
                context=_ancestor_context(a),
            ))
        return anchors
    except Exception as e:  # html.parser can choke on pathological markup
        logger.debug("Could not parse page for links: %s", e)
        return []


def extract_links(
    html: Optional[str],
    base_url: str,
    interests: Sequence[str],
    rng: random.Random,
    category_indicators: Sequence[str],
    exclude_patterns: Sequence[str] = (),
) -> ExtractedLinks:
    """Split a page's anchors into breadcrumb, pagination, related, category and product candidates."""
    links = ExtractedLinks()
    for anchor in iter_anchors(html or "", base_url, exclude_patterns):
        context = anchor.context
        if any(marker in context for marker in _BREADCRUMB_MARKERS):
            _append_unique(links.breadcrumbs, anchor.url)
        elif is_pagination_url(anchor.url) or any(marker in context for marker in _PAGINATION_MARKERS):
            _append_unique(links.pagination, anchor.url)
        elif any(marker in context for marker in _RELATED_MARKERS):
            _append_unique(links.related, anchor.url)
        else:
            kind = classify_link(anchor.url, anchor.text, anchor.css_class, category_indicators)
            interesting = matches_interest(anchor.url, anchor.text, anchor.css_class, interests)
            if interesting:
                links.interesting.add(anchor.url)
            if kind == "category":
                if interesting or rng.random() < UNINTERESTING_CATEGORY_KEEP_RATE:
                    _append_unique(links.categories, anchor.url)
            elif interesting or rng.random() < UNINTERESTING_PRODUCT_KEEP_RATE:
                _append_unique(links.products, anchor.url)
    return links


# =============================================================================
# TOKEN EXTRACTION
# =============================================================================

_FORM_KEY_PATTERNS = (
    re.compile(r"<input[^>]*name=[\"']form_key[\"'][^>]*value=[\"']([^\"']+)[\"']", re.IGNORECASE),
    re.compile(r"<input[^>]*value=[\"']([^\"']+)[\"'][^>]*name=[\"']form_key[\"']", re.IGNORECASE),
    re.compile(r"[\"']formKey[\"']\s*:\s*[\"']([^\"']+)[\"']"),
)
_PRODUCT_ID_PATTERNS = (
    re.compile(r"<input[^>]*name=[\"']product[\"'][^>]*value=[\"'](\d+)[\"']", re.IGNORECASE),
    re.compile(r"<input[^>]*value=[\"'](\d+)[\"'][^>]*name=[\"']product[\"']", re.IGNORECASE),
    re.compile(r"data-product-id=[\"'](\d+)[\"']", re.IGNORECASE),
    re.compile(r"[\"']productId[\"']\s*:\s*[\"']?(\d+)"),
)
_CONFIGURABLE_RE = re.compile(r"super_attribute|swatch-opt|[\"']jsonConfig[\"']", re.IGNORECASE)
_SELECT_OPTIONS_RE = re.compile(
    r"<select[^>]*name=[\"']super_attribute\[(\d+)\][\"'][^>]*>(.*?)</select>",
    re.IGNORECASE | re.DOTALL,
)
_OPTION_VALUE_RE = re.compile(r"<option[^>]*value=[\"'](\d+)[\"']", re.IGNORECASE)
_SWATCH_ATTRIBUTE_RE = re.compile(
    r"[\"'](\d+)[\"']\s*:\s*\{\s*[\"']id[\"']\s*:\s*[\"']\d+[\"'][^{}]*?[\"']options[\"']\s*:\s*\[(.*?)\]",
    re.DOTALL,
)
_SWATCH_OPTION_RE = re.compile(r"[\"']id[\"']\s*:\s*[\"'](\d+)[\"']")
_CART_ITEM_RE = re.compile(r"name=[\"']cart\[(\d+)\]\[qty\][\"']", re.IGNORECASE)
_MASKED_CART_RE = re.compile(r"[\"']quoteData[\"']\s*:\s*\{\s*[\"']entity_id[\"']\s*:\s*[\"']([A-Za-z0-9]+)[\"']")
_ERROR_MESSAGE_RE = re.compile(
    r"class=[\"'][^\"']*\bmessage-error\b|[\"']type[\"']\s*:\s*[\"']error[\"']", re.IGNORECASE
)


def _first_match(patterns: Sequence[re.Pattern], text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def extract_form_key(html: Optional[str]) -> Optional[str]:
    return _first_match(_FORM_KEY_PATTERNS, html)


def extract_product_id(html: Optional[str]) -> Optional[str]:
    return _first_match(_PRODUCT_ID_PATTERNS, html)


def is_configurable_product(html: Optional[str]) -> bool:
    return bool(html and _CONFIGURABLE_RE.search(html))


def extract_product_options(html: Optional[str]) -> Dict[str, List[str]]:
    """Configurable attribute id -> selectable option ids, from selects or the swatch config."""
    options: Dict[str, List[str]] = {}
    if not html:
        return options
    for attribute_id, body in _SELECT_OPTIONS_RE.findall(html):
        values = [v for v in _OPTION_VALUE_RE.findall(body) if v]
        if values:
            options[attribute_id] = values
    if options:
        return options
    for attribute_id, body in _SWATCH_ATTRIBUTE_RE.findall(html):
        values = _SWATCH_OPTION_RE.findall(body)
        if values:
            options[attribute_id] = values
    return options


def choose_options(available: Dict[str, List[str]], rng: random.Random) -> Dict[str, str]:
    return {attribute_id: rng.choice(values) for attribute_id, values in available.items() if values}


def extract_cart_item_ids(html: Optional[str]) -> List[str]:
    if not html:
        return []
    seen: List[str] = []
    for item_id in _CART_ITEM_RE.findall(html):
        _append_unique(seen, item_id)
    return seen


def extract_masked_cart_id(html: Optional[str]) -> Optional[str]:
    return _first_match((_MASKED_CART_RE,), html)


def has_error_message(body: Optional[str]) -> bool:
    """True when a storefront response carries an error notice (rejected coupon, bad form key...)."""
    if not body:
        return False
    if _ERROR_MESSAGE_RE.search(body):
        return True
    try:
        payload = json.loads(body)
    except ValueError:
        return False
    return isinstance(payload, dict) and bool(payload.get("error") or payload.get("message_type") == "error")


def ajax_rejected(body: Optional[str]) -> bool:
    """True when an ajax cart response asks the browser to go back (add-to-cart refused)."""
    if not body:
        return False
    try:
        payload = json.loads(body)
    except ValueError:
        return has_error_message(body)
    return isinstance(payload, dict) and bool(payload.get("backUrl") or payload.get("error"))


def harvest_search_terms(anchors: Iterable[Tuple[str, str]], limit: int = 20) -> List[str]:
    """Single-word anchor texts that make plausible search keywords."""
    terms: List[str] = []
    for text, kind in anchors:
        if kind != "category":
            continue
        word = text.strip().lower()
        if re.fullmatch(r"[a-z]{3,20}", word) and word not in terms:
            terms.append(word)
            if len(terms) >= limit:
                break
    return terms
