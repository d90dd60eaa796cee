"""
⚙️ Load Test Configuration
==========================
Resolves the load test settings from built-in defaults and an optional
YAML/JSON settings document.

Document layout (camelCase or snake_case keys, nested or dotted):

    loadTest:
      virtualUsers: 50
      sustainedDuration: "3m"
    browsingPatterns:
      relatedProductFollowRate: 0.3
    urlDiscovery:
      excludePatterns:
        - /admin
        - /checkout

Anything missing falls back to its default. A document that does not parse is
split at its top-level sections and every section is parsed on its own, so
one broken section only costs the defaults of that section.
"""

import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """Raised when the run cannot start (missing or invalid target origin)."""


# =============================================================================
# FIELD HELPERS
# =============================================================================

def _duration(default: float) -> Any:
    return field(default=default, metadata={"kind": "duration"})


def _probability(default: float) -> Any:
    return field(default=default, metadata={"kind": "probability"})


def _strings(*values: str) -> Any:
    return field(default=tuple(values), metadata={"kind": "strings"})


_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[int, float, str]) -> float:
    """Parse a duration ("500ms", "30s", "2m", "1h" or plain seconds) into seconds."""
    if isinstance(value, bool):
        raise ValueError(f"Not a duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Negative duration: {value!r}")
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"Not a duration: {value!r}")
    amount, unit = match.groups()
    return float(amount) * _DURATION_UNITS[(unit or "s").lower()]


def format_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        return f"{int(seconds // 60)}m"
    if seconds < 1 and seconds > 0:
        return f"{int(seconds * 1000)}ms"
    return f"{seconds:g}s"


# =============================================================================
# SETTINGS SECTIONS
# =============================================================================

@dataclass(frozen=True)
class TargetConfig:
    base_url: str = ""


@dataclass(frozen=True)
class LoadShapeConfig:
    """Virtual users and stage durations (seconds)."""
    virtual_users: int = 20
    ramp_up_duration: float = _duration(30.0)
    sustained_duration: float = _duration(120.0)
    ramp_down_duration: float = _duration(10.0)
    request_timeout: float = _duration(30.0)
    user_agent: str = "StorefrontLoadTest/1.0"


@dataclass(frozen=True)
class PerformanceConfig:
    """Pass/fail limits. Durations are milliseconds, the error threshold a rate."""
    http_error_threshold: float = _probability(0.05)
    http_duration_threshold: float = 2000.0
    homepage_duration_threshold: float = 2000.0
    product_duration_threshold: float = 3000.0
    category_duration_threshold: float = 3000.0
    search_duration_threshold: float = 2500.0
    cart_duration_threshold: float = 2000.0
    add_to_cart_duration_threshold: float = 3000.0
    checkout_duration_threshold: float = 4000.0
    api_duration_threshold: float = 1500.0


@dataclass(frozen=True)
class UserBehaviorConfig:
    min_think_time: float = _duration(1.0)
    max_think_time: float = _duration(4.0)
    browse_journey_percentage: float = _probability(0.7)
    search_journey_percentage: float = _probability(0.2)
    cart_journey_percentage: float = _probability(0.1)
    min_browsing_steps: int = 3
    max_browsing_steps: int = 8
    distraction_rate: float = _probability(0.1)


@dataclass(frozen=True)
class EcommerceFlowConfig:
    add_to_cart_rate: float = _probability(0.3)
    impulse_add_to_cart_rate: float = _probability(0.6)
    cart_modification_rate: float = _probability(0.3)
    checkout_completion_rate: float = _probability(0.4)
    idle_cart_view_rate: float = _probability(0.1)
    max_products_in_cart: int = 5
    min_quantity: int = 1
    max_quantity: int = 3
    category_return_rate: float = _probability(0.3)
    coupon_codes: Tuple[str, ...] = _strings("SAVE10", "WELCOME15", "FREESHIP", "SUMMER20", "H20")


@dataclass(frozen=True)
class BrowsingPatternsConfig:
    """Follow rates consumed by the next-URL decision, in band order."""
    related_product_follow_rate: float = _probability(0.25)
    pagination_follow_rate: float = _probability(0.15)
    breadcrumb_follow_rate: float = _probability(0.1)
    category_explore_rate: float = _probability(0.75)
    interest_match_follow_rate: float = _probability(0.7)
    max_discovered_pool_size: int = 250


@dataclass(frozen=True)
class ApiConfig:
    enabled: bool = True
    traffic_percentage: float = _probability(0.15)
    search_percentage: float = _probability(0.1)
    endpoints: Tuple[str, ...] = _strings(
        "/rest/V1/directory/currency",
        "/rest/V1/directory/countries",
        "/rest/V1/store/storeConfigs",
    )


@dataclass(frozen=True)
class CacheBypassConfig:
    enabled: bool = True
    percentage: float = _probability(0.3)


@dataclass(frozen=True)
class UrlDiscoveryConfig:
    enabled: bool = True
    deep_crawl: bool = True
    max_category_pages: int = 3
    max_products: int = 50
    max_categories: int = 20
    validate_urls: bool = False
    max_validations: int = 20
    validation_concurrency: int = 5
    exclude_patterns: Tuple[str, ...] = _strings(
        "/admin", "/checkout", "/customer", "/wishlist", "/catalogsearch",
        "/search", "/contact", "/privacy", "/terms", "/legal", "/sales/",
        "/newsletter", "/review/", "/sendfriend", "/cms/",
    )
    category_indicators: Tuple[str, ...] = _strings(
        "category", "/c/", "collection", "women", "men", "gear", "training",
        "sale", "new", "shop",
    )
    fallback_products: Tuple[str, ...] = _strings(
        "/simple-product.html", "/configurable-product.html", "/virtual-product.html",
        "/downloadable-product.html", "/bundle-product.html", "/grouped-product.html",
        "/sample-product-1.html", "/sample-product-2.html", "/sample-product-3.html",
        "/sample-product-4.html", "/sample-product-5.html", "/sample-product-6.html",
        "/sample-product-7.html", "/sample-product-8.html", "/sample-product-9.html",
        "/sample-product-10.html",
    )
    fallback_categories: Tuple[str, ...] = _strings(
        "women", "men", "gear", "training", "electronics", "bags", "watches",
        "fitness-equipment", "books", "video", "category", "tops-women",
        "bottoms-women", "tees-men", "pants-men", "shorts-men",
    )
    fallback_search_terms: Tuple[str, ...] = _strings(
        "shirt", "pants", "shoes", "bag", "watch", "dress",
    )


@dataclass(frozen=True)
class PathsConfig:
    cart: str = "/checkout/cart/"
    checkout: str = "/checkout/"
    search: str = "/catalogsearch/result/"
    add_to_cart: str = "/checkout/cart/add/"
    update_cart: str = "/checkout/cart/updatePost/"
    remove_from_cart: str = "/checkout/cart/delete/"
    apply_coupon: str = "/checkout/cart/couponPost/"
    search_suggest: str = "/search/ajax/suggest/"
    email_available: str = "/rest/V1/customers/isEmailAvailable"
    estimate_shipping: str = "/rest/V1/guest-carts/{cart_id}/estimate-shipping-methods"


@dataclass(frozen=True)
class LoadTestSettings:
    """Every tunable of a run, resolved once at start-up."""
    target: TargetConfig = field(default_factory=TargetConfig)
    load_test: LoadShapeConfig = field(default_factory=LoadShapeConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    user_behavior: UserBehaviorConfig = field(default_factory=UserBehaviorConfig)
    ecommerce_flow: EcommerceFlowConfig = field(default_factory=EcommerceFlowConfig)
    browsing_patterns: BrowsingPatternsConfig = field(default_factory=BrowsingPatternsConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    cache_bypass: CacheBypassConfig = field(default_factory=CacheBypassConfig)
    url_discovery: UrlDiscoveryConfig = field(default_factory=UrlDiscoveryConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)

    @property
    def base_url(self) -> str:
        return self.target.base_url.rstrip("/")


# =============================================================================
# DOCUMENT LOADING
# =============================================================================

_SECTION_HEADER_RE = re.compile(r"^([A-Za-z_][\w.]*)\s*:")


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _split_sections(text: str) -> List[Tuple[str, str]]:
    """Split a document into (section name, section text) chunks at column-0 keys."""
    sections: List[Tuple[str, str]] = []
    name, lines = None, []
    for line in text.splitlines():
        match = _SECTION_HEADER_RE.match(line)
        if match:
            if name is not None:
                sections.append((name, "\n".join(lines)))
            name, lines = match.group(1), [line]
        elif name is not None:
            lines.append(line)
    if name is not None:
        sections.append((name, "\n".join(lines)))
    return sections


def parse_document(text: str) -> Dict[str, Any]:
    """Parse a settings document, salvaging the sections that parse on their own."""
    if not text.strip():
        return {}
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        logger.warning("Settings document does not parse (%s); reading it section by section", e)
        data = {}
        for name, chunk in _split_sections(text):
            try:
                parsed = yaml.safe_load(chunk)
            except yaml.YAMLError:
                logger.warning("Section %r does not parse; using its defaults", name)
                continue
            if isinstance(parsed, dict):
                data.update(parsed)
    if not isinstance(data, dict):
        logger.warning("Settings document is not a mapping; using defaults")
        return {}
    return data


def load_document(path: Optional[Union[str, Path]]) -> Dict[str, Any]:
    """Read a settings document from disk. A missing file means defaults."""
    if not path:
        return {}
    path = Path(path)
    if not path.is_file():
        logger.info("No settings document at %s; using defaults", path)
        return {}
    return parse_document(path.read_text(encoding="utf-8"))


def _expand_dotted(document: Dict[str, Any]) -> Dict[str, Any]:
    """Turn {"loadTest.virtualUsers": 10} into {"loadTest": {"virtualUsers": 10}}."""
    expanded: Dict[str, Any] = {}
    for key, value in document.items():
        key = str(key)
        if "." in key:
            section, _, rest = key.partition(".")
            target = expanded.setdefault(section, {})
            if isinstance(target, dict):
                target.update(_expand_dotted({rest: value}))
            continue
        if isinstance(value, dict) and isinstance(expanded.get(key), dict):
            expanded[key].update(_expand_dotted(value))
        else:
            expanded[key] = _expand_dotted(value) if isinstance(value, dict) else value
    return expanded


def _lookup(mapping: Dict[str, Any], name: str) -> Tuple[bool, Any]:
    for key in (_camel(name), name):
        if key in mapping:
            return True, mapping[key]
    return False, None


# =============================================================================
# COERCION
# =============================================================================

_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}


def _coerce(value: Any, kind: str, default: Any) -> Any:
    if kind == "duration":
        return parse_duration(value)
    if kind == "strings":
        if isinstance(value, str):
            return tuple(item.strip() for item in value.split(",") if item.strip())
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        raise ValueError(f"Expected a list, got {value!r}")
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise ValueError(f"Expected a boolean, got {value!r}")
    if isinstance(default, int) and kind != "probability":
        if isinstance(value, bool):
            raise ValueError(f"Expected an integer, got {value!r}")
        if isinstance(value, float) and value.is_integer():
            count = int(value)
        elif isinstance(value, int):
            count = value
        else:
            count = int(str(value).strip())
        if count < 0:
            raise ValueError(f"Expected a non-negative integer, got {value!r}")
        return count
    if isinstance(default, (int, float)):
        if isinstance(value, bool):
            raise ValueError(f"Expected a number, got {value!r}")
        number = float(value)
        if kind == "probability" and not 0.0 <= number <= 1.0:
            clamped = min(max(number, 0.0), 1.0)
            logger.warning("Probability %r outside [0, 1]; clamped to %s", value, clamped)
            return clamped
        return number
    if value is None:
        raise ValueError("Expected a string, got null")
    return str(value)


def _resolve_section(section_cls: type, values: Any, section_name: str) -> Any:
    if values is None:
        return section_cls()
    if not isinstance(values, dict):
        logger.warning("Section %r is not a mapping; using its defaults", section_name)
        return section_cls()
    defaults = section_cls()
    overrides = {}
    for f in fields(section_cls):
        found, raw = _lookup(values, f.name)
        if not found:
            continue
        default = getattr(defaults, f.name)
        try:
            overrides[f.name] = _coerce(raw, f.metadata.get("kind", ""), default)
        except (TypeError, ValueError) as e:
            logger.warning("%s.%s: %s; using default %r", section_name, _camel(f.name), e, default)
    return replace(defaults, **overrides)


# =============================================================================
# VALIDATION
# =============================================================================

def _normalise_rates(section: Any, names: List[str], label: str) -> Any:
    total = sum(getattr(section, name) for name in names)
    if total <= 1.0 + 1e-9:
        return section
    logger.warning("%s rates sum to %.2f; scaling them down to sum to 1", label, total)
    return replace(section, **{name: getattr(section, name) / total for name in names})


def _ordered_pair(section: Any, low: str, high: str) -> Any:
    if getattr(section, low) <= getattr(section, high):
        return section
    logger.warning("%s > %s; swapping them", low, high)
    return replace(section, **{low: getattr(section, high), high: getattr(section, low)})


def _validate(settings: LoadTestSettings) -> LoadTestSettings:
    browsing = _normalise_rates(
        settings.browsing_patterns,
        ["related_product_follow_rate", "pagination_follow_rate", "breadcrumb_follow_rate"],
        "Browsing band",
    )
    behavior = _normalise_rates(
        settings.user_behavior,
        ["browse_journey_percentage", "search_journey_percentage", "cart_journey_percentage"],
        "Journey mix",
    )
    behavior = _ordered_pair(behavior, "min_think_time", "max_think_time")
    behavior = _ordered_pair(behavior, "min_browsing_steps", "max_browsing_steps")
    flow = _ordered_pair(settings.ecommerce_flow, "min_quantity", "max_quantity")

    # Empty fallback lists would leave discovery with nothing to fall back on
    discovery = settings.url_discovery
    defaults = UrlDiscoveryConfig()
    for name in ("fallback_products", "fallback_categories", "fallback_search_terms"):
        if not getattr(discovery, name):
            logger.warning("urlDiscovery.%s is empty; using the built-in list", _camel(name))
            discovery = replace(discovery, **{name: getattr(defaults, name)})

    api = settings.api
    if not api.endpoints:
        logger.warning("api.endpoints is empty; using the built-in list")
        api = replace(api, endpoints=ApiConfig().endpoints)

    return replace(
        settings,
        browsing_patterns=browsing,
        user_behavior=behavior,
        ecommerce_flow=flow,
        url_discovery=discovery,
        api=api,
    )


# =============================================================================
# PUBLIC API
# =============================================================================

def resolve_config(document: Optional[Dict[str, Any]] = None) -> LoadTestSettings:
    """Merge a parsed settings document over the defaults."""
    document = _expand_dotted(document or {})
    sections = {}
    for f in fields(LoadTestSettings):
        _, values = _lookup(document, f.name)
        sections[f.name] = _resolve_section(f.default_factory, values, _camel(f.name))
    return _validate(LoadTestSettings(**sections))


def require_base_url(settings: LoadTestSettings) -> str:
    """Return the target origin or fail fast before any traffic is generated."""
    base_url = settings.base_url
    if not base_url:
        raise ConfigurationError(
            "No target origin given. Pass --base-url, set BASE_URL or add target.baseUrl to the settings document."
        )
    if not re.match(r"^https?://[^/\s]+", base_url):
        raise ConfigurationError(
            f"Invalid target origin {base_url!r}. Include http:// or https:// (e.g. https://your-magento-site.com)"
        )
    return base_url


def load_settings(
    path: Optional[Union[str, Path]] = None,
    base_url: Optional[str] = None,
) -> LoadTestSettings:
    """Load, resolve and validate the settings for a run."""
    settings = resolve_config(load_document(path))
    base_url = base_url or os.environ.get("BASE_URL") or settings.target.base_url
    settings = replace(settings, target=TargetConfig(base_url=(base_url or "").strip()))
    require_base_url(settings)
    return settings
