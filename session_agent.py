"""
🧍 Session Agent
================
A synthetic shopper for one iteration. It learns the storefront as it goes:
every page it reads adds category, product, related, pagination and
breadcrumb links to its own pools, filtered by how interesting they look from
where it currently stands. The next click is drawn from those pools.

Priority of a candidate link:

    0.1 base
    +0.6 matches one of the shopper's interests
    +0.3 category seen from the homepage
    +0.4 product seen from a category
    +0.2 product seen from a product
    +0.3 * shopping intent for products
    capped at 1.0
"""

import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, Set

from faker import Faker

from load_config import LoadTestSettings
from page_parser import (
    ExtractedLinks,
    ajax_rejected,
    extract_cart_item_ids,
    extract_form_key,
    extract_links,
    extract_masked_cart_id,
    has_error_message,
    matches_interest,
)
from storefront_client import PageResponse, StorefrontClient

logger = logging.getLogger(__name__)

fake = Faker()

INTEREST_VOCABULARY = (
    "clothing", "fitness", "electronics", "outdoor", "accessories", "shoes",
    "bags", "watches", "yoga", "running", "women", "men", "gear", "jackets", "tops",
)

CATEGORY_ADMISSION_FLOOR = 0.3
PRODUCT_ADMISSION_FLOOR = 0.2


class PageType(str, Enum):
    """What a URL is expected to be. Also the shopper's navigation context."""
    HOMEPAGE = "homepage"
    CATEGORY = "category"
    PRODUCT = "product"
    PAGINATION = "pagination"
    BREADCRUMB = "breadcrumb"
    CART = "cart"
    CHECKOUT = "checkout"
    SEARCH = "search"
    RELATED_PRODUCT = "related_product"
    IMPULSE = "impulse"


# Related and impulse views are product pages as far as context goes
_CONTEXT_FOR = {
    PageType.RELATED_PRODUCT: PageType.PRODUCT,
    PageType.IMPULSE: PageType.PRODUCT,
}
PRODUCT_PAGE_TYPES = (PageType.PRODUCT, PageType.RELATED_PRODUCT, PageType.IMPULSE)


class NextUrl(NamedTuple):
    url: str
    page_type: PageType


@dataclass
class CartItem:
    product_id: str
    quantity: int
    selected_options: Dict[str, str] = field(default_factory=dict)
    line_id: Optional[str] = None  # cart page line, once read


@dataclass
class NavigationStep:
    url: str
    page_type: PageType
    elapsed: float  # seconds since session start


@dataclass
class VisitResult:
    response: Optional[PageResponse]
    success: bool
    new_links: ExtractedLinks = field(default_factory=ExtractedLinks)
    skipped: bool = False


def priority_score(
    link_type: str,
    context: PageType,
    interesting: bool,
    shopping_intent: float,
) -> float:
    """How attractive a candidate link is from the current context."""
    priority = 0.1
    if interesting:
        priority += 0.6
    if link_type == "category" and context == PageType.HOMEPAGE:
        priority += 0.3
    if link_type == "product":
        if context == PageType.CATEGORY:
            priority += 0.4
        elif context == PageType.PRODUCT:
            priority += 0.2
        priority += shopping_intent * 0.3
    return min(priority, 1.0)


class SessionAgent:
    """Per-iteration shopper state plus the actions that change it."""

    def __init__(
        self,
        client: StorefrontClient,
        settings: LoadTestSettings,
        rng: Optional[random.Random] = None,
        interests: Optional[Sequence[str]] = None,
        shopping_intent: Optional[float] = None,
        intent_floor: float = 0.0,
    ):
        self.client = client
        self.settings = settings
        self.rng = rng or random.Random()
        self.base_url = settings.base_url

        self.interests = frozenset(interests or self.rng.sample(INTEREST_VOCABULARY, self.rng.randint(1, 3)))
        intent = self.rng.random() if shopping_intent is None else shopping_intent
        self.shopping_intent = max(intent_floor, min(max(intent, 0.0), 1.0))

        self.discovered_categories: List[str] = []
        self.discovered_products: List[str] = []
        self.discovered_related: List[str] = []
        self.discovered_pagination: List[str] = []
        self.discovered_breadcrumbs: List[str] = []
        self._interesting_links: Set[str] = set()

        self.visited_pages: Set[str] = set()
        self.navigation_path: List[NavigationStep] = []
        self.cart: List[CartItem] = []
        self.cart_item_ids: List[str] = []
        self.applied_coupon: Optional[str] = None
        self.masked_cart_id: Optional[str] = None
        self.current_context = PageType.HOMEPAGE
        self.form_token: Optional[str] = None
        self.last_response: Optional[PageResponse] = None
        self.started_at = time.monotonic()

    def url(self, path: str) -> str:
        return self.base_url + path

    @property
    def max_cart_size(self) -> int:
        return self.settings.ecommerce_flow.max_products_in_cart

    # =========================================================================
    # BROWSING
    # =========================================================================

    async def visit_page(self, url: str, page_type: PageType) -> VisitResult:
        """Fetch a page once per session and learn from it if it loaded."""
        if url in self.visited_pages:
            return VisitResult(response=None, success=False, skipped=True)
        return await self._load(url, page_type)

    async def _load(self, url: str, page_type: PageType) -> VisitResult:
        response = await self.client.get(url, page_type.value, check_name=f"{page_type.value} page status is 2xx/3xx")
        self.navigation_path.append(NavigationStep(url, page_type, time.monotonic() - self.started_at))
        self.current_context = _CONTEXT_FOR.get(page_type, page_type)

        if not response.ok:
            return VisitResult(response=response, success=False)

        self.visited_pages.add(url)
        self.last_response = response
        if self.form_token is None:
            self.form_token = extract_form_key(response.body)
        new_links = self.extract_links(response)
        self.update_discovery(new_links, page_type)
        return VisitResult(response=response, success=True, new_links=new_links)

    def extract_links(self, response: PageResponse) -> ExtractedLinks:
        discovery = self.settings.url_discovery
        links = extract_links(
            response.body,
            response.url or self.base_url,
            sorted(self.interests),
            self.rng,
            discovery.category_indicators,
            discovery.exclude_patterns,
        )
        # Anchor text and class can make a link interesting even when its URL does not
        self._interesting_links.update(links.interesting)
        return links

    def is_interesting(self, url: str) -> bool:
        return url in self._interesting_links or matches_interest(url, "", "", self.interests)

    def link_priority(self, url: str, link_type: str) -> float:
        return priority_score(link_type, self.current_context, self.is_interesting(url), self.shopping_intent)

    def _admit(self, pool: List[str], url: str):
        cap = self.settings.browsing_patterns.max_discovered_pool_size
        if url in pool or (cap and len(pool) >= cap):
            return
        pool.append(url)

    def update_discovery(self, new_links: ExtractedLinks, page_type: PageType):
        """Fold a page's links into the pools; categories and products must clear a priority floor."""
        for url in new_links.categories:
            if self.link_priority(url, "category") > CATEGORY_ADMISSION_FLOOR:
                self._admit(self.discovered_categories, url)
        for url in new_links.products:
            if self.link_priority(url, "product") > PRODUCT_ADMISSION_FLOOR:
                self._admit(self.discovered_products, url)
        for url in new_links.related:
            self._admit(self.discovered_related, url)
        for url in new_links.pagination:
            self._admit(self.discovered_pagination, url)
        for url in new_links.breadcrumbs:
            self._admit(self.discovered_breadcrumbs, url)

    def get_next_url(self, prefer_category: bool = False) -> Optional[NextUrl]:
        """Pick the next click. Bands are tried in order: related, pagination, breadcrumb, explore."""
        rates = self.settings.browsing_patterns
        if not prefer_category:
            d = self.rng.random()
            related_cut = rates.related_product_follow_rate
            pagination_cut = related_cut + rates.pagination_follow_rate
            breadcrumb_cut = pagination_cut + rates.breadcrumb_follow_rate

            if d < related_cut and self.discovered_related:
                return NextUrl(self.rng.choice(self.discovered_related), PageType.RELATED_PRODUCT)
            if (related_cut <= d < pagination_cut
                    and self.current_context in (PageType.CATEGORY, PageType.PAGINATION)
                    and self.discovered_pagination):
                return NextUrl(self.rng.choice(self.discovered_pagination), PageType.PAGINATION)
            if pagination_cut <= d < breadcrumb_cut and self.discovered_breadcrumbs:
                return NextUrl(self.rng.choice(self.discovered_breadcrumbs), PageType.BREADCRUMB)

        if prefer_category or self.rng.random() < rates.category_explore_rate:
            pool = self.discovered_categories
            matching = [url for url in pool if self.is_interesting(url)]
            if matching and self.rng.random() < rates.interest_match_follow_rate:
                pool = matching
            page_type = PageType.CATEGORY
        else:
            pool = self.discovered_products
            page_type = PageType.PRODUCT

        if not pool:
            return None
        return NextUrl(self.rng.choice(pool), page_type)

    async def search(self, term: str) -> VisitResult:
        """Run a keyword search. Repeating a term sends the request again."""
        url = f"{self.url(self.settings.paths.search)}?q={term}"
        return await self._load(url, PageType.SEARCH)

    # =========================================================================
    # CART
    # =========================================================================

    async def add_to_cart(
        self,
        product_id: Optional[str],
        options: Optional[Dict[str, str]] = None,
        requires_options: bool = False,
    ) -> bool:
        """Put a product in the cart. Refused without a form key, product id, room or required options."""
        if not self.form_token or not product_id:
            return False
        if len(self.cart) >= self.max_cart_size:
            return False
        if requires_options and not options:
            return False

        flow = self.settings.ecommerce_flow
        quantity = self.rng.randint(flow.min_quantity, flow.max_quantity)
        data = {"form_key": self.form_token, "product": product_id, "qty": str(quantity)}
        for attribute_id, value in (options or {}).items():
            data[f"super_attribute[{attribute_id}]"] = value

        response = await self.client.post(
            f"{self.url(self.settings.paths.add_to_cart)}product/{product_id}/",
            "add_to_cart",
            data=data,
            headers={"X-Requested-With": "XMLHttpRequest"},
            check_name="add to cart status is 2xx/3xx",
        )
        if not response.ok or ajax_rejected(response.body):
            return False

        self.cart.append(CartItem(product_id=product_id, quantity=quantity, selected_options=dict(options or {})))
        if self.client.metrics is not None:
            self.client.metrics.add_to_cart_count += 1
        return True

    async def view_cart(self) -> PageResponse:
        """Open the cart page; remembers the server-side line ids for later edits."""
        response = await self.client.get(self.url(self.settings.paths.cart), PageType.CART.value,
                                         check_name="cart page status is 2xx/3xx")
        self.navigation_path.append(NavigationStep(response.url, PageType.CART, time.monotonic() - self.started_at))
        self.current_context = PageType.CART
        if response.ok:
            if self.form_token is None:
                self.form_token = extract_form_key(response.body)
            line_ids = extract_cart_item_ids(response.body)
            if line_ids:
                self._bind_line_ids(line_ids)
        return response

    def _bind_line_ids(self, line_ids: List[str]):
        # An item keeps its line id for as long as the cart page still lists it
        self.cart_item_ids = line_ids
        bound = {item.line_id for item in self.cart if item.line_id in line_ids}
        unbound = iter([line_id for line_id in line_ids if line_id not in bound])
        for item in self.cart:
            if item.line_id not in bound:
                item.line_id = next(unbound, None)

    async def update_quantities(self) -> bool:
        """Change the quantity of every cart line."""
        if not self.cart or not self.form_token or not self.cart_item_ids:
            return False
        flow = self.settings.ecommerce_flow
        new_quantities = {
            line_id: self.rng.randint(flow.min_quantity, flow.max_quantity)
            for line_id in self.cart_item_ids
        }
        data = {"form_key": self.form_token, "update_cart_action": "update_qty"}
        for line_id, quantity in new_quantities.items():
            data[f"cart[{line_id}][qty]"] = str(quantity)

        response = await self.client.post(self.url(self.settings.paths.update_cart), "cart_update", data=data,
                                          check_name="cart update status is 2xx/3xx")
        if not response.ok:
            return False
        for item in self.cart:
            if item.line_id in new_quantities:
                item.quantity = new_quantities[item.line_id]
        return True

    async def remove_item(self) -> bool:
        """Remove one random line from the cart."""
        editable = [item for item in self.cart if item.line_id in self.cart_item_ids]
        if not editable or not self.form_token:
            return False
        item = self.rng.choice(editable)
        response = await self.client.post(
            self.url(self.settings.paths.remove_from_cart),
            "cart_update",
            data={"id": item.line_id, "form_key": self.form_token},
            check_name="cart remove status is 2xx/3xx",
        )
        if not response.ok:
            return False
        self.cart.remove(item)
        self.cart_item_ids.remove(item.line_id)
        return True

    async def apply_coupon(self) -> bool:
        """Try one of the candidate coupon codes. A rejected code is an outcome, not an error."""
        codes = self.settings.ecommerce_flow.coupon_codes
        if not codes or not self.form_token:
            return False
        code = self.rng.choice(codes)
        if self.client.metrics is not None:
            self.client.metrics.coupon_attempts += 1
        response = await self.client.post(
            self.url(self.settings.paths.apply_coupon),
            "cart_update",
            data={"form_key": self.form_token, "coupon_code": code, "remove": "0"},
            check_name="coupon status is 2xx/3xx",
        )
        if not response.ok or has_error_message(response.body):
            return False
        self.applied_coupon = code
        return True

    # =========================================================================
    # CHECKOUT AND API
    # =========================================================================

    async def checkout(self) -> bool:
        """Open checkout, then send the guest e-mail check and a shipping estimate."""
        response = await self.client.get(self.url(self.settings.paths.checkout), PageType.CHECKOUT.value,
                                         check_name="checkout page status is 2xx/3xx")
        self.navigation_path.append(NavigationStep(response.url, PageType.CHECKOUT, time.monotonic() - self.started_at))
        self.current_context = PageType.CHECKOUT
        if self.client.metrics is not None:
            self.client.metrics.checkout_visits += 1
        if not response.ok:
            return False

        paths = self.settings.paths
        await self.client.post(
            self.url(paths.email_available),
            "checkout",
            json_body={"customerEmail": fake.email()},
            headers={"Content-Type": "application/json", "X-Requested-With": "XMLHttpRequest"},
            check_name="guest email check status is 2xx/3xx",
        )

        self.masked_cart_id = extract_masked_cart_id(response.body)
        if self.masked_cart_id:
            address = {
                "street": [fake.street_address()],
                "city": fake.city(),
                "region": fake.state(),
                "postcode": fake.postcode(),
                "country_id": "US",
                "firstname": fake.first_name(),
                "lastname": fake.last_name(),
                "telephone": fake.numerify("555-###-####"),
            }
            await self.client.post(
                self.url(paths.estimate_shipping.format(cart_id=self.masked_cart_id)),
                "checkout",
                json_body={"address": address},
                headers={"Content-Type": "application/json", "X-Requested-With": "XMLHttpRequest"},
                check_name="shipping estimate status is 2xx/3xx",
            )
        return True

    async def api_interaction(self, search_terms: Sequence[str]) -> PageResponse:
        """One API-style call: a catalog search suggestion, a cart totals query or a store query."""
        paths = self.settings.paths
        headers = {"Accept": "application/json", "X-Requested-With": "XMLHttpRequest"}
        roll = self.rng.random()
        if roll < 0.4 and search_terms:
            url = f"{self.url(paths.search_suggest)}?q={self.rng.choice(search_terms)}"
        elif roll < 0.6 and self.masked_cart_id:
            url = self.url(f"/rest/V1/guest-carts/{self.masked_cart_id}/totals")
        else:
            url = self.url(self.rng.choice(self.settings.api.endpoints))
        return await self.client.get(url, "api", headers=headers, check_name="api query status is 2xx/3xx")
