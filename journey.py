"""
🛒 Journey Orchestrator
=======================
One iteration of one virtual user:

    start → homepage → [search] → browsing loop → [cart] → [checkout] → [api] → [search] → end

The browsing loop is the only stage that repeats. Bracketed stages are gated
by independent probability draws. A failed request never ends the iteration;
the shopper just moves on to the next stage.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from load_config import LoadTestSettings
from load_metrics import MetricsRegistry
from page_parser import choose_options, extract_product_id, extract_product_options, is_configurable_product
from session_agent import PRODUCT_PAGE_TYPES, NextUrl, PageType, SessionAgent
from storefront_client import PageResponse, StorefrontClient
from url_discovery import SeedData

logger = logging.getLogger(__name__)


class JourneyType(Enum):
    """Shopper archetypes drawn from the journey mix."""
    BROWSE = "browse"
    SEARCH = "search"
    CART = "cart"


# Cart-minded shoppers start with at least this much shopping intent
CART_JOURNEY_INTENT_FLOOR = 0.7

# Dwell multipliers applied to the drawn think time
THINK_TIME_FACTORS: Dict[PageType, float] = {
    PageType.PRODUCT: 1.5,
    PageType.IMPULSE: 1.5,
    PageType.RELATED_PRODUCT: 1.2,
    PageType.SEARCH: 1.2,
    PageType.PAGINATION: 0.5,
}

# Picks drawn from the shopper's own pools before falling back to seed data
MAX_PICKS_PER_STEP = 3


@dataclass
class JourneyReport:
    """What one iteration did, for the live table and the tests."""
    journey_type: JourneyType
    planned_steps: int = 0
    steps_taken: int = 0
    discovered_links_used: int = 0
    seed_links_used: int = 0
    failed_pages: int = 0
    add_to_cart_attempts: int = 0
    impulse_view: bool = False
    cart_viewed: bool = False
    cart_modified: bool = False
    checkout_visited: bool = False
    api_called: bool = False
    searched: bool = False
    cart_size: int = 0


class JourneyOrchestrator:
    """Runs journeys for one virtual user against the shared seed data."""

    def __init__(
        self,
        settings: LoadTestSettings,
        seed_data: SeedData,
        metrics: Optional[MetricsRegistry] = None,
        rng: Optional[random.Random] = None,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.settings = settings
        self.seed_data = seed_data
        self.metrics = metrics
        self.rng = rng or random.Random()
        self._stop_event = stop_event or asyncio.Event()

    def _stopping(self) -> bool:
        return self._stop_event.is_set()

    def select_journey_type(self) -> JourneyType:
        """Select a journey type based on the configured mix."""
        behavior = self.settings.user_behavior
        r = self.rng.random()
        cumulative = 0.0
        for journey_type, share in (
            (JourneyType.BROWSE, behavior.browse_journey_percentage),
            (JourneyType.SEARCH, behavior.search_journey_percentage),
            (JourneyType.CART, behavior.cart_journey_percentage),
        ):
            cumulative += share
            if r < cumulative:
                return journey_type
        return JourneyType.BROWSE

    def think_time(self, page_type: PageType) -> float:
        behavior = self.settings.user_behavior
        base = self.rng.uniform(behavior.min_think_time, behavior.max_think_time)
        return base * THINK_TIME_FACTORS.get(page_type, 1.0)

    async def think(self, page_type: PageType):
        """Simulate human think time between actions."""
        await asyncio.sleep(self.think_time(page_type))

    # =========================================================================
    # URL SELECTION
    # =========================================================================

    def next_from_agent(self, agent: SessionAgent, prefer_category: bool = False) -> Optional[NextUrl]:
        for _ in range(MAX_PICKS_PER_STEP):
            pick = agent.get_next_url(prefer_category=prefer_category)
            if pick is None:
                return None
            if pick.url not in agent.visited_pages:
                return pick
        return None

    def next_from_seed(self, agent: SessionAgent) -> Optional[NextUrl]:
        """An unvisited seed URL, category or product, or None once both pools are used up."""
        categories = [url for url in self.seed_data.categories if url not in agent.visited_pages]
        products = [url for url in self.seed_data.products if url not in agent.visited_pages]
        explore_categories = self.rng.random() < self.settings.browsing_patterns.category_explore_rate
        ordered = [(categories, PageType.CATEGORY), (products, PageType.PRODUCT)]
        if not explore_categories:
            ordered.reverse()
        for pool, page_type in ordered:
            if pool:
                return NextUrl(self.rng.choice(pool), page_type)
        return None

    # =========================================================================
    # ACTIONS
    # =========================================================================

    async def maybe_add_to_cart(self, agent: SessionAgent, response: Optional[PageResponse], rate: float,
                                report: JourneyReport) -> bool:
        """Roll against rate and, if it hits, add the product shown on the page."""
        if response is None or self.rng.random() >= min(rate, 1.0):
            return False
        product_id = extract_product_id(response.body)
        if not product_id:
            return False
        requires_options = is_configurable_product(response.body)
        options = choose_options(extract_product_options(response.body), self.rng) if requires_options else {}
        report.add_to_cart_attempts += 1
        return await agent.add_to_cart(product_id, options, requires_options=requires_options)

    async def impulse_view(self, agent: SessionAgent, report: JourneyReport):
        """A distraction: one extra product view with a raised add-to-cart chance."""
        pool = [url for url in agent.discovered_products + list(self.seed_data.products)
                if url not in agent.visited_pages]
        if not pool:
            return
        report.impulse_view = True
        result = await agent.visit_page(self.rng.choice(pool), PageType.IMPULSE)
        if result.success:
            await self.maybe_add_to_cart(agent, result.response, self.settings.ecommerce_flow.impulse_add_to_cart_rate,
                                         report)
        await self.think(PageType.IMPULSE)

    async def modify_cart(self, agent: SessionAgent, report: JourneyReport):
        action = self.rng.choice((agent.update_quantities, agent.remove_item, agent.apply_coupon))
        report.cart_modified = await action()
        await self.think(PageType.CART)

    # =========================================================================
    # JOURNEY
    # =========================================================================

    async def browse(self, agent: SessionAgent, report: JourneyReport):
        """The browsing loop: bounded by the planned step count, stops early when out of URLs."""
        behavior = self.settings.user_behavior
        flow = self.settings.ecommerce_flow
        report.planned_steps = self.rng.randint(behavior.min_browsing_steps, behavior.max_browsing_steps)
        distraction_step = None
        if report.planned_steps and self.rng.random() < behavior.distraction_rate:
            distraction_step = self.rng.randrange(report.planned_steps)

        prefer_category = False
        for step in range(report.planned_steps):
            if self._stopping():
                break

            pick = self.next_from_agent(agent, prefer_category)
            if pick is not None:
                report.discovered_links_used += 1
            else:
                pick = self.next_from_seed(agent)
                if pick is None:
                    break
                report.seed_links_used += 1

            result = await agent.visit_page(pick.url, pick.page_type)
            report.steps_taken += 1
            prefer_category = False
            if not result.success:
                report.failed_pages += 1
            elif pick.page_type in PRODUCT_PAGE_TYPES:
                rate = flow.add_to_cart_rate * (0.5 + agent.shopping_intent)
                await self.maybe_add_to_cart(agent, result.response, rate, report)
                prefer_category = self.rng.random() < flow.category_return_rate

            await self.think(pick.page_type)

            if step == distraction_step and not self._stopping():
                await self.impulse_view(agent, report)

    async def run_iteration(self, client: StorefrontClient) -> JourneyReport:
        """Run one full journey with a fresh session agent."""
        journey_type = self.select_journey_type()
        report = JourneyReport(journey_type=journey_type)
        agent = SessionAgent(
            client,
            self.settings,
            rng=self.rng,
            intent_floor=CART_JOURNEY_INTENT_FLOOR if journey_type == JourneyType.CART else 0.0,
        )
        flow = self.settings.ecommerce_flow
        api = self.settings.api
        search_terms = self.seed_data.search_terms

        await agent.visit_page(self.settings.base_url + "/", PageType.HOMEPAGE)
        await self.think(PageType.HOMEPAGE)

        if journey_type == JourneyType.SEARCH and search_terms and not self._stopping():
            result = await agent.search(self.rng.choice(search_terms))
            report.searched = result.response is not None
            await self.think(PageType.SEARCH)

        await self.browse(agent, report)

        if not self._stopping():
            if agent.cart:
                await agent.view_cart()
                report.cart_viewed = True
                await self.think(PageType.CART)
                if self.rng.random() < flow.cart_modification_rate:
                    await self.modify_cart(agent, report)
                if agent.cart and self.rng.random() < flow.checkout_completion_rate:
                    report.checkout_visited = True
                    await agent.checkout()
                    await self.think(PageType.CHECKOUT)
            elif self.rng.random() < flow.idle_cart_view_rate:
                await agent.view_cart()
                report.cart_viewed = True
                await self.think(PageType.CART)

        if not self._stopping() and api.enabled and self.rng.random() < api.traffic_percentage:
            await agent.api_interaction(search_terms)
            report.api_called = True

        if not self._stopping() and search_terms and self.rng.random() < api.search_percentage:
            result = await agent.search(self.rng.choice(search_terms))
            report.searched = result.response is not None

        report.cart_size = len(agent.cart)
        if self.metrics is not None:
            self.metrics.iterations += 1
        logger.debug(
            "%s journey: %d/%d steps, %d discovered / %d seed links, cart %d",
            journey_type.value, report.steps_taken, report.planned_steps,
            report.discovered_links_used, report.seed_links_used, report.cart_size,
        )
        return report
