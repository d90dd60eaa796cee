"""Shared fixtures: settings factory, a scripted storefront client and page templates."""

import random
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from load_config import LoadTestSettings, TargetConfig, resolve_config
from load_metrics import MetricsRegistry, build_thresholds
from storefront_client import PageResponse

BASE_URL = "http://shop.test"


def make_settings(document: Optional[Dict] = None, base_url: str = BASE_URL) -> LoadTestSettings:
    """Resolved settings with zero think time, merged with a (dotted-key) override document."""
    merged = {
        "userBehavior.minThinkTime": 0,
        "userBehavior.maxThinkTime": 0,
        "cacheBypass.enabled": False,
    }
    merged.update(document or {})
    settings = resolve_config(merged)
    return replace(settings, target=TargetConfig(base_url=base_url))


class FixedRandom(random.Random):
    """random() always returns the same value; choice/randint still come from a seeded stream."""

    def __init__(self, value: float, seed: int = 0):
        super().__init__(seed)
        self.value = value

    def random(self):
        return self.value


Route = Callable[[str, str], PageResponse]


class FakeClient:
    """Scripted stand-in for StorefrontClient. Records every call; feeds metrics like the real one."""

    def __init__(self, routes: Optional[Dict[str, PageResponse]] = None, handler: Optional[Route] = None,
                 metrics: Optional[MetricsRegistry] = None):
        self.routes = routes or {}
        self.handler = handler
        self.metrics = metrics
        self.calls: List[Tuple[str, str, str, dict]] = []

    def _respond(self, method: str, url: str) -> PageResponse:
        if url in self.routes:
            return self.routes[url]
        if self.handler is not None:
            return self.handler(method, url)
        return PageResponse(url=url, status=200, body="")

    async def request(self, method: str, url: str, page_type: str, **kwargs) -> PageResponse:
        self.calls.append((method, url, page_type, kwargs))
        response = self._respond(method, url)
        if response.url != url:
            response = PageResponse(url=url, status=response.status, body=response.body,
                                    latency_ms=response.latency_ms, error=response.error)
        if self.metrics is not None:
            self.metrics.record_request(page_type, response.status, 12.5, kwargs.get("check_name"))
        return response

    async def get(self, url: str, page_type: str, **kwargs) -> PageResponse:
        return await self.request("GET", url, page_type, **kwargs)

    async def post(self, url: str, page_type: str, **kwargs) -> PageResponse:
        return await self.request("POST", url, page_type, **kwargs)

    def urls(self, method: Optional[str] = None) -> List[str]:
        return [url for m, url, _, _ in self.calls if method is None or m == method]


def page(body: str, status: int = 200) -> PageResponse:
    return PageResponse(url="", status=status, body=body)


HOMEPAGE_HTML = """
<html><body>
<nav class="navigation">
  <ul>
    <li><a href="/women.html">Women</a></li>
    <li><a href="/gear.html">Gear</a></li>
    <li><a href="/training.html">Training</a></li>
  </ul>
</nav>
<div class="products-grid">
  <a class="product-item-link" href="/juno-jacket.html">Juno Jacket</a>
  <a class="product-item-link" href="/hero-hoodie.html">Hero Hoodie</a>
</div>
<a href="https://cdn.other.example/promo.html">Promo</a>
<a href="/media/banner.jpg">Banner</a>
<a href="/customer/account/">My Account</a>
<a href="mailto:help@shop.test">Mail us</a>
<input name="form_key" type="hidden" value="FK123abc" />
</body></html>
"""

PRODUCT_HTML = """
<html><body>
<div class="breadcrumbs"><ul><li><a href="/women.html">Women</a></li></ul></div>
<form id="product_addtocart_form">
  <input type="hidden" name="product" value="42" />
  <input name="form_key" type="hidden" value="FK123abc" />
</form>
<div class="block related">
  <a class="product-item-link" href="/argus-tee.html">Argus Tee</a>
</div>
</body></html>
"""

CONFIGURABLE_HTML = """
<input type="hidden" name="product" value="77" />
<select name="super_attribute[93]" class="super-attribute-select">
  <option value="">Choose an Option...</option>
  <option value="49">Black</option>
  <option value="50">Blue</option>
</select>
<select name="super_attribute[142]">
  <option value="">Choose an Option...</option>
  <option value="167">M</option>
</select>
"""

CART_HTML = """
<form action="/checkout/cart/updatePost/">
  <input name="form_key" type="hidden" value="FK123abc" />
  <input name="cart[1001][qty]" value="1" />
  <input name="cart[1002][qty]" value="2" />
</form>
"""

CHECKOUT_HTML = """
<script>window.checkoutConfig = {"quoteData":{"entity_id":"aB3dE5fG7hJ9kL1mN3pQ5rS7tU9vW1xY"}};</script>
"""


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def metrics():
    return MetricsRegistry(thresholds=build_thresholds(make_settings().performance))
