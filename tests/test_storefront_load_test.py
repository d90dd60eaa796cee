"""
End-to-end tests against a local aiohttp storefront

Covers the request helper (cache bypass, timeouts, refused connections), the
static-seed scenario, the staged runner and the CLI exit codes.
"""

import asyncio
import json
import random

import aiohttp
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from journey import JourneyOrchestrator
from load_metrics import MetricsRegistry
from storefront_client import CACHE_BUST_PARAM, StorefrontClient
from storefront_load_test import StorefrontLoadTestEngine, main, target_virtual_users, total_duration
from url_discovery import UrlDiscovery, fallback_seed_data

from .conftest import make_settings

BLANK_PAGE = "<html><body><h1>Welcome</h1></body></html>"


@pytest_asyncio.fixture
async def storefront():
    """Storefront that answers 200 with an anchor-free page on every path, except /slow."""
    seen = []

    async def handler(request):
        seen.append(request)
        if request.path == "/slow":
            await asyncio.sleep(2)
        return web.Response(text=BLANK_PAGE, content_type="text/html")

    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", handler)
    server = TestServer(app)
    await server.start_server()
    server.seen = seen
    yield server
    await server.close()


def _base_url(server):
    return f"http://{server.host}:{server.port}"


class TestStorefrontClient:
    async def test_cache_bypass(self, storefront):
        settings = make_settings({"cacheBypass": {"enabled": True, "percentage": 1.0}}, base_url=_base_url(storefront))
        metrics = MetricsRegistry()
        async with aiohttp.ClientSession() as session:
            client = StorefrontClient(session, settings, metrics=metrics)
            response = await client.get(_base_url(storefront) + "/women.html", "category")

        assert response.ok
        request = storefront.seen[-1]
        assert CACHE_BUST_PARAM in request.query
        assert request.headers["Cache-Control"] == "no-cache"
        assert request.headers["User-Agent"] == "StorefrontLoadTest/1.0"
        assert metrics.trends["category_page_duration"].count == 1

    async def test_no_bypass(self, storefront):
        settings = make_settings(base_url=_base_url(storefront))
        async with aiohttp.ClientSession() as session:
            await StorefrontClient(session, settings).get(_base_url(storefront) + "/women.html", "category")
        assert CACHE_BUST_PARAM not in storefront.seen[-1].query

    async def test_timeout_is_status_zero(self, storefront):
        settings = make_settings(base_url=_base_url(storefront))
        metrics = MetricsRegistry()
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=0.2)) as session:
            response = await StorefrontClient(session, settings, metrics=metrics).get(
                _base_url(storefront) + "/slow", "product")
        assert response.status == 0
        assert response.error == "Timeout"
        assert metrics.failed_requests == 1
        assert metrics.trends["product_page_duration"].count == 0

    async def test_refused_connection_is_status_zero(self, unused_tcp_port):
        settings = make_settings(base_url=f"http://127.0.0.1:{unused_tcp_port}")
        async with aiohttp.ClientSession() as session:
            response = await StorefrontClient(session, settings).get(settings.base_url + "/", "homepage")
        assert response.status == 0
        assert response.error
        assert not response.ok


async def test_anchor_free_site_runs_on_seed_urls_only(storefront):
    settings = make_settings({"loadTest.virtualUsers": 10}, base_url=_base_url(storefront))

    async with aiohttp.ClientSession() as session:
        seed = await UrlDiscovery(StorefrontClient(session, settings), settings).discover()
    assert seed == fallback_seed_data(settings)

    metrics = MetricsRegistry()

    async def virtual_user(vu_id):
        orchestrator = JourneyOrchestrator(settings, seed, metrics=metrics, rng=random.Random(vu_id))
        async with aiohttp.ClientSession(cookie_jar=aiohttp.CookieJar(unsafe=True)) as session:
            return await orchestrator.run_iteration(StorefrontClient(session, settings, metrics=metrics))

    reports = await asyncio.gather(*(virtual_user(i) for i in range(settings.load_test.virtual_users)))

    assert len(reports) == 10
    for report in reports:
        assert report.discovered_links_used == 0
        assert report.seed_links_used == report.steps_taken
        assert report.steps_taken == report.planned_steps
    assert metrics.iterations == 10
    assert metrics.failed_requests == 0


class TestStages:
    def test_ramp_sustain_ramp_down(self):
        settings = make_settings({"loadTest": {
            "virtualUsers": 10, "rampUpDuration": 10, "sustainedDuration": 20, "rampDownDuration": 10}})
        assert total_duration(settings) == 40
        assert target_virtual_users(settings, 0) == 1
        assert target_virtual_users(settings, 5) == 5
        assert target_virtual_users(settings, 15) == 10
        assert target_virtual_users(settings, 35) == 5
        assert target_virtual_users(settings, 40) == 0

    def test_no_ramp(self):
        settings = make_settings({"loadTest": {
            "virtualUsers": 3, "rampUpDuration": 0, "sustainedDuration": 5, "rampDownDuration": 0}})
        assert target_virtual_users(settings, 0) == 3
        assert target_virtual_users(settings, 5) == 0


class TestEngine:
    async def test_short_run(self, storefront, tmp_path):
        settings = make_settings({
            "loadTest": {"virtualUsers": 2, "rampUpDuration": 0, "sustainedDuration": 1, "rampDownDuration": 0},
            "userBehavior": {"minBrowsingSteps": 1, "maxBrowsingSteps": 2},
        }, base_url=_base_url(storefront))
        engine = StorefrontLoadTestEngine(settings, seed=1, live_display=False)

        metrics = await engine.run()

        assert engine.seed_data == fallback_seed_data(settings)
        assert metrics.iterations > 0
        assert metrics.failed_requests == 0
        assert "discovery" not in metrics.page_counts
        assert metrics.thresholds_passed()

        report = json.loads(engine.generate_report(str(tmp_path / "report.json")))
        assert report["base_url"] == _base_url(storefront)
        assert report["seed_data"]["live"] is False
        assert json.loads((tmp_path / "report.json").read_text())["summary"]["iterations"] == metrics.iterations
        engine.print_summary()


class TestCli:
    def test_missing_origin(self, monkeypatch):
        monkeypatch.delenv("BASE_URL", raising=False)
        assert main([]) == 2

    def test_bad_origin(self):
        assert main(["--base-url", "ftp://shop.test"]) == 2

    def test_bad_duration(self):
        assert main(["--base-url", "https://shop.test", "--duration", "forever"]) == 2
