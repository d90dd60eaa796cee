"""
Metrics tests

Trends, rates, request recording and threshold evaluation.
"""

import json

import pytest

from load_config import resolve_config
from load_metrics import (
    ADD_TO_CART_TREND,
    CART_TREND,
    CART_UPDATE_TREND,
    CATEGORY_TREND,
    CHECKS,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    PAGE_TRENDS,
    PRODUCT_TREND,
    MetricsRegistry,
    ReservoirSampler,
    Threshold,
    Trend,
    build_thresholds,
)


class TestTrend:
    def test_aggregates(self):
        trend = Trend("t")
        for value in range(1, 101):
            trend.add(float(value))
        assert trend.count == 100
        assert trend.avg == pytest.approx(50.5)
        assert trend.min == 1.0 and trend.max == 100.0
        assert trend.med == pytest.approx(50.5)
        assert trend.percentile(95) == 96.0

    def test_empty_trend_reports_zeros(self):
        assert Trend("t").to_dict() == {"count": 0, "avg": 0, "min": 0, "med": 0, "max": 0, "p90": 0, "p95": 0}

    def test_reservoir_is_bounded(self):
        sampler = ReservoirSampler(size=50)
        for value in range(1000):
            sampler.add(value)
        assert sampler.count == 1000
        assert len(sampler.reservoir) == 50


class TestRecording:
    def test_status_check(self, metrics):
        assert metrics.record_request("homepage", 200, 100.0)
        assert metrics.record_request("category", 302, 50.0)
        assert not metrics.record_request("product", 500, 80.0)
        assert metrics.total_requests == 3
        assert metrics.failed_requests == 1
        assert metrics.rates[CHECKS].trues == 2
        assert metrics.check_results["product status is 2xx/3xx"] == [0, 1]

    def test_page_types_feed_their_trend(self, metrics):
        metrics.record_request("related_product", 200, 10.0)
        metrics.record_request("impulse", 200, 20.0)
        metrics.record_request("pagination", 200, 30.0)
        metrics.record_request("add_to_cart", 200, 40.0)
        metrics.record_request("discovery", 200, 50.0)
        assert metrics.trends[PRODUCT_TREND].count == 2
        assert metrics.trends[CATEGORY_TREND].count == 1
        assert metrics.trends[ADD_TO_CART_TREND].count == 1
        assert metrics.trends[HTTP_REQ_DURATION].count == 5

    def test_cart_mutations_stay_out_of_cart_page_trend(self, metrics):
        metrics.record_request("cart", 200, 100.0)
        metrics.record_request("cart_update", 200, 900.0)
        assert metrics.trends[CART_TREND].count == 1
        assert metrics.trends[CART_TREND].max == 100.0
        assert metrics.trends[CART_UPDATE_TREND].count == 1

    def test_network_failure_has_no_duration(self, metrics):
        metrics.record_request("product", 0, 30000.0)
        assert metrics.trends[PRODUCT_TREND].count == 0
        assert metrics.trends[HTTP_REQ_DURATION].count == 0
        assert metrics.rates[HTTP_REQ_FAILED].rate == 1.0

    def test_report_is_json_serialisable(self, metrics):
        metrics.record_request("homepage", 200, 100.0)
        metrics.add_to_cart_count = 2
        report = json.loads(json.dumps(metrics.to_dict()))
        assert report["summary"]["total_requests"] == 1
        assert report["funnel"]["add_to_cart"] == 2
        assert report["status_codes"] == {"200": 1}
        assert set(PAGE_TRENDS) <= set(report["trends"])


class TestThresholds:
    @pytest.mark.parametrize("expression", ["p(95)<3000", "rate<0.05", "avg <= 200", "p(99.9)>=1", "count==0"])
    def test_valid_expressions(self, expression):
        Threshold("m", expression)

    @pytest.mark.parametrize("expression", ["", "p95<3000", "rate<<1", "fast", "p(95)<abc"])
    def test_invalid_expressions(self, expression):
        with pytest.raises(ValueError):
            Threshold("m", expression)

    def test_percentile_threshold(self):
        registry = MetricsRegistry()
        for value in range(1, 101):
            registry.trend(PRODUCT_TREND).add(float(value))
        assert Threshold(PRODUCT_TREND, "p(95)<100").evaluate(registry) == (True, 96.0)
        assert Threshold(PRODUCT_TREND, "p(95)<50").evaluate(registry) == (False, 96.0)
        assert Threshold(PRODUCT_TREND, "max<=100").evaluate(registry)[0]

    def test_rate_threshold(self):
        registry = MetricsRegistry(thresholds=[Threshold(HTTP_REQ_FAILED, "rate<0.05")])
        for _ in range(9):
            registry.record_request("homepage", 200, 10.0)
        assert registry.thresholds_passed()
        registry.record_request("homepage", 503, 10.0)
        assert not registry.thresholds_passed()
        assert registry.evaluate_thresholds()[0]["actual"] == pytest.approx(0.1)

    def test_unknown_metric_passes(self):
        assert Threshold("not_recorded", "p(95)<1").evaluate(MetricsRegistry()) == (True, None)

    @pytest.mark.parametrize("metric, expression", [
        (PRODUCT_TREND, "rate<0.05"),
        (HTTP_REQ_FAILED, "avg<1"),
        (HTTP_REQ_FAILED, "p(95)<1"),
        (CHECKS, "med>0.9"),
    ])
    def test_aggregate_must_fit_metric_kind(self, metric, expression):
        threshold = Threshold(metric, expression)
        with pytest.raises(ValueError):
            threshold.evaluate(MetricsRegistry())
        with pytest.raises(ValueError):
            MetricsRegistry(thresholds=[threshold])

    def test_count_applies_to_both_kinds(self):
        registry = MetricsRegistry(thresholds=[
            Threshold(HTTP_REQ_FAILED, "count>=0"), Threshold(PRODUCT_TREND, "count>=0")])
        assert registry.thresholds_passed()

    def test_defaults(self):
        thresholds = build_thresholds(resolve_config({}).performance)
        assert len(thresholds) == 10
        by_metric = {t.metric: t.expression for t in thresholds}
        assert by_metric[HTTP_REQ_FAILED] == "rate<0.05"
        assert by_metric[HTTP_REQ_DURATION] == "p(95)<2000"
        assert by_metric[PRODUCT_TREND] == "p(95)<3000"

    def test_idle_run_passes(self):
        registry = MetricsRegistry(thresholds=build_thresholds(resolve_config({}).performance))
        assert registry.thresholds_passed()
