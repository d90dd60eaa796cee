"""
📊 Load Test Metrics
====================
Named duration trends per page type, pass/fail rates for request checks and
the threshold expressions evaluated once the run is over.

Every iteration appends to the same registry. All appends happen on the event
loop thread, so samples never interleave.
"""

import random
import re
import statistics
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from load_config import PerformanceConfig

# =============================================================================
# METRIC NAMES
# =============================================================================

HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
CHECKS = "checks"

HOMEPAGE_TREND = "homepage_duration"
CATEGORY_TREND = "category_page_duration"
PRODUCT_TREND = "product_page_duration"
SEARCH_TREND = "search_duration"
CART_TREND = "cart_duration"
ADD_TO_CART_TREND = "add_to_cart_duration"
CART_UPDATE_TREND = "cart_update_duration"
CHECKOUT_TREND = "checkout_duration"
API_TREND = "api_query_duration"

PAGE_TRENDS = (
    HOMEPAGE_TREND, CATEGORY_TREND, PRODUCT_TREND, SEARCH_TREND,
    CART_TREND, ADD_TO_CART_TREND, CART_UPDATE_TREND, CHECKOUT_TREND, API_TREND,
)

TREND_FOR_PAGE_TYPE = {
    "homepage": HOMEPAGE_TREND,
    "category": CATEGORY_TREND,
    "pagination": CATEGORY_TREND,
    "breadcrumb": CATEGORY_TREND,
    "product": PRODUCT_TREND,
    "related_product": PRODUCT_TREND,
    "impulse": PRODUCT_TREND,
    "search": SEARCH_TREND,
    "cart": CART_TREND,
    "cart_update": CART_UPDATE_TREND,
    "add_to_cart": ADD_TO_CART_TREND,
    "checkout": CHECKOUT_TREND,
    "api": API_TREND,
}


# =============================================================================
# SAMPLE STORES
# =============================================================================

class ReservoirSampler:
    """
    Reservoir sampling for memory-efficient percentile estimation.
    Keeps a fixed-size sample that represents the full distribution.
    """
    def __init__(self, size: int = 10000, rng: Optional[random.Random] = None):
        self.size = size
        self.reservoir: List[float] = []
        self.count = 0
        self._rng = rng or random.Random()

    def add(self, value: float):
        self.count += 1
        if len(self.reservoir) < self.size:
            self.reservoir.append(value)
        else:
            j = self._rng.randint(0, self.count - 1)
            if j < self.size:
                self.reservoir[j] = value

    def percentile(self, p: float) -> float:
        if not self.reservoir:
            return 0
        sorted_sample = sorted(self.reservoir)
        idx = int(len(sorted_sample) * p / 100)
        return sorted_sample[min(idx, len(sorted_sample) - 1)]


@dataclass
class Trend:
    """Named series of duration samples (milliseconds)."""
    name: str
    count: int = 0
    total: float = 0.0
    min: float = float("inf")
    max: float = float("-inf")
    sampler: ReservoirSampler = field(default_factory=ReservoirSampler)

    def add(self, value: float):
        self.count += 1
        self.total += value
        self.min = min(self.min, value)
        self.max = max(self.max, value)
        self.sampler.add(value)

    @property
    def avg(self) -> float:
        return self.total / self.count if self.count else 0

    @property
    def med(self) -> float:
        return statistics.median(self.sampler.reservoir) if self.sampler.reservoir else 0

    def percentile(self, p: float) -> float:
        return self.sampler.percentile(p)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "count": self.count,
            "avg": round(self.avg, 2),
            "min": round(self.min, 2) if self.count else 0,
            "med": round(self.med, 2),
            "max": round(self.max, 2) if self.count else 0,
            "p90": round(self.percentile(90), 2),
            "p95": round(self.percentile(95), 2),
        }


@dataclass
class Rate:
    """Fraction of true samples (failed requests, passing checks...)."""
    name: str
    trues: int = 0
    falses: int = 0

    def add(self, value: bool):
        if value:
            self.trues += 1
        else:
            self.falses += 1

    @property
    def count(self) -> int:
        return self.trues + self.falses

    @property
    def rate(self) -> float:
        return self.trues / self.count if self.count else 0

    def to_dict(self) -> Dict[str, Any]:
        return {"rate": round(self.rate, 4), "true": self.trues, "false": self.falses}


# =============================================================================
# THRESHOLDS
# =============================================================================

_THRESHOLD_RE = re.compile(
    r"^\s*(avg|min|max|med|count|rate|p\(\s*(\d+(?:\.\d+)?)\s*\))\s*(<=|>=|<|>|==)\s*(-?\d+(?:\.\d+)?)\s*$"
)
_OPERATORS = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "==": lambda a, b: a == b,
}
_RATE_AGGREGATES = ("rate", "count")


@dataclass(frozen=True)
class Threshold:
    """A pass/fail expression such as ``p(95)<3000`` bound to one metric."""
    metric: str
    expression: str

    def __post_init__(self):
        if not _THRESHOLD_RE.match(self.expression):
            raise ValueError(f"Invalid threshold expression for {self.metric}: {self.expression!r}")

    def _parts(self) -> Tuple[str, Optional[float], str, float]:
        aggregate, percentile, op, limit = _THRESHOLD_RE.match(self.expression).groups()
        if percentile is not None:
            aggregate = "p"
        return aggregate, float(percentile) if percentile else None, op, float(limit)

    def check_kind(self, registry: "MetricsRegistry"):
        """Rates only take ``rate``/``count``; trends take everything but ``rate``."""
        aggregate = self._parts()[0]
        if self.metric in registry.rates and aggregate not in _RATE_AGGREGATES:
            raise ValueError(f"{self.metric} is a rate; {aggregate!r} only applies to trends")
        if self.metric in registry.trends and aggregate == "rate":
            raise ValueError(f"{self.metric} is a trend; 'rate' only applies to rates")

    def actual(self, registry: "MetricsRegistry") -> Optional[float]:
        self.check_kind(registry)
        aggregate, percentile, _, _ = self._parts()
        if self.metric in registry.rates:
            metric = registry.rates[self.metric]
            return metric.rate if aggregate == "rate" else float(metric.count)
        trend = registry.trends.get(self.metric)
        if trend is None:
            return None
        if aggregate == "p":
            return trend.percentile(percentile)
        if aggregate == "count":
            return float(trend.count)
        if not trend.count:
            return 0.0
        return float(getattr(trend, aggregate))

    def evaluate(self, registry: "MetricsRegistry") -> Tuple[bool, Optional[float]]:
        """(passed, observed value). A metric with no samples passes."""
        _, _, op, limit = self._parts()
        value = self.actual(registry)
        if value is None:
            return True, None
        return _OPERATORS[op](value, limit), value


def build_thresholds(perf: PerformanceConfig) -> List[Threshold]:
    """The run's thresholds, one per page trend plus the global HTTP ones."""
    return [
        Threshold(HTTP_REQ_FAILED, f"rate<{perf.http_error_threshold:g}"),
        Threshold(HTTP_REQ_DURATION, f"p(95)<{perf.http_duration_threshold:g}"),
        Threshold(HOMEPAGE_TREND, f"p(95)<{perf.homepage_duration_threshold:g}"),
        Threshold(CATEGORY_TREND, f"p(95)<{perf.category_duration_threshold:g}"),
        Threshold(PRODUCT_TREND, f"p(95)<{perf.product_duration_threshold:g}"),
        Threshold(SEARCH_TREND, f"p(95)<{perf.search_duration_threshold:g}"),
        Threshold(CART_TREND, f"p(95)<{perf.cart_duration_threshold:g}"),
        Threshold(ADD_TO_CART_TREND, f"p(95)<{perf.add_to_cart_duration_threshold:g}"),
        Threshold(CHECKOUT_TREND, f"p(95)<{perf.checkout_duration_threshold:g}"),
        Threshold(API_TREND, f"p(95)<{perf.api_duration_threshold:g}"),
    ]


# =============================================================================
# REGISTRY
# =============================================================================

@dataclass
class MetricsRegistry:
    """Process-wide metrics: declared once, fed by every request, reported once."""
    trends: Dict[str, Trend] = field(default_factory=dict)
    rates: Dict[str, Rate] = field(default_factory=dict)
    thresholds: List[Threshold] = field(default_factory=list)
    check_results: Dict[str, List[int]] = field(default_factory=lambda: defaultdict(lambda: [0, 0]))
    page_counts: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    status_codes: Dict[int, int] = field(default_factory=lambda: defaultdict(int))

    # Funnel
    iterations: int = 0
    add_to_cart_count: int = 0
    checkout_visits: int = 0
    coupon_attempts: int = 0

    start_time: float = 0
    end_time: float = 0

    def __post_init__(self):
        for name in (HTTP_REQ_DURATION,) + PAGE_TRENDS:
            self.trend(name)
        for name in (HTTP_REQ_FAILED, CHECKS):
            self.rate(name)
        for threshold in self.thresholds:
            threshold.check_kind(self)

    def trend(self, name: str) -> Trend:
        if name not in self.trends:
            self.trends[name] = Trend(name)
        return self.trends[name]

    def rate(self, name: str) -> Rate:
        if name not in self.rates:
            self.rates[name] = Rate(name)
        return self.rates[name]

    @property
    def total_requests(self) -> int:
        return self.rates[HTTP_REQ_FAILED].count

    @property
    def failed_requests(self) -> int:
        return self.rates[HTTP_REQ_FAILED].trues

    @property
    def duration(self) -> float:
        if not self.start_time:
            return 0
        return (self.end_time or time.time()) - self.start_time

    @property
    def rps(self) -> float:
        return self.total_requests / self.duration if self.duration > 0 else 0

    def check(self, name: str, passed: bool):
        self.rate(CHECKS).add(passed)
        self.check_results[name][0 if passed else 1] += 1

    def record_request(self, page_type: str, status: int, duration_ms: float, check_name: Optional[str] = None) -> bool:
        """Record one HTTP interaction. Returns whether the status check passed (2xx/3xx)."""
        passed = 200 <= status < 400
        self.status_codes[status] += 1
        self.page_counts[page_type] += 1
        self.rate(HTTP_REQ_FAILED).add(not passed)
        if status:
            self.trend(HTTP_REQ_DURATION).add(duration_ms)
            trend_name = TREND_FOR_PAGE_TYPE.get(page_type)
            if trend_name:
                self.trend(trend_name).add(duration_ms)
        self.check(check_name or f"{page_type} status is 2xx/3xx", passed)
        return passed

    def evaluate_thresholds(self) -> List[Dict[str, Any]]:
        results = []
        for threshold in self.thresholds:
            passed, actual = threshold.evaluate(self)
            results.append({
                "metric": threshold.metric,
                "expression": threshold.expression,
                "actual": None if actual is None else round(actual, 4),
                "passed": passed,
            })
        return results

    def thresholds_passed(self) -> bool:
        return all(result["passed"] for result in self.evaluate_thresholds())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON export."""
        return {
            "summary": {
                "iterations": self.iterations,
                "total_requests": self.total_requests,
                "failed_requests": self.failed_requests,
                "duration_seconds": round(self.duration, 2),
                "requests_per_second": round(self.rps, 2),
            },
            "funnel": {
                "page_views": dict(self.page_counts),
                "add_to_cart": self.add_to_cart_count,
                "checkout_visits": self.checkout_visits,
                "coupon_attempts": self.coupon_attempts,
            },
            "trends": {name: trend.to_dict() for name, trend in self.trends.items()},
            "rates": {name: rate.to_dict() for name, rate in self.rates.items()},
            "checks": {name: {"passes": p, "fails": f} for name, (p, f) in self.check_results.items()},
            "status_codes": {str(code): count for code, count in sorted(self.status_codes.items())},
            "thresholds": self.evaluate_thresholds(),
        }
