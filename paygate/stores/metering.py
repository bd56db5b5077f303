"""
In-memory metering store: a bounded ring buffer of usage metrics
"""

import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from paygate.stores.base import MeteringStore
from paygate.stores.models import (
    EndpointStats,
    MetricsFilter,
    MetricsReport,
    PayerStats,
    UsageMetric,
)

TOP_N = 10


class _EndpointAccumulator:
    __slots__ = ("requests", "revenue", "latency", "errors", "users")

    def __init__(self):
        self.requests = 0
        self.revenue = 0
        self.latency = 0
        self.errors = 0
        self.users = set()

    def add(self, metric: UsageMetric) -> None:
        self.requests += 1
        self.revenue += metric.amount_paid
        self.latency += metric.latency_ms
        if metric.response_code >= 400:
            self.errors += 1
        if metric.payer_id:
            self.users.add(metric.payer_id)

    def stats(self, endpoint: str) -> EndpointStats:
        return EndpointStats(
            endpoint=endpoint,
            total_requests=self.requests,
            total_revenue=self.revenue,
            avg_latency_ms=self.latency / self.requests if self.requests else 0.0,
            error_rate=self.errors / self.requests if self.requests else 0.0,
            unique_users=len(self.users),
        )


def aggregate(metrics: List[UsageMetric], currency: str, period: str = "all") -> MetricsReport:
    """Fold a list of metrics into a report"""
    report = MetricsReport(period=period, currency=currency)
    if not metrics:
        return report

    endpoints: Dict[str, _EndpointAccumulator] = {}
    payers: Dict[str, PayerStats] = {}
    total_latency = 0
    errors = 0

    for metric in metrics:
        report.total_requests += 1
        report.total_revenue += metric.amount_paid
        total_latency += metric.latency_ms
        if metric.response_code >= 400:
            errors += 1

        hour = metric.timestamp.hour
        report.requests_by_hour[hour] += 1
        report.revenue_by_hour[hour] += metric.amount_paid

        if metric.is_ai_agent:
            report.ai_agent_requests += 1
            report.ai_agent_revenue += metric.amount_paid

        endpoints.setdefault(metric.endpoint, _EndpointAccumulator()).add(metric)

        if metric.payer_id:
            payer = payers.get(metric.payer_id)
            if payer is None:
                payer = payers[metric.payer_id] = PayerStats(payer_id=metric.payer_id)
            payer.total_requests += 1
            payer.total_spent += metric.amount_paid
            if payer.last_seen is None or metric.timestamp > payer.last_seen:
                payer.last_seen = metric.timestamp
            payer.is_ai_agent = payer.is_ai_agent or metric.is_ai_agent

    report.unique_users = len(payers)
    report.avg_latency_ms = total_latency / report.total_requests
    report.error_rate = errors / report.total_requests

    endpoint_stats = [acc.stats(name) for name, acc in endpoints.items()]
    endpoint_stats.sort(key=lambda s: (-s.total_revenue, s.endpoint))
    report.top_endpoints = endpoint_stats[:TOP_N]

    payer_stats = sorted(payers.values(), key=lambda p: (-p.total_spent, p.payer_id))
    report.top_payers = payer_stats[:TOP_N]
    return report


class InMemoryMeteringStore(MeteringStore):
    """
    Keeps the most recent `capacity` metrics. Recording into a full buffer
    evicts the oldest entry.
    """

    def __init__(self, capacity: int = 100000, currency: str = "USDC"):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._lock = threading.Lock()
        self._metrics: Deque[UsageMetric] = deque(maxlen=capacity)
        self.capacity = capacity
        self.currency = currency

    def record(self, metric: UsageMetric) -> None:
        with self._lock:
            self._metrics.append(metric)

    def records(self) -> List[UsageMetric]:
        """Snapshot of the buffer, oldest first"""
        with self._lock:
            return list(self._metrics)

    def query(self, metrics_filter: Optional[MetricsFilter] = None) -> MetricsReport:
        metrics_filter = metrics_filter or MetricsFilter()
        selected = [m for m in self.records() if metrics_filter.matches(m)]

        period = "all"
        if metrics_filter.start_time or metrics_filter.end_time:
            start = metrics_filter.start_time.isoformat() if metrics_filter.start_time else ""
            end = metrics_filter.end_time.isoformat() if metrics_filter.end_time else ""
            period = f"{start}/{end}"
        return aggregate(selected, self.currency, period)

    def endpoint_stats(self) -> List[EndpointStats]:
        """Per-endpoint statistics over the whole buffer, highest revenue first"""
        endpoints: Dict[str, _EndpointAccumulator] = {}
        for metric in self.records():
            endpoints.setdefault(metric.endpoint, _EndpointAccumulator()).add(metric)
        stats = [acc.stats(name) for name, acc in endpoints.items()]
        stats.sort(key=lambda s: (-s.total_revenue, s.endpoint))
        return stats

    def __len__(self) -> int:
        with self._lock:
            return len(self._metrics)
