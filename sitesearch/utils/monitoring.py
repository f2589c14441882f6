"""
Monitoring and metrics collection for crawl, index and search runs.
"""

import time
import logging
from typing import Dict, Optional, Any, List
from dataclasses import dataclass, field

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, start_http_server


@dataclass
class MetricPoint:
    """Individual metric data point."""
    timestamp: float
    value: float
    labels: Dict[str, str] = field(default_factory=dict)


@dataclass
class Metric:
    """Metric container with history."""
    name: str
    description: str
    metric_type: str  # counter, gauge, histogram
    points: List[MetricPoint] = field(default_factory=list)
    current_value: float = 0.0


class MetricsCollector:
    """Collects metrics in-process and mirrors them into a Prometheus registry."""

    def __init__(self, enable_prometheus: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.metrics: Dict[str, Metric] = {}
        self.enable_prometheus = enable_prometheus
        self.prometheus_port = prometheus_port

        self.prometheus_registry = CollectorRegistry()
        self.prometheus_metrics = {
            'urls_crawled_total': Counter(
                'sitesearch_urls_crawled_total',
                'Total number of URLs fetched',
                registry=self.prometheus_registry
            ),
            'crawl_failures_total': Counter(
                'sitesearch_crawl_failures_total',
                'Total number of unsuccessful crawls',
                ['reason'],
                registry=self.prometheus_registry
            ),
            'urls_discovered_total': Counter(
                'sitesearch_urls_discovered_total',
                'Total number of new URLs inserted',
                registry=self.prometheus_registry
            ),
            'documents_indexed_total': Counter(
                'sitesearch_documents_indexed_total',
                'Total number of records marked indexed',
                registry=self.prometheus_registry
            ),
            'tokens_merged_total': Counter(
                'sitesearch_tokens_merged_total',
                'Total number of postings lists merged into storage',
                registry=self.prometheus_registry
            ),
            'searches_total': Counter(
                'sitesearch_searches_total',
                'Total number of searches served',
                registry=self.prometheus_registry
            ),
            'response_time_seconds': Histogram(
                'sitesearch_response_time_seconds',
                'Response time for HTTP fetches',
                registry=self.prometheus_registry
            ),
            'last_batch_size': Gauge(
                'sitesearch_last_batch_size',
                'Number of records in the most recent crawl batch',
                registry=self.prometheus_registry
            ),
        }

    def start_prometheus_server(self):
        """Start Prometheus metrics HTTP server."""
        if not self.enable_prometheus:
            return

        try:
            start_http_server(self.prometheus_port, registry=self.prometheus_registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def record_metric(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                      description: str = "", metric_type: str = "gauge", delta: float = 0.0):
        """Record a metric value."""
        labels = labels or {}

        if name not in self.metrics:
            self.metrics[name] = Metric(
                name=name,
                description=description,
                metric_type=metric_type
            )

        metric = self.metrics[name]
        metric.points.append(MetricPoint(timestamp=time.time(), value=value, labels=labels))
        metric.current_value = value

        # Keep only recent points (last 1000)
        if len(metric.points) > 1000:
            metric.points = metric.points[-1000:]

        prom_metric = self.prometheus_metrics.get(name)
        if prom_metric is None:
            return

        if labels:
            prom_metric = prom_metric.labels(**labels)
        if metric_type == 'counter':
            prom_metric.inc(delta)
        elif metric_type == 'histogram':
            prom_metric.observe(value)
        else:
            prom_metric.set(value)

    def increment_counter(self, name: str, amount: float = 1, labels: Optional[Dict[str, str]] = None,
                          description: str = ""):
        """Increment a counter metric."""
        current_value = 0
        if name in self.metrics:
            current_value = self.metrics[name].current_value

        self.record_metric(name, current_value + amount, labels, description, "counter", delta=amount)

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                  description: str = ""):
        """Set a gauge metric value."""
        self.record_metric(name, value, labels, description, "gauge")

    def observe_histogram(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                          description: str = ""):
        """Record a histogram observation."""
        self.record_metric(name, value, labels, description, "histogram")

    def get_current_values(self) -> Dict[str, float]:
        """Get current values of all metrics."""
        return {name: metric.current_value for name, metric in self.metrics.items()}


class CrawlerMonitor:
    """High-level monitoring interface for the crawl and index jobs."""

    def __init__(self, metrics_collector: Optional[MetricsCollector] = None):
        self.metrics = metrics_collector or MetricsCollector()
        self.start_time = time.time()

    def record_url_crawled(self, response_time: float):
        """Record a completed fetch."""
        self.metrics.increment_counter('urls_crawled_total', description='URLs fetched')
        self.metrics.observe_histogram('response_time_seconds', response_time,
                                       description='HTTP response time')

    def record_crawl_failure(self, reason: str):
        """Record an unsuccessful crawl; reason is one of transport, status, parse, storage."""
        self.metrics.increment_counter('crawl_failures_total', labels={'reason': reason},
                                       description='Unsuccessful crawls')

    def record_batch_size(self, size: int):
        self.metrics.set_gauge('last_batch_size', size, description='Records in last crawl batch')

    def record_urls_discovered(self, count: int):
        self.metrics.increment_counter('urls_discovered_total', count, description='New URLs inserted')

    def record_documents_indexed(self, count: int):
        self.metrics.increment_counter('documents_indexed_total', count, description='Records indexed')

    def record_tokens_merged(self, count: int):
        self.metrics.increment_counter('tokens_merged_total', count, description='Postings merged')

    def record_search(self):
        self.metrics.increment_counter('searches_total', description='Searches served')

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        current_values = self.metrics.get_current_values()
        runtime = time.time() - self.start_time

        return {
            'runtime_seconds': runtime,
            'metrics': current_values,
            'rates': {
                'urls_per_second': current_values.get('urls_crawled_total', 0) / runtime if runtime > 0 else 0,
            }
        }
