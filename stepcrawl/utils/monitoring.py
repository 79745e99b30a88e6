"""
Monitoring and metrics collection for the crawler.
"""

import time
import logging
from typing import Dict, Optional, Any

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest
from prometheus_client import start_http_server


class MetricsCollector:
    """Owns the Prometheus metrics of one crawler process."""

    def __init__(self, enable_prometheus: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.enable_prometheus = enable_prometheus
        self.prometheus_port = prometheus_port

        # Private registry so several collectors can coexist (tests, embedded use)
        self.registry = CollectorRegistry()
        self.counters = {
            'pages_crawled_total': Counter(
                'stepcrawl_pages_crawled_total',
                'Pages visited (marked visited and fetched)',
                registry=self.registry
            ),
            'pages_failed_total': Counter(
                'stepcrawl_pages_failed_total',
                'Pages whose extraction failed',
                registry=self.registry
            ),
            'pages_stored_total': Counter(
                'stepcrawl_pages_stored_total',
                'Pages written to blob storage',
                registry=self.registry
            ),
            'paths_queued_total': Counter(
                'stepcrawl_paths_queued_total',
                'New paths added to the frontier',
                registry=self.registry
            ),
            'continuations_total': Counter(
                'stepcrawl_continuations_total',
                'Executions halted and continued to stay under the step budget',
                registry=self.registry
            ),
            'executions_total': Counter(
                'stepcrawl_executions_total',
                'Executions started',
                registry=self.registry
            ),
        }
        self.gauges = {
            'frontier_remaining': Gauge(
                'stepcrawl_frontier_remaining',
                'Queued plus dispatched paths in the frontier',
                registry=self.registry
            ),
        }

    def start_prometheus_server(self):
        """Start Prometheus metrics HTTP server."""
        if not self.enable_prometheus:
            return

        try:
            start_http_server(self.prometheus_port, registry=self.registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def increment_counter(self, name: str, amount: float = 1):
        self.counters[name].inc(amount)

    def set_gauge(self, name: str, value: float):
        self.gauges[name].set(value)

    def get_value(self, name: str) -> float:
        """Current value of a counter or gauge."""
        return self.registry.get_sample_value(f"stepcrawl_{name}") or 0.0

    def get_current_values(self) -> Dict[str, float]:
        names = list(self.counters) + list(self.gauges)
        return {name: self.get_value(name) for name in names}

    def export_text(self) -> bytes:
        """Prometheus exposition format of all metrics."""
        return generate_latest(self.registry)


class CrawlerMonitor:
    """High-level monitoring interface for the crawler."""

    def __init__(self, metrics_collector: MetricsCollector):
        self.metrics = metrics_collector
        self.start_time = time.time()

    def record_page_crawled(self):
        self.metrics.increment_counter('pages_crawled_total')

    def record_page_failed(self):
        self.metrics.increment_counter('pages_failed_total')

    def record_page_stored(self):
        self.metrics.increment_counter('pages_stored_total')

    def record_paths_queued(self, count: int):
        if count > 0:
            self.metrics.increment_counter('paths_queued_total', count)

    def record_execution_started(self):
        self.metrics.increment_counter('executions_total')

    def record_continuation(self):
        self.metrics.increment_counter('continuations_total')

    def update_frontier_remaining(self, remaining: int):
        self.metrics.set_gauge('frontier_remaining', remaining)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        current_values = self.metrics.get_current_values()
        runtime = time.time() - self.start_time
        crawled = current_values.get('pages_crawled_total', 0)

        return {
            'runtime_seconds': runtime,
            'metrics': current_values,
            'rates': {
                'pages_per_minute': crawled / (runtime / 60) if runtime > 0 else 0,
            }
        }


def initialize_monitoring(enable_prometheus: bool = False, prometheus_port: int = 8000) -> CrawlerMonitor:
    """Create a monitor, starting the exporter when enabled."""
    collector = MetricsCollector(enable_prometheus, prometheus_port)
    collector.start_prometheus_server()
    return CrawlerMonitor(collector)
