"""Prometheus metrics for the crawl-and-index engine."""

from prometheus_client import Counter, Histogram, Gauge, generate_latest
from prometheus_client.core import CollectorRegistry
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

# Create custom registry for indexer metrics
citizen_registry = CollectorRegistry()

# Crawl metrics
crawl_cycles = Counter(
    'citizen_crawl_cycles_total',
    'Total number of site crawl cycles',
    ['status'],
    registry=citizen_registry
)

crawl_duration = Histogram(
    'citizen_crawl_duration_seconds',
    'Site crawl cycle duration in seconds',
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=citizen_registry
)

crawl_changes = Histogram(
    'citizen_crawl_changes_count',
    'Number of file changes dispatched per crawl cycle',
    ['strategy'],
    buckets=[0, 1, 5, 10, 25, 50, 100, 250, 1000],
    registry=citizen_registry
)

key_rotations = Counter(
    'citizen_key_rotations_total',
    'Number of detected site address rotations',
    registry=citizen_registry
)

# Index metrics
feed_items = Gauge(
    'citizen_feed_items',
    'Number of items in the global feed index',
    registry=citizen_registry
)

followed_sites = Gauge(
    'citizen_followed_sites',
    'Number of domains with at least one indexed follower',
    registry=citizen_registry
)

index_writes = Counter(
    'citizen_index_writes_total',
    'Debounced index file writes',
    ['status'],
    registry=citizen_registry
)

live_subscriptions = Gauge(
    'citizen_live_subscriptions',
    'Number of open live-update subscriptions',
    registry=citizen_registry
)

# Error metrics
error_count = Counter(
    'citizen_errors_total',
    'Total number of errors',
    ['error_type', 'component'],
    registry=citizen_registry
)


def record_crawl_metrics(status: str, duration: float, change_count: int = 0,
                         strategy: str = 'history', key_rotated: bool = False,
                         error: Optional[str] = None) -> None:
    """Record metrics for one crawl cycle."""
    crawl_cycles.labels(status=status).inc()

    if status == 'indexed':
        crawl_duration.observe(duration)
        crawl_changes.labels(strategy=strategy).observe(change_count)

    if key_rotated:
        key_rotations.inc()

    if error:
        error_count.labels(error_type=error, component='crawler').inc()


def record_index_write(error: Optional[str] = None) -> None:
    """Record the outcome of one debounced index write."""
    index_writes.labels(status='error' if error else 'success').inc()
    if error:
        error_count.labels(error_type=error, component='persistence').inc()


def export_metrics() -> bytes:
    """Render the registry in the Prometheus text format."""
    return generate_latest(citizen_registry)


def get_metrics_summary() -> Dict[str, Any]:
    """Get a summary of current metrics."""
    def sample(name: str, labels: Optional[Dict[str, str]] = None) -> float:
        return citizen_registry.get_sample_value(name, labels or {}) or 0.0

    return {
        "crawls_indexed": sample('citizen_crawl_cycles_total', {'status': 'indexed'}),
        "crawls_skipped": sample('citizen_crawl_cycles_total', {'status': 'skipped'}),
        "crawls_failed": sample('citizen_crawl_cycles_total', {'status': 'failed'}),
        "key_rotations": sample('citizen_key_rotations_total'),
        "index_writes": sample('citizen_index_writes_total', {'status': 'success'}),
        "index_write_errors": sample('citizen_index_writes_total', {'status': 'error'}),
        "feed_items": sample('citizen_feed_items'),
        "followed_sites": sample('citizen_followed_sites'),
        "live_subscriptions": sample('citizen_live_subscriptions')
    }
