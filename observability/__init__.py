"""Observability package for the citizen indexer."""

from .logging import (
    setup_logging,
    get_structured_logger,
    StructuredLogger,
    JSONFormatter,
    ColoredFormatter
)
from .prometheus_metrics import (
    record_crawl_metrics,
    record_index_write,
    export_metrics,
    get_metrics_summary,
    citizen_registry
)

__all__ = [
    'setup_logging',
    'get_structured_logger',
    'StructuredLogger',
    'JSONFormatter',
    'ColoredFormatter',
    'record_crawl_metrics',
    'record_index_write',
    'export_metrics',
    'get_metrics_summary',
    'citizen_registry'
]
