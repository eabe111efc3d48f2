"""
Prometheus metrics for NextUp.

Covers the storage layer (operations, retries, corruption), the collection
manager (change events, listener failures, records dropped by lenient reads)
and the catalog client (requests and latency).
"""

import time
from functools import wraps

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# Storage metrics
storage_operations_total = Counter(
    'nextup_storage_operations_total',
    'Total number of key-value store operations',
    ['operation', 'status']  # status: success, error
)

storage_retries_total = Counter(
    'nextup_storage_retries_total',
    'Total number of retried storage attempts',
    ['operation']
)

storage_corruptions_total = Counter(
    'nextup_storage_corruptions_total',
    'Total number of corrupted keys purged on read'
)

# Collection manager metrics
lenient_read_drops_total = Counter(
    'nextup_lenient_read_drops_total',
    'Stored records discarded by lenient reads',
    ['record']  # user_profile, collection_item, collections
)

collection_events_total = Counter(
    'nextup_collection_events_total',
    'Total number of change events emitted',
    ['event_type']
)

listener_failures_total = Counter(
    'nextup_listener_failures_total',
    'Total number of exceptions raised by change listeners',
    ['event_type']
)

# Catalog metrics
catalog_requests_total = Counter(
    'nextup_catalog_requests_total',
    'Total number of catalog API requests',
    ['endpoint', 'status']
)

catalog_request_duration_seconds = Histogram(
    'nextup_catalog_request_duration_seconds',
    'Catalog API request duration in seconds',
    ['endpoint']
)


def track_storage_operation(operation, success=True):
    """
    Record the outcome of a storage operation.

    Args:
        operation: Operation type (read, write, delete, clear)
        success: Whether the operation ultimately succeeded
    """
    status = 'success' if success else 'error'
    storage_operations_total.labels(operation=operation, status=status).inc()


def track_storage_retry(operation):
    """Record one retried storage attempt."""
    storage_retries_total.labels(operation=operation).inc()


def track_corruption():
    """Record a corrupted key purged on read."""
    storage_corruptions_total.inc()


def track_lenient_drop(record, count=1):
    """
    Record stored data discarded by a lenient read.

    Args:
        record: Kind of record dropped
        count: Number of records dropped
    """
    if count > 0:
        lenient_read_drops_total.labels(record=record).inc(count)


def track_event(event_type):
    """Record an emitted change event."""
    collection_events_total.labels(event_type=event_type).inc()


def track_listener_failure(event_type):
    """Record a listener that raised while handling an event."""
    listener_failures_total.labels(event_type=event_type).inc()


def track_catalog_request(endpoint):
    """
    Decorator to track catalog request count and latency.

    Usage:
        @track_catalog_request('search_multi')
        def search_multi(self, query):
            ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.time()
            status = 'success'
            try:
                return func(*args, **kwargs)
            except Exception:
                status = 'error'
                raise
            finally:
                duration = time.time() - start_time
                catalog_requests_total.labels(endpoint=endpoint, status=status).inc()
                catalog_request_duration_seconds.labels(endpoint=endpoint).observe(duration)
        return wrapper
    return decorator


def get_metrics():
    """
    Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics_text, content_type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
