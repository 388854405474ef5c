"""
Prometheus metrics endpoint.

Exposes system metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Business Metrics - Publishing
# ============================================

issues_published = Counter(
    'newsletter_issues_published_total',
    'Total newsletter issues published'
)

deliveries_enqueued = Counter(
    'deliveries_enqueued_total',
    'Total delivery tasks enqueued'
)

idempotent_requests = Counter(
    'idempotent_requests_total',
    'Publish requests resolved through an existing idempotency key',
    ['outcome']  # replayed, in_progress
)

# ============================================
# Business Metrics - Delivery
# ============================================

deliveries_total = Counter(
    'deliveries_total',
    'Delivery attempts by outcome',
    ['outcome']  # delivered, retry_scheduled, abandoned
)

deliveries_abandoned = Counter(
    'deliveries_abandoned_total',
    'Delivery tasks moved to the dead-letter table',
    ['reason']
)

# ============================================
# Queue Metrics
# ============================================

delivery_queue_depth = Gauge(
    'delivery_queue_pending_count',
    'Current number of queued delivery tasks'
)

# ============================================
# Rate Limiting Metrics
# ============================================

rate_limit_exceeded = Counter(
    'rate_limit_exceeded_total',
    'Total requests blocked by rate limiting',
    ['endpoint']
)


# ============================================
# Helper Functions
# ============================================

def record_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request. endpoint must be a route template, not
    the raw path.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_issue_published(enqueued: int):
    """Record an issue being published and its fan-out."""
    issues_published.inc()
    deliveries_enqueued.inc(enqueued)


def track_idempotent_request(outcome: str):
    """Record a replayed or rejected duplicate publish request."""
    idempotent_requests.labels(outcome=outcome).inc()


def track_delivery(outcome: str):
    """Record the outcome of one delivery attempt."""
    deliveries_total.labels(outcome=outcome).inc()


def track_delivery_abandoned(reason: str):
    """Record a task moved to the dead-letter table."""
    deliveries_total.labels(outcome="abandoned").inc()
    deliveries_abandoned.labels(reason=reason).inc()


def update_queue_depth(depth: int):
    """Update queued task count."""
    delivery_queue_depth.set(depth)


def track_rate_limit_exceeded(endpoint: str):
    """Record a rate limit block."""
    rate_limit_exceeded.labels(endpoint=endpoint).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
