"""
Prometheus metrics for the texting services.

Counters are process-local (prometheus-client registry) and exposed by
the webhook service on /metrics.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest

# =============================================================================
# Metric Definitions
# =============================================================================

messages_sent_total = Counter(
    "messages_sent_total",
    "Outbound messages accepted by a provider",
    labelnames=["service"],
)

messages_send_failed_total = Counter(
    "messages_send_failed_total",
    "Outbound sends that ended in error",
    labelnames=["service"],
)

inbound_messages_total = Counter(
    "inbound_messages_total",
    "Inbound message outcomes",
    labelnames=["result"],
)

delivery_reports_total = Counter(
    "delivery_reports_total",
    "Delivery report outcomes",
    labelnames=["result"],
)

webhook_requests_total = Counter(
    "webhook_requests_total",
    "Webhook requests by provider, kind and boundary result",
    labelnames=["service_type", "kind", "result"],
)


# =============================================================================
# Helper Functions
# =============================================================================


def get_metrics() -> bytes:
    """Prometheus exposition format for the default registry."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
